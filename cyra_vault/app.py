"""
FastAPI application entry point for the secure storage service.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cyra_vault.config import get_settings
from cyra_vault.errors import (
    AuthenticationFailure,
    ContentNotFound,
    InvalidKeyMaterial,
    MalformedContent,
    MalformedPayload,
    MetadataUnavailable,
    SecureStorageError,
    UploadFailed,
    UploadUnavailable,
    VersionConflict,
)
from cyra_vault.routes import router
from cyra_vault.schemas import ErrorResponse

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    MalformedPayload: 422,
    MalformedContent: 422,
    InvalidKeyMaterial: 422,
    AuthenticationFailure: 409,
    VersionConflict: 409,
    ContentNotFound: 404,
    UploadUnavailable: 503,
    MetadataUnavailable: 503,
    UploadFailed: 502,
}


def status_for(exc: SecureStorageError) -> int:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status
    return 500


async def secure_storage_error_handler(
    request: Request, exc: SecureStorageError
) -> JSONResponse:
    status = status_for(exc)
    logger.warning(
        "%s %s failed at %s: %s", request.method, request.url.path, exc.stage, exc
    )
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(
            detail=str(exc), error=type(exc).__name__, stage=exc.stage
        ).model_dump(),
    )


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    app = FastAPI(title="Cyra Secure Storage", version="0.1.0")
    app.include_router(router, prefix=settings.api_prefix)
    app.add_exception_handler(SecureStorageError, secure_storage_error_handler)
    return app


app = create_app()
