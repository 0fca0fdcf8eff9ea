"""
HTTP routes for the secure storage API.

The caller's identity comes from the ``X-Privy-User-Id`` header set by the
identity proxy in front of this service.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response

from cyra_vault.cipher import b64encode
from cyra_vault.codec import SecurePayload
from cyra_vault.dependencies import get_external_user_id, get_service
from cyra_vault.schemas import (
    ErrorResponse,
    KeyMaterialPayload,
    PointerResponse,
    RecoverResponse,
    StoreRequest,
    StoreResponse,
    StoreTasksRequest,
    StoreTasksResponse,
    TaskStoreSummary,
    VersionListResponse,
    VersionSummary,
)
from cyra_vault.service import SecureStorageService, StoreResult

logger = logging.getLogger(__name__)

# Bodies produced by the SecureStorageError handler in app.py.
ERROR_RESPONSES = {
    status: {"model": ErrorResponse} for status in (404, 409, 502, 503)
}

router = APIRouter(responses=ERROR_RESPONSES)


def _store_response(result: StoreResult) -> StoreResponse:
    envelope = result.envelope
    return StoreResponse(
        status=result.status.value,
        cid=result.cid,
        size=result.size,
        version=result.version,
        version_id=result.version_id,
        key_material=KeyMaterialPayload(
            aesKey=b64encode(envelope.key),
            iv=b64encode(envelope.iv),
            tag=b64encode(envelope.tag),
        ),
        metadata_error=str(result.metadata_error) if result.metadata_error else None,
    )


@router.post("/secure-data", response_model=StoreResponse, status_code=201)
def store_secure_data(
    payload: StoreRequest,
    external_id: str = Depends(get_external_user_id),
    service: SecureStorageService = Depends(get_service),
):
    """
    Encrypt, upload and version the caller's planning data.
    """
    result = service.store(
        external_id, SecurePayload(record=payload.record, annotation=payload.annotation)
    )
    return _store_response(result)


@router.get("/secure-data", response_model=RecoverResponse)
def recover_secure_data(
    external_id: str = Depends(get_external_user_id),
    service: SecureStorageService = Depends(get_service),
):
    recovered = service.recover(external_id)
    if recovered is None:
        return RecoverResponse(found=False)
    return RecoverResponse(
        found=True,
        record=recovered.payload.record,
        annotation=recovered.payload.annotation,
        cid=recovered.cid,
        version=recovered.version,
    )


@router.get("/secure-data/versions", response_model=VersionListResponse)
def list_versions(
    external_id: str = Depends(get_external_user_id),
    service: SecureStorageService = Depends(get_service),
):
    versions = [
        VersionSummary(**record.as_dict()) for record in service.history(external_id)
    ]
    return VersionListResponse(versions=versions)


@router.delete("/secure-data/versions/{version_id}", status_code=204)
def delete_version(
    version_id: int,
    external_id: str = Depends(get_external_user_id),
    service: SecureStorageService = Depends(get_service),
):
    service.delete_version(external_id, version_id)
    return Response(status_code=204)


@router.post("/secure-data/tasks", response_model=StoreTasksResponse, status_code=201)
def store_tasks(
    payload: StoreTasksRequest,
    external_id: str = Depends(get_external_user_id),
    service: SecureStorageService = Depends(get_service),
):
    results = service.store_tasks(external_id, payload.tasks, payload.cycle_day)
    stored_ids = {item.key for item in results}
    return StoreTasksResponse(
        stored=[
            TaskStoreSummary(
                task_id=item.key,
                status=item.result.status.value,
                cid=item.result.cid,
                size=item.result.size,
                version=item.result.version,
            )
            for item in results
        ],
        failed=[task.id for task in payload.tasks if task.id not in stored_ids],
    )


@router.get("/secure-data/pointer", response_model=PointerResponse)
def get_pointer(
    external_id: str = Depends(get_external_user_id),
    service: SecureStorageService = Depends(get_service),
):
    pointer = service.pointer(external_id)
    if pointer is None:
        raise HTTPException(status_code=404, detail="No stored data")
    return PointerResponse(
        cid=pointer.cid,
        size=pointer.size,
        created_at=pointer.created_at,
        updated_at=pointer.updated_at,
    )
