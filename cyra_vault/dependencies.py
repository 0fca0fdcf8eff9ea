"""
Dependency wiring for the FastAPI app.

Each client is built once and handed to ``SecureStorageService`` explicitly;
nothing below the service looks clients up on its own.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import Header, HTTPException

from cyra_vault.blobstore import (
    BlobStoreClient,
    InMemoryBlobStoreClient,
    PinataBlobStoreClient,
)
from cyra_vault.cache import InMemoryPointerCache, PointerCache, RedisPointerCache
from cyra_vault.config import get_settings
from cyra_vault.db import InMemoryMetadataStore, MetadataStore, PostgresMetadataStore
from cyra_vault.service import SecureStorageService

logger = logging.getLogger(__name__)

_metadata_store: Optional[MetadataStore] = None
_metadata_store_resolved = False
_blob_store: BlobStoreClient | None = None
_pointer_cache: PointerCache | None = None
_service: SecureStorageService | None = None


def get_metadata_store() -> Optional[MetadataStore]:
    """
    Return a singleton metadata store, or None when none is configured.
    """
    global _metadata_store, _metadata_store_resolved
    if _metadata_store_resolved:
        return _metadata_store

    settings = get_settings()
    if settings.use_in_memory_backends:
        _metadata_store = InMemoryMetadataStore()
    elif settings.database_url:
        _metadata_store = PostgresMetadataStore(
            settings.database_url,
            max_version_retries=settings.max_version_retries,
        )
    else:
        logger.warning("DATABASE_URL not set; stored data will not be recoverable")
        _metadata_store = None
    _metadata_store_resolved = True
    return _metadata_store


def get_blob_store() -> BlobStoreClient:
    global _blob_store
    if _blob_store:
        return _blob_store

    settings = get_settings()
    if settings.use_in_memory_backends:
        _blob_store = InMemoryBlobStoreClient()
    else:
        _blob_store = PinataBlobStoreClient(
            settings.pinata_jwt,
            gateway=settings.pinata_gateway,
            upload_url=settings.pinata_upload_url,
            public_gateway=settings.public_gateway_url,
            timeout=settings.request_timeout_seconds,
        )
    return _blob_store


def get_pointer_cache() -> PointerCache:
    global _pointer_cache
    if _pointer_cache:
        return _pointer_cache

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _pointer_cache = RedisPointerCache(
            url=settings.redis_url, prefix=settings.pointer_cache_prefix
        )
    else:
        _pointer_cache = InMemoryPointerCache()
    return _pointer_cache


def get_service() -> SecureStorageService:
    global _service
    if _service:
        return _service

    settings = get_settings()
    _service = SecureStorageService(
        get_blob_store(),
        get_metadata_store(),
        pointer_cache=get_pointer_cache(),
        batch_workers=settings.batch_workers,
    )
    return _service


def reset_clients() -> None:
    """Forget every singleton so the next request rebuilds from settings."""
    global _metadata_store, _metadata_store_resolved, _blob_store
    global _pointer_cache, _service
    _metadata_store = None
    _metadata_store_resolved = False
    _blob_store = None
    _pointer_cache = None
    _service = None


def get_external_user_id(
    x_privy_user_id: Optional[str] = Header(default=None),
) -> str:
    """
    External identity of the caller, set by the trusted identity proxy.
    """
    if not x_privy_user_id or not x_privy_user_id.strip():
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_privy_user_id.strip()
