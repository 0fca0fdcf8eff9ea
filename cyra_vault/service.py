"""
Store and recover encrypted user data.

A store runs encode -> encrypt -> upload -> append. A recover runs
lookup -> download -> decrypt -> decode. Failures keep their original type and
get the stage name attached, except metadata failures during a store: the
blob is already uploaded, so the result comes back as METADATA_PENDING and the
caller may retry only the metadata step with ``commit_metadata``.
"""

from __future__ import annotations

import contextlib
import hmac
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Sequence

from cyra_vault import codec
from cyra_vault.blobstore import BlobStoreClient, UploadResult
from cyra_vault.cache import PointerCache, StoragePointer
from cyra_vault.cipher import AesGcmCipher, EncryptedEnvelope
from cyra_vault.codec import SecurePayload
from cyra_vault.db import MetadataStore, VersionRecord
from cyra_vault.errors import (
    AuthenticationFailure,
    MetadataUnavailable,
    SecureStorageError,
    VersionConflict,
)
from cyra_vault.tasks import Task, task_payload

logger = logging.getLogger(__name__)


class StoreStatus(str, Enum):
    COMMITTED = "COMMITTED"
    METADATA_PENDING = "METADATA_PENDING"


@dataclass(frozen=True)
class StoreResult:
    status: StoreStatus
    envelope: EncryptedEnvelope
    cid: str
    size: int
    version: Optional[int] = None
    version_id: Optional[int] = None
    metadata_error: Optional[SecureStorageError] = None

    @property
    def committed(self) -> bool:
        return self.status == StoreStatus.COMMITTED


@dataclass(frozen=True)
class RecoveredPayload:
    payload: SecurePayload
    cid: str
    version: int


@dataclass(frozen=True)
class BatchItemResult:
    key: str
    result: StoreResult


@contextlib.contextmanager
def stage(name: str) -> Iterator[None]:
    """Label pipeline errors raised inside the block with ``name``."""
    try:
        yield
    except SecureStorageError as exc:
        if exc.stage is None:
            exc.stage = name
        raise


class SecureStorageService:
    """Composes codec, cipher, blob store and metadata store."""

    def __init__(
        self,
        blob_store: BlobStoreClient,
        metadata_store: Optional[MetadataStore],
        *,
        cipher: Optional[AesGcmCipher] = None,
        pointer_cache: Optional[PointerCache] = None,
        batch_workers: int = 4,
    ):
        self.blob_store = blob_store
        self.metadata_store = metadata_store
        self.cipher = cipher or AesGcmCipher()
        self.pointer_cache = pointer_cache
        self.batch_workers = max(1, batch_workers)

    def store(self, external_id: str, payload: SecurePayload) -> StoreResult:
        return self._store(external_id, payload)

    def _store(
        self,
        external_id: str,
        payload: SecurePayload,
        item_key: Optional[str] = None,
    ) -> StoreResult:
        with stage("encode"):
            plaintext = codec.encode(payload)
        with stage("encrypt"):
            envelope = self.cipher.encrypt(plaintext)
        with stage("upload"):
            upload = self.blob_store.upload(
                envelope.combined, envelope.iv, envelope.tag
            )
        self._remember(external_id, upload, item_key)

        pending = StoreResult(
            status=StoreStatus.METADATA_PENDING,
            envelope=envelope,
            cid=upload.cid,
            size=upload.size,
        )
        return self.commit_metadata(external_id, pending)

    def commit_metadata(self, external_id: str, result: StoreResult) -> StoreResult:
        """Write (or retry writing) the version row for an uploaded blob."""
        if result.committed:
            return result
        try:
            with stage("append"):
                if self.metadata_store is None:
                    raise MetadataUnavailable("metadata store is not configured")
                user_id = self.metadata_store.ensure_user(external_id)
                version_id, version = self.metadata_store.append_version(
                    user_id, result.cid, result.envelope.key_material.to_json()
                )
        except (MetadataUnavailable, VersionConflict) as exc:
            logger.error(
                "Blob %s uploaded for %s but metadata was not written: %s",
                result.cid,
                external_id,
                exc,
            )
            return replace(
                result, status=StoreStatus.METADATA_PENDING, metadata_error=exc
            )

        logger.info(
            "Stored version %s for %s at %s", version, external_id, result.cid
        )
        return replace(
            result,
            status=StoreStatus.COMMITTED,
            version=version,
            version_id=version_id,
            metadata_error=None,
        )

    def recover(self, external_id: str) -> Optional[RecoveredPayload]:
        if self.metadata_store is None:
            logger.warning("Metadata store not configured; nothing to recover")
            return None

        with stage("lookup"):
            user_id = self.metadata_store.find_user(external_id)
            if user_id is None:
                logger.info("No user row for %s; nothing to recover", external_id)
                return None
            record = self.metadata_store.latest_version(user_id)
            if record is None:
                logger.info("No stored versions for %s", external_id)
                return None
            key_material = record.key_material

        with stage("download"):
            blob = self.blob_store.download(record.cid)
            ciphertext, trailing_tag = blob.split()

        with stage("decrypt"):
            if not (
                hmac.compare_digest(blob.tag, trailing_tag)
                and hmac.compare_digest(blob.tag, key_material.tag)
                and hmac.compare_digest(blob.iv, key_material.iv)
            ):
                raise AuthenticationFailure(
                    f"blob {record.cid} does not match the stored key material"
                )
            plaintext = self.cipher.decrypt(
                ciphertext, key_material.iv, key_material.tag, key_material.key
            )

        with stage("decode"):
            payload = codec.decode(plaintext)

        logger.info("Recovered version %s for %s", record.version, external_id)
        return RecoveredPayload(payload=payload, cid=record.cid, version=record.version)

    def history(self, external_id: str) -> List[VersionRecord]:
        if self.metadata_store is None:
            return []
        with stage("lookup"):
            user_id = self.metadata_store.find_user(external_id)
            if user_id is None:
                return []
            return self.metadata_store.all_versions(user_id)

    def delete_version(self, external_id: str, version_id: int) -> None:
        with stage("delete"):
            if self.metadata_store is None:
                raise MetadataUnavailable("metadata store is not configured")
            user_id = self.metadata_store.find_user(external_id)
            if user_id is None:
                return
            self.metadata_store.delete_version(user_id, version_id)
        if self.pointer_cache is not None:
            self.pointer_cache.clear(external_id)

    def pointer(
        self, external_id: str, item_key: Optional[str] = None
    ) -> Optional[StoragePointer]:
        """
        Where the latest blob lives: metadata store first, then the cache.

        Batch item pointers (``item_key``) only live in the cache.
        """
        if item_key is not None:
            if self.pointer_cache is None:
                return None
            return self.pointer_cache.load(external_id, item_key)
        cached = self.pointer_cache.load(external_id) if self.pointer_cache else None
        if self.metadata_store is None:
            return cached
        try:
            user_id = self.metadata_store.find_user(external_id)
            latest = (
                self.metadata_store.latest_version(user_id)
                if user_id is not None
                else None
            )
        except MetadataUnavailable as exc:
            logger.warning("Metadata lookup failed, using cached pointer: %s", exc)
            return cached
        if latest is None:
            return cached
        if cached is not None and cached.cid == latest.cid:
            return cached
        return StoragePointer(
            user_id=external_id,
            cid=latest.cid,
            size=0,
            created_at=latest.created_at,
            updated_at=latest.created_at,
        )

    def store_many(
        self, external_id: str, items: Sequence[tuple[str, SecurePayload]]
    ) -> List[BatchItemResult]:
        """
        Store independent payloads concurrently.

        A failing item is logged and skipped; results follow input order.
        Each item keeps its own cached pointer, keyed by its batch key.
        """
        if not items:
            return []
        with ThreadPoolExecutor(max_workers=self.batch_workers) as pool:
            futures = [
                (key, pool.submit(self._store, external_id, payload, key))
                for key, payload in items
            ]
            results: List[BatchItemResult] = []
            for key, future in futures:
                try:
                    results.append(BatchItemResult(key=key, result=future.result()))
                except SecureStorageError as exc:
                    logger.error("Failed to store %s for %s: %s", key, external_id, exc)
        return results

    def store_tasks(
        self, external_id: str, tasks: Iterable[Task], cycle_day: int
    ) -> List[BatchItemResult]:
        items = [(task.id, task_payload(task, cycle_day)) for task in tasks]
        return self.store_many(external_id, items)

    def _remember(
        self, external_id: str, upload: UploadResult, item_key: Optional[str] = None
    ) -> None:
        if self.pointer_cache is None:
            return
        existing = self.pointer_cache.load(external_id, item_key)
        pointer = StoragePointer(
            user_id=external_id, cid=upload.cid, size=upload.size, item_key=item_key
        )
        if existing is not None:
            pointer = replace(pointer, created_at=existing.created_at)
        self.pointer_cache.save(pointer)
