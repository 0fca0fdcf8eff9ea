"""
Error taxonomy for the encrypted storage pipeline.

Every error carries an optional ``stage`` label which the service fills in
(``encode``, ``encrypt``, ``upload``, ``append``, ``lookup``, ``download``,
``decrypt``, ``decode``, ``delete``) before re-raising the same exception object.
"""

from __future__ import annotations

from typing import Optional


class SecureStorageError(Exception):
    """Base class for every failure surfaced by the storage pipeline."""

    retryable = False

    def __init__(self, message: str, *, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class MalformedPayload(SecureStorageError):
    """Decoded bytes are not a valid payload document."""


class InvalidKeyMaterial(SecureStorageError):
    """Key, IV or tag has the wrong shape or length."""


class AuthenticationFailure(SecureStorageError):
    """The GCM tag did not verify; nothing was decrypted."""


class UploadUnavailable(SecureStorageError):
    """No blob store credentials are configured."""


class UploadFailed(SecureStorageError):
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message, stage=stage)
        self.status = status


class ContentNotFound(SecureStorageError):
    def __init__(
        self,
        cid: str,
        message: str,
        *,
        status: Optional[int] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message, stage=stage)
        self.cid = cid
        self.status = status


class MalformedContent(SecureStorageError):
    """Blob resolved but is not a {ciphertext, iv, tag} document."""


class MetadataUnavailable(SecureStorageError):
    """Metadata store is not configured or could not be reached."""


class VersionConflict(SecureStorageError):
    """Version assignment kept colliding with concurrent writers."""
