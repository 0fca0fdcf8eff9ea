"""
Content-addressed blob storage: IPFS through Pinata, plus an in-memory double.

The uploaded document is ``{"ciphertext", "iv", "tag"}`` with every value
base64-encoded. ``ciphertext`` always carries the GCM tag appended, and the
tag is also repeated on its own.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Protocol

import requests

from cyra_vault.cipher import TAG_LENGTH, b64decode, b64encode
from cyra_vault.codec import canonical_json
from cyra_vault.errors import (
    ContentNotFound,
    MalformedContent,
    UploadFailed,
    UploadUnavailable,
)

logger = logging.getLogger(__name__)

BLOB_FILENAME = "encrypted-data.json"
PINATA_DEFAULT_GATEWAY = "https://gateway.pinata.cloud/ipfs"
REQUIRED_FIELDS = ("ciphertext", "iv", "tag")


@dataclass(frozen=True)
class ContentBlob:
    """Decoded blob document. ``ciphertext`` is ciphertext followed by the tag."""

    ciphertext: bytes
    iv: bytes
    tag: bytes

    def to_bytes(self) -> bytes:
        return canonical_json(
            {
                "ciphertext": b64encode(self.ciphertext),
                "iv": b64encode(self.iv),
                "tag": b64encode(self.tag),
            }
        )

    @classmethod
    def from_bytes(cls, raw: bytes) -> "ContentBlob":
        try:
            document = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise MalformedContent(f"blob is not a JSON document: {exc}") from exc
        if not isinstance(document, dict):
            raise MalformedContent("blob must be a JSON object")
        missing = [name for name in REQUIRED_FIELDS if not document.get(name)]
        if missing:
            raise MalformedContent(
                f"blob is missing required fields: {', '.join(missing)}"
            )
        try:
            return cls(
                ciphertext=b64decode(document["ciphertext"]),
                iv=b64decode(document["iv"]),
                tag=b64decode(document["tag"]),
            )
        except (binascii.Error, ValueError) as exc:
            raise MalformedContent(f"blob field is not base64: {exc}") from exc

    def split(self) -> tuple[bytes, bytes]:
        """Return ``(ciphertext, trailing_tag)`` from the combined field."""
        if len(self.ciphertext) < TAG_LENGTH:
            raise MalformedContent(
                f"combined ciphertext shorter than the {TAG_LENGTH}-byte tag"
            )
        return self.ciphertext[:-TAG_LENGTH], self.ciphertext[-TAG_LENGTH:]


@dataclass(frozen=True)
class UploadResult:
    cid: str
    size: int


class BlobStoreClient(Protocol):
    """Operations the pipeline needs from the content-addressed store."""

    def upload(self, ciphertext: bytes, iv: bytes, tag: bytes) -> UploadResult:
        ...

    def download(self, cid: str) -> ContentBlob:
        ...


def compute_cid(data: bytes) -> str:
    """CIDv1 (raw codec, sha2-256) in base32, as IPFS derives for raw leaves."""
    digest = hashlib.sha256(data).digest()
    prefix = bytes([0x01, 0x55, 0x12, 0x20])
    encoded = base64.b32encode(prefix + digest).decode("ascii").lower().rstrip("=")
    return "b" + encoded


@dataclass
class InMemoryBlobStoreClient:
    """Test double for the blob store."""

    stored_objects: dict = field(default_factory=dict)

    def upload(self, ciphertext: bytes, iv: bytes, tag: bytes) -> UploadResult:
        body = ContentBlob(ciphertext=ciphertext, iv=iv, tag=tag).to_bytes()
        cid = compute_cid(body)
        self.stored_objects[cid] = body
        return UploadResult(cid=cid, size=len(body))

    def download(self, cid: str) -> ContentBlob:
        stored = self.stored_objects.get(cid)
        if stored is None:
            raise ContentNotFound(cid, f"no blob stored under {cid}", status=404)
        return ContentBlob.from_bytes(stored)


def _gateway_base(gateway: Optional[str]) -> str:
    if not gateway:
        return PINATA_DEFAULT_GATEWAY
    base = gateway.strip().rstrip("/")
    if not base.startswith(("http://", "https://")):
        base = f"https://{base}"
    if not base.endswith("/ipfs"):
        base = f"{base}/ipfs"
    return base


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason or ""
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("reason") or error)
        if error:
            return str(error)
        if body.get("message"):
            return str(body["message"])
    return json.dumps(body)


class PinataBlobStoreClient:
    """
    Pinata-backed IPFS client.

    Uploads go to the Pinata v3 files endpoint as public files. Downloads try
    the dedicated gateway first and fall back once to a public IPFS gateway.
    """

    def __init__(
        self,
        jwt: Optional[str],
        *,
        gateway: Optional[str] = None,
        upload_url: str = "https://uploads.pinata.cloud/v3/files",
        public_gateway: str = "https://ipfs.io/ipfs",
        timeout: float = 30.0,
    ):
        self.jwt = (jwt or "").strip()
        self.gateway_base = _gateway_base(gateway)
        self.upload_url = upload_url
        self.public_gateway_base = public_gateway.rstrip("/")
        self.timeout = timeout
        self._session: Optional[requests.Session] = None
        self._session_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            with self._session_lock:
                if self._session is None:
                    self._session = requests.Session()
        return self._session

    def upload(self, ciphertext: bytes, iv: bytes, tag: bytes) -> UploadResult:
        if not self.jwt:
            raise UploadUnavailable(
                "Pinata JWT not configured. Set PINATA_JWT in the environment."
            )
        body = ContentBlob(ciphertext=ciphertext, iv=iv, tag=tag).to_bytes()
        try:
            response = self.session.post(
                self.upload_url,
                headers={"Authorization": f"Bearer {self.jwt}"},
                files={"file": (BLOB_FILENAME, body, "application/json")},
                data={"network": "public", "name": BLOB_FILENAME},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise UploadFailed(f"upload request failed: {exc}") from exc

        if not response.ok:
            raise UploadFailed(
                f"blob store rejected upload: HTTP {response.status_code} - "
                f"{_error_message(response)}",
                status=response.status_code,
            )
        try:
            data = response.json().get("data") or {}
        except (ValueError, AttributeError) as exc:
            raise UploadFailed(
                f"blob store returned an unreadable response: {exc}",
                status=response.status_code,
            ) from exc
        cid = data.get("cid")
        if not cid:
            raise UploadFailed(
                "blob store response did not include a CID",
                status=response.status_code,
            )
        size = data.get("size") or len(body)
        logger.info("Uploaded blob %s (%s bytes)", cid, size)
        return UploadResult(cid=cid, size=int(size))

    def _fetch(self, url: str) -> tuple[Optional[bytes], Optional[int], str]:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            return None, None, str(exc)
        if not response.ok:
            return None, response.status_code, response.reason or ""
        return response.content, response.status_code, ""

    def download(self, cid: str) -> ContentBlob:
        primary = f"{self.gateway_base}/{cid}"
        raw, status, reason = self._fetch(primary)
        if raw is None:
            logger.warning(
                "Gateway %s failed for %s (status=%s, %s); trying public gateway",
                self.gateway_base,
                cid,
                status,
                reason,
            )
            raw, status, reason = self._fetch(f"{self.public_gateway_base}/{cid}")
        if raw is None:
            raise ContentNotFound(
                cid,
                f"could not resolve {cid} from any gateway: HTTP {status} - {reason}",
                status=status,
            )
        return ContentBlob.from_bytes(raw)
