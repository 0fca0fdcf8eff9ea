"""
AES-256-GCM encryption under a fresh key and IV per call.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cyra_vault.errors import AuthenticationFailure, InvalidKeyMaterial

KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 12  # 96 bits, GCM standard nonce
TAG_LENGTH = 16  # 128 bits


def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(value: str) -> bytes:
    """Strict base64 decode; raises ``binascii.Error`` or ``ValueError``."""
    if not isinstance(value, str):
        raise ValueError("expected a base64 string")
    return base64.b64decode(value.encode("ascii"), validate=True)


def check_lengths(key: bytes, iv: bytes, tag: bytes) -> None:
    if len(key) != KEY_LENGTH:
        raise InvalidKeyMaterial(
            f"key must be {KEY_LENGTH} bytes, got {len(key)}"
        )
    if len(iv) != IV_LENGTH:
        raise InvalidKeyMaterial(f"iv must be {IV_LENGTH} bytes, got {len(iv)}")
    if len(tag) != TAG_LENGTH:
        raise InvalidKeyMaterial(
            f"tag must be {TAG_LENGTH} bytes, got {len(tag)}"
        )


@dataclass(frozen=True)
class KeyMaterial:
    """The (key, iv, tag) triple needed to open one ciphertext."""

    key: bytes
    iv: bytes
    tag: bytes

    def __post_init__(self):
        check_lengths(self.key, self.iv, self.tag)

    def __repr__(self) -> str:
        return f"KeyMaterial(iv={self.iv.hex()}, tag={self.tag.hex()})"

    def to_json(self) -> str:
        return json.dumps(
            {
                "aesKey": b64encode(self.key),
                "iv": b64encode(self.iv),
                "tag": b64encode(self.tag),
            },
            sort_keys=True,
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "KeyMaterial":
        try:
            document = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise InvalidKeyMaterial(f"key material is not valid JSON: {exc}") from exc
        if not isinstance(document, dict):
            raise InvalidKeyMaterial("key material must be a JSON object")
        if set(document) != {"aesKey", "iv", "tag"}:
            raise InvalidKeyMaterial(
                "key material must have exactly aesKey, iv and tag, got "
                f"{sorted(document)}"
            )
        try:
            key = b64decode(document["aesKey"])
            iv = b64decode(document["iv"])
            tag = b64decode(document["tag"])
        except (binascii.Error, ValueError) as exc:
            raise InvalidKeyMaterial(f"key material is not base64: {exc}") from exc
        return cls(key=key, iv=iv, tag=tag)


@dataclass(frozen=True)
class EncryptedEnvelope:
    ciphertext: bytes
    iv: bytes
    tag: bytes
    key: bytes

    def __repr__(self) -> str:
        return (
            f"EncryptedEnvelope(ciphertext=<{len(self.ciphertext)} bytes>, "
            f"iv={self.iv.hex()}, tag={self.tag.hex()})"
        )

    @property
    def combined(self) -> bytes:
        """Ciphertext with the tag appended, the form used for transport."""
        return self.ciphertext + self.tag

    @property
    def key_material(self) -> KeyMaterial:
        return KeyMaterial(key=self.key, iv=self.iv, tag=self.tag)


class AesGcmCipher:
    """
    Authenticated encryption with AES-256-GCM.

    Every ``encrypt`` call draws a new key and IV from the OS CSPRNG; nothing
    is cached on the instance, so one cipher can be shared across threads.
    """

    def encrypt(self, plaintext: bytes) -> EncryptedEnvelope:
        key = AESGCM.generate_key(bit_length=KEY_LENGTH * 8)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(key).encrypt(iv, plaintext, None)
        # cryptography appends the 16-byte tag to the ciphertext.
        return EncryptedEnvelope(
            ciphertext=sealed[:-TAG_LENGTH],
            iv=iv,
            tag=sealed[-TAG_LENGTH:],
            key=key,
        )

    def decrypt(self, ciphertext: bytes, iv: bytes, tag: bytes, key: bytes) -> bytes:
        check_lengths(key, iv, tag)
        try:
            return AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise AuthenticationFailure(
                "authentication tag did not verify (tampered ciphertext, wrong key or wrong iv)"
            ) from exc

    def open_envelope(self, envelope: EncryptedEnvelope) -> bytes:
        return self.decrypt(envelope.ciphertext, envelope.iv, envelope.tag, envelope.key)
