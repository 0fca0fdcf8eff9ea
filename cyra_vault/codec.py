"""
Canonical serialization of the plaintext payload.

The payload is written as ``{"aiPrompt": ..., "userData": ...}`` with sorted
keys and compact separators so identical payloads always produce identical
bytes.
"""

from __future__ import annotations

import copy
import json
import math
from dataclasses import dataclass, field
from typing import Any

from cyra_vault.errors import MalformedPayload

RECORD_FIELD = "userData"
ANNOTATION_FIELD = "aiPrompt"


@dataclass(frozen=True)
class SecurePayload:
    """User planning record plus the free-text annotation sent with it."""

    record: dict[str, Any] = field(default_factory=dict)
    annotation: str = ""

    def __post_init__(self):
        if not isinstance(self.record, dict):
            raise MalformedPayload("record must be a mapping")
        if not isinstance(self.annotation, str):
            raise MalformedPayload("annotation must be a string")
        # Detach from the caller's dict.
        object.__setattr__(self, "record", copy.deepcopy(self.record))

    def as_dict(self) -> dict:
        return {
            RECORD_FIELD: copy.deepcopy(self.record),
            ANNOTATION_FIELD: self.annotation,
        }


def check_json_value(value: Any, path: str = RECORD_FIELD) -> None:
    """Reject anything that would not decode back to an equal value."""
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise MalformedPayload(f"{path} is not a finite number")
        return
    if isinstance(value, list):
        for index, item in enumerate(value):
            check_json_value(item, f"{path}[{index}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise MalformedPayload(f"{path} has a non-string key {key!r}")
            check_json_value(item, f"{path}.{key}")
        return
    raise MalformedPayload(f"{path} has unsupported type {type(value).__name__}")


def canonical_json(value: Any) -> bytes:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def _reject_constant(name: str):
    raise MalformedPayload(f"payload contains non-JSON constant {name}")


def encode(payload: SecurePayload) -> bytes:
    check_json_value(payload.record)
    try:
        return canonical_json(payload.as_dict())
    except (TypeError, ValueError) as exc:
        raise MalformedPayload(f"payload is not JSON serializable: {exc}") from exc


def decode(data: bytes) -> SecurePayload:
    try:
        document = json.loads(data.decode("utf-8"), parse_constant=_reject_constant)
    except UnicodeDecodeError as exc:
        raise MalformedPayload(f"payload is not UTF-8: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise MalformedPayload(f"payload is not valid JSON: {exc}") from exc

    if not isinstance(document, dict):
        raise MalformedPayload("payload must be a JSON object")
    missing = [k for k in (RECORD_FIELD, ANNOTATION_FIELD) if k not in document]
    if missing:
        raise MalformedPayload(f"payload missing fields: {', '.join(missing)}")
    if not isinstance(document[RECORD_FIELD], dict):
        raise MalformedPayload(f"{RECORD_FIELD} must be a JSON object")
    if not isinstance(document[ANNOTATION_FIELD], str):
        raise MalformedPayload(f"{ANNOTATION_FIELD} must be a string")

    return SecurePayload(
        record=document[RECORD_FIELD], annotation=document[ANNOTATION_FIELD]
    )
