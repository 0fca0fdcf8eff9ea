"""
Non-secure pointer cache remembering where a user's latest blob lives.

Holds only the CID, size and timestamps, never key material. Supports an
in-memory fallback for tests/local runs and a Redis-backed implementation
for production.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


def pointer_key(user_id: str, item_key: Optional[str] = None) -> str:
    """Batch items get their own pointer so they never overwrite the user's."""
    return f"{user_id}:{item_key}" if item_key else user_id


@dataclass(frozen=True)
class StoragePointer:
    user_id: str
    cid: str
    size: int
    item_key: Optional[str] = None
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    @property
    def cache_key(self) -> str:
        return pointer_key(self.user_id, self.item_key)

    def as_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "StoragePointer":
        return cls(
            user_id=data["user_id"],
            cid=data["cid"],
            size=int(data.get("size") or 0),
            item_key=data.get("item_key"),
            created_at=float(data.get("created_at") or 0.0),
            updated_at=float(data.get("updated_at") or 0.0),
        )


class PointerCache(Protocol):
    """Minimal save/load/clear key-value interface."""

    def save(self, pointer: StoragePointer) -> None:
        ...

    def load(
        self, user_id: str, item_key: Optional[str] = None
    ) -> Optional[StoragePointer]:
        ...

    def clear(self, user_id: str, item_key: Optional[str] = None) -> None:
        ...


@dataclass
class InMemoryPointerCache:
    items: dict[str, StoragePointer] = field(default_factory=dict)

    def save(self, pointer: StoragePointer) -> None:
        self.items[pointer.cache_key] = pointer

    def load(
        self, user_id: str, item_key: Optional[str] = None
    ) -> Optional[StoragePointer]:
        return self.items.get(pointer_key(user_id, item_key))

    def clear(self, user_id: str, item_key: Optional[str] = None) -> None:
        self.items.pop(pointer_key(user_id, item_key), None)


@dataclass
class RedisPointerCache:
    """Redis-backed cache storing one JSON document per user."""

    url: str
    prefix: str = "cyra:pointer"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _key(self, user_id: str, item_key: Optional[str] = None) -> str:
        return f"{self.prefix}:{pointer_key(user_id, item_key)}"

    def _reconnect(self) -> None:
        # Connection resets can happen on managed Redis.
        self.client = redis.Redis.from_url(self.url)

    def save(self, pointer: StoragePointer) -> None:
        try:
            self.client.set(
                self._key(pointer.user_id, pointer.item_key),
                json.dumps(pointer.as_dict()),
            )
        except redis_exceptions.RedisError:
            logger.warning("Pointer cache unavailable; %s not cached", pointer.cid)
            self._reconnect()

    def load(
        self, user_id: str, item_key: Optional[str] = None
    ) -> Optional[StoragePointer]:
        try:
            raw = self.client.get(self._key(user_id, item_key))
        except redis_exceptions.RedisError:
            self._reconnect()
            return None
        if raw is None:
            return None
        try:
            return StoragePointer.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable pointer for %s", user_id)
            return None

    def clear(self, user_id: str, item_key: Optional[str] = None) -> None:
        try:
            self.client.delete(self._key(user_id, item_key))
        except redis_exceptions.RedisError:
            self._reconnect()
