"""
Metadata store: users and their append-only secure data versions.

Postgres (through SQLAlchemy) in production, an in-memory double for tests.
"""

from __future__ import annotations

import contextlib
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Protocol

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from cyra_vault.cipher import KeyMaterial
from cyra_vault.errors import MetadataUnavailable, VersionConflict

logger = logging.getLogger(__name__)

DEFAULT_MAX_VERSION_RETRIES = 5
VERSION_CONSTRAINT = "uq_user_secure_data_version"


@dataclass(frozen=True)
class VersionRecord:
    id: int
    user_id: int
    cid: str
    key_material_json: str
    version: int
    created_at: float = field(default_factory=lambda: time.time())

    @property
    def key_material(self) -> KeyMaterial:
        return KeyMaterial.from_json(self.key_material_json)

    def as_dict(self) -> dict:
        """Audit view; key material is deliberately left out."""
        return {
            "id": self.id,
            "cid": self.cid,
            "version": self.version,
            "created_at": self.created_at,
        }


class MetadataStore(Protocol):
    """Interface for versioned (user, cid, key material) bookkeeping."""

    def ensure_user(self, external_id: str) -> int:
        ...

    def find_user(self, external_id: str) -> Optional[int]:
        ...

    def next_version(self, user_id: int) -> int:
        ...

    def append_version(
        self, user_id: int, cid: str, key_material_json: str
    ) -> tuple[int, int]:
        ...

    def latest_version(self, user_id: int) -> Optional[VersionRecord]:
        ...

    def all_versions(self, user_id: int) -> List[VersionRecord]:
        ...

    def delete_version(self, user_id: int, version_id: int) -> None:
        ...


def is_version_collision(exc: IntegrityError) -> bool:
    """True when an insert lost the (user_id, version) race."""
    diag = getattr(exc.orig, "diag", None)
    constraint = getattr(diag, "constraint_name", None)
    if constraint:
        return constraint == VERSION_CONSTRAINT
    # SQLite names the columns instead of the constraint.
    message = str(exc.orig)
    return VERSION_CONSTRAINT in message or (
        "UNIQUE constraint failed" in message
        and "user_secure_data_versions.version" in message
    )


class InMemoryMetadataStore:
    """Simple in-memory metadata store for development and tests."""

    def __init__(self):
        self.users: Dict[str, int] = {}
        self.versions: Dict[int, VersionRecord] = {}
        self._next_user_id = 1
        self._next_row_id = 1
        self._lock = threading.Lock()

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.users.clear()
            self.versions.clear()
            self._next_user_id = 1
            self._next_row_id = 1

    def ensure_user(self, external_id: str) -> int:
        with self._lock:
            if external_id not in self.users:
                self.users[external_id] = self._next_user_id
                self._next_user_id += 1
            return self.users[external_id]

    def find_user(self, external_id: str) -> Optional[int]:
        with self._lock:
            return self.users.get(external_id)

    def _versions_for(self, user_id: int) -> List[VersionRecord]:
        # Caller holds self._lock.
        rows = [row for row in self.versions.values() if row.user_id == user_id]
        return sorted(rows, key=lambda row: row.version, reverse=True)

    def _next_version(self, user_id: int) -> int:
        rows = self._versions_for(user_id)
        return rows[0].version + 1 if rows else 1

    def next_version(self, user_id: int) -> int:
        with self._lock:
            return self._next_version(user_id)

    def append_version(
        self, user_id: int, cid: str, key_material_json: str
    ) -> tuple[int, int]:
        with self._lock:
            record = VersionRecord(
                id=self._next_row_id,
                user_id=user_id,
                cid=cid,
                key_material_json=key_material_json,
                version=self._next_version(user_id),
            )
            self.versions[record.id] = record
            self._next_row_id += 1
            return record.id, record.version

    def latest_version(self, user_id: int) -> Optional[VersionRecord]:
        with self._lock:
            rows = self._versions_for(user_id)
        return rows[0] if rows else None

    def all_versions(self, user_id: int) -> List[VersionRecord]:
        with self._lock:
            return self._versions_for(user_id)

    def delete_version(self, user_id: int, version_id: int) -> None:
        with self._lock:
            row = self.versions.get(version_id)
            if row and row.user_id == user_id:
                del self.versions[version_id]


class PostgresMetadataStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).

    Version numbers are computed as max+1 and guarded by a unique constraint on
    (user_id, version); a losing concurrent insert recomputes and retries.
    """

    def __init__(
        self,
        database_url: str,
        *,
        max_version_retries: int = DEFAULT_MAX_VERSION_RETRIES,
    ):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresMetadataStore")
        self.max_version_retries = max(1, max_version_retries)
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            raise MetadataUnavailable(
                f"metadata store failed during {operation}: {exc}"
            ) from exc

    def _to_record(self, row: "SecureDataVersionRow") -> VersionRecord:
        return VersionRecord(
            id=row.id,
            user_id=row.user_id,
            cid=row.cid,
            key_material_json=row.encrypted_aes_key,
            version=row.version,
            created_at=row.created_at,
        )

    def find_user(self, external_id: str) -> Optional[int]:
        with self._guard("find_user"), self.Session() as session:
            stmt = select(UserRow.id).where(UserRow.privy_user_id == external_id)
            return session.execute(stmt).scalar_one_or_none()

    def ensure_user(self, external_id: str) -> int:
        user_id = self.find_user(external_id)
        if user_id is not None:
            return user_id
        with self._guard("ensure_user"), self.Session() as session:
            row = UserRow(privy_user_id=external_id, created_at=time.time())
            session.add(row)
            try:
                session.commit()
                return row.id
            except IntegrityError:
                # Another writer created the user first.
                session.rollback()
        user_id = self.find_user(external_id)
        if user_id is None:
            raise MetadataUnavailable(
                f"user {external_id!r} vanished after a create conflict"
            )
        return user_id

    def next_version(self, user_id: int) -> int:
        with self._guard("next_version"), self.Session() as session:
            stmt = select(func.max(SecureDataVersionRow.version)).where(
                SecureDataVersionRow.user_id == user_id
            )
            current = session.execute(stmt).scalar_one_or_none()
            return (current or 0) + 1

    def append_version(
        self, user_id: int, cid: str, key_material_json: str
    ) -> tuple[int, int]:
        for attempt in range(1, self.max_version_retries + 1):
            version = self.next_version(user_id)
            with self._guard("append_version"), self.Session() as session:
                row = SecureDataVersionRow(
                    user_id=user_id,
                    cid=cid,
                    encrypted_aes_key=key_material_json,
                    version=version,
                    created_at=time.time(),
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError as exc:
                    session.rollback()
                    if not is_version_collision(exc):
                        raise MetadataUnavailable(
                            f"could not append version for user {user_id}: {exc.orig}"
                        ) from exc
                    logger.info(
                        "Version %s for user %s taken (attempt %s/%s); recomputing",
                        version,
                        user_id,
                        attempt,
                        self.max_version_retries,
                    )
                    continue
                return row.id, row.version
        raise VersionConflict(
            f"could not assign a version for user {user_id} after "
            f"{self.max_version_retries} attempts"
        )

    def latest_version(self, user_id: int) -> Optional[VersionRecord]:
        with self._guard("latest_version"), self.Session() as session:
            stmt = (
                select(SecureDataVersionRow)
                .where(SecureDataVersionRow.user_id == user_id)
                .order_by(SecureDataVersionRow.version.desc())
                .limit(1)
            )
            row = session.execute(stmt).scalar_one_or_none()
            return self._to_record(row) if row else None

    def all_versions(self, user_id: int) -> List[VersionRecord]:
        with self._guard("all_versions"), self.Session() as session:
            stmt = (
                select(SecureDataVersionRow)
                .where(SecureDataVersionRow.user_id == user_id)
                .order_by(SecureDataVersionRow.version.desc())
            )
            return [self._to_record(row) for row in session.execute(stmt).scalars()]

    def delete_version(self, user_id: int, version_id: int) -> None:
        with self._guard("delete_version"), self.Session() as session:
            session.execute(
                delete(SecureDataVersionRow).where(
                    SecureDataVersionRow.id == version_id,
                    SecureDataVersionRow.user_id == user_id,
                )
            )
            session.commit()


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    privy_user_id = Column(String, nullable=False, unique=True)
    created_at = Column(Float, nullable=False)


class SecureDataVersionRow(Base):
    __tablename__ = "user_secure_data_versions"
    __table_args__ = (
        UniqueConstraint("user_id", "version", name=VERSION_CONSTRAINT),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    cid = Column(String, nullable=False)
    # JSON text: {"aesKey": ..., "iv": ..., "tag": ...}
    encrypted_aes_key = Column(Text, nullable=False)
    version = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)
