"""
Pydantic schemas for the secure storage API.
"""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, Field

from cyra_vault.tasks import Task


class StoreRequest(BaseModel):
    record: dict = Field(default_factory=dict)
    annotation: str = Field(default="", max_length=65536)


class KeyMaterialPayload(BaseModel):
    aesKey: str
    iv: str
    tag: str


class StoreResponse(BaseModel):
    status: Literal["COMMITTED", "METADATA_PENDING"]
    cid: str
    size: int
    version: Optional[int] = None
    version_id: Optional[int] = None
    key_material: KeyMaterialPayload
    metadata_error: Optional[str] = None


class RecoverResponse(BaseModel):
    found: bool
    record: Optional[dict] = None
    annotation: Optional[str] = None
    cid: Optional[str] = None
    version: Optional[int] = None


class VersionSummary(BaseModel):
    id: int
    cid: str
    version: int
    created_at: float


class VersionListResponse(BaseModel):
    versions: list[VersionSummary]


class StoreTasksRequest(BaseModel):
    cycle_day: int = Field(..., ge=1, le=60)
    tasks: list[Task] = Field(..., min_length=1, max_length=100)


class TaskStoreSummary(BaseModel):
    task_id: str
    status: Literal["COMMITTED", "METADATA_PENDING"]
    cid: str
    size: int
    version: Optional[int] = None


class StoreTasksResponse(BaseModel):
    stored: list[TaskStoreSummary]
    failed: list[str]


class PointerResponse(BaseModel):
    cid: str
    size: int
    created_at: float
    updated_at: float


class ErrorResponse(BaseModel):
    detail: str
    error: str
    stage: Optional[str] = None
