from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from backend.app.db.models.core_types import ConflictResolution, QueueStatus, SyncDecision, SyncEntity, SyncOperation


class QueueItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: SyncEntity
    external_id: str
    status: QueueStatus
    operation: SyncOperation
    revision: int
    depth: int
    attempts: int
    deferrals: int
    next_eligible_at: datetime
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    lease_expires_at: datetime | None = None
    last_error: str | None = None
    resolution: ConflictResolution | None = None
    payload: dict[str, Any]
    created_at: datetime
    updated_at: datetime


class QueueStatsRead(BaseModel):
    pending: int = 0
    processing: int = 0
    failed: int = 0
    conflict: int = 0
    skipped: int = 0
    total: int = 0


class ResetRequest(BaseModel):
    # None = simple relance ; sinon décision opérateur sur un CONFLICT
    resolution: ConflictResolution | None = None


class HistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: SyncEntity
    external_id: str
    local_id: int | None = None
    decision: SyncDecision
    snapshot_before: dict[str, Any] | None = None
    snapshot_after: dict[str, Any] | None = None
    affected_fields: list[str] | None = None
    policy: str | None = None
    error: str | None = None
    created_at: datetime


class SyncSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    started_at: datetime
    finished_at: datetime | None = None
    created: int
    updated: int
    conflicted: int
    skipped: int
    failed: int
    invalid: int
    pages: int
    units_seen: int
    cancelled: bool
    organization: str | None = None


class HealthRead(BaseModel):
    database: bool
    registry: bool
    queue: QueueStatsRead
