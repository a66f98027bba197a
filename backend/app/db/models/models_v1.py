from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    String,
    Integer,
    BigInteger,
    Boolean,
    ForeignKey,
    Text,
    Enum,
    Index,
    CheckConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from backend.app.core.clock import utcnow
from backend.app.db.base import Base, JSONType, UTCDateTime
from backend.app.db.models.core_types import (
    QueueStatus,
    SyncEntity,
    SyncOperation,
    SyncDecision,
    ConflictResolution,
)

# BigInteger en prod, INTEGER pour que SQLite fasse l'autoincrement
PK = BigInteger().with_variant(Integer(), "sqlite")


# ---------- ORGANIZATIONAL (collaborator) ----------
class Organization(Base):
    __tablename__ = "organizations"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    external_id: Mapped[str | None] = mapped_column(String(64), unique=True)
    acronym: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_main: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Synchronisation registre (tous les champs appartiennent au registre)
    sync_version: Mapped[str | None] = mapped_column(String(64))
    registry_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


class OrganizationalUnitType(Base):
    __tablename__ = "organizational_unit_types"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class OrganizationalUnitCategory(Base):
    __tablename__ = "organizational_unit_categories"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class OrganizationalUnit(Base):
    __tablename__ = "organizational_units"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("organizational_units.id", ondelete="RESTRICT"),
        index=True,
    )
    external_id: Mapped[str | None] = mapped_column(String(64), unique=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    acronym: Mapped[str | None] = mapped_column(String(50))
    unit_type_id: Mapped[int] = mapped_column(
        ForeignKey("organizational_unit_types.id", ondelete="RESTRICT"),
        nullable=False,
    )
    category_id: Mapped[int] = mapped_column(
        ForeignKey("organizational_unit_categories.id", ondelete="RESTRICT"),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Synchronisation registre
    sync_version: Mapped[str | None] = mapped_column(String(64))
    registry_snapshot: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    synced_state: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    locally_modified_since_sync: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    organization: Mapped[Organization] = relationship()
    unit_type: Mapped[OrganizationalUnitType] = relationship()
    category: Mapped[OrganizationalUnitCategory] = relationship()

    __table_args__ = (
        CheckConstraint("parent_id IS NULL OR parent_id <> id", name="ck_org_units_no_self_parent"),
    )


# ---------- SYNC ----------
class SyncQueueItem(Base):
    __tablename__ = "sync_queue"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    entity_type: Mapped[SyncEntity] = mapped_column(
        Enum(SyncEntity, name="sync_entity"),
        default=SyncEntity.unit,
        nullable=False,
    )
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[QueueStatus] = mapped_column(
        Enum(QueueStatus, name="sync_queue_status"),
        default=QueueStatus.pending,
        nullable=False,
    )
    operation: Mapped[SyncOperation] = mapped_column(Enum(SyncOperation, name="sync_operation"), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    # incrémenté à chaque coalescence, sert à ne pas perdre un snapshot arrivé pendant le traitement
    revision: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # profondeur hiérarchique : les parents passent avant les enfants
    depth: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    # reports pour dépendance parent : ne consomment pas de tentative
    deferrals: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_eligible_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    claimed_by: Mapped[str | None] = mapped_column(String(128))
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    lease_token: Mapped[str | None] = mapped_column(String(32), unique=True)

    last_error: Mapped[str | None] = mapped_column(Text)
    resolution: Mapped[ConflictResolution | None] = mapped_column(
        Enum(ConflictResolution, name="sync_conflict_resolution")
    )

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("attempts >= 0", name="ck_sync_queue_attempts_nonneg"),
        Index("ix_sync_queue_status_eligible", "status", "next_eligible_at"),
        # Coalescence garantie en base : une seule ligne PENDING/PROCESSING par entité
        Index(
            "uq_sync_queue_active_external_id",
            "entity_type",
            "external_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )


class SyncHistory(Base):
    """Ledger append-only : jamais d'UPDATE ni de DELETE (cf. services.history_ledger)."""

    __tablename__ = "sync_history"
    id: Mapped[int] = mapped_column(PK, primary_key=True)
    entity_type: Mapped[SyncEntity] = mapped_column(
        Enum(SyncEntity, name="sync_entity"),
        default=SyncEntity.unit,
        nullable=False,
    )
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    local_id: Mapped[int | None] = mapped_column(BigInteger)
    decision: Mapped[SyncDecision] = mapped_column(Enum(SyncDecision, name="sync_decision"), nullable=False)
    snapshot_before: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    snapshot_after: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    affected_fields: Mapped[list[str] | None] = mapped_column(JSONType)
    policy: Mapped[str | None] = mapped_column(String(255))
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_sync_history_external_time", "entity_type", "external_id", "created_at"),
        Index("ix_sync_history_created_at", "created_at"),
    )
