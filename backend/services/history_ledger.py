"""
Ledger append-only des décisions de synchro.

Une seule opération d'écriture : append(). Toute tentative d'UPDATE/DELETE
d'une ligne via l'ORM lève LedgerImmutableError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import event, select
from sqlalchemy.orm import Session

from backend.app.db.models.core_types import SyncDecision, SyncEntity
from backend.app.db.models.models_v1 import SyncHistory
from backend.services import metrics
from backend.services.sync_errors import LedgerImmutableError


@dataclass(frozen=True)
class HistoryEntry:
    external_id: str
    decision: SyncDecision
    local_id: int | None = None
    snapshot_before: dict[str, Any] | None = None
    snapshot_after: dict[str, Any] | None = None
    affected_fields: list[str] = field(default_factory=list)
    policy: str | None = None
    error: str | None = None
    entity_type: SyncEntity = SyncEntity.unit


class HistoryLedger:
    def append(self, db: Session, entry: HistoryEntry) -> SyncHistory:
        """Ajoute l'entrée dans la transaction de l'appelant (même transaction que l'écriture métier)."""
        row = SyncHistory(
            entity_type=entry.entity_type,
            external_id=entry.external_id,
            local_id=entry.local_id,
            decision=entry.decision,
            snapshot_before=entry.snapshot_before,
            snapshot_after=entry.snapshot_after,
            affected_fields=sorted(entry.affected_fields) or None,
            policy=entry.policy,
            error=entry.error,
        )
        db.add(row)
        db.flush()
        metrics.record_decision(entry.decision.value)
        return row

    def entries_for(
        self, db: Session, external_id: str, *, entity_type: SyncEntity = SyncEntity.unit
    ) -> list[SyncHistory]:
        # lecture pour audit (API opérateur)
        return list(
            db.execute(
                select(SyncHistory)
                .where(SyncHistory.entity_type == entity_type)
                .where(SyncHistory.external_id == external_id)
                .order_by(SyncHistory.created_at.asc(), SyncHistory.id.asc())
            )
            .scalars()
            .all()
        )


@event.listens_for(SyncHistory, "before_update")
def _refuse_update(mapper, connection, target: SyncHistory) -> None:
    raise LedgerImmutableError(f"History entry {target.id} is immutable")


@event.listens_for(SyncHistory, "before_delete")
def _refuse_delete(mapper, connection, target: SyncHistory) -> None:
    raise LedgerImmutableError(f"History entry {target.id} cannot be deleted")
