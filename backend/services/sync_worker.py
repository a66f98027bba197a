"""
Worker de synchro : vide la queue, applique les décisions, trace tout.

Par item :
    1. claim (transaction courte, commit immédiat)
    2. traitement dans UNE transaction : écriture dépôt + entrée d'historique + ack queue
    3. erreur ou bail dépassé -> rollback, puis ack_retry (ou CONFLICT si cycle) dans une nouvelle transaction

Un item repris après abandon de bail a déjà consommé ses tentatives : au
plafond il passe FAILED sans être retraité.

Arrêt gracieux : stop() n'interrompt jamais une transaction en cours, il est
observé entre deux items.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.config import Settings
from backend.app.db.models.core_types import (
    ORGANIZATION_FIELDS,
    UNIT_FIELDS,
    ConflictResolution,
    QueueStatus,
    SyncDecision,
    SyncEntity,
    SyncOperation,
)
from backend.app.db.models.models_v1 import OrganizationalUnit, SyncQueueItem
from backend.app.schemas.registry import RegistryOrganization, RegistryUnit
from backend.services import metrics
from backend.services.conflict_resolver import ConflictResolver, Outcome, Resolution
from backend.services.history_ledger import HistoryEntry, HistoryLedger
from backend.services.org_repository import (
    LocalUnitSnapshot,
    OrganizationalRepository,
    SqlOrganizationalRepository,
)
from backend.services.sync_errors import (
    ItemTimeoutError,
    MissingParentError,
    QueueStateError,
    StructuralConflictError,
    SyncError,
)
from backend.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class ItemOutcome(str, enum.Enum):
    succeeded = "SUCCEEDED"
    deferred = "DEFERRED"
    conflict = "CONFLICT"
    skipped = "SKIPPED"
    retried = "RETRIED"
    failed = "FAILED"
    timed_out = "TIMED_OUT"
    lease_lost = "LEASE_LOST"


@dataclass(frozen=True)
class ClaimedItem:
    """Copie détachée de l'item réclamé : le traitement ne dépend pas de la session du claim."""

    external_id: str
    lease_token: str
    revision: int
    attempts: int
    operation: SyncOperation
    snapshot: dict[str, Any]
    resolution: ConflictResolution | None
    deferrals: int
    entity_type: SyncEntity = SyncEntity.unit

    @classmethod
    def from_row(cls, item: SyncQueueItem) -> "ClaimedItem":
        return cls(
            external_id=item.external_id,
            lease_token=item.lease_token or "",
            revision=item.revision,
            attempts=item.attempts,
            operation=item.operation,
            snapshot=dict((item.payload or {}).get("snapshot") or {}),
            resolution=item.resolution,
            deferrals=item.deferrals,
            entity_type=item.entity_type,
        )


@dataclass(frozen=True)
class ProcessingOutcome:
    external_id: str
    outcome: ItemOutcome
    decision: SyncDecision | None = None
    error: str | None = None


@dataclass
class WorkerStats:
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    conflicts: int = 0
    skipped: int = 0
    deferred: int = 0
    timed_out: int = 0

    def record(self, outcome: ProcessingOutcome) -> None:
        self.processed += 1
        if outcome.outcome == ItemOutcome.succeeded:
            self.succeeded += 1
        elif outcome.outcome == ItemOutcome.failed:
            self.failed += 1
        elif outcome.outcome == ItemOutcome.retried:
            self.retried += 1
        elif outcome.outcome == ItemOutcome.conflict:
            self.conflicts += 1
        elif outcome.outcome == ItemOutcome.skipped:
            self.skipped += 1
        elif outcome.outcome == ItemOutcome.deferred:
            self.deferred += 1
        elif outcome.outcome in (ItemOutcome.timed_out, ItemOutcome.lease_lost):
            self.timed_out += 1


class SyncWorker:
    def __init__(
        self,
        session_factory: sessionmaker,
        queue: SyncQueue,
        ledger: HistoryLedger,
        resolver: ConflictResolver,
        settings: Settings,
        *,
        worker_id: str | None = None,
        repository_factory: Callable[[Session], OrganizationalRepository] = SqlOrganizationalRepository,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self.queue = queue
        self.ledger = ledger
        self.resolver = resolver
        self.repository_factory = repository_factory
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.item_timeout = settings.item_timeout_seconds
        self.defer_seconds = settings.dependency_defer_seconds
        self.max_deferrals = settings.max_dependency_deferrals
        self.stats = WorkerStats()
        self._clock = clock
        self._stop = threading.Event()

    # ---------- Boucle ----------
    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run_once(self, max_items: int | None = None) -> list[ProcessingOutcome]:
        """Vide la queue (ou max_items items) puis rend la main : utile en mode intervalle fixe et en test."""
        outcomes: list[ProcessingOutcome] = []
        while not self._stop.is_set() and (max_items is None or len(outcomes) < max_items):
            outcome = self.process_next()
            if outcome is None:
                break
            outcomes.append(outcome)
        return outcomes

    def run_forever(self, poll_interval: float) -> None:
        logger.info("sync_worker_started", extra={"worker_id": self.worker_id})
        while not self._stop.is_set():
            try:
                outcome = self.process_next()
            except Exception:
                # erreur hors item (DB indisponible pendant le claim...) : on réessaie au prochain tour
                logger.exception("sync_worker_loop_error", extra={"worker_id": self.worker_id})
                outcome = None
            if outcome is None:
                self._stop.wait(poll_interval)
        logger.info("sync_worker_stopped", extra={"worker_id": self.worker_id, **vars(self.stats)})

    def process_next(self) -> ProcessingOutcome | None:
        claimed = self._claim()
        if claimed is None:
            return None

        if claimed.attempts >= self.queue.max_attempts:
            # baux abandonnés jusqu'au plafond : on ne retente pas une énième fois
            outcome = self._fail_exhausted(claimed)
            self.stats.record(outcome)
            return outcome

        started = self._clock()
        failure: Exception | None = None
        structural: StructuralConflictError | None = None
        timed_out = False
        with self.session_factory() as db:
            try:
                outcome = self._process(db, claimed)
                elapsed = self._clock() - started
                if elapsed > self.item_timeout:
                    # bail dépassé : un autre worker peut déjà l'avoir repris, on n'écrit rien
                    db.rollback()
                    logger.warning(
                        "sync_item_timed_out",
                        extra={"external_id": claimed.external_id, "elapsed_seconds": round(elapsed, 3)},
                    )
                    failure = ItemTimeoutError(f"Processing took {elapsed:.3f}s (timeout {self.item_timeout}s)")
                    timed_out = True
                else:
                    db.commit()
            except QueueStateError as e:
                db.rollback()
                logger.warning("sync_item_lease_lost", extra={"external_id": claimed.external_id, "error": str(e)})
                outcome = ProcessingOutcome(claimed.external_id, ItemOutcome.lease_lost, error=str(e))
            except StructuralConflictError as e:
                # cycle vu par le dépôt lui-même (hiérarchie modifiée pendant le traitement)
                db.rollback()
                structural = e
            except Exception as e:
                db.rollback()
                if not isinstance(e, SyncError):
                    logger.exception("sync_item_unexpected_error", extra={"external_id": claimed.external_id})
                failure = e

        # ack_retry / CONFLICT dans une transaction neuve, après rollback complet du traitement
        if failure is not None:
            outcome = self._retry(claimed, failure)
            if timed_out and outcome.outcome is ItemOutcome.retried:
                outcome = ProcessingOutcome(claimed.external_id, ItemOutcome.timed_out, error=outcome.error)
        elif structural is not None:
            outcome = self._conflict_after_rollback(claimed, structural)

        self.stats.record(outcome)
        return outcome

    def _claim(self) -> ClaimedItem | None:
        with self.session_factory() as db:
            try:
                item = self.queue.claim(db, self.worker_id, self.item_timeout)
                claimed = ClaimedItem.from_row(item) if item is not None else None
                db.commit()
            except Exception:
                db.rollback()
                raise
        if claimed is not None:
            logger.debug(
                "sync_item_claimed",
                extra={"external_id": claimed.external_id, "worker_id": self.worker_id, "revision": claimed.revision},
            )
        return claimed

    def _retry(self, claimed: ClaimedItem, error: Exception) -> ProcessingOutcome:
        message = f"{type(error).__name__}: {error}"
        with self.session_factory() as db:
            try:
                item = self.queue.ack_retry(
                    db, claimed.external_id, message, lease_token=claimed.lease_token, entity_type=claimed.entity_type
                )
                if item.status == QueueStatus.failed:
                    self._record_failure(db, claimed, message)
                    outcome = ProcessingOutcome(claimed.external_id, ItemOutcome.failed, SyncDecision.failed, message)
                else:
                    outcome = ProcessingOutcome(claimed.external_id, ItemOutcome.retried, error=message)
                db.commit()
            except QueueStateError as e:
                db.rollback()
                logger.warning("sync_item_lease_lost", extra={"external_id": claimed.external_id, "error": str(e)})
                return ProcessingOutcome(claimed.external_id, ItemOutcome.lease_lost, error=str(e))
        return outcome

    def _fail_exhausted(self, claimed: ClaimedItem) -> ProcessingOutcome:
        message = f"Lease expired without acknowledgement after {claimed.attempts} attempts"
        with self.session_factory() as db:
            try:
                self.queue.mark_failed(
                    db, claimed.external_id, message, lease_token=claimed.lease_token, entity_type=claimed.entity_type
                )
                self._record_failure(db, claimed, message)
                db.commit()
            except QueueStateError as e:
                db.rollback()
                logger.warning("sync_item_lease_lost", extra={"external_id": claimed.external_id, "error": str(e)})
                return ProcessingOutcome(claimed.external_id, ItemOutcome.lease_lost, error=str(e))
        return ProcessingOutcome(claimed.external_id, ItemOutcome.failed, SyncDecision.failed, message)

    def _record_failure(self, db: Session, claimed: ClaimedItem, message: str) -> None:
        self.ledger.append(
            db,
            HistoryEntry(
                entity_type=claimed.entity_type,
                external_id=claimed.external_id,
                decision=SyncDecision.failed,
                snapshot_after=claimed.snapshot,
                error=message,
            ),
        )

    def _conflict_after_rollback(self, claimed: ClaimedItem, error: StructuralConflictError) -> ProcessingOutcome:
        with self.session_factory() as db:
            try:
                outcome = self._conflict(db, claimed, None, None, claimed.snapshot, str(error), tuple(error.fields))
                db.commit()
            except QueueStateError as e:
                db.rollback()
                logger.warning("sync_item_lease_lost", extra={"external_id": claimed.external_id, "error": str(e)})
                return ProcessingOutcome(claimed.external_id, ItemOutcome.lease_lost, error=str(e))
        return outcome

    # ---------- Organisation ----------
    def _process_organization(
        self, db: Session, repository: OrganizationalRepository, claimed: ClaimedItem
    ) -> ProcessingOutcome:
        """Tous les champs appartiennent au registre : création ou mise à jour, jamais de conflit."""
        try:
            external = RegistryOrganization.model_validate(claimed.snapshot)
        except ValidationError as e:
            return self._skip_invalid(db, claimed, f"Invalid snapshot: {e.error_count()} validation errors")
        if external.external_id != claimed.external_id:
            return self._skip_invalid(db, claimed, f"Snapshot external_id {external.external_id} does not match item")

        fields = external.field_snapshot()
        org = repository.get_organization_by_external_id(claimed.external_id)
        if org is None:
            org = repository.create_organization(claimed.external_id, fields)
            before = None
            changed = list(ORGANIZATION_FIELDS)
            decision = SyncDecision.created
        else:
            before = repository.organization_fields(org)
            changes = {name: value for name, value in fields.items() if before.get(name) != value}
            if changes:
                repository.update_organization(org, changes)
            changed = list(changes)
            decision = SyncDecision.updated
        repository.mark_organization_synced(org, version=external.version_hash(), registry_snapshot=fields)

        self.ledger.append(
            db,
            HistoryEntry(
                entity_type=SyncEntity.organization,
                external_id=claimed.external_id,
                decision=decision,
                local_id=org.id,
                snapshot_before=before,
                snapshot_after=repository.organization_fields(org),
                affected_fields=changed,
                policy="registry_wins" if changed else "version_ack",
            ),
        )
        self.queue.ack_success(
            db,
            claimed.external_id,
            lease_token=claimed.lease_token,
            revision=claimed.revision,
            entity_type=SyncEntity.organization,
        )
        logger.info(
            "sync_organization_reconciled",
            extra={"external_id": claimed.external_id, "decision": decision.value, "changed": sorted(changed)},
        )
        return ProcessingOutcome(claimed.external_id, ItemOutcome.succeeded, decision)

    # ---------- Traitement d'un item ----------
    def _process(self, db: Session, claimed: ClaimedItem) -> ProcessingOutcome:
        repository = self.repository_factory(db)
        if claimed.entity_type is SyncEntity.organization:
            return self._process_organization(db, repository, claimed)

        try:
            external = RegistryUnit.model_validate(claimed.snapshot)
        except ValidationError as e:
            return self._skip_invalid(db, claimed, f"Invalid snapshot: {e.error_count()} validation errors")
        if external.external_id != claimed.external_id:
            return self._skip_invalid(db, claimed, f"Snapshot external_id {external.external_id} does not match item")

        unit = repository.get_by_external_id(claimed.external_id)
        fields = external.field_snapshot()

        parent_id: int | None = None
        if claimed.resolution is not ConflictResolution.keep_local:
            parent_ext = fields["parent"]
            if parent_ext is not None and parent_ext != claimed.external_id:
                parent = repository.get_by_external_id(parent_ext)
                if parent is None:
                    return self._defer_or_fail(db, claimed, parent_ext)
                parent_id = parent.id

        if unit is None:
            return self._create(db, repository, claimed, external, fields)

        before = repository.snapshot(unit)
        arena = repository.parent_map()
        if claimed.resolution is not None:
            resolution = self.resolver.resolve_operator(
                before, fields, claimed.resolution, arena=arena, new_parent_id=parent_id
            )
        else:
            resolution = self.resolver.resolve(
                before, fields, before.registry_snapshot, arena=arena, new_parent_id=parent_id
            )
        return self._apply(db, repository, claimed, unit, before, external, resolution)

    def _create(
        self,
        db: Session,
        repository: OrganizationalRepository,
        claimed: ClaimedItem,
        external: RegistryUnit,
        fields: dict[str, Any],
    ) -> ProcessingOutcome:
        if fields["parent"] == claimed.external_id:
            return self._conflict(db, claimed, None, None, fields, "Unit cannot be its own parent", ("parent",))

        unit = repository.create(claimed.external_id, fields)
        after = repository.snapshot(unit).fields
        repository.mark_synced(
            unit,
            version=external.version_hash(),
            registry_snapshot=fields,
            synced_state=after,
            locally_modified=False,
        )
        self.ledger.append(
            db,
            HistoryEntry(
                external_id=claimed.external_id,
                decision=SyncDecision.created,
                local_id=unit.id,
                snapshot_after=after,
                affected_fields=list(UNIT_FIELDS),
                policy="registry_wins",
            ),
        )
        self.queue.ack_success(db, claimed.external_id, lease_token=claimed.lease_token, revision=claimed.revision)
        logger.info("sync_unit_created", extra={"external_id": claimed.external_id, "local_id": unit.id})
        return ProcessingOutcome(claimed.external_id, ItemOutcome.succeeded, SyncDecision.created)

    def _apply(
        self,
        db: Session,
        repository: OrganizationalRepository,
        claimed: ClaimedItem,
        unit: OrganizationalUnit,
        before: LocalUnitSnapshot,
        external: RegistryUnit,
        resolution: Resolution,
    ) -> ProcessingOutcome:
        fields = external.field_snapshot()
        if resolution.outcome is Outcome.conflict:
            return self._conflict(
                db, claimed, before.id, before.fields, fields, resolution.reason or "Conflict", resolution.conflict_fields
            )

        if resolution.changes:
            repository.update(unit, resolution.changes)
        after = repository.snapshot(unit).fields
        repository.mark_synced(
            unit,
            version=external.version_hash(),
            registry_snapshot=fields,
            synced_state=resolution.synced_state,
            locally_modified=resolution.locally_modified,
        )
        self.ledger.append(
            db,
            HistoryEntry(
                external_id=claimed.external_id,
                decision=resolution.decision,
                local_id=before.id,
                snapshot_before=before.fields,
                snapshot_after=after,
                affected_fields=list(resolution.changes),
                policy=resolution.policy,
                error=resolution.reason,
            ),
        )
        self.queue.ack_success(db, claimed.external_id, lease_token=claimed.lease_token, revision=claimed.revision)
        logger.info(
            "sync_unit_reconciled",
            extra={
                "external_id": claimed.external_id,
                "decision": resolution.decision.value,
                "policy": resolution.policy,
                "changed": sorted(resolution.changes),
            },
        )
        outcome = ItemOutcome.skipped if resolution.outcome is Outcome.skip else ItemOutcome.succeeded
        return ProcessingOutcome(claimed.external_id, outcome, resolution.decision)

    def _conflict(
        self,
        db: Session,
        claimed: ClaimedItem,
        local_id: int | None,
        local_fields: dict[str, Any] | None,
        external_fields: dict[str, Any],
        reason: str,
        conflict_fields: tuple[str, ...],
    ) -> ProcessingOutcome:
        self.queue.mark_conflict(db, claimed.external_id, reason, lease_token=claimed.lease_token)
        self.ledger.append(
            db,
            HistoryEntry(
                external_id=claimed.external_id,
                decision=SyncDecision.conflict_detected,
                local_id=local_id,
                snapshot_before=local_fields,
                snapshot_after=external_fields,
                affected_fields=list(conflict_fields),
                policy="manual_review",
                error=reason,
            ),
        )
        metrics.CONFLICTS_TOTAL.labels(reason="cycle" if "cycle" in reason.lower() or "own parent" in reason else "structural").inc()
        logger.warning("sync_unit_conflict", extra={"external_id": claimed.external_id, "reason": reason})
        return ProcessingOutcome(claimed.external_id, ItemOutcome.conflict, SyncDecision.conflict_detected, reason)

    def _skip_invalid(self, db: Session, claimed: ClaimedItem, reason: str) -> ProcessingOutcome:
        self.queue.mark_skipped(
            db, claimed.external_id, reason, lease_token=claimed.lease_token, entity_type=claimed.entity_type
        )
        self.ledger.append(
            db,
            HistoryEntry(
                entity_type=claimed.entity_type,
                external_id=claimed.external_id,
                decision=SyncDecision.skipped,
                snapshot_after=claimed.snapshot,
                policy="invalid_snapshot",
                error=reason,
            ),
        )
        logger.warning(
            "sync_item_skipped",
            extra={"external_id": claimed.external_id, "entity_type": claimed.entity_type.value, "reason": reason},
        )
        return ProcessingOutcome(claimed.external_id, ItemOutcome.skipped, SyncDecision.skipped, reason)

    def _defer_or_fail(self, db: Session, claimed: ClaimedItem, parent_ext: str) -> ProcessingOutcome:
        """Parent absent localement : on attend son propre item s'il est en file, sinon erreur (retry)."""
        parent_item = self.queue.get_active(db, parent_ext)
        if parent_item is not None and claimed.deferrals < self.max_deferrals:
            reason = f"Waiting for parent {parent_ext}"
            self.queue.defer(
                db,
                claimed.external_id,
                self.defer_seconds,
                reason,
                lease_token=claimed.lease_token,
                min_depth=parent_item.depth + 1,
            )
            logger.debug("sync_unit_deferred", extra={"external_id": claimed.external_id, "parent": parent_ext})
            return ProcessingOutcome(claimed.external_id, ItemOutcome.deferred, error=reason)
        raise MissingParentError(f"Parent unit {parent_ext} does not exist locally")
