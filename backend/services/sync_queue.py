"""
File de synchro durable, à bail (lease), indexée par (entité, external_id).

Règles :
- au plus UNE ligne PENDING/PROCESSING par (entity_type, external_id) (coalescence, + index unique partiel)
- claim atomique = seul mécanisme d'exclusion mutuelle entre workers
- reprendre un bail expiré consomme une tentative (worker mort ou item trop long)
- aucune méthode ne commit : la transaction appartient à l'appelant

Machine d'états :
    PENDING -> PROCESSING -> {supprimé (succès), PENDING (retry), FAILED, CONFLICT, SKIPPED}
    FAILED / CONFLICT -> PENDING uniquement via reset() (opérateur)
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.orm import Session

from backend.app.core.clock import utcnow
from backend.app.core.config import Settings
from backend.app.db.models.core_types import (
    ACTIVE_QUEUE_STATUSES,
    OPERATOR_QUEUE_STATUSES,
    ConflictResolution,
    QueueStatus,
    SyncEntity,
    SyncOperation,
)
from backend.app.db.models.models_v1 import SyncQueueItem
from backend.services import metrics
from backend.services.sync_errors import QueueItemNotFound, QueueStateError

logger = logging.getLogger(__name__)


def compute_backoff(attempts: int, base: float, max_delay: float) -> float:
    """backoff(n) = min(base * 2^n, max_delay) : croissant, plafonné."""
    return min(base * (2 ** max(attempts, 0)), max_delay)


class SyncQueue:
    # nb de tentatives de claim quand un autre worker gagne la course
    CLAIM_RACE_RETRIES = 3

    def __init__(self, settings: Settings) -> None:
        self.max_attempts = settings.queue_max_attempts
        self.backoff_base = settings.queue_backoff_base
        self.backoff_max = settings.queue_backoff_max
        self.lease_seconds = settings.item_timeout_seconds

    def backoff(self, attempts: int) -> float:
        return compute_backoff(attempts, self.backoff_base, self.backoff_max)

    # ---------- Lecture ----------
    def get_active(
        self,
        db: Session,
        external_id: str,
        *,
        entity_type: SyncEntity = SyncEntity.unit,
        for_update: bool = False,
    ) -> SyncQueueItem | None:
        stmt = (
            select(SyncQueueItem)
            .where(SyncQueueItem.entity_type == entity_type)
            .where(SyncQueueItem.external_id == external_id)
            .where(SyncQueueItem.status.in_(ACTIVE_QUEUE_STATUSES))
        )
        if for_update:
            stmt = stmt.with_for_update()
        return db.execute(stmt).scalar_one_or_none()

    def latest(self, db: Session, external_id: str, *, entity_type: SyncEntity = SyncEntity.unit) -> SyncQueueItem | None:
        """Dernière ligne connue pour l'entité, tous statuts confondus."""
        return (
            db.execute(
                select(SyncQueueItem)
                .where(SyncQueueItem.entity_type == entity_type)
                .where(SyncQueueItem.external_id == external_id)
                .order_by(SyncQueueItem.id.desc())
                .limit(1)
            )
            .scalars()
            .first()
        )

    def has_active(self, db: Session, external_id: str, *, entity_type: SyncEntity = SyncEntity.unit) -> bool:
        return self.get_active(db, external_id, entity_type=entity_type) is not None

    def list_items(
        self,
        db: Session,
        *,
        status: QueueStatus | None = None,
        entity_type: SyncEntity | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SyncQueueItem]:
        stmt = select(SyncQueueItem).order_by(SyncQueueItem.id.desc()).limit(limit).offset(offset)
        if status is not None:
            stmt = stmt.where(SyncQueueItem.status == status)
        if entity_type is not None:
            stmt = stmt.where(SyncQueueItem.entity_type == entity_type)
        return list(db.execute(stmt).scalars().all())

    def depth_by_status(self, db: Session) -> dict[QueueStatus, int]:
        rows = db.execute(
            select(SyncQueueItem.status, func.count(SyncQueueItem.id)).group_by(SyncQueueItem.status)
        ).all()
        depths = {status: 0 for status in QueueStatus}
        depths.update({status: int(count) for status, count in rows})
        return depths

    def publish_depth(self, db: Session) -> dict[QueueStatus, int]:
        depths = self.depth_by_status(db)
        metrics.set_queue_depth(depths)
        return depths

    # ---------- Écriture : orchestrateur ----------
    def enqueue(
        self,
        db: Session,
        external_id: str,
        snapshot: dict[str, Any],
        *,
        operation: SyncOperation,
        depth: int = 0,
        entity_type: SyncEntity = SyncEntity.unit,
    ) -> tuple[SyncQueueItem, bool]:
        """
        Insère un item PENDING, ou coalesce dans l'item PENDING/PROCESSING existant.

        La révision n'avance que si le snapshot change : un cycle qui revoit
        la même donnée pendant le traitement ne doit pas faire rejouer l'item.

        Retourne (item, coalesced).
        """
        existing = self.get_active(db, external_id, entity_type=entity_type, for_update=True)
        if existing:
            if existing.payload.get("snapshot") != snapshot:
                existing.payload = {"snapshot": snapshot}
                existing.operation = operation
                existing.depth = depth
                existing.revision += 1
                db.flush()
            logger.debug(
                "sync_queue_coalesced",
                extra={"external_id": external_id, "status": existing.status.value, "revision": existing.revision},
            )
            return existing, True

        item = SyncQueueItem(
            entity_type=entity_type,
            external_id=external_id,
            status=QueueStatus.pending,
            operation=operation,
            payload={"snapshot": snapshot},
            depth=depth,
            attempts=0,
            deferrals=0,
            next_eligible_at=utcnow(),
        )
        db.add(item)
        db.flush()
        return item, False

    def refresh_terminal(self, db: Session, item: SyncQueueItem, snapshot: dict[str, Any]) -> None:
        """Item FAILED/CONFLICT : on garde le statut, mais l'opérateur voit la dernière observation."""
        if item.status not in OPERATOR_QUEUE_STATUSES:
            raise QueueStateError(f"Item {item.external_id} is {item.status.value}, not awaiting operator action")
        if item.payload.get("snapshot") != snapshot:
            item.payload = {"snapshot": snapshot}
            item.revision += 1
            db.flush()

    # ---------- Écriture : worker ----------
    def claim(self, db: Session, worker_id: str, lease_duration: float | None = None) -> SyncQueueItem | None:
        """
        Réserve atomiquement un item éligible (PENDING échu, ou PROCESSING à bail expiré).

        UPDATE conditionnel unique (+ SKIP LOCKED sur Postgres) : deux claims
        concurrents ne peuvent jamais obtenir le même item. Reprendre un bail
        expiré compte comme une tentative ratée ; au plafond, c'est au worker
        de passer l'item en FAILED (mark_failed).
        """
        for _ in range(self.CLAIM_RACE_RETRIES):
            now = utcnow()
            lease = timedelta(seconds=lease_duration if lease_duration is not None else self.lease_seconds)
            token = uuid.uuid4().hex

            candidate = (
                select(SyncQueueItem.id)
                .where(self._eligible(now))
                .order_by(SyncQueueItem.depth.asc(), SyncQueueItem.next_eligible_at.asc(), SyncQueueItem.id.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
                .scalar_subquery()
            )
            result = db.execute(
                update(SyncQueueItem)
                .where(SyncQueueItem.id == candidate)
                .where(self._eligible(now))
                .values(
                    attempts=case(
                        (SyncQueueItem.status == QueueStatus.processing, SyncQueueItem.attempts + 1),
                        else_=SyncQueueItem.attempts,
                    ),
                    status=QueueStatus.processing,
                    claimed_by=worker_id,
                    claimed_at=now,
                    lease_expires_at=now + lease,
                    lease_token=token,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                item = db.execute(
                    select(SyncQueueItem)
                    .where(SyncQueueItem.lease_token == token)
                    .execution_options(populate_existing=True)
                ).scalar_one()
                if item.attempts:
                    logger.debug(
                        "sync_queue_claimed_again",
                        extra={"external_id": item.external_id, "attempts": item.attempts},
                    )
                return item

            # course perdue, ou plus rien d'éligible
            if not db.execute(select(SyncQueueItem.id).where(self._eligible(now)).limit(1)).first():
                return None
        return None

    def ack_success(
        self,
        db: Session,
        external_id: str,
        *,
        lease_token: str | None = None,
        revision: int | None = None,
        entity_type: SyncEntity = SyncEntity.unit,
    ) -> None:
        """
        Succès : l'item est supprimé (l'historique fait office d'archive).

        Si un snapshot plus récent a été coalescé pendant le traitement, l'item
        repasse PENDING au lieu d'être supprimé.
        """
        item = self._owned_processing(db, external_id, lease_token, entity_type)
        if revision is not None and item.revision > revision:
            self._release(item, QueueStatus.pending, next_eligible_at=utcnow())
            item.attempts = 0
            db.flush()
            logger.info("sync_queue_requeued_newer_snapshot", extra={"external_id": external_id, "revision": item.revision})
            return
        db.delete(item)
        db.flush()

    def ack_retry(
        self,
        db: Session,
        external_id: str,
        error: str,
        *,
        lease_token: str | None = None,
        entity_type: SyncEntity = SyncEntity.unit,
    ) -> SyncQueueItem:
        item = self._owned_processing(db, external_id, lease_token, entity_type)
        item.attempts += 1
        item.last_error = error
        if item.attempts >= self.max_attempts:
            self._release(item, QueueStatus.failed)
            metrics.RETRY_ATTEMPTS_TOTAL.labels(outcome="exhausted").inc()
            logger.error(
                "sync_queue_item_failed",
                extra={"external_id": external_id, "attempts": item.attempts, "error": error},
            )
        else:
            delay = self.backoff(item.attempts)
            self._release(item, QueueStatus.pending, next_eligible_at=utcnow() + timedelta(seconds=delay))
            metrics.RETRY_ATTEMPTS_TOTAL.labels(outcome="scheduled").inc()
            logger.warning(
                "sync_queue_item_retry",
                extra={"external_id": external_id, "attempts": item.attempts, "delay_seconds": delay, "error": error},
            )
        db.flush()
        return item

    def mark_failed(
        self,
        db: Session,
        external_id: str,
        error: str,
        *,
        lease_token: str | None = None,
        entity_type: SyncEntity = SyncEntity.unit,
    ) -> SyncQueueItem:
        """FAILED sans nouvelle tentative : le plafond a déjà été atteint par des reprises de bail."""
        item = self._owned_processing(db, external_id, lease_token, entity_type)
        item.last_error = error
        self._release(item, QueueStatus.failed)
        db.flush()
        metrics.RETRY_ATTEMPTS_TOTAL.labels(outcome="exhausted").inc()
        logger.error(
            "sync_queue_item_failed",
            extra={"external_id": external_id, "attempts": item.attempts, "error": error},
        )
        return item

    def defer(
        self,
        db: Session,
        external_id: str,
        delay: float,
        reason: str,
        *,
        lease_token: str | None = None,
        min_depth: int | None = None,
        entity_type: SyncEntity = SyncEntity.unit,
    ) -> SyncQueueItem:
        """
        Remise en PENDING après un court délai, SANS consommer de tentative (parent pas encore créé).

        min_depth : l'item repasse derrière la dépendance attendue dans l'ordre de claim.
        """
        item = self._owned_processing(db, external_id, lease_token, entity_type)
        item.deferrals += 1
        item.last_error = reason
        if min_depth is not None and item.depth < min_depth:
            item.depth = min_depth
        self._release(item, QueueStatus.pending, next_eligible_at=utcnow() + timedelta(seconds=delay))
        db.flush()
        return item

    def mark_conflict(
        self,
        db: Session,
        external_id: str,
        error: str | None = None,
        *,
        lease_token: str | None = None,
        entity_type: SyncEntity = SyncEntity.unit,
    ) -> SyncQueueItem:
        item = self._owned_processing(db, external_id, lease_token, entity_type)
        item.last_error = error
        self._release(item, QueueStatus.conflict)
        db.flush()
        return item

    def mark_skipped(
        self,
        db: Session,
        external_id: str,
        reason: str | None = None,
        *,
        lease_token: str | None = None,
        entity_type: SyncEntity = SyncEntity.unit,
    ) -> SyncQueueItem:
        item = self._owned_processing(db, external_id, lease_token, entity_type)
        item.last_error = reason
        self._release(item, QueueStatus.skipped)
        db.flush()
        return item

    # ---------- Écriture : opérateur ----------
    def reset(
        self,
        db: Session,
        external_id: str,
        resolution: ConflictResolution | None = None,
        *,
        entity_type: SyncEntity = SyncEntity.unit,
    ) -> SyncQueueItem:
        """FAILED/CONFLICT -> PENDING (action opérateur explicite), tentatives remises à zéro."""
        item = (
            db.execute(
                select(SyncQueueItem)
                .where(SyncQueueItem.entity_type == entity_type)
                .where(SyncQueueItem.external_id == external_id)
                .where(SyncQueueItem.status.in_(OPERATOR_QUEUE_STATUSES))
                .order_by(SyncQueueItem.id.desc())
                .limit(1)
                .with_for_update()
            )
            .scalars()
            .first()
        )
        if not item:
            if self.latest(db, external_id, entity_type=entity_type) is None:
                raise QueueItemNotFound(f"No queue item for {external_id}")
            raise QueueStateError(f"No FAILED/CONFLICT item to reset for {external_id}")
        if self.has_active(db, external_id, entity_type=entity_type):
            raise QueueStateError(f"{external_id} already has an active queue item")

        item.status = QueueStatus.pending
        item.attempts = 0
        item.deferrals = 0
        item.next_eligible_at = utcnow()
        item.resolution = resolution
        item.last_error = None
        db.flush()
        logger.info(
            "sync_queue_item_reset",
            extra={
                "external_id": external_id,
                "entity_type": entity_type.value,
                "resolution": resolution.value if resolution else None,
            },
        )
        return item

    def cleanup_skipped(self, db: Session, older_than: datetime) -> int:
        """Purge des items SKIPPED anciens (l'historique garde la trace)."""
        result = db.execute(
            delete(SyncQueueItem)
            .where(SyncQueueItem.status == QueueStatus.skipped)
            .where(SyncQueueItem.updated_at < older_than)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    # ---------- Helpers ----------
    @staticmethod
    def _eligible(now: datetime):
        return or_(
            and_(SyncQueueItem.status == QueueStatus.pending, SyncQueueItem.next_eligible_at <= now),
            and_(SyncQueueItem.status == QueueStatus.processing, SyncQueueItem.lease_expires_at < now),
        )

    def _owned_processing(
        self, db: Session, external_id: str, lease_token: str | None, entity_type: SyncEntity = SyncEntity.unit
    ) -> SyncQueueItem:
        item = (
            db.execute(
                select(SyncQueueItem)
                .where(SyncQueueItem.entity_type == entity_type)
                .where(SyncQueueItem.external_id == external_id)
                .where(SyncQueueItem.status == QueueStatus.processing)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            .scalar_one_or_none()
        )
        if not item:
            raise QueueItemNotFound(f"No PROCESSING item for {external_id}")
        if lease_token is not None and item.lease_token != lease_token:
            raise QueueStateError(f"Lease lost on {external_id} (claimed by {item.claimed_by})")
        return item

    @staticmethod
    def _release(item: SyncQueueItem, status: QueueStatus, *, next_eligible_at: datetime | None = None) -> None:
        item.status = status
        item.claimed_by = None
        item.claimed_at = None
        item.lease_expires_at = None
        item.lease_token = None
        if next_eligible_at is not None:
            item.next_eligible_at = next_eligible_at
