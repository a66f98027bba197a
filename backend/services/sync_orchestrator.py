"""
Un cycle de réconciliation : pagination du registre -> diff -> alimentation de la queue.

- organisation de rattachement (si configurée) classée en premier, même logique que les unités
- pagination séquentielle (page N+1 demandée seulement après consommation de la page N)
- détails d'une page récupérés en parallèle, bornés par le sémaphore du client
- une transaction par page
- l'orchestrateur n'écrit JAMAIS dans les tables organisationnelles : il classe et enfile
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from backend.app.core.clock import utcnow
from backend.app.core.config import Settings
from backend.app.db.models.core_types import QueueStatus, SyncEntity, SyncOperation
from backend.app.schemas.registry import RegistryOrganization, RegistryUnit, RegistryUnitSummary
from backend.services import metrics
from backend.services.org_repository import OrganizationalRepository, SqlOrganizationalRepository
from backend.services.registry_client import RegistryClient
from backend.services.sync_errors import (
    PermanentClientError,
    SnapshotValidationError,
    SyncCycleError,
    TransientTransportError,
)
from backend.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)


@dataclass
class SyncSummary:
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None
    created: int = 0
    updated: int = 0
    conflicted: int = 0
    skipped: int = 0
    failed: int = 0
    # sous-ensemble de skipped : enregistrements refusés à la validation
    invalid: int = 0
    pages: int = 0
    units_seen: int = 0
    cancelled: bool = False
    # décision de classement de l'organisation de rattachement (None si non configurée)
    organization: str | None = None


class SyncOrchestrator:
    def __init__(
        self,
        client: RegistryClient,
        queue: SyncQueue,
        session_factory: sessionmaker,
        settings: Settings,
        *,
        repository_factory: Callable[[Session], OrganizationalRepository] = SqlOrganizationalRepository,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.client = client
        self.queue = queue
        self.session_factory = session_factory
        self.page_size = settings.sync_page_size
        self.fetch_concurrency = settings.registry_concurrency
        self.organization_id = settings.registry_organization_id
        self.repository_factory = repository_factory
        self.cancel_event = cancel_event or threading.Event()

    def run_cycle(self) -> SyncSummary:
        summary = SyncSummary()
        logger.info("sync_cycle_started", extra={"page_size": self.page_size})

        try:
            if self.organization_id and not self._cancelled(summary):
                self._sync_organization(summary)
            self._run_pages(summary)
        except (PermanentClientError, TransientTransportError) as e:
            summary.finished_at = utcnow()
            metrics.CYCLES_TOTAL.labels(outcome="aborted").inc()
            logger.error(
                "sync_cycle_aborted",
                extra={"error": str(e), "error_type": type(e).__name__, **self._counters(summary)},
            )
            raise SyncCycleError(f"Sync cycle aborted: {e}", summary=summary) from e
        finally:
            self._publish_depth()

        summary.finished_at = utcnow()
        metrics.CYCLES_TOTAL.labels(outcome="cancelled" if summary.cancelled else "completed").inc()
        logger.info("sync_cycle_finished", extra=self._counters(summary))
        return summary

    # ---------- Organisation ----------
    def _sync_organization(self, summary: SyncSummary) -> None:
        external_id = self.organization_id
        try:
            detail: RegistryOrganization | SnapshotValidationError = self.client.fetch_organization(external_id)
        except SnapshotValidationError as e:
            detail = e

        with self.session_factory() as db:
            try:
                repository = self.repository_factory(db)
                summary.organization = self._classify_organization(db, repository, external_id, detail)
                db.commit()
            except Exception:
                db.rollback()
                raise
        logger.info("sync_organization_classified", extra={"external_id": external_id, "decision": summary.organization})

    def _classify_organization(
        self,
        db: Session,
        repository: OrganizationalRepository,
        external_id: str,
        detail: RegistryOrganization | SnapshotValidationError,
    ) -> str:
        org = repository.get_organization_by_external_id(external_id)
        operation = SyncOperation.create if org is None else SyncOperation.update
        latest = self.queue.latest(db, external_id, entity_type=SyncEntity.organization)

        if isinstance(detail, SnapshotValidationError):
            payload = detail.payload or {}
            logger.warning("sync_organization_invalid", extra={"external_id": external_id, "error": str(detail)})
            if not (latest is not None and latest.status == QueueStatus.skipped and latest.payload.get("snapshot") == payload):
                self.queue.enqueue(db, external_id, payload, operation=operation, entity_type=SyncEntity.organization)
            return "invalid"

        if org is not None and org.sync_version == detail.version_hash():
            return "skipped"

        snapshot = detail.model_dump(mode="json")
        if latest is not None and latest.status in (QueueStatus.conflict, QueueStatus.failed):
            self.queue.refresh_terminal(db, latest, snapshot)
            return latest.status.value.lower()

        self.queue.enqueue(db, external_id, snapshot, operation=operation, entity_type=SyncEntity.organization)
        return "created" if operation == SyncOperation.create else "updated"

    # ---------- Pagination ----------
    def _run_pages(self, summary: SyncSummary) -> None:
        page_number = 1
        while not self._cancelled(summary):
            page = self.client.list_page(page_number, self.page_size)
            summary.pages += 1
            if not page.data:
                break

            details = self._fetch_details(page.data)
            with self.session_factory() as db:
                try:
                    repository = self.repository_factory(db)
                    for unit_summary, detail in details:
                        if self._cancelled(summary):
                            break
                        summary.units_seen += 1
                        self._classify(db, repository, unit_summary, detail, summary)
                    db.commit()
                except Exception:
                    db.rollback()
                    raise

            logger.debug("sync_page_consumed", extra={"page": page_number, "units": len(page.data)})
            if not page.has_next:
                break
            page_number += 1

    def _fetch_details(
        self, summaries: list[RegistryUnitSummary]
    ) -> list[tuple[RegistryUnitSummary, RegistryUnit | SnapshotValidationError]]:
        """Détails en parallèle, résultat dans l'ordre de la page."""
        results: list[tuple[RegistryUnitSummary, RegistryUnit | SnapshotValidationError]] = []
        with ThreadPoolExecutor(max_workers=self.fetch_concurrency, thread_name_prefix="registry-fetch") as pool:
            futures = [pool.submit(self.client.fetch_detail, s.external_id) for s in summaries]
            try:
                for unit_summary, future in zip(summaries, futures):
                    try:
                        results.append((unit_summary, future.result()))
                    except SnapshotValidationError as e:
                        results.append((unit_summary, e))
            except Exception:
                for future in futures:
                    future.cancel()
                raise
        return results

    # ---------- Classification ----------
    def _classify(
        self,
        db: Session,
        repository: OrganizationalRepository,
        unit_summary: RegistryUnitSummary,
        detail: RegistryUnit | SnapshotValidationError,
        summary: SyncSummary,
    ) -> None:
        if isinstance(detail, SnapshotValidationError):
            self._enqueue_invalid(db, repository, unit_summary, detail, summary)
            return

        external_id = detail.external_id
        local = repository.get_by_external_id(external_id)

        # identique au dernier sync : no-op
        if local is not None and local.sync_version == detail.version_hash():
            summary.skipped += 1
            return

        snapshot = detail.model_dump(mode="json")

        # item en attente d'un opérateur : on rafraîchit sa dernière observation, pas de nouvelle ligne
        latest = self.queue.latest(db, external_id)
        if latest is not None and latest.status in (QueueStatus.conflict, QueueStatus.failed):
            self.queue.refresh_terminal(db, latest, snapshot)
            if latest.status == QueueStatus.conflict:
                summary.conflicted += 1
            else:
                summary.failed += 1
            return

        operation = SyncOperation.create if local is None else SyncOperation.update
        self.queue.enqueue(db, external_id, snapshot, operation=operation, depth=self._depth(unit_summary, detail))
        if operation == SyncOperation.create:
            summary.created += 1
        else:
            summary.updated += 1

    def _enqueue_invalid(
        self,
        db: Session,
        repository: OrganizationalRepository,
        unit_summary: RegistryUnitSummary,
        error: SnapshotValidationError,
        summary: SyncSummary,
    ) -> None:
        """Enregistrement refusé : le worker le passera SKIPPED (avec trace dans l'historique)."""
        external_id = unit_summary.external_id
        payload = error.payload or {}
        summary.skipped += 1
        summary.invalid += 1
        logger.warning("sync_unit_invalid", extra={"external_id": external_id, "error": str(error)})

        latest = self.queue.latest(db, external_id)
        if latest is not None and latest.status == QueueStatus.skipped and latest.payload.get("snapshot") == payload:
            return

        local = repository.get_by_external_id(external_id)
        self.queue.enqueue(
            db,
            external_id,
            payload,
            operation=SyncOperation.create if local is None else SyncOperation.update,
            depth=self._depth(unit_summary, None),
        )

    # ---------- Helpers ----------
    @staticmethod
    def _depth(unit_summary: RegistryUnitSummary, detail: RegistryUnit | None) -> int:
        level = (detail.level if detail is not None else None) or unit_summary.level
        return level or 0

    def _cancelled(self, summary: SyncSummary) -> bool:
        if self.cancel_event.is_set():
            if not summary.cancelled:
                logger.info("sync_cycle_cancel_requested", extra={"units_seen": summary.units_seen})
            summary.cancelled = True
        return summary.cancelled

    def _publish_depth(self) -> None:
        with self.session_factory() as db:
            self.queue.publish_depth(db)

    @staticmethod
    def _counters(summary: SyncSummary) -> dict:
        # "created" est un attribut réservé de LogRecord
        return {
            "units_created": summary.created,
            "units_updated": summary.updated,
            "units_conflicted": summary.conflicted,
            "units_skipped": summary.skipped,
            "units_failed": summary.failed,
            "units_invalid": summary.invalid,
            "pages": summary.pages,
            "organization": summary.organization,
        }
