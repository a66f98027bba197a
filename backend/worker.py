"""
Process de synchro : orchestrateur à intervalle fixe + N threads worker.

    python -m backend.worker            # boucle continue
    python -m backend.worker --once     # un cycle, vidage de la queue, sortie

SIGINT / SIGTERM : arrêt gracieux (plus de claim, la transaction en cours se termine).
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from datetime import timedelta

from backend.app.core.clock import utcnow
from backend.app.core.config import Settings, get_settings
from backend.app.core.logging import setup_logging
from backend.app.db.session import SessionLocal
from backend.services.conflict_resolver import ConflictResolver
from backend.services.history_ledger import HistoryLedger
from backend.services.registry_client import RegistryClient
from backend.services.sync_errors import SyncCycleError
from backend.services.sync_orchestrator import SyncOrchestrator
from backend.services.sync_queue import SyncQueue
from backend.services.sync_worker import SyncWorker

logger = logging.getLogger("backend.worker")


def build_workers(settings: Settings, queue: SyncQueue, count: int) -> list[SyncWorker]:
    ledger = HistoryLedger()
    resolver = ConflictResolver(settings)
    return [
        SyncWorker(SessionLocal, queue, ledger, resolver, settings, worker_id=f"worker-{i + 1}")
        for i in range(count)
    ]


def purge_skipped(queue: SyncQueue, settings: Settings) -> None:
    with SessionLocal() as db:
        removed = queue.cleanup_skipped(db, utcnow() - timedelta(hours=settings.skipped_retention_hours))
        db.commit()
    if removed:
        logger.info("sync_queue_skipped_purged", extra={"removed": removed})


def run_scheduler(orchestrator: SyncOrchestrator, queue: SyncQueue, settings: Settings, stop: threading.Event) -> None:
    while not stop.is_set():
        try:
            orchestrator.run_cycle()
        except SyncCycleError as e:
            # détail déjà loggé par l'orchestrateur
            logger.warning("sync_cycle_retry_next_interval", extra={"error": str(e)})
        purge_skipped(queue, settings)
        stop.wait(settings.sync_interval_seconds)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Organizational unit sync worker")
    parser.add_argument("--once", action="store_true", help="run one cycle, drain the queue and exit")
    parser.add_argument("--workers", type=int, default=None, help="override WORKER_CONCURRENCY")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)

    stop = threading.Event()
    queue = SyncQueue(settings)
    client = RegistryClient.from_settings(settings)
    orchestrator = SyncOrchestrator(client, queue, SessionLocal, settings, cancel_event=stop)
    workers = build_workers(settings, queue, args.workers or settings.worker_concurrency)

    def shutdown(signum, frame) -> None:
        logger.info("sync_shutdown_requested", extra={"signal": signal.Signals(signum).name})
        stop.set()
        for worker in workers:
            worker.stop()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    with client:
        if args.once:
            try:
                summary = orchestrator.run_cycle()
            except SyncCycleError:
                return 1
            for worker in workers:
                worker.run_once()
            processed = sum(worker.stats.processed for worker in workers)
            logger.info("sync_once_done", extra={"units_seen": summary.units_seen, "items_processed": processed})
            return 0

        threads = [
            threading.Thread(
                target=worker.run_forever,
                args=(settings.worker_poll_interval,),
                name=worker.worker_id,
                daemon=True,
            )
            for worker in workers
        ]
        for thread in threads:
            thread.start()

        run_scheduler(orchestrator, queue, settings, stop)

        for thread in threads:
            thread.join(timeout=settings.item_timeout_seconds)
    logger.info("sync_stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
