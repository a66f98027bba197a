from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from backend.app.api.deps import (
    get_app_settings,
    get_db,
    get_history_ledger,
    get_registry_client,
    get_session_factory,
    get_sync_queue,
)
from backend.app.core.config import Settings
from backend.app.db.models.core_types import QueueStatus, SyncEntity
from backend.app.schemas.sync import (
    HealthRead,
    HistoryRead,
    QueueItemRead,
    QueueStatsRead,
    ResetRequest,
    SyncSummaryRead,
)
from backend.services.history_ledger import HistoryLedger
from backend.services.registry_client import RegistryClient
from backend.services.sync_errors import QueueItemNotFound, QueueStateError, SyncCycleError
from backend.services.sync_orchestrator import SyncOrchestrator
from backend.services.sync_queue import SyncQueue

router = APIRouter(prefix="/sync")


def _stats(queue: SyncQueue, db: Session) -> QueueStatsRead:
    depths = queue.publish_depth(db)
    return QueueStatsRead(
        **{status.name: count for status, count in depths.items()},
        total=sum(depths.values()),
    )


@router.get("/queue", response_model=list[QueueItemRead])
def list_queue(
    status: QueueStatus | None = None,
    entity_type: SyncEntity | None = None,
    limit: int = 100,
    offset: int = 0,
    db: Session = Depends(get_db),
    queue: SyncQueue = Depends(get_sync_queue),
):
    if limit < 1 or limit > 500:
        raise HTTPException(status_code=400, detail="limit must be between 1 and 500")
    return queue.list_items(db, status=status, entity_type=entity_type, limit=limit, offset=max(offset, 0))


@router.get("/queue/stats", response_model=QueueStatsRead)
def queue_stats(db: Session = Depends(get_db), queue: SyncQueue = Depends(get_sync_queue)):
    return _stats(queue, db)


@router.post("/queue/{external_id}/reset", response_model=QueueItemRead)
def reset_item(
    external_id: str,
    payload: ResetRequest | None = Body(default=None),
    entity_type: SyncEntity = SyncEntity.unit,
    db: Session = Depends(get_db),
    queue: SyncQueue = Depends(get_sync_queue),
):
    """
    Action opérateur : FAILED / CONFLICT -> PENDING.
    - resolution=accept_registry : le registre s'impose (contrôle de cycle conservé)
    - resolution=keep_local : aucune écriture, la version est juste acquittée
    """
    try:
        item = queue.reset(db, external_id, payload.resolution if payload else None, entity_type=entity_type)
    except QueueItemNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except QueueStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    db.commit()
    db.refresh(item)
    return item


@router.get("/history/{external_id}", response_model=list[HistoryRead])
def unit_history(
    external_id: str,
    entity_type: SyncEntity = SyncEntity.unit,
    db: Session = Depends(get_db),
    ledger: HistoryLedger = Depends(get_history_ledger),
):
    return ledger.entries_for(db, external_id, entity_type=entity_type)


@router.post("/run", response_model=SyncSummaryRead)
def run_cycle(
    client: RegistryClient = Depends(get_registry_client),
    queue: SyncQueue = Depends(get_sync_queue),
    session_factory: sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_app_settings),
):
    """Un cycle complet, synchrone. Les workers appliquent ensuite la queue."""
    orchestrator = SyncOrchestrator(client, queue, session_factory, settings)
    try:
        return orchestrator.run_cycle()
    except SyncCycleError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/health", response_model=HealthRead)
def health(
    db: Session = Depends(get_db),
    queue: SyncQueue = Depends(get_sync_queue),
    client: RegistryClient = Depends(get_registry_client),
):
    try:
        db.execute(select(1))
        database_ok = True
    except SQLAlchemyError:
        database_ok = False

    return HealthRead(
        database=database_ok,
        registry=client.health_check(),
        queue=_stats(queue, db) if database_ok else QueueStatsRead(),
    )
