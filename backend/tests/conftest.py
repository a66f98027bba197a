import os

# Avant tout import backend.* : la session module-level ne doit pas viser Postgres
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
import requests
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from backend.app.core.config import Settings
from backend.app.db.base import Base
from backend.app.db.models import models_v1  # noqa: F401  (tables)
from backend.app.db.seed import run_seed
from backend.app.db.session import make_session_factory
from backend.services.conflict_resolver import ConflictResolver
from backend.services.history_ledger import HistoryLedger
from backend.services.org_repository import SqlOrganizationalRepository
from backend.services.registry_client import RegistryClient
from backend.services.sync_orchestrator import SyncOrchestrator
from backend.services.sync_queue import SyncQueue
from backend.services.sync_worker import SyncWorker
from backend.tests.fakes import REGISTRY_URL, FakeRegistry


# ---------- CONFIG ----------
@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        registry_base_url=REGISTRY_URL,
        registry_max_attempts=3,
        registry_backoff_base=0,
        registry_backoff_max=0,
        registry_concurrency=2,
        sync_page_size=2,
        queue_max_attempts=3,
        queue_backoff_base=0,
        queue_backoff_max=0,
        item_timeout_seconds=30,
        dependency_defer_seconds=0,
        max_dependency_deferrals=5,
    )


# ---------- DB ----------
def _enable_sqlite_fk(engine) -> None:
    @event.listens_for(engine, "connect")
    def _fk_on(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture
def engine():
    """
    SQLite en mémoire, UNE connexion partagée (StaticPool).

    Toutes les sessions du test voient les mêmes données : un test doit
    commit() ce qu'il prépare avant de lancer orchestrateur / worker.
    """
    eng = create_engine("sqlite://", poolclass=StaticPool, connect_args={"check_same_thread": False})
    _enable_sqlite_fk(eng)
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db_session(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def main_org(db_session):
    return run_seed(db_session)


@pytest.fixture
def repository(db_session) -> SqlOrganizationalRepository:
    return SqlOrganizationalRepository(db_session)


@pytest.fixture
def unit_factory(db_session, repository, main_org):
    """Crée une unité locale déjà synchronisée (registre et local alignés)."""

    def make(external_id: str, name: str | None = None, *, parent: str | None = None, unit_type: str = "DEPT", category: str | None = None):
        fields = {
            "name": name or f"Unit {external_id}",
            "acronym": None,
            "parent": parent,
            "unit_type": unit_type,
            "category": category,
            "is_active": True,
        }
        unit = repository.create(external_id, fields)
        repository.mark_synced(
            unit,
            version=f"seed-{external_id}",
            registry_snapshot=fields,
            synced_state=repository.snapshot(unit).fields,
            locally_modified=False,
        )
        db_session.commit()
        return unit

    return make


# ---------- SERVICES ----------
@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def registry_client(settings, fake_registry) -> RegistryClient:
    sleeps: list[float] = []
    client = RegistryClient.from_settings(settings, session=fake_registry, sleep=sleeps.append)
    client.sleeps = sleeps
    return client


@pytest.fixture
def queue(settings) -> SyncQueue:
    return SyncQueue(settings)


@pytest.fixture
def ledger() -> HistoryLedger:
    return HistoryLedger()


@pytest.fixture
def resolver(settings) -> ConflictResolver:
    return ConflictResolver(settings)


@pytest.fixture
def orchestrator(registry_client, queue, session_factory, settings) -> SyncOrchestrator:
    return SyncOrchestrator(registry_client, queue, session_factory, settings)


@pytest.fixture
def worker(session_factory, queue, ledger, resolver, settings) -> SyncWorker:
    return SyncWorker(session_factory, queue, ledger, resolver, settings, worker_id="worker-test")


@pytest.fixture
def transport_error():
    return requests.ConnectionError("connection refused")
