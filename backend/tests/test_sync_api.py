import pytest
from fastapi.testclient import TestClient

from backend.app.api import deps
from backend.app.db.models.core_types import QueueStatus, SyncDecision, SyncEntity, SyncOperation
from backend.app.main import app
from backend.services.history_ledger import HistoryEntry
from backend.services.registry_client import RegistryClient
from backend.tests.fakes import FakeResponse


@pytest.fixture
def api(session_factory, settings, fake_registry, main_org):
    def _db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    def _client():
        client = RegistryClient.from_settings(settings, session=fake_registry, sleep=lambda _: None)
        try:
            yield client
        finally:
            client.close()

    app.dependency_overrides[deps.get_db] = _db
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory
    app.dependency_overrides[deps.get_app_settings] = lambda: settings
    app.dependency_overrides[deps.get_registry_client] = _client
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def conflicted_item(session_factory, queue):
    with session_factory() as db:
        queue.enqueue(db, "U1", {"external_id": "U1", "name": "U1"}, operation=SyncOperation.update)
        db.commit()
        item = queue.claim(db, "w1")
        queue.mark_conflict(db, "U1", "Structural conflict on parent", lease_token=item.lease_token)
        db.commit()


# ---------- QUEUE ----------
def test_list_queue_filters_by_status(api, conflicted_item, session_factory, queue):
    with session_factory() as db:
        queue.enqueue(db, "U2", {"external_id": "U2"}, operation=SyncOperation.create)
        db.commit()

    r = api.get("/v1/sync/queue")
    assert r.status_code == 200
    assert {row["external_id"] for row in r.json()} == {"U1", "U2"}

    r = api.get("/v1/sync/queue", params={"status": "CONFLICT"})
    assert r.status_code == 200
    rows = r.json()
    assert [row["external_id"] for row in rows] == ["U1"]
    assert rows[0]["last_error"] == "Structural conflict on parent"
    assert rows[0]["deferrals"] == 0


def test_list_queue_rejects_out_of_range_limit(api):
    assert api.get("/v1/sync/queue", params={"limit": 0}).status_code == 400
    assert api.get("/v1/sync/queue", params={"limit": 501}).status_code == 400


def test_queue_stats(api, conflicted_item):
    r = api.get("/v1/sync/queue/stats")

    assert r.status_code == 200
    assert r.json() == {"pending": 0, "processing": 0, "failed": 0, "conflict": 1, "skipped": 0, "total": 1}


# ---------- RESET ----------
def test_reset_unknown_item_is_404(api):
    r = api.post("/v1/sync/queue/NOPE/reset")

    assert r.status_code == 404


def test_reset_pending_item_is_409(api, session_factory, queue):
    with session_factory() as db:
        queue.enqueue(db, "U2", {"external_id": "U2"}, operation=SyncOperation.create)
        db.commit()

    r = api.post("/v1/sync/queue/U2/reset")

    assert r.status_code == 409


def test_reset_conflict_with_operator_resolution(api, conflicted_item):
    r = api.post("/v1/sync/queue/U1/reset", json={"resolution": "accept_registry"})

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == QueueStatus.pending.value
    assert body["resolution"] == "accept_registry"
    assert body["attempts"] == 0
    assert body["last_error"] is None

    # déjà repassé en PENDING : plus rien à relancer
    assert api.post("/v1/sync/queue/U1/reset").status_code == 409


# ---------- HISTORY ----------
def test_history_lists_entries_oldest_first(api, session_factory, ledger):
    with session_factory() as db:
        ledger.append(db, HistoryEntry(external_id="U1", decision=SyncDecision.created, policy="registry_wins"))
        ledger.append(db, HistoryEntry(external_id="U1", decision=SyncDecision.updated, affected_fields=["name"]))
        ledger.append(db, HistoryEntry(external_id="U9", decision=SyncDecision.created))
        db.commit()

    r = api.get("/v1/sync/history/U1")

    assert r.status_code == 200
    assert [e["decision"] for e in r.json()] == ["CREATED", "UPDATED"]
    assert r.json()[1]["affected_fields"] == ["name"]


def test_history_and_queue_filter_by_entity_type(api, session_factory, ledger, queue):
    with session_factory() as db:
        ledger.append(db, HistoryEntry(external_id="X1", decision=SyncDecision.created))
        ledger.append(
            db, HistoryEntry(external_id="X1", decision=SyncDecision.updated, entity_type=SyncEntity.organization)
        )
        queue.enqueue(
            db, "X1", {"external_id": "X1"}, operation=SyncOperation.update, entity_type=SyncEntity.organization
        )
        db.commit()

    r = api.get("/v1/sync/history/X1", params={"entity_type": "ORGANIZATION"})
    assert r.status_code == 200
    assert [(e["decision"], e["entity_type"]) for e in r.json()] == [("UPDATED", "ORGANIZATION")]
    assert [e["decision"] for e in api.get("/v1/sync/history/X1").json()] == ["CREATED"]

    r = api.get("/v1/sync/queue", params={"entity_type": "ORGANIZATION"})
    assert [(row["external_id"], row["entity_type"]) for row in r.json()] == [("X1", "ORGANIZATION")]
    assert api.get("/v1/sync/queue", params={"entity_type": "UNIT"}).json() == []


# ---------- RUN ----------
def test_run_cycle_returns_summary(api, fake_registry):
    fake_registry.put("A", "Direction")
    fake_registry.put("B", "Service", parent="A")

    r = api.post("/v1/sync/run")

    assert r.status_code == 200
    body = r.json()
    assert (body["created"], body["units_seen"], body["cancelled"]) == (2, 2, False)

    stats = api.get("/v1/sync/queue/stats").json()
    assert stats["pending"] == 2


def test_run_cycle_registry_failure_is_502(api, fake_registry):
    fake_registry.script("/units", FakeResponse(401, {"detail": "bad token"}))

    r = api.post("/v1/sync/run")

    assert r.status_code == 502


# ---------- HEALTH / METRICS ----------
def test_health_reports_database_registry_and_queue(api, conflicted_item):
    r = api.get("/v1/sync/health")

    assert r.status_code == 200
    body = r.json()
    assert body["database"] is True
    assert body["registry"] is True
    assert body["queue"]["conflict"] == 1


def test_health_reports_unreachable_registry(api, fake_registry, transport_error):
    fake_registry.script("/health", transport_error)

    r = api.get("/v1/sync/health")

    assert r.status_code == 200
    assert r.json()["registry"] is False


def test_metrics_endpoint_exposes_sync_metrics(api, conflicted_item):
    api.get("/v1/sync/queue/stats")

    r = api.get("/metrics")

    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert 'sync_queue_items{status="CONFLICT"} 1.0' in r.text
