from itertools import count

import pytest
from sqlalchemy import select

from backend.app.db.models.core_types import ConflictResolution, QueueStatus, SyncDecision, SyncEntity, SyncOperation
from backend.app.db.models.models_v1 import Organization, OrganizationalUnit, SyncHistory, SyncQueueItem
from backend.services.org_repository import SqlOrganizationalRepository
from backend.services.registry_client import RegistryClient
from backend.services.sync_errors import StructuralConflictError
from backend.services.sync_orchestrator import SyncOrchestrator
from backend.services.sync_worker import ItemOutcome, SyncWorker


def _unit(session_factory, external_id: str):
    with session_factory() as db:
        repo = SqlOrganizationalRepository(db)
        unit = repo.get_by_external_id(external_id)
        return repo.snapshot(unit) if unit else None


def _history(session_factory, external_id: str) -> list[SyncHistory]:
    with session_factory() as db:
        return list(
            db.execute(
                select(SyncHistory).where(SyncHistory.external_id == external_id).order_by(SyncHistory.id)
            ).scalars().all()
        )


def _queue_item(session_factory, external_id: str) -> SyncQueueItem | None:
    with session_factory() as db:
        return db.execute(
            select(SyncQueueItem).where(SyncQueueItem.external_id == external_id).order_by(SyncQueueItem.id.desc())
        ).scalars().first()


def _local_edit(session_factory, external_id: str, **changes):
    with session_factory() as db:
        repo = SqlOrganizationalRepository(db)
        repo.apply_local_change(repo.get_by_external_id(external_id), changes)
        db.commit()


@pytest.fixture
def synced(orchestrator, worker):
    """Cycle complet : orchestrateur puis vidage de la queue."""

    def run():
        summary = orchestrator.run_cycle()
        outcomes = worker.run_once()
        return summary, outcomes

    return run


# ---------- CRÉATION / ORDRE ----------
def test_parent_is_created_before_child(fake_registry, synced, session_factory, main_org):
    """
    GIVEN
    - un registre avec un parent A et un enfant B (B listé avant A)

    THEN
    - l'entrée Created de A précède celle de B
    - B est rattaché à A, niveau 2
    """
    fake_registry.put("A", "Direction", unit_type="DIR")
    fake_registry.put("B", "Service B", parent="A")
    fake_registry.units = {"B": fake_registry.units["B"], "A": fake_registry.units["A"]}

    _, outcomes = synced()

    assert [o.outcome for o in outcomes] == [ItemOutcome.succeeded, ItemOutcome.succeeded]
    created_a, created_b = _history(session_factory, "A")[0], _history(session_factory, "B")[0]
    assert created_a.decision == created_b.decision == SyncDecision.created
    assert created_a.id < created_b.id
    assert created_a.created_at <= created_b.created_at

    a, b = _unit(session_factory, "A"), _unit(session_factory, "B")
    assert b.parent_id == a.id
    assert b.fields["parent"] == "A"
    assert b.fields["unit_type"] == "DEPT"
    assert b.fields["category"] == "DEFAULT"
    assert b.locally_modified_since_sync is False
    assert b.sync_version is not None


def test_child_waits_for_parent_item(queue, worker, fake_registry, session_factory, main_org):
    """
    GIVEN
    - l'item enfant passe en premier (profondeur 0), le parent est encore en file

    THEN
    - l'enfant est différé sans consommer de tentative, puis créé après le parent
    """
    parent = fake_registry.put("P", "Parent")
    child = fake_registry.put("C", "Child", parent="P")
    with session_factory() as db:
        queue.enqueue(db, "C", child, operation=SyncOperation.create, depth=0)
        queue.enqueue(db, "P", parent, operation=SyncOperation.create, depth=3)
        db.commit()

    outcomes = worker.run_once()

    assert [(o.external_id, o.outcome) for o in outcomes] == [
        ("C", ItemOutcome.deferred),
        ("P", ItemOutcome.succeeded),
        ("C", ItemOutcome.succeeded),
    ]
    assert worker.stats.deferred == 1
    assert _unit(session_factory, "C").parent_id == _unit(session_factory, "P").id
    assert _queue_item(session_factory, "C") is None


def test_missing_parent_is_retried_then_failed(queue, worker, fake_registry, session_factory, main_org):
    orphan = fake_registry.put("O", "Orphan", parent="GHOST")
    with session_factory() as db:
        queue.enqueue(db, "O", orphan, operation=SyncOperation.create)
        db.commit()

    outcomes = worker.run_once()

    assert [o.outcome for o in outcomes] == [ItemOutcome.retried, ItemOutcome.retried, ItemOutcome.failed]
    item = _queue_item(session_factory, "O")
    assert item.status == QueueStatus.failed
    assert item.attempts == 3
    assert "GHOST" in item.last_error
    history = _history(session_factory, "O")
    assert [h.decision for h in history] == [SyncDecision.failed]
    assert _unit(session_factory, "O") is None


def test_mutual_parents_stop_deferring(queue, worker, fake_registry, session_factory, main_org):
    x = fake_registry.put("X", "X")
    y = fake_registry.put("Y", "Y", parent="X")
    x["parent_external_id"] = "Y"
    with session_factory() as db:
        queue.enqueue(db, "X", x, operation=SyncOperation.create)
        queue.enqueue(db, "Y", y, operation=SyncOperation.create)
        db.commit()

    worker.run_once(max_items=100)

    assert {_queue_item(session_factory, e).status for e in ("X", "Y")} == {QueueStatus.failed}
    assert worker.stats.deferred <= 2 * 5


# ---------- RÉCONCILIATION ----------
def test_registry_only_change_never_conflicts(fake_registry, synced, session_factory, main_org):
    fake_registry.put("P1", "P1")
    fake_registry.put("P2", "P2")
    fake_registry.put("U1", "U1", parent="P1")
    synced()

    fake_registry.units["U1"].update({"parent_external_id": "P2", "unit_type": "DIV", "name": "U1 bis"})
    _, outcomes = synced()

    assert [(o.external_id, o.decision) for o in outcomes] == [("U1", SyncDecision.updated)]
    u1 = _unit(session_factory, "U1")
    assert u1.fields["parent"] == "P2"
    assert u1.fields["unit_type"] == "DIV"
    assert u1.fields["name"] == "U1 bis"
    assert all(h.decision != SyncDecision.conflict_detected for h in _history(session_factory, "U1"))


def test_merge_keeps_local_category_and_takes_registry_parent(fake_registry, synced, session_factory, main_org):
    """
    GIVEN
    - U1 synchronisé sous P1 (version v1)
    - registre : U1 déplacé sous P2 (v2)
    - local : catégorie de U1 changée depuis v1

    THEN
    - merge, item acquitté, une entrée ConflictResolved : parent=P2, catégorie locale conservée
    """
    fake_registry.put("P1", "P1")
    fake_registry.put("P2", "P2")
    fake_registry.put("U1", "U1", parent="P1")
    synced()
    _local_edit(session_factory, "U1", category="LAB")

    fake_registry.units["U1"]["parent_external_id"] = "P2"
    _, outcomes = synced()

    assert [o.outcome for o in outcomes] == [ItemOutcome.succeeded]
    assert _queue_item(session_factory, "U1") is None
    resolved = [h for h in _history(session_factory, "U1") if h.decision == SyncDecision.conflict_resolved]
    assert len(resolved) == 1
    assert resolved[0].snapshot_after["parent"] == "P2"
    assert resolved[0].snapshot_after["category"] == "LAB"
    assert resolved[0].policy.startswith("merge:")

    u1 = _unit(session_factory, "U1")
    assert u1.fields["parent"] == "P2"
    assert u1.fields["category"] == "LAB"
    assert u1.locally_modified_since_sync is True


def test_parent_moved_under_own_descendant_is_a_conflict(fake_registry, synced, session_factory, main_org):
    """
    GIVEN
    - P > U > D synchronisés
    - le registre annonce U sous D (son propre descendant)

    THEN
    - item CONFLICT, aucune écriture, hiérarchie locale toujours acyclique
    """
    fake_registry.put("P", "P")
    fake_registry.put("U", "U", parent="P")
    fake_registry.put("D", "D", parent="U")
    synced()
    before = _unit(session_factory, "U")

    fake_registry.units["U"]["parent_external_id"] = "D"
    _, outcomes = synced()

    assert [(o.external_id, o.outcome) for o in outcomes] == [("U", ItemOutcome.conflict)]
    assert _queue_item(session_factory, "U").status == QueueStatus.conflict
    after = _unit(session_factory, "U")
    assert after.parent_id == before.parent_id
    assert after.sync_version == before.sync_version
    assert _history(session_factory, "U")[-1].decision == SyncDecision.conflict_detected

    with session_factory() as db:
        arena = SqlOrganizationalRepository(db).parent_map()
    for start in arena:
        seen, node = set(), start
        while node is not None:
            assert node not in seen
            seen.add(node)
            node = arena[node]


def test_structural_conflict_then_operator_accepts_registry(fake_registry, synced, session_factory, main_org, queue, worker):
    fake_registry.put("P1", "P1")
    fake_registry.put("P2", "P2")
    fake_registry.put("P3", "P3")
    fake_registry.put("U1", "U1", parent="P1")
    synced()
    _local_edit(session_factory, "U1", parent="P2")
    fake_registry.units["U1"]["parent_external_id"] = "P3"

    summary, outcomes = synced()
    assert [o.outcome for o in outcomes] == [ItemOutcome.conflict]
    assert _unit(session_factory, "U1").fields["parent"] == "P2"

    # nouveau cycle : l'item en CONFLICT n'est pas dupliqué
    summary, outcomes = synced()
    assert summary.conflicted == 1
    assert outcomes == []

    with session_factory() as db:
        queue.reset(db, "U1", ConflictResolution.accept_registry)
        db.commit()
    outcomes = worker.run_once()

    assert [o.decision for o in outcomes] == [SyncDecision.conflict_resolved]
    u1 = _unit(session_factory, "U1")
    assert u1.fields["parent"] == "P3"
    assert u1.locally_modified_since_sync is False
    assert _history(session_factory, "U1")[-1].policy == "operator:accept_registry"


def test_operator_keep_local_acknowledges_version(fake_registry, synced, session_factory, main_org, queue, worker, orchestrator):
    fake_registry.put("P1", "P1")
    fake_registry.put("P2", "P2")
    fake_registry.put("U1", "U1", parent="P1", unit_type="DEPT")
    synced()
    _local_edit(session_factory, "U1", unit_type="LAB")
    fake_registry.units["U1"]["unit_type"] = "DIV"
    synced()

    with session_factory() as db:
        queue.reset(db, "U1", ConflictResolution.keep_local)
        db.commit()
    worker.run_once()

    assert _unit(session_factory, "U1").fields["unit_type"] == "LAB"
    summary = orchestrator.run_cycle()
    assert summary.updated == 0
    assert summary.skipped == 3


def test_local_change_with_unchanged_fields_is_skipped(fake_registry, synced, session_factory, main_org):
    fake_registry.put("U1", "U1")
    synced()
    _local_edit(session_factory, "U1", name="Renamed locally")
    # nouvelle version côté registre, mêmes champs
    fake_registry.units["U1"]["version"] = "2"

    summary, outcomes = synced()

    assert summary.updated == 1
    assert [(o.outcome, o.decision) for o in outcomes] == [(ItemOutcome.skipped, SyncDecision.skipped)]
    u1 = _unit(session_factory, "U1")
    assert u1.fields["name"] == "Renamed locally"
    assert u1.locally_modified_since_sync is True
    assert _history(session_factory, "U1")[-1].policy == "local_wins"
    assert _queue_item(session_factory, "U1") is None


# ---------- ROBUSTESSE ----------
def test_invalid_payload_is_skipped(queue, worker, session_factory, main_org):
    with session_factory() as db:
        queue.enqueue(db, "BAD", {"external_id": "BAD", "name": ""}, operation=SyncOperation.create)
        db.commit()

    outcome = worker.process_next()

    assert outcome.outcome == ItemOutcome.skipped
    assert _queue_item(session_factory, "BAD").status == QueueStatus.skipped
    assert [h.decision for h in _history(session_factory, "BAD")] == [SyncDecision.skipped]


def _slow_worker(session_factory, queue, ledger, resolver, settings):
    # chaque traitement "dure" 100s pour un bail de 30s
    ticks = count(start=0, step=100)
    return SyncWorker(session_factory, queue, ledger, resolver, settings, worker_id="slow", clock=lambda: next(ticks))


def test_item_exceeding_timeout_is_rolled_back_and_retried(
    session_factory, queue, ledger, resolver, settings, fake_registry, main_org
):
    slow = _slow_worker(session_factory, queue, ledger, resolver, settings)
    unit = fake_registry.put("U1", "U1")
    with session_factory() as db:
        queue.enqueue(db, "U1", unit, operation=SyncOperation.create)
        db.commit()

    outcome = slow.process_next()

    assert outcome.outcome == ItemOutcome.timed_out
    assert _unit(session_factory, "U1") is None
    assert _history(session_factory, "U1") == []
    item = _queue_item(session_factory, "U1")
    assert item.status == QueueStatus.pending
    assert item.attempts == 1
    assert item.claimed_by is None
    assert "ItemTimeoutError" in item.last_error


def test_repeated_timeouts_end_failed(session_factory, queue, ledger, resolver, settings, fake_registry, main_org):
    """
    GIVEN
    - max_attempts = 3, backoff nul
    - un item dont le traitement dépasse toujours le bail

    THEN
    - deux timeouts puis FAILED, avec une entrée d'historique FAILED
    - plus rien à réclamer ensuite
    """
    slow = _slow_worker(session_factory, queue, ledger, resolver, settings)
    unit = fake_registry.put("U1", "U1")
    with session_factory() as db:
        queue.enqueue(db, "U1", unit, operation=SyncOperation.create)
        db.commit()

    outcomes = slow.run_once(max_items=6)

    assert [o.outcome for o in outcomes] == [ItemOutcome.timed_out, ItemOutcome.timed_out, ItemOutcome.failed]
    assert slow.stats.timed_out == 2
    item = _queue_item(session_factory, "U1")
    assert item.status == QueueStatus.failed
    assert item.attempts == 3
    assert [h.decision for h in _history(session_factory, "U1")] == [SyncDecision.failed]
    assert _unit(session_factory, "U1") is None


def test_abandoned_item_fails_once_attempts_are_used_up(queue, worker, fake_registry, session_factory, main_org):
    """Workers morts trois fois de suite sur U1 : le worker suivant le passe FAILED sans le traiter."""
    unit = fake_registry.put("U1", "U1")
    with session_factory() as db:
        queue.enqueue(db, "U1", unit, operation=SyncOperation.create)
        db.commit()
        for n in range(3):
            queue.claim(db, f"dead-{n}", lease_duration=-1)
            db.commit()

    outcome = worker.process_next()

    assert outcome.outcome == ItemOutcome.failed
    assert outcome.decision == SyncDecision.failed
    item = _queue_item(session_factory, "U1")
    assert item.status == QueueStatus.failed
    assert item.attempts == 3
    assert [h.decision for h in _history(session_factory, "U1")] == [SyncDecision.failed]
    assert _unit(session_factory, "U1") is None


def test_cycle_during_processing_with_unchanged_registry_is_not_replayed(
    session_factory, queue, ledger, resolver, settings, fake_registry, orchestrator, main_org
):
    """
    GIVEN
    - U1 nouveau dans le registre
    - un cycle passe entre le claim et le traitement, sans rien de neuf

    THEN
    - un seul traitement : une entrée CREATED, plus d'item en file
    """

    class CycleAfterClaim(SyncWorker):
        def _claim(self):
            claimed = super()._claim()
            if claimed is not None:
                orchestrator.run_cycle()
            return claimed

    fake_registry.put("U1", "U1")
    orchestrator.run_cycle()
    worker = CycleAfterClaim(session_factory, queue, ledger, resolver, settings, worker_id="w")

    outcomes = worker.run_once()

    assert [o.outcome for o in outcomes] == [ItemOutcome.succeeded]
    assert [h.decision for h in _history(session_factory, "U1")] == [SyncDecision.created]
    assert _queue_item(session_factory, "U1") is None


def test_stopped_worker_claims_nothing(queue, worker, fake_registry, session_factory, main_org):
    unit = fake_registry.put("U1", "U1")
    with session_factory() as db:
        queue.enqueue(db, "U1", unit, operation=SyncOperation.create)
        db.commit()

    worker.stop()

    assert worker.run_once() == []
    assert _queue_item(session_factory, "U1").status == QueueStatus.pending


def test_unit_level_follows_parent_moves(fake_registry, synced, session_factory, main_org):
    fake_registry.put("R1", "R1")
    fake_registry.put("R2", "R2")
    fake_registry.put("M", "M", parent="R2")
    fake_registry.put("L", "L", parent="M")
    fake_registry.put("N", "N", parent="R1")
    synced()

    fake_registry.units["M"]["parent_external_id"] = "N"
    synced()

    with session_factory() as db:
        levels = dict(db.execute(select(OrganizationalUnit.external_id, OrganizationalUnit.level)).all())
    assert levels == {"R1": 1, "R2": 1, "N": 2, "M": 3, "L": 4}


def test_cycle_seen_by_repository_becomes_conflict(
    session_factory, queue, ledger, resolver, settings, fake_registry, unit_factory
):
    class CyclicRepository(SqlOrganizationalRepository):
        def update(self, unit, changes):
            raise StructuralConflictError(f"Cycle detected under unit {unit.id}", fields=["parent"])

    unit_factory("U1", "U1")
    fake_registry.put("U1", "U1 renamed")
    with session_factory() as db:
        queue.enqueue(db, "U1", fake_registry.units["U1"], operation=SyncOperation.update)
        db.commit()
    worker = SyncWorker(
        session_factory, queue, ledger, resolver, settings, worker_id="w", repository_factory=CyclicRepository
    )

    outcome = worker.process_next()

    assert outcome.outcome == ItemOutcome.conflict
    assert _queue_item(session_factory, "U1").status == QueueStatus.conflict
    assert _unit(session_factory, "U1").fields["name"] == "U1"
    entry = _history(session_factory, "U1")[-1]
    assert entry.decision == SyncDecision.conflict_detected
    assert entry.affected_fields == ["parent"]


# ---------- ORGANISATION ----------
@pytest.fixture
def org_sync(settings, fake_registry, queue, ledger, resolver, session_factory):
    """Cycle complet avec suivi de l'organisation ORG1."""
    org_settings = settings.model_copy(update={"registry_organization_id": "ORG1"})
    client = RegistryClient.from_settings(org_settings, session=fake_registry, sleep=lambda _: None)
    orchestrator = SyncOrchestrator(client, queue, session_factory, org_settings)
    worker = SyncWorker(session_factory, queue, ledger, resolver, org_settings, worker_id="org-worker")

    def run():
        summary = orchestrator.run_cycle()
        outcomes = worker.run_once()
        return summary, outcomes

    return run


def _organizations(session_factory) -> list[Organization]:
    with session_factory() as db:
        return list(db.execute(select(Organization).order_by(Organization.id)).scalars().all())


def test_organization_sync_links_main_org_then_follows_registry(
    org_sync, fake_registry, session_factory, ledger, main_org
):
    """
    GIVEN
    - l'organisation principale du seed, sans external_id
    - ORG1 dans le registre

    THEN
    - 1er cycle : la principale est rattachée à ORG1 (pas de doublon), entrée CREATED
    - renommage côté registre : UPDATED sur le seul champ name
    - registre inchangé : rien n'est enfilé
    """
    fake_registry.put_org("ORG1", "Ministère de la Mer", "MM")
    fake_registry.put("U1", "U1")

    summary, outcomes = org_sync()

    assert summary.organization == "created"
    assert [(o.external_id, o.outcome) for o in outcomes] == [
        ("ORG1", ItemOutcome.succeeded),
        ("U1", ItemOutcome.succeeded),
    ]
    orgs = _organizations(session_factory)
    assert len(orgs) == 1
    assert (orgs[0].id, orgs[0].external_id, orgs[0].acronym, orgs[0].is_main) == (main_org.id, "ORG1", "MM", True)
    assert orgs[0].sync_version is not None

    fake_registry.put_org("ORG1", "Ministère de la Mer et des Îles", "MM")
    summary, outcomes = org_sync()

    assert summary.organization == "updated"
    assert [o.decision for o in outcomes] == [SyncDecision.updated]
    assert _organizations(session_factory)[0].name == "Ministère de la Mer et des Îles"

    summary, outcomes = org_sync()
    assert summary.organization == "skipped"
    assert outcomes == []

    with session_factory() as db:
        entries = ledger.entries_for(db, "ORG1", entity_type=SyncEntity.organization)
        assert [e.decision for e in entries] == [SyncDecision.created, SyncDecision.updated]
        assert entries[1].affected_fields == ["name"]
        assert entries[1].snapshot_before["name"] == "Ministère de la Mer"
        assert entries[1].local_id == main_org.id
        # l'historique des unités ne voit pas ces entrées
        assert ledger.entries_for(db, "ORG1") == []


def test_organization_is_created_when_main_org_is_already_linked(
    org_sync, fake_registry, session_factory, db_session, main_org
):
    main_org.external_id = "OTHER"
    db_session.commit()
    fake_registry.put_org("ORG1", "Agence", "AG", is_active=False)

    _, outcomes = org_sync()

    assert [o.decision for o in outcomes] == [SyncDecision.created]
    orgs = _organizations(session_factory)
    assert [(o.external_id, o.is_main, o.is_active) for o in orgs] == [("OTHER", True, True), ("ORG1", False, False)]


def test_invalid_organization_is_skipped_once(org_sync, fake_registry, session_factory, queue, main_org):
    fake_registry.organizations["ORG1"] = {"external_id": "ORG1", "name": "", "acronym": "X"}

    summary, outcomes = org_sync()

    assert summary.organization == "invalid"
    assert [o.outcome for o in outcomes] == [ItemOutcome.skipped]
    with session_factory() as db:
        item = queue.latest(db, "ORG1", entity_type=SyncEntity.organization)
        assert item.status == QueueStatus.skipped
    assert [h.decision for h in _history(session_factory, "ORG1")] == [SyncDecision.skipped]

    # même payload au cycle suivant : pas de nouvel item
    _, outcomes = org_sync()
    assert outcomes == []
    assert _organizations(session_factory)[0].external_id is None
