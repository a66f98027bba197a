"""
Résolution de divergence entre copie locale et registre, pour UNE unité.

Entrées :
    - snapshot local (valeurs courantes, état de référence au dernier sync,
      drapeau locally_modified_since_sync)
    - snapshot externe nouvellement lu
    - snapshot externe enregistré au dernier sync réussi

Règles (dans l'ordre) :
    1. local non modifié                          -> le registre gagne (update simple)
    2. local modifié, registre inchangé           -> le local gagne (skip)
    3. les deux ont changé un même champ STRUCTUREL vers des valeurs différentes -> conflit, aucune écriture
    4. sinon                                       -> merge selon la partition des champs
    5. tout changement de parent qui créerait un cycle -> conflit, quel que soit 1..4

Pas d'accès DB ici : la hiérarchie arrive sous forme d'arène id -> parent_id.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from backend.app.core.config import Settings
from backend.app.db.models.core_types import UNIT_FIELDS, ConflictResolution, SyncDecision
from backend.services.org_repository import LocalUnitSnapshot


class Outcome(str, enum.Enum):
    apply = "APPLY"
    skip = "SKIP"
    conflict = "CONFLICT"


@dataclass(frozen=True)
class Resolution:
    outcome: Outcome
    decision: SyncDecision
    changes: dict[str, Any] = field(default_factory=dict)
    synced_state: dict[str, Any] = field(default_factory=dict)
    locally_modified: bool = False
    policy: str | None = None
    external_changed: frozenset[str] = frozenset()
    local_changed: frozenset[str] = frozenset()
    conflict_fields: tuple[str, ...] = ()
    reason: str | None = None


def creates_cycle(arena: Mapping[int, int | None], unit_id: int, new_parent_id: int | None) -> bool:
    """Vrai si rattacher unit_id sous new_parent_id referme une boucle."""
    node = new_parent_id
    seen: set[int] = set()
    while node is not None:
        if node == unit_id or node in seen:
            return True
        seen.add(node)
        node = arena.get(node)
    return False


def changed_fields(current: Mapping[str, Any], reference: Mapping[str, Any]) -> frozenset[str]:
    return frozenset(f for f in UNIT_FIELDS if current.get(f) != reference.get(f))


class ConflictResolver:
    def __init__(self, settings: Settings) -> None:
        self.registry_owned = frozenset(settings.registry_owned_fields)
        self.locally_owned = frozenset(settings.locally_owned_fields)
        self.structural = frozenset(settings.structural_fields)

    def resolve(
        self,
        local: LocalUnitSnapshot,
        external: Mapping[str, Any],
        previous_external: Mapping[str, Any] | None,
        *,
        arena: Mapping[int, int | None],
        new_parent_id: int | None,
    ) -> Resolution:
        """
        external / previous_external : champs au format UNIT_FIELDS.
        new_parent_id : id local du parent désigné par `external` (None = racine).
        """
        # jamais synchronisée : on compare à l'état local connu
        previous = previous_external if previous_external is not None else (local.synced_state or local.fields)
        baseline = local.synced_state or dict(previous)

        external_changed = changed_fields(external, previous)
        local_changed = changed_fields(local.fields, baseline) if local.locally_modified_since_sync else frozenset()

        # ---------- Règle 1 : local intact -> le registre gagne ----------
        if not local_changed:
            changes = self._registry_changes(local.fields, external)
            merged = {**local.fields, **changes}
            resolution = Resolution(
                outcome=Outcome.apply,
                decision=SyncDecision.updated,
                changes=changes,
                synced_state=merged,
                locally_modified=False,
                # version_ack : rien à écrire, seule la nouvelle version du registre est acquittée
                policy="registry_wins" if changes else "version_ack",
                external_changed=external_changed,
                local_changed=local_changed,
            )
            return self._check_hierarchy(resolution, local, external, arena, new_parent_id)

        # ---------- Règle 2 : registre inchangé -> le local gagne ----------
        if not external_changed:
            return Resolution(
                outcome=Outcome.skip,
                decision=SyncDecision.skipped,
                synced_state=dict(baseline),
                locally_modified=True,
                policy="local_wins",
                external_changed=external_changed,
                local_changed=local_changed,
                reason="Local changes since last sync, registry unchanged",
            )

        # ---------- Règle 3 : chevauchement structurel -> conflit ----------
        # même valeur des deux côtés : convergence, pas conflit
        overlap = {f for f in external_changed & local_changed if local.fields.get(f) != external.get(f)}
        structural_overlap = tuple(sorted(overlap & self.structural))
        if structural_overlap:
            return self._conflict(
                f"Both sides changed structural fields: {', '.join(structural_overlap)}",
                structural_overlap,
                external_changed,
                local_changed,
            )

        # ---------- Règle 4 : merge ----------
        winners: dict[str, str] = {}
        changes: dict[str, Any] = {}
        for f in sorted(external_changed | local_changed):
            if f in external_changed and f in self.registry_owned:
                winners[f] = "registry"
                if local.fields.get(f) != external.get(f):
                    changes[f] = external.get(f)
            else:
                winners[f] = "local"

        merged = {**local.fields, **changes}
        synced_state = self._baseline_after(baseline, external)
        resolution = Resolution(
            outcome=Outcome.apply,
            decision=SyncDecision.conflict_resolved,
            changes=changes,
            synced_state=synced_state,
            locally_modified=changed_fields(merged, synced_state) != frozenset(),
            policy="merge:" + ",".join(f"{f}={w}" for f, w in winners.items()),
            external_changed=external_changed,
            local_changed=local_changed,
        )
        return self._check_hierarchy(resolution, local, external, arena, new_parent_id)

    def resolve_operator(
        self,
        local: LocalUnitSnapshot,
        external: Mapping[str, Any],
        resolution: ConflictResolution,
        *,
        arena: Mapping[int, int | None],
        new_parent_id: int | None,
    ) -> Resolution:
        """Décision explicite d'un opérateur sur un item en CONFLICT (reset avec résolution)."""
        baseline = local.synced_state or dict(local.fields)
        synced_state = self._baseline_after(baseline, external)
        policy = f"operator:{resolution.value}"

        if resolution is ConflictResolution.keep_local:
            return Resolution(
                outcome=Outcome.apply,
                decision=SyncDecision.conflict_resolved,
                synced_state=synced_state,
                locally_modified=changed_fields(local.fields, synced_state) != frozenset(),
                policy=policy,
            )

        changes = self._registry_changes(local.fields, external)
        merged = {**local.fields, **changes}
        candidate = Resolution(
            outcome=Outcome.apply,
            decision=SyncDecision.conflict_resolved,
            changes=changes,
            synced_state=synced_state,
            locally_modified=changed_fields(merged, synced_state) != frozenset(),
            policy=policy,
        )
        return self._check_hierarchy(candidate, local, external, arena, new_parent_id)

    # ---------- Helpers ----------
    def _registry_changes(self, current: Mapping[str, Any], external: Mapping[str, Any]) -> dict[str, Any]:
        return {
            f: external.get(f)
            for f in UNIT_FIELDS
            if f in self.registry_owned and current.get(f) != external.get(f)
        }

    def _baseline_after(self, baseline: Mapping[str, Any], external: Mapping[str, Any]) -> dict[str, Any]:
        # champs du registre : nouvelle valeur externe ; champs locaux : référence inchangée
        return {
            f: (external.get(f) if f in self.registry_owned else baseline.get(f))
            for f in UNIT_FIELDS
        }

    def _check_hierarchy(
        self,
        resolution: Resolution,
        local: LocalUnitSnapshot,
        external: Mapping[str, Any],
        arena: Mapping[int, int | None],
        new_parent_id: int | None,
    ) -> Resolution:
        # Règle 5
        if "parent" not in resolution.changes:
            return resolution
        if external.get("parent") is not None and external.get("parent") == local.external_id:
            return self._conflict("Unit cannot be its own parent", ("parent",), resolution.external_changed, resolution.local_changed)
        if creates_cycle(arena, local.id, new_parent_id):
            return self._conflict(
                f"Parent change to {external.get('parent')} would create a cycle",
                ("parent",),
                resolution.external_changed,
                resolution.local_changed,
            )
        return resolution

    @staticmethod
    def _conflict(
        reason: str,
        fields: tuple[str, ...],
        external_changed: frozenset[str],
        local_changed: frozenset[str],
    ) -> Resolution:
        return Resolution(
            outcome=Outcome.conflict,
            decision=SyncDecision.conflict_detected,
            policy="manual_review",
            external_changed=external_changed,
            local_changed=local_changed,
            conflict_fields=fields,
            reason=reason,
        )
