"""
Port "dépôt organisationnel" consommé par la synchro + variante SQL.

Le dépôt appartient à l'application englobante : la synchro le reçoit à la
construction (injection), jamais via un global.

Vocabulaire des champs échangés (UNIT_FIELDS) :
    name, acronym, parent (external_id du parent), unit_type (code),
    category (code), is_active

Organisation (ORGANIZATION_FIELDS) : acronym, name, is_active
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.app.core.clock import utcnow
from backend.app.db.models.core_types import ORGANIZATION_FIELDS, UNIT_FIELDS
from backend.app.db.models.models_v1 import (
    Organization,
    OrganizationalUnit,
    OrganizationalUnitCategory,
    OrganizationalUnitType,
)
from backend.services.sync_errors import MissingParentError, RepositoryWriteError, StructuralConflictError

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY_CODE = "DEFAULT"


@dataclass(frozen=True)
class LocalUnitSnapshot:
    id: int
    external_id: str | None
    parent_id: int | None
    fields: dict[str, Any]
    sync_version: str | None
    registry_snapshot: dict[str, Any] | None
    synced_state: dict[str, Any] | None
    locally_modified_since_sync: bool


class OrganizationalRepository(Protocol):
    def get(self, unit_id: int) -> OrganizationalUnit | None: ...

    def get_by_external_id(self, external_id: str) -> OrganizationalUnit | None: ...

    def snapshot(self, unit: OrganizationalUnit) -> LocalUnitSnapshot: ...

    def create(self, external_id: str, fields: dict[str, Any]) -> OrganizationalUnit: ...

    def update(self, unit: OrganizationalUnit, changes: dict[str, Any]) -> OrganizationalUnit: ...

    def mark_synced(
        self,
        unit: OrganizationalUnit,
        *,
        version: str,
        registry_snapshot: dict[str, Any],
        synced_state: dict[str, Any],
        locally_modified: bool,
    ) -> None: ...

    def list_children(self, unit_id: int) -> list[OrganizationalUnit]: ...

    def parent_map(self) -> dict[int, int | None]: ...

    def apply_local_change(self, unit: OrganizationalUnit, changes: dict[str, Any]) -> OrganizationalUnit: ...

    def get_organization_by_external_id(self, external_id: str) -> Organization | None: ...

    def organization_fields(self, org: Organization) -> dict[str, Any]: ...

    def create_organization(self, external_id: str, fields: dict[str, Any]) -> Organization: ...

    def update_organization(self, org: Organization, changes: dict[str, Any]) -> Organization: ...

    def mark_organization_synced(self, org: Organization, *, version: str, registry_snapshot: dict[str, Any]) -> None: ...


class SqlOrganizationalRepository:
    """Variante SQLAlchemy : travaille dans la session (et la transaction) fournie."""

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---------- Lecture ----------
    def get(self, unit_id: int) -> OrganizationalUnit | None:
        return self.db.get(OrganizationalUnit, unit_id)

    def get_by_external_id(self, external_id: str) -> OrganizationalUnit | None:
        return self.db.execute(
            select(OrganizationalUnit).where(OrganizationalUnit.external_id == external_id)
        ).scalar_one_or_none()

    def list_children(self, unit_id: int) -> list[OrganizationalUnit]:
        return list(
            self.db.execute(
                select(OrganizationalUnit)
                .where(OrganizationalUnit.parent_id == unit_id)
                .order_by(OrganizationalUnit.id)
            )
            .scalars()
            .all()
        )

    def parent_map(self) -> dict[int, int | None]:
        """Arène id -> parent_id de toute la hiérarchie (références par id, jamais par objet)."""
        rows = self.db.execute(select(OrganizationalUnit.id, OrganizationalUnit.parent_id)).all()
        return {int(uid): (int(pid) if pid is not None else None) for uid, pid in rows}

    def current_fields(self, unit: OrganizationalUnit) -> dict[str, Any]:
        parent_external_id = None
        if unit.parent_id is not None:
            parent = self.db.get(OrganizationalUnit, unit.parent_id)
            parent_external_id = parent.external_id if parent else None
        return {
            "name": unit.name,
            "acronym": unit.acronym,
            "parent": parent_external_id,
            "unit_type": unit.unit_type.code,
            "category": unit.category.code,
            "is_active": unit.is_active,
        }

    def snapshot(self, unit: OrganizationalUnit) -> LocalUnitSnapshot:
        return LocalUnitSnapshot(
            id=unit.id,
            external_id=unit.external_id,
            parent_id=unit.parent_id,
            fields=self.current_fields(unit),
            sync_version=unit.sync_version,
            registry_snapshot=unit.registry_snapshot,
            synced_state=unit.synced_state,
            locally_modified_since_sync=unit.locally_modified_since_sync,
        )

    def main_organization(self) -> Organization:
        org = self.db.execute(
            select(Organization).where(Organization.is_main.is_(True)).order_by(Organization.id)
        ).scalars().first()
        if not org:
            raise RepositoryWriteError("No main organization configured")
        return org

    # ---------- Référentiels (créés à la volée) ----------
    def resolve_type(self, code: str) -> OrganizationalUnitType:
        unit_type = self.db.execute(
            select(OrganizationalUnitType).where(OrganizationalUnitType.code == code)
        ).scalar_one_or_none()
        if unit_type:
            return unit_type
        unit_type = OrganizationalUnitType(code=code, name=code, description="Auto-created from registry sync")
        with self._write_guard(f"create unit type {code}"):
            self.db.add(unit_type)
            self.db.flush()
        logger.info("unit_type_created", extra={"code": code})
        return unit_type

    def resolve_category(self, code: str | None) -> OrganizationalUnitCategory:
        code = code or DEFAULT_CATEGORY_CODE
        category = self.db.execute(
            select(OrganizationalUnitCategory).where(OrganizationalUnitCategory.code == code)
        ).scalar_one_or_none()
        if category:
            return category
        category = OrganizationalUnitCategory(code=code, name=code, description="Auto-created from registry sync")
        with self._write_guard(f"create category {code}"):
            self.db.add(category)
            self.db.flush()
        logger.info("unit_category_created", extra={"code": code})
        return category

    # ---------- Écriture ----------
    def create(self, external_id: str, fields: dict[str, Any]) -> OrganizationalUnit:
        parent = self._resolve_parent(fields.get("parent"))
        unit = OrganizationalUnit(
            organization_id=self.main_organization().id,
            external_id=external_id,
            parent_id=parent.id if parent else None,
            name=fields["name"],
            acronym=fields.get("acronym"),
            unit_type_id=self.resolve_type(fields["unit_type"]).id,
            category_id=self.resolve_category(fields.get("category")).id,
            is_active=bool(fields.get("is_active", True)),
            level=(parent.level + 1) if parent else 1,
        )
        with self._write_guard(f"create unit {external_id}"):
            self.db.add(unit)
            self.db.flush()
        return unit

    def update(self, unit: OrganizationalUnit, changes: dict[str, Any]) -> OrganizationalUnit:
        unknown = set(changes) - set(UNIT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown unit fields: {sorted(unknown)}")

        with self._write_guard(f"update unit {unit.external_id or unit.id}"):
            if "name" in changes:
                unit.name = changes["name"]
            if "acronym" in changes:
                unit.acronym = changes["acronym"]
            if "is_active" in changes:
                unit.is_active = bool(changes["is_active"])
            if "unit_type" in changes:
                unit.unit_type_id = self.resolve_type(changes["unit_type"]).id
            if "category" in changes:
                unit.category_id = self.resolve_category(changes["category"]).id
            if "parent" in changes:
                parent = self._resolve_parent(changes["parent"])
                unit.parent_id = parent.id if parent else None
                self.db.flush()
                self._relevel(unit, (parent.level + 1) if parent else 1)
            self.db.flush()
            # rafraîchit les relations (unit_type / category) après changement d'id
            self.db.refresh(unit)
        return unit

    def mark_synced(
        self,
        unit: OrganizationalUnit,
        *,
        version: str,
        registry_snapshot: dict[str, Any],
        synced_state: dict[str, Any],
        locally_modified: bool,
    ) -> None:
        with self._write_guard(f"mark unit {unit.external_id} synced"):
            unit.sync_version = version
            unit.registry_snapshot = registry_snapshot
            unit.synced_state = synced_state
            unit.locally_modified_since_sync = locally_modified
            unit.synced_at = utcnow()
            self.db.flush()

    def apply_local_change(self, unit: OrganizationalUnit, changes: dict[str, Any]) -> OrganizationalUnit:
        """Édition locale (hors synchro) : positionne locally_modified_since_sync."""
        self.update(unit, changes)
        unit.locally_modified_since_sync = True
        self.db.flush()
        return unit

    # ---------- Organisations ----------
    def get_organization_by_external_id(self, external_id: str) -> Organization | None:
        return self.db.execute(
            select(Organization).where(Organization.external_id == external_id)
        ).scalar_one_or_none()

    def organization_fields(self, org: Organization) -> dict[str, Any]:
        return {"acronym": org.acronym, "name": org.name, "is_active": org.is_active}

    def create_organization(self, external_id: str, fields: dict[str, Any]) -> Organization:
        """
        Première synchro de l'organisation.

        L'organisation principale créée au seed (sans external_id) est rattachée
        au registre plutôt que dupliquée ; sinon nouvelle ligne, principale
        seulement s'il n'en existe aucune.
        """
        main = self.db.execute(
            select(Organization).where(Organization.is_main.is_(True)).order_by(Organization.id)
        ).scalars().first()
        with self._write_guard(f"create organization {external_id}"):
            if main is not None and main.external_id is None:
                org = main
                org.external_id = external_id
            else:
                org = Organization(external_id=external_id, is_main=main is None)
                self.db.add(org)
            org.acronym = fields["acronym"]
            org.name = fields["name"]
            org.is_active = bool(fields.get("is_active", True))
            self.db.flush()
        return org

    def update_organization(self, org: Organization, changes: dict[str, Any]) -> Organization:
        unknown = set(changes) - set(ORGANIZATION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown organization fields: {sorted(unknown)}")
        with self._write_guard(f"update organization {org.external_id or org.id}"):
            for name, value in changes.items():
                setattr(org, name, bool(value) if name == "is_active" else value)
            self.db.flush()
        return org

    def mark_organization_synced(self, org: Organization, *, version: str, registry_snapshot: dict[str, Any]) -> None:
        with self._write_guard(f"mark organization {org.external_id} synced"):
            org.sync_version = version
            org.registry_snapshot = registry_snapshot
            org.synced_at = utcnow()
            self.db.flush()

    # ---------- Helpers ----------
    def _resolve_parent(self, parent_external_id: str | None) -> OrganizationalUnit | None:
        if parent_external_id is None:
            return None
        parent = self.get_by_external_id(parent_external_id)
        if not parent:
            raise MissingParentError(f"Parent unit {parent_external_id} does not exist locally")
        return parent

    def _relevel(self, unit: OrganizationalUnit, level: int) -> None:
        # parcours itératif du sous-arbre (pas de récursion Python sur une hiérarchie profonde)
        stack = [(unit, level)]
        seen: set[int] = set()
        while stack:
            node, node_level = stack.pop()
            if node.id in seen:
                raise StructuralConflictError(f"Cycle detected under unit {unit.id}", fields=["parent"])
            seen.add(node.id)
            node.level = node_level
            stack.extend((child, node_level + 1) for child in self.list_children(node.id))

    @contextmanager
    def _write_guard(self, what: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            raise RepositoryWriteError(f"Failed to {what}: {e}") from e
