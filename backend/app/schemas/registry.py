"""
Contrats JSON du registre externe (lecture seule).

GET /units?page=&page_size=  -> {"data": [...], "total": N, "page": p, "page_size": s}
GET /units/{external_id}     -> RegistryUnit
GET /organizations/{external_id} -> RegistryOrganization
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _canonical_hash(record: BaseModel) -> str:
    canonical = json.dumps(record.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _to_str_id(value: Any) -> Any:
    # le registre renvoie parfois des codes numériques
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class RegistryUnitSummary(BaseModel):
    model_config = ConfigDict(extra="ignore")

    external_id: str = Field(min_length=1, max_length=64)
    name: str | None = None
    parent_external_id: str | None = None
    level: int | None = Field(default=None, ge=1)

    @field_validator("external_id", "parent_external_id", mode="before")
    @classmethod
    def coerce_ids(cls, value: Any) -> Any:
        return _to_str_id(value)


class RegistryPage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[RegistryUnitSummary] = Field(default_factory=list)
    page: int = Field(ge=1)
    page_size: int = Field(ge=1)
    total: int | None = Field(default=None, ge=0)

    @property
    def has_next(self) -> bool:
        """Marqueur de fin explicite : page vide, ou total atteint."""
        if not self.data:
            return False
        if self.total is None:
            return len(self.data) >= self.page_size
        return self.page * self.page_size < self.total


class RegistryUnit(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    external_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=255)
    acronym: str | None = Field(default=None, max_length=50)
    parent_external_id: str | None = Field(default=None, max_length=64)
    unit_type: str = Field(min_length=1, max_length=64)
    category: str | None = Field(default=None, max_length=64)
    is_active: bool = True
    level: int | None = Field(default=None, ge=1)
    # version/horodatage côté registre (opaque)
    version: str | None = None

    @field_validator("external_id", "parent_external_id", mode="before")
    @classmethod
    def coerce_ids(cls, value: Any) -> Any:
        return _to_str_id(value)

    def field_snapshot(self) -> dict[str, Any]:
        """Projection sur le vocabulaire de comparaison (UNIT_FIELDS)."""
        return {
            "name": self.name,
            "acronym": self.acronym,
            "parent": self.parent_external_id,
            "unit_type": self.unit_type,
            "category": self.category,
            "is_active": self.is_active,
        }

    def version_hash(self) -> str:
        """Marqueur de version : sha256 du JSON canonique de l'enregistrement complet."""
        return _canonical_hash(self)


class RegistryOrganization(BaseModel):
    """Organisation de rattachement : aucun champ local, le registre fait toujours foi."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    external_id: str = Field(min_length=1, max_length=64)
    acronym: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=255)
    is_active: bool = True
    version: str | None = None

    @field_validator("external_id", mode="before")
    @classmethod
    def coerce_ids(cls, value: Any) -> Any:
        return _to_str_id(value)

    def field_snapshot(self) -> dict[str, Any]:
        return {"acronym": self.acronym, "name": self.name, "is_active": self.is_active}

    def version_hash(self) -> str:
        return _canonical_hash(self)
