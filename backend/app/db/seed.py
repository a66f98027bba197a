from __future__ import annotations

from sqlalchemy import select

from backend.app.db.models.models_v1 import Organization, OrganizationalUnitCategory
from backend.app.db.session import SessionLocal
from backend.services.org_repository import DEFAULT_CATEGORY_CODE


def run_seed(db=None) -> Organization:
    own_session = db is None
    db = db or SessionLocal()
    try:
        # 1) Organisation principale : toutes les unités synchronisées y sont rattachées
        org = db.scalar(select(Organization).where(Organization.is_main.is_(True)))
        if not org:
            org = Organization(acronym="MAIN", name="Organisation principale", is_main=True, is_active=True)
            db.add(org)
            db.commit()

        # 2) Catégorie par défaut (le registre n'en fournit pas toujours)
        category = db.scalar(
            select(OrganizationalUnitCategory).where(OrganizationalUnitCategory.code == DEFAULT_CATEGORY_CODE)
        )
        if not category:
            db.add(
                OrganizationalUnitCategory(
                    code=DEFAULT_CATEGORY_CODE,
                    name="Default",
                    description="Default category for units without one",
                )
            )
            db.commit()

        print(f"SEED OK: organization={org.acronym}, category={DEFAULT_CATEGORY_CODE}")
        return org
    finally:
        if own_session:
            db.close()


if __name__ == "__main__":
    run_seed()
