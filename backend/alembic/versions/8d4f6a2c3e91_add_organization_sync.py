"""add organization sync (entity_type on queue/history, sync columns on organizations)

Revision ID: 8d4f6a2c3e91
Revises: 5b2c9e1f0a7d
Create Date: 2026-10-18 16:40:05.502317
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "8d4f6a2c3e91"
down_revision: Union[str, Sequence[str], None] = "5b2c9e1f0a7d"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENTITY = sa.Enum("unit", "organization", name="sync_entity")
JSONB = postgresql.JSONB(astext_type=sa.Text())
ACTIVE_WHERE = sa.text("status IN ('pending', 'processing')")


def upgrade() -> None:
    ENTITY.create(op.get_bind(), checkfirst=True)

    op.add_column("organizations", sa.Column("sync_version", sa.String(64)))
    op.add_column("organizations", sa.Column("registry_snapshot", JSONB))
    op.add_column("organizations", sa.Column("synced_at", sa.DateTime(timezone=True)))

    # lignes existantes = unités
    for table in ("sync_queue", "sync_history"):
        op.add_column(table, sa.Column("entity_type", ENTITY, nullable=False, server_default="unit"))

    # la coalescence se fait désormais par (entité, external_id)
    op.drop_index("uq_sync_queue_active_external_id", table_name="sync_queue")
    op.create_index(
        "uq_sync_queue_active_external_id",
        "sync_queue",
        ["entity_type", "external_id"],
        unique=True,
        postgresql_where=ACTIVE_WHERE,
    )
    op.drop_index("ix_sync_history_external_time", table_name="sync_history")
    op.create_index("ix_sync_history_external_time", "sync_history", ["entity_type", "external_id", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_sync_history_external_time", table_name="sync_history")
    op.create_index("ix_sync_history_external_time", "sync_history", ["external_id", "created_at"])
    op.drop_index("uq_sync_queue_active_external_id", table_name="sync_queue")
    # les items d'organisation n'ont pas d'équivalent sans entity_type
    op.execute("DELETE FROM sync_queue WHERE entity_type = 'organization'")
    op.create_index(
        "uq_sync_queue_active_external_id",
        "sync_queue",
        ["external_id"],
        unique=True,
        postgresql_where=ACTIVE_WHERE,
    )
    for table in ("sync_history", "sync_queue"):
        op.drop_column(table, "entity_type")
    op.drop_column("organizations", "synced_at")
    op.drop_column("organizations", "registry_snapshot")
    op.drop_column("organizations", "sync_version")
    ENTITY.drop(op.get_bind(), checkfirst=True)
