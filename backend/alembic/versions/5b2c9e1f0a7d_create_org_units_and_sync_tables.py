"""create organizational units + sync queue/history tables

Revision ID: 5b2c9e1f0a7d
Revises:
Create Date: 2026-10-18 09:12:40.118204
"""
from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "5b2c9e1f0a7d"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# valeurs = noms des membres Python (comportement par défaut de sa.Enum)
QUEUE_STATUS = sa.Enum("pending", "processing", "failed", "conflict", "skipped", name="sync_queue_status")
OPERATION = sa.Enum("create", "update", name="sync_operation")
DECISION = sa.Enum(
    "created", "updated", "conflict_detected", "conflict_resolved", "skipped", "failed",
    name="sync_decision",
)
RESOLUTION = sa.Enum("accept_registry", "keep_local", name="sync_conflict_resolution")

JSONB = postgresql.JSONB(astext_type=sa.Text())
ACTIVE_WHERE = sa.text("status IN ('pending', 'processing')")


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("external_id", sa.String(64), unique=True),
        sa.Column("acronym", sa.String(50), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("is_main", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    for table in ("organizational_unit_types", "organizational_unit_categories"):
        op.create_table(
            table,
            sa.Column("id", sa.BigInteger(), primary_key=True),
            sa.Column("code", sa.String(64), nullable=False, unique=True),
            sa.Column("name", sa.String(200), nullable=False),
            sa.Column("description", sa.Text()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        )

    op.create_table(
        "organizational_units",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column(
            "organization_id",
            sa.BigInteger(),
            sa.ForeignKey("organizations.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("parent_id", sa.BigInteger(), sa.ForeignKey("organizational_units.id", ondelete="RESTRICT")),
        sa.Column("external_id", sa.String(64), unique=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("acronym", sa.String(50)),
        sa.Column(
            "unit_type_id",
            sa.BigInteger(),
            sa.ForeignKey("organizational_unit_types.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.BigInteger(),
            sa.ForeignKey("organizational_unit_categories.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("level", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("sync_version", sa.String(64)),
        sa.Column("registry_snapshot", JSONB),
        sa.Column("synced_state", JSONB),
        sa.Column("locally_modified_since_sync", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("synced_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("parent_id IS NULL OR parent_id <> id", name="ck_org_units_no_self_parent"),
    )
    op.create_index("ix_organizational_units_organization_id", "organizational_units", ["organization_id"])
    op.create_index("ix_organizational_units_parent_id", "organizational_units", ["parent_id"])

    op.create_table(
        "sync_queue",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("external_id", sa.String(64), nullable=False),
        sa.Column("status", QUEUE_STATUS, nullable=False),
        sa.Column("operation", OPERATION, nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("depth", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("deferrals", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_eligible_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("claimed_by", sa.String(128)),
        sa.Column("claimed_at", sa.DateTime(timezone=True)),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True)),
        sa.Column("lease_token", sa.String(32), unique=True),
        sa.Column("last_error", sa.Text()),
        sa.Column("resolution", RESOLUTION),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("attempts >= 0", name="ck_sync_queue_attempts_nonneg"),
    )
    op.create_index("ix_sync_queue_external_id", "sync_queue", ["external_id"])
    op.create_index("ix_sync_queue_status_eligible", "sync_queue", ["status", "next_eligible_at"])
    # Coalescence garantie en base : une seule ligne PENDING/PROCESSING par unité
    op.create_index(
        "uq_sync_queue_active_external_id",
        "sync_queue",
        ["external_id"],
        unique=True,
        postgresql_where=ACTIVE_WHERE,
    )

    op.create_table(
        "sync_history",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("external_id", sa.String(64), nullable=False),
        sa.Column("local_id", sa.BigInteger()),
        sa.Column("decision", DECISION, nullable=False),
        sa.Column("snapshot_before", JSONB),
        sa.Column("snapshot_after", JSONB),
        sa.Column("affected_fields", JSONB),
        sa.Column("policy", sa.String(255)),
        sa.Column("error", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_sync_history_external_time", "sync_history", ["external_id", "created_at"])
    op.create_index("ix_sync_history_created_at", "sync_history", ["created_at"])

    # Append-only aussi côté base : aucun UPDATE/DELETE, même hors ORM
    op.execute("""
    CREATE OR REPLACE FUNCTION sync_history_immutable() RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION 'sync_history is append-only';
    END;
    $$ LANGUAGE plpgsql;
    """)
    op.execute("""
    CREATE TRIGGER trg_sync_history_immutable
    BEFORE UPDATE OR DELETE ON sync_history
    FOR EACH ROW EXECUTE FUNCTION sync_history_immutable();
    """)


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_sync_history_immutable ON sync_history;")
    op.execute("DROP FUNCTION IF EXISTS sync_history_immutable();")
    op.drop_table("sync_history")
    op.drop_table("sync_queue")
    op.drop_table("organizational_units")
    op.drop_table("organizational_unit_categories")
    op.drop_table("organizational_unit_types")
    op.drop_table("organizations")
    for enum_type in (RESOLUTION, DECISION, OPERATION, QUEUE_STATUS):
        enum_type.drop(op.get_bind(), checkfirst=True)
