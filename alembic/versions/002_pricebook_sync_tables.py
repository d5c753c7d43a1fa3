"""Tenant schema: pricebook sync tables with RLS.

Revision ID: 002_pricebook_sync
Revises:
Create Date: 2026-10-17

Creates six tables in the tenant schema:
- pricebook_records: canonical MASTER records
- pricebook_overrides: user-pinned field values
- pricebook_sync_jobs: sync runs; a partial unique index on running jobs
  rejects overlapping runs of the same entity type and scope class
- pricebook_sync_cursors: last successful full/incremental run per type
- pricebook_pending_sync: per-entity failures awaiting retry
- pricebook_duplicate_dismissals: pairs an operator kept as distinct

Uses schema="tenant" placeholder for create_table (schema_translate_map
swaps it); RLS and index DDL use the actual schema name from -x args.
"""

from typing import Sequence, Union

from alembic import context, op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "002_pricebook_sync"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = ("tenant",)
depends_on: Union[str, Sequence[str], None] = None

TABLES = (
    "pricebook_records",
    "pricebook_overrides",
    "pricebook_sync_jobs",
    "pricebook_sync_cursors",
    "pricebook_pending_sync",
    "pricebook_duplicate_dismissals",
)


def _id_columns() -> list[sa.Column]:
    return [
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("tenant_id", UUID(as_uuid=True), nullable=False),
    ]


def _enable_rls(schema: str, table: str) -> None:
    op.execute(f'ALTER TABLE "{schema}".{table} ENABLE ROW LEVEL SECURITY')
    op.execute(f'ALTER TABLE "{schema}".{table} FORCE ROW LEVEL SECURITY')
    op.execute(f"""
        CREATE POLICY tenant_isolation ON "{schema}".{table}
        FOR ALL
        USING (tenant_id::text = current_setting('app.current_tenant_id', true))
        WITH CHECK (tenant_id::text = current_setting('app.current_tenant_id', true))
    """)


def upgrade() -> None:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    # ── pricebook_records ───────────────────────────────────────────────

    op.create_table(
        "pricebook_records",
        *_id_columns(),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("fields", sa.JSON(), server_default=sa.text("'{}'::json"), nullable=False),
        sa.Column("visible", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("overridden_fields", sa.JSON(), server_default=sa.text("'[]'::json"), nullable=False),
        sa.Column("source", sa.String(16), server_default=sa.text("'external'"), nullable=False),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "entity_type", "external_id", name="uq_pricebook_records_external"),
        schema="tenant",
    )
    op.execute(
        f'CREATE INDEX ix_pricebook_records_type ON "{schema}".pricebook_records(tenant_id, entity_type)'
    )

    # ── pricebook_overrides ─────────────────────────────────────────────

    op.create_table(
        "pricebook_overrides",
        *_id_columns(),
        sa.Column("entity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("field", sa.String(100), nullable=False),
        sa.Column("value", sa.JSON(), nullable=True),
        sa.Column("set_by", sa.String(200), nullable=True),
        sa.Column("set_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("tenant_id", "entity_id", "field", name="uq_pricebook_overrides_field"),
        schema="tenant",
    )

    # ── pricebook_sync_jobs ─────────────────────────────────────────────

    op.create_table(
        "pricebook_sync_jobs",
        *_id_columns(),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("scope", sa.String(16), nullable=False),
        sa.Column("scope_class", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), server_default=sa.text("'queued'"), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("processed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("updated", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("unchanged", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("failed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        schema="tenant",
    )
    op.execute(
        f'CREATE UNIQUE INDEX uq_pricebook_sync_jobs_running ON "{schema}".pricebook_sync_jobs'
        "(tenant_id, entity_type, scope_class) WHERE status = 'running'"
    )
    op.execute(
        f'CREATE INDEX ix_pricebook_sync_jobs_started ON "{schema}".pricebook_sync_jobs(tenant_id, started_at)'
    )

    # ── pricebook_sync_cursors ──────────────────────────────────────────

    op.create_table(
        "pricebook_sync_cursors",
        *_id_columns(),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("last_full_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_incremental_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("tenant_id", "entity_type", name="uq_pricebook_sync_cursors_type"),
        schema="tenant",
    )

    # ── pricebook_pending_sync ──────────────────────────────────────────

    op.create_table(
        "pricebook_pending_sync",
        *_id_columns(),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=True),
        sa.Column("external_id", sa.String(100), nullable=True),
        sa.Column("action", sa.String(8), nullable=False),
        sa.Column("attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        schema="tenant",
    )
    op.execute(
        f'CREATE INDEX ix_pricebook_pending_due ON "{schema}".pricebook_pending_sync'
        "(tenant_id, status, next_retry_at)"
    )
    op.execute(
        f'CREATE INDEX ix_pricebook_pending_entity ON "{schema}".pricebook_pending_sync'
        "(tenant_id, entity_type, action)"
    )

    # ── pricebook_duplicate_dismissals ──────────────────────────────────

    op.create_table(
        "pricebook_duplicate_dismissals",
        *_id_columns(),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("first_id", sa.String(64), nullable=False),
        sa.Column("second_id", sa.String(64), nullable=False),
        sa.Column("dismissed_by", sa.String(200), nullable=True),
        sa.Column("dismissed_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint(
            "tenant_id", "entity_type", "first_id", "second_id",
            name="uq_pricebook_duplicate_dismissals_pair",
        ),
        schema="tenant",
    )

    for table in TABLES:
        _enable_rls(schema, table)


def downgrade() -> None:
    cmd_kwargs = context.get_x_argument(as_dictionary=True)
    schema = cmd_kwargs.get("schema", "tenant")

    for table in reversed(TABLES):
        op.execute(f'DROP POLICY IF EXISTS tenant_isolation ON "{schema}".{table}')
        op.drop_table(table, schema="tenant")
