"""Shared schema: tenant registry.

Revision ID: 001_initial_shared
Revises:
Create Date: 2026-03-02

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_initial_shared"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = ("shared",)
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute("CREATE SCHEMA IF NOT EXISTS shared")

    op.create_table(
        "tenants",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("slug", sa.String(50), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("schema_name", sa.String(100), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        # Per-tenant switches, e.g. {"pricebook_sync_enabled": false}
        sa.Column("config", JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        schema="shared",
    )
    # Scheduler fan-out lists active tenants ordered by slug.
    op.create_index(
        "ix_tenants_active_slug",
        "tenants",
        ["slug"],
        schema="shared",
        postgresql_where=sa.text("is_active"),
    )


def downgrade() -> None:
    op.drop_index("ix_tenants_active_slug", table_name="tenants", schema="shared")
    op.drop_table("tenants", schema="shared")
    op.execute("DROP SCHEMA IF EXISTS shared CASCADE")
