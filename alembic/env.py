"""Alembic environment for the shared registry and per-tenant pricebook schemas.

The two schema kinds are separate branches:
  alembic -x schema=shared upgrade shared@head
  alembic -x schema=tenant_acme upgrade tenant@head

Each schema keeps its own alembic_version table, so tenants are migrated
independently. Tenant revisions create tables in the "tenant" placeholder
schema, which schema_translate_map redirects to the target schema.
"""

import re
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool, text

from src.app.config import get_settings
from src.app.core.database import SHARED_SCHEMA, TENANT_SCHEMA_PLACEHOLDER, SharedBase, TenantBase
import src.app.models.shared  # noqa: F401  registers shared.tenants
import src.app.pricebook.models  # noqa: F401  registers tenant tables

TENANT_SCHEMA_PATTERN = re.compile(r"^tenant_[a-z0-9_]{1,56}$")

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_schema = context.get_x_argument(as_dictionary=True).get("schema", SHARED_SCHEMA)
is_shared = target_schema == SHARED_SCHEMA

if not is_shared and not TENANT_SCHEMA_PATTERN.match(target_schema):
    raise ValueError(f"Refusing to migrate unexpected schema name: {target_schema!r}")

target_metadata = SharedBase.metadata if is_shared else TenantBase.metadata


def _sync_url() -> str:
    # Alembic runs synchronously; swap the asyncpg driver for psycopg2.
    return get_settings().DATABASE_URL.replace("+asyncpg", "")


def run_migrations_offline() -> None:
    context.configure(
        url=_sync_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        version_table_schema=target_schema,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = create_engine(_sync_url(), poolclass=pool.NullPool)

    with connectable.connect() as connection:
        # The version table lives in the target schema, so it must exist first.
        connection.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{target_schema}"'))
        connection.commit()

        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            version_table_schema=target_schema,
            include_schemas=True,
            schema_translate_map=None if is_shared else {TENANT_SCHEMA_PLACEHOLDER: target_schema},
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
