# alembic/env.py
from __future__ import annotations

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine
from sqlalchemy.engine import Connection
from sqlalchemy.pool import NullPool

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

from medstock.db.base import Base, init_models  # noqa: E402
from medstock.db.engine import normalize_async_dsn  # noqa: E402

_ASYNC_TO_SYNC = {
    "sqlite+aiosqlite://": "sqlite://",
}


def get_url() -> str:
    """
    Priority:
      1. MEDSTOCK_MIGRATION_URL
      2. DATABASE_URL
      3. sqlalchemy.url in alembic.ini

    Migrations run on a sync engine: psycopg (v3) serves both modes for
    PostgreSQL; aiosqlite URLs fall back to the stdlib sqlite driver.
    """
    url = (
        os.getenv("MEDSTOCK_MIGRATION_URL")
        or os.getenv("DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
    )
    if not url:
        raise RuntimeError(
            "Alembic cannot determine the database URL: set MEDSTOCK_MIGRATION_URL / "
            "DATABASE_URL or sqlalchemy.url in alembic.ini"
        )

    url = normalize_async_dsn(url)
    for prefix, sync_prefix in _ASYNC_TO_SYNC.items():
        if url.startswith(prefix):
            url = sync_prefix + url[len(prefix) :]
    return url


def run_migrations_offline() -> None:
    init_models()
    context.configure(
        url=get_url(),
        target_metadata=Base.metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
        compare_server_default=False,
    )

    with context.begin_transaction():
        context.run_migrations()


def _do_run_migrations(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=Base.metadata,
        compare_type=True,
        compare_server_default=False,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    init_models()
    engine = create_engine(get_url(), poolclass=NullPool, future=True)
    try:
        with engine.connect() as connection:
            _do_run_migrations(connection)
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
