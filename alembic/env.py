"""Alembic environment for the LinkVault event store.

Migrations run on the sync driver for whatever DATABASE_URL points at;
SQLite gets batch mode so ALTERs work.
"""
from __future__ import annotations

from logging.config import fileConfig

from sqlalchemy import create_engine, pool
from alembic import context

from src.db.engine import database_url
from src.db.tables import Base
import src.db.affiliate_tables  # noqa: F401  registers the event tables

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _configure(**kwargs) -> None:
    context.configure(target_metadata=target_metadata, compare_type=True, **kwargs)
    with context.begin_transaction():
        context.run_migrations()


def run_offline() -> None:
    """Emit the migration SQL without a live connection."""
    _configure(
        url=database_url(sync=True),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )


def run_online() -> None:
    connectable = create_engine(database_url(sync=True), poolclass=pool.NullPool)
    with connectable.connect() as connection:
        _configure(connection=connection, render_as_batch=connection.dialect.name == "sqlite")


if context.is_offline_mode():
    run_offline()
else:
    run_online()
