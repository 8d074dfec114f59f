"""Alembic environment for the checkpoint store."""

from __future__ import annotations

from alembic import context
from sqlalchemy import engine_from_config, event, pool

from wave_orchestrator.storage.common import apply_sqlite_pragmas

config = context.config
target_metadata = None

_MIGRATION_BUSY_TIMEOUT_MS = 30_000


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
        connect_args={"timeout": _MIGRATION_BUSY_TIMEOUT_MS / 1000.0},
    )
    event.listen(
        connectable,
        "connect",
        lambda dbapi_connection, _: apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=_MIGRATION_BUSY_TIMEOUT_MS,
        ),
    )
    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            render_as_batch=True,
        )
        with context.begin_transaction():
            context.run_migrations()
    connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
