"""Alembic environment.

Migrations are always run *online* by :meth:`infracore.database.DatabaseHandle.migrate`,
which passes an open connection through ``config.attributes``.  Running the
``alembic`` CLI directly falls back to ``sqlalchemy.url`` from the config.
"""

from alembic import context
from sqlalchemy import engine_from_config
from sqlalchemy import pool

config = context.config

# Schema is described by the revision scripts, not by ORM metadata.
target_metadata = None


def run_migrations_offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    connection = config.attributes.get("connection")

    if connection is not None:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()
        return

    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with connectable.connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
