"""
Alembic environment configuration.

This script runs whenever Alembic performs a migration.
It connects to the ledger database using the engine settings
and knows about every ledger table through Base.metadata.
"""

from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool

from ledger_core.config import get_settings
from ledger_core.models import Base

# Alembic Config object, gives access to alembic.ini values
config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

# Importing ledger_core.models registers accounts, transactions,
# entries, links, recurring templates and reconciliations, so
# autogenerate sees the whole schema.
target_metadata = Base.metadata

# The database URL always comes from the engine settings,
# never from alembic.ini
config.set_main_option("sqlalchemy.url", get_settings().DATABASE_URL)


def run_migrations_offline() -> None:
    """Emit the migration as SQL without connecting."""
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Connect to the database and apply the migration."""
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection,
            target_metadata=target_metadata,
            compare_type=True,
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
