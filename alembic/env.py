"""
Alembic entry point for the QuotaGate schema.

DATABASE_URL, when set, wins over the sqlalchemy.url in alembic.ini.
app.core.database.init_db() drives this file at startup with
``configure_logger`` off so the service's own logging stays in place.
"""

import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import engine_from_config, pool
from sqlmodel import SQLModel

from app.models import Subscription, UsageRecord, User  # noqa: F401  (registers tables)

config = context.config
target_metadata = SQLModel.metadata

if os.environ.get("DATABASE_URL"):
    config.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])

if config.config_file_name and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# SQLite cannot ALTER most constraints in place
_COMMON = {"target_metadata": target_metadata, "render_as_batch": True}


def _offline() -> None:
    context.configure(
        url=config.get_main_option("sqlalchemy.url"),
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        **_COMMON,
    )
    with context.begin_transaction():
        context.run_migrations()


def _online() -> None:
    engine = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )
    with engine.connect() as connection:
        context.configure(connection=connection, **_COMMON)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    _offline()
else:
    _online()
