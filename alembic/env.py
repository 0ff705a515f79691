"""
Alembic environment module for database migrations.

This module is used by alembic to interact with the SQLAlchemy models
and manage migrations of the import pipeline tables.
"""

import os
from logging.config import fileConfig

from sqlalchemy import engine_from_config, pool

from alembic import context
from tmtp.core.db_models import Base

# This is the Alembic Config object.
config = context.config

# Interpret the config file for Python logging unless the caller set it up already
if config.config_file_name is not None and config.attributes.get("configure_logger", True):
    fileConfig(config.config_file_name, disable_existing_loggers=False)

# Set the SQLAlchemy URL from environment variables if available
pg_host = os.environ.get("TMTP_PG_HOST")
pg_port = os.environ.get("TMTP_PG_PORT", "5432")
pg_user = os.environ.get("TMTP_PG_USER")
pg_pass = os.environ.get("TMTP_PG_PASSWORD")
pg_db = os.environ.get("TMTP_PG_DATABASE")

# Override the SQLAlchemy URL if PostgreSQL environment variables are set
if all([pg_host, pg_user, pg_db]):
    password_part = f":{pg_pass}" if pg_pass else ""
    config.set_main_option("sqlalchemy.url", f"postgresql://{pg_user}{password_part}@{pg_host}:{pg_port}/{pg_db}")

# Pipeline tables only; the target tables belong to the product schema
PIPELINE_TABLES = {"import_jobs", "import_datasets", "import_staging"}

target_metadata = Base.metadata


def include_object(object, name, type_, reflected, compare_to):
    if type_ == "table":
        return name in PIPELINE_TABLES
    return True


def run_migrations_offline() -> None:
    """
    Run migrations in 'offline' mode.

    This configures the context with just a URL and not an Engine, so no
    DBAPI is needed. Calls to context.execute() emit the given string to
    the script output.
    """
    url = config.get_main_option("sqlalchemy.url")
    context.configure(
        url=url,
        target_metadata=target_metadata,
        include_object=include_object,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """
    Run migrations in 'online' mode.

    In this scenario we need to create an Engine and associate a connection
    with the context.
    """
    connectable = engine_from_config(
        config.get_section(config.config_ini_section, {}),
        prefix="sqlalchemy.",
        poolclass=pool.NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection, target_metadata=target_metadata, include_object=include_object
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
