"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
SQLAlchemy-based database manager for the import pipeline.

Provides engine and session management for SQLite and PostgreSQL, chunk-scoped
transactions with a statement timeout, schema creation, seeding of the default
reference rows the importer falls back to, and an idempotent get-or-create.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, TypeVar

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from tmtp.core import target_models as tm
from tmtp.core.config import DatabaseConfig
from tmtp.core.db_models import Base
from tmtp.core.logging import get_logger

logger = get_logger(__name__)

# Type variable for ORM models
T = TypeVar("T")

DEFAULT_STATUS_COLOR = "#B1B2B3"

DEFAULT_STATUS_SCOPES = ("Test Runs", "Sessions", "Automation")


class DatabaseManager:
    """
    Database manager for the pipeline and target tables.

    One instance is shared by the analyzer, the staging store and the
    importer of a job. Every ``get_session`` block gets its own session, so a
    progress write never shares the transaction of the chunk being imported.
    """

    def __init__(self, config: DatabaseConfig | None = None, engine: Engine | None = None):
        """
        Initialize the database manager.

        Args:
            config: Database configuration
            engine: Pre-built engine, used instead of creating one from config

        """
        self.config = config or DatabaseConfig.from_env()
        self._engine = engine or self._create_engine()
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def is_postgresql(self) -> bool:
        return self._engine.dialect.name == "postgresql"

    def _create_engine(self) -> Engine:
        conn_str = self.config.get_connection_string()
        engine_kwargs: dict[str, Any] = {"echo": self.config.echo}

        if self.config.db_type == "postgresql":
            engine_kwargs.update(
                {
                    "poolclass": QueuePool,
                    "pool_size": self.config.pool_size,
                    "max_overflow": self.config.max_overflow,
                    "pool_pre_ping": True,
                    "pool_recycle": 3600,
                }
            )
        elif conn_str == "sqlite://":
            # In-memory databases must share one connection
            engine_kwargs.update(
                {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
            )

        engine = create_engine(conn_str, **engine_kwargs)

        if self.config.db_type == "sqlite":
            # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; emit it explicitly
            event.listen(engine, "connect", _configure_sqlite_connection)
            event.listen(engine, "begin", _begin_sqlite_transaction)

        return engine

    @contextmanager
    def get_session(self) -> Iterator[Session]:
        """
        Context manager for database sessions.

        Commits when the block exits normally, rolls back and re-raises otherwise.

        Yields:
            SQLAlchemy session object

        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    @contextmanager
    def transaction(self, timeout_ms: int | None = None) -> Iterator[Session]:
        """
        Chunk-scoped transaction.

        On PostgreSQL the timeout is applied with ``SET LOCAL statement_timeout``
        so it expires with the transaction. SQLite has no equivalent and runs
        without one.
        """
        with self.get_session() as session:
            if timeout_ms and self.is_postgresql:
                session.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))
            yield session

    def initialize_database(self) -> None:
        """Create the pipeline and target tables if they don't exist."""
        try:
            logger.info("Initializing database schema...")
            Base.metadata.create_all(self._engine)
            logger.info("Database schema initialized successfully")
        except SQLAlchemyError as e:
            logger.error(f"Error initializing database schema: {e}")
            raise

    def drop_all_tables(self) -> None:
        """
        Drop all tables from the database.

        WARNING: This will delete all data in the database.
        """
        try:
            logger.warning("Dropping all database tables...")
            Base.metadata.drop_all(self._engine)
            logger.warning("All database tables dropped")
        except SQLAlchemyError as e:
            logger.error(f"Error dropping database tables: {e}")
            raise

    def seed_defaults(self) -> None:
        """
        Insert the default reference rows an empty target database lacks.

        The importer falls back to these when a source row has no mapped
        value: the default status color and scopes, the ``untested`` status,
        a default role, milestone type and template, and one default workflow
        per scope. Existing rows are left alone.
        """
        with self.get_session() as session:
            color, _ = self.get_or_create(
                session, tm.Color, {"name": "Default", "hex_value": DEFAULT_STATUS_COLOR},
                hex_value=DEFAULT_STATUS_COLOR,
            )
            scopes = []
            for name in DEFAULT_STATUS_SCOPES:
                scope, _ = self.get_or_create(session, tm.StatusScope, {"name": name}, name=name)
                scopes.append(scope)

            untested, created = self.get_or_create(
                session,
                tm.Status,
                {"name": "Untested", "system_name": "untested", "color_id": color.id, "order": 0},
                system_name="untested",
            )
            if created:
                untested.scopes = scopes

            self.get_or_create(
                session, tm.Role, {"name": "User", "is_default": True}, is_default=True
            )
            self.get_or_create(
                session,
                tm.MilestoneType,
                {"name": "Milestone", "icon": "milestone", "is_default": True},
                is_default=True,
            )
            self.get_or_create(
                session,
                tm.Template,
                {"name": "Default Template", "is_default": True},
                is_default=True,
            )
            for scope in tm.WorkflowScope:
                self.get_or_create(
                    session,
                    tm.Workflow,
                    {
                        "name": "Not Started",
                        "icon": "circle",
                        "color": DEFAULT_STATUS_COLOR,
                        "workflow_type": tm.WorkflowType.NOT_STARTED,
                        "scope": scope,
                        "is_default": True,
                    },
                    scope=scope,
                    is_default=True,
                )
        logger.info("Default reference data seeded")

    def get_or_create(
        self, session: Session, model: type[T], create_kwargs: dict[str, Any], **kwargs
    ) -> tuple[T, bool]:
        """
        Get an existing database object or create if it doesn't exist.

        The insert runs inside a savepoint, so a concurrent insert of the same
        natural key only rolls back that savepoint and the existing row is
        returned instead.

        Args:
            session: SQLAlchemy session
            model: Model class
            create_kwargs: Arguments to use when creating a new instance
            **kwargs: Filter arguments to find existing instance

        Returns:
            Tuple of (instance, created) where created is True if a new instance was created

        """
        instance = session.query(model).filter_by(**kwargs).first()
        if instance:
            return instance, False

        instance = model(**create_kwargs)
        try:
            with session.begin_nested():
                session.add(instance)
                session.flush()
            return instance, True
        except IntegrityError:
            instance = session.query(model).filter_by(**kwargs).first()
            if instance:
                return instance, False
            raise

    def dispose(self) -> None:
        self._engine.dispose()


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _begin_sqlite_transaction(connection) -> None:
    connection.exec_driver_sql("BEGIN")
