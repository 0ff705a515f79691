"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Tests for the database manager: sessions, seeding and get-or-create.
"""

import pytest
from sqlalchemy import func, inspect, select

from tmtp.core import target_models as tm
from tmtp.core.config import DatabaseConfig
from tmtp.core.db_manager import DEFAULT_STATUS_COLOR, DatabaseManager
from tmtp.core.db_models import ImportJob, JobPhase, JobStatus


@pytest.mark.unit
@pytest.mark.db
class TestDatabaseManager:
    """Tests for the DatabaseManager class."""

    def test_initialize_creates_pipeline_and_target_tables(self, db_manager):
        tables = set(inspect(db_manager.engine).get_table_names())

        assert {"import_jobs", "import_datasets", "import_staging"} <= tables
        assert {"projects", "repository_cases", "test_runs", "issues"} <= tables
        assert not db_manager.is_postgresql

    def test_session_commits(self, db_manager):
        with db_manager.get_session() as session:
            session.add(ImportJob(storage_key="a.json", status=JobStatus.PENDING, phase=JobPhase.UPLOADING))

        with db_manager.get_session() as session:
            assert session.scalar(select(func.count()).select_from(ImportJob)) == 1

    def test_session_rolls_back_on_error(self, db_manager):
        with pytest.raises(RuntimeError):
            with db_manager.get_session() as session:
                session.add(ImportJob(storage_key="a.json", status=JobStatus.PENDING, phase=JobPhase.UPLOADING))
                session.flush()
                raise RuntimeError("boom")

        with db_manager.get_session() as session:
            assert session.scalar(select(func.count()).select_from(ImportJob)) == 0

    def test_transaction_on_sqlite_ignores_timeout(self, db_manager):
        with db_manager.transaction(timeout_ms=5_000) as session:
            assert session.scalar(select(func.count()).select_from(tm.Status)) == 1

    def test_seeded_defaults(self, db_manager):
        with db_manager.get_session() as session:
            untested = session.scalars(select(tm.Status).where(tm.Status.system_name == "untested")).one()
            assert untested.color.hex_value == DEFAULT_STATUS_COLOR
            assert len(untested.scopes) == 3

            workflows = session.scalars(select(tm.Workflow).where(tm.Workflow.is_default.is_(True))).all()
            assert {workflow.scope for workflow in workflows} == set(tm.WorkflowScope)

            assert session.scalars(select(tm.Template.name).where(tm.Template.is_default.is_(True))).all() == [
                "Default Template"
            ]

    def test_seeding_twice_adds_nothing(self, db_manager):
        db_manager.seed_defaults()

        with db_manager.get_session() as session:
            assert session.scalar(select(func.count()).select_from(tm.Workflow)) == len(tm.WorkflowScope)
            assert session.scalar(select(func.count()).select_from(tm.Role)) == 1
            assert session.scalar(select(func.count()).select_from(tm.StatusScope)) == 3

    def test_get_or_create(self, db_manager):
        with db_manager.get_session() as session:
            tag, created = db_manager.get_or_create(session, tm.Tag, {"name": "smoke"}, name="smoke")
            again, created_again = db_manager.get_or_create(session, tm.Tag, {"name": "smoke"}, name="smoke")

            assert created
            assert not created_again
            assert again.id == tag.id

    def test_drop_all_tables(self):
        manager = DatabaseManager(config=DatabaseConfig(db_path=":memory:"))
        manager.initialize_database()

        manager.drop_all_tables()

        assert inspect(manager.engine).get_table_names() == []
        manager.dispose()
