"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Database fixtures for the TMTP test suite.

Every test gets its own in-memory SQLite database with the pipeline and
target tables created and the default reference rows seeded, the same state
``tmtp init-db`` leaves behind.
"""

from collections.abc import Generator
from typing import Any

import pytest

from tmtp.core.config import DatabaseConfig, ImportConfig
from tmtp.core.db_manager import DatabaseManager
from tmtp.core.db_models import ImportJob, JobPhase, JobStatus
from tmtp.staging import StagingStore


@pytest.fixture
def db_manager() -> Generator[DatabaseManager, None, None]:
    """
    Provide a seeded in-memory database.

    Yields:
        DatabaseManager: Manager over a fresh in-memory database
    """
    manager = DatabaseManager(config=DatabaseConfig(db_path=":memory:"))
    manager.initialize_database()
    manager.seed_defaults()
    yield manager
    manager.dispose()


@pytest.fixture
def staging(db_manager: DatabaseManager) -> StagingStore:
    return StagingStore(db_manager)


@pytest.fixture
def import_config() -> ImportConfig:
    """Small chunk sizes so a few dozen rows span several transactions."""
    return ImportConfig(
        default_chunk_size=10,
        repository_case_chunk_size=25,
        progress_update_interval=10,
        progress_min_interval_ms=0,
    )


def create_job(db: DatabaseManager, storage_key: str = "bundle.json", **fields: Any) -> str:
    """
    Insert an import job and return its id.

    Args:
        db: Database to insert into
        storage_key: Bundle location of the job
        **fields: Column overrides, e.g. ``status=JobStatus.READY``

    Returns:
        str: The new job's id
    """
    values = {"status": JobStatus.PENDING, "phase": JobPhase.UPLOADING}
    values.update(fields)
    with db.get_session() as session:
        job = ImportJob(storage_key=storage_key, **values)
        session.add(job)
        session.flush()
        return job.id
