"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
End-to-end tests: a bundle is analyzed, configured and imported through the
job entry point, the way a queue consumer drives it.
"""

import pytest
from sqlalchemy import func, select

from tmtp.core import target_models as tm
from tmtp.core.config import AppConfig, DatabaseConfig
from tmtp.core.db_models import ImportJob, JobPhase, JobStatus
from tmtp.importer import InMemoryReindexQueue
from tmtp.mapping_config import MappingConfiguration
from tmtp.worker import process_job
from tests.fixtures.database import create_job

PROJECT_CASES = 90
ORPHAN_CASES = 10


def shop_bundle(case_tags=False):
    """One project with a folder and 90 cases, plus 10 cases of an unknown project."""
    cases = [
        {
            "id": index,
            "project_id": 1,
            "repo_id": 10,
            "folder_id": 100,
            "state_id": 1,
            "name": f"Checkout case {index}",
        }
        for index in range(1, PROJECT_CASES + 1)
    ]
    cases += [
        {"id": 1000 + index, "project_id": 999, "repo_id": 99, "name": f"Orphan case {index}"}
        for index in range(ORPHAN_CASES)
    ]
    datasets = {
        "projects": [{"id": 1, "name": "Web Shop"}],
        "repositories": [{"id": 10, "project_id": 1, "is_master": 1}],
        "repository_folders": [{"id": 100, "project_id": 1, "repo_id": 10, "name": "Checkout"}],
        "repository_cases": cases,
    }
    if case_tags:
        datasets["tags"] = [{"id": 5, "name": "smoke"}]
        datasets["repository_case_tags"] = [{"case_id": 1, "tag_id": 5}, {"case_id": 2, "tag_id": 5}]
    return datasets


@pytest.fixture
def app_config(import_config):
    return AppConfig(database=DatabaseConfig(db_path=":memory:"), importer=import_config)


def analyze_and_configure(db_manager, app_config, bundle_path, mapping=None):
    job_id = create_job(db_manager, storage_key=str(bundle_path))
    assert process_job(job_id, "analyze", db=db_manager, config=app_config) == JobStatus.READY
    with db_manager.get_session() as session:
        job = session.get(ImportJob, job_id)
        job.configuration = (mapping or MappingConfiguration()).to_dict()
    return job_id


def load_job(db_manager, job_id):
    with db_manager.get_session() as session:
        return session.get(ImportJob, job_id)


@pytest.mark.integration
@pytest.mark.db
class TestImportPipeline:
    """Tests for a full analyze and import run."""

    def test_analysis_records_datasets(self, db_manager, app_config, bundle_factory):
        job_id = create_job(db_manager, storage_key=str(bundle_factory(shop_bundle())))

        status = process_job(job_id, "analyze", db=db_manager, config=app_config)

        assert status == JobStatus.READY
        with db_manager.get_session() as session:
            job = session.get(ImportJob, job_id)
            assert job.phase == JobPhase.CONFIGURING
            assert job.total_rows == 3 + PROJECT_CASES + ORPHAN_CASES
            assert job.total_datasets == 4
            assert {dataset.name for dataset in job.datasets} == {
                "projects",
                "repositories",
                "repository_folders",
                "repository_cases",
            }
            assert job.analysis["meta"]["file_size_bytes"] > 0

    def test_import_completes_and_skips_orphans(self, db_manager, app_config, bundle_factory):
        """Test that rows of an unmapped project are skipped and the rest imported."""
        job_id = analyze_and_configure(db_manager, app_config, bundle_factory(shop_bundle()))
        reindex_queue = InMemoryReindexQueue()

        status = process_job(
            job_id, "import", db=db_manager, config=app_config, reindex_queue=reindex_queue
        )

        assert status == JobStatus.COMPLETED
        job = load_job(db_manager, job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.phase is None
        assert job.status_message == "Import completed successfully."
        assert job.skipped_count == ORPHAN_CASES
        assert job.error_count == ORPHAN_CASES
        assert job.entity_progress["repository_cases"] == {
            "total": PROJECT_CASES,
            "created": PROJECT_CASES,
            "mapped": 0,
        }
        assert job.total_count == job.processed_count
        assert job.duration_ms is not None
        assert job.started_at <= job.completed_at
        assert job.activity_log[-1]["message"] == "Import completed successfully."

        with db_manager.get_session() as session:
            assert session.scalar(select(func.count()).select_from(tm.RepositoryCase)) == PROJECT_CASES
            assert session.scalar(select(func.count()).select_from(tm.RepositoryCaseVersion)) == PROJECT_CASES

        assert reindex_queue.requests == [
            {"name": f"reindex-after-import-{job_id}", "entity_type": "all", "user_id": None}
        ]

    def test_second_import_maps_existing_rows(self, db_manager, app_config, bundle_factory):
        """Test that importing the same bundle again creates no duplicates."""
        bundle = bundle_factory(shop_bundle())
        first = analyze_and_configure(db_manager, app_config, bundle)
        process_job(first, "import", db=db_manager, config=app_config)

        second = analyze_and_configure(db_manager, app_config, bundle)
        assert process_job(second, "import", db=db_manager, config=app_config) == JobStatus.COMPLETED

        job = load_job(db_manager, second)
        assert job.entity_progress["repository_cases"] == {
            "total": PROJECT_CASES,
            "created": 0,
            "mapped": PROJECT_CASES,
        }
        assert job.entity_progress["projects"]["mapped"] == 1
        with db_manager.get_session() as session:
            assert session.scalar(select(func.count()).select_from(tm.Project)) == 1
            assert session.scalar(select(func.count()).select_from(tm.RepositoryCase)) == PROJECT_CASES
            assert session.scalar(select(func.count()).select_from(tm.RepositoryCaseVersion)) == PROJECT_CASES

    def test_reference_decisions_are_used(self, db_manager, app_config, bundle_factory):
        mapping = MappingConfiguration.from_dict(
            {
                "workflows": {
                    "1": {
                        "action": "create",
                        "name": "Ready",
                        "icon": "check",
                        "color": "#00FF00",
                        "scope": "CASES",
                        "workflowType": "DONE",
                    }
                },
                "tags": {"5": {"action": "create", "name": "smoke"}},
            }
        )
        job_id = analyze_and_configure(
            db_manager, app_config, bundle_factory(shop_bundle(case_tags=True)), mapping
        )

        assert process_job(job_id, "import", db=db_manager, config=app_config) == JobStatus.COMPLETED

        job = load_job(db_manager, job_id)
        workflow_id = job.configuration["workflows"]["1"]["mappedTo"]
        assert job.configuration["workflows"]["1"]["action"] == "map"
        assert job.entity_progress["repository_case_tags"]["created"] == 2

        with db_manager.get_session() as session:
            states = set(session.scalars(select(tm.RepositoryCase.state_id)))
            assert states == {workflow_id}
            tag = session.scalars(select(tm.Tag).where(tm.Tag.name == "smoke")).one()
            linked = session.execute(
                select(tm.repository_case_tags).where(tm.repository_case_tags.c.tag_id == tag.id)
            ).all()
            assert len(linked) == 2
