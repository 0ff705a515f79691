"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Tests for the job entry point: validation, cancellation, failures and
remote bundles.
"""

import json

import pytest
import responses

from tmtp.core.config import AppConfig, DatabaseConfig
from tmtp.core.db_models import ImportJob, JobStatus
from tmtp.errors import BundleSourceError, ConfigurationError, JobNotFoundError
from tmtp.mapping_config import MappingConfiguration
from tmtp.worker import CancellationProbe, process_job
from tests.fixtures.database import create_job

BUNDLE_URL = "https://storage.example.com/exports/export.json"

SMALL_BUNDLE = {
    "projects": [{"id": 1, "name": "Web Shop"}],
    "tags": [{"id": 5, "name": "smoke"}],
}


@pytest.fixture
def app_config(import_config):
    return AppConfig(database=DatabaseConfig(db_path=":memory:"), importer=import_config)


@pytest.fixture
def ready_job(db_manager, app_config, bundle_factory):
    """An analyzed job with the default mapping configuration."""
    job_id = create_job(db_manager, storage_key=str(bundle_factory(SMALL_BUNDLE)))
    process_job(job_id, "analyze", db=db_manager, config=app_config)
    with db_manager.get_session() as session:
        session.get(ImportJob, job_id).configuration = MappingConfiguration().to_dict()
    return job_id


def job_state(db_manager, job_id):
    with db_manager.get_session() as session:
        job = session.get(ImportJob, job_id)
        return job.status, job.status_message, job.error


@pytest.mark.integration
@pytest.mark.db
class TestProcessJob:
    """Tests for process_job."""

    def test_unknown_mode(self, db_manager, app_config):
        with pytest.raises(ValueError, match="Unsupported import job mode"):
            process_job("job-1", "export", db=db_manager, config=app_config)

    def test_empty_job_id(self, db_manager, app_config):
        with pytest.raises(ValueError, match="Job id is required"):
            process_job("", "analyze", db=db_manager, config=app_config)

    def test_missing_job(self, db_manager, app_config):
        with pytest.raises(JobNotFoundError):
            process_job("no-such-job", "analyze", db=db_manager, config=app_config)

    def test_terminal_job_is_left_alone(self, db_manager, app_config):
        job_id = create_job(db_manager, status=JobStatus.COMPLETED, status_message="done")

        assert process_job(job_id, "import", db=db_manager, config=app_config) == JobStatus.COMPLETED
        assert job_state(db_manager, job_id)[1] == "done"

    def test_import_requires_configuration(self, db_manager, app_config, bundle_factory):
        job_id = create_job(db_manager, storage_key=str(bundle_factory(SMALL_BUNDLE)))
        process_job(job_id, "analyze", db=db_manager, config=app_config)

        with pytest.raises(ConfigurationError, match="without configuration"):
            process_job(job_id, "import", db=db_manager, config=app_config)

        assert job_state(db_manager, job_id)[0] == JobStatus.READY

    def test_invalid_decision_fails_the_job(self, db_manager, app_config, ready_job):
        """Test that a broken mapping decision fails the job and records why."""
        with db_manager.get_session() as session:
            session.get(ImportJob, ready_job).configuration = {"workflows": {"1": {"action": "map"}}}

        with pytest.raises(ConfigurationError):
            process_job(ready_job, "import", db=db_manager, config=app_config)

        status, message, error = job_state(db_manager, ready_job)
        assert status == JobStatus.FAILED
        assert message == "Import failed"
        assert "workflows 1" in error

    def test_missing_bundle_fails_analysis(self, db_manager, app_config, tmp_path):
        job_id = create_job(db_manager, storage_key=str(tmp_path / "missing.json"))

        with pytest.raises(BundleSourceError, match="not found"):
            process_job(job_id, "analyze", db=db_manager, config=app_config)

        status, _, error = job_state(db_manager, job_id)
        assert status == JobStatus.FAILED
        assert "missing.json" in error


@pytest.mark.integration
@pytest.mark.db
class TestCancellation:
    """Tests for cancel requests."""

    def test_analysis_canceled_before_start(self, db_manager, app_config, bundle_factory):
        job_id = create_job(
            db_manager, storage_key=str(bundle_factory(SMALL_BUNDLE)), cancel_requested=True
        )

        assert process_job(job_id, "analyze", db=db_manager, config=app_config) == JobStatus.CANCELED
        assert job_state(db_manager, job_id)[1] == "Import was canceled before it started"

    def test_import_stops_at_the_first_boundary(self, db_manager, app_config, ready_job):
        with db_manager.get_session() as session:
            session.get(ImportJob, ready_job).cancel_requested = True

        assert process_job(ready_job, "import", db=db_manager, config=app_config) == JobStatus.CANCELED

        status, message, _ = job_state(db_manager, ready_job)
        assert status == JobStatus.CANCELED
        assert message == "Import was canceled"

    def test_probe_polls_at_most_once_per_interval(self, db_manager):
        job_id = create_job(db_manager)
        now = {"value": 0.0}
        probe = CancellationProbe(db_manager, job_id, interval=1.0, clock=lambda: now["value"])

        assert not probe()
        with db_manager.get_session() as session:
            session.get(ImportJob, job_id).cancel_requested = True

        now["value"] = 0.5
        assert not probe()
        now["value"] = 1.5
        assert probe()


@pytest.mark.integration
@pytest.mark.db
class TestRemoteBundles:
    """Tests for bundles fetched over HTTP."""

    @responses.activate
    def test_remote_bundle_is_analyzed(self, db_manager, import_config, tmp_path):
        responses.add(
            responses.GET,
            BUNDLE_URL,
            body=json.dumps({"tags": {"data": [{"id": 5, "name": "smoke"}]}}),
            status=200,
        )
        config = AppConfig(
            database=DatabaseConfig(db_path=":memory:"),
            importer=import_config.model_copy(update={"temp_dir": str(tmp_path)}),
        )
        job_id = create_job(db_manager, storage_key=BUNDLE_URL)

        assert process_job(job_id, "analyze", db=db_manager, config=config) == JobStatus.READY

        with db_manager.get_session() as session:
            assert session.get(ImportJob, job_id).total_rows == 1
        assert list(tmp_path.iterdir()) == []

    @responses.activate
    def test_failed_download_fails_the_job(self, db_manager, app_config):
        responses.add(responses.GET, BUNDLE_URL, status=404)
        job_id = create_job(db_manager, storage_key=BUNDLE_URL)

        with pytest.raises(BundleSourceError, match="Failed to download"):
            process_job(job_id, "analyze", db=db_manager, config=app_config)

        assert job_state(db_manager, job_id)[0] == JobStatus.FAILED
