"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
End-to-end import of execution data: milestones, exploratory sessions,
manual runs with results and step results, automation runs, web links and
issues linked to every kind of owner.
"""

import pytest
from sqlalchemy import func, select

from tmtp.core import target_models as tm
from tmtp.core.config import AppConfig, DatabaseConfig
from tmtp.core.db_models import ImportJob, JobStatus
from tmtp.mapping_config import MappingConfiguration
from tmtp.transformers.links import has_link
from tmtp.worker import process_job
from tests.fixtures.database import create_job

EXECUTION_BUNDLE = {
    "projects": [{"id": 1, "name": "Web Shop"}],
    "project_links": [{"project_id": 1, "name": "Wiki", "url": "https://wiki.example.com"}],
    "milestones": [
        {"id": 20, "project_id": 1, "name": "Release 1.1", "parent_id": 21},
        {"id": 21, "project_id": 1, "name": "Release 1"},
    ],
    "milestone_links": [{"milestone_id": 21, "url": "https://plan.example.com"}],
    "sessions": [
        {"id": 30, "project_id": 1, "name": "Explore checkout", "milestone_id": 21, "estimate": 1_800_000_000}
    ],
    "session_results": [
        {"id": 31, "session_id": 30, "comment": "Looks fine", "created_at": "2025-05-01 10:00:00"}
    ],
    "session_tags": [{"session_id": 30, "tag_id": 5}],
    "repositories": [{"id": 10, "project_id": 1, "is_master": 1}],
    "repository_cases": [{"id": 40, "project_id": 1, "repo_id": 10, "name": "Login"}],
    "repository_case_steps": [{"case_id": 40, "display_order": 1, "text1": "Open login"}],
    "automation_cases": [
        {"id": 50, "project_id": 1, "name": "test_login", "folder": "tests.a1b2c3d4e5.LoginTest"},
        {"id": 51, "project_id": 1, "name": "test_login", "folder": "tests.a1b2c3d4e6.LoginTest"},
    ],
    "automation_runs": [
        {
            "id": 60,
            "project_id": 1,
            "name": "CI build 7",
            "elapsed": 2_500_000,
            "total_count": 2,
            "created_at": "2025-05-02 08:00:00",
        }
    ],
    "automation_run_links": [{"run_id": 60, "url": "https://ci.example.com/7"}],
    "automation_run_tests": [
        {
            "id": 70,
            "run_id": 60,
            "case_id": 50,
            "status": "Failed",
            "elapsed": 1_500_000,
            "file": "tests/test_login.py",
            "line": 12,
        }
    ],
    "automation_run_tags": [{"run_id": 60, "tag_id": 5}],
    "runs": [
        {
            "id": 80,
            "project_id": 1,
            "state_id": 1,
            "name": "Regression",
            "milestone_id": 20,
            "created_at": "2025-05-03 09:00:00",
        }
    ],
    "run_links": [{"run_id": 80, "url": "https://ci.example.com/run"}],
    "run_tests": [
        {"id": 90, "run_id": 80, "case_id": 40},
        {"id": 91, "run_id": 80, "case_id": 40, "is_selected": 0},
    ],
    "run_tags": [{"run_id": 80, "tag_id": 5}],
    "run_results": [
        {
            "id": 100,
            "run_id": 80,
            "test_id": 90,
            "comment": "Passed on Chrome",
            "created_at": "2025-05-03 10:00:00",
        },
        {"id": 101, "run_id": 80, "test_id": 90, "is_deleted": 1},
    ],
    "run_result_steps": [
        {"id": 110, "result_id": 100, "test_id": 90, "display_order": 1, "comment": "ok"},
        {"id": 111, "result_id": 100, "test_id": 90, "display_order": 2, "text1": "Log out"},
    ],
    "issues": [{"id": 120, "target_id": 3, "project_id": 1, "display_id": "SHOP-12"}],
    "repository_case_issues": [{"case_id": 40, "issue_id": 120}],
    "run_issues": [{"run_id": 80, "issue_id": 120}],
    "run_result_issues": [{"result_id": 100, "issue_id": 120}],
    "session_issues": [{"session_id": 30, "issue_id": 120}],
    "session_result_issues": [{"result_id": 31, "issue_id": 120}],
}

MAPPING = {
    "workflows": {
        "1": {
            "action": "create",
            "name": "In Progress",
            "icon": "play",
            "color": "#0000FF",
            "scope": "RUNS",
            "workflowType": "IN_PROGRESS",
        }
    },
    "tags": {"5": {"action": "create", "name": "smoke"}},
    "issueTargets": {
        "3": {
            "action": "create",
            "name": "Jira",
            "provider": "JIRA",
            "baseUrl": "https://jira.example.com",
        }
    },
}


@pytest.fixture
def imported(db_manager, import_config, bundle_factory):
    """Id of a completed import of the execution bundle."""
    config = AppConfig(database=DatabaseConfig(db_path=":memory:"), importer=import_config)
    job_id = create_job(db_manager, storage_key=str(bundle_factory(EXECUTION_BUNDLE)))
    process_job(job_id, "analyze", db=db_manager, config=config)
    with db_manager.get_session() as session:
        session.get(ImportJob, job_id).configuration = MappingConfiguration.from_dict(MAPPING).to_dict()

    assert process_job(job_id, "import", db=db_manager, config=config) == JobStatus.COMPLETED
    return job_id


def count(session, model):
    return session.scalar(select(func.count()).select_from(model))


@pytest.mark.integration
@pytest.mark.db
class TestExecutionImport:
    """Tests for importing runs, sessions, automation and issues."""

    def test_nothing_is_skipped(self, db_manager, imported):
        with db_manager.get_session() as session:
            job = session.get(ImportJob, imported)
            assert job.skipped_count == 0
            assert job.error_count == 0
            progress = job.entity_progress

        assert progress["automation_cases"] == {"total": 2, "created": 1, "mapped": 1}
        assert progress["test_run_cases"] == {"total": 1, "created": 1, "mapped": 0}
        assert progress["test_run_results"] == {"total": 1, "created": 1, "mapped": 0}
        assert progress["test_run_step_results"]["created"] == 2

    def test_milestone_hierarchy_and_links(self, db_manager, imported):
        with db_manager.get_session() as session:
            milestones = {m.name: m for m in session.scalars(select(tm.Milestone))}
            assert milestones["Release 1.1"].parent_id == milestones["Release 1"].id
            assert has_link(milestones["Release 1"].docs, "https://plan.example.com")

            project = session.scalars(select(tm.Project)).one()
            assert has_link(project.docs, "https://wiki.example.com")

    def test_session_with_result_and_version(self, db_manager, imported):
        with db_manager.get_session() as session:
            target = session.scalars(select(tm.Session)).one()
            assert target.estimate == 1800
            assert count(session, tm.SessionVersion) == 1
            assert count(session, tm.SessionResult) == 1
            assert count(session, tm.session_tags) == 1

    def test_manual_run(self, db_manager, imported):
        """Test that unselected tests without results and deleted results are dropped."""
        with db_manager.get_session() as session:
            run = session.scalars(
                select(tm.TestRun).where(tm.TestRun.test_run_type == tm.TestRunType.REGULAR)
            ).one()
            assert run.milestone_id is not None
            assert has_link(run.docs, "https://ci.example.com/run")
            assert count(session, tm.test_run_tags) == 2

            run_cases = session.scalars(select(tm.TestRunCase).where(tm.TestRunCase.test_run_id == run.id)).all()
            assert len(run_cases) == 1
            assert count(session, tm.TestRunResult) == 1

            login = session.scalars(select(tm.RepositoryCase).where(tm.RepositoryCase.name == "Login")).one()
            assert sorted(step.order for step in login.steps) == [1, 2]
            assert count(session, tm.TestRunStepResult) == 2

    def test_automation_run(self, db_manager, imported):
        with db_manager.get_session() as session:
            case = session.scalars(
                select(tm.RepositoryCase).where(tm.RepositoryCase.source == tm.CaseSource.JUNIT)
            ).one()
            assert case.class_name == "tests.LoginTest"
            assert case.automated

            suite = session.scalars(select(tm.JUnitTestSuite)).one()
            assert (suite.tests, suite.failures, suite.errors, suite.skipped) == (2, 1, 0, 0)

            result = session.scalars(select(tm.JUnitTestResult)).one()
            assert result.result_type == tm.JUnitResultType.FAILURE
            assert result.time == pytest.approx(1.5)
            assert result.content == "tests/test_login.py:12"

            run = session.get(tm.TestRun, suite.test_run_id)
            assert run.test_run_type == tm.TestRunType.JUNIT
            assert has_link(run.docs, "https://ci.example.com/7")

    def test_issues_are_linked_everywhere(self, db_manager, imported):
        with db_manager.get_session() as session:
            issue = session.scalars(select(tm.Issue)).one()
            assert issue.external_url == "https://jira.example.com/browse/SHOP-12"

            for table in (
                tm.repository_case_issues,
                tm.test_run_issues,
                tm.test_run_result_issues,
                tm.session_issues,
                tm.session_result_issues,
            ):
                assert count(session, table) == 1, table.name
