"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Tests for the entity transformers, run directly over staged rows.

The rows cover one project with a master and a snapshot repository, a folder
tree containing a parent cycle, cases with a dropdown custom field, and
steps with and without an explicit order.
"""

import pytest
from sqlalchemy import select

from tmtp.core import target_models as tm
from tmtp.mapping_config import MappingConfiguration
from tmtp.transformers import (
    CaseStepTransformer,
    CaseTransformer,
    CaseVersionTransformer,
    FolderTransformer,
    ImportContext,
    ProjectTransformer,
    RepositoryTransformer,
)

JOB_ID = "job-transform"

STAGED_ROWS = {
    "projects": [{"id": 1, "name": "Web"}],
    "repositories": [
        {"id": 10, "project_id": 1, "is_master": 1},
        {"id": 11, "project_id": 1, "is_snapshot": 1},
    ],
    "repository_folders": [
        {"id": 100, "project_id": 1, "repo_id": 10, "name": "Root"},
        {"id": 101, "project_id": 1, "repo_id": 10, "parent_id": 100, "name": "Child"},
        {"id": 102, "project_id": 1, "repo_id": 10, "parent_id": 103, "name": "Loop A"},
        {"id": 103, "project_id": 1, "repo_id": 10, "parent_id": 102, "name": "Loop B"},
        {"id": 200, "project_id": 1, "repo_id": 11, "name": "Root"},
    ],
    "repository_cases": [
        {
            "id": 1000,
            "project_id": 1,
            "repo_id": 10,
            "folder_id": 101,
            "name": "Login",
            "custom_priority": "High",
        },
        {
            "id": 1001,
            "project_id": 1,
            "repo_id": 11,
            "folder_id": 200,
            "name": "Logout",
            "custom_priority": "Bogus",
        },
        {"id": 1002, "project_id": 999, "repo_id": 50, "name": "Orphan"},
    ],
    "repository_case_steps": [
        {"case_id": 1000, "display_order": 1, "text1": "Open login page", "text3": "Form shown"},
        {"case_id": 1000, "text1": "Submit"},
        {"case_id": 1000, "text1": "", "text3": None},
        {"case_id": 1002, "text1": "Never imported"},
    ],
}

PIPELINE = (
    ProjectTransformer,
    RepositoryTransformer,
    FolderTransformer,
    CaseTransformer,
    CaseStepTransformer,
    CaseVersionTransformer,
)


@pytest.fixture
def priority_options(db_manager):
    """A dropdown case field named ``priority`` with two options."""
    with db_manager.get_session() as session:
        field = tm.CaseField(display_name="Priority", system_name="priority", field_type="Dropdown")
        session.add(field)
        session.flush()
        options = {}
        for order, name in enumerate(["High", "Low"]):
            option = tm.FieldOption(field_kind=tm.FieldKind.CASE, field_id=field.id, name=name, order=order)
            session.add(option)
            session.flush()
            options[name] = option.id
        return options


@pytest.fixture
def staged(staging):
    for dataset, rows in STAGED_ROWS.items():
        staging.put(JOB_ID, dataset, list(enumerate(rows)))
    return staging


def new_context(db_manager, staging, import_config):
    context = ImportContext(JOB_ID, db_manager, staging, import_config, MappingConfiguration())
    with db_manager.get_session() as session:
        context.load_defaults(session)
    context.load_field_caches()
    return context


def run_pipeline(context):
    return {transformer_class.entity: transformer_class(context).run() for transformer_class in PIPELINE}


@pytest.mark.unit
@pytest.mark.db
class TestEntityTransformers:
    """Tests for projects, repositories, folders, cases and steps."""

    def test_first_run_creates_the_tree(self, db_manager, staged, import_config, priority_options):
        context = new_context(db_manager, staged, import_config)

        summaries = run_pipeline(context)

        projects = summaries["projects"]
        assert (projects.created, projects.mapped) == (1, 0)

        repositories = summaries["repositories"]
        assert (repositories.created, repositories.mapped) == (1, 1)
        assert repositories.details == {"duplicates_redirected": 1}

        folders = summaries["repository_folders"]
        assert (folders.created, folders.mapped, folders.total) == (4, 1, 5)
        assert folders.details["cycles_broken"] == 1

        cases = summaries["repository_cases"]
        assert (cases.created, cases.mapped) == (2, 0)
        assert cases.details["skipped"] == 1

        steps = summaries["repository_case_steps"]
        assert (steps.created, steps.mapped) == (2, 0)
        assert steps.details == {"skipped": 1, "ignored": 1}

        assert summaries["repository_case_versions"].created == 2
        assert context.skipped_count == 2

    def test_snapshot_repository_shares_the_target(self, db_manager, staged, import_config, priority_options):
        context = new_context(db_manager, staged, import_config)
        run_pipeline(context)

        with db_manager.get_session() as session:
            repositories = session.scalars(select(tm.Repository)).all()
            assert [repository.name for repository in repositories] == ["Repository"]

        target = repositories[0].id
        assert context.maps.resolve("repositories", 10) == target
        assert context.maps.resolve("repositories", 11) == target
        assert context.maps.resolve("repository_folders", 200) == context.maps.resolve(
            "repository_folders", 100
        )

    def test_folder_cycle_is_attached_at_the_root(self, db_manager, staged, import_config, priority_options):
        """Test that the folder closing a cycle becomes a root and the other hangs below it."""
        context = new_context(db_manager, staged, import_config)
        run_pipeline(context)

        with db_manager.get_session() as session:
            loop_a = session.get(tm.RepositoryFolder, context.maps.resolve("repository_folders", 102))
            loop_b = session.get(tm.RepositoryFolder, context.maps.resolve("repository_folders", 103))
            child = session.get(tm.RepositoryFolder, context.maps.resolve("repository_folders", 101))

            assert loop_b.parent_id is None
            assert loop_a.parent_id == loop_b.id
            assert child.parent_id == context.maps.resolve("repository_folders", 100)

    def test_case_fields_and_warnings(self, db_manager, staged, import_config, priority_options):
        context = new_context(db_manager, staged, import_config)
        run_pipeline(context)

        with db_manager.get_session() as session:
            values = session.scalars(select(tm.CaseFieldValue)).all()
            assert [value.value for value in values] == [priority_options["High"]]

            login = session.get(tm.RepositoryCase, context.maps.resolve("repository_cases", 1000))
            assert login.folder_id == context.maps.resolve("repository_folders", 101)
            assert login.template_id == context.project_templates[login.project_id]
            assert login.state_id == context.default_workflow(tm.WorkflowScope.CASES)

        # One unknown dropdown option and one case of an unmapped project
        assert context.errors.counts["repository_cases"] == 2
        assert context.errors.counts["repository_case_steps"] == 1

    def test_steps_are_ordered(self, db_manager, staged, import_config, priority_options):
        context = new_context(db_manager, staged, import_config)
        run_pipeline(context)

        case_id = context.maps.resolve("repository_cases", 1000)
        with db_manager.get_session() as session:
            steps = session.scalars(
                select(tm.Step).where(tm.Step.test_case_id == case_id).order_by(tm.Step.order)
            ).all()

            assert [step.order for step in steps] == [1, 2]
            assert steps[0].expected_result is not None
            assert steps[1].expected_result is None

    def test_progress_excludes_skipped_and_ignored_rows(
        self, db_manager, staged, import_config, priority_options
    ):
        context = new_context(db_manager, staged, import_config)
        run_pipeline(context)

        progress = context.progress.entity_progress()
        assert progress["repository_case_steps"] == {"total": 2, "created": 2, "mapped": 0}
        assert progress["repository_cases"] == {"total": 2, "created": 2, "mapped": 0}
        assert context.progress.total_count == context.progress.processed_count

    def test_versions_cover_cases_imported_earlier(self, db_manager, staged, import_config, priority_options):
        """Test that cases left without a version by an earlier run are versioned now."""
        context = new_context(db_manager, staged, import_config)
        for transformer_class in PIPELINE[:-1]:
            transformer_class(context).run()

        summaries = run_pipeline(new_context(db_manager, staged, import_config))

        assert summaries["repository_cases"].mapped == 2
        assert summaries["repository_case_versions"].created == 2
        with db_manager.get_session() as session:
            versions = session.scalars(select(tm.RepositoryCaseVersion)).all()
            assert sorted(len(version.data["steps"]) for version in versions) == [0, 2]

    def test_rerun_maps_everything(self, db_manager, staged, import_config, priority_options):
        """Test that a second run over the same rows creates nothing."""
        run_pipeline(new_context(db_manager, staged, import_config))

        summaries = run_pipeline(new_context(db_manager, staged, import_config))

        assert (summaries["projects"].created, summaries["projects"].mapped) == (0, 1)
        assert (summaries["repositories"].created, summaries["repositories"].mapped) == (0, 2)
        assert (summaries["repository_folders"].created, summaries["repository_folders"].mapped) == (0, 5)
        assert (summaries["repository_cases"].created, summaries["repository_cases"].mapped) == (0, 2)
        assert (summaries["repository_case_steps"].created, summaries["repository_case_steps"].mapped) == (0, 2)
        assert summaries["repository_case_versions"].total == 0

        with db_manager.get_session() as session:
            assert len(session.scalars(select(tm.RepositoryCase)).all()) == 2
            assert len(session.scalars(select(tm.Step)).all()) == 2
            assert len(session.scalars(select(tm.RepositoryCaseVersion)).all()) == 2
