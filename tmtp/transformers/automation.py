"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Automation cases, runs and their JUnit results.

Automation cases become repository cases with ``source = JUNIT`` filed under
an ``Automation`` root folder. Automation runs become JUNIT test runs with one
test suite each, and every automation run test becomes a run case plus a
JUnit test result in that suite.
"""

import re
from collections.abc import Iterable
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.core.logging import get_logger
from tmtp.records import AutomationCaseRecord, AutomationRunRecord, AutomationRunTestRecord, TagAssignmentRecord
from tmtp.transformers.base import (
    CREATED,
    MAPPED,
    AssociationTransformer,
    Transformer,
    next_order,
)
from tmtp.transformers.cases import add_case_version
from tmtp.values import microseconds_to_seconds, to_number

logger = get_logger(__name__)

AUTOMATION_FOLDER_NAME = "Automation"

_HEX_SEGMENT = re.compile(r"^[0-9a-f-]{8,}$", re.IGNORECASE)
_NUMERIC_SEGMENT = re.compile(r"^\d{6,}$")
_SLUG_SEGMENT = re.compile(r"^[a-z0-9_-]{6,}$")

SKIPPED_NAMES = frozenset({"skip", "skipped", "block", "blocked", "omit", "omitted"})
ERROR_NAMES = frozenset({"error", "errored", "exception"})
FAILURE_NAMES = frozenset({"fail", "failed", "failure"})


def looks_generated(segment: str) -> bool:
    """Whether a class-name segment looks like a generated identifier rather than a name."""
    if _HEX_SEGMENT.match(segment) or _NUMERIC_SEGMENT.match(segment):
        return True
    if ":" in segment or segment.startswith("@"):
        return True
    return segment == segment.lower() and any(ch.isdigit() for ch in segment) and bool(_SLUG_SEGMENT.match(segment))


def normalize_automation_class_name(folder: str | None) -> str | None:
    """
    Class name of an automation case from its dotted folder.

    Segments after the first that look generated (hashes, build numbers,
    ``@tags``, ``file:line`` pairs) are dropped so reruns of the same test
    group under one case.
    """
    if not folder:
        return None
    segments = [segment.strip() for segment in folder.split(".")]
    segments = [segment for segment in segments if segment]
    if not segments:
        return None
    kept = segments[:1] + [segment for segment in segments[1:] if not looks_generated(segment)]
    return ".".join(kept)


def infer_result_type(candidates: Iterable[str | None], is_failure: bool = False) -> tm.JUnitResultType:
    """JUnit result type from a status's names and aliases."""
    names = {candidate.strip().lower() for candidate in candidates if candidate and candidate.strip()}
    if names & SKIPPED_NAMES:
        return tm.JUnitResultType.SKIPPED
    if names & ERROR_NAMES:
        return tm.JUnitResultType.ERROR
    if is_failure or names & FAILURE_NAMES:
        return tm.JUnitResultType.FAILURE
    return tm.JUnitResultType.PASSED


def split_aliases(alias: str | None) -> list[str]:
    if not alias:
        return []
    return [entry.strip() for entry in re.split(r"[;,|]", alias) if entry.strip()]


class AutomationCaseTransformer(Transformer):
    """
    Automation cases grouped by ``(project, name, class name)``.

    The first row of a group creates the case; later rows map onto it.
    """

    entity = "automation_cases"
    dataset = "automation_cases"
    record_type = AutomationCaseRecord

    def __init__(self, context):
        super().__init__(context)
        self.folder_cache: dict[tuple[int, int | None, str], int] = {}

    def prepare(self, session: Session) -> None:
        self.default_state_id = self.context.default_workflow(tm.WorkflowScope.CASES)

    def process(self, session: Session, record: AutomationCaseRecord) -> str:
        context = self.context
        if record.id is None:
            return self.skip("Skipping automation case without an id")
        project_id = context.maps.resolve("projects", record.project_id)
        if project_id is None:
            return self.skip(
                "Skipping automation case due to missing project mapping",
                case_id=record.id,
                project_id=record.project_id,
            )

        name = (record.name or "").strip() or f"Automation Case {record.id}"
        class_name = normalize_automation_class_name(record.folder)
        existing = self.find_existing(session, project_id, name, class_name)
        if existing is not None:
            existing.class_name = class_name
            existing.automated = True
            context.maps["automation_cases"].set(record.id, existing.id)
            return MAPPED

        repository_id = context.repository_for(session, None, record.project_id)
        template_id = self.template_for(session, project_id)
        if repository_id is None or template_id is None or self.default_state_id is None:
            return self.skip(
                "Skipping automation case without a repository, template or workflow state",
                case_id=record.id,
                project_id=record.project_id,
            )

        case = tm.RepositoryCase(
            project_id=project_id,
            repository_id=repository_id,
            folder_id=self.folder_for(session, project_id, repository_id, record.folder),
            template_id=template_id,
            state_id=self.default_state_id,
            name=name,
            class_name=class_name,
            source=tm.CaseSource.JUNIT,
            automated=True,
            order=0,
            current_version=1,
            created_by_id=context.created_by_id,
        )
        if record.created_at is not None:
            case.created_at = record.created_at
        session.add(case)
        session.flush()
        add_case_version(session, case)
        context.maps["automation_cases"].set(record.id, case.id)
        return CREATED

    def find_existing(
        self, session: Session, project_id: int, name: str, class_name: str | None
    ) -> tm.RepositoryCase | None:
        base = select(tm.RepositoryCase).where(
            tm.RepositoryCase.project_id == project_id,
            tm.RepositoryCase.name == name,
            tm.RepositoryCase.source == tm.CaseSource.JUNIT,
        )
        exact = session.scalars(
            base.where(
                tm.RepositoryCase.class_name.is_(None)
                if class_name is None
                else tm.RepositoryCase.class_name == class_name
            )
        ).first()
        if exact is not None or class_name is None:
            return exact
        # Cases imported before they had a class name
        return session.scalars(
            base.where(tm.RepositoryCase.class_name.is_(None)).order_by(tm.RepositoryCase.id)
        ).first()

    def template_for(self, session: Session, project_id: int) -> int | None:
        context = self.context
        template_id = context.project_templates.get(project_id)
        if template_id is None:
            template_id = session.scalars(
                select(tm.project_templates.c.template_id)
                .where(tm.project_templates.c.project_id == project_id)
                .order_by(tm.project_templates.c.template_id)
            ).first()
        if template_id is None:
            mapped = context.maps["templates"].target_ids()
            template_id = mapped[0] if mapped else context.default_template_id
            if template_id is not None:
                context.assign_template(session, project_id, template_id)
        return template_id

    def folder_for(self, session: Session, project_id: int, repository_id: int, folder: str | None) -> int:
        """The ``Automation`` root folder, then one folder per dotted segment."""
        parent_id = self.child_folder(session, project_id, repository_id, None, AUTOMATION_FOLDER_NAME)
        for segment in (folder or "").split("."):
            segment = segment.strip()
            if segment:
                parent_id = self.child_folder(session, project_id, repository_id, parent_id, segment)
        return parent_id

    def child_folder(
        self, session: Session, project_id: int, repository_id: int, parent_id: int | None, name: str
    ) -> int:
        key = (repository_id, parent_id, name)
        if key in self.folder_cache:
            return self.folder_cache[key]
        folder_id = session.scalars(
            select(tm.RepositoryFolder.id).where(
                tm.RepositoryFolder.repository_id == repository_id,
                tm.RepositoryFolder.parent_id.is_(None)
                if parent_id is None
                else tm.RepositoryFolder.parent_id == parent_id,
                tm.RepositoryFolder.name == name,
            )
        ).first()
        if folder_id is None:
            folder = tm.RepositoryFolder(
                project_id=project_id, repository_id=repository_id, parent_id=parent_id, name=name
            )
            session.add(folder)
            session.flush()
            folder_id = folder.id
        self.folder_cache[key] = folder_id
        return folder_id


class AutomationRunTransformer(Transformer):
    """Automation runs as JUNIT test runs, each with one test suite."""

    entity = "automation_runs"
    dataset = "automation_runs"
    record_type = AutomationRunRecord

    def prepare(self, session: Session) -> None:
        self.default_state_id = self.context.default_workflow(tm.WorkflowScope.RUNS)

    def process(self, session: Session, record: AutomationRunRecord) -> str:
        context = self.context
        if record.id is None:
            return self.skip("Skipping automation run without an id")
        project_id = context.maps.resolve("projects", record.project_id)
        if project_id is None:
            return self.skip(
                "Skipping automation run due to missing project mapping",
                run_id=record.id,
                project_id=record.project_id,
            )
        if self.default_state_id is None:
            return self.skip("Skipping automation run without a default run workflow", run_id=record.id)

        name = (record.name or "").strip() or f"Automation Run {record.id}"
        query = select(tm.TestRun).where(
            tm.TestRun.project_id == project_id,
            tm.TestRun.name == name,
            tm.TestRun.test_run_type == tm.TestRunType.JUNIT,
        )
        if record.created_at is not None:
            query = query.where(tm.TestRun.created_at == record.created_at)
        existing = session.scalars(query).first()
        if existing is not None:
            context.maps["automation_runs"].set(record.id, existing.id)
            return MAPPED

        elapsed = microseconds_to_seconds(record.elapsed)
        is_completed = True if record.is_completed is None else bool(record.is_completed)
        completed_at = record.completed_at or (record.created_at if is_completed else None)
        run = tm.TestRun(
            project_id=project_id,
            state_id=self.default_state_id,
            milestone_id=context.maps.resolve("milestones", record.milestone_id),
            configuration_id=context.maps.resolve("configurations", record.config_id),
            name=name,
            test_run_type=tm.TestRunType.JUNIT,
            elapsed=elapsed,
            is_completed=is_completed,
            completed_at=completed_at,
            created_by_id=context.user_id(record.created_by),
        )
        if record.created_at is not None:
            run.created_at = record.created_at
        session.add(run)
        session.flush()
        session.add(
            tm.JUnitTestSuite(
                test_run_id=run.id,
                name=name,
                time=elapsed or 0,
                tests=record.total_count or 0,
                timestamp=record.created_at,
            )
        )
        context.maps["automation_runs"].set(record.id, run.id)
        return CREATED


class AutomationRunTestTransformer(Transformer):
    """
    Results of automation runs.

    Each row becomes (or updates) the run case of its automation case and
    adds a JUnit test result to the run's suite, keyed by ``(suite, case)``.
    """

    entity = "automation_run_tests"
    dataset = "automation_run_tests"
    record_type = AutomationRunTestRecord

    def __init__(self, context):
        super().__init__(context)
        self.runs: dict[int, tuple[int, Any, int | None]] = {}
        self.orders: dict[int, int] = {}
        self.touched_suites: set[int] = set()

    def prepare(self, session: Session) -> None:
        self.statuses: dict[int, tuple[list[str], bool]] = {}
        self.status_names: dict[str, int] = {}
        for status in session.scalars(select(tm.Status).order_by(tm.Status.id)):
            names = [status.system_name, status.name, *split_aliases(status.alias)]
            self.statuses[status.id] = (names, bool(status.is_failure))
            for name in names:
                if name:
                    self.status_names.setdefault(name.strip().lower(), status.id)

    def run_info(self, session: Session, run_id: int) -> tuple[int, Any, int | None]:
        """Project, execution time and suite id of a target run."""
        if run_id not in self.runs:
            run = session.get(tm.TestRun, run_id)
            suite_id = session.scalars(
                select(tm.JUnitTestSuite.id)
                .where(tm.JUnitTestSuite.test_run_id == run_id)
                .order_by(tm.JUnitTestSuite.id)
            ).first()
            self.runs[run_id] = (run.project_id, run.completed_at or run.created_at, suite_id)
        return self.runs[run_id]

    def case_for(self, session: Session, record: AutomationRunTestRecord, project_id: int) -> int | None:
        case_id = self.context.maps.resolve("automation_cases", record.case_id)
        if case_id is not None or not record.name:
            return case_id
        return session.scalars(
            select(tm.RepositoryCase.id)
            .where(
                tm.RepositoryCase.project_id == project_id,
                tm.RepositoryCase.name == record.name.strip(),
                tm.RepositoryCase.source == tm.CaseSource.JUNIT,
            )
            .order_by(tm.RepositoryCase.id)
        ).first()

    def status_for(self, record: AutomationRunTestRecord) -> int | None:
        mapped = self.context.maps.resolve("statuses", record.status_id)
        if mapped is not None:
            return mapped
        if record.status:
            matched = self.status_names.get(record.status.strip().lower())
            if matched is not None:
                return matched
        return self.context.untested_status_id

    def result_type_for(self, record: AutomationRunTestRecord, status_id: int | None) -> tm.JUnitResultType:
        names, is_failure = self.statuses.get(status_id, ([], False))
        return infer_result_type([record.status, *names], is_failure=is_failure)

    def process(self, session: Session, record: AutomationRunTestRecord) -> str:
        context = self.context
        run_id = context.maps.resolve("automation_runs", record.run_id)
        if run_id is None:
            return self.skip(
                "Skipping automation run test due to missing run mapping",
                test_id=record.id,
                run_id=record.run_id,
            )
        project_id, executed_at, suite_id = self.run_info(session, run_id)
        if suite_id is None:
            return self.skip("Skipping automation run test without a test suite", test_id=record.id)
        case_id = self.case_for(session, record, project_id)
        if case_id is None:
            return self.skip(
                "Skipping automation run test due to missing automation case mapping",
                test_id=record.id,
                case_id=record.case_id,
            )
        case_project = session.scalars(
            select(tm.RepositoryCase.project_id).where(tm.RepositoryCase.id == case_id)
        ).first()
        if case_project != project_id:
            return self.skip(
                "Skipping automation run test whose case belongs to another project",
                test_id=record.id,
                case_id=record.case_id,
            )

        status_id = self.status_for(record)
        elapsed = microseconds_to_seconds(record.elapsed)
        run_case = session.scalars(
            select(tm.TestRunCase).where(
                tm.TestRunCase.test_run_id == run_id, tm.TestRunCase.repository_case_id == case_id
            )
        ).first()
        if run_case is None:
            run_case = tm.TestRunCase(
                test_run_id=run_id, repository_case_id=case_id, order=self.next_order(session, run_id)
            )
            session.add(run_case)
        run_case.status_id = status_id
        run_case.elapsed = elapsed
        run_case.is_completed = status_id is not None
        run_case.completed_at = executed_at if status_id is not None else None
        session.flush()
        if record.id is not None:
            context.maps["automation_run_tests"].set(record.id, run_case.id)

        existing = session.scalars(
            select(tm.JUnitTestResult.id).where(
                tm.JUnitTestResult.test_suite_id == suite_id,
                tm.JUnitTestResult.repository_case_id == case_id,
            )
        ).first()
        if existing is not None:
            return MAPPED

        seconds = to_number(record.elapsed)
        session.add(
            tm.JUnitTestResult(
                test_suite_id=suite_id,
                repository_case_id=case_id,
                status_id=status_id,
                result_type=self.result_type_for(record, status_id),
                time=seconds / 1_000_000 if seconds is not None else None,
                executed_at=executed_at,
                content=f"{record.file}:{record.line}" if record.file and record.line else record.file,
            )
        )
        self.touched_suites.add(suite_id)
        return CREATED

    def next_order(self, session: Session, run_id: int) -> int:
        if run_id not in self.orders:
            self.orders[run_id] = next_order(session, tm.TestRunCase.order, tm.TestRunCase.test_run_id, run_id)
        order = self.orders[run_id]
        self.orders[run_id] = order + 1
        return order

    def finish(self, session: Session) -> None:
        """Refresh the failure, error and skip counters of the suites that gained results."""
        for suite_id in self.touched_suites:
            counts = dict(
                session.execute(
                    select(tm.JUnitTestResult.result_type, func.count())
                    .where(tm.JUnitTestResult.test_suite_id == suite_id)
                    .group_by(tm.JUnitTestResult.result_type)
                ).all()
            )
            suite = session.get(tm.JUnitTestSuite, suite_id)
            suite.failures = counts.get(tm.JUnitResultType.FAILURE, 0)
            suite.errors = counts.get(tm.JUnitResultType.ERROR, 0)
            suite.skipped = counts.get(tm.JUnitResultType.SKIPPED, 0)
            suite.tests = max(suite.tests or 0, sum(counts.values()))


class AutomationRunTagTransformer(AssociationTransformer):
    entity = "automation_run_tags"
    dataset = "automation_run_tags"
    record_type = TagAssignmentRecord
    owner_field = "run_id"
    owner_entity = "automation_runs"
    target_field = "tag_id"
    target_entity = "tags"
    table = tm.test_run_tags
    owner_column = "test_run_id"
    target_column = "tag_id"
