"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.core.logging import get_logger
from tmtp.records import RunRecord, RunResultRecord, RunTestRecord, TagAssignmentRecord
from tmtp.transformers.base import (
    CREATED,
    IGNORED,
    MAPPED,
    AssociationTransformer,
    Transformer,
    next_order,
)
from tmtp.values import normalize_estimate

logger = get_logger(__name__)


def note_adjustment(summary, field: str, adjustment: str | None) -> None:
    if adjustment == "clamped":
        summary.add_detail(f"{field}_clamped")
    elif adjustment:
        summary.add_detail(f"{field}_adjusted")


class TestRunTransformer(Transformer):
    """Manual test runs by ``(project, name, created_at)``."""

    __test__ = False

    entity = "test_runs"
    dataset = "runs"
    record_type = RunRecord

    def process(self, session: Session, record: RunRecord) -> str:
        context = self.context
        if record.id is None:
            return self.skip("Skipping test run without an id")
        project_id = context.maps.resolve("projects", record.project_id)
        state_id = context.maps.resolve("workflows", record.state_id)
        if project_id is None or state_id is None:
            return self.skip(
                "Skipping test run due to missing project or workflow state mapping",
                run_id=record.id,
                project_id=record.project_id,
                state_id=record.state_id,
            )

        name = (record.name or "").strip() or f"Imported Run {record.id}"
        query = select(tm.TestRun.id).where(
            tm.TestRun.project_id == project_id,
            tm.TestRun.name == name,
            tm.TestRun.test_run_type == tm.TestRunType.REGULAR,
        )
        if record.created_at is not None:
            query = query.where(tm.TestRun.created_at == record.created_at)
        existing = session.scalars(query).first()
        if existing is not None:
            context.maps["test_runs"].set(record.id, existing)
            return MAPPED

        forecast, forecast_adjustment = normalize_estimate(record.forecast)
        elapsed, elapsed_adjustment = normalize_estimate(record.elapsed)
        note_adjustment(self.summary, "forecast", forecast_adjustment)
        note_adjustment(self.summary, "elapsed", elapsed_adjustment)

        run = tm.TestRun(
            project_id=project_id,
            state_id=state_id,
            milestone_id=context.maps.resolve("milestones", record.milestone_id),
            configuration_id=context.maps.resolve("configurations", record.config_id),
            name=name,
            note=context.document(record.note),
            docs=context.document(record.docs),
            test_run_type=tm.TestRunType.REGULAR,
            forecast=forecast,
            elapsed=elapsed,
            is_completed=bool(record.is_closed),
            completed_at=record.closed_at,
            created_by_id=context.user_id(record.created_by),
        )
        if record.created_at is not None:
            run.created_at = record.created_at
        session.add(run)
        session.flush()
        context.maps["test_runs"].set(record.id, run.id)
        return CREATED


class TestRunCaseTransformer(Transformer):
    """
    Cases of manual test runs.

    Unselected run tests are dropped unless results were recorded against
    them. Each ``(run, case)`` pair is imported once; its order follows the
    export order within the run.
    """

    __test__ = False

    entity = "test_run_cases"
    dataset = "run_tests"
    record_type = RunTestRecord

    def __init__(self, context):
        super().__init__(context)
        self.tests_with_results: set[int] = set()
        self.orders: dict[int, int] = {}

    def scan(self) -> None:
        for records in self.context.records("run_results", RunResultRecord, "test_run_results"):
            for record in records:
                if record.test_id is not None:
                    self.tests_with_results.add(record.test_id)

    def prepare(self, session: Session) -> None:
        self.completed_statuses = set(session.scalars(select(tm.Status.id).where(tm.Status.is_completed.is_(True))))

    def process(self, session: Session, record: RunTestRecord) -> str:
        context = self.context
        if record.id is None:
            return self.skip("Skipping run test without an id")
        run_id = context.maps.resolve("test_runs", record.run_id)
        case_id = context.maps.resolve("repository_cases", record.case_id)
        if run_id is None or case_id is None:
            return self.skip(
                "Skipping run test due to missing run or case mapping",
                test_id=record.id,
                run_id=record.run_id,
                case_id=record.case_id,
            )
        if record.is_selected is False:
            if record.id not in self.tests_with_results:
                self.summary.add_detail("skipped_unselected")
                return IGNORED
            self.summary.add_detail("imported_unselected_with_results")

        existing = session.scalars(
            select(tm.TestRunCase.id).where(
                tm.TestRunCase.test_run_id == run_id, tm.TestRunCase.repository_case_id == case_id
            )
        ).first()
        if existing is not None:
            context.maps["test_run_cases"].set(record.id, existing)
            return MAPPED

        status_id = context.maps.resolve("statuses", record.status_id)
        elapsed, adjustment = normalize_estimate(record.elapsed)
        note_adjustment(self.summary, "elapsed", adjustment)
        run_case = tm.TestRunCase(
            test_run_id=run_id,
            repository_case_id=case_id,
            status_id=status_id,
            assigned_to_id=context.maps.resolve("users", record.assignee_id),
            order=self.next_order(session, run_id),
            elapsed=elapsed,
            is_completed=status_id in self.completed_statuses,
        )
        session.add(run_case)
        session.flush()
        context.maps["test_run_cases"].set(record.id, run_case.id)
        return CREATED

    def next_order(self, session: Session, run_id: int) -> int:
        if run_id not in self.orders:
            self.orders[run_id] = next_order(session, tm.TestRunCase.order, tm.TestRunCase.test_run_id, run_id)
        order = self.orders[run_id]
        self.orders[run_id] = order + 1
        return order


class RunTagTransformer(AssociationTransformer):
    entity = "run_tags"
    dataset = "run_tags"
    record_type = TagAssignmentRecord
    owner_field = "run_id"
    owner_entity = "test_runs"
    target_field = "tag_id"
    target_entity = "tags"
    table = tm.test_run_tags
    owner_column = "test_run_id"
    target_column = "tag_id"
