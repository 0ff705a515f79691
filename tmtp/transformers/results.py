"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.core.logging import get_logger
from tmtp.records import RunResultRecord, RunResultStepRecord
from tmtp.transformers.base import CREATED, IGNORED, MAPPED, Transformer, find_by_content
from tmtp.transformers.cases import is_empty_value, step_documents
from tmtp.transformers.runs import note_adjustment
from tmtp.values import normalize_estimate, normalize_field_value

logger = get_logger(__name__)


class TestRunResultTransformer(Transformer):
    """
    Results of manual run cases, keyed by ``(run case, executed_at)``.

    A result without a timestamp is keyed by its run case, status, elapsed
    time and notes instead.

    ``custom_*`` columns become result field values.
    """

    __test__ = False

    entity = "test_run_results"
    dataset = "run_results"
    record_type = RunResultRecord

    def prepare(self, session: Session) -> None:
        self.untested_status_id = self.context.require_untested_status()

    def process(self, session: Session, record: RunResultRecord) -> str:
        context = self.context
        if record.id is None or record.run_id is None or record.test_id is None:
            return self.skip(
                "Skipping run result without an id, run or test",
                result_id=record.id,
                run_id=record.run_id,
                test_id=record.test_id,
            )
        if record.is_deleted:
            self.summary.add_detail("deleted")
            return IGNORED
        run_id = context.maps.resolve("test_runs", record.run_id)
        run_case_id = context.maps.resolve("test_run_cases", record.test_id)
        if run_id is None or run_case_id is None:
            return self.skip(
                "Skipping run result due to missing run or run case mapping",
                result_id=record.id,
                run_id=record.run_id,
                test_id=record.test_id,
            )

        status_id = context.maps.resolve("statuses", record.status_id) or self.untested_status_id
        notes = context.document(record.comment)
        elapsed, adjustment = normalize_estimate(record.elapsed)
        if record.created_at is not None:
            existing = session.scalars(
                select(tm.TestRunResult.id).where(
                    tm.TestRunResult.test_run_case_id == run_case_id,
                    tm.TestRunResult.executed_at == record.created_at,
                )
            ).first()
        else:
            existing = find_by_content(
                session,
                tm.TestRunResult,
                {"test_run_case_id": run_case_id, "status_id": status_id, "elapsed": elapsed},
                {"notes": notes},
            )
        if existing is not None:
            context.maps["test_run_results"].set(record.id, existing)
            return MAPPED

        note_adjustment(self.summary, "elapsed", adjustment)
        result = tm.TestRunResult(
            test_run_id=run_id,
            test_run_case_id=run_case_id,
            status_id=status_id,
            executed_by_id=context.user_id(record.created_by),
            elapsed=elapsed,
            notes=notes,
        )
        if record.created_at is not None:
            result.executed_at = record.created_at
        session.add(result)
        session.flush()
        self.add_custom_values(session, result.id, record)
        context.maps["test_run_results"].set(record.id, result.id)
        return CREATED

    def add_custom_values(self, session: Session, result_id: int, record: RunResultRecord) -> None:
        context = self.context
        for system_name, raw in record.custom_fields().items():
            metadata = context.result_fields.get(system_name)
            if metadata is None or is_empty_value(raw):
                continue
            value = normalize_field_value(
                raw,
                metadata,
                context.field_warning(self.entity, result_id=record.id, field=system_name),
                context.document,
                context.field_value_names,
            )
            if is_empty_value(value):
                continue
            session.add(tm.ResultFieldValue(test_run_result_id=result_id, field_id=metadata.field_id, value=value))
            self.summary.add_detail("field_values")


class StepResultTransformer(Transformer):
    """
    Per-step results.

    The step is matched on the run case's repository case by order and
    created from the row's texts when the case has no step at that position.
    """

    entity = "test_run_step_results"
    dataset = "run_result_steps"
    record_type = RunResultStepRecord

    def __init__(self, context):
        super().__init__(context)
        self.run_cases: dict[int, int] = {}

    def prepare(self, session: Session) -> None:
        self.untested_status_id = self.context.require_untested_status()

    def case_for_run_case(self, session: Session, run_case_id: int) -> int | None:
        if run_case_id not in self.run_cases:
            self.run_cases[run_case_id] = session.scalars(
                select(tm.TestRunCase.repository_case_id).where(tm.TestRunCase.id == run_case_id)
            ).first()
        return self.run_cases[run_case_id]

    def process(self, session: Session, record: RunResultStepRecord) -> str:
        context = self.context
        result_id = context.maps.resolve("test_run_results", record.result_id)
        run_case_id = context.maps.resolve("test_run_cases", record.test_id)
        if result_id is None or run_case_id is None:
            return self.skip(
                "Skipping step result due to missing result or run case mapping",
                step_result_id=record.id,
                result_id=record.result_id,
                test_id=record.test_id,
            )
        if record.display_order is None:
            return self.skip("Skipping step result without a display order", step_result_id=record.id)
        case_id = self.case_for_run_case(session, run_case_id)
        if case_id is None:
            return self.skip("Skipping step result whose run case has no case", step_result_id=record.id)

        step_id = session.scalars(
            select(tm.Step.id).where(tm.Step.test_case_id == case_id, tm.Step.order == record.display_order)
        ).first()
        if step_id is None:
            step_text, expected = step_documents(context, record)
            step = tm.Step(
                test_case_id=case_id, order=record.display_order, step=step_text, expected_result=expected
            )
            session.add(step)
            session.flush()
            step_id = step.id
            self.summary.add_detail("steps_created")

        existing = session.scalars(
            select(tm.TestRunStepResult.id).where(
                tm.TestRunStepResult.test_run_result_id == result_id,
                tm.TestRunStepResult.step_id == step_id,
            )
        ).first()
        if existing is not None:
            return MAPPED
        session.add(
            tm.TestRunStepResult(
                test_run_result_id=result_id,
                step_id=step_id,
                status_id=context.maps.resolve("statuses", record.status_id) or self.untested_status_id,
                notes=context.document(record.comment),
            )
        )
        return CREATED
