"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Repository cases and the rows that hang off them.

Cases are imported first, then their steps and dropdown/multi-select values
from their own datasets, and finally a version snapshot of every imported
case that has none yet, so the snapshot reflects the complete case.
"""

from collections.abc import Iterator
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.core.logging import get_logger
from tmtp.records import CaseRecord, CaseStepRecord, CaseValueRecord, StepTextRecord, TagAssignmentRecord
from tmtp.transformers.base import (
    CREATED,
    IGNORED,
    MAPPED,
    AssociationTransformer,
    Transformer,
    merge_field_value,
)
from tmtp.values import normalize_estimate, normalize_field_value

logger = get_logger(__name__)


def step_text(primary: str | None, data: str | None) -> str | None:
    """Join a step text with its data block; ``None`` when both are empty."""
    primary = (primary or "").strip()
    data = (data or "").strip()
    if data:
        return f"{primary}\n<data>{data}</data>" if primary else f"<data>{data}</data>"
    return primary or None


def step_documents(context, record: StepTextRecord) -> tuple[dict | None, dict | None]:
    """Step and expected-result documents of a step row."""
    step = step_text(record.text1, record.text2)
    expected = step_text(record.text3, record.text4)
    return context.document(step), context.document(expected)


def is_empty_value(value: Any) -> bool:
    return value is None or value == "" or value == []


def case_snapshot(session: Session, case: tm.RepositoryCase) -> dict[str, Any]:
    """Version data of a case, including its steps and field values."""
    fields = {
        system_name: value
        for system_name, value in session.execute(
            select(tm.CaseField.system_name, tm.CaseFieldValue.value)
            .join(tm.CaseField, tm.CaseField.id == tm.CaseFieldValue.field_id)
            .where(tm.CaseFieldValue.test_case_id == case.id)
        )
    }
    return {
        "name": case.name,
        "projectId": case.project_id,
        "repositoryId": case.repository_id,
        "folderId": case.folder_id,
        "templateId": case.template_id,
        "stateId": case.state_id,
        "className": case.class_name,
        "source": case.source.value if case.source else None,
        "automated": case.automated,
        "estimate": case.estimate,
        "order": case.order,
        "steps": [
            {"order": step.order, "step": step.step, "expectedResult": step.expected_result}
            for step in case.steps
        ],
        "fields": fields,
    }


def add_case_version(session: Session, case: tm.RepositoryCase) -> bool:
    """Create the first version of a case unless it exists; returns whether it was created."""
    existing = session.scalars(
        select(tm.RepositoryCaseVersion.id).where(
            tm.RepositoryCaseVersion.case_id == case.id,
            tm.RepositoryCaseVersion.version == case.current_version,
        )
    ).first()
    if existing is not None:
        return False
    session.add(
        tm.RepositoryCaseVersion(
            case_id=case.id,
            version=case.current_version or 1,
            name=case.name,
            data=case_snapshot(session, case),
            created_at=case.created_at,
        )
    )
    return True


class CaseTransformer(Transformer):
    """
    Repository cases by ``(project, repository, name)``.

    ``custom_*`` columns become case field values through the target case
    fields of the same system name.
    """

    entity = "repository_cases"
    dataset = "repository_cases"
    record_type = CaseRecord

    def prepare(self, session: Session) -> None:
        self.default_state_id = self.context.default_workflow(tm.WorkflowScope.CASES)

    def template_for(self, session: Session, record: CaseRecord, project_id: int) -> int | None:
        context = self.context
        template_id = context.template_for_source(session, record.template_id)
        if template_id is None:
            template_id = context.project_templates.get(project_id) or context.default_template_id
        if template_id is not None:
            context.assign_template(session, project_id, template_id)
        return template_id

    def process(self, session: Session, record: CaseRecord) -> str:
        context = self.context
        if record.id is None:
            return self.skip("Skipping repository case without an id")
        project_id = context.maps.resolve("projects", record.project_id)
        if project_id is None:
            return self.skip(
                "Skipping repository case due to missing project mapping",
                case_id=record.id,
                project_id=record.project_id,
            )
        repository_id = context.repository_for(session, record.repo_id, record.project_id)
        if repository_id is None:
            return self.skip(
                "Skipping repository case due to missing repository mapping",
                case_id=record.id,
                repo_id=record.repo_id,
            )

        name = (record.name or "").strip() or f"Imported Case {record.id}"
        existing = session.scalars(
            select(tm.RepositoryCase.id).where(
                tm.RepositoryCase.project_id == project_id,
                tm.RepositoryCase.repository_id == repository_id,
                tm.RepositoryCase.name == name,
            )
        ).first()
        if existing is not None:
            context.maps["repository_cases"].set(record.id, existing)
            return MAPPED

        template_id = self.template_for(session, record, project_id)
        state_id = context.maps.resolve("workflows", record.state_id) or self.default_state_id
        if template_id is None or state_id is None:
            return self.skip(
                "Skipping repository case without a usable template or workflow state",
                case_id=record.id,
                template_id=record.template_id,
                state_id=record.state_id,
            )
        folder_id = context.maps.resolve("repository_folders", record.folder_id)
        if folder_id is None:
            folder_id = context.root_folder_for(session, project_id, repository_id)

        estimate, adjustment = normalize_estimate(record.estimate)
        if adjustment == "clamped":
            self.summary.add_detail("estimate_clamped")
        elif adjustment:
            self.summary.add_detail("estimate_adjusted")

        case = tm.RepositoryCase(
            project_id=project_id,
            repository_id=repository_id,
            folder_id=folder_id,
            template_id=template_id,
            state_id=state_id,
            name=name,
            class_name=record.key,
            source=tm.CaseSource.MANUAL,
            automated=bool(record.automated),
            estimate=estimate,
            order=record.display_order or 0,
            current_version=1,
            created_by_id=context.user_id(record.created_by),
        )
        if record.created_at is not None:
            case.created_at = record.created_at
        session.add(case)
        session.flush()

        self.add_custom_values(session, case.id, record)
        context.maps["repository_cases"].set(record.id, case.id)
        return CREATED

    def add_custom_values(self, session: Session, case_id: int, record: CaseRecord) -> None:
        context = self.context
        for system_name, raw in record.custom_fields().items():
            metadata = context.case_fields.get(system_name)
            if metadata is None or is_empty_value(raw):
                continue
            value = normalize_field_value(
                raw,
                metadata,
                context.field_warning(self.entity, case_id=record.id, field=system_name),
                context.document,
                context.field_value_names,
            )
            if is_empty_value(value):
                continue
            session.add(tm.CaseFieldValue(test_case_id=case_id, field_id=metadata.field_id, value=value))
            self.summary.add_detail("field_values")


class CaseStepTransformer(Transformer):
    """
    Steps of repository cases.

    Steps are keyed by ``(case, order)``. Rows without ``display_order`` take
    the slots after the case's highest staged order, in row order, so a rerun
    lands every step on the slot it took the first time.
    """

    entity = "repository_case_steps"
    dataset = "repository_case_steps"
    record_type = CaseStepRecord

    def __init__(self, context):
        super().__init__(context)
        self.highest_order: dict[int, int] = {}
        self.unordered_seen: dict[int, int] = {}

    def scan(self) -> None:
        for records in self.chunks():
            for record in records:
                if record.case_id is None or record.display_order is None:
                    continue
                current = self.highest_order.get(record.case_id, 0)
                self.highest_order[record.case_id] = max(current, record.display_order)

    def order_for(self, record: CaseStepRecord) -> int:
        if record.display_order is not None:
            return record.display_order
        position = self.unordered_seen.get(record.case_id, 0) + 1
        self.unordered_seen[record.case_id] = position
        return self.highest_order.get(record.case_id, 0) + position

    def process(self, session: Session, record: CaseStepRecord) -> str:
        context = self.context
        case_id = context.maps.resolve("repository_cases", record.case_id)
        if case_id is None:
            return self.skip("Skipping step due to missing case mapping", case_id=record.case_id)
        step, expected = step_documents(context, record)
        if step is None and expected is None:
            return IGNORED

        order = self.order_for(record)

        existing = session.scalars(
            select(tm.Step.id).where(tm.Step.test_case_id == case_id, tm.Step.order == order)
        ).first()
        if existing is not None:
            return MAPPED
        session.add(tm.Step(test_case_id=case_id, order=order, step=step, expected_result=expected))
        return CREATED


class CaseValueTransformer(Transformer):
    """Dropdown and multi-select values exported as one row per selected option."""

    entity = "repository_case_values"
    dataset = "repository_case_values"
    record_type = CaseValueRecord

    def process(self, session: Session, record: CaseValueRecord) -> str:
        context = self.context
        case_id = context.maps.resolve("repository_cases", record.case_id)
        if case_id is None:
            return self.skip(
                "Skipping case value due to missing case mapping",
                case_id=record.case_id,
                field_id=record.field_id,
            )
        metadata = context.case_field_for_source(record.field_id)
        if metadata is None:
            return self.skip(
                "Skipping case value for an unmapped field", case_id=record.case_id, field_id=record.field_id
            )
        if record.value_id is None:
            return IGNORED

        value = normalize_field_value(
            [record.value_id] if metadata.is_multi_select else record.value_id,
            metadata,
            context.field_warning(self.entity, case_id=record.case_id, field=metadata.system_name),
            context.document,
            context.field_value_names,
        )
        if is_empty_value(value):
            return self.skip(
                "Skipping case value that matches no field option",
                case_id=record.case_id,
                field=metadata.system_name,
                value_id=record.value_id,
            )

        stored = session.scalars(
            select(tm.CaseFieldValue).where(
                tm.CaseFieldValue.test_case_id == case_id, tm.CaseFieldValue.field_id == metadata.field_id
            )
        ).first()
        if stored is not None:
            stored.value = merge_field_value(stored.value, value)
            return MAPPED
        session.add(tm.CaseFieldValue(test_case_id=case_id, field_id=metadata.field_id, value=value))
        return CREATED


class CaseVersionTransformer(Transformer):
    """
    Version snapshots of the imported cases that have none yet.

    Runs after steps and values so the first version holds the complete case.
    Cases committed by an interrupted run get their snapshot on the next run.
    """

    entity = "repository_case_versions"

    def __init__(self, context):
        super().__init__(context)
        self._unversioned: list[int] | None = None

    def unversioned_cases(self) -> list[int]:
        if self._unversioned is None:
            case_ids = sorted(self.context.maps["repository_cases"].target_ids())
            size = self.context.config.chunk_size_for("repository_cases")
            self._unversioned = []
            with self.context.db.get_session() as session:
                for start in range(0, len(case_ids), size):
                    page = case_ids[start : start + size]
                    versioned = set(
                        session.scalars(
                            select(tm.RepositoryCaseVersion.case_id).where(
                                tm.RepositoryCaseVersion.case_id.in_(page)
                            )
                        )
                    )
                    self._unversioned.extend(case_id for case_id in page if case_id not in versioned)
        return self._unversioned

    def planned_total(self) -> int:
        return len(self.unversioned_cases())

    def chunks(self) -> Iterator[list[int]]:
        case_ids = self.unversioned_cases()
        size = self.context.config.chunk_size_for("repository_cases")
        for start in range(0, len(case_ids), size):
            yield case_ids[start : start + size]

    def process(self, session: Session, case_id: int) -> str:
        case = session.get(tm.RepositoryCase, case_id)
        if case is None:
            return IGNORED
        return CREATED if add_case_version(session, case) else MAPPED


class CaseTagTransformer(AssociationTransformer):
    entity = "repository_case_tags"
    dataset = "repository_case_tags"
    record_type = TagAssignmentRecord
    owner_field = "case_id"
    owner_entity = "repository_cases"
    target_field = "tag_id"
    target_entity = "tags"
    table = tm.repository_case_tags
    owner_column = "case_id"
    target_column = "tag_id"
