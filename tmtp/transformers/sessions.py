"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.core.logging import get_logger
from tmtp.records import SessionRecord, SessionResultRecord, SessionValueRecord, TagAssignmentRecord
from tmtp.transformers.base import (
    CREATED,
    MAPPED,
    AssociationTransformer,
    Transformer,
    find_by_content,
    merge_field_value,
)
from tmtp.values import microseconds_to_seconds, normalize_field_value

logger = get_logger(__name__)

EXPLORATORY_TEMPLATE = "Exploratory"


class SessionTransformer(Transformer):
    """Exploratory sessions by ``(project, name)``, each new one with a version snapshot."""

    entity = "sessions"
    dataset = "sessions"
    record_type = SessionRecord

    def prepare(self, session: Session) -> None:
        self.exploratory_template_id = session.scalars(
            select(tm.Template.id).where(
                tm.Template.name == EXPLORATORY_TEMPLATE, tm.Template.is_enabled.is_(True)
            )
        ).first()
        self.default_state_id = self.context.default_workflow(tm.WorkflowScope.SESSIONS)

    def template_for(self, record: SessionRecord, project_id: int) -> int | None:
        context = self.context
        return (
            context.maps.resolve("templates", record.template_id)
            or self.exploratory_template_id
            or context.project_templates.get(project_id)
            or context.default_template_id
        )

    def process(self, session: Session, record: SessionRecord) -> str:
        context = self.context
        if record.id is None:
            return self.skip("Skipping session without an id")
        project_id = context.maps.resolve("projects", record.project_id)
        if project_id is None:
            return self.skip(
                "Skipping session due to missing project mapping",
                session_id=record.id,
                project_id=record.project_id,
            )
        template_id = self.template_for(record, project_id)
        state_id = context.maps.resolve("workflows", record.state_id) or self.default_state_id
        if template_id is None or state_id is None:
            return self.skip(
                "Skipping session without a usable template or workflow state",
                session_id=record.id,
                template_id=record.template_id,
                state_id=record.state_id,
            )

        name = (record.name or "").strip() or f"Imported Session {record.id}"
        existing = session.scalars(
            select(tm.Session).where(tm.Session.project_id == project_id, tm.Session.name == name)
        ).first()
        if existing is not None:
            context.maps["sessions"].set(record.id, existing.id)
            return MAPPED

        is_completed = bool(record.is_closed)
        target = tm.Session(
            project_id=project_id,
            template_id=template_id,
            state_id=state_id,
            milestone_id=context.maps.resolve("milestones", record.milestone_id),
            configuration_id=context.maps.resolve("configurations", record.config_id),
            assigned_to_id=context.maps.resolve("users", record.assignee_id),
            name=name,
            note=context.document(record.note),
            mission=context.document(record.custom_mission),
            estimate=microseconds_to_seconds(record.estimate, floor=True),
            forecast=microseconds_to_seconds(record.forecast, floor=True),
            elapsed=microseconds_to_seconds(record.elapsed, floor=True),
            is_completed=is_completed,
            completed_at=record.closed_at if is_completed else None,
            created_by_id=context.user_id(record.created_by),
        )
        if record.created_at is not None:
            target.created_at = record.created_at
        session.add(target)
        session.flush()
        session.add(
            tm.SessionVersion(
                session_id=target.id,
                version=1,
                name=target.name,
                data=session_snapshot(target),
                created_at=target.created_at,
            )
        )
        context.maps["sessions"].set(record.id, target.id)
        return CREATED


def session_snapshot(target: tm.Session) -> dict:
    return {
        "name": target.name,
        "projectId": target.project_id,
        "templateId": target.template_id,
        "stateId": target.state_id,
        "milestoneId": target.milestone_id,
        "configurationId": target.configuration_id,
        "assignedToId": target.assigned_to_id,
        "note": target.note,
        "mission": target.mission,
        "estimate": target.estimate,
        "forecast": target.forecast,
        "elapsed": target.elapsed,
        "isCompleted": target.is_completed,
    }


class SessionResultTransformer(Transformer):
    """Results of sessions, keyed by timestamp or, without one, by status, elapsed time and text."""

    entity = "session_results"
    dataset = "session_results"
    record_type = SessionResultRecord

    def prepare(self, session: Session) -> None:
        self.untested_status_id = self.context.require_untested_status()

    def process(self, session: Session, record: SessionResultRecord) -> str:
        context = self.context
        session_id = context.maps.resolve("sessions", record.session_id)
        if session_id is None:
            return self.skip(
                "Skipping session result due to missing session mapping",
                result_id=record.id,
                session_id=record.session_id,
            )
        status_id = context.maps.resolve("statuses", record.status_id) or self.untested_status_id
        result_data = context.document(record.comment)
        elapsed = microseconds_to_seconds(record.elapsed, floor=True)

        if record.created_at is not None:
            existing = session.scalars(
                select(tm.SessionResult.id).where(
                    tm.SessionResult.session_id == session_id,
                    tm.SessionResult.created_at == record.created_at,
                )
            ).first()
        else:
            existing = find_by_content(
                session,
                tm.SessionResult,
                {"session_id": session_id, "status_id": status_id, "elapsed": elapsed},
                {"result_data": result_data},
            )
        if existing is not None:
            if record.id is not None:
                context.maps["session_results"].set(record.id, existing)
            return MAPPED

        result = tm.SessionResult(
            session_id=session_id,
            status_id=status_id,
            result_data=result_data,
            elapsed=elapsed,
            created_by_id=context.user_id(record.created_by),
        )
        if record.created_at is not None:
            result.created_at = record.created_at
        session.add(result)
        session.flush()
        if record.id is not None:
            context.maps["session_results"].set(record.id, result.id)
        return CREATED


class SessionTagTransformer(AssociationTransformer):
    entity = "session_tags"
    dataset = "session_tags"
    record_type = TagAssignmentRecord
    owner_field = "session_id"
    owner_entity = "sessions"
    target_field = "tag_id"
    target_entity = "tags"
    table = tm.session_tags
    owner_column = "session_id"
    target_column = "tag_id"


class SessionValueTransformer(Transformer):
    """
    Dropdown and multi-select values of sessions.

    The export stores one row per selected option; rows of the same session
    and field are merged into one stored value.
    """

    entity = "session_values"
    dataset = "session_values"
    record_type = SessionValueRecord

    def process(self, session: Session, record: SessionValueRecord) -> str:
        context = self.context
        session_id = context.maps.resolve("sessions", record.session_id)
        if session_id is None:
            return self.skip(
                "Skipping session value due to missing session mapping",
                session_id=record.session_id,
                field_id=record.field_id,
            )
        metadata = context.case_field_for_source(record.field_id)
        if metadata is None:
            return self.skip(
                "Skipping session value for an unmapped field",
                session_id=record.session_id,
                field_id=record.field_id,
            )
        if record.value_id is None:
            return self.skip("Skipping session value without a value", session_id=record.session_id)

        value = normalize_field_value(
            [record.value_id] if metadata.is_multi_select else record.value_id,
            metadata,
            context.field_warning(self.entity, session_id=record.session_id, field=metadata.system_name),
            context.document,
            context.field_value_names,
        )
        if value is None:
            return self.skip(
                "Skipping session value that matches no field option",
                session_id=record.session_id,
                field=metadata.system_name,
                value_id=record.value_id,
            )

        stored = session.scalars(
            select(tm.SessionFieldValue).where(
                tm.SessionFieldValue.session_id == session_id,
                tm.SessionFieldValue.field_id == metadata.field_id,
            )
        ).first()
        if stored is not None:
            stored.value = merge_field_value(stored.value, value)
            return MAPPED
        session.add(tm.SessionFieldValue(session_id=session_id, field_id=metadata.field_id, value=value))
        return CREATED
