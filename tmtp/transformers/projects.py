"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.core.logging import get_logger
from tmtp.records import ProjectRecord
from tmtp.transformers.base import CREATED, MAPPED, Transformer, link_to_project

logger = get_logger(__name__)


class ProjectTransformer(Transformer):
    """
    Projects by name.

    Every imported project, new or existing, is given the mapped statuses,
    workflows, milestone types and templates so later rows can use them.
    """

    entity = "projects"
    dataset = "projects"
    record_type = ProjectRecord

    def prepare(self, session: Session) -> None:
        maps = self.context.maps
        context = self.context
        self.status_ids = maps["statuses"].target_ids()
        self.workflow_ids = maps["workflows"].target_ids()
        cases_workflow = context.default_workflow(tm.WorkflowScope.CASES)
        if cases_workflow is not None:
            self.workflow_ids.append(cases_workflow)
        self.milestone_type_ids = maps["milestone_types"].target_ids()
        if context.default_milestone_type_id is not None:
            self.milestone_type_ids.append(context.default_milestone_type_id)
        self.template_ids = maps["templates"].target_ids() + list(context.template_map.values())
        if context.default_template_id is not None:
            self.template_ids.append(context.default_template_id)
        self.template_ids = list(dict.fromkeys(self.template_ids))
        self.default_templates = set(
            session.scalars(select(tm.Template.id).where(tm.Template.is_default.is_(True)))
        )

    def process(self, session: Session, record: ProjectRecord) -> str:
        if record.id is None:
            return self.skip("Skipping project without an id")
        context = self.context
        name = (record.name or "").strip() or f"Imported Project {record.id}"

        project = session.scalars(select(tm.Project).where(tm.Project.name == name)).first()
        outcome = MAPPED
        if project is None:
            project = tm.Project(
                name=name,
                note=context.document(record.note),
                docs=context.document(record.docs),
                is_completed=bool(record.is_completed),
                completed_at=record.completed_at,
                created_by_id=context.user_id(record.created_by),
            )
            if record.created_at is not None:
                project.created_at = record.created_at
            session.add(project)
            session.flush()
            outcome = CREATED

        context.maps["projects"].set(record.id, project.id)
        self.assign_references(session, project.id)
        return outcome

    def assign_references(self, session: Session, project_id: int) -> None:
        link_to_project(session, tm.project_statuses, "status_id", project_id, self.status_ids)
        link_to_project(session, tm.project_workflows, "workflow_id", project_id, self.workflow_ids)
        link_to_project(
            session, tm.project_milestone_types, "milestone_type_id", project_id, self.milestone_type_ids
        )
        link_to_project(session, tm.project_templates, "template_id", project_id, self.template_ids)

        assigned = list(
            session.scalars(
                select(tm.project_templates.c.template_id)
                .where(tm.project_templates.c.project_id == project_id)
                .order_by(tm.project_templates.c.template_id)
            )
        )
        default = next((template_id for template_id in assigned if template_id in self.default_templates), None)
        if default is None and assigned:
            default = assigned[0]
        if default is not None:
            self.context.project_templates[project_id] = default
