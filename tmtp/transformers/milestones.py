"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.records import MilestoneRecord
from tmtp.transformers.base import CREATED, MAPPED, Transformer


class MilestoneTransformer(Transformer):
    """
    Milestones by ``(project, name)``.

    Parents may appear after their children in the export, so the hierarchy
    is wired in a second pass once every milestone has a target id.
    """

    entity = "milestones"
    dataset = "milestones"
    record_type = MilestoneRecord

    def __init__(self, context):
        super().__init__(context)
        self.hierarchy: dict[int, tuple[int | None, int | None]] = {}

    def process(self, session: Session, record: MilestoneRecord) -> str:
        context = self.context
        if record.id is None:
            return self.skip("Skipping milestone without an id")
        project_id = context.maps.resolve("projects", record.project_id)
        if project_id is None:
            return self.skip(
                "Skipping milestone due to missing project mapping",
                milestone_id=record.id,
                project_id=record.project_id,
            )
        type_id = context.maps.resolve("milestone_types", record.type_id) or context.default_milestone_type_id
        if type_id is None:
            return self.skip(
                "Skipping milestone without a milestone type", milestone_id=record.id, type_id=record.type_id
            )

        name = (record.name or "").strip() or f"Imported Milestone {record.id}"
        milestone = session.scalars(
            select(tm.Milestone).where(tm.Milestone.project_id == project_id, tm.Milestone.name == name)
        ).first()
        if milestone is not None:
            context.maps["milestones"].set(record.id, milestone.id)
            return MAPPED

        milestone = tm.Milestone(
            project_id=project_id,
            milestone_type_id=type_id,
            name=name,
            note=context.document(record.note),
            docs=context.document(record.docs),
            is_started=bool(record.is_started),
            is_completed=bool(record.is_completed),
            started_at=record.started_at,
            completed_at=record.completed_at,
            created_by_id=context.user_id(record.created_by),
        )
        if record.created_at is not None:
            milestone.created_at = record.created_at
        session.add(milestone)
        session.flush()
        context.maps["milestones"].set(record.id, milestone.id)
        if record.parent_id is not None or record.root_id is not None:
            self.hierarchy[milestone.id] = (record.parent_id, record.root_id)
        return CREATED

    def finish(self, session: Session) -> None:
        milestones = self.context.maps["milestones"]
        linked = 0
        for target_id, (parent_source, root_source) in self.hierarchy.items():
            parent_id = milestones.get(parent_source)
            root_id = milestones.get(root_source)
            if parent_id is None and root_id is None:
                continue
            milestone = session.get(tm.Milestone, target_id)
            milestone.parent_id = parent_id if parent_id != target_id else None
            milestone.root_id = root_id if root_id != target_id else None
            linked += 1
        if linked:
            self.summary.add_detail("hierarchy_linked", linked)
