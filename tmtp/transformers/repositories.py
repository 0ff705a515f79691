"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Repositories and their folder trees.

Testmo projects may carry several repositories (a master plus snapshots).
The target keeps one repository per project: the canonical source repository
is imported and every duplicate is redirected to the same target.
"""

from collections.abc import Iterator

from sqlalchemy import select
from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.core.logging import get_logger
from tmtp.records import FolderRecord, RepositoryRecord
from tmtp.transformers.base import (
    CREATED,
    DEFAULT_REPOSITORY_NAME,
    MAPPED,
    Transformer,
)

logger = get_logger(__name__)


class RepositoryTransformer(Transformer):
    entity = "repositories"
    dataset = "repositories"
    record_type = RepositoryRecord

    def scan(self) -> None:
        context = self.context
        for records in context.records(self.dataset, RepositoryRecord):
            for record in records:
                context.repositories.add(record)

    def process(self, session: Session, record: RepositoryRecord) -> str:
        context = self.context
        if record.id is None:
            return self.skip("Skipping repository without an id")
        project_id = context.maps.resolve("projects", record.project_id)
        if project_id is None:
            return self.skip(
                "Skipping repository due to missing project mapping",
                repository_id=record.id,
                project_id=record.project_id,
            )

        owner = context.repositories.project_for(record.id) or record.project_id
        target_id = context.repositories.target_for_project(owner)
        outcome = MAPPED
        if target_id is None:
            target_id = session.scalars(
                select(tm.Repository.id)
                .where(tm.Repository.project_id == project_id)
                .order_by(tm.Repository.id)
            ).first()
            if target_id is None:
                repository = tm.Repository(project_id=project_id, name=DEFAULT_REPOSITORY_NAME)
                session.add(repository)
                session.flush()
                target_id = repository.id
                outcome = CREATED
            context.repositories.register_target(owner, target_id)

        context.maps["repositories"].set(record.id, target_id)
        if not context.repositories.is_canonical(record.id):
            self.summary.add_detail("duplicates_redirected")
        return outcome


class FolderTransformer(Transformer):
    """
    Repository folders, parents before children.

    Folders are keyed by ``(repository, parent, name)``. A folder whose
    parent chain loops back on itself is attached at the root, and one whose
    parent is missing from the export goes under the repository's root
    folder.
    """

    entity = "repository_folders"
    dataset = "repository_folders"
    record_type = FolderRecord

    def __init__(self, context):
        super().__init__(context)
        self.folders: dict[int, FolderRecord] = {}
        self.signatures: dict[tuple[int, int | None, str], int] = {}
        self.skipped: set[int] = set()

    def planned_total(self) -> int:
        context = self.context
        canonical: list[FolderRecord] = []
        duplicates: list[FolderRecord] = []
        for records in context.records(self.dataset, FolderRecord):
            for record in records:
                if record.id is None:
                    context.warn(self.entity, "Ignoring repository folder without an id")
                    continue
                if context.repositories.is_canonical(record.repo_id):
                    canonical.append(record)
                else:
                    duplicates.append(record)
        # Canonical trees first so duplicates fold into them
        self.folders = {record.id: record for record in canonical + duplicates}
        return len(self.folders)

    def chunks(self) -> Iterator[list[int]]:
        ids = list(self.folders)
        size = self.context.config.chunk_size_for(self.entity)
        for start in range(0, len(ids), size):
            yield ids[start : start + size]

    def process(self, session: Session, folder_id: int) -> str | None:
        return self.import_folder(session, folder_id, set())

    def import_folder(self, session: Session, folder_id: int, processing: set[int]) -> str | None:
        context = self.context
        folders = context.maps["repository_folders"]
        if folder_id in folders or folder_id in self.skipped:
            return None
        record = self.folders[folder_id]

        project_id = context.maps.resolve("projects", record.project_id)
        repository_id = (
            context.repository_for(session, record.repo_id, record.project_id) if project_id is not None else None
        )
        if project_id is None or repository_id is None:
            self.skipped.add(folder_id)
            return self.skip(
                "Skipping repository folder due to missing project or repository mapping",
                folder_id=record.id,
                project_id=record.project_id,
                repo_id=record.repo_id,
            )

        processing.add(folder_id)
        parent_id = self.parent_for(session, record, repository_id, processing)
        processing.discard(folder_id)

        name = (record.name or "").strip() or f"Folder {record.id}"
        signature = (repository_id, parent_id, name)
        target_id = self.signatures.get(signature)
        outcome = MAPPED
        if target_id is None:
            target_id = session.scalars(
                select(tm.RepositoryFolder.id).where(
                    tm.RepositoryFolder.project_id == project_id,
                    tm.RepositoryFolder.repository_id == repository_id,
                    tm.RepositoryFolder.parent_id.is_(None)
                    if parent_id is None
                    else tm.RepositoryFolder.parent_id == parent_id,
                    tm.RepositoryFolder.name == name,
                )
            ).first()
        if target_id is None:
            folder = tm.RepositoryFolder(
                project_id=project_id,
                repository_id=repository_id,
                parent_id=parent_id,
                name=name,
                docs=context.document(record.docs),
                order=record.display_order or 0,
            )
            if record.created_at is not None:
                folder.created_at = record.created_at
            session.add(folder)
            session.flush()
            target_id = folder.id
            outcome = CREATED

        self.signatures[signature] = target_id
        folders.set(folder_id, target_id)
        if parent_id is None:
            context.root_folders.setdefault(repository_id, target_id)
        return outcome

    def parent_for(
        self, session: Session, record: FolderRecord, repository_id: int, processing: set[int]
    ) -> int | None:
        context = self.context
        parent_source = record.parent_id
        if parent_source is None:
            return None
        if parent_source in processing:
            logger.warning(
                "Folder hierarchy cycle detected; attaching folder at the root",
                context={"folder_id": record.id, "parent_id": parent_source},
            )
            self.summary.add_detail("cycles_broken")
            return None

        folders = context.maps["repository_folders"]
        if parent_source not in folders and parent_source in self.folders:
            self.record(self.import_folder(session, parent_source, processing))
        parent_id = folders.get(parent_source)
        if parent_id is not None:
            return parent_id
        return context.root_folders.get(repository_id)
