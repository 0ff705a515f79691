"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Source id to target id tables and repository canonicalization.

Every transformer records the target id of each source row it imports so that
later transformers can resolve their foreign keys. The tables live for one
import run only; a rerun rebuilds them through natural-key lookups.

Testmo exports may hold several repositories per project (the live one plus
snapshots). Exactly one target repository is created per project; every
source repository of the project resolves to it.
"""

from collections.abc import Iterable, Iterator

from tmtp.records import RepositoryRecord

# Entity types with an identifier table
MAPPED_ENTITIES = (
    "workflows",
    "statuses",
    "groups",
    "tags",
    "roles",
    "milestone_types",
    "configurations",
    "templates",
    "users",
    "projects",
    "milestones",
    "sessions",
    "session_results",
    "repositories",
    "repository_folders",
    "repository_cases",
    "automation_cases",
    "automation_runs",
    "automation_run_tests",
    "test_runs",
    "test_run_cases",
    "test_run_results",
    "issue_targets",
    "issues",
)


class IdentifierMap:
    """Mapping of source ids to target ids for one entity type."""

    def __init__(self, entity: str):
        self.entity = entity
        self._targets: dict[int, int] = {}

    def set(self, source_id: int, target_id: int) -> None:
        self._targets[source_id] = target_id

    def get(self, source_id: int | None) -> int | None:
        if source_id is None:
            return None
        return self._targets.get(source_id)

    def items(self) -> Iterator[tuple[int, int]]:
        return iter(self._targets.items())

    def target_ids(self) -> list[int]:
        return list(dict.fromkeys(self._targets.values()))

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._targets

    def __len__(self) -> int:
        return len(self._targets)

    def __repr__(self):
        return f"<IdentifierMap(entity='{self.entity}', size={len(self)})>"


class IdentifierMaps:
    """All identifier tables of one import run, keyed by entity type."""

    def __init__(self, entities: Iterable[str] = MAPPED_ENTITIES):
        self._maps = {entity: IdentifierMap(entity) for entity in entities}

    def __getitem__(self, entity: str) -> IdentifierMap:
        if entity not in self._maps:
            self._maps[entity] = IdentifierMap(entity)
        return self._maps[entity]

    def resolve(self, entity: str, source_id: int | None) -> int | None:
        return self[entity].get(source_id)

    def sizes(self) -> dict[str, int]:
        return {entity: len(mapping) for entity, mapping in self._maps.items() if len(mapping)}


class RepositoryCanonicalizer:
    """
    Chooses the canonical source repositories of each project.

    Per project the canonical set is the repositories flagged as master; when
    none is flagged, the non-snapshot repositories; when all are snapshots,
    the first one encountered.
    """

    def __init__(self, records: Iterable[RepositoryRecord] = ()):
        self._by_project: dict[int, list[RepositoryRecord]] = {}
        self._project_of: dict[int, int] = {}
        self._canonical: dict[int, list[int]] = {}
        self._targets: dict[int, int] = {}
        for record in records:
            self.add(record)

    def add(self, record: RepositoryRecord) -> None:
        if record.id is None or record.project_id is None:
            return
        if record.id in self._project_of:
            return
        self._by_project.setdefault(record.project_id, []).append(record)
        self._project_of[record.id] = record.project_id
        self._canonical.pop(record.project_id, None)

    def _canonical_ids(self, project_id: int) -> list[int]:
        if project_id not in self._canonical:
            records = self._by_project.get(project_id, [])
            chosen = [record for record in records if record.is_master == 1]
            if not chosen:
                chosen = [record for record in records if not record.snapshot]
            if not chosen:
                chosen = records[:1]
            self._canonical[project_id] = [record.id for record in chosen]
        return self._canonical[project_id]

    def project_for(self, repo_id: int | None) -> int | None:
        return None if repo_id is None else self._project_of.get(repo_id)

    def is_canonical(self, repo_id: int | None) -> bool:
        project_id = self.project_for(repo_id)
        if project_id is None:
            return False
        return repo_id in self._canonical_ids(project_id)

    def preferred_repository_for(self, project_id: int | None) -> int | None:
        """Source id of the repository that represents the project."""
        if project_id is None:
            return None
        canonical = self._canonical_ids(project_id)
        return canonical[0] if canonical else None

    def register_target(self, project_id: int, target_repository_id: int) -> None:
        self._targets[project_id] = target_repository_id

    def target_for_project(self, project_id: int | None) -> int | None:
        return None if project_id is None else self._targets.get(project_id)

    def resolve(self, repo_id: int | None, project_id: int | None = None) -> int | None:
        """
        Target repository id for a source repository.

        Duplicates resolve to the same target as the canonical repository.
        When the repository is unknown, the row's own project decides.
        """
        owner = self.project_for(repo_id)
        if owner is None:
            owner = project_id
        return self.target_for_project(owner)
