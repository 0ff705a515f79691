"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Shared machinery of the entity transformers.

``ImportContext`` is owned by one import run. It carries the identifier maps,
the repository canonicalizer, the rich-text cache, the progress tracker and
the lookup caches every transformer needs, plus the target defaults (the
``untested`` status, default workflows, milestone type and template).

``Transformer`` implements the chunk loop once: page through a staged
dataset, check for cancellation between chunks, process each chunk in one
transaction, then fold the chunk's outcomes into the progress counters and
persist a snapshot when one is due.
"""

from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from typing import Any

from sqlalchemy import Table, func, select
from sqlalchemy.orm import Session

from tmtp.core import target_models as tm
from tmtp.core.config import ImportConfig
from tmtp.core.db_manager import DatabaseManager
from tmtp.core.logging import ErrorTracker, get_logger
from tmtp.errors import ConfigurationError, ImportCanceled
from tmtp.identifier_mapping import IdentifierMaps, RepositoryCanonicalizer
from tmtp.mapping_config import MappingConfiguration
from tmtp.progress import EntitySummary, ProgressTracker
from tmtp.records import FieldValueRecord, NamedRecord, SourceRecord
from tmtp.resolvers import load_field_metadata
from tmtp.rich_text import RichTextNormalizer
from tmtp.staging import StagingStore
from tmtp.values import FieldMetadata

logger = get_logger(__name__)

# Outcomes of processing one source row
CREATED = "created"
MAPPED = "mapped"
SKIPPED = "skipped"
IGNORED = "ignored"

FALLBACK_FOLDER_NAME = "Imported"
DEFAULT_REPOSITORY_NAME = "Repository"


class ImportContext:
    """State shared by the transformers of one import run."""

    def __init__(
        self,
        job_id: str,
        db: DatabaseManager,
        staging: StagingStore,
        config: ImportConfig,
        mapping: MappingConfiguration,
        created_by_id: int | None = None,
        progress: ProgressTracker | None = None,
        errors: ErrorTracker | None = None,
        persist: Callable[[str | None, str | None], None] | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ):
        self.job_id = job_id
        self.db = db
        self.staging = staging
        self.config = config
        self.mapping = mapping
        self.created_by_id = created_by_id
        self.progress = progress or ProgressTracker(
            update_interval=config.progress_update_interval,
            min_interval_ms=config.progress_min_interval_ms,
        )
        self.errors = errors or ErrorTracker(logger)
        self.persist = persist or (lambda entity, message=None: None)
        self.should_cancel = should_cancel or (lambda: False)

        self.maps = IdentifierMaps()
        self.repositories = RepositoryCanonicalizer()
        self.normalizer = RichTextNormalizer()
        self.skipped_count = 0

        # Target defaults, loaded by load_defaults()
        self.untested_status_id: int | None = None
        self.default_workflows: dict[tm.WorkflowScope, int] = {}
        self.default_milestone_type_id: int | None = None
        self.default_template_id: int | None = None

        # Lookup caches
        self.case_fields: dict[str, FieldMetadata] = {}
        self.result_fields: dict[str, FieldMetadata] = {}
        self.source_field_names: dict[int, str] = {}
        self.field_value_names: dict[int, str] = {}
        self.template_map: dict[str, int] = {}
        self.template_names: dict[int, str] = {}
        self.project_templates: dict[int, int] = {}
        self.root_folders: dict[int, int] = {}
        self._project_template_links: set[tuple[int, int]] = set()

    # Defaults and caches

    def load_defaults(self, session: Session) -> None:
        """Read the target fallbacks once per run."""
        self.untested_status_id = session.scalars(
            select(tm.Status.id).where(tm.Status.system_name == "untested")
        ).first()
        for scope in tm.WorkflowScope:
            workflow_id = session.scalars(
                select(tm.Workflow.id)
                .where(tm.Workflow.scope == scope, tm.Workflow.is_default.is_(True))
                .order_by(tm.Workflow.id)
            ).first()
            if workflow_id is None:
                workflow_id = session.scalars(
                    select(tm.Workflow.id).where(tm.Workflow.scope == scope).order_by(tm.Workflow.id)
                ).first()
            if workflow_id is not None:
                self.default_workflows[scope] = workflow_id
        self.default_milestone_type_id = session.scalars(
            select(tm.MilestoneType.id)
            .where(tm.MilestoneType.is_default.is_(True))
            .order_by(tm.MilestoneType.id)
        ).first()
        self.default_template_id = session.scalars(
            select(tm.Template.id).where(tm.Template.is_default.is_(True)).order_by(tm.Template.id)
        ).first()

    def load_field_caches(self) -> None:
        """
        Field metadata and value names used to normalize custom field values.

        Must run after template fields were resolved, so new fields and their
        options are visible. Staged rows are read before the target session
        opens.
        """
        self.source_field_names = {
            source_id: decision.system_name
            for source_id, decision in self.mapping.template_fields.items()
            if decision.system_name
        }
        self.field_value_names = {}
        for records in self.staging.iter_records(self.job_id, "field_values", FieldValueRecord):
            for record in records:
                if record.id is not None and record.name:
                    self.field_value_names[record.id] = record.name
        self.template_names = {}
        for records in self.staging.iter_records(self.job_id, "templates", NamedRecord):
            for record in records:
                if record.id is not None and record.name:
                    self.template_names[record.id] = record.name
        with self.db.get_session() as session:
            self.case_fields = load_field_metadata(session, tm.FieldKind.CASE)
            self.result_fields = load_field_metadata(session, tm.FieldKind.RESULT)
            for template in session.scalars(select(tm.Template)):
                self.template_map.setdefault(template.name, template.id)

    def require_untested_status(self) -> int:
        if self.untested_status_id is None:
            raise ConfigurationError("The default 'untested' status is missing from the workspace")
        return self.untested_status_id

    def default_workflow(self, scope: tm.WorkflowScope) -> int | None:
        return self.default_workflows.get(scope)

    # Row helpers

    def check_canceled(self) -> None:
        if self.should_cancel():
            raise ImportCanceled("Import canceled by request")

    def dataset_count(self, dataset: str) -> int:
        return self.staging.count(self.job_id, dataset)

    def records(
        self, dataset: str, record_type: type[SourceRecord], entity: str | None = None
    ) -> Iterator[list[SourceRecord]]:
        batch_size = self.config.chunk_size_for(entity or dataset)
        return self.staging.iter_records(self.job_id, dataset, record_type, batch_size)

    def user_id(self, source_id: int | None) -> int | None:
        """Mapped user, else the user who started the job."""
        mapped = self.maps.resolve("users", source_id)
        return mapped if mapped is not None else self.created_by_id

    def document(self, value: Any) -> dict | None:
        return self.normalizer.normalize(value)

    def warn(self, category: str, message: str, **details) -> None:
        self.errors.add_warning(category, message, {k: v for k, v in details.items() if v is not None})

    def field_warning(self, category: str, **details) -> Callable[[str, dict[str, Any]], None]:
        """Callback for value normalization that records warnings under a row's context."""

        def record(message: str, extra: dict[str, Any]) -> None:
            self.warn(category, message, **details, **extra)

        return record

    # Target lookups shared by several transformers

    def repository_for(
        self, session: Session, repo_source_id: int | None, project_source_id: int | None
    ) -> int | None:
        """
        Target repository of a source repository, creating the project's
        repository when the export never listed one.
        """
        target = self.repositories.resolve(repo_source_id, project_source_id)
        if target is not None:
            return target
        owner = self.repositories.project_for(repo_source_id)
        owner = owner if owner is not None else project_source_id
        project_id = self.maps.resolve("projects", owner)
        if project_id is None:
            return None
        target = find_or_create_repository(session, project_id)
        self.repositories.register_target(owner, target)
        if repo_source_id is not None:
            self.maps["repositories"].set(repo_source_id, target)
        return target

    def root_folder_for(self, session: Session, project_id: int, repository_id: int) -> int:
        """First root folder of a repository, else the ``Imported`` fallback folder."""
        if repository_id in self.root_folders:
            return self.root_folders[repository_id]
        folder_id = session.scalars(
            select(tm.RepositoryFolder.id).where(
                tm.RepositoryFolder.repository_id == repository_id,
                tm.RepositoryFolder.parent_id.is_(None),
                tm.RepositoryFolder.name == FALLBACK_FOLDER_NAME,
            )
        ).first()
        if folder_id is None:
            folder = tm.RepositoryFolder(
                project_id=project_id,
                repository_id=repository_id,
                parent_id=None,
                name=FALLBACK_FOLDER_NAME,
            )
            session.add(folder)
            session.flush()
            folder_id = folder.id
        self.root_folders[repository_id] = folder_id
        return folder_id

    def case_field_for_source(self, field_source_id: int | None) -> FieldMetadata | None:
        """Case field metadata of a source field, through its template field decision."""
        system_name = self.source_field_names.get(field_source_id)
        return self.case_fields.get(system_name) if system_name else None

    def template_for_source(self, session: Session, template_source_id: int | None) -> int | None:
        """Mapped template, else the template of the same name, created when missing."""
        if template_source_id is None:
            return None
        mapped = self.maps.resolve("templates", template_source_id)
        if mapped is not None:
            return mapped
        name = self.template_names.get(template_source_id)
        if not name:
            return None
        template_id = self.template_map.get(name)
        if template_id is None:
            template = tm.Template(name=name, is_enabled=True, is_default=False)
            session.add(template)
            session.flush()
            template_id = template.id
            self.template_map[name] = template_id
        self.maps["templates"].set(template_source_id, template_id)
        return template_id

    def assign_template(self, session: Session, project_id: int, template_id: int) -> None:
        key = (project_id, template_id)
        if key in self._project_template_links:
            return
        self._project_template_links.add(key)
        link_to_project(session, tm.project_templates, "template_id", project_id, [template_id])


def find_or_create_repository(session: Session, project_id: int) -> int:
    repository_id = session.scalars(
        select(tm.Repository.id).where(tm.Repository.project_id == project_id).order_by(tm.Repository.id)
    ).first()
    if repository_id is None:
        repository = tm.Repository(project_id=project_id, name=DEFAULT_REPOSITORY_NAME)
        session.add(repository)
        session.flush()
        repository_id = repository.id
    return repository_id


def link_to_project(
    session: Session, table: Table, column: str, project_id: int, ids: Iterable[int]
) -> int:
    """Insert the missing ``(project, id)`` rows of an assignment table; returns how many."""
    wanted = list(dict.fromkeys(i for i in ids if i is not None))
    if not wanted:
        return 0
    existing = set(
        session.scalars(select(table.c[column]).where(table.c.project_id == project_id))
    )
    missing = [value for value in wanted if value not in existing]
    if missing:
        session.execute(table.insert(), [{"project_id": project_id, column: value} for value in missing])
    return len(missing)


def next_order(session: Session, column, owner_column, owner_id: int) -> int:
    """One past the highest order under an owner, or 0."""
    current = session.execute(select(func.max(column)).where(owner_column == owner_id)).scalar()
    return 0 if current is None else current + 1


def find_by_content(
    session: Session, model, columns: dict[str, Any], documents: dict[str, Any] | None = None
) -> int | None:
    """
    Id of the first row whose columns equal the given values.

    Used for rows that carry no natural key, such as results without a
    timestamp. JSON columns go in ``documents`` and are compared after loading.
    """
    conditions = [
        getattr(model, name).is_(None) if value is None else getattr(model, name) == value
        for name, value in columns.items()
    ]
    for row in session.scalars(select(model).where(*conditions).order_by(model.id)):
        if all(getattr(row, name) == value for name, value in (documents or {}).items()):
            return row.id
    return None


class Transformer:
    """
    Imports one staged dataset into the target tables.

    Subclasses set ``entity``, ``dataset`` and ``record_type`` and implement
    ``process``, which returns one of ``CREATED``, ``MAPPED``, ``SKIPPED``
    or ``IGNORED`` (or ``None`` when the row was already accounted for).
    ``SKIPPED`` rows are reported as warnings; both ``SKIPPED`` and
    ``IGNORED`` rows leave the planned total.
    """

    entity: str = ""
    dataset: str = ""
    record_type: type[SourceRecord] = SourceRecord

    def __init__(self, context: ImportContext):
        self.context = context
        self.summary = EntitySummary(self.entity)
        self._pending: Counter = Counter()

    @property
    def timeout_ms(self) -> int:
        return self.context.config.timeout_for(self.entity)

    def planned_total(self) -> int:
        return self.context.dataset_count(self.dataset)

    def chunks(self) -> Iterator[list[Any]]:
        return self.context.records(self.dataset, self.record_type, self.entity)

    def scan(self) -> None:
        """Runs once before ``prepare``, outside any transaction; reads staged rows."""

    def prepare(self, session: Session) -> None:
        """Runs once before the first chunk."""

    def process(self, session: Session, record: Any) -> str | None:
        raise NotImplementedError

    def finish(self, session: Session) -> None:
        """Runs once after the last chunk."""

    def skip(self, message: str, **details) -> str:
        self.context.warn(self.entity, message, entity=self.entity, **details)
        return SKIPPED

    def record(self, outcome: str | None) -> None:
        """Count an outcome for a row other than the one being processed."""
        if outcome is not None:
            self._pending[outcome] += 1

    def run(self) -> EntitySummary:
        """
        Import every row of the dataset.

        Returns:
        -------
            Summary of the rows created, mapped and skipped

        """
        context = self.context
        progress = context.progress
        total = self.planned_total()
        progress.initialize(self.entity, total)
        progress.current_entity = self.entity
        progress.log("entity", f"Processing {self.entity}", entity=self.entity, total=total)
        context.persist(self.entity, progress.status_message(self.entity))

        if total == 0:
            logger.info(f"No {self.dataset or self.entity} rows to import", context={"entity": self.entity})
            progress.record_summary(self.summary)
            return self.summary

        self.scan()
        with context.db.transaction(self.timeout_ms) as session:
            self.prepare(session)

        for chunk in self.chunks():
            context.check_canceled()
            outcomes: Counter = Counter()
            with context.db.transaction(self.timeout_ms) as session:
                for item in chunk:
                    outcome = self.process(session, item)
                    if outcome is not None:
                        outcomes[outcome] += 1
            outcomes.update(self._pending)
            self._pending.clear()
            self._apply(outcomes)

        with context.db.transaction(self.timeout_ms) as session:
            self.finish(session)

        progress.record_summary(self.summary)
        logger.info(self.summary.status(), context={"entity": self.entity, **self.summary.details})
        context.persist(self.entity, self.summary.status())
        return self.summary

    def _apply(self, outcomes: Counter) -> None:
        context = self.context
        created, mapped = outcomes[CREATED], outcomes[MAPPED]
        skipped, ignored = outcomes[SKIPPED], outcomes[IGNORED]

        self.summary.created += created
        self.summary.mapped += mapped
        self.summary.total += created + mapped
        if skipped:
            self.summary.add_detail("skipped", skipped)
            context.skipped_count += skipped
        if ignored:
            self.summary.add_detail("ignored", ignored)

        context.progress.increment(self.entity, created, mapped)
        if skipped or ignored:
            context.progress.decrement_total(self.entity, skipped + ignored)
        if context.progress.due(self.entity):
            context.persist(self.entity, context.progress.status_message(self.entity))


class AssociationTransformer(Transformer):
    """
    Links two already imported records through an association table.

    Each row names an owner (case, run, session, ...) and a target (tag or
    issue). A link that already exists counts as mapped.
    """

    owner_field: str = ""
    owner_entity: str = ""
    target_field: str = ""
    target_entity: str = ""
    table: Table | None = None
    owner_column: str = ""
    target_column: str = ""

    def resolve_owner(self, record: SourceRecord) -> int | None:
        return self.context.maps.resolve(self.owner_entity, getattr(record, self.owner_field))

    def process(self, session: Session, record: SourceRecord) -> str:
        owner_source = getattr(record, self.owner_field)
        target_source = getattr(record, self.target_field)
        owner_id = self.resolve_owner(record)
        if owner_id is None:
            return self.skip(
                f"Skipping {self.entity} row due to missing {self.owner_entity} mapping",
                **{self.owner_field: owner_source, self.target_field: target_source},
            )
        target_id = self.context.maps.resolve(self.target_entity, target_source)
        if target_id is None:
            return self.skip(
                f"Skipping {self.entity} row due to missing {self.target_entity} mapping",
                **{self.owner_field: owner_source, self.target_field: target_source},
            )

        table = self.table
        existing = session.execute(
            select(table).where(
                table.c[self.owner_column] == owner_id, table.c[self.target_column] == target_id
            )
        ).first()
        if existing is not None:
            return MAPPED
        session.execute(table.insert().values({self.owner_column: owner_id, self.target_column: target_id}))
        return CREATED


def merge_field_value(existing: Any, incoming: Any) -> Any:
    """Combine a stored field value with a new one; lists are merged as a set union."""
    if incoming is None:
        return existing
    if existing is None:
        return incoming
    if isinstance(existing, list):
        additions = incoming if isinstance(incoming, list) else [incoming]
        return existing + [value for value in additions if value not in existing]
    return existing
