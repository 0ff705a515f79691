"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Import orchestration.

``TestmoImporter`` runs one configured job: it resolves the operator's
mapping decisions for the reference entities, runs the entity transformers in
dependency order and finalizes the job. The job row is the status contract
with the outside world; progress snapshots are written to it in their own
short sessions so a failed write never disturbs the chunk being imported.
"""

import time
from collections.abc import Callable
from functools import partial

from sqlalchemy.exc import SQLAlchemyError

from tmtp.core.config import ImportConfig
from tmtp.core.db_manager import DatabaseManager
from tmtp.core.db_models import ImportJob, JobPhase, JobStatus, utc_now
from tmtp.core.logging import correlation_id, get_logger, log_operation
from tmtp.errors import ConfigurationError, ImportCanceled, JobNotFoundError
from tmtp.mapping_config import MappingConfiguration
from tmtp.progress import format_entity_label
from tmtp.records import NamedRecord, TemplateFieldLinkRecord, UserGroupRecord
from tmtp.resolvers import RESOLVERS, TemplateFieldResolver, TemplateResolver, resolve_user_groups
from tmtp.staging import StagingStore
from tmtp.transformers import (
    AutomationCaseTransformer,
    AutomationRunLinkTransformer,
    AutomationRunTagTransformer,
    AutomationRunTestTransformer,
    AutomationRunTransformer,
    CaseIssueTransformer,
    CaseStepTransformer,
    CaseTagTransformer,
    CaseTransformer,
    CaseValueTransformer,
    CaseVersionTransformer,
    FolderTransformer,
    ImportContext,
    IssueTransformer,
    MilestoneLinkTransformer,
    MilestoneTransformer,
    ProjectLinkTransformer,
    ProjectTransformer,
    RepositoryTransformer,
    RunIssueTransformer,
    RunLinkTransformer,
    RunResultIssueTransformer,
    RunTagTransformer,
    SessionIssueTransformer,
    SessionResultIssueTransformer,
    SessionResultTransformer,
    SessionTagTransformer,
    SessionTransformer,
    SessionValueTransformer,
    StepResultTransformer,
    TestRunCaseTransformer,
    TestRunResultTransformer,
    TestRunTransformer,
    Transformer,
)

logger = get_logger(__name__)

COMPLETED_MESSAGE = "Import completed successfully."

# Reference entities resolved before any project data, in this order
REFERENCE_ENTITIES = (
    "workflows",
    "statuses",
    "groups",
    "tags",
    "roles",
    "milestone_types",
    "configurations",
)

# Entity transformers up to the issue targets, in dependency order
ENTITY_PIPELINE: tuple[type[Transformer], ...] = (
    ProjectTransformer,
    ProjectLinkTransformer,
    MilestoneTransformer,
    MilestoneLinkTransformer,
    SessionTransformer,
    SessionResultTransformer,
    SessionTagTransformer,
    RepositoryTransformer,
    FolderTransformer,
    CaseTransformer,
    CaseStepTransformer,
    CaseValueTransformer,
    CaseVersionTransformer,
    CaseTagTransformer,
    AutomationCaseTransformer,
    AutomationRunTransformer,
    AutomationRunLinkTransformer,
    AutomationRunTestTransformer,
    AutomationRunTagTransformer,
    SessionValueTransformer,
    TestRunTransformer,
    RunLinkTransformer,
    TestRunCaseTransformer,
    RunTagTransformer,
    TestRunResultTransformer,
    StepResultTransformer,
)

# Issues and their relationships, after the issue targets are resolved
ISSUE_PIPELINE: tuple[type[Transformer], ...] = (
    IssueTransformer,
    CaseIssueTransformer,
    RunIssueTransformer,
    RunResultIssueTransformer,
    SessionIssueTransformer,
    SessionResultIssueTransformer,
)


def format_duration(milliseconds: int) -> str:
    """``"3m 7s"``, or ``"7s"`` under a minute."""
    seconds = milliseconds // 1000
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}m {seconds}s" if minutes > 0 else f"{seconds}s"


class ReindexQueue:
    """Receives the full search reindex requested after a successful import."""

    def enqueue(self, job_id: str, user_id: int | None) -> None:
        raise NotImplementedError


class InMemoryReindexQueue(ReindexQueue):
    """Keeps reindex requests in a list; used by the CLI and tests."""

    def __init__(self):
        self.requests: list[dict] = []

    def enqueue(self, job_id: str, user_id: int | None) -> None:
        self.requests.append(
            {"name": f"reindex-after-import-{job_id}", "entity_type": "all", "user_id": user_id}
        )


class TestmoImporter:
    """
    Runs the import phase of a job.

    Args:
    ----
        db: Database holding the job, the staged rows and the target tables
        config: Chunk sizes, timeouts and progress cadence
        staging: Staging store; one over ``db`` is created when None
        reindex_queue: Receives the reindex request after success
        clock: Monotonic clock used for the run duration

    """

    __test__ = False

    def __init__(
        self,
        db: DatabaseManager,
        config: ImportConfig | None = None,
        staging: StagingStore | None = None,
        reindex_queue: ReindexQueue | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.config = config or ImportConfig.from_env()
        self.staging = staging or StagingStore(db)
        self.reindex_queue = reindex_queue
        self.clock = clock

    def run(self, job_id: str) -> JobStatus:
        """
        Import a configured job.

        Returns:
        -------
            The job's final status. Terminal jobs are returned untouched.

        Raises:
        ------
            JobNotFoundError: If the job does not exist
            ConfigurationError: If the job has no mapping configuration
            Exception: Any failure of the run, after the job was marked FAILED

        """
        with self.db.get_session() as session:
            job = session.get(ImportJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Import job {job_id} not found")
            if job.is_terminal:
                logger.info("Import job already finished", context={"job_id": job_id, "status": job.status.value})
                return job.status
            if job.configuration is None:
                raise ConfigurationError(
                    f"Import job {job_id} cannot start background import without configuration"
                )
            mapping = MappingConfiguration.from_dict(job.configuration)
            created_by_id = job.created_by_id

        with correlation_id(job_id):
            context = ImportContext(job_id, self.db, self.staging, self.config, mapping, created_by_id)
            context.persist = partial(self.persist_progress, context)
            context.should_cancel = partial(self.cancel_requested, job_id)
            return self.execute(context)

    def execute(self, context: ImportContext) -> JobStatus:
        started = self.clock()
        progress = context.progress
        progress.log("info", "Background import started.", job_id=context.job_id)
        self.initialize_totals(context)
        self.mark_started(context)

        try:
            with log_operation(logger, "reference resolution", context={"job_id": context.job_id}):
                self.resolve_references(context)
            for transformer_class in ENTITY_PIPELINE:
                context.check_canceled()
                transformer_class(context).run()
            context.check_canceled()
            self.resolve_reference(context, "issue_targets")
            for transformer_class in ISSUE_PIPELINE:
                context.check_canceled()
                transformer_class(context).run()
        except ImportCanceled:
            self.mark_canceled(context)
            return JobStatus.CANCELED
        except Exception as e:
            self.mark_failed(context, e)
            raise

        duration_ms = int((self.clock() - started) * 1000)
        self.mark_completed(context, duration_ms)
        self.request_reindex(context)
        return JobStatus.COMPLETED

    # Reference entities

    def resolve_references(self, context: ImportContext) -> None:
        for entity in REFERENCE_ENTITIES:
            context.check_canceled()
            self.resolve_reference(context, entity)
        context.check_canceled()
        self.resolve_templates(context)
        context.check_canceled()
        self.resolve_reference(context, "users")
        self.resolve_memberships(context)

        with self.db.get_session() as session:
            context.load_defaults(session)
        context.load_field_caches()

    def begin_reference(self, context: ImportContext, entity: str, total: int) -> None:
        message = f"Processing {format_entity_label(entity).lower()} mappings"
        context.progress.initialize(entity, total)
        context.progress.current_entity = entity
        context.progress.log("info", message, entity=entity)
        context.persist(entity, message)

    def resolve_reference(self, context: ImportContext, entity: str) -> None:
        decisions = context.mapping.decisions(entity)
        self.begin_reference(context, entity, len(decisions))
        with self.db.transaction(self.config.transaction_timeout_ms) as session:
            summary = RESOLVERS[entity](session, context.maps).resolve(decisions)
        context.progress.record_summary(summary)
        context.persist(entity, summary.status())

    def resolve_templates(self, context: ImportContext) -> None:
        mapping = context.mapping
        template_rows = self.load_records(context, "templates", NamedRecord)
        field_links = self.load_records(context, "template_fields", TemplateFieldLinkRecord)

        self.begin_reference(context, "templates", mapping.count("templates"))
        with self.db.transaction(self.config.transaction_timeout_ms) as session:
            templates = TemplateResolver(session, context.maps)
            template_summary = templates.resolve_with_fields(mapping.templates, mapping.template_fields)
            context.template_map.update(templates.template_map)
        context.progress.record_summary(template_summary)
        context.persist("templates", template_summary.status())

        self.begin_reference(context, "template_fields", mapping.count("template_fields"))
        with self.db.transaction(self.config.transaction_timeout_ms) as session:
            templates = TemplateResolver(session, context.maps)
            templates.template_map.update(context.template_map)
            field_summary = TemplateFieldResolver(
                session, templates, mapping.templates, template_rows, field_links, context.maps
            ).resolve(mapping.template_fields)
            context.template_map.update(templates.template_map)
        context.progress.record_summary(field_summary)
        context.persist("template_fields", field_summary.status())

    def resolve_memberships(self, context: ImportContext) -> None:
        rows = self.load_records(context, "user_groups", UserGroupRecord)
        self.begin_reference(context, "user_groups", len(rows))
        with self.db.transaction(self.config.transaction_timeout_ms) as session:
            summary = resolve_user_groups(session, rows, context.maps)
        context.progress.record_summary(summary)
        context.persist("user_groups", summary.status())

    def load_records(self, context: ImportContext, dataset: str, record_type) -> list:
        records = []
        for page in context.records(dataset, record_type):
            records.extend(page)
        return records

    # Job state

    def initialize_totals(self, context: ImportContext) -> None:
        """Planned totals of every entity, so the overall ETA covers the whole run."""
        progress = context.progress
        for entity in (*REFERENCE_ENTITIES, "templates", "template_fields", "users", "issue_targets"):
            progress.initialize(entity, context.mapping.count(entity))
        progress.initialize("user_groups", context.dataset_count("user_groups"))
        for transformer_class in ENTITY_PIPELINE + ISSUE_PIPELINE:
            if transformer_class.dataset:
                progress.initialize(transformer_class.entity, context.dataset_count(transformer_class.dataset))

    def cancel_requested(self, job_id: str) -> bool:
        with self.db.get_session() as session:
            job = session.get(ImportJob, job_id)
            return bool(job is not None and job.cancel_requested)

    def mark_started(self, context: ImportContext) -> None:
        progress = context.progress
        now = utc_now()
        with self.db.get_session() as session:
            job = session.get(ImportJob, context.job_id)
            job.status = JobStatus.RUNNING
            job.phase = JobPhase.IMPORTING
            job.status_message = "Background import started"
            job.started_at = job.started_at or now
            job.last_import_started_at = now
            job.processed_count = 0
            job.error_count = 0
            job.skipped_count = 0
            job.total_count = progress.total_count
            job.current_entity = None
            job.estimated_time_remaining = None
            job.processing_rate = None
            job.error = None
            job.activity_log = list(progress.activity_log)
            job.entity_progress = progress.entity_progress()
        progress.mark_persisted()
        logger.info("Background import started", context={"total_count": progress.total_count})

    def persist_progress(self, context: ImportContext, entity: str | None, message: str | None = None) -> None:
        """Write a progress snapshot; a failed write is logged and ignored."""
        progress = context.progress
        metrics = progress.metrics()
        try:
            with self.db.get_session() as session:
                job = session.get(ImportJob, context.job_id)
                if job is not None:
                    job.current_entity = entity
                    job.processed_count = progress.processed_count
                    job.total_count = progress.total_count
                    job.skipped_count = context.skipped_count
                    job.error_count = context.errors.total
                    job.activity_log = list(progress.activity_log)
                    job.entity_progress = progress.entity_progress()
                    job.estimated_time_remaining = metrics.estimated_time_remaining
                    job.processing_rate = metrics.processing_rate
                    if message:
                        job.status_message = message
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to update import progress for job {context.job_id}",
                context={"entity": entity, "error": str(e)},
            )
        progress.mark_persisted()

    def finish_job(self, context: ImportContext, **fields) -> None:
        progress = context.progress
        with self.db.get_session() as session:
            job = session.get(ImportJob, context.job_id)
            job.phase = None
            job.processed_count = progress.processed_count
            job.skipped_count = context.skipped_count
            job.error_count = context.errors.total
            job.activity_log = list(progress.activity_log)
            job.entity_progress = progress.entity_progress()
            job.configuration = context.mapping.to_dict()
            job.estimated_time_remaining = None
            job.processing_rate = None
            for name, value in fields.items():
                setattr(job, name, value)

    def save_activity_log(self, context: ImportContext) -> None:
        try:
            with self.db.get_session() as session:
                job = session.get(ImportJob, context.job_id)
                if job is not None:
                    job.activity_log = list(context.progress.activity_log)
        except SQLAlchemyError as e:
            logger.error(f"Failed to save the activity log of job {context.job_id}", context={"error": str(e)})

    def mark_completed(self, context: ImportContext, duration_ms: int) -> None:
        progress = context.progress
        progress.current_entity = None
        if context.errors.has_errors():
            progress.log(
                "warning",
                f"{context.errors.total} rows were skipped or adjusted",
                counts=dict(context.errors.counts),
            )
        progress.log(
            "info",
            COMPLETED_MESSAGE,
            processed_entities=progress.processed_count,
            total_time=format_duration(duration_ms),
            total_time_ms=duration_ms,
        )
        self.finish_job(
            context,
            status=JobStatus.COMPLETED,
            status_message=COMPLETED_MESSAGE,
            current_entity=None,
            completed_at=utc_now(),
            total_count=progress.processed_count,
            duration_ms=duration_ms,
        )
        logger.info(
            COMPLETED_MESSAGE,
            context={
                "processed": progress.processed_count,
                "skipped": context.skipped_count,
                "duration": format_duration(duration_ms),
            },
        )

    def mark_canceled(self, context: ImportContext) -> None:
        context.progress.log("info", "Import canceled by request")
        self.finish_job(
            context,
            status=JobStatus.CANCELED,
            status_message="Import was canceled",
            current_entity=context.progress.current_entity,
            canceled_at=utc_now(),
            total_count=context.progress.total_count,
        )
        logger.warning("Import canceled", context={"processed": context.progress.processed_count})

    def mark_failed(self, context: ImportContext, error: Exception) -> None:
        progress = context.progress
        progress.log("error", "Import failed", message=str(error))
        try:
            self.finish_job(
                context,
                status=JobStatus.FAILED,
                status_message="Import failed",
                error=str(error),
                current_entity=progress.current_entity,
                completed_at=utc_now(),
                total_count=progress.processed_count,
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to record the failure of import job {context.job_id}", context={"error": str(e)})
        logger.error(f"Import job {context.job_id} failed: {error}", context={"entity": progress.current_entity})

    def request_reindex(self, context: ImportContext) -> None:
        """Hand a full reindex to the queue; a failure never fails the import."""
        if self.reindex_queue is None:
            logger.warning(
                f"Reindex queue not available after import {context.job_id}. "
                "Search indexes will need to be updated manually."
            )
            return
        try:
            context.progress.log("info", "Queueing search reindex after successful import")
            self.reindex_queue.enqueue(context.job_id, context.created_by_id)
            logger.info(f"Queued search reindex after import {context.job_id}")
        except Exception as e:
            logger.error(f"Failed to queue search reindex after import {context.job_id}: {e}")
            context.progress.log(
                "warning",
                "Warning: Failed to queue search reindex. Search results may not include "
                "imported data until a manual reindex is performed.",
                error=str(e),
            )
            self.save_activity_log(context)
