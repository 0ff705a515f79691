"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Job-queue entry point.

``process_job(job_id, mode)`` is what a queue consumer calls for every
message. ``analyze`` streams the job's bundle into the staging store and
records the datasets it found; ``import`` hands the configured job to
``TestmoImporter``. Both modes leave terminal jobs untouched.
"""

import time
from collections.abc import Callable

from tmtp.analyzer import DatasetSummary, ExportAnalyzer
from tmtp.bundle_source import open_bundle
from tmtp.core.config import AppConfig, get_app_config
from tmtp.core.db_manager import DatabaseManager
from tmtp.core.db_models import ImportDataset, ImportJob, JobPhase, JobStatus, utc_now
from tmtp.core.logging import correlation_id, get_logger, log_operation
from tmtp.errors import AnalysisAborted, JobNotFoundError
from tmtp.importer import ReindexQueue, TestmoImporter
from tmtp.staging import StagingStore

logger = get_logger(__name__)

MODES = ("analyze", "import")

# Seconds between cancellation checks while a bundle is streamed
CANCEL_POLL_INTERVAL = 1.0


class CancellationProbe:
    """Polls a job's cancel flag at most once per interval."""

    def __init__(
        self,
        db: DatabaseManager,
        job_id: str,
        interval: float = CANCEL_POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.job_id = job_id
        self.interval = interval
        self.clock = clock
        self.requested = False
        self._checked_at: float | None = None

    def __call__(self) -> bool:
        if self.requested:
            return True
        now = self.clock()
        if self._checked_at is None or now - self._checked_at >= self.interval:
            self._checked_at = now
            with self.db.get_session() as session:
                job = session.get(ImportJob, self.job_id)
                self.requested = bool(job is not None and job.cancel_requested)
        return self.requested


def update_job(db: DatabaseManager, job_id: str, **fields) -> None:
    with db.get_session() as session:
        job = session.get(ImportJob, job_id)
        for name, value in fields.items():
            setattr(job, name, value)


def format_eta(seconds: int | None) -> str:
    if not seconds:
        return ""
    if seconds < 60:
        return f" - ETA: {seconds}s"
    if seconds < 3600:
        return f" - ETA: {-(-seconds // 60)}m"
    hours, remainder = divmod(seconds, 3600)
    return f" - ETA: {hours}h {-(-remainder // 60)}m"


class AnalysisRun:
    """Analysis of one job's bundle and the job updates it makes along the way."""

    def __init__(self, db: DatabaseManager, config: AppConfig, job_id: str):
        self.db = db
        self.config = config
        self.job_id = job_id
        self.staging = StagingStore(db)
        self.should_abort = CancellationProbe(db, job_id)
        self.processed_datasets = 0
        self.processed_rows = 0

    def on_progress(self, bytes_read: int, total_bytes: int, percentage: int, eta: int | None) -> None:
        logger.debug(f"Progress update: {percentage}% ({bytes_read}/{total_bytes} bytes){format_eta(eta)}")
        update_job(
            self.db,
            self.job_id,
            status_message=f"Scanning file... {percentage}% complete",
            estimated_time_remaining=None if eta is None else str(eta),
        )

    def on_dataset_complete(self, dataset: DatasetSummary) -> None:
        self.processed_datasets += 1
        self.processed_rows += dataset.row_count
        with self.db.get_session() as session:
            session.add(
                ImportDataset(
                    job_id=self.job_id,
                    name=dataset.name,
                    row_count=dataset.row_count,
                    sample_row_count=len(dataset.sample_rows),
                    truncated=dataset.truncated,
                    schema=dataset.schema,
                    sample_rows=dataset.sample_rows or None,
                )
            )
            job = session.get(ImportJob, self.job_id)
            job.processed_datasets = self.processed_datasets
            job.processed_rows = self.processed_rows
            job.status_message = f"Found {dataset.name} ({dataset.row_count:,} rows)"

    def run(self) -> JobStatus:
        with self.db.get_session() as session:
            job = session.get(ImportJob, self.job_id)
            if job.cancel_requested:
                job.status = JobStatus.CANCELED
                job.status_message = "Import was canceled before it started"
                job.canceled_at = utc_now()
                job.phase = None
                return JobStatus.CANCELED
            storage_key = job.storage_key
            file_size = job.original_file_size
            for dataset in list(job.datasets):
                session.delete(dataset)
            job.status = JobStatus.ANALYZING
            job.phase = JobPhase.ANALYZING
            job.status_message = "Opening and scanning export file..."
            job.started_at = utc_now()
            job.processed_datasets = 0
            job.processed_rows = 0
            job.error = None

        self.staging.delete(self.job_id)
        importer_config = self.config.importer
        analyzer = ExportAnalyzer(
            self.staging,
            staging_batch_size=importer_config.staging_batch_size,
            sample_row_limit=importer_config.sample_row_limit,
        )

        try:
            with open_bundle(storage_key, importer_config.temp_dir, importer_config.download_timeout) as path:
                update_job(self.db, self.job_id, status_message="Download complete. Starting analysis...")
                summary = analyzer.analyze(
                    path,
                    self.job_id,
                    on_progress=self.on_progress,
                    should_abort=self.should_abort,
                    on_dataset_complete=self.on_dataset_complete,
                )
        except AnalysisAborted:
            self.mark_canceled()
            return JobStatus.CANCELED
        except Exception as e:
            if self.should_abort.requested:
                self.mark_canceled()
                return JobStatus.CANCELED
            update_job(
                self.db,
                self.job_id,
                status=JobStatus.FAILED,
                status_message="Import failed",
                error=str(e),
                phase=None,
            )
            raise

        meta = dict(summary.meta)
        meta["file_size_bytes"] = file_size or meta.get("file_size_bytes") or 0
        message = "Analysis complete. Configure mapping to continue."
        if not summary.datasets:
            message = "Analysis complete (no datasets found)"
        update_job(
            self.db,
            self.job_id,
            status=JobStatus.READY,
            phase=JobPhase.CONFIGURING,
            status_message=message,
            total_datasets=len(summary.datasets),
            total_rows=summary.total_rows,
            processed_datasets=self.processed_datasets,
            processed_rows=self.processed_rows,
            duration_ms=summary.duration_ms,
            analysis_generated_at=utc_now(),
            analysis={"meta": meta},
            configuration=None,
            processed_count=0,
            error_count=0,
            skipped_count=0,
            total_count=0,
            current_entity=None,
            estimated_time_remaining=None,
            processing_rate=None,
            activity_log=None,
            entity_progress=None,
        )
        return JobStatus.READY

    def mark_canceled(self) -> None:
        update_job(
            self.db,
            self.job_id,
            status=JobStatus.CANCELED,
            status_message="Import was canceled",
            canceled_at=utc_now(),
            phase=None,
        )
        logger.warning("Analysis canceled", context={"job_id": self.job_id})


def process_job(
    job_id: str,
    mode: str = "analyze",
    db: DatabaseManager | None = None,
    config: AppConfig | None = None,
    reindex_queue: ReindexQueue | None = None,
) -> JobStatus:
    """
    Run one queued job.

    Args:
        job_id: Id of the import job
        mode: ``analyze`` or ``import``
        db: Database manager; one is built from the configuration when None
        config: Application configuration; the global one when None
        reindex_queue: Receives the reindex request after a successful import

    Returns:
        The job's status after the run

    Raises:
        ValueError: If the mode is not supported
        JobNotFoundError: If the job does not exist
    """
    if not job_id:
        raise ValueError("Job id is required")
    if mode not in MODES:
        raise ValueError(f"Unsupported import job mode: {mode}")

    config = config or get_app_config()
    db = db or DatabaseManager(config.database)

    with db.get_session() as session:
        job = session.get(ImportJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Import job {job_id} not found")
        if job.is_terminal:
            return job.status

    with correlation_id(job_id), log_operation(logger, f"{mode} job", context={"job_id": job_id}):
        if mode == "import":
            importer = TestmoImporter(db, config.importer, StagingStore(db), reindex_queue)
            return importer.run(job_id)
        return AnalysisRun(db, config, job_id).run()
