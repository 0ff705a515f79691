"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
SQLAlchemy ORM models for the import pipeline.

These tables hold the state of an import job, the datasets discovered while
analyzing its bundle, and the staged source rows the importer reads back.
The product tables the import writes into live in ``target_models``.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the form every timestamp column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(enum.Enum):
    """Lifecycle status of an import job."""

    PENDING = "PENDING"
    ANALYZING = "ANALYZING"
    READY = "READY"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED})


class JobPhase(enum.Enum):
    """Phase an import job is currently in."""

    UPLOADING = "UPLOADING"
    ANALYZING = "ANALYZING"
    CONFIGURING = "CONFIGURING"
    IMPORTING = "IMPORTING"
    FINALIZING = "FINALIZING"


def _new_job_id() -> str:
    return str(uuid.uuid4())


class ImportJob(Base):
    """One import of one export bundle."""

    __tablename__ = "import_jobs"

    id = Column(String(36), primary_key=True, default=_new_job_id)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.PENDING, index=True)
    phase = Column(Enum(JobPhase), nullable=True)
    storage_key = Column(Text, nullable=False)
    original_file_name = Column(String(255))
    original_file_size = Column(BigInteger)
    cancel_requested = Column(Boolean, nullable=False, default=False)

    processed_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    skipped_count = Column(Integer, nullable=False, default=0)
    total_count = Column(Integer, nullable=False, default=0)
    total_datasets = Column(Integer, nullable=False, default=0)
    total_rows = Column(BigInteger, nullable=False, default=0)
    processed_datasets = Column(Integer, nullable=False, default=0)
    processed_rows = Column(BigInteger, nullable=False, default=0)

    current_entity = Column(String(100))
    status_message = Column(Text)
    estimated_time_remaining = Column(String(50))
    processing_rate = Column(String(50))
    activity_log = Column(JSON)
    entity_progress = Column(JSON)
    configuration = Column(JSON)
    analysis = Column(JSON)
    error = Column(Text)

    created_by_id = Column(Integer)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    started_at = Column(DateTime)
    analysis_generated_at = Column(DateTime)
    last_import_started_at = Column(DateTime)
    completed_at = Column(DateTime)
    canceled_at = Column(DateTime)
    duration_ms = Column(BigInteger)

    datasets = relationship("ImportDataset", back_populates="job", cascade="all, delete-orphan")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<ImportJob(id='{self.id}', status='{self.status}', phase='{self.phase}')>"


class ImportDataset(Base):
    """A dataset discovered in a bundle, with its inferred shape and samples."""

    __tablename__ = "import_datasets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    row_count = Column(BigInteger, nullable=False, default=0)
    sample_row_count = Column(Integer, nullable=False, default=0)
    truncated = Column(Boolean, nullable=False, default=False)
    schema = Column(JSON)
    sample_rows = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utc_now)

    job = relationship("ImportJob", back_populates="datasets")

    __table_args__ = (UniqueConstraint("job_id", "name", name="uq_import_dataset_job_name"),)

    def __repr__(self):
        return f"<ImportDataset(job='{self.job_id}', name='{self.name}', rows={self.row_count})>"


class StagedRow(Base):
    """
    One raw source row, written by the analyzer and read by the importer.

    Long step texts and automation field values are kept in their own columns
    so the JSON payload stays small.
    """

    __tablename__ = "import_staging"

    job_id = Column(String(36), primary_key=True)
    dataset_name = Column(String(255), primary_key=True)
    row_index = Column(BigInteger, primary_key=True, autoincrement=False)
    row_data = Column(JSON, nullable=False)
    field_name = Column(Text)
    field_value = Column(Text)
    text1 = Column(Text)
    text2 = Column(Text)
    text3 = Column(Text)
    text4 = Column(Text)
    processed = Column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("idx_staging_job_dataset", "job_id", "dataset_name"),)

    def __repr__(self):
        return f"<StagedRow(job='{self.job_id}', dataset='{self.dataset_name}', index={self.row_index})>"
