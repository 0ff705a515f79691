"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Streaming analyzer for Testmo export bundles.

The bundle is a single JSON document that may be many gigabytes. It is read
once as an ijson event stream: every object key under the root (or under a
``datasets``/``entities`` container) names a dataset, each object in the
dataset's ``data``/``rows``/``records``/``items`` array is a row, and a
``schema``/``columns``/``fields`` value inside a dataset is its schema. Rows
are assembled one at a time, staged in batches and sampled for the
configuration screen; the document is never held in memory.
"""

import math
import os
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO

import ijson
from ijson.common import ObjectBuilder

from tmtp.core.db_models import utc_now
from tmtp.core.logging import get_logger
from tmtp.errors import AnalysisAborted
from tmtp.records import is_snapshot_value
from tmtp.staging import StagingStore
from tmtp.values import to_int

logger = get_logger(__name__)

STAGING_BATCH_SIZE = 1000
DEFAULT_SAMPLE_ROW_LIMIT = 5

ATTACHMENT_DATASET_PATTERN = re.compile(r"attachment", re.IGNORECASE)

DATASET_CONTAINER_KEYS = frozenset({"datasets", "entities"})
DATASET_DATA_KEYS = frozenset({"data", "rows", "records", "items"})
DATASET_SCHEMA_KEYS = frozenset({"schema", "columns", "fields"})
IGNORED_DATASET_KEYS = frozenset({"meta", "summary"})

MAX_SAMPLE_STRING_LENGTH = 1000
MAX_SAMPLE_ARRAY_ITEMS = 10
MAX_SAMPLE_OBJECT_KEYS = 20
MAX_SAMPLE_DEPTH = 3

# Seconds before a byte-rate ETA is trusted
MIN_ETA_ELAPSED = 2.0

ProgressCallback = Callable[[int, int, int, int | None], None]


@dataclass
class DatasetSummary:
    """Shape of one dataset as discovered in the bundle."""

    name: str
    row_count: int = 0
    schema: Any = None
    sample_rows: list[Any] = field(default_factory=list)
    truncated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "row_count": self.row_count,
            "schema": self.schema,
            "sample_rows": self.sample_rows,
            "truncated": self.truncated,
        }


@dataclass
class ExportSummary:
    datasets: dict[str, DatasetSummary]
    total_rows: int
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    file_size_bytes: int | None = None

    @property
    def meta(self) -> dict[str, Any]:
        return {
            "total_datasets": len(self.datasets),
            "total_rows": self.total_rows,
            "duration_ms": self.duration_ms,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "file_size_bytes": self.file_size_bytes,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "datasets": {name: summary.to_dict() for name, summary in self.datasets.items()},
            "meta": self.meta,
        }


def sanitize_sample_value(value: Any, depth: int = 0) -> Any:
    """Bound the size of a sample row kept for display."""
    if depth > MAX_SAMPLE_DEPTH:
        return "[truncated depth]"
    if isinstance(value, str):
        if len(value) > MAX_SAMPLE_STRING_LENGTH:
            remaining = len(value) - MAX_SAMPLE_STRING_LENGTH
            return f"{value[:MAX_SAMPLE_STRING_LENGTH]}… [{remaining} more characters]"
        return value
    if isinstance(value, list):
        items = [sanitize_sample_value(item, depth + 1) for item in value[:MAX_SAMPLE_ARRAY_ITEMS]]
        if len(value) > MAX_SAMPLE_ARRAY_ITEMS:
            items.append(f"[{len(value) - MAX_SAMPLE_ARRAY_ITEMS} more items]")
        return items
    if isinstance(value, dict):
        entries = list(value.items())
        result = {
            key: sanitize_sample_value(entry, depth + 1)
            for key, entry in entries[:MAX_SAMPLE_OBJECT_KEYS]
        }
        if len(entries) > MAX_SAMPLE_OBJECT_KEYS:
            result["__truncated_keys__"] = f"{len(entries) - MAX_SAMPLE_OBJECT_KEYS} more keys"
        return result
    return value


class ByteProgressTracker:
    """Reports read progress whenever the integer percentage advances."""

    def __init__(
        self,
        total_bytes: int,
        on_progress: ProgressCallback | None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total_bytes = total_bytes
        self.on_progress = on_progress
        self.clock = clock
        self.bytes_read = 0
        self.last_percentage = -1
        self.started = clock()

    def advance(self, count: int) -> None:
        self.bytes_read += count
        if not self.on_progress or self.total_bytes <= 0:
            return
        percentage = math.floor(self.bytes_read / self.total_bytes * 100)
        if percentage < self.last_percentage + 1:
            return
        self.last_percentage = percentage
        self.on_progress(self.bytes_read, self.total_bytes, percentage, self.eta_seconds(percentage))

    def eta_seconds(self, percentage: int) -> int | None:
        elapsed = self.clock() - self.started
        if elapsed < MIN_ETA_ELAPSED or self.bytes_read <= 0 or percentage <= 0:
            return None
        bytes_per_second = self.bytes_read / elapsed
        remaining = max(0, self.total_bytes - self.bytes_read)
        return math.ceil(remaining / bytes_per_second)


class CountingReader:
    """File wrapper that feeds every read into a progress tracker."""

    def __init__(self, stream: BinaryIO, tracker: ByteProgressTracker):
        self.stream = stream
        self.tracker = tracker

    def read(self, size: int = -1) -> bytes:
        chunk = self.stream.read(size)
        if chunk:
            self.tracker.advance(len(chunk))
        return chunk


class _Capture:
    """Assembles one JSON value out of parser events."""

    def __init__(self, dataset_name: str, purpose: str, row_index: int | None = None):
        self.dataset_name = dataset_name
        self.purpose = purpose
        self.row_index = row_index
        self.builder = ObjectBuilder()
        self.depth = 0

    def feed(self, event: str, value: Any) -> bool:
        """Feed one event; returns True once the value is complete."""
        self.builder.event(event, value)
        if event in ("start_map", "start_array"):
            self.depth += 1
        elif event in ("end_map", "end_array"):
            self.depth -= 1
        return self.depth == 0

    @property
    def value(self) -> Any:
        return self.builder.value


@dataclass
class _Frame:
    kind: str
    key: str | None
    dataset: str | None = None


class ExportAnalyzer:
    """
    Streams a bundle into the staging store and summarizes its datasets.

    One analyzer instance handles one bundle. Repository snapshot filtering
    depends on ``repositories`` appearing before the ``repository_*``
    datasets, which is the order Testmo writes them in.
    """

    def __init__(
        self,
        staging: StagingStore,
        staging_batch_size: int = STAGING_BATCH_SIZE,
        sample_row_limit: int = DEFAULT_SAMPLE_ROW_LIMIT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.staging = staging
        self.staging_batch_size = staging_batch_size
        self.sample_row_limit = sample_row_limit
        self.clock = clock
        self._batches: dict[str, list[tuple[int, Any]]] = {}
        self._master_repository_ids: set[int] = set()
        self._job_id: str | None = None

    def analyze(
        self,
        source: str | Path | BinaryIO,
        job_id: str,
        on_progress: ProgressCallback | None = None,
        should_abort: Callable[[], bool] | None = None,
        on_dataset_complete: Callable[[DatasetSummary], None] | None = None,
        total_bytes: int | None = None,
    ) -> ExportSummary:
        """
        Analyze a bundle and stage all of its rows.

        Args:
        ----
            source: Path to the bundle or a binary stream
            job_id: Job the staged rows belong to
            on_progress: Called with bytes read, total bytes, percentage and ETA
            should_abort: Polled before each row; returning True stops the run
            on_dataset_complete: Called once per dataset after the stream ends
            total_bytes: Size of a stream source, when known

        Returns:
        -------
            Summary of every dataset found

        Raises:
        ------
            AnalysisAborted: If ``should_abort`` returned True
            ijson.JSONError: If the bundle is not valid JSON

        """
        self._job_id = job_id
        self._batches = {}
        self._master_repository_ids = set()
        started_at = utc_now()
        started = self.clock()

        owns_stream = isinstance(source, (str, Path))
        if owns_stream:
            total_bytes = os.path.getsize(source)
            stream = open(source, "rb")
        else:
            stream = source

        tracker = ByteProgressTracker(total_bytes or 0, on_progress, self.clock)
        datasets: dict[str, DatasetSummary] = {}
        try:
            total_rows = self._walk(CountingReader(stream, tracker), datasets, should_abort)
        finally:
            try:
                self._flush_all()
            finally:
                if owns_stream:
                    stream.close()
                if on_dataset_complete:
                    for summary in datasets.values():
                        on_dataset_complete(summary)

        completed_at = utc_now()
        summary = ExportSummary(
            datasets=datasets,
            total_rows=total_rows,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=int((self.clock() - started) * 1000),
            file_size_bytes=total_bytes,
        )
        logger.info(
            "Export analysis complete",
            context={"job_id": job_id, **summary.meta},
        )
        return summary

    def _walk(
        self,
        reader: CountingReader,
        datasets: dict[str, DatasetSummary],
        should_abort: Callable[[], bool] | None,
    ) -> int:
        stack: list[_Frame] = []
        last_key: str | None = None
        capture: _Capture | None = None
        total_rows = 0

        def ensure(name: str) -> DatasetSummary:
            if name not in datasets:
                datasets[name] = DatasetSummary(name=name)
            return datasets[name]

        for _, event, value in ijson.parse(reader, use_float=True):
            if capture is not None:
                if capture.feed(event, value):
                    self._finish_capture(capture, datasets)
                    capture = None
                continue

            if event == "map_key":
                last_key = value
                continue

            parent = stack[-1] if stack else None
            key = last_key if parent is not None and parent.kind == "map" else None

            if event == "start_map":
                if parent is not None and parent.kind == "array":
                    if parent.dataset and parent.key in DATASET_DATA_KEYS:
                        if should_abort and should_abort():
                            raise AnalysisAborted("Export analysis aborted")
                        summary = ensure(parent.dataset)
                        capture = _Capture(parent.dataset, "row", summary.row_count)
                        summary.row_count += 1
                        total_rows += 1
                        capture.feed(event, value)
                        continue
                    stack.append(_Frame("map", None, parent.dataset))
                    continue

                if self._names_dataset(key, parent):
                    ensure(key)
                    stack.append(_Frame("map", key, key))
                    continue

                dataset = parent.dataset if parent is not None else None
                if dataset and key in DATASET_SCHEMA_KEYS:
                    capture = _Capture(dataset, "schema")
                    capture.feed(event, value)
                    continue
                stack.append(_Frame("map", key, dataset))
            elif event == "start_array":
                dataset = parent.dataset if parent is not None else None
                if dataset and key in DATASET_SCHEMA_KEYS:
                    capture = _Capture(dataset, "schema")
                    capture.feed(event, value)
                    continue
                stack.append(_Frame("array", key, dataset))
            elif event in ("end_map", "end_array"):
                stack.pop()

        return total_rows

    @staticmethod
    def _names_dataset(key: str | None, parent: _Frame | None) -> bool:
        if key is None or parent is None or parent.kind != "map":
            return False
        at_top = parent.key is None and parent.dataset is None
        in_container = parent.key in DATASET_CONTAINER_KEYS and parent.dataset is None
        if not (at_top or in_container):
            return False
        return (
            key not in DATASET_DATA_KEYS
            and key not in DATASET_CONTAINER_KEYS
            and key not in IGNORED_DATASET_KEYS
        )

    def _finish_capture(self, capture: _Capture, datasets: dict[str, DatasetSummary]) -> None:
        summary = datasets[capture.dataset_name]
        if capture.purpose == "schema":
            summary.schema = capture.value
            return

        value = capture.value
        if ATTACHMENT_DATASET_PATTERN.search(capture.dataset_name):
            return
        self._stage_row(capture.dataset_name, capture.row_index, value)
        if len(summary.sample_rows) < self.sample_row_limit:
            summary.sample_rows.append(sanitize_sample_value(value))

    def _should_skip(self, dataset_name: str, row: Any) -> bool:
        if not isinstance(row, dict):
            return False
        if dataset_name == "repositories":
            repo_id = to_int(row.get("id"))
            snapshot = is_snapshot_value(row.get("is_snapshot"))
            if not snapshot and repo_id is not None:
                self._master_repository_ids.add(repo_id)
            return snapshot
        if dataset_name.startswith("repository_") and dataset_name != "repository_case_tags":
            repo_id = to_int(row.get("repo_id"))
            if repo_id is not None and self._master_repository_ids:
                return repo_id not in self._master_repository_ids
        return False

    def _stage_row(self, dataset_name: str, row_index: int, row: Any) -> None:
        if self._should_skip(dataset_name, row):
            return
        batch = self._batches.setdefault(dataset_name, [])
        batch.append((row_index, row))
        if len(batch) >= self.staging_batch_size:
            self._flush(dataset_name)

    def _flush(self, dataset_name: str) -> None:
        batch = self._batches.get(dataset_name)
        if not batch:
            return
        self.staging.put(self._job_id, dataset_name, batch)
        self._batches[dataset_name] = []

    def _flush_all(self) -> None:
        for dataset_name in list(self._batches):
            self._flush(dataset_name)
