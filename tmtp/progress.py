"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Progress accounting and completion estimates for import runs.

``ProgressTracker`` keeps the per-entity ``{total, created, mapped}`` counters,
the activity log shown to operators and the aggregate counters of the job.
``ThroughputEstimator`` turns processed counts over time into a smoothed
processing rate and an estimated number of seconds remaining.
"""

import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from tmtp.core.db_models import utc_now

SAMPLE_WINDOW_SECONDS = 60.0
MAX_SAMPLES = 60
SMOOTHING_FACTOR = 0.3
RATE_FLOOR_RATIO = 0.2
MIN_ELAPSED_SECONDS = 2.0

MAX_ACTIVITY_ENTRIES = 1000

ENTITY_LABELS = {
    "milestone_types": "Milestone Types",
    "issue_targets": "Issue Targets",
    "template_fields": "Template Fields",
    "user_groups": "User Group Memberships",
    "test_run_step_results": "Step Results",
    "run_issues": "Test Run Issues",
    "run_result_issues": "Test Run Result Issues",
    "run_tags": "Test Run Tags",
}


def format_entity_label(entity: str) -> str:
    """Human readable label for an entity key, e.g. ``repository_cases``."""
    if entity in ENTITY_LABELS:
        return ENTITY_LABELS[entity]
    return " ".join(part.capitalize() for part in entity.split("_") if part)


def format_rate(items_per_second: float) -> str:
    if items_per_second >= 1:
        return f"{items_per_second:.1f} items/sec"
    return f"{items_per_second * 60:.1f} items/min"


@dataclass
class EntityProgress:
    total: int = 0
    created: int = 0
    mapped: int = 0

    @property
    def processed(self) -> int:
        return self.created + self.mapped

    def to_dict(self) -> dict[str, int]:
        return {"total": self.total, "created": self.created, "mapped": self.mapped}


@dataclass
class EntitySummary:
    """Outcome of one transformer."""

    entity: str
    total: int = 0
    created: int = 0
    mapped: int = 0
    details: dict[str, int] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return self.created + self.mapped

    def add_detail(self, key: str, amount: int = 1) -> None:
        self.details[key] = self.details.get(key, 0) + amount

    def status(self) -> str:
        return (
            f"{format_entity_label(self.entity)}: {self.total} processed, "
            f"{self.created} created, {self.mapped} mapped"
        )


@dataclass
class ProgressMetrics:
    seconds_remaining: int | None = None
    items_per_second: float | None = None

    @property
    def estimated_time_remaining(self) -> str | None:
        return None if self.seconds_remaining is None else str(self.seconds_remaining)

    @property
    def processing_rate(self) -> str | None:
        return None if self.items_per_second is None else format_rate(self.items_per_second)


class ThroughputEstimator:
    """
    Smoothed processing rate over a rolling window of samples.

    Instantaneous rates between consecutive samples are smoothed with an
    exponential moving average. The result never drops below a fraction of
    the overall rate since the run started, so a stall does not push the
    estimate towards infinity.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        window_seconds: float = SAMPLE_WINDOW_SECONDS,
        max_samples: int = MAX_SAMPLES,
        alpha: float = SMOOTHING_FACTOR,
        floor_ratio: float = RATE_FLOOR_RATIO,
        min_elapsed: float = MIN_ELAPSED_SECONDS,
    ):
        self.clock = clock
        self.window_seconds = window_seconds
        self.max_samples = max_samples
        self.alpha = alpha
        self.floor_ratio = floor_ratio
        self.min_elapsed = min_elapsed
        self.started_at = clock()
        self.samples: list[tuple[float, int]] = []

    def reset(self) -> None:
        self.started_at = self.clock()
        self.samples = []

    def record(self, processed: int, now: float | None = None) -> None:
        now = self.clock() if now is None else now
        self.samples.append((now, processed))
        cutoff = now - self.window_seconds
        self.samples = [sample for sample in self.samples if sample[0] >= cutoff]
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

    def smoothed_rate(self, overall_rate: float) -> float:
        ema = None
        for (t0, p0), (t1, p1) in zip(self.samples, self.samples[1:]):
            dt = t1 - t0
            dp = p1 - p0
            if dt <= 0 or dp <= 0:
                continue
            instant = dp / dt
            ema = instant if ema is None else self.alpha * instant + (1 - self.alpha) * ema
        rate = overall_rate if ema is None else ema
        return max(rate, overall_rate * self.floor_ratio)

    def estimate(self, processed: int, total: int, now: float | None = None) -> ProgressMetrics:
        """Rate and remaining seconds, or empty metrics when too early to tell."""
        now = self.clock() if now is None else now
        elapsed = now - self.started_at
        if elapsed < self.min_elapsed or processed <= 0 or total <= 0:
            return ProgressMetrics()
        self.record(processed, now)
        overall = processed / elapsed
        rate = self.smoothed_rate(overall)
        if rate <= 0:
            return ProgressMetrics()
        remaining = max(0, total - processed)
        return ProgressMetrics(seconds_remaining=math.ceil(remaining / rate), items_per_second=rate)


class ProgressTracker:
    """
    Per-entity progress and activity log of one import run.

    Invariant: for every entity ``created + mapped <= total``, and the
    aggregate processed count never decreases.
    """

    def __init__(
        self,
        estimator: ThroughputEstimator | None = None,
        update_interval: int = 500,
        min_interval_ms: int = 2000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.clock = clock
        self.estimator = estimator or ThroughputEstimator(clock=clock)
        self.update_interval = update_interval
        self.min_interval_ms = min_interval_ms
        self.entities: dict[str, EntityProgress] = {}
        self.activity_log: list[dict[str, Any]] = []
        self.processed_count = 0
        self.current_entity: str | None = None
        self._last_persisted_count = 0
        self._last_persisted_at = clock()

    @property
    def total_count(self) -> int:
        return sum(entry.total for entry in self.entities.values())

    def entry(self, entity: str) -> EntityProgress:
        if entity not in self.entities:
            self.entities[entity] = EntityProgress()
        return self.entities[entity]

    def initialize(self, entity: str, total: int) -> None:
        if total > 0:
            entry = self.entry(entity)
            entry.total = max(total, entry.processed)

    def increment(self, entity: str, created: int = 0, mapped: int = 0) -> None:
        entry = self.entry(entity)
        entry.created += created
        entry.mapped += mapped
        if entry.processed > entry.total:
            entry.total = entry.processed
        self.processed_count += created + mapped

    def decrement_total(self, entity: str, amount: int = 1) -> None:
        entry = self.entry(entity)
        entry.total = max(entry.processed, entry.total - amount)

    def record_summary(self, summary: EntitySummary) -> None:
        """Fold a finished transformer's summary into the counters and the log."""
        entry = self.entry(summary.entity)
        previous = entry.processed
        entry.created = max(entry.created, summary.created)
        entry.mapped = max(entry.mapped, summary.mapped)
        if entry.processed > previous and entry.processed > entry.total:
            entry.total = entry.processed
        entry.total = max(entry.processed, min(entry.total, summary.total) if summary.total else entry.total)
        self.processed_count += entry.processed - previous
        self.log("summary", summary.status(), entity=summary.entity, details=summary.details or None)

    def log(self, kind: str, message: str, **fields) -> None:
        entry = {"timestamp": utc_now().isoformat() + "Z", "type": kind, "message": message}
        entry.update({key: value for key, value in fields.items() if value is not None})
        self.activity_log.append(entry)
        if len(self.activity_log) > MAX_ACTIVITY_ENTRIES:
            self.activity_log = self.activity_log[-MAX_ACTIVITY_ENTRIES:]

    def status_message(self, entity: str) -> str:
        entry = self.entry(entity)
        label = format_entity_label(entity).lower()
        return f"Processing {label} imports ({entry.processed:,} / {entry.total:,} processed)"

    def due(self, entity: str) -> bool:
        """Whether enough work happened since the last persisted snapshot."""
        delta = self.processed_count - self._last_persisted_count
        if delta <= 0:
            return False
        if delta >= self.update_interval:
            return True
        if delta >= max(1, self.entry(entity).total // 50):
            return True
        return (self.clock() - self._last_persisted_at) * 1000 >= self.min_interval_ms

    def mark_persisted(self) -> None:
        self._last_persisted_count = self.processed_count
        self._last_persisted_at = self.clock()

    def metrics(self) -> ProgressMetrics:
        return self.estimator.estimate(self.processed_count, self.total_count)

    def entity_progress(self) -> dict[str, dict[str, int]]:
        return {entity: entry.to_dict() for entity, entry in self.entities.items()}
