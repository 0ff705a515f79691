"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

import pytest

from tmtp.progress import (
    MAX_ACTIVITY_ENTRIES,
    EntitySummary,
    ProgressTracker,
    ThroughputEstimator,
    format_entity_label,
    format_rate,
)


def frozen_clock():
    return 0.0


@pytest.mark.unit
class TestLabels:
    """Tests for entity labels and rates."""

    def test_format_entity_label(self):
        assert format_entity_label("repository_cases") == "Repository Cases"
        assert format_entity_label("test_run_step_results") == "Step Results"
        assert format_entity_label("milestone_types") == "Milestone Types"

    def test_format_rate(self):
        assert format_rate(4) == "4.0 items/sec"
        assert format_rate(0.5) == "30.0 items/min"

    def test_summary_status(self):
        summary = EntitySummary("tags", total=4, created=3, mapped=1)
        assert summary.status() == "Tags: 4 processed, 3 created, 1 mapped"


@pytest.mark.unit
class TestThroughputEstimator:
    """Tests for the smoothed completion estimate."""

    def test_too_early_to_estimate(self):
        estimator = ThroughputEstimator(clock=frozen_clock)

        metrics = estimator.estimate(5, 100, now=1)

        assert metrics.seconds_remaining is None
        assert metrics.estimated_time_remaining is None
        assert metrics.processing_rate is None

    def test_first_estimate_uses_overall_rate(self):
        estimator = ThroughputEstimator(clock=frozen_clock)

        metrics = estimator.estimate(20, 100, now=10)

        assert metrics.seconds_remaining == 40
        assert metrics.estimated_time_remaining == "40"

    def test_smoothed_rate_follows_recent_throughput(self):
        """Test that the rate between samples outweighs the overall rate."""
        estimator = ThroughputEstimator(clock=frozen_clock)
        estimator.estimate(20, 100, now=10)

        metrics = estimator.estimate(60, 100, now=20)

        assert metrics.items_per_second == pytest.approx(4.0)
        assert metrics.seconds_remaining == 10
        assert metrics.processing_rate == "4.0 items/sec"

    def test_nothing_processed(self):
        estimator = ThroughputEstimator(clock=frozen_clock)
        assert estimator.estimate(0, 100, now=30).seconds_remaining is None


@pytest.mark.unit
class TestProgressTracker:
    """Tests for per-entity progress accounting."""

    def test_increment_and_status_message(self):
        tracker = ProgressTracker(clock=frozen_clock)
        tracker.initialize("repository_cases", 1200)

        tracker.increment("repository_cases", created=1000, mapped=2)

        assert tracker.processed_count == 1002
        assert (
            tracker.status_message("repository_cases")
            == "Processing repository cases imports (1,002 / 1,200 processed)"
        )

    def test_total_never_drops_below_processed(self):
        """Test that created plus mapped never exceeds the total."""
        tracker = ProgressTracker(clock=frozen_clock)
        tracker.initialize("tags", 10)
        tracker.increment("tags", created=5)

        tracker.decrement_total("tags", 10)
        assert tracker.entity_progress()["tags"] == {"total": 5, "created": 5, "mapped": 0}

        tracker.increment("tags", created=2)
        assert tracker.entity_progress()["tags"]["total"] == 7

    def test_due_after_interval(self):
        tracker = ProgressTracker(update_interval=100, min_interval_ms=10_000, clock=frozen_clock)
        tracker.initialize("repository_cases", 1000)

        tracker.increment("repository_cases", created=5)
        assert not tracker.due("repository_cases")

        tracker.increment("repository_cases", created=15)
        assert tracker.due("repository_cases")

        tracker.mark_persisted()
        assert not tracker.due("repository_cases")

    def test_record_summary_logs_status(self):
        tracker = ProgressTracker(clock=frozen_clock)

        tracker.record_summary(EntitySummary("tags", total=4, created=3, mapped=1))

        assert tracker.processed_count == 4
        entry = tracker.activity_log[-1]
        assert entry["type"] == "summary"
        assert entry["entity"] == "tags"
        assert entry["message"] == "Tags: 4 processed, 3 created, 1 mapped"
        assert "details" not in entry

    def test_activity_log_is_bounded(self):
        tracker = ProgressTracker(clock=frozen_clock)

        for index in range(MAX_ACTIVITY_ENTRIES + 5):
            tracker.log("info", f"entry {index}")

        assert len(tracker.activity_log) == MAX_ACTIVITY_ENTRIES
        assert tracker.activity_log[0]["message"] == "entry 5"
