"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Tests for the streaming export analyzer.

Bundles are written to the test's temporary directory and analyzed into an
in-memory staging store.
"""

import io
import json

import ijson
import pytest

from tmtp.analyzer import (
    MAX_SAMPLE_ARRAY_ITEMS,
    MAX_SAMPLE_STRING_LENGTH,
    ByteProgressTracker,
    ExportAnalyzer,
    sanitize_sample_value,
)
from tmtp.errors import AnalysisAborted


def mixed_layout_bundle():
    """Top-level and container datasets, a snapshot repository and attachments."""
    return {
        "meta": {"exported_at": "2025-05-01 10:00:00", "rows": [{"id": 1}]},
        "projects": {"columns": ["id", "name"], "data": [{"id": 1, "name": "Web"}]},
        "datasets": {
            "repositories": {
                "rows": [
                    {"id": 1, "project_id": 1, "is_snapshot": 0},
                    {"id": 2, "project_id": 1, "is_snapshot": 1},
                ]
            },
            "repository_cases": {
                "schema": {"id": "integer"},
                "rows": [
                    {"id": 10, "repo_id": 1, "name": "Login"},
                    {"id": 11, "repo_id": 2, "name": "Login (snapshot)"},
                ],
            },
        },
        "attachments": {"data": [{"id": 1, "file": "a.png"}]},
    }


@pytest.fixture
def analyzer(staging):
    return ExportAnalyzer(staging, staging_batch_size=1, sample_row_limit=5)


@pytest.mark.unit
@pytest.mark.db
class TestExportAnalyzer:
    """Tests for the ExportAnalyzer class."""

    def test_discovers_datasets_in_both_layouts(self, analyzer, tmp_path):
        """Test that top-level and container datasets are found and counted."""
        path = tmp_path / "export.json"
        path.write_text(json.dumps(mixed_layout_bundle()), encoding="utf-8")

        summary = analyzer.analyze(path, "job-1")

        assert set(summary.datasets) == {
            "projects",
            "repositories",
            "repository_cases",
            "attachments",
        }
        assert summary.total_rows == 6
        assert summary.datasets["repositories"].row_count == 2
        assert summary.datasets["projects"].schema == ["id", "name"]
        assert summary.datasets["repository_cases"].schema == {"id": "integer"}
        assert summary.file_size_bytes == path.stat().st_size
        assert summary.meta["total_datasets"] == 4

    def test_snapshots_and_attachments_are_not_staged(self, analyzer, staging, tmp_path):
        path = tmp_path / "export.json"
        path.write_text(json.dumps(mixed_layout_bundle()), encoding="utf-8")

        analyzer.analyze(path, "job-1")

        assert staging.load_all("job-1", "repositories") == [
            {"id": 1, "project_id": 1, "is_snapshot": 0}
        ]
        assert [row["id"] for row in staging.load_all("job-1", "repository_cases")] == [10]
        assert staging.count("job-1", "attachments") == 0
        assert staging.get("job-1", "projects") == [(0, {"id": 1, "name": "Web"})]

    def test_sample_rows(self, staging, tmp_path):
        path = tmp_path / "export.json"
        path.write_text(
            json.dumps({"tags": {"data": [{"id": index} for index in range(4)]}}), encoding="utf-8"
        )

        summary = ExportAnalyzer(staging, sample_row_limit=2).analyze(path, "job-1")

        assert summary.datasets["tags"].sample_rows == [{"id": 0}, {"id": 1}]
        assert staging.count("job-1", "tags") == 4

    def test_progress_reaches_one_hundred_percent(self, analyzer, tmp_path):
        path = tmp_path / "export.json"
        path.write_text(json.dumps(mixed_layout_bundle()), encoding="utf-8")
        calls = []

        analyzer.analyze(path, "job-1", on_progress=lambda *args: calls.append(args))

        bytes_read, total_bytes, percentage, _ = calls[-1]
        assert percentage == 100
        assert bytes_read == total_bytes

    def test_stream_source(self, analyzer, staging):
        payload = json.dumps({"tags": {"data": [{"id": 5, "name": "smoke"}]}}).encode("utf-8")

        summary = analyzer.analyze(io.BytesIO(payload), "job-1", total_bytes=len(payload))

        assert summary.total_rows == 1
        assert staging.load_all("job-1", "tags") == [{"id": 5, "name": "smoke"}]

    def test_dataset_callback_runs_for_each_dataset(self, analyzer, tmp_path):
        path = tmp_path / "export.json"
        path.write_text(json.dumps(mixed_layout_bundle()), encoding="utf-8")
        completed = []

        analyzer.analyze(path, "job-1", on_dataset_complete=lambda dataset: completed.append(dataset.name))

        assert sorted(completed) == ["attachments", "projects", "repositories", "repository_cases"]

    def test_abort_stops_analysis(self, analyzer, staging, tmp_path):
        """Test that an abort request stops the run and keeps what was staged."""
        path = tmp_path / "export.json"
        path.write_text(
            json.dumps({"tags": {"data": [{"id": index} for index in range(10)]}}), encoding="utf-8"
        )
        polls = {"count": 0}

        def should_abort():
            polls["count"] += 1
            return polls["count"] > 3

        with pytest.raises(AnalysisAborted):
            analyzer.analyze(path, "job-1", should_abort=should_abort)

        assert staging.count("job-1", "tags") == 3

    def test_invalid_json(self, analyzer, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text('{"tags": {"data": [{"id": 1}, ', encoding="utf-8")

        with pytest.raises(ijson.JSONError):
            analyzer.analyze(path, "job-1")


@pytest.mark.unit
class TestSampleSanitizing:
    """Tests for bounding sample rows."""

    def test_long_strings_are_cut(self):
        value = sanitize_sample_value("x" * (MAX_SAMPLE_STRING_LENGTH + 5))

        assert value.startswith("x" * MAX_SAMPLE_STRING_LENGTH)
        assert value.endswith("[5 more characters]")

    def test_long_lists_are_cut(self):
        value = sanitize_sample_value(list(range(MAX_SAMPLE_ARRAY_ITEMS + 3)))

        assert len(value) == MAX_SAMPLE_ARRAY_ITEMS + 1
        assert value[-1] == "[3 more items]"

    def test_wide_objects_are_cut(self):
        value = sanitize_sample_value({f"k{index}": index for index in range(25)})

        assert len(value) == 21
        assert value["__truncated_keys__"] == "5 more keys"

    def test_deep_values_are_cut(self):
        value = sanitize_sample_value({"a": {"b": {"c": {"d": {"e": 1}}}}})
        assert value == {"a": {"b": {"c": {"d": "[truncated depth]"}}}}


@pytest.mark.unit
class TestByteProgressTracker:
    """Tests for byte-based read progress."""

    def test_reports_only_when_percentage_advances(self):
        calls = []
        tracker = ByteProgressTracker(1000, lambda *args: calls.append(args), clock=lambda: 0.0)

        tracker.advance(5)
        tracker.advance(3)
        tracker.advance(500)

        assert [call[2] for call in calls] == [0, 50]

    def test_eta_after_warmup(self):
        now = {"value": 0.0}
        calls = []
        tracker = ByteProgressTracker(
            1000, lambda *args: calls.append(args), clock=lambda: now["value"]
        )

        now["value"] = 10.0
        tracker.advance(250)

        assert calls[-1] == (250, 1000, 25, 30)
