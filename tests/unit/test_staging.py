"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

import pytest

from tmtp.records import CaseRecord
from tmtp.staging import batch_size_for, prepare_row


@pytest.mark.unit
class TestPrepareRow:
    """Tests for moving large values out of the JSON payload."""

    def test_step_texts_get_their_own_columns(self):
        row = prepare_row(
            "job", "run_result_steps", 0, {"id": 1, "text1": "Open page", "text3": {"a": 1}}
        )

        assert row["text1"] == "Open page"
        assert row["text3"] == '{"a": 1}'
        assert row["row_data"] == {"id": 1}

    def test_automation_field_name_and_value(self):
        row = prepare_row(
            "job", "automation_run_test_fields", 3, {"test_id": 5, "name": "log", "value": [1, 2]}
        )

        assert row["field_name"] == "log"
        assert row["field_value"] == "[1, 2]"
        assert row["row_data"] == {"test_id": 5, "name": "log"}

    def test_other_datasets_are_untouched(self):
        payload = {"id": 1, "text1": "kept"}
        row = prepare_row("job", "repository_case_steps", 0, payload)

        assert row["row_data"] is payload
        assert row["text1"] is None

    def test_batch_sizes(self):
        assert batch_size_for("repository_case_steps") == 2000
        assert batch_size_for("projects") == 1000


@pytest.mark.unit
@pytest.mark.db
class TestStagingStore:
    """Tests for the staging store."""

    def test_put_and_get_in_row_order(self, staging):
        staging.put("job-1", "projects", [(1, {"id": 11}), (0, {"id": 10})])

        rows = staging.get("job-1", "projects")

        assert rows == [(0, {"id": 10}), (1, {"id": 11})]
        assert staging.count("job-1", "projects") == 2
        assert staging.count("job-2", "projects") == 0

    def test_put_nothing(self, staging):
        assert staging.put("job-1", "projects", []) == 0

    def test_step_texts_are_rehydrated(self, staging):
        staging.put("job-1", "run_result_steps", [(0, {"id": 1, "text1": "Open", "text2": "Done"})])

        assert staging.load_all("job-1", "run_result_steps") == [
            {"id": 1, "text1": "Open", "text2": "Done"}
        ]

    def test_automation_fields_are_rehydrated(self, staging):
        staging.put(
            "job-1", "automation_run_test_fields", [(0, {"test_id": 2, "name": "log", "value": "x"})]
        )

        assert staging.load_all("job-1", "automation_run_test_fields") == [
            {"test_id": 2, "name": "log", "value": "x"}
        ]

    def test_iter_batches_pages_by_row_index(self, staging):
        staging.put("job-1", "tags", [(index, {"id": index}) for index in range(5)])

        pages = list(staging.iter_batches("job-1", "tags", batch_size=2))

        assert [[index for index, _ in page] for page in pages] == [[0, 1], [2, 3], [4]]

    def test_iter_batches_exact_multiple(self, staging):
        staging.put("job-1", "tags", [(index, {"id": index}) for index in range(4)])

        pages = list(staging.iter_batches("job-1", "tags", batch_size=2))

        assert len(pages) == 2

    def test_iter_records(self, staging):
        staging.put("job-1", "repository_cases", [(0, {"id": "7", "name": "Login"})])

        (page,) = list(staging.iter_records("job-1", "repository_cases", CaseRecord))

        assert isinstance(page[0], CaseRecord)
        assert page[0].id == 7

    def test_dataset_names_and_delete(self, staging):
        staging.put("job-1", "tags", [(0, {"id": 1})])
        staging.put("job-1", "projects", [(0, {"id": 1})])
        staging.put("job-2", "tags", [(0, {"id": 1})])

        assert staging.dataset_names("job-1") == ["projects", "tags"]

        assert staging.delete("job-1", "tags") == 1
        assert staging.dataset_names("job-1") == ["projects"]

        staging.delete("job-1")
        assert staging.dataset_names("job-1") == []
        assert staging.dataset_names("job-2") == ["tags"]
