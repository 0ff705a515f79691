"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Durable staging store for raw export rows.

The analyzer writes every row of the bundle here once, keyed by
``(job_id, dataset_name, row_index)``; the importer pages through it by row
index so no dataset has to fit in memory. Step texts of ``run_result_steps``
and the name and value of ``automation_run_test_fields`` are moved out of the
JSON payload into their own columns when staged, and moved back when read.
"""

import json
from collections.abc import Iterable, Iterator
from typing import Any

from sqlalchemy import delete, func, insert, select

from tmtp.core.db_manager import DatabaseManager
from tmtp.core.db_models import StagedRow
from tmtp.core.logging import get_logger
from tmtp.records import SourceRecord

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 1000

# Page sizes when reading a dataset back
DATASET_BATCH_SIZES = {
    "repository_cases": 500,
    "repository_case_steps": 2000,
    "repository_case_values": 2000,
    "run_tests": 500,
    "run_results": 2000,
    "run_result_steps": 500,
    "automation_cases": 500,
    "automation_runs": 500,
    "automation_run_tests": 2000,
    "automation_run_tags": 500,
    "automation_run_test_fields": 100,
    "session_values": 2000,
}

STEP_TEXT_COLUMNS = ("text1", "text2", "text3", "text4")

StagedPayload = tuple[int, dict[str, Any]]


def batch_size_for(dataset_name: str) -> int:
    return DATASET_BATCH_SIZES.get(dataset_name, DEFAULT_BATCH_SIZE)


def _text_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value)


def prepare_row(job_id: str, dataset_name: str, row_index: int, payload: Any) -> dict[str, Any]:
    """Build the column values for one staged row."""
    row: dict[str, Any] = {
        "job_id": job_id,
        "dataset_name": dataset_name,
        "row_index": row_index,
        "row_data": payload,
        "field_name": None,
        "field_value": None,
        "text1": None,
        "text2": None,
        "text3": None,
        "text4": None,
        "processed": False,
    }
    if not isinstance(payload, dict):
        return row

    if dataset_name == "automation_run_test_fields":
        data = dict(payload)
        if "value" in data:
            row["field_value"] = _text_value(data.pop("value"))
        if isinstance(data.get("name"), str):
            row["field_name"] = data["name"]
        row["row_data"] = data
    elif dataset_name == "run_result_steps":
        data = dict(payload)
        for column in STEP_TEXT_COLUMNS:
            if column in data:
                row[column] = _text_value(data.pop(column))
        row["row_data"] = data

    return row


def rehydrate_row(row: StagedRow) -> dict[str, Any]:
    """Return the payload with denormalized columns folded back in."""
    payload = dict(row.row_data) if isinstance(row.row_data, dict) else {"value": row.row_data}
    for column in STEP_TEXT_COLUMNS:
        value = getattr(row, column)
        if value is not None and column not in payload:
            payload[column] = value
    if row.field_name is not None and "name" not in payload:
        payload["name"] = row.field_name
    if row.field_value is not None and "value" not in payload:
        payload["value"] = row.field_value
    return payload


class StagingStore:
    """Keyed row store backed by the ``import_staging`` table."""

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def put(self, job_id: str, dataset_name: str, rows: Iterable[StagedPayload]) -> int:
        """
        Stage a batch of rows in one transaction.

        Args:
        ----
            job_id: Import job the rows belong to
            dataset_name: Dataset the rows were read from
            rows: ``(row_index, payload)`` pairs

        Returns:
        -------
            Number of rows written

        """
        values = [prepare_row(job_id, dataset_name, index, payload) for index, payload in rows]
        if not values:
            return 0
        with self.db_manager.get_session() as session:
            session.execute(insert(StagedRow), values)
        logger.debug(
            "Staged rows",
            context={"job_id": job_id, "dataset": dataset_name, "rows": len(values)},
        )
        return len(values)

    def get(
        self, job_id: str, dataset_name: str, offset: int = 0, limit: int | None = None
    ) -> list[StagedPayload]:
        """Rows of a dataset in row index order."""
        query = (
            select(StagedRow)
            .where(StagedRow.job_id == job_id, StagedRow.dataset_name == dataset_name)
            .order_by(StagedRow.row_index)
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        with self.db_manager.get_session() as session:
            return [(row.row_index, rehydrate_row(row)) for row in session.scalars(query)]

    def count(self, job_id: str, dataset_name: str) -> int:
        query = select(func.count()).select_from(StagedRow).where(
            StagedRow.job_id == job_id, StagedRow.dataset_name == dataset_name
        )
        with self.db_manager.get_session() as session:
            return session.execute(query).scalar_one()

    def delete(self, job_id: str, dataset_name: str | None = None) -> int:
        """Remove the staged rows of a job, or of one of its datasets."""
        statement = delete(StagedRow).where(StagedRow.job_id == job_id)
        if dataset_name is not None:
            statement = statement.where(StagedRow.dataset_name == dataset_name)
        with self.db_manager.get_session() as session:
            result = session.execute(statement)
            deleted = result.rowcount or 0
        return deleted

    def dataset_names(self, job_id: str) -> list[str]:
        query = (
            select(StagedRow.dataset_name)
            .where(StagedRow.job_id == job_id)
            .distinct()
            .order_by(StagedRow.dataset_name)
        )
        with self.db_manager.get_session() as session:
            return list(session.scalars(query))

    def iter_batches(
        self, job_id: str, dataset_name: str, batch_size: int | None = None
    ) -> Iterator[list[StagedPayload]]:
        """
        Page through a dataset by row index.

        Each page is read in its own short session that is closed before the
        page is yielded, so callers may open their own transactions per page.
        """
        size = batch_size or batch_size_for(dataset_name)
        last_index = -1
        while True:
            query = (
                select(StagedRow)
                .where(
                    StagedRow.job_id == job_id,
                    StagedRow.dataset_name == dataset_name,
                    StagedRow.row_index > last_index,
                )
                .order_by(StagedRow.row_index)
                .limit(size)
            )
            with self.db_manager.get_session() as session:
                page = [(row.row_index, rehydrate_row(row)) for row in session.scalars(query)]
            if not page:
                return
            last_index = page[-1][0]
            yield page
            if len(page) < size:
                return

    def load_all(self, job_id: str, dataset_name: str) -> list[dict[str, Any]]:
        """Load a small reference dataset completely."""
        return [payload for _, payload in self.get(job_id, dataset_name)]

    def iter_records(
        self,
        job_id: str,
        dataset_name: str,
        record_type: type[SourceRecord],
        batch_size: int | None = None,
    ) -> Iterator[list[SourceRecord]]:
        """Like ``iter_batches`` but yields pages of typed records."""
        for page in self.iter_batches(job_id, dataset_name, batch_size):
            yield [record_type.model_validate(payload) for _, payload in page]
