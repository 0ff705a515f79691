"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Tests for the contextual logging module.

These tests verify redaction, correlation IDs, the structured logger's
``context`` keyword and the error tracker used by import runs.
"""

import json
import logging

import pytest

from tmtp.core.logging import (
    ErrorTracker,
    JSONFormatter,
    LogRedactor,
    StructuredLogger,
    correlation_id,
    correlation_manager,
    get_logger,
    log_operation,
)


class ListHandler(logging.Handler):
    """Keeps emitted records in a list."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured():
    """A structured logger outside the ``tmtp`` hierarchy with a list handler attached."""
    logger = get_logger("tmtp_tests.contextual")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    handler = ListHandler()
    logger.addHandler(handler)
    yield logger, handler
    logger.removeHandler(handler)


@pytest.mark.unit
class TestLogRedactor:
    """Tests for the LogRedactor class."""

    def test_redact_password(self):
        """Test that password values are redacted and the key is kept."""
        redactor = LogRedactor()
        message = redactor.redact("Creating user with password=hunter2")

        assert "hunter2" not in message
        assert "password: [REDACTED]" in message

    def test_redact_email(self):
        """Test that email addresses are redacted."""
        redactor = LogRedactor()
        assert redactor.redact("User jane.doe@example.com created") == "User [REDACTED] created"

    def test_redact_context(self):
        """Test that password keys are dropped and string values are redacted."""
        redactor = LogRedactor()
        cleaned = redactor.redact_context(
            {"password": "hunter2", "email": "a@b.io", "source_id": 12}
        )

        assert cleaned == {"password": "[REDACTED]", "email": "[REDACTED]", "source_id": 12}


@pytest.mark.unit
class TestCorrelationId:
    """Tests for correlation id handling."""

    def test_correlation_id_block_restores_previous(self):
        """Test that a nested correlation id is restored on exit."""
        correlation_manager.clear_correlation_id()
        with correlation_id("job-1") as outer:
            assert outer == "job-1"
            with correlation_id("job-2"):
                assert correlation_manager.get_correlation_id() == "job-2"
            assert correlation_manager.get_correlation_id() == "job-1"

        assert not correlation_manager.has_correlation_id()

    def test_generated_correlation_id(self):
        with correlation_id() as value:
            assert value.startswith("tmtp-")


@pytest.mark.unit
class TestStructuredLogger:
    """Tests for the structured logger."""

    def test_get_logger_returns_structured_logger(self):
        assert isinstance(get_logger("tmtp_tests.structured"), StructuredLogger)

    def test_context_is_attached_and_redacted(self, captured):
        """Test that the context keyword ends up on the record, redacted."""
        logger, handler = captured

        with correlation_id("job-42"):
            logger.warning("Skipping case", context={"case_id": 7, "password": "x"})

        record = handler.records[-1]
        assert record.getMessage() == "Skipping case"
        assert record.context_data == {"case_id": 7, "password": "[REDACTED]"}
        assert record.correlation_id == "job-42"

    def test_json_formatter(self, captured):
        """Test that the JSON formatter emits the context and correlation id."""
        logger, handler = captured

        with correlation_id("job-7"):
            logger.info("Import started", context={"entity": "projects"})

        payload = json.loads(JSONFormatter().format(handler.records[-1]))
        assert payload["message"] == "Import started"
        assert payload["level"] == "INFO"
        assert payload["correlation_id"] == "job-7"
        assert payload["context"] == {"entity": "projects"}


@pytest.mark.unit
class TestLogOperation:
    """Tests for the log_operation context manager."""

    def test_logs_start_and_completion(self, captured):
        logger, handler = captured

        with log_operation(logger, "reference resolution", context={"job_id": "j1"}) as context:
            context["resolved"] = 3

        messages = [record.getMessage() for record in handler.records]
        assert messages[0] == "Starting reference resolution"
        assert messages[-1].startswith("Completed reference resolution in")
        assert handler.records[-1].context_data["resolved"] == 3

    def test_logs_failure_and_reraises(self, captured):
        """Test that a failing operation is logged with its error and re-raised."""
        logger, handler = captured

        with pytest.raises(RuntimeError, match="boom"):
            with log_operation(logger, "import"):
                raise RuntimeError("boom")

        failure = handler.records[-1]
        assert failure.levelno == logging.ERROR
        assert failure.getMessage().startswith("Failed import after")
        assert failure.context_data["error_type"] == "RuntimeError"


@pytest.mark.unit
class TestErrorTracker:
    """Tests for the ErrorTracker class."""

    def test_add_warning_counts_by_category(self, captured):
        logger, handler = captured
        tracker = ErrorTracker(logger)

        tracker.add_warning("repository_cases", "Skipping case", {"case_id": 1})
        tracker.add_warning("repository_cases", "Skipping case", {"case_id": 2})
        tracker.add_warning("test_runs", "Skipping run", log=False)

        assert tracker.total == 3
        assert tracker.has_errors()
        assert tracker.counts == {"repository_cases": 2, "test_runs": 1}
        assert len(handler.records) == 2

    def test_samples_are_bounded(self, captured):
        """Test that only the first samples are kept while counts keep growing."""
        logger, _ = captured
        tracker = ErrorTracker(logger, max_samples=2)

        for index in range(5):
            tracker.add_warning("issues", f"Problem {index}", log=False)

        assert tracker.total == 5
        assert [entry["message"] for entry in tracker.errors] == ["Problem 0", "Problem 1"]
