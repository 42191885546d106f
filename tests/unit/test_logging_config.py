"""
Unit tests for structured logging.

Tests cover the JSON formatter, extra context fields and the scoped
execution and batch ids.
"""

import asyncio
import io
import json
import logging

from controlfix.logging_config import (
    BatchLogContext,
    ExecutionLogContext,
    StructuredFormatter,
    get_batch_id,
    get_execution_id,
    log_with_context,
)


def _capture() -> tuple[logging.Logger, io.StringIO]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    logger = logging.getLogger("controlfix.tests.logging")
    logger.handlers = [handler]
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger, stream


class TestStructuredFormatter:
    """Tests for StructuredFormatter."""

    def test_context_fields_become_keys(self) -> None:
        """Test that log_with_context fields appear in the JSON line."""
        logger, stream = _capture()

        log_with_context(logger, "info", "Strategy applied", finding_id="f-1", attempt=2)

        entry = json.loads(stream.getvalue())
        assert entry["message"] == "Strategy applied"
        assert entry["level"] == "INFO"
        assert entry["finding_id"] == "f-1"
        assert entry["attempt"] == 2
        assert entry["execution_id"] is None

    def test_scoped_ids(self) -> None:
        """Test that execution and batch ids are attached inside their blocks."""
        logger, stream = _capture()

        with BatchLogContext("batch-1"), ExecutionLogContext("exec-1"):
            logger.warning("inside")
        logger.warning("outside")

        inside, outside = (json.loads(line) for line in stream.getvalue().splitlines())
        assert inside["batch_id"] == "batch-1"
        assert inside["execution_id"] == "exec-1"
        assert outside["batch_id"] is None
        assert outside["execution_id"] is None


class TestLogContext:
    """Tests for the context-variable scoping."""

    async def test_ids_are_task_local(self) -> None:
        """Test that concurrent tasks do not see each other's execution id."""

        async def worker(execution_id: str) -> str | None:
            with ExecutionLogContext(execution_id):
                await asyncio.sleep(0)
                return get_execution_id()

        results = await asyncio.gather(worker("a"), worker("b"))

        assert results == ["a", "b"]
        assert get_execution_id() is None

    def test_context_restored_after_error(self) -> None:
        """Test that the previous id is restored when the block raises."""
        try:
            with BatchLogContext("batch-9"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass

        assert get_batch_id() is None
