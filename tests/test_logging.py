"""Tests for structured logging helpers."""

import io
import json
import logging

import pytest

from memdock.logging_config import (
    StructuredFormatter,
    configure_logging,
    get_request_id,
    with_request_id,
)


def test_structured_formatter_emits_json():
    record = logging.LogRecord("memdock.client", logging.INFO, __file__, 1, "Synced %d", (3,), None)
    record.duration_ms = 1.5
    record.operation = "sync_local_cache"

    data = json.loads(StructuredFormatter().format(record))
    assert data["message"] == "Synced 3"
    assert data["level"] == "INFO"
    assert data["logger"] == "memdock.client"
    assert data["duration_ms"] == 1.5
    assert data["operation"] == "sync_local_cache"


@pytest.mark.asyncio
async def test_with_request_id_scopes_id_and_logs_duration():
    stream = io.StringIO()
    configure_logging("DEBUG", structured=True, stream=stream)
    seen = []

    @with_request_id
    async def operation():
        seen.append(get_request_id())
        return "done"

    try:
        assert await operation() == "done"
    finally:
        configure_logging("WARNING")

    assert seen[0] and len(seen[0]) == 8
    assert get_request_id() is None

    lines = [json.loads(line) for line in stream.getvalue().splitlines()]
    completed = [line for line in lines if line.get("operation") == "operation"]
    assert completed[0]["request_id"] == seen[0]
    assert "duration_ms" in completed[0]
