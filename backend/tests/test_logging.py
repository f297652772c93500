"""
Tests for log context binding.

Run: pytest backend/tests/test_logging.py -v
"""
from __future__ import annotations

import pytest
import structlog

from shared.utils.logging import bound_context, in_sync_run, sync_run_context


def test_bound_context_is_scoped():
    with bound_context(request_id="abc"):
        assert structlog.contextvars.get_contextvars()["request_id"] == "abc"
    assert "request_id" not in structlog.contextvars.get_contextvars()


def test_sync_run_context_tags_kind_and_run():
    with sync_run_context("range") as run_id:
        ctx = structlog.contextvars.get_contextvars()
        assert ctx["sync_kind"] == "range"
        assert ctx["sync_run"] == run_id
        assert len(run_id) == 8
    assert "sync_run" not in structlog.contextvars.get_contextvars()


@pytest.mark.asyncio
async def test_decorated_coroutine_runs_inside_context():
    @in_sync_run("resync")
    async def work(x: int) -> tuple[int, dict]:
        return x * 2, dict(structlog.contextvars.get_contextvars())

    doubled, ctx = await work(21)

    assert doubled == 42
    assert ctx["sync_kind"] == "resync"
    assert "sync_kind" not in structlog.contextvars.get_contextvars()
