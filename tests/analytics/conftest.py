"""
Pytest configuration and fixtures for analytics tests
"""

import pytest
import tempfile
import time
from pathlib import Path

from calltree.analytics.analytics_engine import AnalyticsEngine
from calltree.analytics.analytics_types import StoredTrace
from calltree.analytics.execution_tracer import (
    CacheOperation,
    CacheOperationRecord,
    ExecutionFlow,
    ExternalLookupRecord,
    ToolCallRecord,
)
from calltree.analytics.strategies import StaticResourceSampler
from config import OptimizationConfig


@pytest.fixture
def temp_storage_dir():
    """Temporary directory for trace storage"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def static_sampler():
    """Sampler reporting 100 MB / 40% memory and 10% CPU"""
    return StaticResourceSampler(
        memory_bytes=100 * 1024 * 1024,
        memory_fraction=0.4,
        cpu_percent=10.0,
    )


@pytest.fixture
def make_flow():
    """
    Build an ExecutionFlow directly

    Tool calls are (tool, execution_time_ms, success) tuples, cache
    operations are hit flags for "get" accesses, lookups are
    response times in ms.
    """
    counter = {"n": 0}

    def _make_flow(
        command="generate report",
        duration_ms=500.0,
        success=True,
        error_message=None,
        tools=(),
        cache_hits=(),
        lookups=(),
        started_at=None,
        trace_id=None,
    ):
        counter["n"] += 1
        started_at = time.time() if started_at is None else started_at
        return ExecutionFlow(
            trace_id=trace_id or f"trace_test{counter['n']:04d}",
            command=command,
            started_at=started_at,
            ended_at=started_at + duration_ms / 1000,
            duration_ms=duration_ms,
            success=success,
            error_message=error_message,
            tool_calls=tuple(
                ToolCallRecord(tool=tool, execution_time_ms=ms, success=ok, timestamp=started_at)
                for tool, ms, ok in tools
            ),
            external_lookups=tuple(
                ExternalLookupRecord(endpoint="context7", response_time_ms=ms, timestamp=started_at)
                for ms in lookups
            ),
            cache_operations=tuple(
                CacheOperationRecord(operation=CacheOperation.GET, key=f"key{i}", hit=hit, timestamp=started_at)
                for i, hit in enumerate(cache_hits)
            ),
        )

    return _make_flow


@pytest.fixture
def engine():
    """Engine without storage"""
    return AnalyticsEngine(config=OptimizationConfig())


@pytest.fixture
def make_stored_trace(make_flow, engine):
    """Build a StoredTrace with analytics computed by the engine"""

    def _make_stored_trace(stored_at=None, **flow_kwargs):
        flow = make_flow(**flow_kwargs)
        analytics = engine.process_trace(flow)
        return StoredTrace.from_flow(flow, analytics, stored_at=stored_at)

    return _make_stored_trace
