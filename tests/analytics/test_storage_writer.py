"""
Unit tests for AsyncTraceWriter
"""

import threading
from unittest.mock import Mock

import pytest

from calltree.analytics.storage_writer import AsyncTraceWriter
from calltree.analytics.trace_store import InMemoryTraceStorage


@pytest.fixture
def memory_storage():
    storage = InMemoryTraceStorage()
    storage.initialize()
    return storage


class TestAsyncTraceWriter:
    """Test queued persistence"""

    def test_submit_and_flush(self, memory_storage, engine, make_flow):
        """Test submitted traces reach storage"""
        writer = AsyncTraceWriter(memory_storage)
        writer.start()
        flow = make_flow()

        assert writer.submit(flow, engine.process_trace(flow), stored_at=123.0) is True
        assert writer.flush(timeout=2.0) is True

        traces = memory_storage.get_traces()
        assert [t.id for t in traces] == [flow.trace_id]
        assert traces[0].stored_at == 123.0
        assert writer.stats["written"] == 1
        writer.stop()

    def test_submit_when_stopped(self, memory_storage, engine, make_flow):
        """Test submissions are dropped when the writer is not running"""
        writer = AsyncTraceWriter(memory_storage)
        flow = make_flow()

        assert writer.submit(flow, engine.process_trace(flow)) is False
        assert writer.stats["dropped"] == 1
        assert memory_storage.get_traces() == []

    def test_queue_full_drops(self, engine, make_flow):
        """Test submissions beyond the queue size are dropped"""
        release = threading.Event()
        storage = Mock()
        storage.store_trace.side_effect = lambda *args, **kwargs: release.wait(2.0)
        writer = AsyncTraceWriter(storage, max_queue_size=1)
        writer.start()

        results = []
        for _ in range(5):
            flow = make_flow()
            results.append(writer.submit(flow, engine.process_trace(flow)))

        release.set()
        writer.stop()

        assert results[0] is True
        assert False in results
        assert writer.stats["dropped"] == results.count(False)

    def test_storage_failure_counted(self, engine, make_flow):
        """Test storage errors are counted, not raised"""
        storage = Mock()
        storage.store_trace.side_effect = RuntimeError("disk full")
        writer = AsyncTraceWriter(storage)
        writer.start()
        flow = make_flow()

        writer.submit(flow, engine.process_trace(flow))
        writer.flush(timeout=2.0)

        assert writer.stats["failed"] == 1
        assert writer.stats["written"] == 0
        writer.stop()

    def test_stop_drains_pending(self, memory_storage, engine, make_flow):
        """Test stop writes everything submitted before it"""
        writer = AsyncTraceWriter(memory_storage)
        writer.start()
        for _ in range(10):
            flow = make_flow()
            writer.submit(flow, engine.process_trace(flow))

        writer.stop()

        assert len(memory_storage.get_traces()) == 10
        assert writer.is_running is False

    def test_flush_timeout_leaves_no_threads(self, engine, make_flow):
        """Test a timed-out flush returns False without starting threads"""
        release = threading.Event()
        storage = Mock()
        storage.store_trace.side_effect = lambda *args, **kwargs: release.wait(2.0)
        writer = AsyncTraceWriter(storage)
        writer.start()
        flow = make_flow()
        writer.submit(flow, engine.process_trace(flow))
        threads_before = threading.active_count()

        flushed = [writer.flush(timeout=0.05) for _ in range(5)]

        assert flushed == [False] * 5
        assert threading.active_count() == threads_before
        assert writer.stats["pending"] == 1

        release.set()
        assert writer.flush(timeout=2.0) is True
        assert writer.stats["pending"] == 0
        writer.stop()
