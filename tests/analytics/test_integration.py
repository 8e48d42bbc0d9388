"""
Unit tests for AnalyticsIntegration
"""

import json
import threading
import time
from unittest.mock import Mock, patch

import pytest

from calltree.analytics.exceptions import BackendUnavailableError
from calltree.analytics.integration import (
    AnalyticsIntegration,
    get_analytics_integration,
    reset_analytics_integration,
)
from calltree.analytics.trace_store import InMemoryTraceStorage
from config import AnalyticsConfig


def make_config(**sections):
    """Analytics config with memory storage and a slow tick"""
    data = {
        "storage": {"backend": "memory"},
        "realtime": {"processing_interval_seconds": 60},
    }
    data.update(sections)
    return AnalyticsConfig(**data)


@pytest.fixture
def integration(static_sampler):
    integration = AnalyticsIntegration(
        make_config(),
        storage=InMemoryTraceStorage(),
        resource_sampler=static_sampler,
    )
    integration.initialize()
    yield integration
    integration.stop()


class TestLifecycle:
    """Test initialize/stop"""

    def test_initialize(self, integration):
        """Test all components are built and running"""
        status = integration.get_analytics_status()

        assert status.initialized is True
        assert status.storage_available is True
        assert status.realtime_running is True
        assert integration.writer.is_running is True

    def test_initialize_idempotent(self, integration):
        engine = integration.engine

        integration.initialize()

        assert integration.engine is engine

    def test_degraded_without_storage(self, static_sampler):
        """Test storage failure leaves analytics running in memory"""
        storage = Mock()
        storage.initialize.side_effect = RuntimeError("cannot open database")
        integration = AnalyticsIntegration(make_config(), storage=storage, resource_sampler=static_sampler)
        integration.initialize()

        outcome = integration.execute("cmd", lambda tracer: "ok")
        status = integration.get_analytics_status()

        assert outcome.result == "ok"
        assert outcome.analytics is not None
        assert status.storage_available is False
        assert integration.writer is None
        with pytest.raises(BackendUnavailableError):
            integration.get_analytics_for_time_range(0, time.time())
        integration.stop()

    def test_realtime_disabled(self, static_sampler):
        integration = AnalyticsIntegration(
            make_config(realtime={"enabled": False}),
            storage=InMemoryTraceStorage(),
            resource_sampler=static_sampler,
        )
        integration.initialize()

        assert integration.get_analytics_status().realtime_running is False
        integration.stop()

    def test_stop(self, static_sampler):
        """Test stop shuts everything down"""
        integration = AnalyticsIntegration(make_config(), storage=InMemoryTraceStorage(), resource_sampler=static_sampler)
        integration.initialize()
        processor = integration.processor

        integration.stop()

        assert integration.is_initialized is False
        assert processor.is_running is False
        assert integration.get_analytics_status().storage_available is False


class TestExecute:
    """Test command execution under tracing"""

    def test_execute_returns_result_and_analytics(self, integration):
        """Test result passes through with analytics attached"""
        def executor(tracer):
            tracer.add_tool_call("search", {"q": "x"}, 120.0, True)
            return {"answer": 42}

        outcome = integration.execute("ask question", executor, options={"verbose": True})

        assert outcome.result == {"answer": 42}
        assert outcome.trace_id.startswith("trace_")
        assert outcome.analytics.trace_id == outcome.trace_id
        assert outcome.analytics.metrics.total_calls == 1
        assert integration.last_analytics == outcome.analytics
        assert integration.last_analytics is not outcome.analytics

    def test_execute_feeds_processor_and_storage(self, integration):
        """Test the trace reaches the rolling buffer and storage"""
        outcome = integration.execute("cmd", lambda tracer: None)
        integration.writer.flush(timeout=2.0)

        recent = integration.get_recent_traces()
        stored = integration.storage.get_traces()

        assert [t.id for t in recent] == [outcome.trace_id]
        assert [t.id for t in stored] == [outcome.trace_id]
        assert recent[0].stored_at == stored[0].stored_at

    def test_executor_exception_propagates(self, integration):
        """Test the executor's exception is re-raised unchanged"""
        error = ValueError("bad input")

        def executor(tracer):
            raise error

        with pytest.raises(ValueError) as exc_info:
            integration.execute("cmd", executor)

        assert exc_info.value is error
        recent = integration.get_recent_traces()
        assert recent[0].success is False
        assert recent[0].error_message == "bad input"
        assert recent[0].execution_flow.errors[0].error_type == "ValueError"
        assert [a.id for a in integration.get_active_alerts()] == ["error_occurred"]

    def test_caller_changes_do_not_reach_processor(self, integration):
        """Test mutating the returned analytics leaves live views unchanged"""
        outcome = integration.execute("cmd", lambda tracer: tracer.add_tool_call("search", {}, 10.0, True))

        outcome.analytics.metrics.tool_usage_distribution["injected"] = 999
        outcome.analytics.opportunities.clear()

        assert integration.get_usage_patterns() == []
        recent = integration.get_recent_traces()
        assert recent[0].analytics.metrics.tool_usage_distribution == {"search": 1}
        assert "injected" not in integration.last_analytics.metrics.tool_usage_distribution

    def test_unserializable_tool_result(self, integration):
        """Test read APIs work after a tool returns an uncopyable object"""
        def executor(tracer):
            tracer.add_tool_call("lock_tool", {}, 10.0, True, result=threading.Lock())

        integration.execute("cmd", executor)

        recent = integration.get_recent_traces(10)
        assert recent[0].execution_flow.tool_calls[0].result.startswith("<")

    def test_analytics_failure_does_not_break_command(self, integration):
        """Test an engine failure still returns the command result"""
        with patch.object(integration.engine, "process_trace", side_effect=RuntimeError("engine bug")):
            outcome = integration.execute("cmd", lambda tracer: "ok")

        assert outcome.result == "ok"
        assert outcome.analytics is None

    def test_trace_command_context_manager(self, integration):
        """Test the context manager traces the enclosed block"""
        with integration.trace_command("cmd", {"mode": "fast"}) as tracer:
            tracer.add_cache_operation("get", "k", 1.0, hit=True)

        recent = integration.get_recent_traces()
        assert recent[0].options == {"mode": "fast"}
        assert len(recent[0].execution_flow.cache_operations) == 1

    def test_trace_command_reraises(self, integration):
        with pytest.raises(KeyError):
            with integration.trace_command("cmd"):
                raise KeyError("missing")

        assert integration.get_recent_traces()[0].success is False

    def test_disabled_analytics(self, static_sampler):
        """Test commands run untraced when analytics is disabled"""
        integration = AnalyticsIntegration(
            make_config(enabled=False),
            storage=InMemoryTraceStorage(),
            resource_sampler=static_sampler,
        )

        outcome = integration.execute("cmd", lambda tracer: "ok")

        assert outcome.result == "ok"
        assert outcome.trace_id is None
        assert outcome.analytics is None
        integration.stop()

    def test_lazy_initialize(self, static_sampler):
        """Test execute initializes on first use"""
        integration = AnalyticsIntegration(make_config(), storage=InMemoryTraceStorage(), resource_sampler=static_sampler)

        integration.execute("cmd", lambda tracer: None)

        assert integration.is_initialized is True
        integration.stop()


class TestReadApis:
    """Test read APIs"""

    def test_defaults_before_initialize(self, static_sampler):
        """Test empty results before initialization"""
        integration = AnalyticsIntegration(make_config(), resource_sampler=static_sampler)

        assert integration.get_recent_analytics() == []
        assert integration.get_recent_traces() == []
        assert integration.get_live_metrics().health_score == 100
        assert integration.get_optimization_opportunities() == []
        assert integration.get_usage_patterns() == []
        assert integration.get_active_alerts() == []
        assert integration.resolve_alert("error_occurred") is False
        assert integration.get_performance_trends().response_time == []
        assert integration.get_trace("trace_x") is None
        assert integration.get_request_totals() == {"requests": 0, "errors": 0}
        with pytest.raises(BackendUnavailableError):
            integration.get_analytics_for_time_range(0, 1)

    def test_recent_analytics_from_storage(self, integration):
        """Test recent analytics come from storage, newest first"""
        first = integration.execute("one", lambda tracer: None)
        second = integration.execute("two", lambda tracer: None)
        integration.writer.flush(timeout=2.0)

        analytics = integration.get_recent_analytics(count=1)

        assert [a.trace_id for a in analytics] == [second.trace_id]
        assert first.trace_id != second.trace_id

    def test_opportunities_merged(self, integration):
        """Test storage findings and rolling-buffer findings are combined"""
        def executor(tracer):
            tracer.add_cache_operation("get", "k", 1.0, hit=False)
            raise RuntimeError("failed")

        with pytest.raises(RuntimeError):
            integration.execute("cmd", executor)
        integration.writer.flush(timeout=2.0)

        ids = [o.id for o in integration.get_optimization_opportunities()]

        assert ids == ["cache_optimization", "realtime_error_rate"]

    def test_time_range_report(self, integration):
        """Test aggregated analytics over stored traces"""
        start = time.time()
        integration.execute("one", lambda tracer: None)
        integration.execute("two", lambda tracer: None)
        integration.writer.flush(timeout=2.0)

        report = integration.get_analytics_for_time_range(start, time.time())

        assert report.trace_count == 2
        assert report.metrics.total_calls == 2

    def test_get_trace(self, integration):
        """Test lookup from the buffer and falling back to storage"""
        outcome = integration.execute("cmd", lambda tracer: None)
        integration.writer.flush(timeout=2.0)

        assert integration.get_trace(outcome.trace_id).id == outcome.trace_id
        assert integration.get_trace("trace_missing") is None

        with patch.object(integration.processor, "get_trace", return_value=None):
            stored = integration.get_trace(outcome.trace_id)
        assert stored.command == "cmd"

    def test_export_data(self, integration):
        """Test export of stored traces as JSON"""
        outcome = integration.execute("cmd", lambda tracer: None)
        integration.writer.flush(timeout=2.0)

        exported = json.loads(integration.export_data())

        assert [item["id"] for item in exported] == [outcome.trace_id]

    def test_export_without_storage(self, static_sampler):
        storage = Mock()
        storage.initialize.side_effect = RuntimeError("cannot open database")
        integration = AnalyticsIntegration(make_config(), storage=storage, resource_sampler=static_sampler)
        integration.initialize()

        with pytest.raises(BackendUnavailableError):
            integration.export_data()
        integration.stop()

    def test_request_totals(self, integration):
        """Test request and error counts from the processor"""
        def executor(tracer):
            raise RuntimeError("x")

        integration.execute("ok", lambda tracer: None)
        with pytest.raises(RuntimeError):
            integration.execute("bad", executor)

        assert integration.get_request_totals() == {"requests": 2, "errors": 1}

    def test_resolve_alert(self, integration):
        def executor(tracer):
            raise RuntimeError("x")

        with pytest.raises(RuntimeError):
            integration.execute("cmd", executor)

        assert integration.resolve_alert("error_occurred") is True
        assert integration.get_active_alerts() == []


class TestUpdateConfig:
    """Test runtime configuration changes"""

    def test_update_sampling_rate(self, integration):
        config = integration.update_config(performance={"sampling_rate": 0.5})

        assert config.performance.sampling_rate == 0.5
        assert config.performance.thresholds.response_time_ms == 1000.0
        assert integration.config is config

    def test_update_thresholds_restarts_processor(self, integration):
        """Test threshold changes reach the running processor"""
        integration.update_config(performance={"thresholds": {"response_time_ms": 50}})

        assert integration.processor.thresholds.response_time_ms == 50
        assert integration.processor.is_running is True

    def test_disable_realtime(self, integration):
        integration.update_config(realtime={"enabled": False})

        assert integration.processor.is_running is False

    def test_invalid_update_rejected(self, integration):
        """Test invalid values raise and keep the old config"""
        old = integration.config

        with pytest.raises(ValueError):
            integration.update_config(performance={"sampling_rate": 2.0})

        assert integration.config is old


class TestGlobalIntegration:
    """Test the process-wide instance"""

    def test_singleton(self):
        reset_analytics_integration()
        try:
            first = get_analytics_integration(make_config())
            second = get_analytics_integration()

            assert first is second
        finally:
            reset_analytics_integration()
