"""
Unit tests for ExecutionTracer
"""

import copy
import threading

import pytest

from calltree.analytics.execution_tracer import (
    CacheOperation,
    ExecutionFlow,
    ExecutionTracer,
)
from calltree.analytics.strategies import StaticResourceSampler


class TestTraceLifecycle:
    """Test start/end of a trace"""

    def test_start_trace_returns_id(self, static_sampler):
        """Test trace id format and active state"""
        tracer = ExecutionTracer(resource_sampler=static_sampler)

        trace_id = tracer.start_trace("generate report", {"format": "md"})

        assert trace_id is not None
        assert trace_id.startswith("trace_")
        assert tracer.is_active is True
        assert tracer.trace_id == trace_id

    def test_end_trace_builds_flow(self, static_sampler):
        """Test the completed flow carries the command and records"""
        tracer = ExecutionTracer(resource_sampler=static_sampler)
        trace_id = tracer.start_trace("generate report", {"format": "md"}, {"user": "u1"})
        tracer.add_tool_call("search", {"q": "x"}, 120.0, True)

        flow = tracer.end_trace(success=True)

        assert isinstance(flow, ExecutionFlow)
        assert flow.trace_id == trace_id
        assert flow.command == "generate report"
        assert flow.options == {"format": "md"}
        assert flow.context == {"user": "u1"}
        assert len(flow.tool_calls) == 1
        assert flow.duration_ms >= 0
        assert flow.ended_at >= flow.started_at
        assert tracer.is_active is False

    def test_end_trace_with_reported_duration(self, static_sampler):
        """Test caller-reported duration wins over the measured one"""
        tracer = ExecutionTracer(resource_sampler=static_sampler)
        tracer.start_trace("cmd")

        flow = tracer.end_trace(success=False, error_message="boom", duration_ms=250.0)

        assert flow.duration_ms == 250.0
        assert flow.success is False
        assert flow.error_message == "boom"

    def test_end_trace_without_start(self):
        """Test end_trace is a no-op when nothing is active"""
        tracer = ExecutionTracer(resource_sampler=StaticResourceSampler())

        assert tracer.end_trace() is None

    def test_memory_samples_on_end(self, static_sampler):
        """Test peak memory and delta samples are emitted"""
        tracer = ExecutionTracer(resource_sampler=static_sampler)
        tracer.start_trace("cmd")

        flow = tracer.end_trace()

        names = [sample.name for sample in flow.performance_samples]
        assert "memory_peak_usage" in names
        assert "memory_delta" in names
        delta = next(s for s in flow.performance_samples if s.name == "memory_delta")
        assert delta.value == 0.0

    def test_tracer_reusable(self, static_sampler):
        """Test a tracer can record consecutive traces"""
        tracer = ExecutionTracer(resource_sampler=static_sampler)

        tracer.start_trace("first")
        tracer.add_tool_call("a", {}, 1.0, True)
        first = tracer.end_trace()

        tracer.start_trace("second")
        second = tracer.end_trace()

        assert first.trace_id != second.trace_id
        assert len(second.tool_calls) == 0


class TestDisabledAndSampling:
    """Test disabled tracing and sampling decisions"""

    def test_disabled_tracer(self, static_sampler):
        """Test that a disabled tracer records nothing"""
        tracer = ExecutionTracer(enabled=False, resource_sampler=static_sampler)

        assert tracer.start_trace("cmd") is None
        tracer.add_tool_call("search", {}, 10.0, True)
        assert tracer.is_active is False
        assert tracer.end_trace() is None

    def test_sampled_out(self, static_sampler):
        """Test random value at or above the rate skips the command"""
        tracer = ExecutionTracer(
            sampling_rate=0.5,
            resource_sampler=static_sampler,
            random_source=lambda: 0.5,
        )

        assert tracer.start_trace("cmd") is None
        assert tracer.is_active is False

    def test_sampled_in(self, static_sampler):
        """Test random value below the rate records the command"""
        tracer = ExecutionTracer(
            sampling_rate=0.5,
            resource_sampler=static_sampler,
            random_source=lambda: 0.2,
        )

        assert tracer.start_trace("cmd") is not None

    def test_sampling_rate_clamped(self, static_sampler):
        """Test out-of-range sampling rates are clamped"""
        assert ExecutionTracer(sampling_rate=5, resource_sampler=static_sampler).sampling_rate == 1.0
        assert ExecutionTracer(sampling_rate=-1, resource_sampler=static_sampler).sampling_rate == 0.0


class TestRecords:
    """Test record methods"""

    @pytest.fixture
    def tracer(self, static_sampler):
        tracer = ExecutionTracer(resource_sampler=static_sampler)
        tracer.start_trace("cmd")
        return tracer

    def test_add_tool_call(self, tracer, static_sampler):
        """Test tool call record, sample and usage pattern"""
        tracer.add_tool_call("search", {"q": "x"}, 120.0, False, error="timeout")
        flow = tracer.end_trace()

        call = flow.tool_calls[0]
        assert call.tool == "search"
        assert call.execution_time_ms == 120.0
        assert call.success is False
        assert call.error == "timeout"
        assert call.memory_usage_bytes == static_sampler.memory_bytes

        sample = next(s for s in flow.performance_samples if s.name == "tool_execution_time")
        assert sample.value == 120.0
        assert sample.tags == {"tool": "search", "success": "false"}

        pattern_types = [p.pattern_type for p in flow.user_patterns]
        assert pattern_types == ["command_start", "tool_usage"]

    def test_negative_time_clamped(self, tracer):
        """Test negative durations are recorded as zero"""
        tracer.add_tool_call("search", {}, -5.0, True)
        flow = tracer.end_trace()

        assert flow.tool_calls[0].execution_time_ms == 0.0

    def test_add_external_lookup(self, tracer):
        """Test external lookup record and its samples"""
        tracer.add_external_lookup(
            "context7", {"lib": "react"}, 300.0, True,
            response_size=2048, cache_hit=True, token_usage=500, cost=0.01,
        )
        flow = tracer.end_trace()

        lookup = flow.external_lookups[0]
        assert lookup.endpoint == "context7"
        assert lookup.operation == "query"
        assert lookup.cache_hit is True
        assert lookup.token_usage == 500

        names = {s.name for s in flow.performance_samples}
        assert {"external_response_time", "external_token_usage", "external_cost"} <= names

    def test_add_cache_operation(self, tracer):
        """Test cache operation record"""
        tracer.add_cache_operation("get", "key1", 2.0, hit=True, data_size=64)
        flow = tracer.end_trace()

        op = flow.cache_operations[0]
        assert op.operation == CacheOperation.GET
        assert op.hit is True
        assert op.data_size == 64

    def test_unknown_cache_operation_ignored(self, tracer):
        """Test unknown cache operations are dropped"""
        tracer.add_cache_operation("evict", "key1", 2.0)
        flow = tracer.end_trace()

        assert flow.cache_operations == ()

    def test_record_error(self, tracer):
        """Test error record and counter sample"""
        tracer.record_error("bad input", "ValueError", context={"step": 1})
        flow = tracer.end_trace()

        error = flow.errors[0]
        assert error.message == "bad input"
        assert error.error_type == "ValueError"
        assert error.context == {"step": 1}
        assert any(s.name == "error_count" for s in flow.performance_samples)

    def test_record_user_pattern_confidence_clamped(self, tracer):
        """Test confidence is clamped into [0, 1]"""
        tracer.record_user_pattern("preferred_format", {"format": "md"}, confidence=3.0)
        flow = tracer.end_trace()

        pattern = flow.user_patterns[-1]
        assert pattern.pattern_type == "preferred_format"
        assert pattern.confidence == 1.0

    def test_record_performance_sample_non_finite(self, tracer):
        """Test non-finite sample values are stored as zero"""
        tracer.record_performance_sample("latency", float("inf"), "ms", {"stage": "parse"})
        flow = tracer.end_trace()

        sample = next(s for s in flow.performance_samples if s.name == "latency")
        assert sample.value == 0.0
        assert sample.tags == {"stage": "parse"}

    def test_records_keep_append_order(self, tracer):
        """Test tool calls keep insertion order"""
        for tool in ["a", "b", "c"]:
            tracer.add_tool_call(tool, {}, 1.0, True)
        flow = tracer.end_trace()

        assert [call.tool for call in flow.tool_calls] == ["a", "b", "c"]

    def test_unserializable_payloads_kept_as_repr(self, tracer):
        """Test payloads without a JSON form are stored as their repr"""
        lock = threading.Lock()
        tracer.add_tool_call("lock_tool", {"lock": lock, "n": 1}, 10.0, True, result=lock)
        flow = tracer.end_trace()

        call = flow.tool_calls[0]
        assert call.result == repr(lock)
        assert call.parameters == {"lock": repr(lock), "n": 1}
        copy.deepcopy(flow)

    def test_payloads_detached_from_caller(self, tracer):
        """Test later changes to the caller's objects do not reach the record"""
        parameters = {"paths": ["a"]}
        result = {"rows": [1, 2]}
        tracer.add_tool_call("read", parameters, 1.0, True, result=result)
        parameters["paths"].append("b")
        result["rows"].clear()
        flow = tracer.end_trace()

        assert flow.tool_calls[0].parameters == {"paths": ["a"]}
        assert flow.tool_calls[0].result == {"rows": [1, 2]}


class TestMonitoringSwitches:
    """Test performance monitoring and usage pattern switches"""

    def test_performance_monitoring_off(self):
        """Test no samples and no resource reads when monitoring is off"""
        sampler = StaticResourceSampler(memory_bytes=1000)
        tracer = ExecutionTracer(performance_monitoring=False, resource_sampler=sampler)
        tracer.start_trace("cmd")
        tracer.add_tool_call("a", {}, 10.0, True)

        flow = tracer.end_trace()

        assert flow.performance_samples == ()
        assert flow.resource_baseline.memory_bytes == 0
        assert flow.tool_calls[0].memory_usage_bytes == 0

    def test_usage_patterns_off(self, static_sampler):
        """Test no pattern signals when usage patterns are off"""
        tracer = ExecutionTracer(usage_patterns=False, resource_sampler=static_sampler)
        tracer.start_trace("cmd")
        tracer.add_tool_call("a", {}, 10.0, True)
        tracer.record_user_pattern("custom")

        flow = tracer.end_trace()

        assert flow.user_patterns == ()


class TestFlowSerialization:
    """Test ExecutionFlow dict conversion"""

    def test_flow_from_dict_restores_records(self, static_sampler):
        """Test a flow rebuilt from its dict matches the original"""
        tracer = ExecutionTracer(resource_sampler=static_sampler)
        tracer.start_trace("cmd", {"k": "v"})
        tracer.add_tool_call("a", {"x": 1}, 10.0, True)
        tracer.add_cache_operation("set", "key", 1.0)
        tracer.add_external_lookup("docs", {}, 50.0, True)
        flow = tracer.end_trace()

        restored = ExecutionFlow.from_dict(flow.to_dict())

        assert restored == flow
