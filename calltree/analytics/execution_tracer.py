"""
Execution Tracer - records one command's execution flow

Design principles:
- Append-only: records keep the order in which they were added
- Never raises: malformed input is clamped, internal failures are logged
- No I/O: only in-memory buffers and process resource sampling
- Reusable: end_trace() hands off a frozen ExecutionFlow and clears state

Record kinds:
- ToolCallRecord: one tool invocation
- ExternalLookupRecord: one call to an external knowledge/context source
- CacheOperationRecord: one cache access
- PerformanceSample: named numeric observation
- ErrorRecord: non-fatal error
- UserPatternSignal: detected behavioral signal
"""

import json
import logging
import math
import random
import time
import uuid
from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from calltree.analytics.strategies import (
    ProcessResourceSampler,
    ResourceSampler,
    ResourceSnapshot,
)


logger = logging.getLogger(__name__)


class CacheOperation(str, Enum):
    """Cache operation kind"""
    GET = "get"
    SET = "set"
    DELETE = "delete"
    CLEAR = "clear"


def _non_negative(value: Any) -> float:
    """Coerce to a finite, non-negative float (0.0 otherwise)"""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def _clamp_unit(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return min(1.0, max(0.0, number))


def _detached(value: Any) -> Any:
    """JSON-compatible copy of a caller payload; repr() when it has none"""
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError, RecursionError):
        return repr(value)


def _detached_dict(data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {str(key): _detached(value) for key, value in (data or {}).items()}


def _known_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass(frozen=True)
class ToolCallRecord:
    """One tool invocation"""
    tool: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    execution_time_ms: float = 0.0
    success: bool = True
    result: Any = None
    error: Optional[str] = None
    memory_usage_bytes: int = 0
    cpu_percent: float = 0.0
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCallRecord":
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True)
class ExternalLookupRecord:
    """One call to an external knowledge/context source"""
    endpoint: str
    operation: str = "query"
    parameters: Dict[str, Any] = field(default_factory=dict)
    response_time_ms: float = 0.0
    success: bool = True
    response_size: int = 0
    cache_hit: bool = False
    token_usage: int = 0
    cost: float = 0.0
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExternalLookupRecord":
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True)
class CacheOperationRecord:
    """One cache access"""
    operation: CacheOperation
    key: str
    duration_ms: float = 0.0
    success: bool = True
    hit: bool = False
    data_size: int = 0
    timestamp: float = 0.0

    def __post_init__(self):
        """Convert string operation to Enum if needed"""
        if isinstance(self.operation, str) and not isinstance(self.operation, CacheOperation):
            object.__setattr__(self, "operation", CacheOperation(self.operation))

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["operation"] = self.operation.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CacheOperationRecord":
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True)
class PerformanceSample:
    """Named numeric observation"""
    name: str
    value: float
    unit: str
    timestamp: float = 0.0
    tags: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerformanceSample":
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True)
class ErrorRecord:
    """Non-fatal error observed during execution"""
    message: str
    error_type: str = "error"
    stack: Optional[str] = None
    timestamp: float = 0.0
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorRecord":
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True)
class UserPatternSignal:
    """Detected behavioral signal, confidence in [0, 1]"""
    pattern_type: str
    data: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserPatternSignal":
        return cls(**_known_fields(cls, data))


@dataclass(frozen=True)
class ExecutionFlow:
    """
    ExecutionFlow - the raw record of one command execution

    Produced by ExecutionTracer.end_trace() and treated as read-only by
    everything downstream. Record sequences are tuples in append order.
    """
    trace_id: str
    command: str
    started_at: float
    ended_at: float
    duration_ms: float
    success: bool = True
    error_message: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    tool_calls: Tuple[ToolCallRecord, ...] = ()
    external_lookups: Tuple[ExternalLookupRecord, ...] = ()
    cache_operations: Tuple[CacheOperationRecord, ...] = ()
    performance_samples: Tuple[PerformanceSample, ...] = ()
    errors: Tuple[ErrorRecord, ...] = ()
    user_patterns: Tuple[UserPatternSignal, ...] = ()
    resource_baseline: ResourceSnapshot = field(default_factory=ResourceSnapshot)
    resource_final: ResourceSnapshot = field(default_factory=ResourceSnapshot)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "trace_id": self.trace_id,
            "command": self.command,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error_message": self.error_message,
            "options": self.options,
            "context": self.context,
            "tool_calls": [r.to_dict() for r in self.tool_calls],
            "external_lookups": [r.to_dict() for r in self.external_lookups],
            "cache_operations": [r.to_dict() for r in self.cache_operations],
            "performance_samples": [r.to_dict() for r in self.performance_samples],
            "errors": [r.to_dict() for r in self.errors],
            "user_patterns": [r.to_dict() for r in self.user_patterns],
            "resource_baseline": self.resource_baseline.to_dict(),
            "resource_final": self.resource_final.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionFlow":
        return cls(
            trace_id=data["trace_id"],
            command=data.get("command", ""),
            started_at=data.get("started_at", 0.0),
            ended_at=data.get("ended_at", 0.0),
            duration_ms=data.get("duration_ms", 0.0),
            success=data.get("success", True),
            error_message=data.get("error_message"),
            options=data.get("options") or {},
            context=data.get("context") or {},
            tool_calls=tuple(ToolCallRecord.from_dict(r) for r in data.get("tool_calls", [])),
            external_lookups=tuple(ExternalLookupRecord.from_dict(r) for r in data.get("external_lookups", [])),
            cache_operations=tuple(CacheOperationRecord.from_dict(r) for r in data.get("cache_operations", [])),
            performance_samples=tuple(PerformanceSample.from_dict(r) for r in data.get("performance_samples", [])),
            errors=tuple(ErrorRecord.from_dict(r) for r in data.get("errors", [])),
            user_patterns=tuple(UserPatternSignal.from_dict(r) for r in data.get("user_patterns", [])),
            resource_baseline=ResourceSnapshot.from_dict(data.get("resource_baseline")),
            resource_final=ResourceSnapshot.from_dict(data.get("resource_final")),
        )


class ExecutionTracer:
    """
    Records the execution flow of one command at a time

    Usage:
        tracer = ExecutionTracer()
        tracer.start_trace("generate report", {"format": "md"})
        tracer.add_tool_call("search", {"q": "x"}, 120.0, True)
        flow = tracer.end_trace()

    All public methods are no-ops when tracing is disabled, when the
    command was sampled out, or when no trace is active.
    """

    def __init__(
        self,
        enabled: bool = True,
        sampling_rate: float = 1.0,
        performance_monitoring: bool = True,
        usage_patterns: bool = True,
        resource_sampler: Optional[ResourceSampler] = None,
        random_source: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize tracer

        Args:
            enabled: Master switch for recording
            sampling_rate: Fraction of commands recorded (0.0 - 1.0)
            performance_monitoring: Emit performance samples and sample resources
            usage_patterns: Record user pattern signals
            resource_sampler: Process resource source (psutil by default)
            random_source: Random number source for sampling decisions
        """
        self.enabled = enabled
        self.sampling_rate = _clamp_unit(sampling_rate)
        self.performance_monitoring = performance_monitoring
        self.usage_patterns = usage_patterns
        self._resource_sampler = resource_sampler
        self._random = random_source or random.random
        self._reset()

    def _reset(self) -> None:
        self._trace_id: Optional[str] = None
        self._command = ""
        self._options: Dict[str, Any] = {}
        self._context: Dict[str, Any] = {}
        self._started_at = 0.0
        self._start_clock = 0.0
        self._baseline = ResourceSnapshot()
        self._peak_memory = 0
        self._tool_calls: List[ToolCallRecord] = []
        self._external_lookups: List[ExternalLookupRecord] = []
        self._cache_operations: List[CacheOperationRecord] = []
        self._performance_samples: List[PerformanceSample] = []
        self._errors: List[ErrorRecord] = []
        self._user_patterns: List[UserPatternSignal] = []

    @property
    def is_active(self) -> bool:
        """True while a sampled-in trace is being recorded"""
        return self._trace_id is not None

    @property
    def trace_id(self) -> Optional[str]:
        return self._trace_id

    @property
    def resource_sampler(self) -> ResourceSampler:
        if self._resource_sampler is None:
            self._resource_sampler = ProcessResourceSampler()
        return self._resource_sampler

    # ===== Lifecycle =====

    def start_trace(
        self,
        command: str,
        options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Start recording a command

        Args:
            command: Command text
            options: Command options snapshot
            context: Free-form execution context

        Returns:
            Trace ID, or None if disabled or sampled out
        """
        if not self.enabled:
            return None

        try:
            self._reset()

            if self.sampling_rate < 1.0 and self._random() >= self.sampling_rate:
                logger.debug(f"Command sampled out: {command}")
                return None

            # Generate trace ID
            self._trace_id = f"trace_{uuid.uuid4().hex[:16]}_{int(time.time())}"
            self._command = str(command)
            self._options = _detached_dict(options)
            self._context = _detached_dict(context)
            self._started_at = time.time()
            self._start_clock = time.perf_counter()

            self._baseline = self._sample()
            self._peak_memory = self._baseline.memory_bytes

            self._add_pattern("command_start", {"command": self._command, "options": dict(self._options)})
            return self._trace_id
        except Exception as e:
            logger.warning(f"Failed to start trace for {command!r}: {e}")
            self._reset()
            return None

    def end_trace(
        self,
        success: bool = True,
        error_message: Optional[str] = None,
        duration_ms: Optional[float] = None,
    ) -> Optional[ExecutionFlow]:
        """
        Finish the active trace

        Args:
            success: Whether the command succeeded
            error_message: Command-level error message
            duration_ms: Duration reported by the caller (measured if omitted)

        Returns:
            Completed ExecutionFlow, or None if no trace is active
        """
        if not self.is_active:
            return None

        try:
            ended_at = time.time()
            if duration_ms is None:
                duration_ms = (time.perf_counter() - self._start_clock) * 1000
            duration_ms = _non_negative(duration_ms)

            final = self._sample()
            self._emit_sample("memory_peak_usage", self._peak_memory, "bytes")
            self._emit_sample("memory_delta", final.memory_bytes - self._baseline.memory_bytes, "bytes")

            return ExecutionFlow(
                trace_id=self._trace_id,
                command=self._command,
                started_at=self._started_at,
                ended_at=ended_at,
                duration_ms=duration_ms,
                success=bool(success),
                error_message=error_message,
                options=self._options,
                context=self._context,
                tool_calls=tuple(self._tool_calls),
                external_lookups=tuple(self._external_lookups),
                cache_operations=tuple(self._cache_operations),
                performance_samples=tuple(self._performance_samples),
                errors=tuple(self._errors),
                user_patterns=tuple(self._user_patterns),
                resource_baseline=self._baseline,
                resource_final=final,
            )
        except Exception as e:
            logger.warning(f"Failed to end trace {self._trace_id}: {e}")
            return None
        finally:
            self._reset()

    # ===== Records =====

    def add_tool_call(
        self,
        tool: str,
        parameters: Optional[Dict[str, Any]],
        execution_time_ms: float,
        success: bool,
        result: Any = None,
        error: Optional[str] = None,
    ) -> None:
        """Record a tool invocation"""
        if not self.is_active:
            return

        try:
            execution_time_ms = _non_negative(execution_time_ms)
            snapshot = self._sample()
            record = ToolCallRecord(
                tool=str(tool),
                parameters=_detached_dict(parameters),
                execution_time_ms=execution_time_ms,
                success=bool(success),
                result=_detached(result),
                error=str(error) if error is not None else None,
                memory_usage_bytes=snapshot.memory_bytes,
                cpu_percent=snapshot.cpu_percent,
                timestamp=time.time(),
            )
            self._tool_calls.append(record)

            self._emit_sample(
                "tool_execution_time",
                execution_time_ms,
                "ms",
                {"tool": record.tool, "success": str(record.success).lower()},
            )
            self._add_pattern("tool_usage", {"tool": record.tool, "success": record.success})
        except Exception as e:
            logger.warning(f"Failed to record tool call {tool!r}: {e}")

    def add_external_lookup(
        self,
        endpoint: str,
        parameters: Optional[Dict[str, Any]],
        response_time_ms: float,
        success: bool,
        response_size: int = 0,
        cache_hit: bool = False,
        token_usage: int = 0,
        cost: float = 0.0,
        operation: str = "query",
    ) -> None:
        """Record a call to an external knowledge/context source"""
        if not self.is_active:
            return

        try:
            record = ExternalLookupRecord(
                endpoint=str(endpoint),
                operation=str(operation),
                parameters=_detached_dict(parameters),
                response_time_ms=_non_negative(response_time_ms),
                success=bool(success),
                response_size=int(_non_negative(response_size)),
                cache_hit=bool(cache_hit),
                token_usage=int(_non_negative(token_usage)),
                cost=_non_negative(cost),
                timestamp=time.time(),
            )
            self._external_lookups.append(record)

            self._emit_sample(
                "external_response_time",
                record.response_time_ms,
                "ms",
                {"endpoint": record.endpoint, "cache_hit": str(record.cache_hit).lower()},
            )
            self._emit_sample("external_token_usage", record.token_usage, "tokens", {"endpoint": record.endpoint})
            self._emit_sample("external_cost", record.cost, "dollars", {"endpoint": record.endpoint})
        except Exception as e:
            logger.warning(f"Failed to record external lookup {endpoint!r}: {e}")

    def add_cache_operation(
        self,
        operation: str,
        key: str,
        duration_ms: float,
        success: bool = True,
        hit: bool = False,
        data_size: int = 0,
    ) -> None:
        """Record a cache access (operation: get, set, delete or clear)"""
        if not self.is_active:
            return

        try:
            try:
                cache_operation = CacheOperation(operation)
            except ValueError:
                logger.debug(f"Ignoring unknown cache operation: {operation!r}")
                return

            record = CacheOperationRecord(
                operation=cache_operation,
                key=str(key),
                duration_ms=_non_negative(duration_ms),
                success=bool(success),
                hit=bool(hit),
                data_size=int(_non_negative(data_size)),
                timestamp=time.time(),
            )
            self._cache_operations.append(record)

            self._emit_sample(
                "cache_operation_time",
                record.duration_ms,
                "ms",
                {"operation": cache_operation.value, "hit": str(record.hit).lower()},
            )
        except Exception as e:
            logger.warning(f"Failed to record cache operation {operation!r}: {e}")

    def record_performance_sample(
        self,
        name: str,
        value: float,
        unit: str,
        tags: Optional[Dict[str, str]] = None,
    ) -> None:
        """Record an arbitrary named observation"""
        if not self.is_active:
            return

        try:
            self._emit_sample(str(name), value, str(unit), tags)
        except Exception as e:
            logger.warning(f"Failed to record performance sample {name!r}: {e}")

    def record_error(
        self,
        message: str,
        error_type: str = "error",
        stack: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a non-fatal error"""
        if not self.is_active:
            return

        try:
            self._errors.append(ErrorRecord(
                message=str(message),
                error_type=str(error_type),
                stack=stack,
                timestamp=time.time(),
                context=_detached_dict(context),
            ))
            self._emit_sample("error_count", 1, "count", {"error_type": str(error_type)})
        except Exception as e:
            logger.warning(f"Failed to record error: {e}")

    def record_user_pattern(
        self,
        pattern_type: str,
        data: Optional[Dict[str, Any]] = None,
        confidence: float = 1.0,
    ) -> None:
        """Record a detected behavioral signal"""
        if not self.is_active:
            return

        try:
            self._add_pattern(str(pattern_type), _detached_dict(data), confidence)
        except Exception as e:
            logger.warning(f"Failed to record user pattern {pattern_type!r}: {e}")

    # ===== Internals =====

    def _sample(self) -> ResourceSnapshot:
        if not self.performance_monitoring:
            return ResourceSnapshot(timestamp=time.time())

        snapshot = self.resource_sampler.snapshot()
        if snapshot.memory_bytes > self._peak_memory:
            self._peak_memory = snapshot.memory_bytes
        return snapshot

    def _emit_sample(
        self,
        name: str,
        value: float,
        unit: str,
        tags: Optional[Dict[str, str]] = None,
    ) -> None:
        if not self.performance_monitoring:
            return

        try:
            number = float(value)
        except (TypeError, ValueError):
            number = 0.0
        if not math.isfinite(number):
            number = 0.0

        self._performance_samples.append(PerformanceSample(
            name=name,
            value=number,
            unit=unit,
            timestamp=time.time(),
            tags=dict(tags or {}),
        ))

    def _add_pattern(self, pattern_type: str, data: Dict[str, Any], confidence: float = 1.0) -> None:
        if not self.usage_patterns:
            return

        self._user_patterns.append(UserPatternSignal(
            pattern_type=pattern_type,
            data=data,
            confidence=_clamp_unit(confidence),
            timestamp=time.time(),
        ))


__all__ = [
    "CacheOperation",
    "ToolCallRecord",
    "ExternalLookupRecord",
    "CacheOperationRecord",
    "PerformanceSample",
    "ErrorRecord",
    "UserPatternSignal",
    "ExecutionFlow",
    "ExecutionTracer",
]
