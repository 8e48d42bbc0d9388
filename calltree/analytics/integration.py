"""
Analytics integration facade

Wraps command execution so that tracing, analytics, persistence and
real-time ingestion happen around the command, and exposes the read
APIs used by reporting layers.

The pipeline observes commands and never gates them: analytics
failures are logged, and the command's own result or exception is
passed through untouched.

Usage:
    integration = AnalyticsIntegration(config)
    integration.initialize()

    def run(tracer):
        tracer.add_tool_call("search", {"q": "x"}, 120.0, True)
        return "done"

    outcome = integration.execute("generate report", run)
    metrics = integration.get_live_metrics()
"""

import copy
import logging
import threading
import time
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Iterator, List, Optional

from pydantic import BaseModel

from calltree.analytics.analytics_engine import AnalyticsEngine
from calltree.analytics.analytics_types import (
    AggregatedAnalytics,
    Analytics,
    OptimizationOpportunity,
    StoredTrace,
    TraceFilters,
    UsagePattern,
)
from calltree.analytics.events import EventBus
from calltree.analytics.exceptions import BackendUnavailableError
from calltree.analytics.execution_tracer import ExecutionTracer
from calltree.analytics.realtime_processor import (
    LiveMetrics,
    PerformanceTrends,
    RealTimeAlert,
    RealTimeProcessor,
)
from calltree.analytics.storage_writer import AsyncTraceWriter
from calltree.analytics.strategies import (
    ProcessResourceSampler,
    ResourceSampler,
    StaticResourceSampler,
)
from calltree.analytics.trace_store import StorageBackend, create_storage_backend
from config import AnalyticsConfig, get_config


logger = logging.getLogger(__name__)


RECENT_ANALYTICS_WINDOW_SECONDS = 24 * 3600


@dataclass
class CommandResult:
    """Outcome of an executed command"""
    result: Any
    trace_id: Optional[str] = None
    analytics: Optional[Analytics] = None


@dataclass
class AnalyticsStatus:
    """Pipeline status flags"""
    initialized: bool
    enabled: bool
    storage_available: bool
    realtime_enabled: bool
    performance_monitoring: bool
    realtime_running: bool

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


def _deep_merge(base: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class AnalyticsIntegration:
    """
    Facade over tracer, engine, storage and real-time processor

    Args:
        config: Analytics configuration (defaults if omitted)
        storage: Storage backend to use instead of the configured one
        resource_sampler: Shared memory/CPU sampler
        event_bus: Notification hub shared with the processor
    """

    def __init__(
        self,
        config: Optional[AnalyticsConfig] = None,
        storage: Optional[StorageBackend] = None,
        resource_sampler: Optional[ResourceSampler] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.config = config or AnalyticsConfig()
        self.events = event_bus or EventBus()
        self._injected_storage = storage
        self._resource_sampler = resource_sampler

        self.storage: Optional[StorageBackend] = None
        self.writer: Optional[AsyncTraceWriter] = None
        self.engine: Optional[AnalyticsEngine] = None
        self.processor: Optional[RealTimeProcessor] = None

        self._lock = threading.RLock()
        self._initialized = False
        self._last_analytics: Optional[Analytics] = None

    @property
    def resource_sampler(self) -> ResourceSampler:
        if self._resource_sampler is None:
            if self.config.performance.enabled:
                self._resource_sampler = ProcessResourceSampler()
            else:
                self._resource_sampler = StaticResourceSampler()
        return self._resource_sampler

    @property
    def last_analytics(self) -> Optional[Analytics]:
        """Copy of the analytics of the most recent completed command"""
        return copy.deepcopy(self._last_analytics)

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # ===== Lifecycle =====

    def initialize(self) -> None:
        """Build storage, writer, engine and processor (idempotent)"""
        with self._lock:
            if self._initialized:
                return

            self.storage = self._init_storage()
            if self.storage is not None:
                self.writer = AsyncTraceWriter(self.storage, max_queue_size=self.config.storage.write_queue_size)
                self.writer.start()

            self.engine = AnalyticsEngine(
                config=self.config.optimization,
                storage=self.storage,
                writer=self.writer,
            )
            self.processor = RealTimeProcessor(
                config=self.config.realtime,
                thresholds=self.config.performance.thresholds,
                resource_sampler=self.resource_sampler,
                event_bus=self.events,
            )
            if self.config.enabled and self.config.realtime.enabled:
                self.processor.start()

            self._initialized = True

        logger.info(
            f"Analytics initialized: enabled={self.config.enabled}, "
            f"storage={'available' if self.storage else 'unavailable'}, "
            f"realtime={self.config.realtime.enabled}"
        )

    def _init_storage(self) -> Optional[StorageBackend]:
        try:
            storage = self._injected_storage or create_storage_backend(self.config.storage)
            storage.initialize()
            return storage
        except Exception as e:
            logger.warning(f"Trace storage unavailable, analytics kept in memory only: {e}")
            return None

    def stop(self) -> None:
        """Stop the processor, drain pending writes and close storage"""
        with self._lock:
            if not self._initialized:
                return

            if self.processor is not None:
                self.processor.stop()
            if self.writer is not None:
                self.writer.stop()
            if self.storage is not None:
                try:
                    self.storage.close()
                except Exception as e:
                    logger.warning(f"Error closing trace storage: {e}")

            self.writer = None
            self.storage = None
            self._initialized = False

        logger.info("Analytics stopped")

    def update_config(self, **changes: Any) -> AnalyticsConfig:
        """
        Apply configuration changes by section

        Example:
            integration.update_config(performance={"sampling_rate": 0.5})

        Storage changes take effect on the next initialize().

        Returns:
            The new validated configuration
        """
        data = self.config.model_dump()
        for key, value in changes.items():
            if isinstance(value, BaseModel):
                value = value.model_dump()
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = _deep_merge(data[key], value)
            else:
                data[key] = value

        new_config = AnalyticsConfig(**data)

        with self._lock:
            old_config = self.config
            self.config = new_config

            if self._initialized:
                self.engine.config = new_config.optimization

                realtime_changed = (
                    new_config.realtime != old_config.realtime
                    or new_config.performance.thresholds != old_config.performance.thresholds
                    or new_config.enabled != old_config.enabled
                )
                if realtime_changed:
                    self.processor.stop()
                    self.processor.config = new_config.realtime
                    self.processor.thresholds = new_config.performance.thresholds
                    if new_config.enabled and new_config.realtime.enabled:
                        self.processor.start()

                if new_config.storage != old_config.storage:
                    logger.info("Storage configuration changed, takes effect after restart")

        return new_config

    # ===== Command execution =====

    def _new_tracer(self) -> ExecutionTracer:
        self.initialize()
        return ExecutionTracer(
            enabled=self.config.enabled,
            sampling_rate=self.config.performance.sampling_rate,
            performance_monitoring=self.config.performance.enabled,
            usage_patterns=self.config.enable_usage_patterns,
            resource_sampler=self.resource_sampler,
        )

    @contextmanager
    def trace_command(
        self,
        command: str,
        options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Iterator[ExecutionTracer]:
        """
        Trace the enclosed block as one command

        Exceptions raised in the block are recorded and re-raised unchanged.
        """
        tracer = self._new_tracer()
        tracer.start_trace(command, options, context)
        try:
            yield tracer
        except Exception as e:
            self._complete_failed(tracer, e)
            raise
        else:
            self._complete(tracer, success=True)

    def execute(
        self,
        command: str,
        executor: Callable[[ExecutionTracer], Any],
        options: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> CommandResult:
        """
        Execute a command under tracing

        Args:
            command: Command text
            executor: Called with the tracer; its return value is the result
            options: Command options
            context: Execution context

        Returns:
            CommandResult with the executor's result and the trace analytics

        Raises:
            Whatever the executor raises
        """
        tracer = self._new_tracer()
        trace_id = tracer.start_trace(command, options, context)

        try:
            result = executor(tracer)
        except Exception as e:
            self._complete_failed(tracer, e)
            raise

        analytics = self._complete(tracer, success=True)
        return CommandResult(result=result, trace_id=trace_id, analytics=analytics)

    def _complete_failed(self, tracer: ExecutionTracer, error: Exception) -> None:
        tracer.record_error(
            str(error),
            type(error).__name__,
            stack=traceback.format_exc(),
        )
        self._complete(tracer, success=False, error_message=str(error))

    def _complete(
        self,
        tracer: ExecutionTracer,
        success: bool,
        error_message: Optional[str] = None,
    ) -> Optional[Analytics]:
        if not tracer.is_active:
            return None

        trace_id = tracer.trace_id
        try:
            flow = tracer.end_trace(success=success, error_message=error_message)
            if flow is None:
                return None

            stored_at = time.time()
            analytics = self.engine.process_trace(flow, stored_at=stored_at)
            self._last_analytics = analytics

            if self.processor is not None and self.processor.is_running:
                self.processor.process_trace(StoredTrace.from_flow(flow, analytics, stored_at))

            # Buffer and write queue share this object
            return copy.deepcopy(analytics)
        except Exception as e:
            logger.error(f"Analytics failed for trace {trace_id}: {e}")
            return None

    # ===== Read APIs =====

    def get_recent_analytics(self, count: int = 50) -> List[Analytics]:
        """Analytics from the last 24 hours, newest first"""
        if not self._initialized or count <= 0:
            return []

        if self.storage is not None:
            end_time = time.time()
            filters = TraceFilters(
                start_time=end_time - RECENT_ANALYTICS_WINDOW_SECONDS,
                end_time=end_time,
                limit=count,
            )
            try:
                return [trace.analytics for trace in self.storage.get_traces(filters)]
            except Exception as e:
                logger.warning(f"Failed to load recent analytics from storage: {e}")

        return [trace.analytics for trace in self.processor.get_recent_traces(count)]

    def get_recent_traces(self, count: int = 50) -> List[StoredTrace]:
        """Traces in the real-time buffer, newest first"""
        if not self._initialized:
            return []
        return self.processor.get_recent_traces(count)

    def get_trace(self, trace_id: str) -> Optional[StoredTrace]:
        """Trace by id from the real-time buffer, then from storage"""
        if not self._initialized:
            return None

        trace = self.processor.get_trace(trace_id)
        if trace is None and self.storage is not None:
            try:
                trace = self.storage.get_trace(trace_id)
            except Exception as e:
                logger.warning(f"Failed to load trace {trace_id} from storage: {e}")
        return trace

    def export_data(self, start_time: Optional[float] = None, end_time: Optional[float] = None) -> str:
        """
        Stored traces in [start_time, end_time] as a JSON array

        Raises:
            BackendUnavailableError: No storage backend is available
        """
        if not self._initialized or self.storage is None:
            raise BackendUnavailableError("Trace storage is not available")
        return self.storage.export_data(TraceFilters(start_time=start_time, end_time=end_time))

    def get_request_totals(self) -> Dict[str, int]:
        """Traces and failed traces seen by the real-time processor"""
        if not self._initialized:
            return {"requests": 0, "errors": 0}
        return {"requests": self.processor.request_count, "errors": self.processor.error_count}

    def get_live_metrics(self) -> LiveMetrics:
        if not self._initialized:
            return LiveMetrics()
        return self.processor.get_live_metrics()

    def get_optimization_opportunities(self) -> List[OptimizationOpportunity]:
        """Storage-backed recommendations followed by rolling-buffer findings"""
        if not self._initialized:
            return []

        opportunities = list(self.engine.get_optimization_recommendations())
        seen = {opportunity.id for opportunity in opportunities}
        for opportunity in self.processor.get_optimization_opportunities():
            if opportunity.id not in seen:
                opportunities.append(opportunity)
        return opportunities

    def get_performance_trends(self) -> PerformanceTrends:
        if not self._initialized:
            return PerformanceTrends()
        return self.processor.get_performance_trends()

    def get_usage_patterns(self) -> List[UsagePattern]:
        if not self._initialized:
            return []
        return self.processor.get_usage_patterns()

    def get_active_alerts(self) -> List[RealTimeAlert]:
        if not self._initialized:
            return []
        return self.processor.get_active_alerts()

    def resolve_alert(self, alert_id: str) -> bool:
        if not self._initialized:
            return False
        return self.processor.resolve_alert(alert_id)

    def get_analytics_for_time_range(self, start_time: float, end_time: float) -> AggregatedAnalytics:
        """
        Aggregated analytics for stored traces in [start_time, end_time]

        Raises:
            BackendUnavailableError: No storage backend is available
        """
        if not self._initialized or self.engine is None:
            raise BackendUnavailableError("Analytics is not initialized")
        return self.engine.get_analytics_for_time_range(start_time, end_time)

    def get_analytics_status(self) -> AnalyticsStatus:
        storage_available = False
        if self.storage is not None:
            try:
                storage_available = self.storage.is_available()
            except Exception as e:
                logger.warning(f"Storage availability check failed: {e}")

        return AnalyticsStatus(
            initialized=self._initialized,
            enabled=self.config.enabled,
            storage_available=storage_available,
            realtime_enabled=self.config.realtime.enabled,
            performance_monitoring=self.config.performance.enabled,
            realtime_running=self.processor.is_running if self.processor else False,
        )


# Global integration instance
_integration: Optional[AnalyticsIntegration] = None
_integration_lock = threading.Lock()


def get_analytics_integration(config: Optional[AnalyticsConfig] = None) -> AnalyticsIntegration:
    """
    Get the global integration (created from get_config() on first use)

    Args:
        config: Configuration for the first creation
    """
    global _integration

    with _integration_lock:
        if _integration is None:
            _integration = AnalyticsIntegration(config or get_config().analytics)
        return _integration


def reset_analytics_integration() -> None:
    """Stop and discard the global integration"""
    global _integration

    with _integration_lock:
        if _integration is not None:
            _integration.stop()
        _integration = None


__all__ = [
    "AnalyticsIntegration",
    "AnalyticsStatus",
    "CommandResult",
    "get_analytics_integration",
    "reset_analytics_integration",
]
