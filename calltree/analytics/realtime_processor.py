"""
Real-Time Processor - live metrics and alerts over recent traces

State machine: stopped -> running -> stopped (restartable).

While running, a background tick recomputes system gauges and prunes
expired traces from the rolling buffer. Ingested traces update running
counters and are checked against alert rules gated by a per-alert-id
cooldown.

The rolling buffer, counters and alert list are owned by the processor
and guarded by one RLock; read APIs return copies.
"""

import bisect
import copy
import itertools
import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from calltree.analytics import events
from calltree.analytics.analytics_types import (
    Effort,
    OpportunityCategory,
    OptimizationOpportunity,
    PatternCategory,
    Priority,
    StoredTrace,
    UsagePattern,
)
from calltree.analytics.events import EventBus
from calltree.analytics.strategies import ProcessResourceSampler, ResourceSampler
from config import AlertThresholdsConfig, RealTimeConfig


logger = logging.getLogger(__name__)


# Window sizes for read APIs
TRENDS_WINDOW = 100
USAGE_PATTERNS_WINDOW = 100
OPPORTUNITIES_WINDOW = 50

# Memory fraction above which the memory alert is critical
CRITICAL_MEMORY_USAGE = 0.9

# CPU fraction above which the CPU alert is critical
CRITICAL_CPU_USAGE = 0.9


class AlertCategory(str, Enum):
    """Alert category"""
    PERFORMANCE = "performance"
    ERROR = "error"
    OPTIMIZATION = "optimization"
    USAGE = "usage"


class AlertSeverity(str, Enum):
    """Alert severity"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class RealTimeAlert:
    """Threshold alert; only ever transitions unresolved -> resolved"""
    id: str
    category: AlertCategory
    severity: AlertSeverity
    title: str
    message: str
    timestamp: float
    data: Dict[str, Any] = field(default_factory=dict)
    resolved: bool = False
    resolved_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["category"] = self.category.value
        result["severity"] = self.severity.value
        return result


@dataclass
class LiveMetrics:
    """Process-wide live gauges"""
    request_rate: float = 0.0
    average_response_time_ms: float = 0.0
    error_rate: float = 0.0
    memory_usage: float = 0.0
    cpu_usage: float = 0.0
    active_alerts: int = 0
    health_score: int = 100
    last_updated: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PerformanceTrends:
    """Parallel arrays over recent traces, oldest first"""
    response_time: List[float] = field(default_factory=list)
    error_flags: List[int] = field(default_factory=list)
    memory_usage: List[float] = field(default_factory=list)
    timestamps: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RealTimeProcessor:
    """
    Ingests completed traces and maintains live metrics and alerts

    Usage:
        processor = RealTimeProcessor()
        processor.start()
        processor.process_trace(stored_trace)
        metrics = processor.get_live_metrics()
        processor.stop()
    """

    def __init__(
        self,
        config: Optional[RealTimeConfig] = None,
        thresholds: Optional[AlertThresholdsConfig] = None,
        resource_sampler: Optional[ResourceSampler] = None,
        event_bus: Optional[EventBus] = None,
        clock=time.time,
    ):
        """
        Initialize processor

        Args:
            config: Tick interval, buffer limits, cooldown
            thresholds: Alert and health thresholds
            resource_sampler: Memory/CPU source (psutil by default)
            event_bus: Notification hub (a private one by default)
            clock: Time source returning epoch seconds
        """
        self.config = config or RealTimeConfig()
        self.thresholds = thresholds or AlertThresholdsConfig()
        self.events = event_bus or EventBus()
        self._resource_sampler = resource_sampler
        self._clock = clock

        self._lock = threading.RLock()
        self._traces: List[Tuple[float, int, StoredTrace]] = []
        self._sequence = itertools.count()
        self._alerts: List[RealTimeAlert] = []
        self._last_alert_times: Dict[str, float] = {}

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

        self._reset_counters()

    @property
    def resource_sampler(self) -> ResourceSampler:
        if self._resource_sampler is None:
            self._resource_sampler = ProcessResourceSampler()
        return self._resource_sampler

    def _reset_counters(self) -> None:
        self._start_time = self._clock()
        self._request_count = 0
        self._total_response_time_ms = 0.0
        self._error_count = 0
        self._live = LiveMetrics(last_updated=self._start_time)

    # ===== Lifecycle =====

    def start(self) -> None:
        """Start the tick loop (no-op if already running)"""
        with self._lock:
            if self._running:
                return

            self._running = True
            self._reset_counters()
            try:
                self._sample_resources()
            except Exception as e:
                logger.warning(f"Initial resource sample failed: {e}")

            # Each run gets its own stop event so a lingering old thread
            # cannot be revived by a restart
            stop_event = threading.Event()
            self._stop_event = stop_event
            self._thread = threading.Thread(
                target=self._tick_loop,
                args=(stop_event,),
                daemon=True,
                name="RealTimeProcessor",
            )
            self._thread.start()

        logger.info("Real-time processing started")
        self.events.publish(events.PROCESSING_STARTED, {"interval_seconds": self.config.processing_interval_seconds})

    def stop(self) -> None:
        """Stop the tick loop; the processor can be started again"""
        with self._lock:
            if not self._running:
                return

            self._running = False
            stop_event, thread = self._stop_event, self._thread
            self._stop_event = None
            self._thread = None

        stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=2.0)

        logger.info("Real-time processing stopped")
        self.events.publish(events.PROCESSING_STOPPED)

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def _tick_loop(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.config.processing_interval_seconds):
            self.process_realtime_data()

    # ===== Processing =====

    def process_realtime_data(self) -> None:
        """Tick: refresh gauges, prune expired traces, publish metrics"""
        try:
            with self._lock:
                now = self._clock()
                self._sample_resources()
                self._prune_expired(now)
                self._update_rates(now)
                self._refresh_health()
                self._live.last_updated = now
                metrics = replace(self._live)

            self.events.publish(events.METRICS_UPDATED, metrics)
        except Exception as e:
            logger.error(f"Real-time tick failed: {e}")
            self.events.publish(events.ERROR, {"source": "tick", "error": str(e)})

    def process_trace(self, trace: StoredTrace) -> None:
        """
        Ingest a completed trace

        Errors are logged and published as "error" events, never raised.
        """
        try:
            with self._lock:
                now = self._clock()
                self._insert(trace)

                self._request_count += 1
                self._total_response_time_ms += trace.duration_ms
                if not trace.success:
                    self._error_count += 1

                self._sample_resources()
                self._update_rates(now)

                created = self._evaluate_alerts(trace, now) if self.config.enable_alerts else []

                self._refresh_health()
                self._live.last_updated = now
                metrics = replace(self._live)
                created = [copy.deepcopy(alert) for alert in created]

            for alert in created:
                logger.warning(f"Alert created: {alert.id} ({alert.severity.value}) {alert.message}")
                self.events.publish(events.ALERT_CREATED, alert)
            self.events.publish(events.TRACE_PROCESSED, {
                "trace_id": trace.id,
                "duration_ms": trace.duration_ms,
                "success": trace.success,
            })
            self.events.publish(events.METRICS_UPDATED, metrics)
        except Exception as e:
            trace_id = getattr(trace, "id", None)
            logger.error(f"Failed to process trace {trace_id}: {e}")
            self.events.publish(events.ERROR, {"source": "process_trace", "trace_id": trace_id, "error": str(e)})

    def _insert(self, trace: StoredTrace) -> None:
        # Ordered by stored_at, arrival order breaks ties
        bisect.insort(self._traces, (trace.stored_at, next(self._sequence), trace))
        overflow = len(self._traces) - self.config.max_recent_traces
        if overflow > 0:
            del self._traces[:overflow]

    def _prune_expired(self, now: float) -> None:
        cutoff = now - self.config.retention_window_seconds
        index = bisect.bisect_right([entry[0] for entry in self._traces], cutoff)
        if index:
            del self._traces[:index]
            logger.debug(f"Pruned {index} expired traces")

    def _sample_resources(self) -> None:
        snapshot = self.resource_sampler.snapshot()
        self._live.memory_usage = snapshot.memory_fraction
        self._live.cpu_usage = snapshot.cpu_fraction

    def _update_rates(self, now: float) -> None:
        elapsed = now - self._start_time
        count = self._request_count
        self._live.request_rate = count / elapsed if elapsed > 0 else 0.0
        self._live.average_response_time_ms = self._total_response_time_ms / count if count > 0 else 0.0
        self._live.error_rate = self._error_count / count if count > 0 else 0.0

    def _refresh_health(self) -> None:
        active = sum(1 for alert in self._alerts if not alert.resolved)
        self._live.active_alerts = active

        score = 100
        if self._live.average_response_time_ms > self.thresholds.response_time_ms:
            score -= 20
        if self._live.error_rate > self.thresholds.error_rate:
            score -= 30
        if self._live.memory_usage > self.thresholds.memory_usage:
            score -= 15
        score -= 5 * active

        self._live.health_score = max(0, score)

    # ===== Alerts =====

    def _evaluate_alerts(self, trace: StoredTrace, now: float) -> List[RealTimeAlert]:
        created: List[RealTimeAlert] = []
        response_threshold = self.thresholds.response_time_ms

        if trace.duration_ms > response_threshold:
            severity = AlertSeverity.CRITICAL if trace.duration_ms > response_threshold * 2 else AlertSeverity.HIGH
            self._create_alert(
                created,
                now,
                alert_id="response_time_high",
                category=AlertCategory.PERFORMANCE,
                severity=severity,
                title="High Response Time",
                message=f"Response time {trace.duration_ms:.0f}ms exceeds threshold {response_threshold:.0f}ms",
                data={
                    "trace_id": trace.id,
                    "response_time_ms": trace.duration_ms,
                    "threshold_ms": response_threshold,
                },
            )

        if not trace.success:
            self._create_alert(
                created,
                now,
                alert_id="error_occurred",
                category=AlertCategory.ERROR,
                severity=AlertSeverity.HIGH,
                title="Execution Error",
                message=f"Command failed: {trace.error_message or 'unknown error'}",
                data={
                    "trace_id": trace.id,
                    "error_message": trace.error_message,
                    "command": trace.command,
                },
            )

        memory = self._live.memory_usage
        if memory > self.thresholds.memory_usage:
            severity = AlertSeverity.CRITICAL if memory > CRITICAL_MEMORY_USAGE else AlertSeverity.MEDIUM
            self._create_alert(
                created,
                now,
                alert_id="memory_usage_high",
                category=AlertCategory.PERFORMANCE,
                severity=severity,
                title="High Memory Usage",
                message=f"Memory usage {memory:.0%} exceeds threshold {self.thresholds.memory_usage:.0%}",
                data={"memory_usage": memory, "threshold": self.thresholds.memory_usage},
            )

        cpu = self._live.cpu_usage
        if cpu > self.thresholds.cpu_usage:
            severity = AlertSeverity.CRITICAL if cpu > CRITICAL_CPU_USAGE else AlertSeverity.MEDIUM
            self._create_alert(
                created,
                now,
                alert_id="cpu_usage_high",
                category=AlertCategory.PERFORMANCE,
                severity=severity,
                title="High CPU Usage",
                message=f"CPU usage {cpu:.0%} exceeds threshold {self.thresholds.cpu_usage:.0%}",
                data={"cpu_usage": cpu, "threshold": self.thresholds.cpu_usage},
            )

        return created

    def _create_alert(
        self,
        created: List[RealTimeAlert],
        now: float,
        alert_id: str,
        category: AlertCategory,
        severity: AlertSeverity,
        title: str,
        message: str,
        data: Dict[str, Any],
    ) -> None:
        last = self._last_alert_times.get(alert_id)
        if last is not None and now - last < self.config.alert_cooldown_seconds:
            return

        alert = RealTimeAlert(
            id=alert_id,
            category=category,
            severity=severity,
            title=title,
            message=message,
            timestamp=now,
            data=data,
        )
        self._alerts.append(alert)
        self._last_alert_times[alert_id] = now
        created.append(alert)

    def resolve_alert(self, alert_id: str) -> bool:
        """
        Mark unresolved alerts with this id as resolved

        Returns:
            True if any alert changed state (False when already resolved or unknown)
        """
        with self._lock:
            now = self._clock()
            resolved = []
            for alert in self._alerts:
                if alert.id == alert_id and not alert.resolved:
                    alert.resolved = True
                    alert.resolved_at = now
                    resolved.append(copy.deepcopy(alert))
            if resolved:
                self._refresh_health()

        for alert in resolved:
            self.events.publish(events.ALERT_RESOLVED, alert)
        return bool(resolved)

    # ===== Read APIs =====

    def get_live_metrics(self) -> LiveMetrics:
        with self._lock:
            return replace(self._live)

    def get_active_alerts(self) -> List[RealTimeAlert]:
        """Unresolved alerts, oldest first"""
        with self._lock:
            return [copy.deepcopy(alert) for alert in self._alerts if not alert.resolved]

    def get_alert_history(self) -> List[RealTimeAlert]:
        """All alerts ever created, oldest first"""
        with self._lock:
            return [copy.deepcopy(alert) for alert in self._alerts]

    def _recent(self, count: int) -> List[StoredTrace]:
        """Up to count most recent traces, oldest first (references)"""
        if count <= 0:
            return []
        with self._lock:
            return [entry[2] for entry in self._traces[-count:]]

    @property
    def trace_count(self) -> int:
        with self._lock:
            return len(self._traces)

    @property
    def request_count(self) -> int:
        """Traces ingested since construction or the last start()"""
        with self._lock:
            return self._request_count

    @property
    def error_count(self) -> int:
        with self._lock:
            return self._error_count

    def get_recent_traces(self, count: int = 50) -> List[StoredTrace]:
        """Most recent traces, newest first"""
        return [copy.deepcopy(trace) for trace in reversed(self._recent(count))]

    def get_trace(self, trace_id: str) -> Optional[StoredTrace]:
        """Copy of a buffered trace, None if not in the buffer"""
        with self._lock:
            for _, _, trace in reversed(self._traces):
                if trace.id == trace_id:
                    return copy.deepcopy(trace)
        return None

    def get_performance_trends(self) -> PerformanceTrends:
        trends = PerformanceTrends()
        for trace in self._recent(TRENDS_WINDOW):
            trends.response_time.append(trace.duration_ms)
            trends.error_flags.append(0 if trace.success else 1)
            trends.memory_usage.append(trace.execution_flow.resource_final.memory_fraction)
            trends.timestamps.append(trace.stored_at)
        return trends

    def get_usage_patterns(self) -> List[UsagePattern]:
        usage: Counter = Counter()
        for trace in self._recent(USAGE_PATTERNS_WINDOW):
            usage.update(trace.analytics.metrics.tool_usage_distribution)

        patterns = []
        for tool, count in usage.most_common():
            if count > self.config.usage_pattern_threshold:
                patterns.append(UsagePattern(
                    id=f"realtime_tool_{tool}",
                    category=PatternCategory.TOOL_FREQUENCY,
                    confidence=min(1.0, count / 20),
                    description=f"Frequent use of {tool} in recent traces",
                    frequency=count,
                    data={"tool": tool, "count": count, "period": "recent"},
                ))
        return patterns

    def get_optimization_opportunities(self) -> List[OptimizationOpportunity]:
        recent = self._recent(OPPORTUNITIES_WINDOW)
        if not recent:
            return []

        opportunities = []
        average = sum(trace.duration_ms for trace in recent) / len(recent)
        error_rate = sum(1 for trace in recent if not trace.success) / len(recent)

        response_threshold = self.thresholds.response_time_ms
        if average > response_threshold:
            opportunities.append(OptimizationOpportunity(
                id="realtime_response_time",
                category=OpportunityCategory.ALGORITHM,
                priority=Priority.HIGH if average > response_threshold * 2 else Priority.MEDIUM,
                description=f"Recent commands average {average:.0f}ms (threshold {response_threshold:.0f}ms)",
                expected_improvement=min(50.0, (average - response_threshold) / 10),
                effort=Effort.MEDIUM,
                affected_metrics=["response_time"],
                suggestions=[
                    "Review the slowest operations of recent traces",
                    "Cache repeated lookups",
                    "Parallelize independent tool calls",
                ],
            ))

        error_threshold = self.thresholds.error_rate
        if error_rate > error_threshold:
            opportunities.append(OptimizationOpportunity(
                id="realtime_error_rate",
                category=OpportunityCategory.RELIABILITY,
                priority=Priority.CRITICAL if error_rate > error_threshold * 2 else Priority.HIGH,
                description=f"Recent error rate {error_rate:.0%} exceeds {error_threshold:.0%}",
                expected_improvement=min(80.0, (error_rate - error_threshold) * 100),
                effort=Effort.MEDIUM,
                affected_metrics=["error_rate", "success_rate"],
                suggestions=[
                    "Inspect the error_occurred alerts for common failures",
                    "Add retries for transient tool failures",
                    "Validate command input before execution",
                ],
            ))

        return opportunities


__all__ = [
    "AlertCategory",
    "AlertSeverity",
    "RealTimeAlert",
    "LiveMetrics",
    "PerformanceTrends",
    "RealTimeProcessor",
]
