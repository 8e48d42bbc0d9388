"""
Call-tree analytics

Captures what a tool-calling agent does while servicing one command and
turns it into metrics, insights, alerts and optimization suggestions:

Components:
- ExecutionTracer: records tool calls, lookups, cache operations, errors
- AnalyticsEngine: computes Analytics per trace and aggregates over many
- RealTimeProcessor: rolling buffer, live metrics, threshold alerts
- StorageBackend: pluggable persistence (SQLite, JSON lines, memory)
- AnalyticsIntegration: wraps command execution and exposes read APIs

Architecture:
    command -> ExecutionTracer -> ExecutionFlow
            -> AnalyticsEngine -> Analytics -> AsyncTraceWriter -> StorageBackend
                               -> RealTimeProcessor -> EventBus -> readers

Usage:
    from calltree.analytics import AnalyticsIntegration

    integration = AnalyticsIntegration()
    outcome = integration.execute("summarize repo", lambda tracer: run(tracer))
"""

from calltree.analytics.execution_tracer import (
    CacheOperation,
    CacheOperationRecord,
    ErrorRecord,
    ExecutionFlow,
    ExecutionTracer,
    ExternalLookupRecord,
    PerformanceSample,
    ToolCallRecord,
    UserPatternSignal,
)

from calltree.analytics.analytics_types import (
    AggregatedAnalytics,
    Analytics,
    ExecutionMetrics,
    OptimizationOpportunity,
    PerformanceInsights,
    QualityMetrics,
    StoredTrace,
    TraceFilters,
    UsagePattern,
)

from calltree.analytics.analytics_engine import (
    AnalyticsEngine,
    empty_aggregated_analytics,
)

from calltree.analytics.realtime_processor import (
    LiveMetrics,
    PerformanceTrends,
    RealTimeAlert,
    RealTimeProcessor,
)

from calltree.analytics.events import AnalyticsEvent, EventBus

from calltree.analytics.trace_store import (
    InMemoryTraceStorage,
    JsonFileTraceStorage,
    SQLiteTraceStorage,
    StorageBackend,
    create_storage_backend,
)

from calltree.analytics.storage_writer import AsyncTraceWriter

from calltree.analytics.integration import (
    AnalyticsIntegration,
    AnalyticsStatus,
    CommandResult,
    get_analytics_integration,
    reset_analytics_integration,
)

from calltree.analytics.exceptions import (
    AnalyticsError,
    BackendUnavailableError,
    StorageError,
)

__all__ = [
    # Trace Recorder
    "CacheOperation",
    "CacheOperationRecord",
    "ErrorRecord",
    "ExecutionFlow",
    "ExecutionTracer",
    "ExternalLookupRecord",
    "PerformanceSample",
    "ToolCallRecord",
    "UserPatternSignal",

    # Analytics
    "AggregatedAnalytics",
    "Analytics",
    "AnalyticsEngine",
    "ExecutionMetrics",
    "OptimizationOpportunity",
    "PerformanceInsights",
    "QualityMetrics",
    "StoredTrace",
    "TraceFilters",
    "UsagePattern",
    "empty_aggregated_analytics",

    # Real-time
    "AnalyticsEvent",
    "EventBus",
    "LiveMetrics",
    "PerformanceTrends",
    "RealTimeAlert",
    "RealTimeProcessor",

    # Storage
    "AsyncTraceWriter",
    "InMemoryTraceStorage",
    "JsonFileTraceStorage",
    "SQLiteTraceStorage",
    "StorageBackend",
    "create_storage_backend",

    # Integration
    "AnalyticsIntegration",
    "AnalyticsStatus",
    "CommandResult",
    "get_analytics_integration",
    "reset_analytics_integration",

    # Errors
    "AnalyticsError",
    "BackendUnavailableError",
    "StorageError",
]
