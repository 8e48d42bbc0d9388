"""
Analytics data types

Computed results derived from execution flows. An Analytics record is
produced once per ExecutionFlow and references it by trace_id only;
AggregatedAnalytics is produced from an explicit list of StoredTrace.
"""

import time
from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from calltree.analytics.execution_tracer import ExecutionFlow


class Priority(str, Enum):
    """Optimization opportunity priority"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Effort(str, Enum):
    """Estimated implementation effort"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class OpportunityCategory(str, Enum):
    """Optimization opportunity category"""
    CACHE = "cache"
    EXTERNAL_LOOKUP = "external_lookup"
    TOOL_CHAIN = "tool_chain"
    ALGORITHM = "algorithm"
    RELIABILITY = "reliability"


class PatternCategory(str, Enum):
    """Usage pattern category"""
    TOOL_COMBINATION = "tool_combination"
    TOOL_FREQUENCY = "tool_frequency"
    COMMAND_SEQUENCE = "command_sequence"


def _pick(cls, data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in (data or {}).items() if k in names}


# ===== Metrics =====

@dataclass
class MemoryMetrics:
    """Memory summary in bytes"""
    peak_usage: float = 0.0
    average_usage: float = 0.0
    trend: str = "stable"
    leaks_detected: bool = False


@dataclass
class CpuMetrics:
    """CPU summary in percent"""
    peak_usage: float = 0.0
    average_usage: float = 0.0
    trend: str = "stable"
    intensive_operations: List[str] = field(default_factory=list)


@dataclass
class ResponseSizeMetrics:
    """External lookup response sizes in bytes"""
    average_size: float = 0.0
    peak_size: int = 0
    size_distribution: Dict[str, int] = field(default_factory=dict)


@dataclass
class ExecutionMetrics:
    """Reduced metrics for one trace or a set of traces"""
    total_calls: int = 0
    average_execution_time_ms: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    tool_usage_distribution: Dict[str, int] = field(default_factory=dict)
    external_hit_rate: float = 0.0
    cache_efficiency: float = 0.0
    memory_usage: MemoryMetrics = field(default_factory=MemoryMetrics)
    cpu_usage: CpuMetrics = field(default_factory=CpuMetrics)
    response_size: ResponseSizeMetrics = field(default_factory=ResponseSizeMetrics)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExecutionMetrics":
        values = _pick(cls, data)
        values["memory_usage"] = MemoryMetrics(**_pick(MemoryMetrics, data.get("memory_usage")))
        values["cpu_usage"] = CpuMetrics(**_pick(CpuMetrics, data.get("cpu_usage")))
        values["response_size"] = ResponseSizeMetrics(**_pick(ResponseSizeMetrics, data.get("response_size")))
        return cls(**values)


# ===== Insights =====

@dataclass
class Bottleneck:
    """A detected bottleneck"""
    id: str
    category: str
    severity: Priority
    description: str
    impact: float = 0.0
    solutions: List[str] = field(default_factory=list)
    related_operations: List[str] = field(default_factory=list)


@dataclass
class OperationTiming:
    """Entry in the slowest-operations ranking"""
    operation: str
    execution_time_ms: float
    percentage: float = 0.0
    frequency: int = 1
    trend: str = "stable"


@dataclass
class ResourceUtilization:
    """Resource utilization snapshot (fractions 0-1)"""
    cpu: float = 0.0
    memory: float = 0.0
    io: float = 0.0
    network: float = 0.0


@dataclass
class ScalabilityMetrics:
    """Scalability estimates (not measured yet, zero by default)"""
    requests_per_second_capacity: float = 0.0
    concurrent_users: int = 0
    response_time_under_load_ms: float = 0.0
    scaling_efficiency: float = 0.0


@dataclass
class PerformanceRecommendation:
    """Textual performance recommendation"""
    category: str
    description: str
    impact: str = "medium"
    effort: Effort = Effort.MEDIUM


@dataclass
class PerformanceInsights:
    """Performance insights for a trace or a set of traces"""
    bottlenecks: List[Bottleneck] = field(default_factory=list)
    slowest_operations: List[OperationTiming] = field(default_factory=list)
    resource_utilization: ResourceUtilization = field(default_factory=ResourceUtilization)
    scalability: ScalabilityMetrics = field(default_factory=ScalabilityMetrics)
    optimization_score: int = 0
    recommendations: List[PerformanceRecommendation] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PerformanceInsights":
        return cls(
            bottlenecks=[Bottleneck(**_pick(Bottleneck, b)) for b in data.get("bottlenecks", [])],
            slowest_operations=[
                OperationTiming(**_pick(OperationTiming, o)) for o in data.get("slowest_operations", [])
            ],
            resource_utilization=ResourceUtilization(
                **_pick(ResourceUtilization, data.get("resource_utilization"))
            ),
            scalability=ScalabilityMetrics(**_pick(ScalabilityMetrics, data.get("scalability"))),
            optimization_score=data.get("optimization_score", 0),
            recommendations=[
                PerformanceRecommendation(**_pick(PerformanceRecommendation, r))
                for r in data.get("recommendations", [])
            ],
        )


# ===== Opportunities & Patterns =====

@dataclass
class OptimizationOpportunity:
    """A prioritized, actionable finding"""
    id: str
    category: OpportunityCategory
    priority: Priority
    description: str
    expected_improvement: float
    effort: Effort
    affected_metrics: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def __post_init__(self):
        """Convert string enums if needed"""
        if not isinstance(self.category, OpportunityCategory):
            self.category = OpportunityCategory(self.category)
        if not isinstance(self.priority, Priority):
            self.priority = Priority(self.priority)
        if not isinstance(self.effort, Effort):
            self.effort = Effort(self.effort)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["category"] = self.category.value
        result["priority"] = self.priority.value
        result["effort"] = self.effort.value
        return result


@dataclass
class UsagePattern:
    """A detected recurring behavior"""
    id: str
    category: PatternCategory
    confidence: float
    description: str
    frequency: int = 0
    data: Dict[str, Any] = field(default_factory=dict)
    insights: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.category, PatternCategory):
            self.category = PatternCategory(self.category)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["category"] = self.category.value
        return result


# ===== Quality =====

@dataclass
class UserSatisfaction:
    """User satisfaction proxies (0-100)"""
    overall_score: int = 0
    response_time_satisfaction: int = 0
    quality_satisfaction: int = 0
    usability_satisfaction: int = 0


@dataclass
class ErrorAnalysis:
    """Error breakdown"""
    total_errors: int = 0
    error_rate: float = 0.0
    categories: Dict[str, int] = field(default_factory=dict)
    common_errors: List[str] = field(default_factory=list)


@dataclass
class QualityMetrics:
    """Quality scores (0-100), proportional to success rate"""
    response_quality: int = 0
    code_quality_impact: int = 0
    completeness: int = 0
    accuracy: int = 0
    user_satisfaction: UserSatisfaction = field(default_factory=UserSatisfaction)
    error_analysis: ErrorAnalysis = field(default_factory=ErrorAnalysis)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QualityMetrics":
        values = _pick(cls, data)
        values["user_satisfaction"] = UserSatisfaction(**_pick(UserSatisfaction, data.get("user_satisfaction")))
        values["error_analysis"] = ErrorAnalysis(**_pick(ErrorAnalysis, data.get("error_analysis")))
        return cls(**values)


@dataclass
class TrendAnalysis:
    """Trend placeholders, filled by time-series reporting"""
    performance_trends: List[Dict[str, Any]] = field(default_factory=list)
    usage_trends: List[Dict[str, Any]] = field(default_factory=list)
    quality_trends: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BenchmarkComparison:
    """Comparison against a fixed baseline"""
    name: str
    category: str
    current_value: float
    baseline_value: float
    improvement: float
    status: str
    description: str = ""


# ===== Top-level records =====

@dataclass
class Analytics:
    """
    Analytics - computed result for one execution flow

    Holds the trace_id of its source flow, never the flow itself.
    """
    id: str
    trace_id: str
    timestamp: float
    metrics: ExecutionMetrics
    insights: PerformanceInsights
    opportunities: List[OptimizationOpportunity] = field(default_factory=list)
    patterns: List[UsagePattern] = field(default_factory=list)
    quality: QualityMetrics = field(default_factory=QualityMetrics)
    trends: TrendAnalysis = field(default_factory=TrendAnalysis)
    benchmark: Optional[BenchmarkComparison] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        result = asdict(self)
        result["opportunities"] = [o.to_dict() for o in self.opportunities]
        result["patterns"] = [p.to_dict() for p in self.patterns]
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Analytics":
        benchmark = data.get("benchmark")
        return cls(
            id=data["id"],
            trace_id=data["trace_id"],
            timestamp=data.get("timestamp", 0.0),
            metrics=ExecutionMetrics.from_dict(data.get("metrics") or {}),
            insights=PerformanceInsights.from_dict(data.get("insights") or {}),
            opportunities=[
                OptimizationOpportunity(**_pick(OptimizationOpportunity, o))
                for o in data.get("opportunities", [])
            ],
            patterns=[UsagePattern(**_pick(UsagePattern, p)) for p in data.get("patterns", [])],
            quality=QualityMetrics.from_dict(data.get("quality") or {}),
            trends=TrendAnalysis(**_pick(TrendAnalysis, data.get("trends"))),
            benchmark=BenchmarkComparison(**_pick(BenchmarkComparison, benchmark)) if benchmark else None,
        )


@dataclass
class TimeRange:
    """Closed time interval in epoch seconds"""
    start: float = 0.0
    end: float = 0.0


@dataclass
class AggregatedAnalytics:
    """Rolled-up analytics over an explicit list of stored traces"""
    time_range: TimeRange
    trace_count: int
    metrics: ExecutionMetrics
    insights: PerformanceInsights
    opportunities: List[OptimizationOpportunity] = field(default_factory=list)
    patterns: List[UsagePattern] = field(default_factory=list)
    quality: QualityMetrics = field(default_factory=QualityMetrics)
    trends: TrendAnalysis = field(default_factory=TrendAnalysis)

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["opportunities"] = [o.to_dict() for o in self.opportunities]
        result["patterns"] = [p.to_dict() for p in self.patterns]
        return result


@dataclass(frozen=True)
class StoredTrace:
    """
    StoredTrace - persistence wrapper for one completed command

    Keyed by the execution flow's trace id, so a flow belongs to exactly
    one stored trace.
    """
    id: str
    command: str
    options: Dict[str, Any]
    context: Dict[str, Any]
    execution_flow: ExecutionFlow
    analytics: Analytics
    stored_at: float
    duration_ms: float
    success: bool
    error_message: Optional[str] = None

    @classmethod
    def from_flow(
        cls,
        flow: ExecutionFlow,
        analytics: Analytics,
        stored_at: Optional[float] = None,
    ) -> "StoredTrace":
        return cls(
            id=flow.trace_id,
            command=flow.command,
            options=dict(flow.options),
            context=dict(flow.context),
            execution_flow=flow,
            analytics=analytics,
            stored_at=time.time() if stored_at is None else stored_at,
            duration_ms=flow.duration_ms,
            success=flow.success,
            error_message=flow.error_message,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "command": self.command,
            "options": self.options,
            "context": self.context,
            "execution_flow": self.execution_flow.to_dict(),
            "analytics": self.analytics.to_dict(),
            "stored_at": self.stored_at,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "error_message": self.error_message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoredTrace":
        return cls(
            id=data["id"],
            command=data.get("command", ""),
            options=data.get("options") or {},
            context=data.get("context") or {},
            execution_flow=ExecutionFlow.from_dict(data["execution_flow"]),
            analytics=Analytics.from_dict(data["analytics"]),
            stored_at=data["stored_at"],
            duration_ms=data.get("duration_ms", 0.0),
            success=bool(data.get("success", False)),
            error_message=data.get("error_message"),
        )


@dataclass
class TraceFilters:
    """Query filters for storage backends (time bounds are inclusive)"""
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    commands: Optional[List[str]] = None
    success: Optional[bool] = None
    tools: Optional[List[str]] = None
    limit: Optional[int] = None

    def matches(self, trace: StoredTrace) -> bool:
        """Evaluate the filters against a trace in memory"""
        if self.start_time is not None and trace.stored_at < self.start_time:
            return False
        if self.end_time is not None and trace.stored_at > self.end_time:
            return False
        if self.commands and trace.command not in self.commands:
            return False
        if self.success is not None and trace.success != self.success:
            return False
        if self.tools:
            used = {call.tool for call in trace.execution_flow.tool_calls}
            if not used.intersection(self.tools):
                return False
        return True


__all__ = [
    "Priority",
    "Effort",
    "OpportunityCategory",
    "PatternCategory",
    "MemoryMetrics",
    "CpuMetrics",
    "ResponseSizeMetrics",
    "ExecutionMetrics",
    "Bottleneck",
    "OperationTiming",
    "ResourceUtilization",
    "ScalabilityMetrics",
    "PerformanceRecommendation",
    "PerformanceInsights",
    "OptimizationOpportunity",
    "UsagePattern",
    "UserSatisfaction",
    "ErrorAnalysis",
    "QualityMetrics",
    "TrendAnalysis",
    "BenchmarkComparison",
    "Analytics",
    "TimeRange",
    "AggregatedAnalytics",
    "StoredTrace",
    "TraceFilters",
]
