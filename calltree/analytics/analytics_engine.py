"""
Analytics Engine - turns execution flows into analytics

Responsibilities:
- process_trace(): one ExecutionFlow -> Analytics (CPU-bound, no I/O)
- process_traces(): many StoredTrace -> AggregatedAnalytics
- get_analytics_for_time_range(): storage range query + aggregation
- get_optimization_recommendations(): 24h lookback heuristics

Every rate is guarded against empty denominators. Persistence is
best-effort: the engine hands finished analytics to a writer and never
fails because of it.
"""

import logging
import time
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from calltree.analytics.analytics_types import (
    AggregatedAnalytics,
    Analytics,
    BenchmarkComparison,
    CpuMetrics,
    Effort,
    ErrorAnalysis,
    ExecutionMetrics,
    MemoryMetrics,
    OperationTiming,
    OpportunityCategory,
    OptimizationOpportunity,
    PatternCategory,
    PerformanceInsights,
    Priority,
    QualityMetrics,
    ResourceUtilization,
    ResponseSizeMetrics,
    StoredTrace,
    TimeRange,
    TraceFilters,
    TrendAnalysis,
    UsagePattern,
    UserSatisfaction,
)
from calltree.analytics.exceptions import BackendUnavailableError
from calltree.analytics.execution_tracer import ExecutionFlow, ToolCallRecord
from calltree.analytics.strategies import (
    BottleneckDetector,
    NoBottleneckDetector,
    NoRecommendations,
    RecommendationStrategy,
)
from config import OptimizationConfig


logger = logging.getLogger(__name__)


# Memory trend tolerance relative to the baseline
MEMORY_TREND_TOLERANCE = 0.1


@dataclass
class HeuristicFinding:
    """Result of one recommendation heuristic"""
    needs_optimization: bool
    opportunity: Optional[OptimizationOpportunity] = None


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _ratio(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator > 0 else 0.0


def empty_aggregated_analytics() -> AggregatedAnalytics:
    """All-zero aggregated analytics, returned for an empty trace list"""
    return AggregatedAnalytics(
        time_range=TimeRange(0.0, 0.0),
        trace_count=0,
        metrics=ExecutionMetrics(),
        insights=PerformanceInsights(),
        opportunities=[],
        patterns=[],
        quality=QualityMetrics(),
        trends=TrendAnalysis(),
    )


class AnalyticsEngine:
    """
    Computes analytics from execution flows

    Args:
        config: Heuristic thresholds
        storage: Storage backend for range queries (optional)
        writer: Persistence sink with submit(flow, analytics) (optional)
        bottleneck_detector: Bottleneck strategy (no-op by default)
        recommender: Recommendation strategy (no-op by default)
    """

    def __init__(
        self,
        config: Optional[OptimizationConfig] = None,
        storage=None,
        writer=None,
        bottleneck_detector: Optional[BottleneckDetector] = None,
        recommender: Optional[RecommendationStrategy] = None,
        clock=time.time,
    ):
        self.config = config or OptimizationConfig()
        self.storage = storage
        self.writer = writer
        self.bottleneck_detector = bottleneck_detector or NoBottleneckDetector()
        self.recommender = recommender or NoRecommendations()
        self._clock = clock

    # ===== Single trace =====

    def process_trace(self, flow: ExecutionFlow, stored_at: Optional[float] = None) -> Analytics:
        """
        Compute analytics for one execution flow

        Args:
            flow: Completed execution flow
            stored_at: Storage timestamp passed on to the writer

        Returns:
            Analytics referencing the flow by trace_id
        """
        metrics = self._calculate_metrics(flow)
        insights = self._generate_insights(flow, metrics)

        analytics = Analytics(
            id=f"analytics_{uuid.uuid4().hex[:16]}",
            trace_id=flow.trace_id,
            timestamp=self._clock(),
            metrics=metrics,
            insights=insights,
            opportunities=self._identify_opportunities(flow, metrics),
            patterns=self._detect_trace_patterns(metrics),
            quality=self._assess_quality(flow, metrics),
            trends=TrendAnalysis(),
            benchmark=self._benchmark(metrics),
        )

        self._persist(flow, analytics, stored_at)
        return analytics

    def _calculate_metrics(self, flow: ExecutionFlow) -> ExecutionMetrics:
        calls = flow.tool_calls
        total_calls = len(calls)

        if total_calls:
            successful = sum(1 for call in calls if call.success)
            success_rate = successful / total_calls
            average_time = _mean([call.execution_time_ms for call in calls])
        else:
            success_rate = 1.0 if flow.success else 0.0
            average_time = flow.duration_ms

        lookups = flow.external_lookups
        cache_ops = flow.cache_operations

        return ExecutionMetrics(
            total_calls=total_calls,
            average_execution_time_ms=average_time,
            success_rate=success_rate,
            error_rate=1.0 - success_rate,
            tool_usage_distribution=dict(Counter(call.tool for call in calls)),
            external_hit_rate=_ratio(sum(1 for lookup in lookups if lookup.cache_hit), len(lookups)),
            cache_efficiency=_ratio(sum(1 for op in cache_ops if op.hit), len(cache_ops)),
            memory_usage=self._memory_metrics(flow),
            cpu_usage=self._cpu_metrics(flow),
            response_size=self._response_size_metrics(flow),
        )

    @staticmethod
    def _memory_metrics(flow: ExecutionFlow) -> MemoryMetrics:
        samples = [call.memory_usage_bytes for call in flow.tool_calls]
        samples.extend(s.memory_bytes for s in (flow.resource_baseline, flow.resource_final) if s.memory_bytes)

        baseline = flow.resource_baseline.memory_bytes
        delta = flow.resource_final.memory_bytes - baseline
        trend = "stable"
        if baseline > 0:
            if delta > baseline * MEMORY_TREND_TOLERANCE:
                trend = "increasing"
            elif delta < -baseline * MEMORY_TREND_TOLERANCE:
                trend = "decreasing"

        return MemoryMetrics(
            peak_usage=float(max(samples)) if samples else 0.0,
            average_usage=_mean(samples),
            trend=trend,
        )

    @staticmethod
    def _cpu_metrics(flow: ExecutionFlow) -> CpuMetrics:
        samples = [call.cpu_percent for call in flow.tool_calls]
        return CpuMetrics(
            peak_usage=max(samples) if samples else 0.0,
            average_usage=_mean(samples),
        )

    @staticmethod
    def _response_size_metrics(flow: ExecutionFlow) -> ResponseSizeMetrics:
        sizes = [lookup.response_size for lookup in flow.external_lookups]
        distribution: Dict[str, int] = {}
        for lookup in flow.external_lookups:
            distribution[lookup.endpoint] = distribution.get(lookup.endpoint, 0) + lookup.response_size

        return ResponseSizeMetrics(
            average_size=_mean(sizes),
            peak_size=max(sizes) if sizes else 0,
            size_distribution=distribution,
        )

    def _rank_slowest(self, calls: Sequence[ToolCallRecord]) -> List[OperationTiming]:
        """Top-N tool calls by execution time (ties keep append order)"""
        limit = self.config.slowest_operations_count
        if limit <= 0 or not calls:
            return []

        total_time = sum(call.execution_time_ms for call in calls)
        frequency = Counter(call.tool for call in calls)
        ranked = sorted(calls, key=lambda call: call.execution_time_ms, reverse=True)[:limit]

        return [
            OperationTiming(
                operation=call.tool,
                execution_time_ms=call.execution_time_ms,
                percentage=_ratio(call.execution_time_ms, total_time) * 100,
                frequency=frequency[call.tool],
            )
            for call in ranked
        ]

    def _generate_insights(self, flow: ExecutionFlow, metrics: ExecutionMetrics) -> PerformanceInsights:
        return PerformanceInsights(
            bottlenecks=self.bottleneck_detector.detect(flow),
            slowest_operations=self._rank_slowest(flow.tool_calls),
            resource_utilization=ResourceUtilization(
                cpu=flow.resource_final.cpu_fraction,
                memory=flow.resource_final.memory_fraction,
            ),
            optimization_score=round(metrics.success_rate * 100),
            recommendations=self.recommender.recommend(flow, metrics),
        )

    def _identify_opportunities(
        self,
        flow: ExecutionFlow,
        metrics: ExecutionMetrics,
    ) -> List[OptimizationOpportunity]:
        opportunities = []

        if flow.cache_operations:
            opportunity = self._cache_opportunity(
                f"cache_optimization_{flow.trace_id}",
                metrics.cache_efficiency,
            )
            if opportunity:
                opportunities.append(opportunity)

        if flow.external_lookups:
            average = _mean([lookup.response_time_ms for lookup in flow.external_lookups])
            opportunity = self._external_lookup_opportunity(
                f"external_lookup_optimization_{flow.trace_id}",
                average,
            )
            if opportunity:
                opportunities.append(opportunity)

        return opportunities

    def _detect_trace_patterns(self, metrics: ExecutionMetrics) -> List[UsagePattern]:
        patterns = []
        for tool, count in metrics.tool_usage_distribution.items():
            if count > 1:
                patterns.append(UsagePattern(
                    id=f"tool_pattern_{tool}",
                    category=PatternCategory.TOOL_COMBINATION,
                    confidence=0.8,
                    description=f"Repeated use of {tool}",
                    frequency=count,
                    data={"tool": tool, "count": count},
                    insights=[f"{tool} was called {count} times in one command"],
                ))
        return patterns

    @staticmethod
    def _assess_quality(flow: ExecutionFlow, metrics: ExecutionMetrics) -> QualityMetrics:
        score = round(metrics.success_rate * 100)
        failed_calls = sum(1 for call in flow.tool_calls if not call.success)
        categories = Counter(error.error_type for error in flow.errors)
        messages = Counter(error.message for error in flow.errors)

        return QualityMetrics(
            response_quality=score,
            code_quality_impact=score,
            completeness=score,
            accuracy=score,
            user_satisfaction=UserSatisfaction(
                overall_score=score,
                response_time_satisfaction=score,
                quality_satisfaction=score,
                usability_satisfaction=score,
            ),
            error_analysis=ErrorAnalysis(
                total_errors=failed_calls,
                error_rate=metrics.error_rate,
                categories=dict(categories),
                common_errors=[message for message, _ in messages.most_common(3)],
            ),
        )

    def _benchmark(self, metrics: ExecutionMetrics) -> BenchmarkComparison:
        baseline = self.config.benchmark_baseline_ms
        current = metrics.average_execution_time_ms
        return BenchmarkComparison(
            name="command_execution",
            category="performance",
            current_value=current,
            baseline_value=baseline,
            improvement=(baseline - current) / baseline * 100,
            status="pass" if current < baseline else "fail",
            description="Average execution time against the baseline",
        )

    def _persist(self, flow: ExecutionFlow, analytics: Analytics, stored_at: Optional[float]) -> None:
        if self.writer is None:
            return
        try:
            self.writer.submit(flow, analytics, stored_at=stored_at)
        except Exception as e:
            logger.warning(f"Failed to persist trace {flow.trace_id}: {e}")

    # ===== Opportunity builders =====

    def _cache_opportunity(self, opportunity_id: str, hit_rate: float) -> Optional[OptimizationOpportunity]:
        target = self.config.cache_hit_rate
        if hit_rate >= target:
            return None

        priority = Priority.HIGH if hit_rate < self.config.cache_hit_rate_critical else Priority.MEDIUM
        return OptimizationOpportunity(
            id=opportunity_id,
            category=OpportunityCategory.CACHE,
            priority=priority,
            description=f"Cache hit rate {hit_rate:.0%} is below the {target:.0%} target",
            expected_improvement=(target - hit_rate) * 100,
            effort=Effort.LOW,
            affected_metrics=["cache_efficiency", "response_time"],
            suggestions=[
                "Implement cache warming for frequently used keys",
                "Optimize cache key generation",
                "Increase cache TTL for stable data",
            ],
        )

    def _external_lookup_opportunity(
        self,
        opportunity_id: str,
        average_ms: float,
    ) -> Optional[OptimizationOpportunity]:
        threshold = self.config.external_response_time_ms
        if average_ms <= threshold:
            return None

        return OptimizationOpportunity(
            id=opportunity_id,
            category=OpportunityCategory.EXTERNAL_LOOKUP,
            priority=Priority.HIGH if average_ms > threshold * 2 else Priority.MEDIUM,
            description=f"External lookups average {average_ms:.0f}ms (target {threshold:.0f}ms)",
            expected_improvement=min(50.0, (average_ms - threshold) / 10),
            effort=Effort.MEDIUM,
            affected_metrics=["response_time", "external_hit_rate"],
            suggestions=[
                "Cache external lookup responses",
                "Batch related lookups",
                "Request smaller response payloads",
            ],
        )

    # ===== Aggregation =====

    def process_traces(self, traces: Sequence[StoredTrace]) -> AggregatedAnalytics:
        """
        Aggregate analytics over a set of stored traces

        Args:
            traces: Stored traces to aggregate

        Returns:
            AggregatedAnalytics (all zeros for an empty list)
        """
        if not traces:
            return empty_aggregated_analytics()

        total = len(traces)
        successful = sum(1 for trace in traces if trace.success)
        success_rate = successful / total
        per_trace = [trace.analytics.metrics for trace in traces]

        distribution: Counter = Counter()
        size_distribution: Counter = Counter()
        for metrics in per_trace:
            distribution.update(metrics.tool_usage_distribution)
            size_distribution.update(metrics.response_size.size_distribution)

        metrics = ExecutionMetrics(
            total_calls=total,
            average_execution_time_ms=_mean([trace.duration_ms for trace in traces]),
            success_rate=success_rate,
            error_rate=1.0 - success_rate,
            tool_usage_distribution=dict(distribution),
            external_hit_rate=_mean([m.external_hit_rate for m in per_trace]),
            cache_efficiency=_mean([m.cache_efficiency for m in per_trace]),
            memory_usage=MemoryMetrics(
                peak_usage=max(m.memory_usage.peak_usage for m in per_trace),
                average_usage=_mean([m.memory_usage.average_usage for m in per_trace]),
            ),
            cpu_usage=CpuMetrics(
                peak_usage=max(m.cpu_usage.peak_usage for m in per_trace),
                average_usage=_mean([m.cpu_usage.average_usage for m in per_trace]),
            ),
            response_size=ResponseSizeMetrics(
                average_size=_mean([m.response_size.average_size for m in per_trace]),
                peak_size=max(m.response_size.peak_size for m in per_trace),
                size_distribution=dict(size_distribution),
            ),
        )

        all_calls = [call for trace in traces for call in trace.execution_flow.tool_calls]
        insights = PerformanceInsights(
            slowest_operations=self._rank_slowest(all_calls),
            optimization_score=round(success_rate * 100),
        )

        score = round(success_rate * 100)
        error_categories: Counter = Counter()
        for trace in traces:
            error_categories.update(trace.analytics.quality.error_analysis.categories)
        failure_messages = Counter(
            trace.error_message for trace in traces if not trace.success and trace.error_message
        )

        quality = QualityMetrics(
            response_quality=score,
            code_quality_impact=score,
            completeness=score,
            accuracy=score,
            user_satisfaction=UserSatisfaction(
                overall_score=score,
                response_time_satisfaction=score,
                quality_satisfaction=score,
                usability_satisfaction=score,
            ),
            error_analysis=ErrorAnalysis(
                total_errors=total - successful,
                error_rate=1.0 - success_rate,
                categories=dict(error_categories),
                common_errors=[message for message, _ in failure_messages.most_common(3)],
            ),
        )

        stored_times = [trace.stored_at for trace in traces]
        return AggregatedAnalytics(
            time_range=TimeRange(min(stored_times), max(stored_times)),
            trace_count=total,
            metrics=metrics,
            insights=insights,
            opportunities=self._run_heuristics(traces),
            patterns=self._detect_aggregate_patterns(dict(distribution)),
            quality=quality,
            trends=TrendAnalysis(),
        )

    def _detect_aggregate_patterns(self, distribution: Dict[str, int]) -> List[UsagePattern]:
        min_count = self.config.usage_pattern_min_count
        patterns = []
        for tool, count in sorted(distribution.items(), key=lambda item: (-item[1], item[0])):
            if count > min_count:
                patterns.append(UsagePattern(
                    id=f"tool_frequency_{tool}",
                    category=PatternCategory.TOOL_FREQUENCY,
                    confidence=min(1.0, count / 20),
                    description=f"{tool} is used frequently",
                    frequency=count,
                    data={"tool": tool, "count": count},
                    insights=[f"{tool} was called {count} times across the selected traces"],
                ))
        return patterns

    # ===== Storage-backed queries =====

    def get_analytics_for_time_range(self, start_time: float, end_time: float) -> AggregatedAnalytics:
        """
        Aggregate analytics for stored traces in [start_time, end_time]

        Raises:
            BackendUnavailableError: No storage backend is configured
        """
        if self.storage is None:
            raise BackendUnavailableError("Time range analytics require a storage backend")

        traces = self.storage.get_traces(TraceFilters(start_time=start_time, end_time=end_time))
        return self.process_traces(traces)

    def get_optimization_recommendations(self) -> List[OptimizationOpportunity]:
        """
        Run the recommendation heuristics over the lookback window

        Returns:
            Positive findings only (empty without storage)
        """
        if self.storage is None:
            logger.warning("No storage backend configured, skipping optimization recommendations")
            return []

        end_time = self._clock()
        start_time = end_time - self.config.lookback_hours * 3600

        try:
            traces = self.storage.get_traces(TraceFilters(start_time=start_time, end_time=end_time))
        except Exception as e:
            logger.warning(f"Failed to load traces for recommendations: {e}")
            return []

        return self._run_heuristics(traces)

    def _run_heuristics(self, traces: Sequence[StoredTrace]) -> List[OptimizationOpportunity]:
        findings = [
            self.analyze_cache_performance(traces),
            self.analyze_external_lookup_performance(traces),
            self.analyze_tool_performance(traces),
        ]
        return [f.opportunity for f in findings if f.needs_optimization and f.opportunity]

    def analyze_cache_performance(self, traces: Sequence[StoredTrace]) -> HeuristicFinding:
        """Pooled cache hit rate across all cache operations"""
        operations = [op for trace in traces for op in trace.execution_flow.cache_operations]
        if not operations:
            return HeuristicFinding(False)

        hit_rate = sum(1 for op in operations if op.hit) / len(operations)
        opportunity = self._cache_opportunity("cache_optimization", hit_rate)
        return HeuristicFinding(opportunity is not None, opportunity)

    def analyze_external_lookup_performance(self, traces: Sequence[StoredTrace]) -> HeuristicFinding:
        """Pooled average external lookup latency"""
        lookups = [lookup for trace in traces for lookup in trace.execution_flow.external_lookups]
        if not lookups:
            return HeuristicFinding(False)

        average = _mean([lookup.response_time_ms for lookup in lookups])
        opportunity = self._external_lookup_opportunity("external_lookup_optimization", average)
        return HeuristicFinding(opportunity is not None, opportunity)

    def analyze_tool_performance(self, traces: Sequence[StoredTrace]) -> HeuristicFinding:
        """Pooled average tool execution time"""
        calls = [call for trace in traces for call in trace.execution_flow.tool_calls]
        if not calls:
            return HeuristicFinding(False)

        threshold = self.config.tool_execution_time_ms
        average = _mean([call.execution_time_ms for call in calls])
        if average <= threshold:
            return HeuristicFinding(False)

        per_tool: Dict[str, List[float]] = {}
        for call in calls:
            per_tool.setdefault(call.tool, []).append(call.execution_time_ms)
        slowest_tool = max(per_tool, key=lambda tool: _mean(per_tool[tool]))

        return HeuristicFinding(True, OptimizationOpportunity(
            id="tool_optimization",
            category=OpportunityCategory.TOOL_CHAIN,
            priority=Priority.HIGH if average > threshold * 2 else Priority.MEDIUM,
            description=(
                f"Tool calls average {average:.0f}ms (target {threshold:.0f}ms); "
                f"slowest tool is {slowest_tool}"
            ),
            expected_improvement=min(50.0, (average - threshold) / average * 100),
            effort=Effort.MEDIUM,
            affected_metrics=["execution_time", "success_rate"],
            suggestions=[
                f"Profile {slowest_tool} for slow paths",
                "Run independent tool calls in parallel",
                "Cache results of deterministic tool calls",
            ],
        ))


__all__ = [
    "AnalyticsEngine",
    "HeuristicFinding",
    "empty_aggregated_analytics",
]
