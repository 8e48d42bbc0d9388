"""
Analytics API Routes

Read surface over the process-wide AnalyticsIntegration.

Endpoints:
- GET  /api/v1/analytics/status - Pipeline status flags
- GET  /api/v1/analytics/metrics/live - Live gauges and health score
- GET  /api/v1/analytics/metrics/prometheus - Prometheus text exposition
- GET  /api/v1/analytics/alerts - Active (or all) alerts
- POST /api/v1/analytics/alerts/:alert_id/resolve - Resolve an alert
- GET  /api/v1/analytics/traces/recent - Recent traces from the rolling buffer
- GET  /api/v1/analytics/traces/:trace_id - One trace, buffer first then storage
- GET  /api/v1/analytics/recommendations - Optimization opportunities
- GET  /api/v1/analytics/trends - Response time / error / memory series
- GET  /api/v1/analytics/patterns - Recent tool usage patterns
- GET  /api/v1/analytics/report - Aggregated analytics for a time range
- GET  /api/v1/analytics/export - Stored traces as a JSON download
"""

import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from calltree.analytics.integration import AnalyticsIntegration
from calltree.api.errors import (
    NotFoundException,
    ServiceUnavailableException,
    ValidationException,
)
from calltree.api.metrics import export_metrics
from calltree.api.state import get_app_state


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/analytics", tags=["analytics"])


def get_integration() -> AnalyticsIntegration:
    """Integration stored by the application lifespan"""
    integration = get_app_state().get("analytics")
    if integration is None:
        raise ServiceUnavailableException("Analytics is not initialized")
    return integration


# ===== Response Models =====

class TraceSummary(BaseModel):
    """Summary of a stored trace"""
    trace_id: str
    command: str
    stored_at: float
    duration_ms: float
    success: bool
    error_message: Optional[str] = None
    tool_calls: int
    optimization_score: float


class ResolveAlertResponse(BaseModel):
    """Result of resolving an alert"""
    alert_id: str
    resolved: bool = True


class ReportResponse(BaseModel):
    """Aggregated analytics for a time range"""
    start_time: float
    end_time: float
    trace_count: int
    analytics: Dict[str, Any] = Field(description="Aggregated metrics, insights and opportunities")


# ===== Endpoints =====

@router.get("/status")
async def get_status(integration: AnalyticsIntegration = Depends(get_integration)):
    """Initialization, storage and real-time processing flags"""
    return integration.get_analytics_status().to_dict()


@router.get("/metrics/live")
async def get_live_metrics(integration: AnalyticsIntegration = Depends(get_integration)):
    """Current request rate, response time, error rate, resources and health"""
    return integration.get_live_metrics().to_dict()


@router.get("/metrics/prometheus")
async def get_prometheus_metrics(integration: AnalyticsIntegration = Depends(get_integration)):
    """Live gauges and request counters in Prometheus text format"""
    return Response(content=export_metrics(integration), media_type=CONTENT_TYPE_LATEST)


@router.get("/alerts")
async def list_alerts(
    include_resolved: bool = Query(False, description="Include resolved alerts"),
    integration: AnalyticsIntegration = Depends(get_integration)
):
    """List alerts, unresolved only unless include_resolved is set"""
    if include_resolved and integration.processor is not None:
        alerts = integration.processor.get_alert_history()
    else:
        alerts = integration.get_active_alerts()
    return [alert.to_dict() for alert in alerts]


@router.post("/alerts/{alert_id}/resolve", response_model=ResolveAlertResponse)
async def resolve_alert(
    alert_id: str,
    integration: AnalyticsIntegration = Depends(get_integration)
):
    """
    Resolve an alert

    Resolving an already resolved alert succeeds again; unknown ids are 404.
    """
    if not integration.resolve_alert(alert_id):
        raise NotFoundException(
            f"No alert found with id {alert_id}",
            resource_type="alert",
            resource_id=alert_id
        )
    return ResolveAlertResponse(alert_id=alert_id)


@router.get("/traces/recent", response_model=List[TraceSummary])
async def list_recent_traces(
    count: int = Query(50, ge=1, le=1000, description="Maximum results"),
    integration: AnalyticsIntegration = Depends(get_integration)
):
    """Most recent traces in the real-time buffer, newest first"""
    return [
        TraceSummary(
            trace_id=trace.id,
            command=trace.command,
            stored_at=trace.stored_at,
            duration_ms=trace.duration_ms,
            success=trace.success,
            error_message=trace.error_message,
            tool_calls=len(trace.execution_flow.tool_calls),
            optimization_score=trace.analytics.insights.optimization_score,
        )
        for trace in integration.get_recent_traces(count)
    ]


@router.get("/traces/{trace_id}")
async def get_trace(
    trace_id: str,
    integration: AnalyticsIntegration = Depends(get_integration)
):
    """Full stored trace: flow, analytics and metadata"""
    trace = integration.get_trace(trace_id)
    if trace is None:
        raise NotFoundException(
            f"No trace found with id {trace_id}",
            resource_type="trace",
            resource_id=trace_id
        )
    return trace.to_dict()


@router.get("/recommendations")
async def list_recommendations(integration: AnalyticsIntegration = Depends(get_integration)):
    """Optimization opportunities from storage and the rolling buffer"""
    return [opportunity.to_dict() for opportunity in integration.get_optimization_opportunities()]


@router.get("/trends")
async def get_trends(integration: AnalyticsIntegration = Depends(get_integration)):
    """Parallel series over recent traces, oldest first"""
    return integration.get_performance_trends().to_dict()


@router.get("/patterns")
async def list_patterns(integration: AnalyticsIntegration = Depends(get_integration)):
    """Tool usage patterns over recent traces"""
    return [pattern.to_dict() for pattern in integration.get_usage_patterns()]


@router.get("/report", response_model=ReportResponse)
async def get_report(
    start_time: Optional[float] = Query(None, description="Range start (timestamp), defaults to 24h ago"),
    end_time: Optional[float] = Query(None, description="Range end (timestamp), defaults to now"),
    integration: AnalyticsIntegration = Depends(get_integration)
):
    """
    Aggregated analytics for stored traces in [start_time, end_time]

    Requires a storage backend; BackendUnavailableError is turned into a
    503 by the application's exception handler.
    """
    if end_time is None:
        end_time = time.time()
    if start_time is None:
        start_time = end_time - 24 * 3600
    if start_time > end_time:
        raise ValidationException("start_time must not be after end_time", field="start_time")

    aggregated = integration.get_analytics_for_time_range(start_time, end_time)
    return ReportResponse(
        start_time=start_time,
        end_time=end_time,
        trace_count=aggregated.trace_count,
        analytics=aggregated.to_dict(),
    )


@router.get("/export")
async def export_traces(
    start_time: Optional[float] = Query(None, description="Range start (timestamp)"),
    end_time: Optional[float] = Query(None, description="Range end (timestamp)"),
    integration: AnalyticsIntegration = Depends(get_integration)
):
    """
    Stored traces as a JSON array download

    Without bounds every stored trace is exported.
    """
    if start_time is not None and end_time is not None and start_time > end_time:
        raise ValidationException("start_time must not be after end_time", field="start_time")

    content = integration.export_data(start_time, end_time)
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="calltree-traces.json"'},
    )


__all__ = ["router", "get_integration"]
