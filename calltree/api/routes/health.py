"""
Health check routes
"""

import time
from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel, Field

from calltree import __version__

router = APIRouter()

_start_time = time.time()


class HealthStatus(BaseModel):
    """Service health"""
    status: str = Field(description="Service status: healthy/unhealthy")
    timestamp: str = Field(description="Current UTC timestamp")
    version: str = Field(description="Package version")
    uptime_seconds: float = Field(description="Seconds since import")


@router.get("/health", response_model=HealthStatus)
async def health_check():
    """Report service liveness and uptime"""
    return HealthStatus(
        status="healthy",
        timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        version=__version__,
        uptime_seconds=time.time() - _start_time
    )


__all__ = ["router"]
