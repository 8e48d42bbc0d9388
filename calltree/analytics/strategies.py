"""
Pluggable analysis strategies

Analyses that have no agreed algorithm yet are expressed as small
strategy classes with a trivial default, so the engine's control flow
does not change when a real implementation is swapped in:

- ResourceSampler: process memory/CPU snapshots (psutil by default)
- BottleneckDetector: bottleneck list for a trace (empty by default)
- RecommendationStrategy: textual performance recommendations (empty by default)
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import psutil

if TYPE_CHECKING:
    from calltree.analytics.analytics_types import (
        Bottleneck,
        ExecutionMetrics,
        PerformanceRecommendation,
    )
    from calltree.analytics.execution_tracer import ExecutionFlow


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceSnapshot:
    """Point-in-time process resource usage"""
    memory_bytes: int = 0
    memory_fraction: float = 0.0
    cpu_percent: float = 0.0
    timestamp: float = 0.0

    @property
    def cpu_fraction(self) -> float:
        return min(1.0, max(0.0, self.cpu_percent / 100.0))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResourceSnapshot":
        if not data:
            return cls()
        return cls(
            memory_bytes=int(data.get("memory_bytes", 0)),
            memory_fraction=float(data.get("memory_fraction", 0.0)),
            cpu_percent=float(data.get("cpu_percent", 0.0)),
            timestamp=float(data.get("timestamp", 0.0)),
        )


class ResourceSampler(ABC):
    """Source of process resource snapshots"""

    @abstractmethod
    def snapshot(self) -> ResourceSnapshot:
        """Take a snapshot of current process resource usage"""
        pass


class ProcessResourceSampler(ResourceSampler):
    """
    psutil-backed sampler for the current process

    CPU percent is normalized by the logical CPU count so that 100 means
    all cores are busy. The first cpu_percent() call after construction
    always reports 0.0 (psutil needs a previous reading to diff against).
    """

    def __init__(self, pid: Optional[int] = None):
        self._process = psutil.Process(pid)
        self._cpu_count = psutil.cpu_count() or 1
        # Prime the CPU counter
        self._process.cpu_percent(interval=None)

    def snapshot(self) -> ResourceSnapshot:
        try:
            with self._process.oneshot():
                memory_bytes = self._process.memory_info().rss
                memory_fraction = self._process.memory_percent() / 100.0
                cpu_percent = self._process.cpu_percent(interval=None) / self._cpu_count
        except psutil.Error as e:
            logger.warning(f"Failed to sample process resources: {e}")
            return ResourceSnapshot(timestamp=time.time())

        return ResourceSnapshot(
            memory_bytes=memory_bytes,
            memory_fraction=memory_fraction,
            cpu_percent=cpu_percent,
            timestamp=time.time(),
        )


class StaticResourceSampler(ResourceSampler):
    """Sampler that always reports the same values (tests, disabled monitoring)"""

    def __init__(self, memory_bytes: int = 0, memory_fraction: float = 0.0, cpu_percent: float = 0.0):
        self.memory_bytes = memory_bytes
        self.memory_fraction = memory_fraction
        self.cpu_percent = cpu_percent

    def snapshot(self) -> ResourceSnapshot:
        return ResourceSnapshot(
            memory_bytes=self.memory_bytes,
            memory_fraction=self.memory_fraction,
            cpu_percent=self.cpu_percent,
            timestamp=time.time(),
        )


class BottleneckDetector(ABC):
    """Finds bottlenecks in a completed execution flow"""

    @abstractmethod
    def detect(self, flow: "ExecutionFlow") -> List["Bottleneck"]:
        pass


class NoBottleneckDetector(BottleneckDetector):
    """Default detector: reports nothing"""

    def detect(self, flow: "ExecutionFlow") -> List["Bottleneck"]:
        return []


class RecommendationStrategy(ABC):
    """Produces textual performance recommendations for a trace"""

    @abstractmethod
    def recommend(
        self,
        flow: "ExecutionFlow",
        metrics: "ExecutionMetrics",
    ) -> List["PerformanceRecommendation"]:
        pass


class NoRecommendations(RecommendationStrategy):
    """Default recommender: reports nothing"""

    def recommend(
        self,
        flow: "ExecutionFlow",
        metrics: "ExecutionMetrics",
    ) -> List["PerformanceRecommendation"]:
        return []


__all__ = [
    "ResourceSnapshot",
    "ResourceSampler",
    "ProcessResourceSampler",
    "StaticResourceSampler",
    "BottleneckDetector",
    "NoBottleneckDetector",
    "RecommendationStrategy",
    "NoRecommendations",
]
