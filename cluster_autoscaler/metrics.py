"""
Internal metrics of the autoscaling loop.

Keeps a bounded time series per metric (tick phase durations, cluster sizes,
scaling activity, errors) and samples the autoscaler process itself through
psutil.
"""

import statistics
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, Optional
import logging

import psutil

from .errors import ErrorType

logger = logging.getLogger(__name__)


class MetricType(Enum):
    """Types of metrics that can be collected"""
    COUNTER = "counter"
    GAUGE = "gauge"
    TIMER = "timer"


class Phase(Enum):
    """Timed phases of a tick"""
    MAIN = "main"
    UPDATE_STATE = "update_state"
    FILTER_OUT_SCHEDULABLE = "filter_out_schedulable"
    SCALE_UP = "scale_up"
    FIND_UNNEEDED = "find_unneeded"
    SCALE_DOWN = "scale_down"


@dataclass
class MetricPoint:
    """A single metric data point"""
    timestamp: datetime
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class MetricSeries:
    """A time series of metric points"""
    name: str
    metric_type: MetricType
    unit: str
    description: str
    points: deque = field(default_factory=lambda: deque(maxlen=1000))

    def add_point(self, value: float, labels: Optional[Dict[str, str]] = None):
        """Add a metric point to the series"""
        self.points.append(MetricPoint(timestamp=datetime.now(timezone.utc), value=value, labels=labels or {}))

    def get_latest_value(self) -> Optional[float]:
        """Get the most recent metric value"""
        return self.points[-1].value if self.points else None

    def get_average(self) -> Optional[float]:
        if not self.points:
            return None
        return statistics.mean(point.value for point in self.points)


class AutoscalerMetrics:
    """
    Metrics registry for the autoscaler.

    Counters are stored as cumulative gauges: each increment appends the new
    total, so the latest point is always the current value.
    """

    def __init__(self, enabled: bool = True, history_size: int = 1000):
        self.enabled = enabled
        self._history_size = history_size
        self._metrics: Dict[str, MetricSeries] = {}
        self._last_activity: Dict[str, datetime] = {}
        self._lock = threading.RLock()
        self._process = psutil.Process()

        self._initialize_core_metrics()

    def _initialize_core_metrics(self):
        for phase in Phase:
            self._create_metric(f"duration_{phase.value}_seconds", MetricType.TIMER, "seconds",
                                f"Duration of the {phase.value.replace('_', ' ')} phase")

        self._create_metric("unschedulable_pods", MetricType.GAUGE, "pods", "Unschedulable pods seen by the last tick")
        self._create_metric("nodes_ready", MetricType.GAUGE, "nodes", "Ready nodes")
        self._create_metric("nodes_unready", MetricType.GAUGE, "nodes", "Unready nodes")
        self._create_metric("nodes_not_started", MetricType.GAUGE, "nodes", "Nodes that have not started yet")
        self._create_metric("unregistered_nodes", MetricType.GAUGE, "nodes", "Instances missing from the cluster")
        self._create_metric("node_groups", MetricType.GAUGE, "groups", "Autoscaled node groups")
        self._create_metric("unneeded_nodes", MetricType.GAUGE, "nodes", "Nodes currently unneeded")
        self._create_metric("cluster_safe_to_autoscale", MetricType.GAUGE, "bool", "1 if the cluster is healthy")
        self._create_metric("scaled_up_nodes_total", MetricType.COUNTER, "nodes", "Nodes added")
        self._create_metric("scaled_down_nodes_total", MetricType.COUNTER, "nodes", "Nodes removed")
        self._create_metric("failed_scale_ups_total", MetricType.COUNTER, "attempts", "Failed scale-ups")
        for error_type in ErrorType:
            self._create_metric(f"errors_{error_type.value}_total", MetricType.COUNTER, "errors",
                                f"Ticks that ended with {error_type.value}")
        self._create_metric("process_rss_bytes", MetricType.GAUGE, "bytes", "Resident memory of the autoscaler")
        self._create_metric("process_cpu_percent", MetricType.GAUGE, "percent", "CPU used by the autoscaler")

    def _create_metric(self, name: str, metric_type: MetricType, unit: str, description: str):
        self._metrics[name] = MetricSeries(
            name=name, metric_type=metric_type, unit=unit, description=description,
            points=deque(maxlen=self._history_size))

    def get_metric(self, name: str) -> Optional[MetricSeries]:
        with self._lock:
            return self._metrics.get(name)

    def latest(self, name: str) -> Optional[float]:
        metric = self.get_metric(name)
        return metric.get_latest_value() if metric else None

    def set_gauge(self, name: str, value: float):
        if not self.enabled:
            return
        with self._lock:
            self._metrics[name].add_point(float(value))

    def increment(self, name: str, amount: float = 1.0):
        if not self.enabled:
            return
        with self._lock:
            metric = self._metrics[name]
            metric.add_point((metric.get_latest_value() or 0.0) + amount)

    @contextmanager
    def timed(self, phase: Phase) -> Iterator[None]:
        """Record how long the wrapped block takes"""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.set_gauge(f"duration_{phase.value}_seconds", time.perf_counter() - start)

    def update_last_activity(self, activity: str, when: datetime):
        with self._lock:
            self._last_activity[activity] = when

    def last_activity(self, activity: str) -> Optional[datetime]:
        with self._lock:
            return self._last_activity.get(activity)

    def register_error(self, error_type: ErrorType):
        self.increment(f"errors_{error_type.value}_total")

    def update_cluster_state(self, ready: int, unready: int, not_started: int, unregistered: int,
                             node_groups: int, healthy: bool):
        self.set_gauge("nodes_ready", ready)
        self.set_gauge("nodes_unready", unready)
        self.set_gauge("nodes_not_started", not_started)
        self.set_gauge("unregistered_nodes", unregistered)
        self.set_gauge("node_groups", node_groups)
        self.set_gauge("cluster_safe_to_autoscale", 1 if healthy else 0)

    def sample_process(self):
        """Record memory and CPU of the autoscaler process"""
        if not self.enabled:
            return
        try:
            self.set_gauge("process_rss_bytes", self._process.memory_info().rss)
            self.set_gauge("process_cpu_percent", self._process.cpu_percent(interval=None))
        except psutil.Error as e:
            logger.warning(f"Failed to sample process metrics: {e}")

    def snapshot(self) -> Dict[str, Any]:
        """Latest value of every metric plus last activity times"""
        with self._lock:
            values = {name: series.get_latest_value() for name, series in self._metrics.items()}
            values["last_activity"] = {k: v.isoformat() for k, v in self._last_activity.items()}
            return values
