"""
Per-tick status reporting.

Every tick emits exactly one scale-up status, one scale-down status and one
human readable cluster status through the injected StatusRecorder, including
ticks that end early.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from .model import Node, Pod

logger = logging.getLogger(__name__)


class ScaleUpResult(Enum):
    NOT_TRIED = "notTried"
    NOT_NEEDED = "notNeeded"
    SUCCESSFUL = "successful"
    NO_OPTIONS_AVAILABLE = "noOptionsAvailable"
    IN_COOLDOWN = "inCooldown"
    IN_PROGRESS = "inProgress"
    ERROR = "error"


class ScaleDownResult(Enum):
    NOT_TRIED = "notTried"
    SUCCESSFUL = "successful"
    NO_OPTIONS_AVAILABLE = "noOptionsAvailable"
    IN_COOLDOWN = "inCooldown"
    IN_PROGRESS = "inProgress"
    ERROR = "error"


class EventType(Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass
class ScaleUpInfo:
    """A single node group resize decided by scale-up"""
    group_id: str
    current_size: int
    new_size: int
    max_size: int


@dataclass
class ScaleUpStatus:
    result: ScaleUpResult = ScaleUpResult.NOT_TRIED
    scale_up_infos: List[ScaleUpInfo] = field(default_factory=list)
    pods_triggered_scale_up: List[Pod] = field(default_factory=list)
    pods_remain_unschedulable: List[Pod] = field(default_factory=list)
    message: str = ""

    @property
    def was_successful(self) -> bool:
        return self.result == ScaleUpResult.SUCCESSFUL


@dataclass
class ScaleDownNode:
    """A node removed (or being removed) by scale-down"""
    node: Node
    group_id: str
    evicted_pods: List[Pod] = field(default_factory=list)
    utilization: float = 0.0


@dataclass
class ScaleDownStatus:
    result: ScaleDownResult = ScaleDownResult.NOT_TRIED
    scaled_down_nodes: List[ScaleDownNode] = field(default_factory=list)
    message: str = ""


@dataclass
class NodeGroupStatus:
    group_id: str
    min_size: int
    max_size: int
    target_size: int
    registered: int
    ready: int
    unready: int
    not_started: int
    unregistered: int
    healthy: bool
    backed_off: bool


@dataclass
class ClusterStatus:
    """Snapshot of the registry rendered for operators"""
    time: datetime
    healthy: bool
    registered: int
    ready: int
    unready: int
    not_started: int
    unregistered: int
    node_groups: List[NodeGroupStatus] = field(default_factory=list)

    def readable(self) -> str:
        lines = [
            f"Cluster-autoscaler status at {self.time.isoformat()}:",
            "Cluster-wide:",
            f"  Health:      {'Healthy' if self.healthy else 'Unhealthy'} (ready={self.ready} "
            f"unready={self.unready} notStarted={self.not_started} registered={self.registered} "
            f"longUnregistered={self.unregistered})",
            "NodeGroups:",
        ]
        for group in self.node_groups:
            lines.append(f"  Name:        {group.group_id}")
            lines.append(f"  Health:      {'Healthy' if group.healthy else 'Unhealthy'} "
                         f"(ready={group.ready} unready={group.unready} notStarted={group.not_started} "
                         f"registered={group.registered} unregistered={group.unregistered} "
                         f"cloudProviderTarget={group.target_size} (minSize={group.min_size}, "
                         f"maxSize={group.max_size}))")
            lines.append(f"  ScaleUp:     {'Backoff' if group.backed_off else 'NoActivity'}")
        return "\n".join(lines)


class StatusRecorder(ABC):
    """Sink for per-tick statuses and events"""

    @abstractmethod
    def record_scale_up(self, status: ScaleUpStatus) -> None:
        pass

    @abstractmethod
    def record_scale_down(self, status: ScaleDownStatus) -> None:
        pass

    @abstractmethod
    def record_cluster_status(self, text: str) -> None:
        pass

    @abstractmethod
    def event(self, event_type: EventType, reason: str, message: str) -> None:
        pass

    def cleanup(self) -> None:
        pass


class LogStatusRecorder(StatusRecorder):
    """Writes statuses to the log"""

    def record_scale_up(self, status: ScaleUpStatus) -> None:
        if status.result == ScaleUpResult.SUCCESSFUL:
            for info in status.scale_up_infos:
                logger.info(f"Scale-up: group {info.group_id} size set to {info.new_size} "
                            f"(from {info.current_size}, max {info.max_size})")
        else:
            logger.debug(f"Scale-up result: {status.result.value} {status.message}".rstrip())

    def record_scale_down(self, status: ScaleDownStatus) -> None:
        if status.result == ScaleDownResult.SUCCESSFUL:
            for removed in status.scaled_down_nodes:
                logger.info(f"Scale-down: removed node {removed.node.name} from {removed.group_id} "
                            f"({len(removed.evicted_pods)} pod(s) evicted)")
        else:
            logger.debug(f"Scale-down result: {status.result.value} {status.message}".rstrip())

    def record_cluster_status(self, text: str) -> None:
        logger.debug(text)

    def event(self, event_type: EventType, reason: str, message: str) -> None:
        if event_type == EventType.WARNING:
            logger.warning(f"{reason}: {message}")
        else:
            logger.info(f"{reason}: {message}")


class InMemoryStatusRecorder(StatusRecorder):
    """Keeps a bounded history of statuses, for the simulate command and tests"""

    def __init__(self, history_size: int = 100):
        self.scale_ups: Deque[ScaleUpStatus] = deque(maxlen=history_size)
        self.scale_downs: Deque[ScaleDownStatus] = deque(maxlen=history_size)
        self.cluster_statuses: Deque[str] = deque(maxlen=history_size)
        self.events: Deque[Tuple[EventType, str, str]] = deque(maxlen=history_size)

    def record_scale_up(self, status: ScaleUpStatus) -> None:
        self.scale_ups.append(status)

    def record_scale_down(self, status: ScaleDownStatus) -> None:
        self.scale_downs.append(status)

    def record_cluster_status(self, text: str) -> None:
        self.cluster_statuses.append(text)

    def event(self, event_type: EventType, reason: str, message: str) -> None:
        self.events.append((event_type, reason, message))

    @property
    def last_scale_up(self) -> Optional[ScaleUpStatus]:
        return self.scale_ups[-1] if self.scale_ups else None

    @property
    def last_scale_down(self) -> Optional[ScaleDownStatus]:
        return self.scale_downs[-1] if self.scale_downs else None

    @property
    def last_cluster_status(self) -> Optional[str]:
        return self.cluster_statuses[-1] if self.cluster_statuses else None

    def summary(self) -> Dict[str, Any]:
        return {
            "scale_ups": len(self.scale_ups),
            "scale_downs": len(self.scale_downs),
            "events": len(self.events),
            "last_scale_up": self.last_scale_up.result.value if self.last_scale_up else None,
            "last_scale_down": self.last_scale_down.result.value if self.last_scale_down else None,
        }
