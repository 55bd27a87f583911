"""
Cloud provider contract consumed by the autoscaler core.

Each backend implements CloudProvider and NodeGroup once and is injected at
start-up; the core never branches on provider identity. Node groups are
looked up by id through NodeGroupRegistry and instances are mapped to groups
through InstanceCache, the only structure shared with a background thread.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .model import Node

logger = logging.getLogger(__name__)


class NodeGroup(ABC):
    """A set of homogeneous nodes scaled as a unit"""

    @abstractmethod
    def id(self) -> str:
        pass

    @abstractmethod
    def min_size(self) -> int:
        pass

    @abstractmethod
    def max_size(self) -> int:
        pass

    @abstractmethod
    def target_size(self) -> int:
        """
        Size last requested from the provider.

        Raises:
            CloudProviderError: If the size cannot be read
        """
        pass

    @abstractmethod
    def increase_size(self, delta: int) -> None:
        """Request delta more nodes; raises CloudProviderError on failure"""
        pass

    @abstractmethod
    def decrease_target_size(self, delta: int) -> None:
        """
        Lower the target size without deleting existing instances.

        Only used to drop requests for instances that never materialized;
        delta is negative.
        """
        pass

    @abstractmethod
    def delete_nodes(self, nodes: List[Node]) -> None:
        """Delete the given nodes and shrink the target size accordingly"""
        pass

    @abstractmethod
    def nodes(self) -> List[str]:
        """Provider ids of all instances the provider knows for this group"""
        pass

    @abstractmethod
    def template_node(self) -> Node:
        """
        Build a synthetic node describing a new member of this group.

        Raises:
            NotImplementedError: If the backend cannot build templates
        """
        pass

    def debug(self) -> str:
        return f"{self.id()} (min={self.min_size()}, max={self.max_size()})"


class CloudProvider(ABC):
    """Provider-wide operations"""

    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    def node_groups(self) -> List[NodeGroup]:
        pass

    @abstractmethod
    def node_group_for_node(self, node: Node) -> Optional[NodeGroup]:
        """Group the node belongs to, or None if it is not autoscaled"""
        pass

    @abstractmethod
    def refresh(self) -> None:
        """Re-sync the provider-side view; called before every tick"""
        pass

    def cleanup(self) -> None:
        """Release background resources before the provider is dropped"""
        pass


@dataclass
class NodeGroupSpec:
    """Node group declared as "min:max:name" on the command line or in config"""
    name: str
    min_size: int
    max_size: int

    def __post_init__(self):
        if not self.name:
            raise ValueError("node group name cannot be empty")
        if self.min_size < 0:
            raise ValueError(f"min size must be non-negative for {self.name}")
        if self.max_size < self.min_size:
            raise ValueError(f"max size must be >= min size for {self.name}")

    @classmethod
    def parse(cls, spec: str) -> "NodeGroupSpec":
        """
        Parse a "min:max:name" node group spec.

        Raises:
            ValueError: If the node group string is malformed
        """
        parts = spec.split(":", 2)
        if len(parts) != 3:
            raise ValueError(f"node group spec must be min:max:name, got {spec!r}")
        try:
            min_size = int(parts[0])
            max_size = int(parts[1])
        except ValueError:
            raise ValueError(f"invalid sizes in node group spec {spec!r}")
        return cls(name=parts[2], min_size=min_size, max_size=max_size)


class NodeGroupRegistry:
    """Owns node groups keyed by id"""

    def __init__(self):
        self._groups: Dict[str, NodeGroup] = {}

    def register(self, group: NodeGroup) -> bool:
        """
        Register or replace a node group.

        Returns:
            True if the group is new or its size bounds changed
        """
        existing = self._groups.get(group.id())
        self._groups[group.id()] = group
        if existing is None:
            logger.info(f"Registered node group {group.debug()}")
            return True
        changed = (existing.min_size() != group.min_size() or existing.max_size() != group.max_size())
        if changed:
            logger.info(f"Updated node group {group.debug()}")
        return changed

    def unregister(self, group_id: str) -> bool:
        return self._groups.pop(group_id, None) is not None

    def get(self, group_id: str) -> Optional[NodeGroup]:
        return self._groups.get(group_id)

    def groups(self) -> List[NodeGroup]:
        return list(self._groups.values())

    def __len__(self) -> int:
        return len(self._groups)


class InstanceCache:
    """
    Maps instance provider ids to node group ids.

    Regenerated by the provider's refresh and by a background PeriodicTask,
    hence every access goes through the lock.
    """

    def __init__(self, registry: NodeGroupRegistry, ttl: timedelta = timedelta(hours=1)):
        self.registry = registry
        self.ttl = ttl
        self._lock = threading.RLock()
        self._instance_to_group: Dict[str, str] = {}
        self._last_regenerated: Optional[datetime] = None

    def regenerate(self, now: Optional[datetime] = None) -> None:
        """
        Rebuild the mapping from the provider's instance lists.

        Raises:
            CloudProviderError: If listing instances of a group fails
        """
        mapping = {}
        for group in self.registry.groups():
            for instance_id in group.nodes():
                mapping[instance_id] = group.id()

        with self._lock:
            self._instance_to_group = mapping
            self._last_regenerated = now or datetime.now(timezone.utc)
        logger.debug(f"Instance cache regenerated with {len(mapping)} instances")

    def group_id_for_instance(self, instance_id: str) -> Optional[str]:
        with self._lock:
            return self._instance_to_group.get(instance_id)

    def is_stale(self, now: datetime) -> bool:
        with self._lock:
            return self._last_regenerated is None or now - self._last_regenerated >= self.ttl

    def invalidate(self) -> None:
        with self._lock:
            self._last_regenerated = None

    def size(self) -> int:
        with self._lock:
            return len(self._instance_to_group)


class PeriodicTask:
    """Runs a function on a fixed interval in a daemon thread until stopped"""

    def __init__(self, name: str, interval: timedelta, fn: Callable[[], None]):
        self.name = name
        self.interval = interval
        self.fn = fn
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Periodic task {self.name} started (every {self.interval})")

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info(f"Periodic task {self.name} stopped")

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval.total_seconds()):
            try:
                self.fn()
            except Exception as e:
                logger.error(f"Error in periodic task {self.name}: {e}")
