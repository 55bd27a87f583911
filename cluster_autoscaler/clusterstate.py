"""
Cluster state registry.

Single source of truth for "is the cluster healthy enough to act". Once per
tick it ingests the node snapshot and the provider's view of every node
group, and derives readiness counts, unregistered instances, node groups
whose target size drifted from reality and the fate of in-flight scale-ups.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .backoff import ExponentialBackoff
from .cloudprovider import CloudProvider, NodeGroup
from .config import AutoscalingOptions
from .errors import AutoscalerError, CloudProviderError, ErrorType
from .model import Node
from .status import ClusterStatus, NodeGroupStatus

logger = logging.getLogger(__name__)


@dataclass
class Readiness:
    """Node counts by readiness category"""
    ready: int = 0
    unready: int = 0
    not_started: int = 0
    deleted: int = 0
    registered: int = 0
    ready_nodes: List[str] = field(default_factory=list)
    unready_nodes: List[str] = field(default_factory=list)

    def add(self, node: Node, category: str) -> None:
        self.registered += 1
        if category == "ready":
            self.ready += 1
            self.ready_nodes.append(node.name)
        elif category == "unready":
            self.unready += 1
            self.unready_nodes.append(node.name)
        elif category == "not_started":
            self.not_started += 1
        else:
            self.deleted += 1


@dataclass
class UnregisteredNode:
    """An instance the provider reports but the cluster does not see"""
    node: Node
    unregistered_since: datetime


@dataclass
class ScaleUpRequest:
    group_id: str
    increase: int
    time: datetime
    expected_add_time: datetime


@dataclass
class AcceptableRange:
    """Registered node counts that do not count as drift"""
    min_nodes: int
    max_nodes: int
    current_target: int


@dataclass
class IncorrectNodeGroupSize:
    expected_size: int
    current_size: int
    first_observed: datetime


class ClusterStateRegistry:
    """
    Tracks per node group health, unregistered instances and scale-up requests.

    All methods run on the tick thread; none of the state here is shared with
    background tasks.
    """

    def __init__(self, cloud_provider: CloudProvider, options: AutoscalingOptions,
                 backoff: Optional[ExponentialBackoff] = None):
        self.cloud_provider = cloud_provider
        self.options = options
        self.backoff = backoff or ExponentialBackoff()

        self._nodes: List[Node] = []
        self._last_update: Optional[datetime] = None
        self._total_readiness = Readiness()
        self._group_readiness: Dict[str, Readiness] = {}
        self._node_group_of: Dict[str, str] = {}
        self._target_sizes: Dict[str, int] = {}
        self._acceptable_ranges: Dict[str, AcceptableRange] = {}
        self._unregistered: Dict[str, UnregisteredNode] = {}
        self._incorrect_sizes: Dict[str, IncorrectNodeGroupSize] = {}
        self._scale_up_requests: Dict[str, ScaleUpRequest] = {}

    def update_nodes(self, nodes: List[Node], now: datetime) -> None:
        """
        Ingest a node snapshot.

        Raises:
            AutoscalerError: If the provider's node groups cannot be enumerated
        """
        try:
            node_groups = self.cloud_provider.node_groups()
            target_sizes = {group.id(): group.target_size() for group in node_groups}
            group_of = {}
            for node in nodes:
                group = self.cloud_provider.node_group_for_node(node)
                if group is not None:
                    group_of[node.name] = group.id()
            instances = {group.id(): group.nodes() for group in node_groups}
        except CloudProviderError as e:
            raise AutoscalerError(ErrorType.CLOUD_PROVIDER_ERROR, f"failed to read node groups: {e}")

        self._nodes = list(nodes)
        self._last_update = now
        self._target_sizes = target_sizes
        self._node_group_of = group_of

        self._update_readiness(now)
        self._update_unregistered(instances, now)
        self._update_scale_up_requests(now)
        self.backoff.remove_stale_entries(now)
        self._update_acceptable_ranges()
        self._update_incorrect_sizes(now)

    def recalculate(self) -> None:
        """Re-derive target dependent state after this tick changed group sizes"""
        if self._last_update is None:
            return
        try:
            self._target_sizes = {group.id(): group.target_size() for group in self.cloud_provider.node_groups()}
        except CloudProviderError as e:
            raise AutoscalerError(ErrorType.CLOUD_PROVIDER_ERROR, f"failed to read target sizes: {e}")
        self._update_acceptable_ranges()
        self._update_incorrect_sizes(self._last_update)

    def _categorize(self, node: Node, now: datetime) -> str:
        if node.has_to_be_deleted_taint:
            return "deleted"
        if node.ready:
            return "ready"
        if now - node.creation_timestamp < self.options.max_node_startup_time:
            return "not_started"
        return "unready"

    def _update_readiness(self, now: datetime) -> None:
        total = Readiness()
        per_group: Dict[str, Readiness] = {group_id: Readiness() for group_id in self._target_sizes}
        for node in self._nodes:
            category = self._categorize(node, now)
            total.add(node, category)
            group_id = self._node_group_of.get(node.name)
            if group_id is not None:
                per_group.setdefault(group_id, Readiness()).add(node, category)
        self._total_readiness = total
        self._group_readiness = per_group

    def _update_unregistered(self, instances: Dict[str, List[str]], now: datetime) -> None:
        registered_ids = {node.provider_id for node in self._nodes}
        unregistered = {}
        for group_id, instance_ids in instances.items():
            for instance_id in instance_ids:
                if instance_id in registered_ids:
                    continue
                previous = self._unregistered.get(instance_id)
                since = previous.unregistered_since if previous else now
                unregistered[instance_id] = UnregisteredNode(
                    node=Node(name=instance_id, provider_id=instance_id), unregistered_since=since)
                self._node_group_of.setdefault(instance_id, group_id)
        self._unregistered = unregistered

    def _update_scale_up_requests(self, now: datetime) -> None:
        for group_id, request in list(self._scale_up_requests.items()):
            readiness = self._group_readiness.get(group_id, Readiness())
            target = self._target_sizes.get(group_id)
            if target is None:
                del self._scale_up_requests[group_id]
                continue
            if readiness.ready + readiness.unready >= target:
                logger.info(f"Scale-up of {group_id} by {request.increase} completed")
                del self._scale_up_requests[group_id]
                self.backoff.remove_backoff(group_id)
            elif request.expected_add_time < now:
                logger.warning(f"Scale-up of {group_id} timed out: nodes did not become ready "
                               f"within {self.options.max_node_provision_time}")
                self.register_failed_scale_up(group_id, now)

    def _update_acceptable_ranges(self) -> None:
        ranges = {}
        for group_id, target in self._target_sizes.items():
            upcoming = 0
            request = self._scale_up_requests.get(group_id)
            if request is not None:
                upcoming = request.increase
            deleted = self._group_readiness.get(group_id, Readiness()).deleted
            ranges[group_id] = AcceptableRange(
                min_nodes=target - upcoming, max_nodes=target + deleted, current_target=target)
        self._acceptable_ranges = ranges

    def _update_incorrect_sizes(self, now: datetime) -> None:
        incorrect = {}
        for group_id, acceptable in self._acceptable_ranges.items():
            registered = self._group_readiness.get(group_id, Readiness()).registered
            if acceptable.min_nodes <= registered <= acceptable.max_nodes:
                continue
            entry = IncorrectNodeGroupSize(
                expected_size=acceptable.current_target, current_size=registered, first_observed=now)
            previous = self._incorrect_sizes.get(group_id)
            if (previous is not None and previous.expected_size == entry.expected_size
                    and previous.current_size == entry.current_size):
                entry = previous
            incorrect[group_id] = entry
        self._incorrect_sizes = incorrect

    def _is_healthy(self, readiness: Readiness, total: int) -> bool:
        unready = readiness.unready
        if (unready > self.options.ok_total_unready_count
                and unready > self.options.max_total_unready_percentage / 100.0 * total):
            return False
        return True

    def is_cluster_healthy(self) -> bool:
        healthy = self._is_healthy(self._total_readiness, len(self._nodes))
        if not healthy:
            logger.warning(f"Cluster is unhealthy: {self._total_readiness.unready} of "
                           f"{len(self._nodes)} nodes unready")
        return healthy

    def is_node_group_healthy(self, group_id: str) -> bool:
        readiness = self._group_readiness.get(group_id)
        if readiness is None or readiness.registered == 0:
            return True
        return self._is_healthy(readiness, readiness.registered)

    def is_node_group_safe_to_scale_up(self, group_id: str, now: datetime) -> bool:
        if not self.is_node_group_healthy(group_id):
            return False
        return not self.backoff.is_backed_off(group_id, now)

    def register_scale_up(self, group_id: str, delta: int, now: datetime) -> None:
        """Record a size increase; the nodes are expected within max_node_provision_time"""
        expected = now + self.options.max_node_provision_time
        request = self._scale_up_requests.get(group_id)
        if request is not None:
            request.increase += delta
            request.time = now
            request.expected_add_time = expected
        else:
            self._scale_up_requests[group_id] = ScaleUpRequest(
                group_id=group_id, increase=delta, time=now, expected_add_time=expected)
        if group_id in self._target_sizes:
            self._target_sizes[group_id] += delta

    def register_failed_scale_up(self, group_id: str, now: datetime) -> None:
        self._scale_up_requests.pop(group_id, None)
        self.backoff.backoff(group_id, now)

    def get_scale_up_request(self, group_id: str) -> Optional[ScaleUpRequest]:
        return self._scale_up_requests.get(group_id)

    def get_unregistered_nodes(self) -> List[UnregisteredNode]:
        return list(self._unregistered.values())

    def get_unregistered_group_id(self, instance_id: str) -> Optional[str]:
        return self._node_group_of.get(instance_id)

    def get_upcoming_nodes(self) -> Dict[str, int]:
        """Nodes requested by in-flight scale-ups that are not in the cluster yet"""
        upcoming = {}
        for group_id in self._scale_up_requests:
            readiness = self._group_readiness.get(group_id, Readiness())
            missing = self._target_sizes.get(group_id, 0) - (readiness.ready + readiness.unready)
            if missing > 0:
                upcoming[group_id] = missing
        return upcoming

    def get_incorrect_node_group_sizes(self) -> Dict[str, IncorrectNodeGroupSize]:
        return dict(self._incorrect_sizes)

    def get_incorrect_node_group_size(self, group_id: str) -> Optional[IncorrectNodeGroupSize]:
        return self._incorrect_sizes.get(group_id)

    def get_cluster_readiness(self) -> Readiness:
        return self._total_readiness

    def get_node_group_readiness(self, group_id: str) -> Optional[Readiness]:
        return self._group_readiness.get(group_id)

    def get_status(self, now: datetime) -> ClusterStatus:
        groups = []
        for group in self.cloud_provider.node_groups():
            readiness = self._group_readiness.get(group.id(), Readiness())
            groups.append(self._group_status(group, readiness, now))

        total = self._total_readiness
        return ClusterStatus(
            time=now,
            healthy=self._is_healthy(total, len(self._nodes)),
            registered=total.registered,
            ready=total.ready,
            unready=total.unready,
            not_started=total.not_started,
            unregistered=len(self._unregistered),
            node_groups=groups,
        )

    def _group_status(self, group: NodeGroup, readiness: Readiness, now: datetime) -> NodeGroupStatus:
        unregistered = sum(1 for instance_id in self._unregistered
                           if self._node_group_of.get(instance_id) == group.id())
        return NodeGroupStatus(
            group_id=group.id(),
            min_size=group.min_size(),
            max_size=group.max_size(),
            target_size=self._target_sizes.get(group.id(), 0),
            registered=readiness.registered,
            ready=readiness.ready,
            unready=readiness.unready,
            not_started=readiness.not_started,
            unregistered=unregistered,
            healthy=self.is_node_group_healthy(group.id()),
            backed_off=self.backoff.is_backed_off(group.id(), now),
        )
