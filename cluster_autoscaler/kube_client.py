"""
Cluster API contract consumed by the autoscaler, and an in-memory implementation.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from .errors import ApiCallError, EvictionError
from .model import DaemonSet, Node, Pod, PodDisruptionBudget, Taint, TaintEffect, TO_BE_DELETED_TAINT

logger = logging.getLogger(__name__)


class ClusterClient(ABC):
    """
    Point-in-time listings of cluster objects plus the few writes the
    autoscaler performs. Every method raises ApiCallError on failure.
    """

    @abstractmethod
    def list_all_nodes(self) -> List[Node]:
        pass

    @abstractmethod
    def list_ready_nodes(self) -> List[Node]:
        pass

    @abstractmethod
    def list_unschedulable_pods(self) -> List[Pod]:
        pass

    @abstractmethod
    def list_scheduled_pods(self) -> List[Pod]:
        pass

    @abstractmethod
    def list_pod_disruption_budgets(self) -> List[PodDisruptionBudget]:
        pass

    @abstractmethod
    def list_daemon_sets(self) -> List[DaemonSet]:
        pass

    @abstractmethod
    def add_to_be_deleted_taint(self, node: Node, now: datetime) -> None:
        """Mark a node so the scheduler stops placing pods on it"""
        pass

    @abstractmethod
    def remove_to_be_deleted_taint(self, node: Node) -> bool:
        """Returns True if a taint was removed"""
        pass

    @abstractmethod
    def evict_pod(self, pod: Pod) -> None:
        """Evict a pod honoring disruption budgets; raises EvictionError if refused"""
        pass


class InMemoryClusterClient(ClusterClient):
    """Cluster held in memory; evicted replicated pods come back as pending pods"""

    def __init__(self, nodes: Optional[Iterable[Node]] = None, pods: Optional[Iterable[Pod]] = None,
                 pdbs: Optional[Iterable[PodDisruptionBudget]] = None,
                 daemon_sets: Optional[Iterable[DaemonSet]] = None,
                 recreate_evicted_pods: bool = True):
        self.nodes: Dict[str, Node] = {node.name: node for node in nodes or []}
        self.pods: Dict[str, Pod] = {pod.key: pod for pod in pods or []}
        self.pdbs: List[PodDisruptionBudget] = list(pdbs or [])
        self.daemon_sets: List[DaemonSet] = list(daemon_sets or [])
        self.recreate_evicted_pods = recreate_evicted_pods
        self.evicted: List[str] = []

    def list_all_nodes(self) -> List[Node]:
        return list(self.nodes.values())

    def list_ready_nodes(self) -> List[Node]:
        return [node for node in self.nodes.values() if node.ready and not node.unschedulable]

    def list_unschedulable_pods(self) -> List[Pod]:
        return [pod for pod in self.pods.values() if not pod.node_name]

    def list_scheduled_pods(self) -> List[Pod]:
        return [pod for pod in self.pods.values() if pod.node_name]

    def list_pod_disruption_budgets(self) -> List[PodDisruptionBudget]:
        return list(self.pdbs)

    def list_daemon_sets(self) -> List[DaemonSet]:
        return list(self.daemon_sets)

    def add_to_be_deleted_taint(self, node: Node, now: datetime) -> None:
        current = self._get_node(node.name)
        if current.has_to_be_deleted_taint:
            return
        taint = Taint(key=TO_BE_DELETED_TAINT, value=str(int(now.timestamp())), effect=TaintEffect.NO_SCHEDULE)
        self.nodes[node.name] = current.copy(taints=current.taints + [taint])
        logger.debug(f"Node {node.name} marked to be deleted")

    def remove_to_be_deleted_taint(self, node: Node) -> bool:
        current = self.nodes.get(node.name)
        if current is None or not current.has_to_be_deleted_taint:
            return False
        taints = [taint for taint in current.taints if taint.key != TO_BE_DELETED_TAINT]
        self.nodes[node.name] = current.copy(taints=taints)
        logger.debug(f"Removed to-be-deleted taint from {node.name}")
        return True

    def evict_pod(self, pod: Pod) -> None:
        if pod.key not in self.pods:
            raise EvictionError(f"pod {pod.key} not found")

        covering = [pdb for pdb in self.pdbs if pdb.covers(pod)]
        for pdb in covering:
            if pdb.disruptions_allowed < 1:
                raise EvictionError(f"cannot evict {pod.key}: disruption budget {pdb.name} exhausted")
        for pdb in covering:
            pdb.disruptions_allowed -= 1

        del self.pods[pod.key]
        self.evicted.append(pod.key)
        if self.recreate_evicted_pods and pod.controller_ref is not None and not pod.is_daemon_set_pod:
            replacement = pod.copy(node_name=None, creation_timestamp=datetime.now(timezone.utc))
            self.pods[replacement.key] = replacement
        logger.debug(f"Evicted pod {pod.key}")

    def add_node(self, node: Node) -> None:
        self.nodes[node.name] = node

    def remove_node(self, name: str) -> None:
        """Drop a node and every pod bound to it"""
        self.nodes.pop(name, None)
        for key in [key for key, pod in self.pods.items() if pod.node_name == name]:
            del self.pods[key]

    def add_pod(self, pod: Pod) -> None:
        self.pods[pod.key] = pod

    def bind_pod(self, pod: Pod, node_name: str) -> None:
        if node_name not in self.nodes:
            raise ApiCallError(f"cannot bind {pod.key}: node {node_name} not found")
        self.pods[pod.key] = pod.copy(node_name=node_name, nominated_node_name=None)

    def _get_node(self, name: str) -> Node:
        node = self.nodes.get(name)
        if node is None:
            raise ApiCallError(f"node {name} not found")
        return node
