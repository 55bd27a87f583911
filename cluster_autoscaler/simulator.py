"""
Scheduling simulation for the autoscaler.

The PredicateChecker answers "would this pod fit on this node, given the pods
already there?" for real nodes as well as for hypothetical template nodes. It
implements a bounded subset of the real scheduler predicates: cordoning,
taints and tolerations, node selectors and required node affinity, resource
requests, host ports and required inter-pod (anti-)affinity.

This module also holds the drain rules used by scale-down to decide which pods
have to be moved off a node and whether they may be moved at all.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .model import (
    Node, Pod, PodAffinityTerm, PodDisruptionBudget, Resources, TaintEffect,
    SAFE_TO_EVICT_ANNOTATION, SYSTEM_NAMESPACE,
)

logger = logging.getLogger(__name__)


class NodeInfo:
    """A node together with the pods assigned to it and their summed requests"""

    def __init__(self, node: Node, pods: Optional[Iterable[Pod]] = None):
        self.node = node
        self.pods: List[Pod] = []
        self.requested = Resources()
        for pod in pods or []:
            self.add_pod(pod)

    def add_pod(self, pod: Pod) -> None:
        self.pods.append(pod)
        self.requested = self.requested + pod.requests + Resources(pods=1)

    def remove_pod(self, pod: Pod) -> bool:
        for i, existing in enumerate(self.pods):
            if existing.key == pod.key:
                del self.pods[i]
                self.requested = self.requested - existing.requests - Resources(pods=1)
                return True
        return False

    @property
    def free(self) -> Resources:
        return self.node.allocatable - self.requested

    def used_host_ports(self) -> List[int]:
        ports = []
        for pod in self.pods:
            ports.extend(pod.host_ports)
        return ports

    def clone(self) -> "NodeInfo":
        return NodeInfo(self.node, list(self.pods))

    def __repr__(self) -> str:
        return f"NodeInfo({self.node.name}, pods={len(self.pods)})"


def build_node_infos(nodes: Iterable[Node], pods: Iterable[Pod]) -> Dict[str, NodeInfo]:
    """Group scheduled pods by node name"""
    infos = {node.name: NodeInfo(node) for node in nodes}
    for pod in pods:
        if pod.node_name and pod.node_name in infos:
            infos[pod.node_name].add_pod(pod)
    return infos


@dataclass
class PredicateError:
    """Why a pod does not fit on a node"""
    predicate_name: str
    reasons: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.predicate_name}: {', '.join(self.reasons)}"


class PredicateChecker:
    """
    Checks whether pods fit on nodes.

    Inter-pod affinity is the only expensive predicate and can be switched off
    for a tick when no pod declares required (anti-)affinity. The switch is a
    best-effort optimization: a pod with anti-affinity admitted concurrently
    with the tick is not seen until the next one.
    """

    def __init__(self, affinity_predicate_enabled: bool = True):
        self.affinity_predicate_enabled = affinity_predicate_enabled

    def configure_for_loop(self, unschedulable_pods: Iterable[Pod], scheduled_pods: Iterable[Pod]) -> None:
        """Enable the affinity predicate only if some pod needs it this tick"""
        needed = False
        for pod in list(unschedulable_pods) + list(scheduled_pods):
            if pod.has_required_pod_affinity:
                needed = True
                break

        if needed != self.affinity_predicate_enabled:
            logger.debug(f"Affinity predicate {'enabled' if needed else 'disabled'} for this loop")
        self.affinity_predicate_enabled = needed

    def fits(self, pod: Pod, node_info: NodeInfo,
             all_node_infos: Optional[Dict[str, NodeInfo]] = None) -> bool:
        return self.check_predicates(pod, node_info, all_node_infos) is None

    def fits_on_new_node(self, pod: Pod, template_node_info: NodeInfo) -> bool:
        """Check a pod against a hypothetical node built from a template"""
        return self.check_predicates(pod, template_node_info) is None

    def check_predicates(self, pod: Pod, node_info: NodeInfo,
                         all_node_infos: Optional[Dict[str, NodeInfo]] = None) -> Optional[PredicateError]:
        """
        Run all predicates for a pod on a node.

        Args:
            pod: Pod to place
            node_info: Candidate node with the pods already assigned to it
            all_node_infos: Cluster view used for inter-pod affinity; defaults
                to the candidate node alone

        Returns:
            None if the pod fits, otherwise the first failing predicate
        """
        predicates: List[Tuple[str, Callable]] = [
            ("NodeUnschedulable", self._check_schedulable),
            ("PodToleratesNodeTaints", self._check_taints),
            ("MatchNodeSelector", self._check_node_selector),
            ("PodFitsResources", self._check_resources),
            ("PodFitsHostPorts", self._check_host_ports),
        ]
        if self.affinity_predicate_enabled:
            predicates.append(("MatchInterPodAffinity", self._check_inter_pod_affinity))

        try:
            for name, predicate in predicates:
                reason = predicate(pod, node_info, all_node_infos)
                if reason:
                    return PredicateError(name, [reason])
        except Exception as e:
            logger.warning(f"Cannot evaluate predicates for pod {pod.key} on {node_info.node.name}: {e}")
            return PredicateError("MalformedPodSpec", [str(e)])

        return None

    def _check_schedulable(self, pod: Pod, node_info: NodeInfo, _infos) -> Optional[str]:
        if node_info.node.unschedulable:
            return "node is unschedulable"
        return None

    def _check_taints(self, pod: Pod, node_info: NodeInfo, _infos) -> Optional[str]:
        for taint in node_info.node.taints:
            if taint.effect == TaintEffect.PREFER_NO_SCHEDULE:
                continue
            if not any(toleration.tolerates(taint) for toleration in pod.tolerations):
                return f"taint {taint.key}={taint.value}:{taint.effect.value} not tolerated"
        return None

    def _check_node_selector(self, pod: Pod, node_info: NodeInfo, _infos) -> Optional[str]:
        labels = node_info.node.labels
        for key, value in pod.node_selector.items():
            if labels.get(key) != value:
                return f"node selector {key}={value} does not match"

        if pod.affinity and pod.affinity.node_affinity:
            if not pod.affinity.node_affinity.matches(labels):
                return "required node affinity does not match"
        return None

    def _check_resources(self, pod: Pod, node_info: NodeInfo, _infos) -> Optional[str]:
        free = node_info.free
        requests = pod.requests
        insufficient = []
        if requests.cpu > free.cpu:
            insufficient.append("cpu")
        if requests.memory > free.memory:
            insufficient.append("memory")
        if requests.gpu > free.gpu:
            insufficient.append("gpu")
        allocatable_pods = node_info.node.allocatable.pods
        if allocatable_pods > 0 and node_info.requested.pods + 1 > allocatable_pods:
            insufficient.append("pods")

        if insufficient:
            return f"insufficient {', '.join(insufficient)}"
        return None

    def _check_host_ports(self, pod: Pod, node_info: NodeInfo, _infos) -> Optional[str]:
        used = set(node_info.used_host_ports())
        conflicts = [port for port in pod.host_ports if port in used]
        if conflicts:
            return f"host ports {conflicts} already in use"
        return None

    def _check_inter_pod_affinity(self, pod: Pod, node_info: NodeInfo,
                                  all_node_infos: Optional[Dict[str, NodeInfo]]) -> Optional[str]:
        infos = dict(all_node_infos or {})
        infos[node_info.node.name] = node_info
        candidate = node_info.node

        # Existing pods whose anti-affinity rejects the incoming pod
        for info in infos.values():
            for existing in info.pods:
                if existing.affinity is None or existing.key == pod.key:
                    continue
                for term in existing.affinity.pod_anti_affinity_required:
                    if not _term_matches_pod(term, existing.namespace, pod):
                        continue
                    if _same_topology(info.node, candidate, term.topology_key):
                        return f"pod {existing.key} anti-affinity rejects this pod"

        if pod.affinity is None:
            return None

        for term in pod.affinity.pod_anti_affinity_required:
            for info in infos.values():
                if not _same_topology(info.node, candidate, term.topology_key):
                    continue
                for existing in info.pods:
                    if existing.key != pod.key and _term_matches_pod(term, pod.namespace, existing):
                        return f"anti-affinity conflict with pod {existing.key}"

        for term in pod.affinity.pod_affinity_required:
            matched_anywhere = False
            satisfied = False
            for info in infos.values():
                for existing in info.pods:
                    if existing.key == pod.key or not _term_matches_pod(term, pod.namespace, existing):
                        continue
                    matched_anywhere = True
                    if _same_topology(info.node, candidate, term.topology_key):
                        satisfied = True
                        break
                if satisfied:
                    break

            if satisfied:
                continue
            # The first pod of a self-affine group may go anywhere
            if not matched_anywhere and _term_matches_pod(term, pod.namespace, pod):
                continue
            return "required pod affinity not satisfied"

        return None


def _term_matches_pod(term: PodAffinityTerm, owner_namespace: str, pod: Pod) -> bool:
    namespaces = term.namespaces or [owner_namespace]
    return pod.namespace in namespaces and term.label_selector.matches(pod.labels)


def _same_topology(node: Node, other: Node, topology_key: str) -> bool:
    value = node.labels.get(topology_key)
    return value is not None and value == other.labels.get(topology_key)


def calculate_utilization(node_info: NodeInfo) -> float:
    """
    Fraction of the node's allocatable cpu or memory requested by its pods,
    whichever is higher. Daemon set and mirror pods are not counted.
    """
    allocatable = node_info.node.allocatable
    cpu = 0
    memory = 0
    for pod in node_info.pods:
        if pod.is_daemon_set_pod or pod.is_mirror_pod:
            continue
        cpu += pod.requests.cpu
        memory += pod.requests.memory

    cpu_ratio = cpu / allocatable.cpu if allocatable.cpu > 0 else 0.0
    memory_ratio = memory / allocatable.memory if allocatable.memory > 0 else 0.0
    return max(cpu_ratio, memory_ratio)


@dataclass
class DrainOptions:
    """Which pods prevent a node from being drained"""
    skip_nodes_with_system_pods: bool = True
    skip_nodes_with_local_storage: bool = True
    skip_nodes_with_non_replicated_pods: bool = True


class DisruptionBudgets:
    """Disruptions each PDB still allows while a set of nodes is drained"""

    def __init__(self, pdbs: Iterable[PodDisruptionBudget]):
        self.pdbs = list(pdbs)
        self._remaining: Dict[Tuple[str, str], int] = {
            (pdb.namespace, pdb.name): pdb.disruptions_allowed for pdb in self.pdbs}

    def remaining(self, pdb: PodDisruptionBudget) -> int:
        return self._remaining[(pdb.namespace, pdb.name)]

    def check(self, pods: Iterable[Pod]) -> Optional[str]:
        """Reason the pods cannot all be evicted, or None if the budgets allow it"""
        needed: Dict[Tuple[str, str], int] = {}
        for pod in pods:
            for pdb in self.pdbs:
                if not pdb.covers(pod):
                    continue
                key = (pdb.namespace, pdb.name)
                needed[key] = needed.get(key, 0) + 1
                if needed[key] > self._remaining[key]:
                    return f"not enough disruptions allowed by {pdb.namespace}/{pdb.name} for pod {pod.key}"
        return None

    def consume(self, pods: Iterable[Pod]) -> None:
        for pod in pods:
            for pdb in self.pdbs:
                if pdb.covers(pod):
                    self._remaining[(pdb.namespace, pdb.name)] -= 1


def get_pods_to_move(node_info: NodeInfo, pdbs: Iterable[PodDisruptionBudget],
                     options: Optional[DrainOptions] = None,
                     budgets: Optional[DisruptionBudgets] = None) -> Tuple[List[Pod], Optional[str]]:
    """
    Decide which pods must be rescheduled before the node can be removed.

    Moving the pods must fit into the disruptions the budgets still allow;
    without explicit budgets the PDBs are taken as they are now.

    Returns:
        Tuple of (pods to move, blocking reason); the reason is None when the
        node may be drained
    """
    options = options or DrainOptions()
    pdbs = list(pdbs)
    to_move = []

    for pod in node_info.pods:
        if pod.is_mirror_pod or pod.is_daemon_set_pod:
            continue

        safe_to_evict = pod.annotations.get(SAFE_TO_EVICT_ANNOTATION, "").lower() == "true"
        if not safe_to_evict:
            if options.skip_nodes_with_non_replicated_pods and pod.controller_ref is None:
                return [], f"pod {pod.key} is not replicated"
            if options.skip_nodes_with_local_storage and pod.has_local_storage:
                return [], f"pod {pod.key} has local storage"
            if (options.skip_nodes_with_system_pods and pod.namespace == SYSTEM_NAMESPACE
                    and not any(pdb.covers(pod) for pdb in pdbs)):
                return [], f"non-daemonset kube-system pod {pod.key} has no disruption budget"

        to_move.append(pod)

    reason = (budgets or DisruptionBudgets(pdbs)).check(to_move)
    if reason is not None:
        return [], reason
    return to_move, None


def find_place_for(pods: Iterable[Pod], destinations: List[NodeInfo], checker: PredicateChecker,
                   all_node_infos: Optional[Dict[str, NodeInfo]] = None) -> Optional[Dict[str, str]]:
    """
    Find a destination node for every pod.

    Destinations are mutated: each placed pod is added to the node info it
    lands on, so later pods see the reduced capacity.

    Returns:
        Mapping pod key -> destination node name, or None if some pod has no place
    """
    placement = {}
    for pod in pods:
        moved = pod.copy(node_name=None)
        for destination in destinations:
            if checker.fits(moved, destination, all_node_infos):
                destination.add_pod(moved.copy(node_name=destination.node.name))
                placement[pod.key] = destination.node.name
                break
        else:
            logger.debug(f"No place found for pod {pod.key}")
            return None
    return placement
