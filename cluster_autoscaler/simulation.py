"""
In-memory cluster simulation.

Loads a cluster fixture (YAML or dict) into a StaticCloudProvider and an
InMemoryClusterClient and advances the cluster between autoscaler ticks:
new provider instances register as nodes, deleted instances disappear and
pending pods get bound wherever they fit.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import yaml

from .cloudprovider import NodeGroupSpec
from .kube_client import InMemoryClusterClient
from .model import (
    DaemonSet, LabelSelector, Node, OwnerReference, Pod, PodDisruptionBudget, Resources, Taint, TaintEffect,
    Toleration,
)
from .simulator import PredicateChecker, build_node_infos
from .static_provider import StaticCloudProvider

logger = logging.getLogger(__name__)


class FixtureError(Exception):
    """Raised when a cluster fixture is malformed"""
    pass


def _parse_taint(data: Dict[str, Any]) -> Taint:
    return Taint(key=data["key"], value=str(data.get("value", "")),
                 effect=TaintEffect(data.get("effect", "NoSchedule")))


def _parse_toleration(data: Dict[str, Any]) -> Toleration:
    effect = data.get("effect")
    return Toleration(key=data.get("key", ""), operator=data.get("operator", "Equal"),
                      value=str(data.get("value", "")), effect=TaintEffect(effect) if effect else None)


def parse_node(data: Dict[str, Any], now: datetime) -> Node:
    """Build a node from its fixture description"""
    return Node(
        name=data["name"],
        allocatable=Resources.from_dict(data.get("allocatable")),
        labels=dict(data.get("labels") or {}),
        annotations=dict(data.get("annotations") or {}),
        taints=[_parse_taint(taint) for taint in data.get("taints") or []],
        ready=data.get("ready", True),
        unschedulable=data.get("unschedulable", False),
        provider_id=data.get("provider_id", ""),
        creation_timestamp=now - timedelta(seconds=data.get("created_seconds_ago", 3600)),
    )


def parse_pod(data: Dict[str, Any], now: datetime) -> Pod:
    """
    Build a pod from its fixture description.

    "owner" is given as "Kind/name"; pods without an owner are not replicated.
    """
    owners = []
    if data.get("owner"):
        kind, _, name = str(data["owner"]).partition("/")
        owners.append(OwnerReference(kind=kind, name=name or kind))

    return Pod(
        name=data["name"],
        namespace=data.get("namespace", "default"),
        requests=Resources.from_dict(data.get("requests")),
        labels=dict(data.get("labels") or {}),
        annotations=dict(data.get("annotations") or {}),
        node_name=data.get("node"),
        node_selector=dict(data.get("node_selector") or {}),
        tolerations=[_parse_toleration(t) for t in data.get("tolerations") or []],
        owner_references=owners,
        priority=int(data.get("priority", 0)),
        nominated_node_name=data.get("nominated_node"),
        host_ports=list(data.get("host_ports") or []),
        has_local_storage=bool(data.get("local_storage", False)),
        creation_timestamp=now - timedelta(seconds=data.get("created_seconds_ago", 60)),
    )


def parse_pdb(data: Dict[str, Any]) -> PodDisruptionBudget:
    return PodDisruptionBudget(
        name=data["name"],
        namespace=data.get("namespace", "default"),
        selector=LabelSelector(match_labels=dict(data.get("match_labels") or {})),
        disruptions_allowed=int(data.get("disruptions_allowed", 0)),
    )


def parse_daemon_set(data: Dict[str, Any], now: datetime) -> DaemonSet:
    namespace = data.get("namespace", "kube-system")
    template = parse_pod({"name": data["name"], "namespace": namespace, "requests": data.get("requests")}, now)
    return DaemonSet(name=data["name"], namespace=namespace, pod_template=template)


@dataclass
class SimulationStep:
    """What changed in the cluster during one step"""
    registered: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    bound: List[str] = field(default_factory=list)


class ClusterSimulation:
    """Keeps the in-memory cluster in line with the in-memory provider"""

    def __init__(self, provider: StaticCloudProvider, client: InMemoryClusterClient,
                 predicate_checker: Optional[PredicateChecker] = None):
        self.provider = provider
        self.client = client
        self.predicate_checker = predicate_checker or PredicateChecker()
        self.managed_nodes: Set[str] = set()

        for group in provider.node_groups():
            self.managed_nodes.update(group.nodes())

    def step(self, now: datetime) -> SimulationStep:
        """Register new instances, drop deleted ones and schedule pending pods"""
        result = SimulationStep()
        instances: Dict[str, str] = {}
        for group in self.provider.node_groups():
            for instance_id in group.nodes():
                instances[instance_id] = group.id()

        for name in sorted(self.managed_nodes):
            node = self.client.nodes.get(name)
            if node is not None and node.provider_id not in instances:
                self.client.remove_node(name)
                self.managed_nodes.discard(name)
                result.removed.append(name)
                logger.info(f"Node {name} left the cluster")

        known = {node.provider_id for node in self.client.list_all_nodes()}
        for instance_id, group_id in instances.items():
            if instance_id in known:
                continue
            group = self.provider.get_node_group(group_id)
            if group is None or group.template is None:
                continue
            node = group.template.copy(name=instance_id, provider_id=instance_id, creation_timestamp=now,
                                       ready=True, unschedulable=False)
            node.labels["kubernetes.io/hostname"] = instance_id
            self.client.add_node(node)
            self.managed_nodes.add(instance_id)
            result.registered.append(instance_id)
            logger.info(f"Node {instance_id} of {group_id} joined the cluster")

        result.bound = self._schedule_pending_pods()
        return result

    def _schedule_pending_pods(self) -> List[str]:
        nodes = [node for node in self.client.list_ready_nodes()]
        node_infos = build_node_infos(nodes, self.client.list_scheduled_pods())
        bound = []
        pending = sorted(self.client.list_unschedulable_pods(),
                         key=lambda pod: (-pod.priority, pod.creation_timestamp, pod.key))
        for pod in pending:
            for info in node_infos.values():
                if self.predicate_checker.fits(pod, info, node_infos):
                    self.client.bind_pod(pod, info.node.name)
                    info.add_pod(pod.copy(node_name=info.node.name))
                    bound.append(pod.key)
                    break
        return bound


def load_fixture(data: Dict[str, Any], now: datetime,
                 provider: Optional[StaticCloudProvider] = None) -> Tuple[StaticCloudProvider, InMemoryClusterClient]:
    """
    Build provider and cluster from a fixture dictionary.

    Raises:
        FixtureError: If the fixture is malformed
    """
    try:
        provider = provider or StaticCloudProvider()
        nodes = [parse_node(node, now) for node in data.get("nodes") or []]

        for group_data in data.get("node_groups") or []:
            spec = NodeGroupSpec(name=group_data["name"], min_size=int(group_data.get("min_size", 0)),
                                 max_size=int(group_data["max_size"]))
            template_data = dict(group_data.get("template") or {})
            template_data.setdefault("name", f"{spec.name}-template")
            template = parse_node(template_data, now)

            initial = int(group_data.get("nodes", 0))
            target = int(group_data.get("target_size", initial))
            provider.register_spec(spec, target_size=target, template=template)
            for i in range(1, initial + 1):
                name = f"{spec.name}-{i}"
                node = template.copy(name=name, provider_id=name,
                                     creation_timestamp=now - timedelta(hours=1))
                node.labels["kubernetes.io/hostname"] = name
                nodes.append(node)
                provider.add_node(spec.name, node)

        pods = [parse_pod(pod, now) for pod in data.get("pods") or []]
        pdbs = [parse_pdb(pdb) for pdb in data.get("pdbs") or []]
        daemon_sets = [parse_daemon_set(ds, now) for ds in data.get("daemon_sets") or []]
    except (KeyError, TypeError, ValueError) as e:
        raise FixtureError(f"Invalid cluster fixture: {e}")

    client = InMemoryClusterClient(nodes=nodes, pods=pods, pdbs=pdbs, daemon_sets=daemon_sets)
    for daemon_set in daemon_sets:
        for node in nodes:
            client.add_pod(daemon_set.pod_for_node(node))
    return provider, client


def load_fixture_file(path: Union[str, Path], now: datetime,
                      provider: Optional[StaticCloudProvider] = None) -> Tuple[StaticCloudProvider, InMemoryClusterClient]:
    """Load a YAML cluster fixture"""
    path = Path(path)
    if not path.exists():
        raise FixtureError(f"Fixture file not found: {path}")
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise FixtureError(f"Invalid YAML in fixture {path}: {e}")
    return load_fixture(data, now, provider)
