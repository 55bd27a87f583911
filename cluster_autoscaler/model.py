"""
Cluster object model used by the autoscaler.

These are deliberately small, Kubernetes-shaped dataclasses: only the fields
the scheduling simulator, the cluster state registry and the scale-down engine
look at are represented.
"""

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

LABEL_HOSTNAME = "kubernetes.io/hostname"
LABEL_INSTANCE_TYPE = "node.kubernetes.io/instance-type"
LABEL_ZONE = "topology.kubernetes.io/zone"
LABEL_GPU_ACCELERATOR = "cloud.google.com/gke-accelerator"

RESOURCE_GPU = "nvidia.com/gpu"

TO_BE_DELETED_TAINT = "ToBeDeletedByClusterAutoscaler"
SCALE_DOWN_DISABLED_ANNOTATION = "cluster-autoscaler.kubernetes.io/scale-down-disabled"
SAFE_TO_EVICT_ANNOTATION = "cluster-autoscaler.kubernetes.io/safe-to-evict"
MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"

SYSTEM_NAMESPACE = "kube-system"

_MEMORY_SUFFIXES = {
    "Ki": 1024,
    "Mi": 1024 ** 2,
    "Gi": 1024 ** 3,
    "Ti": 1024 ** 4,
    "K": 1000,
    "k": 1000,
    "M": 1000 ** 2,
    "G": 1000 ** 3,
    "T": 1000 ** 4,
}

_QUANTITY_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)([A-Za-z]*)$")


def parse_cpu(value: Union[str, int, float]) -> int:
    """
    Parse a CPU quantity into millicores.

    Accepts "500m", "2", "0.5" or plain numbers (cores).

    Raises:
        ValueError: If the quantity is malformed
    """
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"CPU quantity must be non-negative: {value}")
        return int(round(value * 1000))

    text = str(value).strip()
    if text.endswith("m"):
        number = text[:-1]
        if not number.isdigit():
            raise ValueError(f"Invalid CPU quantity: {value!r}")
        return int(number)

    try:
        cores = float(text)
    except ValueError:
        raise ValueError(f"Invalid CPU quantity: {value!r}")
    if cores < 0:
        raise ValueError(f"CPU quantity must be non-negative: {value}")
    return int(round(cores * 1000))


def parse_memory(value: Union[str, int, float]) -> int:
    """
    Parse a memory quantity into bytes.

    Accepts binary ("1000Mi", "4Gi") and decimal ("1G") suffixes or plain bytes.

    Raises:
        ValueError: If the quantity is malformed
    """
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Memory quantity must be non-negative: {value}")
        return int(value)

    match = _QUANTITY_PATTERN.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid memory quantity: {value!r}")

    number, suffix = match.groups()
    if suffix and suffix not in _MEMORY_SUFFIXES:
        raise ValueError(f"Unknown memory suffix {suffix!r} in {value!r}")
    return int(float(number) * _MEMORY_SUFFIXES.get(suffix, 1))


@dataclass
class Resources:
    """Requested or allocatable resources"""
    cpu: int = 0  # millicores
    memory: int = 0  # bytes
    gpu: int = 0
    pods: int = 0

    def __add__(self, other: "Resources") -> "Resources":
        return Resources(
            cpu=self.cpu + other.cpu,
            memory=self.memory + other.memory,
            gpu=self.gpu + other.gpu,
            pods=self.pods + other.pods,
        )

    def __sub__(self, other: "Resources") -> "Resources":
        return Resources(
            cpu=self.cpu - other.cpu,
            memory=self.memory - other.memory,
            gpu=self.gpu - other.gpu,
            pods=self.pods - other.pods,
        )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Resources":
        """Build resources from a Kubernetes-style resource list"""
        data = data or {}
        return cls(
            cpu=parse_cpu(data.get("cpu", 0)),
            memory=parse_memory(data.get("memory", 0)),
            gpu=int(data.get(RESOURCE_GPU, data.get("gpu", 0))),
            pods=int(data.get("pods", 0)),
        )


class TaintEffect(Enum):
    """Effects a node taint can have"""
    NO_SCHEDULE = "NoSchedule"
    PREFER_NO_SCHEDULE = "PreferNoSchedule"
    NO_EXECUTE = "NoExecute"


@dataclass
class Taint:
    key: str
    value: str = ""
    effect: TaintEffect = TaintEffect.NO_SCHEDULE


@dataclass
class Toleration:
    key: str = ""
    operator: str = "Equal"  # Equal, Exists
    value: str = ""
    effect: Optional[TaintEffect] = None  # None tolerates every effect

    def tolerates(self, taint: Taint) -> bool:
        """Check whether this toleration tolerates the given taint"""
        if self.effect is not None and self.effect != taint.effect:
            return False
        if self.operator == "Exists":
            return not self.key or self.key == taint.key
        if self.operator == "Equal":
            return self.key == taint.key and self.value == taint.value
        raise ValueError(f"Unknown toleration operator: {self.operator}")


@dataclass
class NodeSelectorRequirement:
    """A single label match expression"""
    key: str
    operator: str  # In, NotIn, Exists, DoesNotExist, Gt, Lt
    values: List[str] = field(default_factory=list)

    def matches(self, labels: Dict[str, str]) -> bool:
        """
        Evaluate the expression against a label set.

        Raises:
            ValueError: If the operator is unknown or Gt/Lt values are not integers
        """
        present = self.key in labels
        value = labels.get(self.key)

        if self.operator == "In":
            return present and value in self.values
        if self.operator == "NotIn":
            return not present or value not in self.values
        if self.operator == "Exists":
            return present
        if self.operator == "DoesNotExist":
            return not present
        if self.operator in ("Gt", "Lt"):
            if len(self.values) != 1:
                raise ValueError(f"{self.operator} requires exactly one value")
            threshold = int(self.values[0])
            if not present:
                return False
            actual = int(value)
            return actual > threshold if self.operator == "Gt" else actual < threshold
        raise ValueError(f"Unknown selector operator: {self.operator}")


@dataclass
class NodeSelectorTerm:
    match_expressions: List[NodeSelectorRequirement] = field(default_factory=list)

    def matches(self, labels: Dict[str, str]) -> bool:
        return all(expr.matches(labels) for expr in self.match_expressions)


@dataclass
class NodeAffinity:
    required_terms: List[NodeSelectorTerm] = field(default_factory=list)

    def matches(self, labels: Dict[str, str]) -> bool:
        """Terms are ORed; an affinity without terms matches every node"""
        if not self.required_terms:
            return True
        return any(term.matches(labels) for term in self.required_terms)


@dataclass
class LabelSelector:
    match_labels: Dict[str, str] = field(default_factory=dict)
    match_expressions: List[NodeSelectorRequirement] = field(default_factory=list)

    def matches(self, labels: Dict[str, str]) -> bool:
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        return all(expr.matches(labels) for expr in self.match_expressions)


@dataclass
class PodAffinityTerm:
    label_selector: LabelSelector = field(default_factory=LabelSelector)
    topology_key: str = LABEL_HOSTNAME
    namespaces: Optional[List[str]] = None  # None means the pod's own namespace


@dataclass
class Affinity:
    node_affinity: Optional[NodeAffinity] = None
    pod_affinity_required: List[PodAffinityTerm] = field(default_factory=list)
    pod_affinity_preferred: List[PodAffinityTerm] = field(default_factory=list)
    pod_anti_affinity_required: List[PodAffinityTerm] = field(default_factory=list)
    pod_anti_affinity_preferred: List[PodAffinityTerm] = field(default_factory=list)


@dataclass
class OwnerReference:
    kind: str
    name: str
    uid: str = ""
    controller: bool = True


@dataclass
class Pod:
    """A workload unit as seen by the autoscaler"""
    name: str
    namespace: str = "default"
    requests: Resources = field(default_factory=Resources)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    node_name: Optional[str] = None
    node_selector: Dict[str, str] = field(default_factory=dict)
    tolerations: List[Toleration] = field(default_factory=list)
    affinity: Optional[Affinity] = None
    owner_references: List[OwnerReference] = field(default_factory=list)
    priority: int = 0
    nominated_node_name: Optional[str] = None
    host_ports: List[int] = field(default_factory=list)
    has_local_storage: bool = False
    creation_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def controller_ref(self) -> Optional[OwnerReference]:
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    @property
    def is_mirror_pod(self) -> bool:
        return MIRROR_POD_ANNOTATION in self.annotations

    @property
    def is_daemon_set_pod(self) -> bool:
        ref = self.controller_ref
        return ref is not None and ref.kind == "DaemonSet"

    @property
    def requests_gpu(self) -> bool:
        return self.requests.gpu > 0

    @property
    def has_required_pod_affinity(self) -> bool:
        """True if the pod declares required (anti-)affinity towards other pods"""
        if self.affinity is None:
            return False
        return bool(self.affinity.pod_affinity_required or self.affinity.pod_anti_affinity_required)

    def copy(self, **changes) -> "Pod":
        return replace(self, **changes)


@dataclass
class Node:
    """A cluster node as seen in a snapshot"""
    name: str
    allocatable: Resources = field(default_factory=Resources)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    taints: List[Taint] = field(default_factory=list)
    ready: bool = True
    unschedulable: bool = False
    provider_id: str = ""
    creation_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not self.provider_id:
            self.provider_id = self.name
        self.labels.setdefault(LABEL_HOSTNAME, self.name)

    @property
    def has_to_be_deleted_taint(self) -> bool:
        return any(taint.key == TO_BE_DELETED_TAINT for taint in self.taints)

    @property
    def scale_down_disabled(self) -> bool:
        return self.annotations.get(SCALE_DOWN_DISABLED_ANNOTATION, "").lower() == "true"

    def copy(self, **changes) -> "Node":
        changes.setdefault("labels", dict(self.labels))
        changes.setdefault("annotations", dict(self.annotations))
        changes.setdefault("taints", list(self.taints))
        return replace(self, **changes)


@dataclass
class PodDisruptionBudget:
    name: str
    namespace: str = "default"
    selector: LabelSelector = field(default_factory=LabelSelector)
    disruptions_allowed: int = 0

    def covers(self, pod: Pod) -> bool:
        return pod.namespace == self.namespace and self.selector.matches(pod.labels)


@dataclass
class DaemonSet:
    name: str
    namespace: str = "kube-system"
    pod_template: Pod = None

    def pod_for_node(self, node: Node) -> Pod:
        """Build the pod this daemon set would run on the given node"""
        template = self.pod_template or Pod(name=self.name, namespace=self.namespace)
        return template.copy(
            name=f"{self.name}-{node.name}",
            namespace=self.namespace,
            node_name=node.name,
            owner_references=[OwnerReference(kind="DaemonSet", name=self.name)],
        )
