"""
In-memory cloud provider.

Node groups are declared up front ("min:max:name" specs or explicit calls)
and instances live only in memory. Used by the simulate command and by the
tests; optional hooks let callers observe or fail resize and delete calls.
"""

import itertools
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .cloudprovider import (
    CloudProvider, InstanceCache, NodeGroup, NodeGroupRegistry, NodeGroupSpec, PeriodicTask,
)
from .errors import CloudProviderError
from .model import Node

logger = logging.getLogger(__name__)

ScaleUpHook = Callable[[str, int], None]
ScaleDownHook = Callable[[str, str], None]


class StaticNodeGroup(NodeGroup):
    """Node group whose instances are plain provider ids held in memory"""

    def __init__(self, spec: NodeGroupSpec, target_size: Optional[int] = None,
                 template: Optional[Node] = None, instances: Optional[List[str]] = None,
                 on_scale_up: Optional[ScaleUpHook] = None,
                 on_scale_down: Optional[ScaleDownHook] = None):
        self.spec = spec
        self.template = template
        self.instances: List[str] = list(instances or [])
        self._target_size = target_size if target_size is not None else len(self.instances)
        self._on_scale_up = on_scale_up
        self._on_scale_down = on_scale_down
        self._counter = itertools.count(len(self.instances) + 1)

    def id(self) -> str:
        return self.spec.name

    def min_size(self) -> int:
        return self.spec.min_size

    def max_size(self) -> int:
        return self.spec.max_size

    def target_size(self) -> int:
        return self._target_size

    def increase_size(self, delta: int) -> None:
        if delta <= 0:
            raise CloudProviderError(f"size increase must be positive, got {delta}")
        new_size = self._target_size + delta
        if new_size > self.max_size():
            raise CloudProviderError(
                f"size increase too large for {self.id()}: desired {new_size}, max {self.max_size()}")

        if self._on_scale_up is not None:
            self._on_scale_up(self.id(), delta)

        for _ in range(delta):
            instance_id = f"{self.id()}-{next(self._counter)}"
            while instance_id in self.instances:
                instance_id = f"{self.id()}-{next(self._counter)}"
            self.instances.append(instance_id)
        self._target_size = new_size
        logger.info(f"Node group {self.id()} target size increased to {new_size}")

    def decrease_target_size(self, delta: int) -> None:
        if delta >= 0:
            raise CloudProviderError(f"size decrease must be negative, got {delta}")
        new_size = self._target_size + delta
        if new_size < len(self.instances):
            raise CloudProviderError(
                f"attempt to delete existing nodes of {self.id()}: target {self._target_size}, delta {delta}")

        if self._on_scale_up is not None:
            self._on_scale_up(self.id(), delta)

        self._target_size = new_size
        logger.info(f"Node group {self.id()} target size decreased to {new_size}")

    def delete_nodes(self, nodes: List[Node]) -> None:
        if self._target_size - len(nodes) < self.min_size():
            raise CloudProviderError(f"min size of {self.id()} reached, cannot delete {len(nodes)} node(s)")

        for node in nodes:
            if node.provider_id not in self.instances:
                raise CloudProviderError(f"node {node.name} does not belong to {self.id()}")

        for node in nodes:
            if self._on_scale_down is not None:
                self._on_scale_down(self.id(), node.name)
            self.instances.remove(node.provider_id)
            self._target_size -= 1
            logger.info(f"Deleted node {node.name} from {self.id()}")

    def nodes(self) -> List[str]:
        return list(self.instances)

    def template_node(self) -> Node:
        if self.template is None:
            raise NotImplementedError(f"node group {self.id()} has no template")
        name = f"template-node-for-{self.id()}"
        return self.template.copy(name=name, provider_id=name)


class StaticCloudProvider(CloudProvider):
    """Cloud provider backed by in-memory node groups"""

    def __init__(self, node_group_specs: Optional[List[str]] = None,
                 on_scale_up: Optional[ScaleUpHook] = None,
                 on_scale_down: Optional[ScaleDownHook] = None,
                 instance_cache_ttl: timedelta = timedelta(hours=1)):
        self.on_scale_up = on_scale_up
        self.on_scale_down = on_scale_down
        self.registry = NodeGroupRegistry()
        self.instance_cache = InstanceCache(self.registry, ttl=instance_cache_ttl)
        self._cache_refresher: Optional[PeriodicTask] = None

        for spec in node_group_specs or []:
            self.register_spec(NodeGroupSpec.parse(spec))

    def name(self) -> str:
        return "static"

    def register_spec(self, spec: NodeGroupSpec, target_size: Optional[int] = None,
                      template: Optional[Node] = None) -> StaticNodeGroup:
        """
        Register a node group, updating it in place if the name is known.

        Instances, target size and template of an existing group are kept;
        only the size bounds follow the new spec.
        """
        existing = self.registry.get(spec.name)
        if existing is not None:
            group = StaticNodeGroup(
                spec,
                target_size=target_size if target_size is not None else existing.target_size(),
                template=template or existing.template,
                instances=existing.instances,
                on_scale_up=self.on_scale_up,
                on_scale_down=self.on_scale_down,
            )
        else:
            group = StaticNodeGroup(spec, target_size=target_size, template=template,
                                    on_scale_up=self.on_scale_up, on_scale_down=self.on_scale_down)
        self.registry.register(group)
        self.instance_cache.invalidate()
        return group

    def add_node_group(self, group_id: str, min_size: int, max_size: int, target_size: int,
                       template: Optional[Node] = None) -> StaticNodeGroup:
        return self.register_spec(NodeGroupSpec(group_id, min_size, max_size),
                                  target_size=target_size, template=template)

    def add_node(self, group_id: str, node: Node) -> None:
        """Attach an existing node to a group as one of its instances"""
        group = self.registry.get(group_id)
        if group is None:
            raise KeyError(f"unknown node group {group_id}")
        if node.provider_id not in group.instances:
            group.instances.append(node.provider_id)
        self.instance_cache.invalidate()

    def get_node_group(self, group_id: str) -> Optional[StaticNodeGroup]:
        return self.registry.get(group_id)

    def node_groups(self) -> List[NodeGroup]:
        return self.registry.groups()

    def node_group_for_node(self, node: Node) -> Optional[NodeGroup]:
        group_id = self.instance_cache.group_id_for_instance(node.provider_id)
        if group_id is None and self.instance_cache.is_stale(datetime.now(timezone.utc)):
            self.instance_cache.regenerate()
            group_id = self.instance_cache.group_id_for_instance(node.provider_id)
        if group_id is None:
            return None
        return self.registry.get(group_id)

    def refresh(self) -> None:
        self.instance_cache.regenerate()

    def start_cache_refresh(self, interval: Optional[timedelta] = None) -> None:
        """Regenerate the instance cache in the background until cleanup()"""
        if self._cache_refresher is None:
            self._cache_refresher = PeriodicTask(
                "instance-cache-refresh", interval or self.instance_cache.ttl, self.instance_cache.regenerate)
        self._cache_refresher.start()

    def cleanup(self) -> None:
        if self._cache_refresher is not None:
            self._cache_refresher.stop()

    def sizes(self) -> Dict[str, int]:
        return {group.id(): group.target_size() for group in self.registry.groups()}
