"""
Helpers used by the autoscaling loop: pod list filters, node group
reconciliation and template node construction.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from .cloudprovider import CloudProvider
from .clusterstate import ClusterStateRegistry, UnregisteredNode
from .errors import ApiCallError, AutoscalerError, CloudProviderError, ErrorType
from .kube_client import ClusterClient
from .model import (
    DaemonSet, Node, Pod, LABEL_GPU_ACCELERATOR, LABEL_HOSTNAME, TO_BE_DELETED_TAINT,
)
from .simulator import NodeInfo, PredicateChecker, build_node_infos
from .status import EventType, StatusRecorder

logger = logging.getLogger(__name__)

# Pods this fresh are probably part of a larger batch still being created
UNSCHEDULABLE_POD_TIME_BUFFER = timedelta(seconds=2)
UNSCHEDULABLE_POD_WITH_GPU_TIME_BUFFER = timedelta(seconds=30)

RESCHEDULER_TAINT = "CriticalAddonsOnly"


def filter_out_expendable_pods(pods: Iterable[Pod], priority_cutoff: int) -> List[Pod]:
    """Drop pods whose priority is below the cutoff"""
    return [pod for pod in pods if pod.priority >= priority_cutoff]


def filter_out_expendable_and_split(pods: Iterable[Pod], priority_cutoff: int) -> Tuple[List[Pod], List[Pod]]:
    """
    Split unschedulable pods into those that need new capacity and those
    already nominated to a node, waiting for lower priority pods to be
    preempted. Expendable pods are dropped from both.
    """
    unschedulable = []
    waiting_for_preemption = []
    for pod in pods:
        if pod.priority < priority_cutoff:
            logger.debug(f"Pod {pod.key} has priority {pod.priority} below cutoff, ignoring")
            continue
        if pod.nominated_node_name:
            waiting_for_preemption.append(pod)
        else:
            unschedulable.append(pod)
    return unschedulable, waiting_for_preemption


def filter_out_schedulable(unschedulable: List[Pod], nodes: List[Node], scheduled: List[Pod],
                           waiting_for_preemption: List[Pod], checker: PredicateChecker,
                           priority_cutoff: int) -> List[Pod]:
    """
    Return the pods that fit on none of the given nodes.

    Pods are tried highest priority first and every pod that fits is added to
    its node, so capacity is not counted twice.
    """
    occupants = filter_out_expendable_pods(scheduled, priority_cutoff)
    occupants += [pod.copy(node_name=pod.nominated_node_name) for pod in waiting_for_preemption]
    node_infos = build_node_infos(nodes, occupants)

    still_unschedulable = []
    for pod in sorted(unschedulable, key=lambda p: p.priority, reverse=True):
        for node_info in node_infos.values():
            if checker.fits(pod, node_info, node_infos):
                logger.debug(f"Pod {pod.key} fits on {node_info.node.name}")
                node_info.add_pod(pod.copy(node_name=node_info.node.name))
                break
        else:
            still_unschedulable.append(pod)
    return still_unschedulable


def filter_out_young_pods(pods: Iterable[Pod], now: datetime, delay: timedelta) -> List[Pod]:
    old_pods = []
    for pod in pods:
        age = now - pod.creation_timestamp
        if age > delay:
            old_pods.append(pod)
        else:
            logger.debug(f"Pod {pod.key} is {age.total_seconds():.3f} seconds old, too new to consider")
    return old_pods


def get_oldest_create_time(pods: Iterable[Pod]) -> Optional[datetime]:
    times = [pod.creation_timestamp for pod in pods]
    return min(times) if times else None


def all_pods_are_new(pods: List[Pod], now: datetime) -> bool:
    """True if even the oldest pod was created within the time buffer"""
    oldest = get_oldest_create_time(pods)
    if oldest is not None and oldest + UNSCHEDULABLE_POD_TIME_BUFFER > now:
        return True
    oldest_gpu = get_oldest_create_time(pod for pod in pods if pod.requests_gpu)
    return oldest_gpu is not None and oldest_gpu + UNSCHEDULABLE_POD_WITH_GPU_TIME_BUFFER > now


def filter_out_nodes_with_unready_gpus(all_nodes: List[Node],
                                       ready_nodes: List[Node]) -> Tuple[List[Node], List[Node]]:
    """
    Treat GPU nodes as unready until their GPUs show up in allocatable.

    GPU drivers are installed after the node registers, so for a while the
    node is ready but offers no GPUs.
    """
    unready_gpu = set()
    new_ready = []
    for node in ready_nodes:
        if LABEL_GPU_ACCELERATOR in node.labels and node.allocatable.gpu == 0:
            logger.debug(f"Node {node.name} has unready GPUs")
            unready_gpu.add(node.name)
        else:
            new_ready.append(node)

    new_all = [node.copy(ready=False) if node.name in unready_gpu else node for node in all_nodes]
    return new_all, new_ready


def remove_old_unregistered_nodes(unregistered: List[UnregisteredNode], cloud_provider: CloudProvider,
                                  now: datetime, max_node_provision_time: timedelta) -> bool:
    """
    Delete instances that failed to register within max_node_provision_time.

    Returns:
        True if any instance was deleted

    Raises:
        AutoscalerError: If a deletion fails
    """
    removed_any = False
    for unregistered_node in unregistered:
        if unregistered_node.unregistered_since + max_node_provision_time >= now:
            continue

        node = unregistered_node.node
        logger.info(f"Removing unregistered node {node.name}")
        try:
            group = cloud_provider.node_group_for_node(node)
            if group is None:
                logger.warning(f"No node group for unregistered node {node.name}")
                continue
            if group.target_size() <= group.min_size():
                logger.warning(f"Failed to remove node {node.name}: node group {group.id()} "
                               f"is already at min size")
                continue
            group.delete_nodes([node])
        except CloudProviderError as e:
            if removed_any:
                logger.warning(f"Some unregistered nodes were removed, but got error: {e}")
            else:
                logger.error(f"Failed to remove unregistered node {node.name}: {e}")
            raise AutoscalerError(ErrorType.CLOUD_PROVIDER_ERROR, str(e))
        removed_any = True
    return removed_any


def fix_node_group_size(registry: ClusterStateRegistry, cloud_provider: CloudProvider,
                        now: datetime, max_node_provision_time: timedelta) -> bool:
    """
    Shrink target sizes that stayed above the registered node count for
    longer than max_node_provision_time.

    Returns:
        True if any target size was changed

    Raises:
        AutoscalerError: If decreasing a target size fails
    """
    fixed = False
    for group in cloud_provider.node_groups():
        incorrect = registry.get_incorrect_node_group_size(group.id())
        if incorrect is None:
            continue
        if incorrect.first_observed + max_node_provision_time >= now:
            continue

        delta = incorrect.current_size - incorrect.expected_size
        if delta >= 0:
            continue
        logger.info(f"Decreasing size of {group.id()}, expected={incorrect.expected_size} "
                    f"current={incorrect.current_size} delta={delta}")
        try:
            group.decrease_target_size(delta)
        except CloudProviderError as e:
            raise AutoscalerError(ErrorType.CLOUD_PROVIDER_ERROR,
                                  f"failed to decrease {group.id()}: {e}")
        fixed = True
    return fixed


def get_potentially_unneeded_nodes(nodes: Iterable[Node], cloud_provider: CloudProvider) -> List[Node]:
    """Nodes that belong to an autoscaled node group"""
    result = []
    for node in nodes:
        try:
            group = cloud_provider.node_group_for_node(node)
        except CloudProviderError as e:
            logger.warning(f"Error while checking node group for {node.name}: {e}")
            continue
        if group is None:
            logger.debug(f"Skipping {node.name} - no node group config")
            continue
        result.append(node)
    return result


def sanitize_template_node(node: Node, group_id: str) -> Node:
    """
    Copy a real node into a template for a brand new member of its group.

    The copy gets a fresh name and hostname, and loses the taints the
    autoscaler and rescheduler put on existing nodes.
    """
    name = f"template-node-for-{group_id}-{uuid.uuid4().hex[:8]}"
    labels = dict(node.labels)
    labels[LABEL_HOSTNAME] = name
    taints = [taint for taint in node.taints if taint.key not in (TO_BE_DELETED_TAINT, RESCHEDULER_TAINT)]
    return node.copy(name=name, provider_id=name, labels=labels, taints=taints,
                     ready=True, unschedulable=False)


def build_template_node_info(template: Node, daemon_sets: Iterable[DaemonSet],
                             checker: PredicateChecker) -> NodeInfo:
    """A template node with the daemon set pods that would start on it"""
    node_info = NodeInfo(template)
    for daemon_set in daemon_sets:
        pod = daemon_set.pod_for_node(template)
        if checker.fits(pod.copy(node_name=None), node_info):
            node_info.add_pod(pod)
    return node_info


def get_node_infos_for_groups(nodes: List[Node], cloud_provider: CloudProvider, scheduled: List[Pod],
                              daemon_sets: List[DaemonSet], checker: PredicateChecker) -> Dict[str, NodeInfo]:
    """
    Template node info for every node group.

    A sanitized copy of a ready member is preferred because it carries the
    real labels and daemon pods; groups without one use the provider
    template. Groups with neither are left out.

    Raises:
        AutoscalerError: If the provider fails to build a template
    """
    result: Dict[str, NodeInfo] = {}
    node_infos = build_node_infos(nodes, scheduled)

    for node in nodes:
        try:
            group = cloud_provider.node_group_for_node(node)
        except CloudProviderError as e:
            raise AutoscalerError(ErrorType.CLOUD_PROVIDER_ERROR, str(e))
        if group is None or group.id() in result:
            continue

        template = sanitize_template_node(node, group.id())
        kept = [pod.copy(node_name=template.name) for pod in node_infos[node.name].pods
                if pod.is_daemon_set_pod or pod.is_mirror_pod]
        result[group.id()] = NodeInfo(template, kept)

    for group in cloud_provider.node_groups():
        if group.id() in result:
            continue
        try:
            template = group.template_node()
        except NotImplementedError:
            logger.debug(f"Node group {group.id()} has no template and no ready nodes, skipping")
            continue
        except CloudProviderError as e:
            logger.error(f"Unable to build template for node group {group.id()}: {e}")
            raise AutoscalerError(ErrorType.CLOUD_PROVIDER_ERROR, str(e))
        result[group.id()] = build_template_node_info(sanitize_template_node(template, group.id()),
                                                      daemon_sets, checker)

    return result


def clean_to_be_deleted(nodes: Iterable[Node], client: ClusterClient, recorder: StatusRecorder) -> None:
    """Remove deletion taints left behind by a previous run"""
    for node in nodes:
        try:
            cleaned = client.remove_to_be_deleted_taint(node)
        except ApiCallError as e:
            logger.warning(f"Error while releasing taints on node {node.name}: {e}")
            recorder.event(EventType.WARNING, "ClusterAutoscalerCleanup",
                           f"failed to clean toBeDeletedTaint: {e}")
            continue
        if cleaned:
            logger.info(f"Successfully released toBeDeletedTaint on node {node.name}")
            recorder.event(EventType.NORMAL, "ClusterAutoscalerCleanup",
                           f"removed toBeDeletedTaint from {node.name}")
