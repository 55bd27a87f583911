"""
Scale-up planning and execution.
"""

import logging
from datetime import datetime
from typing import Dict, List, Tuple

from .cloudprovider import CloudProvider
from .clusterstate import ClusterStateRegistry
from .config import AutoscalingOptions
from .errors import AutoscalerError, CloudProviderError, ErrorType
from .estimator import BinpackingEstimator
from .expander import Option, Strategy
from .model import DaemonSet, Node, Pod
from .simulator import NodeInfo, PredicateChecker
from .status import ScaleUpInfo, ScaleUpResult, ScaleUpStatus
from .utils import get_node_infos_for_groups

logger = logging.getLogger(__name__)


class ScaleUpPlanner:
    """
    Picks one node group per tick and grows it so that pending pods fit.

    Each candidate group is evaluated by bin packing the pods onto copies of
    its template node; the expander chooses among the resulting options.
    """

    def __init__(self, cloud_provider: CloudProvider, registry: ClusterStateRegistry,
                 predicate_checker: PredicateChecker, expander: Strategy,
                 options: AutoscalingOptions, estimator: BinpackingEstimator = None):
        self.cloud_provider = cloud_provider
        self.registry = registry
        self.predicate_checker = predicate_checker
        self.expander = expander
        self.options = options
        self.estimator = estimator or BinpackingEstimator(predicate_checker)

    def scale_up(self, pods: List[Pod], nodes: List[Node], scheduled: List[Pod],
                 daemon_sets: List[DaemonSet], now: datetime) -> ScaleUpStatus:
        """
        Try to grow one node group so the given unschedulable pods fit.

        Args:
            pods: Unschedulable pods to help
            nodes: Ready nodes of the cluster
            scheduled: Pods already bound to nodes
            daemon_sets: Daemon sets whose pods start on every new node
            now: Current time

        Returns:
            Status of the attempt

        Raises:
            AutoscalerError: If building templates or resizing the group fails
        """
        logger.info(f"Pod(s) needing scale-up: {len(pods)}")
        node_infos = get_node_infos_for_groups(nodes, self.cloud_provider, scheduled,
                                               daemon_sets, self.predicate_checker)

        upcoming_count = sum(self.registry.get_upcoming_nodes().values())
        pods_to_help, _ = self._filter_pods_helped_by_upcoming(pods, node_infos)
        if not pods_to_help:
            logger.info(f"All {len(pods)} pod(s) will fit on {upcoming_count} upcoming node(s)")
            return ScaleUpStatus(result=ScaleUpResult.IN_PROGRESS,
                                 message="pods fit on upcoming nodes")

        options = self._compute_options(pods_to_help, node_infos, now)
        if not options:
            logger.info("No expansion options")
            return ScaleUpStatus(result=ScaleUpResult.NO_OPTIONS_AVAILABLE,
                                 pods_remain_unschedulable=pods_to_help,
                                 message="no node group can help the pending pods")

        best = self.expander.best_option(options, node_infos)
        group = best.node_group
        logger.info(f"Best option to resize: {group.id()}, estimated {best.node_count} node(s) "
                    f"for {len(best.pods)} pod(s)")

        try:
            current = group.target_size()
        except CloudProviderError as e:
            raise AutoscalerError(ErrorType.CLOUD_PROVIDER_ERROR, f"failed to get target size of {group.id()}: {e}")

        new_size = min(current + best.node_count, group.max_size())
        if self.options.max_nodes_total > 0:
            allowed = self.options.max_nodes_total - len(nodes) - upcoming_count
            if allowed < new_size - current:
                logger.warning(f"Capping scale-up of {group.id()} to {max(allowed, 0)} node(s), "
                               f"max_nodes_total is {self.options.max_nodes_total}")
                new_size = current + max(allowed, 0)
        delta = new_size - current
        if delta <= 0:
            return ScaleUpStatus(result=ScaleUpResult.NO_OPTIONS_AVAILABLE,
                                 pods_remain_unschedulable=pods_to_help,
                                 message="max node count reached")

        logger.info(f"Scale-up: setting group {group.id()} size to {new_size}")
        try:
            group.increase_size(delta)
        except CloudProviderError as e:
            logger.error(f"Failed to increase size of {group.id()}: {e}")
            self.registry.register_failed_scale_up(group.id(), now)
            raise AutoscalerError(ErrorType.CLOUD_PROVIDER_ERROR, f"failed to increase node group size: {e}")

        self.registry.register_scale_up(group.id(), delta, now)

        triggered_pods = list(best.pods)
        if delta < best.node_count:
            triggered_pods = self.estimator.pods_fitting(best.pods, node_infos[group.id()], delta)
            logger.info(f"{len(triggered_pods)} of {len(best.pods)} pod(s) fit on the {delta} node(s) added")
        triggered = {pod.key for pod in triggered_pods}
        return ScaleUpStatus(
            result=ScaleUpResult.SUCCESSFUL,
            scale_up_infos=[ScaleUpInfo(group.id(), current, new_size, group.max_size())],
            pods_triggered_scale_up=triggered_pods,
            pods_remain_unschedulable=[pod for pod in pods_to_help if pod.key not in triggered],
        )

    def _filter_pods_helped_by_upcoming(self, pods: List[Pod],
                                        node_infos: Dict[str, NodeInfo]) -> Tuple[List[Pod], List[Pod]]:
        upcoming_nodes = []
        for group_id, count in self.registry.get_upcoming_nodes().items():
            template = node_infos.get(group_id)
            if template is None:
                continue
            for i in range(count):
                node = template.node.copy(name=f"{template.node.name}-upcoming-{i}")
                upcoming_nodes.append(NodeInfo(node, [pod.copy(node_name=node.name) for pod in template.pods]))

        remaining = []
        helped = []
        for pod in pods:
            for node_info in upcoming_nodes:
                if self.predicate_checker.fits(pod, node_info):
                    node_info.add_pod(pod.copy(node_name=node_info.node.name))
                    helped.append(pod)
                    break
            else:
                remaining.append(pod)
        if helped:
            logger.debug(f"{len(helped)} pod(s) will be placed on upcoming nodes")
        return remaining, helped

    def _compute_options(self, pods: List[Pod], node_infos: Dict[str, NodeInfo], now: datetime) -> List[Option]:
        options = []
        for group in self.cloud_provider.node_groups():
            group_id = group.id()
            try:
                target = group.target_size()
            except CloudProviderError as e:
                logger.error(f"Failed to get target size of {group_id}: {e}")
                continue
            if target >= group.max_size():
                logger.debug(f"Skipping node group {group_id} - max size reached")
                continue
            if not self.registry.is_node_group_safe_to_scale_up(group_id, now):
                logger.warning(f"Node group {group_id} is not ready for scale-up")
                continue

            node_info = node_infos.get(group_id)
            if node_info is None:
                logger.error(f"No node info for {group_id}")
                continue

            fitting = [pod for pod in pods if self.predicate_checker.fits_on_new_node(pod, node_info)]
            if not fitting:
                logger.debug(f"No pod can fit to {group_id}")
                continue

            node_count = self.estimator.estimate(fitting, node_info)
            if node_count == 0:
                continue
            options.append(Option(node_group=group, node_count=node_count, pods=fitting,
                                  debug=f"{group_id}: {node_count} node(s) for {len(fitting)} pod(s)"))
            logger.debug(options[-1].debug)
        return options
