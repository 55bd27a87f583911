"""
Scale-down engine.

A ready node moves through the states

    not tracked -> unneeded(since) -> eligible -> draining -> deleted

and falls back to "not tracked" as soon as it is needed again, becomes
unready or disappears. ScaleDown.update_unneeded_nodes runs on every healthy
tick and maintains the unneeded map; ScaleDown.try_to_scale_down only runs
when the orchestrator's cooldowns allow it and removes a bounded batch of
eligible nodes.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from .cloudprovider import CloudProvider, NodeGroup
from .clusterstate import ClusterStateRegistry
from .config import AutoscalingOptions
from .errors import ApiCallError, AutoscalerError, CloudProviderError, ErrorType
from .kube_client import ClusterClient
from .model import Node, Pod, PodDisruptionBudget
from .simulator import (
    DisruptionBudgets, DrainOptions, NodeInfo, PredicateChecker, build_node_infos, calculate_utilization,
    find_place_for, get_pods_to_move,
)
from .status import ScaleDownNode, ScaleDownResult, ScaleDownStatus

logger = logging.getLogger(__name__)


class NodeDeletionStatus:
    """
    Nodes currently being deleted and the last deletion error per node group.

    A node stays in flight until it is gone from the cluster snapshot or
    node_deletion_timeout has passed since its deletion started.
    """

    def __init__(self):
        self._in_flight: Dict[str, datetime] = {}
        self._last_errors: Dict[str, AutoscalerError] = {}

    def add(self, node_name: str, now: datetime) -> None:
        self._in_flight[node_name] = now

    def remove(self, node_name: str) -> None:
        self._in_flight.pop(node_name, None)

    def update(self, nodes: List[Node], now: datetime, timeout) -> None:
        present = {node.name for node in nodes}
        for name, started in list(self._in_flight.items()):
            if name not in present:
                logger.debug(f"Deletion of {name} finished")
                del self._in_flight[name]
            elif now - started >= timeout:
                logger.warning(f"Node {name} still present {now - started} after its deletion started")
                del self._in_flight[name]

    def is_deleting(self, node_name: str) -> bool:
        return node_name in self._in_flight

    def is_delete_in_progress(self) -> bool:
        return bool(self._in_flight)

    def nodes(self) -> List[str]:
        return list(self._in_flight)

    def set_error(self, group_id: str, error: AutoscalerError) -> None:
        self._last_errors[group_id] = error

    def get_last_error(self, group_id: str) -> Optional[AutoscalerError]:
        return self._last_errors.get(group_id)


class ScaleDown:
    """Tracks unneeded nodes and removes them once they stayed unneeded long enough"""

    def __init__(self, cloud_provider: CloudProvider, client: ClusterClient,
                 registry: ClusterStateRegistry, predicate_checker: PredicateChecker,
                 options: AutoscalingOptions):
        self.cloud_provider = cloud_provider
        self.client = client
        self.registry = registry
        self.predicate_checker = predicate_checker
        self.options = options
        self.drain_options = DrainOptions(
            skip_nodes_with_system_pods=options.skip_nodes_with_system_pods,
            skip_nodes_with_local_storage=options.skip_nodes_with_local_storage,
            skip_nodes_with_non_replicated_pods=options.skip_nodes_with_non_replicated_pods,
        )

        self.unneeded_nodes: Dict[str, datetime] = {}
        self.unremovable_nodes: Dict[str, datetime] = {}
        self.node_utilization: Dict[str, float] = {}
        self.node_deletion_status = NodeDeletionStatus()

    def clean_up(self, now: datetime) -> None:
        """Forget unremovable verdicts that are due for a recheck"""
        for name, recheck_at in list(self.unremovable_nodes.items()):
            if recheck_at <= now:
                del self.unremovable_nodes[name]

    def clean_up_unneeded_nodes(self) -> None:
        self.unneeded_nodes = {}
        self.node_utilization = {}

    def update_unneeded_nodes(self, all_nodes: List[Node], candidates: List[Node], pods: List[Pod],
                              now: datetime, pdbs: List[PodDisruptionBudget]) -> None:
        """
        Recompute which candidates could be removed right now.

        Every pod of a kept node must fit somewhere else. Removal is simulated
        one node after another, so pods of an earlier node occupy capacity
        later nodes cannot use. First-seen timestamps of nodes that stay
        unneeded are preserved.

        Raises:
            AutoscalerError: If node groups cannot be read
        """
        self.node_deletion_status.update(all_nodes, now, self.options.node_deletion_timeout)
        node_infos = build_node_infos(all_nodes, pods)

        eligible = []
        utilization = {}
        for node in candidates:
            info = node_infos.get(node.name)
            if info is None:
                continue
            if not self._is_candidate(node, now):
                continue
            node_util = calculate_utilization(info)
            utilization[node.name] = node_util
            if node_util >= self.options.scale_down_utilization_threshold:
                logger.debug(f"Node {node.name} is not suitable for removal - utilization too high ({node_util:.3f})")
                continue
            eligible.append(node)

        # Nodes already unneeded are simulated first so the set stays stable
        eligible.sort(key=lambda n: (n.name not in self.unneeded_nodes, self.unneeded_nodes.get(n.name, now), n.name))

        working = {name: info.clone() for name, info in node_infos.items()
                   if self._is_destination(info.node)}
        removable_per_group: Dict[str, int] = {}
        new_unneeded: Dict[str, datetime] = {}
        disruptions = DisruptionBudgets(pdbs)

        for node in eligible:
            group = self._node_group(node)
            if group is None:
                continue
            budget = removable_per_group.setdefault(group.id(), self._removal_budget(group))
            if budget <= 0:
                logger.debug(f"Node {node.name} is not suitable for removal - {group.id()} would go below min size")
                continue

            _, reason = get_pods_to_move(node_infos[node.name], pdbs, self.drain_options)
            if reason is not None:
                logger.debug(f"Node {node.name} cannot be removed: {reason}")
                self.unremovable_nodes[node.name] = now + self.options.unremovable_node_recheck_timeout
                continue

            # Pods placed here by earlier removals have to move as well
            info = working.get(node.name) or node_infos[node.name]
            to_move, reason = get_pods_to_move(info, pdbs, self.drain_options, disruptions)
            if reason is not None:
                logger.debug(f"Node {node.name} is not suitable for removal together with earlier nodes: {reason}")
                continue

            trial = {name: other.clone() for name, other in working.items() if name != node.name}
            if find_place_for(to_move, list(trial.values()), self.predicate_checker, trial) is None:
                logger.debug(f"Node {node.name} is not suitable for removal - pods cannot be moved")
                continue

            working = trial
            removable_per_group[group.id()] = budget - 1
            disruptions.consume(to_move)
            new_unneeded[node.name] = self.unneeded_nodes.get(node.name, now)

        self.unneeded_nodes = new_unneeded
        self.node_utilization = utilization
        logger.debug(f"{len(new_unneeded)} unneeded node(s)")

    def try_to_scale_down(self, all_nodes: List[Node], pods: List[Pod],
                          pdbs: List[PodDisruptionBudget], now: datetime) -> ScaleDownStatus:
        """
        Delete nodes that stayed unneeded for scale_down_unneeded_time.

        Empty nodes are deleted in bulk; otherwise at most
        max_drain_nodes_per_tick nodes are drained and deleted.

        Raises:
            AutoscalerError: If tainting, eviction or deletion fails; the
                node is untainted and the rest of the batch is not attempted
        """
        node_infos = build_node_infos(all_nodes, pods)
        candidates = self._eligible_candidates(node_infos, now)
        if not candidates:
            return ScaleDownStatus(result=ScaleDownResult.NO_OPTIONS_AVAILABLE,
                                   message="no node unneeded long enough")

        budgets: Dict[str, int] = {}
        empty: List[Tuple[Node, NodeGroup]] = []
        non_empty: List[Tuple[Node, NodeGroup]] = []
        for node, group in candidates:
            to_move, reason = get_pods_to_move(node_infos[node.name], pdbs, self.drain_options)
            if reason is not None:
                logger.debug(f"Node {node.name} cannot be removed: {reason}")
                continue
            if not to_move:
                budget = budgets.setdefault(group.id(), self._removal_budget(group))
                if budget > 0 and len(empty) < self.options.max_empty_bulk_delete:
                    budgets[group.id()] = budget - 1
                    empty.append((node, group))
            else:
                non_empty.append((node, group))

        if empty:
            return self._delete_batch([(node, group, []) for node, group in empty], now)

        to_drain = self._select_nodes_to_drain(non_empty, node_infos, pdbs, budgets)
        if not to_drain:
            return ScaleDownStatus(result=ScaleDownResult.NO_OPTIONS_AVAILABLE,
                                   message="no unneeded node can be drained")
        return self._delete_batch(to_drain, now)

    def _select_nodes_to_drain(self, candidates: List[Tuple[Node, NodeGroup]], node_infos: Dict[str, NodeInfo],
                               pdbs: List[PodDisruptionBudget],
                               budgets: Dict[str, int]) -> List[Tuple[Node, NodeGroup, List[Pod]]]:
        removing = {node.name for node, _ in candidates}
        destinations = {name: info.clone() for name, info in node_infos.items()
                        if self._is_destination(info.node)}
        disruptions = DisruptionBudgets(pdbs)

        selected = []
        for node, group in candidates:
            if len(selected) >= self.options.max_drain_nodes_per_tick:
                break
            budget = budgets.setdefault(group.id(), self._removal_budget(group))
            if budget <= 0:
                continue

            to_move, reason = get_pods_to_move(node_infos[node.name], pdbs, self.drain_options, disruptions)
            if reason is not None:
                logger.info(f"Not draining {node.name} in this batch: {reason}")
                continue
            trial = {name: info.clone() for name, info in destinations.items() if name not in removing}
            if find_place_for(to_move, list(trial.values()), self.predicate_checker, trial) is None:
                logger.info(f"Pods of {node.name} no longer fit elsewhere, not removing it")
                continue
            destinations.update(trial)
            budgets[group.id()] = budget - 1
            disruptions.consume(to_move)
            selected.append((node, group, to_move))
        return selected

    def _delete_batch(self, batch: List[Tuple[Node, NodeGroup, List[Pod]]], now: datetime) -> ScaleDownStatus:
        removed = []
        for node, group, to_move in batch:
            logger.info(f"Scale-down: removing {'empty ' if not to_move else ''}node {node.name} "
                        f"from {group.id()}, utilization {self.node_utilization.get(node.name, 0.0):.3f}")
            self._delete_node(node, group, to_move, now)
            removed.append(ScaleDownNode(node=node, group_id=group.id(), evicted_pods=list(to_move),
                                         utilization=self.node_utilization.get(node.name, 0.0)))
            self.unneeded_nodes.pop(node.name, None)

        return ScaleDownStatus(result=ScaleDownResult.SUCCESSFUL, scaled_down_nodes=removed)

    def _delete_node(self, node: Node, group: NodeGroup, to_move: List[Pod], now: datetime) -> None:
        self.node_deletion_status.add(node.name, now)
        try:
            self.client.add_to_be_deleted_taint(node, now)
            for pod in to_move:
                self.client.evict_pod(pod)
            group.delete_nodes([node])
        except (ApiCallError, CloudProviderError) as e:
            error_type = ErrorType.CLOUD_PROVIDER_ERROR if isinstance(e, CloudProviderError) else ErrorType.API_CALL_ERROR
            error = AutoscalerError(error_type, f"failed to delete {node.name}: {e}")
            logger.error(str(error))
            self.node_deletion_status.remove(node.name)
            self.node_deletion_status.set_error(group.id(), error)
            try:
                self.client.remove_to_be_deleted_taint(node)
            except ApiCallError as untaint_error:
                logger.error(f"Failed to remove deletion taint from {node.name}: {untaint_error}")
            raise error

    def _eligible_candidates(self, node_infos: Dict[str, NodeInfo], now: datetime) -> List[Tuple[Node, NodeGroup]]:
        result = []
        for name, since in sorted(self.unneeded_nodes.items(), key=lambda item: (item[1], item[0])):
            if now - since < self.options.scale_down_unneeded_time:
                continue
            info = node_infos.get(name)
            if info is None or not self._is_candidate(info.node, now):
                continue
            group = self._node_group(info.node)
            if group is None:
                continue
            result.append((info.node, group))
        return result

    def _is_candidate(self, node: Node, now: datetime) -> bool:
        if not node.ready:
            return False
        if node.has_to_be_deleted_taint or self.node_deletion_status.is_deleting(node.name):
            return False
        if node.scale_down_disabled:
            logger.debug(f"Skipping {node.name} - scale down disabled annotation found")
            return False
        recheck_at = self.unremovable_nodes.get(node.name)
        if recheck_at is not None and recheck_at > now:
            return False
        group = self._node_group(node)
        if group is None:
            return False
        return self._removal_budget(group) > 0

    def _is_destination(self, node: Node) -> bool:
        return (node.ready and not node.unschedulable and not node.has_to_be_deleted_taint
                and not self.node_deletion_status.is_deleting(node.name))

    def _node_group(self, node: Node) -> Optional[NodeGroup]:
        try:
            return self.cloud_provider.node_group_for_node(node)
        except CloudProviderError as e:
            raise AutoscalerError(ErrorType.CLOUD_PROVIDER_ERROR, f"failed to find node group for {node.name}: {e}")

    def _removal_budget(self, group: NodeGroup) -> int:
        try:
            return group.target_size() - group.min_size()
        except CloudProviderError as e:
            raise AutoscalerError(ErrorType.CLOUD_PROVIDER_ERROR, f"failed to get target size of {group.id()}: {e}")
