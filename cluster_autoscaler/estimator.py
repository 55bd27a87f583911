"""
Node count estimation for scale-up.
"""

import logging
from typing import List, Optional, Tuple

from .model import Pod
from .simulator import NodeInfo, PredicateChecker

logger = logging.getLogger(__name__)


def pod_score(pod: Pod, template: NodeInfo) -> float:
    """
    Size of a pod relative to the template node.

    Pods are packed largest first, so the score sums the fractions of the
    node's cpu and memory the pod requests.
    """
    allocatable = template.node.allocatable
    cpu = pod.requests.cpu / allocatable.cpu if allocatable.cpu > 0 else 0.0
    memory = pod.requests.memory / allocatable.memory if allocatable.memory > 0 else 0.0
    return cpu + memory


class BinpackingEstimator:
    """First-fit bin packing of pending pods onto copies of a template node"""

    def __init__(self, predicate_checker: PredicateChecker):
        self.predicate_checker = predicate_checker

    def estimate(self, pods: List[Pod], template: NodeInfo) -> int:
        """
        Number of template nodes needed to hold all the given pods.

        Pods that do not fit on an empty template are not counted; callers
        filter them out beforehand.
        """
        new_nodes, _ = self._pack(pods, template)
        return len(new_nodes)

    def pods_fitting(self, pods: List[Pod], template: NodeInfo, max_nodes: int) -> List[Pod]:
        """Pods that find room when at most max_nodes template nodes are added"""
        _, placed = self._pack(pods, template, max_nodes)
        keys = {pod.key for pod in placed}
        return [pod for pod in pods if pod.key in keys]

    def _pack(self, pods: List[Pod], template: NodeInfo,
              max_nodes: Optional[int] = None) -> Tuple[List[NodeInfo], List[Pod]]:
        ordered = sorted(pods, key=lambda pod: pod_score(pod, template), reverse=True)
        new_nodes: List[NodeInfo] = []
        placed: List[Pod] = []

        for pod in ordered:
            for node_info in new_nodes:
                if self.predicate_checker.fits(pod, node_info):
                    node_info.add_pod(pod)
                    placed.append(pod)
                    break
            else:
                if max_nodes is not None and len(new_nodes) >= max_nodes:
                    continue
                node_info = template.clone()
                if not self.predicate_checker.fits(pod, node_info):
                    logger.debug(f"Pod {pod.key} does not fit on template {template.node.name}")
                    continue
                node_info.add_pod(pod)
                placed.append(pod)
                new_nodes.append(node_info)

        return new_nodes, placed
