"""
Selection strategies that pick one scale-up option per tick.
"""

import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from .cloudprovider import NodeGroup
from .model import LABEL_INSTANCE_TYPE, Pod
from .simulator import NodeInfo

logger = logging.getLogger(__name__)


class ExpanderType(Enum):
    """Available expanders"""
    RANDOM = "random"
    MOST_PODS = "most-pods"
    LEAST_WASTE = "least-waste"
    PRICE = "price"


@dataclass
class Option:
    """Scaling a node group by node_count nodes to fit the given pods"""
    node_group: NodeGroup
    node_count: int
    pods: List[Pod] = field(default_factory=list)
    debug: str = ""


class Strategy(ABC):
    """Abstract base class for expanders"""

    @abstractmethod
    def best_option(self, options: List[Option], node_infos: Dict[str, NodeInfo]) -> Optional[Option]:
        """
        Pick the option to execute.

        Args:
            options: Candidate options, one per node group
            node_infos: Template node info per node group id

        Returns:
            The chosen option or None if options is empty
        """
        pass


class Filter(ABC):
    """Narrows options down to the best ones; ties are broken by a fallback strategy"""

    @abstractmethod
    def best_options(self, options: List[Option], node_infos: Dict[str, NodeInfo]) -> List[Option]:
        pass


class RandomStrategy(Strategy):
    """Picks any option"""

    def __init__(self, seed: Optional[int] = None):
        self._random = random.Random(seed)

    def best_option(self, options: List[Option], node_infos: Dict[str, NodeInfo]) -> Optional[Option]:
        if not options:
            return None
        return self._random.choice(options)


class FilterStrategy(Strategy):
    """Applies a filter and hands the survivors to a fallback strategy"""

    def __init__(self, option_filter: Filter, fallback: Optional[Strategy] = None):
        self.option_filter = option_filter
        self.fallback = fallback or RandomStrategy()

    def best_option(self, options: List[Option], node_infos: Dict[str, NodeInfo]) -> Optional[Option]:
        filtered = self.option_filter.best_options(options, node_infos)
        return self.fallback.best_option(filtered, node_infos)


class MostPodsFilter(Filter):
    """Keeps the options that schedule the most pods"""

    def best_options(self, options: List[Option], node_infos: Dict[str, NodeInfo]) -> List[Option]:
        if not options:
            return []
        most = max(len(option.pods) for option in options)
        return [option for option in options if len(option.pods) == most]


class LeastWasteFilter(Filter):
    """
    Keeps the options that leave the least cpu and memory idle.

    Waste is the unrequested fraction of the new nodes' cpu plus that of their
    memory, so an option that exactly fills its nodes scores 0.
    """

    def best_options(self, options: List[Option], node_infos: Dict[str, NodeInfo]) -> List[Option]:
        best: List[Option] = []
        least_waste = None
        for option in options:
            node_info = node_infos.get(option.node_group.id())
            if node_info is None:
                continue
            waste = self._waste(option, node_info)
            logger.debug(f"Expanding {option.node_group.id()} wastes {waste:.3f}")
            if least_waste is None or waste < least_waste:
                least_waste = waste
                best = [option]
            elif waste == least_waste:
                best.append(option)
        return best

    def _waste(self, option: Option, node_info: NodeInfo) -> float:
        allocatable = node_info.node.allocatable
        requested_cpu = sum(pod.requests.cpu for pod in option.pods)
        requested_memory = sum(pod.requests.memory for pod in option.pods)
        available_cpu = allocatable.cpu * option.node_count
        available_memory = allocatable.memory * option.node_count

        waste = 0.0
        if available_cpu > 0:
            waste += (available_cpu - requested_cpu) / available_cpu
        if available_memory > 0:
            waste += (available_memory - requested_memory) / available_memory
        return waste


class PriceFilter(Filter):
    """Keeps the options with the lowest hourly price per scheduled pod"""

    def __init__(self, instance_prices: Dict[str, float]):
        self.instance_prices = instance_prices

    def best_options(self, options: List[Option], node_infos: Dict[str, NodeInfo]) -> List[Option]:
        best: List[Option] = []
        lowest = None
        for option in options:
            cost = self._cost_per_pod(option, node_infos.get(option.node_group.id()))
            if cost is None:
                continue
            if lowest is None or cost < lowest:
                lowest = cost
                best = [option]
            elif cost == lowest:
                best.append(option)

        if not best:
            logger.warning("No instance prices known for any option, falling back to all options")
            return list(options)
        return best

    def _cost_per_pod(self, option: Option, node_info: Optional[NodeInfo]) -> Optional[float]:
        if node_info is None or not option.pods:
            return None
        instance_type = node_info.node.labels.get(LABEL_INSTANCE_TYPE)
        price = self.instance_prices.get(instance_type)
        if price is None:
            return None
        return price * option.node_count / len(option.pods)


def build_expander(name: str, instance_prices: Optional[Dict[str, float]] = None,
                   seed: Optional[int] = None) -> Strategy:
    """
    Build an expander by name.

    Raises:
        ValueError: If the name is unknown
    """
    try:
        expander_type = ExpanderType(name)
    except ValueError:
        raise ValueError(f"Unknown expander: {name}")

    fallback = RandomStrategy(seed)
    if expander_type == ExpanderType.RANDOM:
        return fallback
    if expander_type == ExpanderType.MOST_PODS:
        return FilterStrategy(MostPodsFilter(), fallback)
    if expander_type == ExpanderType.LEAST_WASTE:
        return FilterStrategy(LeastWasteFilter(), fallback)
    return FilterStrategy(PriceFilter(instance_prices or {}), fallback)
