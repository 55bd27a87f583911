"""
Unit tests for scale-up planning
"""
from unittest.mock import Mock

import pytest

from cluster_autoscaler.clusterstate import ClusterStateRegistry
from cluster_autoscaler.config import AutoscalingOptions
from cluster_autoscaler.errors import AutoscalerError, CloudProviderError, ErrorType
from cluster_autoscaler.expander import RandomStrategy, build_expander
from cluster_autoscaler.scale_up import ScaleUpPlanner
from cluster_autoscaler.simulator import PredicateChecker
from cluster_autoscaler.static_provider import StaticCloudProvider
from cluster_autoscaler.status import ScaleUpInfo, ScaleUpResult

from conftest import GI, build_test_node, build_test_pod

MI = 1024 ** 2


def build_planner(provider, options=None, expander=None):
    options = options or AutoscalingOptions()
    registry = ClusterStateRegistry(provider, options)
    planner = ScaleUpPlanner(provider, registry, PredicateChecker(), expander or RandomStrategy(seed=1), options)
    return planner, registry


def build_provider(target_size: int = 0, max_size: int = 10, on_scale_up=None):
    provider = StaticCloudProvider(on_scale_up=on_scale_up)
    provider.add_node_group("ng1", 0, max_size, target_size,
                            template=build_test_node("tpl", cpu=8000, memory=32 * GI))
    return provider


class TestScaleUp:
    """Test growing a node group for pending pods"""

    def test_single_pod_adds_one_node(self, now):
        hook = Mock()
        provider = build_provider(on_scale_up=hook)
        planner, registry = build_planner(provider)
        registry.update_nodes([], now)

        pod = build_test_pod("p1", cpu=500, memory=1000 * MI)
        status = planner.scale_up([pod], [], [], [], now)

        hook.assert_called_once_with("ng1", 1)
        assert status.result == ScaleUpResult.SUCCESSFUL
        assert status.scale_up_infos == [ScaleUpInfo("ng1", 0, 1, 10)]
        assert status.pods_triggered_scale_up == [pod]
        assert status.pods_remain_unschedulable == []
        assert registry.get_scale_up_request("ng1").increase == 1

    def test_estimate_covers_all_pods(self, now):
        hook = Mock()
        provider = build_provider(on_scale_up=hook)
        planner, registry = build_planner(provider)
        registry.update_nodes([], now)

        pods = [build_test_pod(f"p{i}", cpu=3000) for i in range(5)]
        status = planner.scale_up(pods, [], [], [], now)

        hook.assert_called_once_with("ng1", 3)
        assert status.scale_up_infos[0].new_size == 3

    def test_unsatisfiable_node_selector(self, now):
        hook = Mock()
        provider = build_provider(on_scale_up=hook)
        planner, registry = build_planner(provider)
        registry.update_nodes([], now)

        pod = build_test_pod("p1", node_selector={"disktype": "ssd"})
        status = planner.scale_up([pod], [], [], [], now)

        hook.assert_not_called()
        assert status.result == ScaleUpResult.NO_OPTIONS_AVAILABLE
        assert status.pods_remain_unschedulable == [pod]

    def test_pods_fit_on_upcoming_nodes(self, now):
        hook = Mock()
        provider = build_provider(on_scale_up=hook)
        planner, registry = build_planner(provider)
        registry.update_nodes([], now)
        provider.get_node_group("ng1").increase_size(1)
        registry.register_scale_up("ng1", 1, now)

        status = planner.scale_up([build_test_pod("p1", cpu=500)], [], [], [], now)

        assert status.result == ScaleUpResult.IN_PROGRESS
        assert hook.call_count == 1

    def test_max_nodes_total_caps_increase(self, now):
        hook = Mock()
        provider = build_provider(target_size=2, on_scale_up=hook)
        nodes = [build_test_node(f"ng1-{i}", cpu=8000, memory=32 * GI) for i in (1, 2)]
        for node in nodes:
            provider.add_node("ng1", node)
        planner, registry = build_planner(provider, AutoscalingOptions(max_nodes_total=3))
        registry.update_nodes(nodes, now)

        pods = [build_test_pod(f"p{i}", cpu=6000) for i in range(4)]
        status = planner.scale_up(pods, nodes, [], [], now)

        hook.assert_called_once_with("ng1", 1)
        assert status.scale_up_infos == [ScaleUpInfo("ng1", 2, 3, 10)]
        assert status.pods_triggered_scale_up == [pods[0]]
        assert status.pods_remain_unschedulable == pods[1:]

    def test_max_nodes_total_reached(self, now):
        hook = Mock()
        provider = build_provider(target_size=1, on_scale_up=hook)
        node = build_test_node("ng1-1", cpu=8000, memory=32 * GI)
        provider.add_node("ng1", node)
        planner, registry = build_planner(provider, AutoscalingOptions(max_nodes_total=1))
        registry.update_nodes([node], now)

        status = planner.scale_up([build_test_pod("p1", cpu=6000)], [node], [], [], now)

        hook.assert_not_called()
        assert status.result == ScaleUpResult.NO_OPTIONS_AVAILABLE

    def test_group_at_max_size_is_skipped(self, now):
        provider = build_provider(target_size=2, max_size=2)
        planner, registry = build_planner(provider)
        registry.update_nodes([], now)

        status = planner.scale_up([build_test_pod("p1")], [], [], [], now)
        assert status.result == ScaleUpResult.NO_OPTIONS_AVAILABLE

    def test_backed_off_group_is_skipped(self, now):
        provider = build_provider()
        planner, registry = build_planner(provider)
        registry.update_nodes([], now)
        registry.register_failed_scale_up("ng1", now)

        status = planner.scale_up([build_test_pod("p1")], [], [], [], now)
        assert status.result == ScaleUpResult.NO_OPTIONS_AVAILABLE

    def test_failed_increase_backs_off(self, now):
        hook = Mock(side_effect=CloudProviderError("quota exceeded"))
        provider = build_provider(on_scale_up=hook)
        planner, registry = build_planner(provider)
        registry.update_nodes([], now)

        with pytest.raises(AutoscalerError) as exc_info:
            planner.scale_up([build_test_pod("p1")], [], [], [], now)

        assert exc_info.value.error_type == ErrorType.CLOUD_PROVIDER_ERROR
        assert registry.backoff.is_backed_off("ng1", now)
        assert registry.get_scale_up_request("ng1") is None
        assert provider.get_node_group("ng1").target_size() == 0

    def test_only_fitting_group_is_chosen(self, now):
        hook = Mock()
        provider = StaticCloudProvider(on_scale_up=hook)
        provider.add_node_group("small", 0, 10, 0, template=build_test_node("small-tpl", cpu=1000))
        provider.add_node_group("large", 0, 10, 0, template=build_test_node("large-tpl", cpu=8000))
        planner, registry = build_planner(provider, expander=build_expander("most-pods", seed=3))
        registry.update_nodes([], now)

        status = planner.scale_up([build_test_pod("p1", cpu=2000)], [], [], [], now)

        hook.assert_called_once_with("large", 1)
        assert status.scale_up_infos[0].group_id == "large"
