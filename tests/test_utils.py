"""
Unit tests for autoscaling loop helpers
"""
from datetime import timedelta
from unittest.mock import Mock

import pytest

from cluster_autoscaler.clusterstate import ClusterStateRegistry, UnregisteredNode
from cluster_autoscaler.config import AutoscalingOptions
from cluster_autoscaler.errors import ApiCallError, AutoscalerError, CloudProviderError, ErrorType
from cluster_autoscaler.kube_client import InMemoryClusterClient
from cluster_autoscaler.model import (
    DaemonSet, LABEL_GPU_ACCELERATOR, LABEL_HOSTNAME, MIRROR_POD_ANNOTATION, Node, Pod, Resources, Taint,
    TO_BE_DELETED_TAINT,
)
from cluster_autoscaler.simulator import PredicateChecker
from cluster_autoscaler.static_provider import StaticCloudProvider
from cluster_autoscaler.status import EventType, InMemoryStatusRecorder
from cluster_autoscaler.utils import (
    RESCHEDULER_TAINT, all_pods_are_new, build_template_node_info, clean_to_be_deleted,
    filter_out_expendable_and_split, filter_out_expendable_pods, filter_out_nodes_with_unready_gpus,
    filter_out_schedulable, filter_out_young_pods, fix_node_group_size, get_node_infos_for_groups,
    get_oldest_create_time, get_potentially_unneeded_nodes, remove_old_unregistered_nodes,
    sanitize_template_node,
)

from conftest import build_test_node, build_test_pod


class TestPodFilters:
    """Test pending pod filters"""

    def test_filter_out_expendable_pods(self):
        pods = [build_test_pod("low", priority=-20), build_test_pod("cutoff", priority=-10),
                build_test_pod("normal")]
        assert [p.name for p in filter_out_expendable_pods(pods, -10)] == ["cutoff", "normal"]

    def test_filter_out_expendable_and_split(self):
        pods = [build_test_pod("low", priority=-20), build_test_pod("waiting", nominated_node_name="n1"),
                build_test_pod("pending")]
        unschedulable, waiting = filter_out_expendable_and_split(pods, -10)
        assert [p.name for p in unschedulable] == ["pending"]
        assert [p.name for p in waiting] == ["waiting"]

    def test_filter_out_schedulable_counts_capacity_once(self):
        nodes = [build_test_node("n1", cpu=1000)]
        pending = [build_test_pod("a", cpu=600), build_test_pod("b", cpu=600)]
        remaining = filter_out_schedulable(pending, nodes, [], [], PredicateChecker(), -10)
        assert [p.name for p in remaining] == ["b"]

    def test_filter_out_schedulable_prefers_high_priority(self):
        nodes = [build_test_node("n1", cpu=1000)]
        pending = [build_test_pod("low", cpu=600), build_test_pod("high", cpu=600, priority=100)]
        remaining = filter_out_schedulable(pending, nodes, [], [], PredicateChecker(), -10)
        assert [p.name for p in remaining] == ["low"]

    def test_filter_out_schedulable_reserves_nominated_capacity(self):
        nodes = [build_test_node("n1", cpu=1000)]
        waiting = [build_test_pod("preemptor", cpu=800, nominated_node_name="n1")]
        remaining = filter_out_schedulable([build_test_pod("p", cpu=500)], nodes, [], waiting,
                                           PredicateChecker(), -10)
        assert [p.name for p in remaining] == ["p"]

    def test_expendable_scheduled_pods_free_capacity(self):
        nodes = [build_test_node("n1", cpu=1000)]
        scheduled = [build_test_pod("batch", cpu=900, node="n1", priority=-100)]
        remaining = filter_out_schedulable([build_test_pod("p", cpu=500)], nodes, scheduled, [],
                                           PredicateChecker(), -10)
        assert remaining == []

    def test_filter_out_young_pods(self, now):
        pods = [build_test_pod("young", age=timedelta(seconds=5)),
                build_test_pod("edge", age=timedelta(seconds=10)),
                build_test_pod("old", age=timedelta(minutes=1))]
        assert [p.name for p in filter_out_young_pods(pods, now, timedelta(seconds=10))] == ["old"]

    def test_get_oldest_create_time(self, now):
        pods = [build_test_pod("a", age=timedelta(minutes=1)), build_test_pod("b", age=timedelta(minutes=3))]
        assert get_oldest_create_time(pods) == now - timedelta(minutes=3)
        assert get_oldest_create_time([]) is None

    def test_all_pods_are_new(self, now):
        assert all_pods_are_new([build_test_pod("a", age=timedelta(seconds=1))], now)
        assert not all_pods_are_new([build_test_pod("a", age=timedelta(seconds=5))], now)
        gpu_pod = build_test_pod("gpu", age=timedelta(seconds=10))
        gpu_pod.requests.gpu = 1
        assert all_pods_are_new([gpu_pod], now)
        assert not all_pods_are_new([], now)


class TestGpuNodes:
    """Test treatment of nodes whose GPUs are not exposed yet"""

    def test_unready_gpus(self):
        gpu_label = {LABEL_GPU_ACCELERATOR: "nvidia-tesla-t4"}
        waiting = build_test_node("gpu-waiting", labels=dict(gpu_label))
        working = build_test_node("gpu-working", labels=dict(gpu_label))
        working.allocatable.gpu = 1
        plain = build_test_node("plain")

        all_nodes, ready = filter_out_nodes_with_unready_gpus([waiting, working, plain], [waiting, working, plain])

        assert [n.name for n in ready] == ["gpu-working", "plain"]
        assert [n.ready for n in all_nodes] == [False, True, True]
        assert waiting.ready


class TestUnregisteredNodes:
    """Test removal of instances that never joined the cluster"""

    def build(self, target_size: int, instances: list):
        hook = Mock()
        provider = StaticCloudProvider(on_scale_down=hook)
        provider.add_node_group("ng1", 0, 10, target_size)
        for name in instances:
            provider.add_node("ng1", Node(name=name))
        return provider, hook

    def test_old_instance_removed(self, now):
        provider, hook = self.build(2, ["ng1-1", "ng1-2"])
        unregistered = [UnregisteredNode(Node(name="ng1-2"), now - timedelta(minutes=20))]

        assert remove_old_unregistered_nodes(unregistered, provider, now, timedelta(minutes=15))
        hook.assert_called_once_with("ng1", "ng1-2")
        assert provider.get_node_group("ng1").target_size() == 1

    def test_recent_instance_kept(self, now):
        provider, hook = self.build(2, ["ng1-1", "ng1-2"])
        unregistered = [UnregisteredNode(Node(name="ng1-2"), now - timedelta(minutes=5))]

        assert not remove_old_unregistered_nodes(unregistered, provider, now, timedelta(minutes=15))
        hook.assert_not_called()

    def test_group_at_min_size_kept(self, now):
        provider = StaticCloudProvider()
        provider.add_node_group("ng1", 1, 10, 1)
        provider.add_node("ng1", Node(name="ng1-1"))
        unregistered = [UnregisteredNode(Node(name="ng1-1"), now - timedelta(hours=1))]

        assert not remove_old_unregistered_nodes(unregistered, provider, now, timedelta(minutes=15))
        assert provider.get_node_group("ng1").target_size() == 1

    def test_delete_failure_raises(self, now):
        provider, hook = self.build(2, ["ng1-1", "ng1-2"])
        hook.side_effect = CloudProviderError("api down")
        unregistered = [UnregisteredNode(Node(name="ng1-2"), now - timedelta(minutes=20))]

        with pytest.raises(AutoscalerError) as exc_info:
            remove_old_unregistered_nodes(unregistered, provider, now, timedelta(minutes=15))
        assert exc_info.value.error_type == ErrorType.CLOUD_PROVIDER_ERROR


class TestFixNodeGroupSize:
    """Test shrinking target sizes that drifted above reality"""

    def build(self, now):
        provider = StaticCloudProvider()
        provider.add_node_group("ng1", 0, 10, 3)
        provider.add_node("ng1", Node(name="ng1-1"))
        registry = ClusterStateRegistry(provider, AutoscalingOptions())
        registry.update_nodes([build_test_node("ng1-1")], now)
        return provider, registry

    def test_fixed_after_provision_time(self, now):
        provider, registry = self.build(now)
        later = now + timedelta(minutes=16)
        registry.update_nodes([build_test_node("ng1-1")], later)

        assert fix_node_group_size(registry, provider, later, timedelta(minutes=15))
        assert provider.get_node_group("ng1").target_size() == 1

    def test_not_fixed_too_early(self, now):
        provider, registry = self.build(now)
        assert not fix_node_group_size(registry, provider, now + timedelta(minutes=5), timedelta(minutes=15))
        assert provider.get_node_group("ng1").target_size() == 3


class TestTemplates:
    """Test template node construction"""

    def test_sanitize_template_node(self):
        node = build_test_node("ng1-7", labels={"pool": "a"},
                               taints=[Taint(key=TO_BE_DELETED_TAINT), Taint(key=RESCHEDULER_TAINT),
                                       Taint(key="dedicated", value="gpu")],
                               ready=False, unschedulable=True)
        template = sanitize_template_node(node, "ng1")

        assert template.name.startswith("template-node-for-ng1-")
        assert template.labels[LABEL_HOSTNAME] == template.name
        assert template.labels["pool"] == "a"
        assert [t.key for t in template.taints] == ["dedicated"]
        assert template.ready and not template.unschedulable
        assert node.labels[LABEL_HOSTNAME] == "ng1-7"

    def test_build_template_node_info_adds_daemon_pods(self):
        template = build_test_node("tpl", cpu=1000)
        daemon_sets = [
            DaemonSet("logging", pod_template=Pod(name="logging", requests=Resources(cpu=100))),
            DaemonSet("huge", pod_template=Pod(name="huge", requests=Resources(cpu=5000))),
        ]
        info = build_template_node_info(template, daemon_sets, PredicateChecker())
        assert [p.name for p in info.pods] == ["logging-tpl"]
        assert info.requested.cpu == 100

    def test_node_infos_prefer_real_nodes(self):
        provider = StaticCloudProvider()
        provider.add_node_group("ng1", 0, 10, 1)
        provider.add_node_group("ng2", 0, 10, 0, template=build_test_node("ng2-template", cpu=4000))
        provider.add_node_group("ng3", 0, 10, 0)
        node = build_test_node("ng1-1", cpu=2000)
        provider.add_node("ng1", node)

        scheduled = [
            build_test_pod("app", node="ng1-1"),
            build_test_pod("ds", node="ng1-1", owner="DaemonSet"),
            build_test_pod("static", node="ng1-1", owner=None, annotations={MIRROR_POD_ANNOTATION: "x"}),
        ]
        infos = get_node_infos_for_groups([node], provider, scheduled, [], PredicateChecker())

        assert set(infos) == {"ng1", "ng2"}
        assert infos["ng1"].node.allocatable.cpu == 2000
        assert sorted(p.name for p in infos["ng1"].pods) == ["ds", "static"]
        assert infos["ng2"].node.allocatable.cpu == 4000

    def test_node_infos_provider_error(self):
        provider = Mock()
        provider.node_group_for_node.side_effect = CloudProviderError("down")
        with pytest.raises(AutoscalerError):
            get_node_infos_for_groups([build_test_node("n1")], provider, [], [], PredicateChecker())

    def test_potentially_unneeded_nodes(self):
        provider = StaticCloudProvider()
        provider.add_node_group("ng1", 0, 10, 1)
        managed = build_test_node("ng1-1")
        provider.add_node("ng1", managed)
        result = get_potentially_unneeded_nodes([managed, build_test_node("master")], provider)
        assert [n.name for n in result] == ["ng1-1"]


class TestCleanToBeDeleted:
    """Test removal of stale deletion taints"""

    def test_taints_removed_and_recorded(self, now):
        tainted = build_test_node("n1", taints=[Taint(key=TO_BE_DELETED_TAINT)])
        client = InMemoryClusterClient([tainted, build_test_node("n2")])
        recorder = InMemoryStatusRecorder()

        clean_to_be_deleted(client.list_all_nodes(), client, recorder)

        assert not client.nodes["n1"].has_to_be_deleted_taint
        assert len(recorder.events) == 1
        assert recorder.events[0][0] == EventType.NORMAL

    def test_api_errors_become_warnings(self):
        client = Mock()
        client.remove_to_be_deleted_taint.side_effect = ApiCallError("forbidden")
        recorder = InMemoryStatusRecorder()

        clean_to_be_deleted([build_test_node("n1")], client, recorder)
        assert recorder.events[0][0] == EventType.WARNING
