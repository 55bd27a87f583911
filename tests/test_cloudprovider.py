"""
Unit tests for the cloud provider contract helpers and the in-memory provider
"""
import time
from datetime import timedelta
from unittest.mock import Mock

import pytest

from cluster_autoscaler.cloudprovider import InstanceCache, NodeGroupRegistry, NodeGroupSpec, PeriodicTask
from cluster_autoscaler.errors import CloudProviderError
from cluster_autoscaler.static_provider import StaticCloudProvider, StaticNodeGroup

from conftest import build_test_node


class TestNodeGroupSpec:
    """Test min:max:name parsing"""

    def test_parse(self):
        spec = NodeGroupSpec.parse("1:10:default-pool")
        assert spec == NodeGroupSpec("default-pool", 1, 10)

    def test_name_may_contain_colons(self):
        assert NodeGroupSpec.parse("0:3:zone:a").name == "zone:a"

    @pytest.mark.parametrize("spec", ["1:10", "a:10:ng", "5:1:ng", "-1:1:ng", "1:2:"])
    def test_invalid_specs(self, spec):
        with pytest.raises(ValueError):
            NodeGroupSpec.parse(spec)


class TestNodeGroupRegistry:
    """Test node group registration"""

    def test_register_is_idempotent(self):
        registry = NodeGroupRegistry()
        assert registry.register(StaticNodeGroup(NodeGroupSpec("ng1", 1, 5)))
        assert not registry.register(StaticNodeGroup(NodeGroupSpec("ng1", 1, 5)))
        assert len(registry) == 1

    def test_register_reports_changed_bounds(self):
        registry = NodeGroupRegistry()
        registry.register(StaticNodeGroup(NodeGroupSpec("ng1", 1, 5)))
        assert registry.register(StaticNodeGroup(NodeGroupSpec("ng1", 1, 8)))
        assert registry.get("ng1").max_size() == 8

    def test_unregister(self):
        registry = NodeGroupRegistry()
        registry.register(StaticNodeGroup(NodeGroupSpec("ng1", 0, 5)))
        assert registry.unregister("ng1")
        assert not registry.unregister("ng1")
        assert registry.get("ng1") is None


class TestInstanceCache:
    """Test instance to node group mapping"""

    def test_regenerate_and_lookup(self, now):
        registry = NodeGroupRegistry()
        registry.register(StaticNodeGroup(NodeGroupSpec("ng1", 0, 5), instances=["a", "b"]))
        cache = InstanceCache(registry, ttl=timedelta(minutes=10))
        assert cache.is_stale(now)

        cache.regenerate(now)
        assert cache.group_id_for_instance("a") == "ng1"
        assert cache.group_id_for_instance("zzz") is None
        assert cache.size() == 2
        assert not cache.is_stale(now + timedelta(minutes=5))
        assert cache.is_stale(now + timedelta(minutes=10))

    def test_invalidate(self, now):
        cache = InstanceCache(NodeGroupRegistry())
        cache.regenerate(now)
        cache.invalidate()
        assert cache.is_stale(now)


class TestPeriodicTask:
    """Test the background refresher"""

    def test_runs_until_stopped(self):
        fn = Mock()
        task = PeriodicTask("test", timedelta(milliseconds=10), fn)
        task.start()
        assert task.running
        time.sleep(0.1)
        task.stop()
        assert not task.running
        assert fn.call_count >= 1

    def test_errors_do_not_stop_the_loop(self):
        fn = Mock(side_effect=RuntimeError("boom"))
        task = PeriodicTask("failing", timedelta(milliseconds=10), fn)
        task.start()
        time.sleep(0.1)
        task.stop()
        assert fn.call_count >= 2


class TestStaticNodeGroup:
    """Test the in-memory node group"""

    def test_increase_size(self):
        group = StaticNodeGroup(NodeGroupSpec("ng1", 0, 3))
        group.increase_size(2)
        assert group.target_size() == 2
        assert group.nodes() == ["ng1-1", "ng1-2"]

    def test_increase_size_skips_existing_ids(self):
        group = StaticNodeGroup(NodeGroupSpec("ng1", 0, 5), instances=["ng1-2"])
        group.increase_size(2)
        assert len(set(group.nodes())) == 3

    def test_increase_size_over_max(self):
        group = StaticNodeGroup(NodeGroupSpec("ng1", 0, 3), target_size=3)
        with pytest.raises(CloudProviderError):
            group.increase_size(1)
        with pytest.raises(CloudProviderError):
            group.increase_size(0)

    def test_decrease_target_size(self):
        group = StaticNodeGroup(NodeGroupSpec("ng1", 0, 5), target_size=3, instances=["ng1-1"])
        group.decrease_target_size(-2)
        assert group.target_size() == 1
        with pytest.raises(CloudProviderError):
            group.decrease_target_size(-1)
        with pytest.raises(CloudProviderError):
            group.decrease_target_size(1)

    def test_delete_nodes(self):
        group = StaticNodeGroup(NodeGroupSpec("ng1", 1, 5), instances=["ng1-1", "ng1-2"])
        group.delete_nodes([build_test_node("ng1-2")])
        assert group.nodes() == ["ng1-1"]
        assert group.target_size() == 1

    def test_delete_nodes_respects_min_size(self):
        group = StaticNodeGroup(NodeGroupSpec("ng1", 1, 5), instances=["ng1-1"])
        with pytest.raises(CloudProviderError):
            group.delete_nodes([build_test_node("ng1-1")])

    def test_delete_foreign_node(self):
        group = StaticNodeGroup(NodeGroupSpec("ng1", 0, 5), instances=["ng1-1"])
        with pytest.raises(CloudProviderError):
            group.delete_nodes([build_test_node("other")])
        assert group.nodes() == ["ng1-1"]

    def test_hooks(self):
        on_up = Mock()
        on_down = Mock()
        group = StaticNodeGroup(NodeGroupSpec("ng1", 0, 5), instances=["ng1-1"],
                                on_scale_up=on_up, on_scale_down=on_down)
        group.increase_size(1)
        on_up.assert_called_once_with("ng1", 1)
        group.delete_nodes([build_test_node("ng1-1")])
        on_down.assert_called_once_with("ng1", "ng1-1")

    def test_failing_hook_leaves_size_unchanged(self):
        group = StaticNodeGroup(NodeGroupSpec("ng1", 0, 5),
                                on_scale_up=Mock(side_effect=CloudProviderError("quota")))
        with pytest.raises(CloudProviderError):
            group.increase_size(1)
        assert group.target_size() == 0

    def test_template_node(self):
        group = StaticNodeGroup(NodeGroupSpec("ng1", 0, 5), template=build_test_node("tpl", cpu=4000))
        template = group.template_node()
        assert template.allocatable.cpu == 4000
        assert template.name == "template-node-for-ng1"

        with pytest.raises(NotImplementedError):
            StaticNodeGroup(NodeGroupSpec("ng2", 0, 5)).template_node()


class TestStaticCloudProvider:
    """Test the in-memory provider"""

    def test_groups_from_specs(self):
        provider = StaticCloudProvider(["1:10:ng1", "0:5:ng2"])
        assert sorted(group.id() for group in provider.node_groups()) == ["ng1", "ng2"]
        assert provider.name() == "static"

    def test_register_spec_twice_keeps_instances(self):
        provider = StaticCloudProvider(["1:10:ng1"])
        provider.add_node("ng1", build_test_node("ng1-1"))
        provider.register_spec(NodeGroupSpec("ng1", 1, 10))
        assert len(provider.node_groups()) == 1
        assert provider.get_node_group("ng1").nodes() == ["ng1-1"]

    def test_node_group_for_node(self):
        provider = StaticCloudProvider(["1:10:ng1"])
        provider.add_node("ng1", build_test_node("ng1-1"))
        assert provider.node_group_for_node(build_test_node("ng1-1")).id() == "ng1"
        assert provider.node_group_for_node(build_test_node("unmanaged")) is None

    def test_add_node_to_unknown_group(self):
        provider = StaticCloudProvider()
        with pytest.raises(KeyError):
            provider.add_node("missing", build_test_node("n1"))

    def test_sizes(self):
        provider = StaticCloudProvider()
        provider.add_node_group("ng1", 0, 5, target_size=2)
        assert provider.sizes() == {"ng1": 2}

    def test_cache_refresh_lifecycle(self):
        provider = StaticCloudProvider(["1:10:ng1"])
        provider.start_cache_refresh(timedelta(milliseconds=10))
        assert provider._cache_refresher.running
        provider.cleanup()
        assert not provider._cache_refresher.running
