"""
Unit tests for the in-memory cluster client
"""
import pytest

from cluster_autoscaler.errors import ApiCallError, EvictionError
from cluster_autoscaler.kube_client import InMemoryClusterClient
from cluster_autoscaler.model import LabelSelector, PodDisruptionBudget

from conftest import build_test_node, build_test_pod


class TestListing:
    """Test list operations"""

    def test_lists(self):
        client = InMemoryClusterClient(
            nodes=[build_test_node("n1"), build_test_node("n2", ready=False), build_test_node("n3", unschedulable=True)],
            pods=[build_test_pod("p1", node="n1"), build_test_pod("p2")],
        )
        assert len(client.list_all_nodes()) == 3
        assert [node.name for node in client.list_ready_nodes()] == ["n1"]
        assert [pod.name for pod in client.list_scheduled_pods()] == ["p1"]
        assert [pod.name for pod in client.list_unschedulable_pods()] == ["p2"]

    def test_remove_node_drops_its_pods(self):
        client = InMemoryClusterClient(nodes=[build_test_node("n1")], pods=[build_test_pod("p1", node="n1")])
        client.remove_node("n1")
        assert client.list_all_nodes() == []
        assert client.list_scheduled_pods() == []

    def test_bind_pod(self):
        client = InMemoryClusterClient(nodes=[build_test_node("n1")], pods=[build_test_pod("p1", nominated_node_name="n1")])
        client.bind_pod(client.list_unschedulable_pods()[0], "n1")
        pod = client.list_scheduled_pods()[0]
        assert pod.node_name == "n1"
        assert pod.nominated_node_name is None

        with pytest.raises(ApiCallError):
            client.bind_pod(pod, "missing")


class TestTaints:
    """Test the to-be-deleted taint"""

    def test_add_and_remove(self, now):
        client = InMemoryClusterClient(nodes=[build_test_node("n1")])
        node = client.nodes["n1"]
        client.add_to_be_deleted_taint(node, now)
        assert client.nodes["n1"].has_to_be_deleted_taint
        assert client.nodes["n1"].taints[0].value == str(int(now.timestamp()))

        client.add_to_be_deleted_taint(node, now)
        assert len(client.nodes["n1"].taints) == 1

        assert client.remove_to_be_deleted_taint(node)
        assert not client.nodes["n1"].has_to_be_deleted_taint
        assert not client.remove_to_be_deleted_taint(node)

    def test_taint_unknown_node(self, now):
        client = InMemoryClusterClient()
        with pytest.raises(ApiCallError):
            client.add_to_be_deleted_taint(build_test_node("n1"), now)


class TestEviction:
    """Test pod eviction"""

    def test_replicated_pod_is_recreated_pending(self):
        client = InMemoryClusterClient(nodes=[build_test_node("n1")], pods=[build_test_pod("p1", node="n1")])
        client.evict_pod(client.pods["default/p1"])
        assert client.evicted == ["default/p1"]
        assert client.pods["default/p1"].node_name is None

    def test_bare_pod_is_gone(self):
        client = InMemoryClusterClient(nodes=[build_test_node("n1")], pods=[build_test_pod("p1", node="n1", owner=None)])
        client.evict_pod(client.pods["default/p1"])
        assert client.pods == {}

    def test_recreation_can_be_disabled(self):
        client = InMemoryClusterClient(pods=[build_test_pod("p1", node="n1")], recreate_evicted_pods=False)
        client.evict_pod(client.pods["default/p1"])
        assert client.pods == {}

    def test_pdb_budget_is_consumed(self):
        pdb = PodDisruptionBudget(name="web", selector=LabelSelector(match_labels={"app": "web"}),
                                  disruptions_allowed=1)
        client = InMemoryClusterClient(
            pods=[build_test_pod("w1", node="n1", labels={"app": "web"}),
                  build_test_pod("w2", node="n1", labels={"app": "web"})],
            pdbs=[pdb],
        )
        client.evict_pod(client.pods["default/w1"])
        assert pdb.disruptions_allowed == 0
        with pytest.raises(EvictionError):
            client.evict_pod(client.pods["default/w2"])

    def test_evict_unknown_pod(self):
        with pytest.raises(EvictionError):
            InMemoryClusterClient().evict_pod(build_test_pod("ghost", node="n1"))
