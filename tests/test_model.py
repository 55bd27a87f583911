"""
Unit tests for the cluster object model
"""
import pytest

from cluster_autoscaler.model import (
    DaemonSet, LabelSelector, Node, NodeAffinity, NodeSelectorRequirement, NodeSelectorTerm, OwnerReference, Pod,
    PodDisruptionBudget, Resources, Taint, TaintEffect, Toleration, LABEL_HOSTNAME, MIRROR_POD_ANNOTATION,
    TO_BE_DELETED_TAINT, parse_cpu, parse_memory,
)


class TestQuantities:
    """Test resource quantity parsing"""

    def test_parse_cpu(self):
        assert parse_cpu("500m") == 500
        assert parse_cpu("2") == 2000
        assert parse_cpu("0.5") == 500
        assert parse_cpu(1) == 1000

    def test_parse_cpu_invalid(self):
        with pytest.raises(ValueError):
            parse_cpu("lots")
        with pytest.raises(ValueError):
            parse_cpu(-1)

    def test_parse_memory(self):
        assert parse_memory("1Ki") == 1024
        assert parse_memory("1000Mi") == 1000 * 1024 ** 2
        assert parse_memory("1G") == 1000 ** 3
        assert parse_memory(512) == 512

    def test_parse_memory_invalid(self):
        with pytest.raises(ValueError):
            parse_memory("12Qi")
        with pytest.raises(ValueError):
            parse_memory("abc")

    def test_resources_from_dict(self):
        resources = Resources.from_dict({"cpu": "250m", "memory": "1Gi", "nvidia.com/gpu": 1, "pods": 10})
        assert resources == Resources(cpu=250, memory=1024 ** 3, gpu=1, pods=10)
        assert Resources.from_dict(None) == Resources()

    def test_resources_arithmetic(self):
        total = Resources(cpu=100, memory=10) + Resources(cpu=50, memory=5, pods=1)
        assert total == Resources(cpu=150, memory=15, pods=1)
        assert total - Resources(cpu=150) == Resources(memory=15, pods=1)


class TestTolerations:
    """Test taint toleration matching"""

    def test_equal_operator(self):
        taint = Taint(key="dedicated", value="gpu")
        assert Toleration(key="dedicated", value="gpu").tolerates(taint)
        assert not Toleration(key="dedicated", value="cpu").tolerates(taint)

    def test_exists_operator(self):
        taint = Taint(key="dedicated", value="gpu", effect=TaintEffect.NO_EXECUTE)
        assert Toleration(key="dedicated", operator="Exists").tolerates(taint)
        assert Toleration(operator="Exists").tolerates(taint)

    def test_effect_must_match(self):
        taint = Taint(key="dedicated", value="gpu", effect=TaintEffect.NO_SCHEDULE)
        toleration = Toleration(key="dedicated", value="gpu", effect=TaintEffect.NO_EXECUTE)
        assert not toleration.tolerates(taint)

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            Toleration(key="a", operator="Maybe").tolerates(Taint(key="a"))


class TestSelectors:
    """Test label selectors and node affinity"""

    def test_requirement_operators(self):
        labels = {"zone": "a", "cores": "8"}
        assert NodeSelectorRequirement("zone", "In", ["a", "b"]).matches(labels)
        assert not NodeSelectorRequirement("zone", "NotIn", ["a"]).matches(labels)
        assert NodeSelectorRequirement("disk", "DoesNotExist").matches(labels)
        assert NodeSelectorRequirement("cores", "Gt", ["4"]).matches(labels)
        assert not NodeSelectorRequirement("cores", "Lt", ["4"]).matches(labels)

    def test_requirement_invalid(self):
        with pytest.raises(ValueError):
            NodeSelectorRequirement("cores", "Gt", ["4", "5"]).matches({"cores": "8"})
        with pytest.raises(ValueError):
            NodeSelectorRequirement("cores", "Near").matches({})

    def test_node_affinity_terms_are_ored(self):
        affinity = NodeAffinity(required_terms=[
            NodeSelectorTerm([NodeSelectorRequirement("zone", "In", ["a"])]),
            NodeSelectorTerm([NodeSelectorRequirement("zone", "In", ["b"])]),
        ])
        assert affinity.matches({"zone": "b"})
        assert not affinity.matches({"zone": "c"})
        assert NodeAffinity().matches({})

    def test_label_selector(self):
        selector = LabelSelector(match_labels={"app": "web"},
                                 match_expressions=[NodeSelectorRequirement("tier", "Exists")])
        assert selector.matches({"app": "web", "tier": "front"})
        assert not selector.matches({"app": "web"})


class TestPodAndNode:
    """Test pod and node helpers"""

    def test_pod_key_and_controller(self):
        pod = Pod(name="web-1", namespace="shop", owner_references=[OwnerReference(kind="ReplicaSet", name="web")])
        assert pod.key == "shop/web-1"
        assert pod.controller_ref.kind == "ReplicaSet"
        assert not pod.is_daemon_set_pod

    def test_pod_flags(self):
        mirror = Pod(name="static", annotations={MIRROR_POD_ANNOTATION: "x"})
        assert mirror.is_mirror_pod
        assert mirror.controller_ref is None

        gpu = Pod(name="train", requests=Resources(gpu=1))
        assert gpu.requests_gpu

    def test_node_defaults(self):
        node = Node(name="n1")
        assert node.provider_id == "n1"
        assert node.labels[LABEL_HOSTNAME] == "n1"

    def test_node_copy_does_not_share_taints(self):
        node = Node(name="n1")
        copy = node.copy()
        copy.taints.append(Taint(key=TO_BE_DELETED_TAINT))
        assert copy.has_to_be_deleted_taint
        assert not node.has_to_be_deleted_taint

    def test_pdb_covers(self):
        pdb = PodDisruptionBudget(name="web", namespace="shop", selector=LabelSelector(match_labels={"app": "web"}))
        assert pdb.covers(Pod(name="a", namespace="shop", labels={"app": "web"}))
        assert not pdb.covers(Pod(name="a", namespace="default", labels={"app": "web"}))

    def test_daemon_set_pod_for_node(self):
        ds = DaemonSet(name="logs", pod_template=Pod(name="logs", requests=Resources(cpu=50)))
        pod = ds.pod_for_node(Node(name="n1"))
        assert pod.name == "logs-n1"
        assert pod.node_name == "n1"
        assert pod.is_daemon_set_pod
        assert pod.requests.cpu == 50
