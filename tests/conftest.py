"""
Pytest configuration and fixtures for cluster autoscaler tests
"""
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from cluster_autoscaler.model import Node, OwnerReference, Pod, Resources

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

GI = 1024 ** 3


def build_test_node(name: str, cpu: int = 1000, memory: int = 2 * GI, pods: int = 110, ready: bool = True,
                    age: timedelta = timedelta(hours=1), now: datetime = NOW, **kwargs) -> Node:
    """Node with millicore cpu and byte memory allocatable"""
    return Node(
        name=name,
        allocatable=Resources(cpu=cpu, memory=memory, pods=pods),
        ready=ready,
        creation_timestamp=now - age,
        **kwargs,
    )


def build_test_pod(name: str, cpu: int = 100, memory: int = 0, node: str = None, owner: str = "ReplicaSet",
                   age: timedelta = timedelta(minutes=5), now: datetime = NOW, **kwargs) -> Pod:
    """Replicated pod unless owner is None"""
    owners = [OwnerReference(kind=owner, name=f"{name}-owner")] if owner else []
    return Pod(
        name=name,
        requests=Resources(cpu=cpu, memory=memory),
        node_name=node,
        owner_references=owners,
        creation_timestamp=now - age,
        **kwargs,
    )


@pytest.fixture
def now():
    """Fixed reference time for deterministic tests"""
    return NOW


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)
