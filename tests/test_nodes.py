"""Tests for the Kubernetes node inventory."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import CLUSTER
from kops_autoscaler.config import KubernetesConfig
from kops_autoscaler.discovery.nodes import INSTANCE_GROUP_LABEL, NodeInventory
from kops_autoscaler.models import (
    ClusterSpec,
    DesiredStateSnapshot,
    InstanceGroupRole,
    InstanceGroupSpec,
)


def _node(name: str, group: str | None, ready: bool = True) -> SimpleNamespace:
    labels = {INSTANCE_GROUP_LABEL: group} if group else {}
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels=labels),
        spec=SimpleNamespace(unschedulable=None),
        status=SimpleNamespace(conditions=[
            SimpleNamespace(type="MemoryPressure", status="False"),
            SimpleNamespace(type="Ready", status="True" if ready else "False"),
        ]),
    )


@pytest.fixture
def core() -> MagicMock:
    api = MagicMock()
    api.list_node.return_value = SimpleNamespace(items=[
        _node("master-1", "master-zone-1"),
        _node("nodes-1", "nodes"),
        _node("nodes-2", "nodes", ready=False),
        _node("stray", None),
    ])
    return api


class TestNodeInventory:
    @pytest.mark.asyncio
    async def test_nodes_by_group(self, core: MagicMock) -> None:
        groups = await NodeInventory(KubernetesConfig(), core=core).nodes_by_group()

        assert sorted(groups) == ["<none>", "master-zone-1", "nodes"]
        assert [n["name"] for n in groups["nodes"]] == ["nodes-1", "nodes-2"]
        assert [n["ready"] for n in groups["nodes"]] == [True, False]

    @pytest.mark.asyncio
    async def test_compare_with_bounds(self, core: MagicMock) -> None:
        snapshot = DesiredStateSnapshot(
            cluster=ClusterSpec(name=CLUSTER),
            instance_groups=(
                InstanceGroupSpec("master-zone-1", InstanceGroupRole.MASTER, 1, 1),
                InstanceGroupSpec("nodes", InstanceGroupRole.NODE, 3, 5),
                InstanceGroupSpec("bastions", InstanceGroupRole.BASTION, 0, 1),
            ),
        )

        rows = await NodeInventory(KubernetesConfig(), core=core).compare(snapshot)

        by_group = {row["instance_group"]: row for row in rows}
        assert by_group["master-zone-1"]["within_bounds"] is True
        assert by_group["nodes"]["registered"] == 2
        assert by_group["nodes"]["ready"] == 1
        assert by_group["nodes"]["within_bounds"] is False
        assert by_group["bastions"]["registered"] == 0
        assert by_group["bastions"]["within_bounds"] is True
