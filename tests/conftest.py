"""Pytest fixtures and fake collaborators for kops-autoscaler tests."""

from __future__ import annotations

import asyncio

import pytest

from kops_autoscaler.config import ControllerConfig
from kops_autoscaler.controller import AutoscalerController
from kops_autoscaler.models import (
    ChangeAction,
    ClusterSpec,
    InstanceGroupRole,
    InstanceGroupSpec,
    PlannedChange,
    ProspectivePlan,
    ResourceKind,
)
from kops_autoscaler.planner.base import Planner
from kops_autoscaler.state.base import StateProvider

CLUSTER = "example.k8s.local"


class FakeStateProvider(StateProvider):
    """Serves a fixed cluster and instance groups, or raises ``error``."""

    def __init__(self, groups=(), error: Exception | None = None) -> None:
        self.groups = list(groups)
        self.error = error
        self.calls = 0

    async def get_cluster_spec(self, cluster_name):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return ClusterSpec(name=cluster_name, cloud_provider="openstack")

    async def list_instance_groups(self, cluster):
        return list(self.groups)


class FakePlanner(Planner):
    """Returns queued plans in order (the last one repeats) and records calls.

    A queued exception is raised instead of returned.
    """

    def __init__(self, plans=(), apply_error: Exception | None = None) -> None:
        self.plans = list(plans)
        self.apply_error = apply_error
        self.plan_calls = 0
        self.apply_calls = 0

    async def plan(self, snapshot):
        self.plan_calls += 1
        if not self.plans:
            return ProspectivePlan()
        item = self.plans[min(self.plan_calls, len(self.plans)) - 1]
        if isinstance(item, Exception):
            raise item
        return item

    async def apply(self, snapshot):
        self.apply_calls += 1
        if self.apply_error is not None:
            raise self.apply_error


class BlockingPlanner(Planner):
    """Planner whose calls hang until ``release`` is set."""

    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.apply_started = asyncio.Event()

    async def plan(self, snapshot):
        await self.release.wait()
        return ProspectivePlan()

    async def apply(self, snapshot):
        self.apply_started.set()
        await self.release.wait()


def change(kind: ResourceKind, name: str, action: ChangeAction = ChangeAction.CREATE) -> PlannedChange:
    return PlannedChange(kind=kind, name=name, action=action)


@pytest.fixture
def nodes_group() -> InstanceGroupSpec:
    return InstanceGroupSpec(name="nodes", role=InstanceGroupRole.NODE, min_size=3, max_size=5)


@pytest.fixture
def instance_plan() -> ProspectivePlan:
    return ProspectivePlan((change(ResourceKind.COMPUTE_INSTANCE, "nodes-instance-create"),))


@pytest.fixture
def fast_config() -> ControllerConfig:
    return ControllerConfig(
        interval_seconds=0.01,
        state_timeout_seconds=1,
        plan_timeout_seconds=1,
        apply_timeout_seconds=1,
    )


@pytest.fixture
def make_controller(fast_config, nodes_group):
    def _make(planner: Planner, state: StateProvider | None = None, config=None):
        return AutoscalerController(
            CLUSTER,
            state or FakeStateProvider([nodes_group]),
            planner,
            config or fast_config,
        )

    return _make
