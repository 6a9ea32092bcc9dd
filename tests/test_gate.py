"""Tests for the convergence gate's single-writer busy flag."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from conftest import CLUSTER, BlockingPlanner, FakePlanner
from kops_autoscaler.errors import (
    AlreadyConvergingError,
    ConvergenceError,
    RetryableError,
)
from kops_autoscaler.gate import ConvergenceGate
from kops_autoscaler.models import ClusterSpec, DesiredStateSnapshot


@pytest.fixture
def snapshot() -> DesiredStateSnapshot:
    return DesiredStateSnapshot(cluster=ClusterSpec(name=CLUSTER))


class TestConvergenceGate:
    """Apply runs once per call and always releases the flag."""

    @pytest.mark.asyncio
    async def test_successful_apply(self, snapshot: DesiredStateSnapshot) -> None:
        planner = FakePlanner()
        gate = ConvergenceGate(planner)

        result = await gate.converge(snapshot)

        assert planner.apply_calls == 1
        assert result.cluster_name == CLUSTER
        assert isinstance(result.completed_at, datetime)
        assert result.completed_at.tzinfo == timezone.utc
        assert gate.busy is False

    @pytest.mark.asyncio
    async def test_flag_cleared_after_failure(self, snapshot: DesiredStateSnapshot) -> None:
        """A failing apply raises ConvergenceError and leaves the gate free."""
        planner = FakePlanner(apply_error=RetryableError("openstack 503"))
        gate = ConvergenceGate(planner)

        with pytest.raises(ConvergenceError) as excinfo:
            await gate.converge(snapshot)

        assert gate.busy is False
        assert excinfo.value.cluster_name == CLUSTER
        assert isinstance(excinfo.value.__cause__, RetryableError)

    @pytest.mark.asyncio
    async def test_no_internal_retry(self, snapshot: DesiredStateSnapshot) -> None:
        planner = FakePlanner(apply_error=RuntimeError("boom"))
        gate = ConvergenceGate(planner)

        with pytest.raises(ConvergenceError):
            await gate.converge(snapshot)

        assert planner.apply_calls == 1

    @pytest.mark.asyncio
    async def test_failure_does_not_block_next_attempt(self, snapshot: DesiredStateSnapshot) -> None:
        planner = FakePlanner(apply_error=RuntimeError("boom"))
        gate = ConvergenceGate(planner)
        with pytest.raises(ConvergenceError):
            await gate.converge(snapshot)

        planner.apply_error = None
        await gate.converge(snapshot)

        assert planner.apply_calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_request_is_rejected(self, snapshot: DesiredStateSnapshot) -> None:
        planner = BlockingPlanner()
        gate = ConvergenceGate(planner)

        first = asyncio.create_task(gate.converge(snapshot))
        await planner.apply_started.wait()
        assert gate.busy is True

        with pytest.raises(AlreadyConvergingError):
            await gate.converge(snapshot)

        planner.release.set()
        await first
        assert gate.busy is False

    @pytest.mark.asyncio
    async def test_timeout_releases_flag(self, snapshot: DesiredStateSnapshot) -> None:
        gate = ConvergenceGate(BlockingPlanner(), timeout_seconds=0.05)

        with pytest.raises(ConvergenceError, match="timed out"):
            await gate.converge(snapshot)

        assert gate.busy is False

    @pytest.mark.asyncio
    async def test_cancellation_releases_flag(self, snapshot: DesiredStateSnapshot) -> None:
        planner = BlockingPlanner()
        gate = ConvergenceGate(planner)

        task = asyncio.create_task(gate.converge(snapshot))
        await planner.apply_started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert gate.busy is False
