"""Reconciliation loop: dry run, classify, converge when instances drift."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from kops_autoscaler.classifier import instance_changes, needs_convergence, summarize
from kops_autoscaler.config import ControllerConfig
from kops_autoscaler.errors import (
    AlreadyConvergingError,
    ConfigurationError,
    IterationError,
    PlanError,
    StateFetchError,
)
from kops_autoscaler.gate import ConvergenceGate
from kops_autoscaler.models import DesiredStateSnapshot, IterationResult, ProspectivePlan
from kops_autoscaler.planner.base import Planner
from kops_autoscaler.state.base import StateProvider

logger = logging.getLogger(__name__)


class AutoscalerController:
    """Periodically converges one cluster's instance groups.

    Each tick fetches a fresh desired-state snapshot, asks the planner for
    a dry run and, only when the plan touches compute instances, runs a
    real apply through the convergence gate. Failures are logged and the
    tick abandoned; the loop itself keeps going until ``shutdown()``.
    """

    def __init__(
        self,
        cluster_name: str,
        state: StateProvider,
        planner: Planner,
        config: ControllerConfig | None = None,
        gate: ConvergenceGate | None = None,
    ) -> None:
        self.config = config or ControllerConfig()
        if self.config.interval_seconds <= 0:
            raise ConfigurationError(
                f"interval_seconds must be > 0, got {self.config.interval_seconds}",
                field="controller.interval_seconds",
            )
        if not cluster_name:
            raise ConfigurationError("cluster name is required", field="cluster_name")

        self.cluster_name = cluster_name
        self.state = state
        self.planner = planner
        self.gate = gate or ConvergenceGate(planner, self.config.apply_timeout_seconds)
        self.last_snapshot: DesiredStateSnapshot | None = None
        self.iterations = 0
        self._stop_event = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    async def refresh(self) -> DesiredStateSnapshot:
        """Fetch the cluster spec and instance groups from the state provider."""
        timeout = self.config.state_timeout_seconds
        try:
            cluster = await asyncio.wait_for(
                self.state.get_cluster_spec(self.cluster_name), timeout=timeout
            )
            groups = await asyncio.wait_for(
                self.state.list_instance_groups(cluster), timeout=timeout
            )
        except asyncio.TimeoutError as exc:
            raise StateFetchError(
                self.cluster_name,
                f"Timed out after {timeout}s fetching desired state for {self.cluster_name}",
            ) from exc
        except Exception as exc:
            raise StateFetchError(
                self.cluster_name,
                f"Error fetching desired state for {self.cluster_name}: {exc}",
            ) from exc

        snapshot = DesiredStateSnapshot(cluster=cluster, instance_groups=tuple(groups))
        self.last_snapshot = snapshot
        return snapshot

    async def dry_run(self, snapshot: DesiredStateSnapshot) -> ProspectivePlan:
        timeout = self.config.plan_timeout_seconds
        try:
            return await asyncio.wait_for(self.planner.plan(snapshot), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise PlanError(
                self.cluster_name,
                f"Dry run for {self.cluster_name} timed out after {timeout}s",
            ) from exc
        except Exception as exc:
            raise PlanError(
                self.cluster_name, f"Dry run for {self.cluster_name} failed: {exc}"
            ) from exc

    async def run_once(self) -> IterationResult:
        """Run a single reconciliation tick. Never raises for cloud or API errors."""
        self.iterations += 1
        result = IterationResult(iteration=self.iterations, cluster_name=self.cluster_name)

        try:
            snapshot = await self.refresh()
            plan = await self.dry_run(snapshot)

            result.changes = len(plan)
            result.changes_by_kind = summarize(plan)
            result.needs_convergence = needs_convergence(plan)

            if not result.needs_convergence:
                logger.info(
                    "[%s #%d] No instance changes (%d pending change(s): %s); skipping update",
                    self.cluster_name, result.iteration, result.changes,
                    result.changes_by_kind or "none",
                )
            else:
                logger.info(
                    "[%s #%d] Found instance changes %s; running update",
                    self.cluster_name, result.iteration,
                    [c.name for c in instance_changes(plan)],
                )
                await self.gate.converge(snapshot)
                result.converged = True
        except AlreadyConvergingError as exc:
            result.stage = exc.stage
            result.error = str(exc)
            logger.warning("[%s #%d] %s", self.cluster_name, result.iteration, exc)
        except IterationError as exc:
            result.stage = exc.stage
            result.error = str(exc)
            logger.error(
                "[%s #%d started %s] %s failed: %s (cause: %r)",
                self.cluster_name,
                result.iteration,
                result.started_at.isoformat(),
                type(exc).__name__,
                exc,
                exc.__cause__,
            )
        finally:
            result.completed_at = datetime.now(timezone.utc)

        return result

    async def _wait(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return True if shutdown was requested meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def run(self, max_iterations: int | None = None) -> None:
        """Tick every ``interval_seconds`` until ``shutdown()`` is called."""
        logger.info(
            "Starting autoscaler for %s (interval %ss)",
            self.cluster_name, self.config.interval_seconds,
        )
        ticks = 0
        while not self._stop_event.is_set():
            if max_iterations is not None and ticks >= max_iterations:
                break
            if ticks or not self.config.run_immediately:
                if await self._wait(self.config.interval_seconds):
                    break
            logger.debug("[%s] Executing tick %d", self.cluster_name, self.iterations + 1)
            await self.run_once()
            ticks += 1

        logger.info("Autoscaler for %s stopped after %d iteration(s)", self.cluster_name, ticks)

    def shutdown(self) -> None:
        """Signal the loop to stop after the current wait or tick."""
        logger.info("Shutdown requested for %s", self.cluster_name)
        self._stop_event.set()
