"""Single-writer guard around the mutating apply."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone

from kops_autoscaler.errors import AlreadyConvergingError, ConvergenceError
from kops_autoscaler.models import ConvergenceResult, DesiredStateSnapshot
from kops_autoscaler.planner.base import Planner

logger = logging.getLogger(__name__)


class ConvergenceGate:
    """Runs ``Planner.apply`` at most once at a time.

    A request that arrives while another convergence is in flight is
    rejected with ``AlreadyConvergingError`` instead of queued; the next
    scheduled tick recomputes the plan and tries again. The busy flag is
    released on every exit path, including timeouts and cancellation.
    """

    def __init__(self, planner: Planner, timeout_seconds: float | None = None) -> None:
        self.planner = planner
        self.timeout_seconds = timeout_seconds
        self._busy = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    async def converge(self, snapshot: DesiredStateSnapshot) -> ConvergenceResult:
        cluster_name = snapshot.cluster_name
        if not self._busy.acquire(blocking=False):
            raise AlreadyConvergingError(
                cluster_name, f"Convergence already in progress for {cluster_name}"
            )

        result = ConvergenceResult(cluster_name=cluster_name)
        start = time.monotonic()
        try:
            logger.info("Converging %s", cluster_name)
            await asyncio.wait_for(self.planner.apply(snapshot), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ConvergenceError(
                cluster_name,
                f"Convergence of {cluster_name} timed out after {self.timeout_seconds}s",
            ) from exc
        except Exception as exc:
            raise ConvergenceError(
                cluster_name, f"Convergence of {cluster_name} failed: {exc}"
            ) from exc
        finally:
            self._busy.release()

        result.duration_seconds = round(time.monotonic() - start, 2)
        result.completed_at = datetime.now(timezone.utc)
        logger.info("Converged %s in %.2fs", cluster_name, result.duration_seconds)
        return result
