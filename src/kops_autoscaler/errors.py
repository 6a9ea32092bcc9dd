"""Exception taxonomy for the autoscaler and its collaborators."""

from __future__ import annotations


class AutoscalerError(Exception):
    """Base class for every error raised by kops-autoscaler."""


class ConfigurationError(AutoscalerError):
    """Required settings are absent or invalid.

    Fatal at startup. A planner may also raise it for structural faults
    (bad cluster definition, missing binary); the loop treats those as
    per-iteration failures.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


# ── collaborator errors ─────────────────────────────────────────────────


class StateStoreError(AutoscalerError):
    """The state store returned something unusable."""


class NotFoundError(StateStoreError):
    """The requested object does not exist in the state store."""


class AccessError(StateStoreError):
    """Authentication or permission failure against the state store."""


class RetryableError(AutoscalerError):
    """Transient planner failure; the next tick tries again."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


# ── per-iteration errors ────────────────────────────────────────────────


class IterationError(AutoscalerError):
    """Failure scoped to a single loop iteration."""

    stage = "iteration"

    def __init__(self, cluster_name: str, message: str) -> None:
        super().__init__(message)
        self.cluster_name = cluster_name


class StateFetchError(IterationError):
    """The desired cluster spec or its instance groups could not be fetched."""

    stage = "state"


class PlanError(IterationError):
    """The dry-run plan could not be computed."""

    stage = "plan"


class ConvergenceError(IterationError):
    """The real apply failed."""

    stage = "converge"


class AlreadyConvergingError(IterationError):
    """The convergence gate rejected a request while another is in flight."""

    stage = "converge"
