"""Decide whether a dry-run plan requires a real convergence."""

from __future__ import annotations

from kops_autoscaler.models import PlannedChange, ProspectivePlan, ResourceKind


# Scaling an instance group shows up as instances to create or delete.
# Everything else (tags, security group rules, networks) is left for an
# operator-driven `kops update cluster`.
INSTANCE_AFFECTING_KINDS: frozenset[ResourceKind] = frozenset({ResourceKind.COMPUTE_INSTANCE})


def is_instance_affecting(change: PlannedChange) -> bool:
    return change.kind in INSTANCE_AFFECTING_KINDS


def needs_convergence(plan: ProspectivePlan) -> bool:
    """Return True if any change in the plan touches a compute instance."""
    return any(is_instance_affecting(c) for c in plan.changes)


def instance_changes(plan: ProspectivePlan) -> list[PlannedChange]:
    return [c for c in plan.changes if is_instance_affecting(c)]


def summarize(plan: ProspectivePlan) -> dict[str, int]:
    """Count pending changes per resource kind, for log output."""
    return plan.by_kind()
