"""Tests for the instance-affecting change classifier."""

from __future__ import annotations

import pytest

from conftest import change
from kops_autoscaler.classifier import (
    INSTANCE_AFFECTING_KINDS,
    instance_changes,
    is_instance_affecting,
    needs_convergence,
    summarize,
)
from kops_autoscaler.models import ChangeAction, ProspectivePlan, ResourceKind

NON_INSTANCE_KINDS = [k for k in ResourceKind if k not in INSTANCE_AFFECTING_KINDS]


class TestNeedsConvergence:
    """Existential detection of compute instance changes."""

    def test_empty_plan(self) -> None:
        """A plan without changes never triggers convergence."""
        assert needs_convergence(ProspectivePlan()) is False

    @pytest.mark.parametrize("kind", NON_INSTANCE_KINDS, ids=lambda k: k.value)
    def test_only_non_instance_changes(self, kind: ResourceKind) -> None:
        """Tags, rules, networks and friends are ignored."""
        plan = ProspectivePlan((change(kind, "something"), change(kind, "something-else")))
        assert needs_convergence(plan) is False

    def test_single_instance_change(self, instance_plan: ProspectivePlan) -> None:
        assert needs_convergence(instance_plan) is True

    def test_instance_change_among_others(self) -> None:
        """Position and surrounding noise do not matter."""
        plan = ProspectivePlan((
            change(ResourceKind.SECURITY_GROUP_RULE, "ssh", ChangeAction.MODIFY),
            change(ResourceKind.NETWORK, "net", ChangeAction.MODIFY),
            change(ResourceKind.VOLUME, "etcd-1"),
            change(ResourceKind.COMPUTE_INSTANCE, "nodes-3", ChangeAction.DELETE),
        ))
        assert needs_convergence(plan) is True

    def test_security_group_rule_only(self) -> None:
        plan = ProspectivePlan((change(ResourceKind.SECURITY_GROUP_RULE, "security-group-rule"),))
        assert needs_convergence(plan) is False

    def test_name_does_not_matter(self) -> None:
        """An instance-sounding name on a non-instance kind is not instance-affecting."""
        plan = ProspectivePlan((change(ResourceKind.INSTANCE_GROUP, "Instance/nodes"),))
        assert needs_convergence(plan) is False

    def test_plan_is_not_mutated(self, instance_plan: ProspectivePlan) -> None:
        before = instance_plan.changes
        needs_convergence(instance_plan)
        assert instance_plan.changes is before

    def test_none_plan_is_a_programming_error(self) -> None:
        with pytest.raises(AttributeError):
            needs_convergence(None)  # type: ignore[arg-type]


class TestHelpers:
    """Tests for the per-change predicate and summaries."""

    def test_is_instance_affecting(self) -> None:
        assert is_instance_affecting(change(ResourceKind.COMPUTE_INSTANCE, "a"))
        assert not is_instance_affecting(change(ResourceKind.OTHER, "a"))

    def test_instance_changes_keeps_order(self) -> None:
        plan = ProspectivePlan((
            change(ResourceKind.COMPUTE_INSTANCE, "b"),
            change(ResourceKind.PORT, "p"),
            change(ResourceKind.COMPUTE_INSTANCE, "a"),
        ))
        assert [c.name for c in instance_changes(plan)] == ["b", "a"]

    def test_summarize_counts_by_kind(self) -> None:
        plan = ProspectivePlan((
            change(ResourceKind.COMPUTE_INSTANCE, "a"),
            change(ResourceKind.COMPUTE_INSTANCE, "b"),
            change(ResourceKind.PORT, "p"),
        ))
        assert summarize(plan) == {"compute-instance": 2, "port": 1}
