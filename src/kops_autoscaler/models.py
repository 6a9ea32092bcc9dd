"""Desired-state snapshots, prospective plans and loop results."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Mapping


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ResourceKind(str, Enum):
    COMPUTE_INSTANCE = "compute-instance"
    INSTANCE_GROUP = "instance-group"
    LAUNCH_TEMPLATE = "launch-template"
    SECURITY_GROUP = "security-group"
    SECURITY_GROUP_RULE = "security-group-rule"
    NETWORK = "network"
    SUBNET = "subnet"
    ROUTER = "router"
    PORT = "port"
    LOAD_BALANCER = "load-balancer"
    FLOATING_IP = "floating-ip"
    VOLUME = "volume"
    SSH_KEY = "ssh-key"
    DNS = "dns"
    MANAGED_FILE = "managed-file"
    OTHER = "other"


class ChangeAction(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class InstanceGroupRole(str, Enum):
    MASTER = "Master"
    NODE = "Node"
    BASTION = "Bastion"


@dataclass(frozen=True)
class PlannedChange:
    kind: ResourceKind
    name: str
    action: ChangeAction = ChangeAction.CREATE
    task_type: str = ""  # provider identifier, e.g. "Instance"

    def __str__(self) -> str:
        return f"{self.action.value} {self.kind.value} {self.name}"


@dataclass(frozen=True)
class ProspectivePlan:
    """Ordered pending changes reported by a dry run."""

    changes: tuple[PlannedChange, ...] = ()

    def __iter__(self) -> Iterator[PlannedChange]:
        return iter(self.changes)

    def __len__(self) -> int:
        return len(self.changes)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def by_kind(self) -> dict[str, int]:
        return dict(Counter(c.kind.value for c in self.changes))


@dataclass(frozen=True)
class ClusterSpec:
    name: str
    cloud_provider: str = ""
    spec: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class InstanceGroupSpec:
    name: str
    role: InstanceGroupRole
    min_size: int
    max_size: int
    machine_type: str = ""
    image: str = ""

    def __post_init__(self) -> None:
        if self.min_size < 0:
            raise ValueError(f"instance group {self.name!r}: minSize must be >= 0")
        if self.min_size > self.max_size:
            raise ValueError(
                f"instance group {self.name!r}: minSize {self.min_size} "
                f"exceeds maxSize {self.max_size}"
            )


@dataclass(frozen=True)
class DesiredStateSnapshot:
    """Declared cluster spec and instance groups, fetched once per iteration."""

    cluster: ClusterSpec
    instance_groups: tuple[InstanceGroupSpec, ...] = ()
    fetched_at: datetime = field(default_factory=_utcnow)

    @property
    def cluster_name(self) -> str:
        return self.cluster.name

    def instance_group(self, name: str) -> InstanceGroupSpec | None:
        for ig in self.instance_groups:
            if ig.name == name:
                return ig
        return None


@dataclass
class ConvergenceResult:
    cluster_name: str
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    duration_seconds: float = 0.0


@dataclass
class IterationResult:
    iteration: int
    cluster_name: str
    started_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    changes: int = 0
    changes_by_kind: dict[str, int] = field(default_factory=dict)
    needs_convergence: bool | None = None
    converged: bool = False
    stage: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "cluster_name": self.cluster_name,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "changes": self.changes,
            "changes_by_kind": self.changes_by_kind,
            "needs_convergence": self.needs_convergence,
            "converged": self.converged,
            "stage": self.stage,
            "error": self.error,
        }
