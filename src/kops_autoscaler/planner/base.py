"""Planner interface: dry-run planning and real apply."""

from __future__ import annotations

from abc import ABC, abstractmethod

from kops_autoscaler.models import DesiredStateSnapshot, ProspectivePlan


class Planner(ABC):
    """Turns a desired-state snapshot into cloud changes.

    ``plan`` never mutates the cloud. ``apply`` is idempotent: with no
    drift it changes nothing. Both may raise ``RetryableError`` for
    transient faults and ``ConfigurationError`` for structural ones.
    """

    @abstractmethod
    async def plan(self, snapshot: DesiredStateSnapshot) -> ProspectivePlan:
        ...

    @abstractmethod
    async def apply(self, snapshot: DesiredStateSnapshot) -> None:
        ...
