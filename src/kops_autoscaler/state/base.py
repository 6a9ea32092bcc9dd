"""State provider interface: where the desired cluster spec comes from."""

from __future__ import annotations

from abc import ABC, abstractmethod

from kops_autoscaler.models import ClusterSpec, InstanceGroupSpec


class StateProvider(ABC):
    """Yields the declared cluster spec and its instance groups.

    Implementations raise ``NotFoundError`` when the cluster is unknown and
    ``AccessError`` when the backing store rejects the credentials.
    """

    @abstractmethod
    async def get_cluster_spec(self, cluster_name: str) -> ClusterSpec:
        ...

    @abstractmethod
    async def list_instance_groups(self, cluster: ClusterSpec) -> list[InstanceGroupSpec]:
        ...
