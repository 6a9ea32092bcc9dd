"""State provider that reads the cluster through ``kops get``.

Used for stores the in-process backends cannot open, such as ``swift://``
on OpenStack or ``gs://``. kops resolves the store itself and picks up the
matching credentials (``OS_*``, Google application credentials) from the
environment.
"""

from __future__ import annotations

import logging

import yaml

from kops_autoscaler.config import KopsConfig
from kops_autoscaler.errors import NotFoundError, RetryableError, StateStoreError
from kops_autoscaler.models import ClusterSpec, InstanceGroupSpec
from kops_autoscaler.planner.kops import run_kops
from kops_autoscaler.state.base import StateProvider
from kops_autoscaler.state.vfs import parse_cluster, parse_instance_group

logger = logging.getLogger(__name__)


class KopsStateProvider(StateProvider):
    def __init__(
        self,
        kops_cfg: KopsConfig,
        state_store: str,
        env: dict[str, str] | None = None,
    ) -> None:
        self.kops_cfg = kops_cfg
        self.state_store = state_store
        self.env = env or {}

    def command(self, resource: str, cluster_name: str) -> list[str]:
        return [
            self.kops_cfg.binary,
            "get",
            resource,
            "--name",
            cluster_name,
            "--state",
            self.state_store,
            "-o",
            "yaml",
        ]

    async def _get(self, resource: str, cluster_name: str) -> str:
        try:
            return await run_kops(self.command(resource, cluster_name), self.env)
        except RetryableError as exc:
            if "not found" in exc.stderr.lower():
                raise NotFoundError(
                    f"Cluster {cluster_name!r} not found in state store"
                ) from exc
            raise StateStoreError(
                f"kops get {resource} failed for {cluster_name}: {exc}"
            ) from exc

    async def get_cluster_spec(self, cluster_name: str) -> ClusterSpec:
        output = await self._get("cluster", cluster_name)
        cluster = parse_cluster(output.encode(), source=f"kops get cluster {cluster_name}")
        if not cluster.name:
            cluster = ClusterSpec(name=cluster_name, cloud_provider=cluster.cloud_provider,
                                  spec=cluster.spec)
        return cluster

    async def list_instance_groups(self, cluster: ClusterSpec) -> list[InstanceGroupSpec]:
        output = await self._get("instancegroups", cluster.name)
        source = f"kops get instancegroups {cluster.name}"
        try:
            docs = [doc for doc in yaml.safe_load_all(output) if doc is not None]
        except yaml.YAMLError as exc:
            raise StateStoreError(f"{source} is not valid YAML: {exc}") from exc

        groups = [parse_instance_group(doc, source=source) for doc in docs]
        logger.debug("Loaded %d instance group(s) for %s", len(groups), cluster.name)
        return groups
