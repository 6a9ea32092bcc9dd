"""Registered Kubernetes nodes, grouped by kops instance group."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from kubernetes import client, config as k8s_config

from kops_autoscaler.config import KubernetesConfig
from kops_autoscaler.models import DesiredStateSnapshot

logger = logging.getLogger(__name__)

INSTANCE_GROUP_LABEL = "kops.k8s.io/instancegroup"
UNGROUPED = "<none>"


def _load_k8s(cfg: KubernetesConfig) -> client.ApiClient:
    """Load kubernetes configuration and return an API client."""
    if cfg.kubeconfig:
        k8s_config.load_kube_config(
            config_file=cfg.kubeconfig,
            context=cfg.context,
        )
    else:
        k8s_config.load_incluster_config()
    return client.ApiClient()


def _is_ready(node: Any) -> bool:
    conditions = node.status.conditions if node.status else None
    for cond in conditions or []:
        if cond.type == "Ready":
            return cond.status == "True"
    return False


class NodeInventory:
    """Read-only view of the nodes that joined the cluster."""

    def __init__(self, k8s_cfg: KubernetesConfig, core: client.CoreV1Api | None = None) -> None:
        self.k8s_cfg = k8s_cfg
        self._core = core

    def _core_api(self) -> client.CoreV1Api:
        if self._core is None:
            self._core = client.CoreV1Api(_load_k8s(self.k8s_cfg))
        return self._core

    async def nodes_by_group(self) -> dict[str, list[dict[str, Any]]]:
        """Return node summaries keyed by instance group name."""
        core = self._core_api()
        nodes = await asyncio.to_thread(core.list_node)
        groups: dict[str, list[dict[str, Any]]] = {}
        for node in nodes.items:
            labels = node.metadata.labels or {}
            group = labels.get(INSTANCE_GROUP_LABEL, UNGROUPED)
            groups.setdefault(group, []).append({
                "name": node.metadata.name,
                "ready": _is_ready(node),
                "unschedulable": bool(node.spec.unschedulable) if node.spec else False,
            })
        logger.info("Found %d node(s) in %d group(s)", len(nodes.items), len(groups))
        return groups

    async def compare(self, snapshot: DesiredStateSnapshot) -> list[dict[str, Any]]:
        """Desired bounds next to registered and ready node counts per instance group."""
        groups = await self.nodes_by_group()
        rows = []
        for ig in snapshot.instance_groups:
            nodes = groups.get(ig.name, [])
            ready = sum(1 for n in nodes if n["ready"])
            rows.append({
                "instance_group": ig.name,
                "role": ig.role.value,
                "min_size": ig.min_size,
                "max_size": ig.max_size,
                "registered": len(nodes),
                "ready": ready,
                "within_bounds": ig.min_size <= len(nodes) <= ig.max_size,
            })
        return rows
