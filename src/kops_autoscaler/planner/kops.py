"""Planner backed by the ``kops`` binary."""

from __future__ import annotations

import asyncio
import logging
import os
import re

from kops_autoscaler.config import KopsConfig
from kops_autoscaler.errors import ConfigurationError, RetryableError
from kops_autoscaler.models import (
    ChangeAction,
    DesiredStateSnapshot,
    PlannedChange,
    ProspectivePlan,
    ResourceKind,
)
from kops_autoscaler.planner.base import Planner

logger = logging.getLogger(__name__)

# kops task type -> resource kind. Matching is exact; unknown types are OTHER.
KOPS_TASK_KINDS: dict[str, ResourceKind] = {
    # compute
    "Instance": ResourceKind.COMPUTE_INSTANCE,
    "Droplet": ResourceKind.COMPUTE_INSTANCE,
    # groups and templates
    "ServerGroup": ResourceKind.INSTANCE_GROUP,
    "AutoscalingGroup": ResourceKind.INSTANCE_GROUP,
    "InstanceGroupManager": ResourceKind.INSTANCE_GROUP,
    "ScalingGroup": ResourceKind.INSTANCE_GROUP,
    "LaunchConfiguration": ResourceKind.LAUNCH_TEMPLATE,
    "LaunchTemplate": ResourceKind.LAUNCH_TEMPLATE,
    "InstanceTemplate": ResourceKind.LAUNCH_TEMPLATE,
    # network
    "SecurityGroup": ResourceKind.SECURITY_GROUP,
    "SecurityGroupRule": ResourceKind.SECURITY_GROUP_RULE,
    "FirewallRule": ResourceKind.SECURITY_GROUP_RULE,
    "Network": ResourceKind.NETWORK,
    "VPC": ResourceKind.NETWORK,
    "VPCCIDRBlock": ResourceKind.NETWORK,
    "Subnet": ResourceKind.SUBNET,
    "Router": ResourceKind.ROUTER,
    "RouterInterface": ResourceKind.ROUTER,
    "RouteTable": ResourceKind.ROUTER,
    "Route": ResourceKind.ROUTER,
    "InternetGateway": ResourceKind.ROUTER,
    "NatGateway": ResourceKind.ROUTER,
    "Port": ResourceKind.PORT,
    "LB": ResourceKind.LOAD_BALANCER,
    "LBListener": ResourceKind.LOAD_BALANCER,
    "LBPool": ResourceKind.LOAD_BALANCER,
    "PoolAssociation": ResourceKind.LOAD_BALANCER,
    "LoadBalancer": ResourceKind.LOAD_BALANCER,
    "ClassicLoadBalancer": ResourceKind.LOAD_BALANCER,
    "TargetPool": ResourceKind.LOAD_BALANCER,
    "FloatingIP": ResourceKind.FLOATING_IP,
    "ElasticIP": ResourceKind.FLOATING_IP,
    # storage, keys, dns
    "Volume": ResourceKind.VOLUME,
    "EBSVolume": ResourceKind.VOLUME,
    "Disk": ResourceKind.VOLUME,
    "SSHKey": ResourceKind.SSH_KEY,
    "DNSName": ResourceKind.DNS,
    "DNSZone": ResourceKind.DNS,
    "ManagedFile": ResourceKind.MANAGED_FILE,
    "MirrorSecrets": ResourceKind.MANAGED_FILE,
    "MirrorKeystore": ResourceKind.MANAGED_FILE,
    "Keypair": ResourceKind.MANAGED_FILE,
    "Secret": ResourceKind.MANAGED_FILE,
}

_SECTION_RE = re.compile(r"^Will (create|modify|delete) resources:\s*$")
_ENTRY_RE = re.compile(r"^  ([A-Za-z][A-Za-z0-9]*)/(\S.*?)\s*$")

STDERR_TAIL_LINES = 20


def kind_for_task(task_type: str) -> ResourceKind:
    return KOPS_TASK_KINDS.get(task_type, ResourceKind.OTHER)


def parse_dry_run(output: str) -> ProspectivePlan:
    """Parse the change listing printed by ``kops update cluster`` without ``--yes``."""
    changes: list[PlannedChange] = []
    action: ChangeAction | None = None

    for line in output.splitlines():
        section = _SECTION_RE.match(line)
        if section:
            action = ChangeAction(section.group(1))
            continue
        if action is None or not line.strip():
            continue
        entry = _ENTRY_RE.match(line)
        if entry:
            task_type, name = entry.groups()
            changes.append(PlannedChange(
                kind=kind_for_task(task_type),
                name=name,
                action=action,
                task_type=task_type,
            ))
        elif not line.startswith((" ", "\t")):
            # Unindented text closes the current section.
            action = None

    return ProspectivePlan(tuple(changes))


async def run_kops(cmd: list[str], env: dict[str, str] | None = None) -> str:
    """Run a kops command and return its stdout.

    The child inherits the process environment overlaid with ``env``. A
    missing binary raises ``ConfigurationError``; a non-zero exit raises
    ``RetryableError`` with the tail of stderr. Cancelling the awaiting
    task kills the child.
    """
    logger.debug("Running %s", " ".join(cmd))
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env={**os.environ, **(env or {})},
        )
    except FileNotFoundError as exc:
        raise ConfigurationError(
            f"kops binary not found: {cmd[0]}", field="kops.binary"
        ) from exc

    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            logger.warning("Killing kops (pid %s) after cancellation", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        raise

    if proc.returncode != 0:
        tail = "\n".join(
            stderr.decode(errors="replace").strip().splitlines()[-STDERR_TAIL_LINES:]
        )
        raise RetryableError(
            f"kops exited with status {proc.returncode}: {tail}",
            returncode=proc.returncode,
            stderr=tail,
        )
    return stdout.decode(errors="replace")


class KopsPlanner(Planner):
    """Runs ``kops update cluster`` as a subprocess."""

    def __init__(
        self,
        kops_cfg: KopsConfig,
        state_store: str,
        env: dict[str, str] | None = None,
    ) -> None:
        self.kops_cfg = kops_cfg
        self.state_store = state_store
        self.env = env or {}

    def command(self, cluster_name: str, apply: bool = False) -> list[str]:
        cmd = [
            self.kops_cfg.binary,
            "update",
            "cluster",
            "--name",
            cluster_name,
            "--state",
            self.state_store,
            *self.kops_cfg.extra_args,
        ]
        if apply:
            cmd.append("--yes")
        return cmd

    async def plan(self, snapshot: DesiredStateSnapshot) -> ProspectivePlan:
        output = await run_kops(self.command(snapshot.cluster_name), self.env)
        plan = parse_dry_run(output)
        logger.info("Dry run for %s reported %d change(s)", snapshot.cluster_name, len(plan))
        return plan

    async def apply(self, snapshot: DesiredStateSnapshot) -> None:
        await run_kops(self.command(snapshot.cluster_name, apply=True), self.env)
        logger.info("kops update applied for %s", snapshot.cluster_name)
