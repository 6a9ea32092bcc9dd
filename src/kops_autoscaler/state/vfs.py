"""kops state-store reader for local directories and S3-compatible buckets.

The store keeps one directory per cluster::

    <store>/<cluster>/config                  kind: Cluster
    <store>/<cluster>/instancegroup/<name>    kind: InstanceGroup
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import boto3
import yaml
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from kops_autoscaler.config import StateStoreConfig
from kops_autoscaler.errors import (
    AccessError,
    ConfigurationError,
    NotFoundError,
    StateStoreError,
)
from kops_autoscaler.models import ClusterSpec, InstanceGroupRole, InstanceGroupSpec
from kops_autoscaler.state.base import StateProvider

logger = logging.getLogger(__name__)

CLUSTER_CONFIG = "config"
INSTANCE_GROUP_DIR = "instancegroup"

# kops fills in these sizes when an instance group omits minSize.
DEFAULT_MIN_SIZE = {
    InstanceGroupRole.MASTER: 1,
    InstanceGroupRole.NODE: 2,
    InstanceGroupRole.BASTION: 1,
}

_ROLE_ALIASES = {
    "master": InstanceGroupRole.MASTER,
    "controlplane": InstanceGroupRole.MASTER,
    "node": InstanceGroupRole.NODE,
    "bastion": InstanceGroupRole.BASTION,
}

_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "404", "NotFound"}
_ACCESS_CODES = {
    "AccessDenied",
    "403",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
}


class StoreBackend(ABC):
    """Blocking key/value access to a state store; keys are '/'-separated."""

    @abstractmethod
    def read(self, key: str) -> bytes:
        ...

    @abstractmethod
    def list(self, prefix: str) -> list[str]:
        """Return the names of the direct children of ``prefix``."""
        ...


class LocalBackend(StoreBackend):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).expanduser()

    def read(self, key: str) -> bytes:
        path = self.root / key
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise NotFoundError(f"{path} does not exist") from exc
        except PermissionError as exc:
            raise AccessError(f"Permission denied reading {path}") from exc
        except OSError as exc:
            raise StateStoreError(f"Error reading {path}: {exc}") from exc

    def list(self, prefix: str) -> list[str]:
        path = self.root / prefix
        if not path.is_dir():
            return []
        try:
            return sorted(p.name for p in path.iterdir() if p.is_file())
        except PermissionError as exc:
            raise AccessError(f"Permission denied listing {path}") from exc


class S3Backend(StoreBackend):
    def __init__(
        self,
        bucket: str,
        prefix: str = "",
        *,
        access_key: str | None = None,
        secret_key: str | None = None,
        endpoint_url: str | None = None,
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self._client = client or boto3.client(
            "s3",
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            endpoint_url=endpoint_url,
        )

    def _key(self, key: str) -> str:
        return f"{self.prefix}/{key}" if self.prefix else key

    def _translate(self, exc: Exception, what: str) -> StateStoreError:
        if isinstance(exc, NoCredentialsError):
            return AccessError(f"No credentials for s3://{self.bucket}")
        if isinstance(exc, ClientError):
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                return NotFoundError(f"s3://{self.bucket}/{what} does not exist")
            if code in _ACCESS_CODES:
                return AccessError(f"Access denied to s3://{self.bucket}/{what} ({code})")
        return StateStoreError(f"Error accessing s3://{self.bucket}/{what}: {exc}")

    def read(self, key: str) -> bytes:
        full = self._key(key)
        try:
            obj = self._client.get_object(Bucket=self.bucket, Key=full)
            return obj["Body"].read()
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, full) from exc

    def list(self, prefix: str) -> list[str]:
        full = self._key(prefix).rstrip("/") + "/"
        names: list[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=full, Delimiter="/"):
                for obj in page.get("Contents", []):
                    name = obj["Key"][len(full):]
                    if name:
                        names.append(name)
        except (ClientError, BotoCoreError) as exc:
            raise self._translate(exc, full) from exc
        return sorted(names)


def backend_for(cfg: StateStoreConfig) -> StoreBackend:
    """Pick the backend from the store URL scheme."""
    url = cfg.url
    parsed = urlparse(url)
    scheme = parsed.scheme

    if scheme in ("", "file"):
        return LocalBackend(parsed.path if scheme == "file" else url)

    if scheme in ("s3", "do"):
        if not parsed.netloc:
            raise ConfigurationError(f"State store {url!r} has no bucket", field="state_store.url")
        if scheme == "do" and not cfg.custom_endpoint:
            raise ConfigurationError(
                "do:// state stores need S3_ENDPOINT (--custom-endpoint)",
                field="state_store.custom_endpoint",
            )
        return S3Backend(
            parsed.netloc,
            parsed.path,
            access_key=cfg.access_key,
            secret_key=cfg.secret_key,
            endpoint_url=cfg.custom_endpoint,
        )

    raise ConfigurationError(
        f"Unsupported state store scheme {scheme!r} in {url!r}",
        field="state_store.url",
    )


def _load_document(
    raw: bytes | dict[str, Any], expected_kind: str, source: str
) -> dict[str, Any]:
    """Decode ``raw`` (YAML bytes or an already-decoded mapping) and check its kind."""
    doc: Any = raw
    if isinstance(raw, (bytes, str)):
        try:
            doc = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise StateStoreError(f"{source} is not valid YAML: {exc}") from exc
    if not isinstance(doc, dict):
        raise StateStoreError(f"{source} does not contain a {expected_kind} object")
    kind = doc.get("kind")
    if kind != expected_kind:
        raise StateStoreError(f"{source} has kind {kind!r}, expected {expected_kind!r}")
    return doc


def parse_cluster(raw: bytes | dict[str, Any], source: str = "cluster config") -> ClusterSpec:
    doc = _load_document(raw, "Cluster", source)
    metadata = doc.get("metadata") or {}
    spec = doc.get("spec") or {}
    return ClusterSpec(
        name=metadata.get("name", ""),
        cloud_provider=spec.get("cloudProvider", ""),
        spec=spec,
    )


def parse_instance_group(
    raw: bytes | dict[str, Any], source: str = "instance group"
) -> InstanceGroupSpec:
    doc = _load_document(raw, "InstanceGroup", source)
    metadata = doc.get("metadata") or {}
    spec = doc.get("spec") or {}

    name = metadata.get("name")
    if not name:
        raise StateStoreError(f"{source} has no metadata.name")

    role_value = str(spec.get("role", "Node"))
    role = _ROLE_ALIASES.get(role_value.lower())
    if role is None:
        raise StateStoreError(f"{source} has unknown role {role_value!r}")

    min_size = spec.get("minSize")
    if min_size is None:
        min_size = DEFAULT_MIN_SIZE[role]
    max_size = spec.get("maxSize")
    if max_size is None:
        max_size = min_size

    try:
        return InstanceGroupSpec(
            name=name,
            role=role,
            min_size=int(min_size),
            max_size=int(max_size),
            machine_type=spec.get("machineType", ""),
            image=spec.get("image", ""),
        )
    except (TypeError, ValueError) as exc:
        raise StateStoreError(f"{source}: {exc}") from exc


class VFSStateProvider(StateProvider):
    """Reads cluster and instance group specs straight from the kops state store."""

    def __init__(self, backend: StoreBackend) -> None:
        self.backend = backend

    @classmethod
    def from_config(cls, cfg: StateStoreConfig) -> VFSStateProvider:
        return cls(backend_for(cfg))

    async def get_cluster_spec(self, cluster_name: str) -> ClusterSpec:
        key = f"{cluster_name}/{CLUSTER_CONFIG}"
        try:
            raw = await asyncio.to_thread(self.backend.read, key)
        except NotFoundError as exc:
            raise NotFoundError(f"Cluster {cluster_name!r} not found in state store") from exc
        cluster = parse_cluster(raw, source=key)
        if not cluster.name:
            cluster = ClusterSpec(name=cluster_name, cloud_provider=cluster.cloud_provider,
                                  spec=cluster.spec)
        return cluster

    async def list_instance_groups(self, cluster: ClusterSpec) -> list[InstanceGroupSpec]:
        prefix = f"{cluster.name}/{INSTANCE_GROUP_DIR}"
        names = await asyncio.to_thread(self.backend.list, prefix)
        groups: list[InstanceGroupSpec] = []
        for name in names:
            key = f"{prefix}/{name}"
            raw = await asyncio.to_thread(self.backend.read, key)
            groups.append(parse_instance_group(raw, source=key))
        logger.debug("Loaded %d instance group(s) for %s", len(groups), cluster.name)
        return groups
