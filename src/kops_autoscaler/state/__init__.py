from urllib.parse import urlparse

from kops_autoscaler.config import AppConfig
from kops_autoscaler.state.base import StateProvider
from kops_autoscaler.state.kops import KopsStateProvider
from kops_autoscaler.state.vfs import VFSStateProvider

# Stores only the kops binary can open.
KOPS_ONLY_SCHEMES = ("swift", "gs")


def provider_for(cfg: AppConfig, env: dict[str, str] | None = None) -> StateProvider:
    """Read local and S3-compatible stores directly; defer the rest to kops."""
    if urlparse(cfg.state_store.url).scheme in KOPS_ONLY_SCHEMES:
        return KopsStateProvider(cfg.kops, cfg.state_store.url, env=env)
    return VFSStateProvider.from_config(cfg.state_store)


__all__ = ["KopsStateProvider", "StateProvider", "VFSStateProvider", "provider_for"]
