"""Pydantic configuration models, YAML loader and startup validation."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from kops_autoscaler.errors import ConfigurationError

DEFAULT_FEATURE_FLAGS = "AlphaAllowOpenstack,+EnableExternalCloudController"

# Store schemes that need S3-style credentials.
CREDENTIAL_SCHEMES = ("s3://", "do://")


class StateStoreConfig(BaseModel):
    url: str = ""
    access_key: str | None = None
    secret_key: str | None = None
    custom_endpoint: str | None = None

    @property
    def needs_credentials(self) -> bool:
        return self.url.startswith(CREDENTIAL_SCHEMES)


class ControllerConfig(BaseModel):
    interval_seconds: float = Field(default=45, gt=0)
    state_timeout_seconds: float = Field(default=30, gt=0)
    plan_timeout_seconds: float = Field(default=600, gt=0)
    apply_timeout_seconds: float = Field(default=1800, gt=0)
    run_immediately: bool = False


class KopsConfig(BaseModel):
    binary: str = "kops"
    # None defers to KOPS_FEATURE_FLAGS in the environment, then the default.
    feature_flags: str | None = None
    extra_args: list[str] = Field(default_factory=list)


class KubernetesConfig(BaseModel):
    kubeconfig: str | None = "~/.kube/config"
    context: str | None = None


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


class AppConfig(BaseModel):
    cluster_name: str = ""
    state_store: StateStoreConfig = Field(default_factory=StateStoreConfig)
    controller: ControllerConfig = Field(default_factory=ControllerConfig)
    kops: KopsConfig = Field(default_factory=KopsConfig)
    kubernetes: KubernetesConfig = Field(default_factory=KubernetesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _validation_error(exc: ValidationError) -> ConfigurationError:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"])
    return ConfigurationError(f"Invalid value for {field}: {first['msg']}", field=field)


def load_config(path: str | Path | None = None, overrides: dict[str, Any] | None = None) -> AppConfig:
    """Load configuration from a YAML file, falling back to defaults.

    ``overrides`` is a nested mapping (as produced from CLI flags and
    environment variables) merged over the file contents; ``None`` values
    are ignored so unset flags never clobber the file.
    """
    raw: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path).expanduser()
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Config file {config_path} is not valid YAML: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

    if overrides:
        raw = _merge(raw, overrides)

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as exc:
        raise _validation_error(exc) from exc


def _merge(
    base: dict[str, Any], overrides: dict[str, Any], prefix: str = ""
) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            continue
        if isinstance(value, dict):
            section = merged.get(key)
            if section is None:
                section = {}
            elif not isinstance(section, dict):
                raise ConfigurationError(
                    f"Config section {prefix}{key} must be a mapping, got {type(section).__name__}",
                    field=f"{prefix}{key}",
                )
            merged[key] = _merge(section, value, prefix=f"{prefix}{key}.")
        else:
            merged[key] = value
    return merged


def validate_config(cfg: AppConfig) -> AppConfig:
    """Check the settings the controller cannot start without."""
    if not cfg.cluster_name:
        raise ConfigurationError(
            "Missing cluster name: set NAME in the environment or pass --name",
            field="cluster_name",
        )
    if not cfg.state_store.url:
        raise ConfigurationError(
            "Missing state store: set KOPS_STATE_STORE in the environment or pass --state-store",
            field="state_store.url",
        )
    if cfg.state_store.needs_credentials:
        if not cfg.state_store.access_key:
            raise ConfigurationError(
                "Missing state store access key: set S3_ACCESS_KEY_ID or pass --access-key",
                field="state_store.access_key",
            )
        if not cfg.state_store.secret_key:
            raise ConfigurationError(
                "Missing state store secret key: set S3_SECRET_ACCESS_KEY or pass --secret-key",
                field="state_store.secret_key",
            )
    return cfg


def kops_environment(cfg: AppConfig) -> dict[str, str]:
    """Environment variables the kops binary reads its settings from."""
    env = {
        "KOPS_STATE_STORE": cfg.state_store.url,
        "KOPS_FEATURE_FLAGS": (
            cfg.kops.feature_flags
            or os.environ.get("KOPS_FEATURE_FLAGS")
            or DEFAULT_FEATURE_FLAGS
        ),
    }
    if cfg.state_store.access_key:
        env["S3_ACCESS_KEY_ID"] = cfg.state_store.access_key
    if cfg.state_store.secret_key:
        env["S3_SECRET_ACCESS_KEY"] = cfg.state_store.secret_key
    if cfg.state_store.custom_endpoint:
        env["S3_ENDPOINT"] = cfg.state_store.custom_endpoint
    return env
