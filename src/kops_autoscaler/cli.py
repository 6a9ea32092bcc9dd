"""Typer CLI entrypoint for kops-autoscaler."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Any, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from kops_autoscaler.config import AppConfig, kops_environment, load_config, validate_config
from kops_autoscaler.errors import AutoscalerError, ConfigurationError

app = typer.Typer(
    name="kops-autoscaler",
    help="Keep kops instance groups converged with the state store.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger("kops_autoscaler")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _load(
    config_path: str | None,
    *,
    name: str | None = None,
    state_store: str | None = None,
    access_key: str | None = None,
    secret_key: str | None = None,
    custom_endpoint: str | None = None,
    sleep: float | None = None,
    feature_flags: str | None = None,
    log_level: str | None = None,
) -> AppConfig:
    overrides: dict[str, Any] = {
        "cluster_name": name,
        "state_store": {
            "url": state_store,
            "access_key": access_key,
            "secret_key": secret_key,
            "custom_endpoint": custom_endpoint,
        },
        "controller": {"interval_seconds": sleep},
        "kops": {"feature_flags": feature_flags},
        "logging": {"level": log_level.upper() if log_level else None},
    }
    try:
        cfg = validate_config(load_config(config_path, overrides))
    except FileNotFoundError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc
    except ConfigurationError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(1) from exc

    _configure_logging(cfg.logging.level)
    return cfg


def _build_controller(cfg: AppConfig) -> "AutoscalerController":  # noqa: F821
    from kops_autoscaler.controller import AutoscalerController
    from kops_autoscaler.planner.kops import KopsPlanner
    from kops_autoscaler.state import provider_for

    env = kops_environment(cfg)
    try:
        state = provider_for(cfg, env)
        planner = KopsPlanner(cfg.kops, cfg.state_store.url, env=env)
        return AutoscalerController(cfg.cluster_name, state, planner, cfg.controller)
    except ConfigurationError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(1) from exc


async def _serve(controller: "AutoscalerController") -> None:  # noqa: F821
    """Run the loop until SIGINT/SIGTERM; a second signal abandons any in-flight call."""
    loop = asyncio.get_running_loop()
    task = asyncio.current_task()

    def _on_signal(signame: str) -> None:
        if not controller.stopping:
            logger.info("Received %s, stopping after the current tick", signame)
            controller.shutdown()
        elif task is not None:
            logger.warning("Received %s again, cancelling in-flight work", signame)
            task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig.name)
        except NotImplementedError:
            pass

    try:
        await controller.run()
    except asyncio.CancelledError:
        logger.info("Stopped %s", controller.cluster_name)


# ── shared options ──────────────────────────────────────────────────────
_CONFIG = typer.Option(None, "--config", "-c", help="Path to config YAML")
_NAME = typer.Option(None, "--name", envvar="NAME", help="Name of the kops cluster")
_STATE = typer.Option(None, "--state-store", envvar="KOPS_STATE_STORE", help="kops state store")
_ACCESS = typer.Option(None, "--access-key", envvar="S3_ACCESS_KEY_ID", help="S3 access key")
_SECRET = typer.Option(None, "--secret-key", envvar="S3_SECRET_ACCESS_KEY", help="S3 secret key")
_ENDPOINT = typer.Option(None, "--custom-endpoint", envvar="S3_ENDPOINT", help="S3 custom endpoint")
_FEATURES = typer.Option(
    None, "--feature-flags", envvar="KOPS_FEATURE_FLAGS", help="KOPS_FEATURE_FLAGS passed to kops"
)
_LOG_LEVEL = typer.Option(None, "--log-level", envvar="LOG_LEVEL", help="DEBUG, INFO, WARNING or ERROR")


# ── run ─────────────────────────────────────────────────────────────────
@app.command()
def run(
    config: Optional[str] = _CONFIG,
    name: Optional[str] = _NAME,
    state_store: Optional[str] = _STATE,
    access_key: Optional[str] = _ACCESS,
    secret_key: Optional[str] = _SECRET,
    custom_endpoint: Optional[str] = _ENDPOINT,
    feature_flags: Optional[str] = _FEATURES,
    sleep: Optional[float] = typer.Option(
        None, "--sleep", envvar="SLEEP", help="Seconds between executions (default 45)"
    ),
    once: bool = typer.Option(False, "--once", help="Run a single iteration and exit"),
    log_level: Optional[str] = _LOG_LEVEL,
) -> None:
    """Watch the cluster and run `kops update cluster --yes` when instances drift."""
    cfg = _load(
        config,
        name=name,
        state_store=state_store,
        access_key=access_key,
        secret_key=secret_key,
        custom_endpoint=custom_endpoint,
        feature_flags=feature_flags,
        sleep=sleep,
        log_level=log_level,
    )
    controller = _build_controller(cfg)

    if once:
        result = asyncio.run(controller.run_once())
        console.print_json(json.dumps(result.to_dict(), default=str))
        if not result.ok:
            raise typer.Exit(1)
        return

    asyncio.run(_serve(controller))


# ── plan ────────────────────────────────────────────────────────────────
@app.command()
def plan(
    config: Optional[str] = _CONFIG,
    name: Optional[str] = _NAME,
    state_store: Optional[str] = _STATE,
    access_key: Optional[str] = _ACCESS,
    secret_key: Optional[str] = _SECRET,
    custom_endpoint: Optional[str] = _ENDPOINT,
    feature_flags: Optional[str] = _FEATURES,
    output_json: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
    log_level: Optional[str] = _LOG_LEVEL,
) -> None:
    """Dry run only: show pending changes and whether an update would run."""
    from kops_autoscaler.classifier import is_instance_affecting, needs_convergence

    cfg = _load(
        config,
        name=name,
        state_store=state_store,
        access_key=access_key,
        secret_key=secret_key,
        custom_endpoint=custom_endpoint,
        feature_flags=feature_flags,
        log_level=log_level,
    )
    controller = _build_controller(cfg)

    async def _plan():
        snapshot = await controller.refresh()
        return await controller.dry_run(snapshot)

    try:
        prospective = asyncio.run(_plan())
    except AutoscalerError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc

    decision = needs_convergence(prospective)
    if output_json:
        console.print_json(json.dumps({
            "cluster_name": cfg.cluster_name,
            "needs_convergence": decision,
            "changes": [
                {
                    "kind": c.kind.value,
                    "name": c.name,
                    "action": c.action.value,
                    "task_type": c.task_type,
                }
                for c in prospective
            ],
        }))
        return

    table = Table(title=f"Pending changes for {cfg.cluster_name}")
    table.add_column("Action", style="magenta")
    table.add_column("Kind", style="cyan")
    table.add_column("Name")
    table.add_column("Instance", style="yellow")
    for change in prospective:
        table.add_row(
            change.action.value,
            change.kind.value,
            change.name,
            "yes" if is_instance_affecting(change) else "",
        )
    console.print(table)
    if decision:
        console.print("[bold yellow]Instance changes pending: an update would run.[/bold yellow]")
    else:
        console.print("[bold green]No instance changes: nothing to do.[/bold green]")


# ── status ──────────────────────────────────────────────────────────────
@app.command()
def status(
    config: Optional[str] = _CONFIG,
    name: Optional[str] = _NAME,
    state_store: Optional[str] = _STATE,
    access_key: Optional[str] = _ACCESS,
    secret_key: Optional[str] = _SECRET,
    custom_endpoint: Optional[str] = _ENDPOINT,
    feature_flags: Optional[str] = _FEATURES,
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", envvar="KUBECONFIG"),
    log_level: Optional[str] = _LOG_LEVEL,
) -> None:
    """Compare instance group bounds with the nodes registered in Kubernetes."""
    from kubernetes.client.exceptions import ApiException
    from kubernetes.config.config_exception import ConfigException

    from kops_autoscaler.discovery.nodes import NodeInventory

    cfg = _load(
        config,
        name=name,
        state_store=state_store,
        access_key=access_key,
        secret_key=secret_key,
        custom_endpoint=custom_endpoint,
        feature_flags=feature_flags,
        log_level=log_level,
    )
    if kubeconfig:
        cfg.kubernetes.kubeconfig = kubeconfig
    controller = _build_controller(cfg)
    inventory = NodeInventory(cfg.kubernetes)

    async def _status():
        snapshot = await controller.refresh()
        return await inventory.compare(snapshot)

    try:
        rows = asyncio.run(_status())
    except (AutoscalerError, ApiException, ConfigException) as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from exc

    table = Table(title=f"Instance groups of {cfg.cluster_name}")
    table.add_column("Instance group", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Min", justify="right")
    table.add_column("Max", justify="right")
    table.add_column("Registered", justify="right")
    table.add_column("Ready", justify="right")
    table.add_column("In bounds", style="green")
    for row in rows:
        table.add_row(
            row["instance_group"],
            row["role"],
            str(row["min_size"]),
            str(row["max_size"]),
            str(row["registered"]),
            str(row["ready"]),
            "yes" if row["within_bounds"] else "[red]no[/red]",
        )
    console.print(table)


if __name__ == "__main__":
    app()
