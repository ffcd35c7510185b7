"""VM inventory controller CLI (vmic).

Usage:
    vmic run                  # Run the controller (same as vm-inventory-controller)
    vmic check                # Verify AWX is reachable and the organization exists
    vmic sync                 # One-shot: publish every current VM into AWX
    vmic replay events.yaml   # Feed recorded watch events through the engine

All commands read the same environment variables as the controller process.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from .bootstrap import BootstrapError, bootstrap
from .config import Config, ConfigurationError
from .engine import ReconciliationEngine, SyncResult
from .main import build_engine, create_gateway, main, setup_logging
from .models import ChangeNotification
from .replay import ReplayLoadError, ReplayWatcher
from .watcher import KubernetesWatcher, ResourceWatcher, WatchError


def load_config() -> Config:
    """Load configuration, converting validation errors into CLI errors."""
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def echo_result(result: SyncResult) -> None:
    click.echo(
        f"processed={result.processed} skipped={result.skipped} "
        f"failed={result.failed} duration={result.duration_seconds:.1f}s"
    )
    if result.success:
        click.secho("✓ Inventory in sync", fg="green")
    else:
        click.secho(f"✗ {result.failed} notification(s) failed", fg="red")


async def _reconcile(
    config: Config,
    watcher: ResourceWatcher,
    notifications: list[ChangeNotification],
) -> SyncResult:
    async with create_gateway(config) as gateway:
        try:
            await bootstrap(gateway, config)
        except BootstrapError as e:
            raise click.ClickException(f"Readiness gate failed: {e}") from e
        engine: ReconciliationEngine = build_engine(config, gateway, watcher)
        return await engine.reconcile_snapshot(notifications)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="vmic")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def cli(verbose: bool) -> None:
    """VM inventory controller CLI (vmic).

    Mirrors VirtualMachine objects into AWX inventories, one per namespace.
    """
    setup_logging(logging.DEBUG if verbose else logging.WARNING)


@cli.command()
@click.pass_context
def run(ctx: click.Context) -> None:
    """Run the controller until SIGTERM/SIGINT."""
    ctx.exit(asyncio.run(main()))


@cli.command()
def check() -> None:
    """Verify AWX is reachable and the organization exists."""
    config = load_config()

    async def _check() -> int:
        async with create_gateway(config) as gateway:
            return await bootstrap(gateway, config)

    try:
        organization_id = asyncio.run(_check())
    except BootstrapError as e:
        raise click.ClickException(str(e)) from e

    click.secho(
        f"✓ AWX at {config.base_url} is ready; organization "
        f"'{config.organization}' has id {organization_id}",
        fg="green",
    )


@cli.command()
@click.option("--namespace", "-n", default=None, help="Limit to one namespace.")
def sync(namespace: str | None) -> None:
    """Publish every current VirtualMachine into AWX once."""
    config = load_config()
    scope = namespace or config.namespace

    async def _sync() -> SyncResult:
        watcher = KubernetesWatcher.from_environment(timeout_seconds=config.watch_timeout_seconds)
        records = await watcher.list_vms(scope)
        click.echo(f"Found {len(records)} VirtualMachine(s) in {scope or 'all namespaces'}")
        return await _reconcile(config, watcher, [ChangeNotification.added(r) for r in records])

    try:
        result = asyncio.run(_sync())
    except WatchError as e:
        raise click.ClickException(str(e)) from e

    echo_result(result)
    if not result.success:
        raise SystemExit(1)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--namespace", "-n", default=None, help="Only replay events for this namespace.")
def replay(path: Path, namespace: str | None) -> None:
    """Feed recorded watch events from a YAML file through the engine."""
    config = load_config()

    try:
        watcher = ReplayWatcher.from_file(path)
    except ReplayLoadError as e:
        raise click.ClickException(str(e)) from e

    notifications = watcher.notifications(namespace or config.namespace)
    click.echo(f"Replaying {len(notifications)} event(s) from {path}")

    result = asyncio.run(_reconcile(config, watcher, notifications))
    echo_result(result)
    if not result.success:
        raise SystemExit(1)


if __name__ == "__main__":
    cli()
