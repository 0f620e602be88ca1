"""CLI for dosewatch: run the API, migrations, sweeps and offline flushes."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from dosewatch import __version__
from dosewatch.config import CONFIG_FILENAME, ConfigError, DosewatchConfig, load_config
from dosewatch.core.logging import configure_logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(".")


def _load(config_dir: Path) -> DosewatchConfig:
    """Load ``dosewatch.toml`` from *config_dir*; defaults when the file is absent."""
    if not (config_dir / CONFIG_FILENAME).exists():
        return DosewatchConfig()
    try:
        return load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(1)


config_dir_option = click.option(
    "--config-dir",
    "config_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_DIR,
    help=f"Directory containing {CONFIG_FILENAME}",
)


@click.group()
@click.version_option(version=__version__)
@config_dir_option
@click.pass_context
def cli(ctx: click.Context, config_dir: Path) -> None:
    """Dosewatch: veterinary medication dose tracking."""
    config = _load(config_dir)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(config.logging.level, config.logging.format, log_root, name=config.name)
    ctx.obj = config


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to [dosewatch.api].host)")
@click.option("--port", type=int, default=None, help="Port (defaults to [dosewatch.api].port)")
@click.option("--no-sweeper", is_flag=True, help="Do not run the background sweeper")
@click.pass_obj
def serve(config: DosewatchConfig, host: str | None, port: int | None, no_sweeper: bool) -> None:
    """Run the REST API."""
    import uvicorn

    from dosewatch.api.app import create_app
    from dosewatch.core.metrics import init_metrics
    from dosewatch.core.telemetry import init_telemetry

    init_telemetry(config.name)
    init_metrics(config.name)
    app = create_app(config, run_sweeper=False if no_sweeper else None)
    uvicorn.run(
        app,
        host=host or config.api.host,
        port=port or config.api.port,
        log_config=None,
    )


@cli.command()
@click.pass_obj
def migrate(config: DosewatchConfig) -> None:
    """Create the database if needed and upgrade it to the latest schema."""
    asyncio.run(_migrate(config))
    click.echo("Migrations complete")


async def _migrate(config: DosewatchConfig) -> None:
    from dosewatch.db import Database
    from dosewatch.migrations import run_migrations

    db = Database.from_env(config.db_name, schema=config.db_schema)
    await db.provision()
    await run_migrations(db.sqlalchemy_url(), schema=config.db_schema)


@cli.command()
@click.pass_obj
def sweep(config: DosewatchConfig) -> None:
    """Run one expiry and missed-dose pass, then exit."""
    result = asyncio.run(_sweep(config))
    click.echo(
        f"Expired {result.expired_cosigns} co-sign(s), "
        f"materialized {result.materialized_missed} missed dose(s)"
    )


async def _sweep(config: DosewatchConfig):  # noqa: ANN202
    from datetime import timedelta

    from dosewatch.db import Database
    from dosewatch.dosing.models import Tolerance
    from dosewatch.dosing.operations import sweep as run_sweep

    db = Database.from_env(config.db_name, schema=config.db_schema)
    pool = await db.connect()
    try:
        return await run_sweep(
            pool,
            tolerance=Tolerance.from_config(config.tolerance),
            lookback=timedelta(hours=config.sweeper.lookback_hours),
        )
    finally:
        await db.close()


@cli.command()
@click.option("--base-url", required=True, help="Base URL of the dosewatch API")
@click.pass_obj
def flush(config: DosewatchConfig, base_url: str) -> None:
    """Replay the local offline queue against the API."""
    result = asyncio.run(_flush(config, base_url))
    summary = result.summary
    click.echo(
        f"{summary['applied']} applied, {summary['rejected']} rejected, "
        f"{summary['deferred']} deferred"
    )
    for rejected in result.rejected:
        click.echo(
            f"  rejected {rejected.action.idempotency_key}: "
            f"{rejected.rejection.code}: {rejected.rejection.message}"
        )
    if result.deferred:
        sys.exit(2)


async def _flush(config: DosewatchConfig, base_url: str):  # noqa: ANN202
    from dosewatch.offline import HttpSyncTransport, OfflineQueue, RetryPolicy, SqliteQueueStore

    store = SqliteQueueStore(config.offline.queue_path)
    transport = HttpSyncTransport(base_url)
    try:
        queue = OfflineQueue(store, transport, policy=RetryPolicy.from_config(config.offline))
        return await queue.flush()
    finally:
        await transport.aclose()
        store.close()


@cli.command("queue")
@click.option("--ack", "ack_keys", multiple=True, help="Acknowledge a rejected action by key")
@click.pass_obj
def queue_cmd(config: DosewatchConfig, ack_keys: tuple[str, ...]) -> None:
    """Show the offline queue, or acknowledge rejected actions."""
    from dosewatch.offline import SqliteQueueStore

    store = SqliteQueueStore(config.offline.queue_path)
    try:
        for key in ack_keys:
            action = store.get(key)
            if action is None or action.rejection is None:
                click.echo(f"No rejected action with key {key}")
                continue
            store.remove(key)
            click.echo(f"Acknowledged {key}")
        if ack_keys:
            return

        click.echo(f"{'Key':<60} {'Operation':<10} {'State':<10} {'Attempts'}")
        click.echo("-" * 90)
        for action in store.pending() + store.rejected():
            click.echo(
                f"{action.idempotency_key:<60} {action.operation.value:<10} "
                f"{action.state.value:<10} {action.attempts}"
            )
    finally:
        store.close()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
