"""CLI command for re-running the nest filters over the nests database."""

import asyncio
import sys
from pathlib import Path

import click

from nestwatch.config import ConfigManager, NestwatchConfig
from nestwatch.database.nests_store import NestsStore
from nestwatch.database.points_store import PointsStore
from nestwatch.errors import ConfigInvalidError, StoreUnavailableError
from nestwatch.filters.refresher import NestRefresher, RefreshOptions
from nestwatch.utils.structlog_configurator import configure_structlog


async def _refresh_async(
    config: NestwatchConfig, all_spawnpoints: bool, concurrency: int | None
) -> None:
    nests_store = NestsStore(config.nests_db)
    points_store = PointsStore(config.golbat_db) if config.golbat_db else None
    if points_store is None:
        click.echo("No golbat_db configured: spawnpoint counts will not be refreshed.", err=True)

    try:
        await nests_store.initialize()
        refresher = NestRefresher(nests_store, points_store)
        options = RefreshOptions.from_config(
            config.filters,
            force_spawnpoints_refresh=all_spawnpoints,
            concurrency=concurrency,
        )
        await refresher.refresh_all(options)
    finally:
        await nests_store.dispose()
        if points_store is not None:
            await points_store.dispose()


@click.command()
@click.option(
    "-f",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $NESTWATCH_CONFIG or configs/nestwatch.yaml)",
)
@click.option(
    "--all-spawnpoints",
    is_flag=True,
    help="Re-count spawnpoints for all nests, even if they are already known",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Number of nests refreshed at once (default: filters.concurrency)",
)
@click.option("--debug", is_flag=True, help="Log at DEBUG level")
def refresh_nests(
    config_path: Path | None, all_spawnpoints: bool, concurrency: int | None, debug: bool
) -> None:
    """Recompute areas and spawnpoints, re-filter nests and disable overlaps.

    The running daemon only picks up the changes on its next reload.
    """
    try:
        config = ConfigManager(config_path).load()
    except ConfigInvalidError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)
    configure_structlog(config, debug=debug)

    try:
        asyncio.run(_refresh_async(config, all_spawnpoints, concurrency))
    except StoreUnavailableError as e:
        click.echo(click.style(f"Refresh failed: {e}", fg="red"), err=True)
        sys.exit(1)

    click.echo(click.style("Nest refresh complete.", fg="green"))


def main() -> None:
    refresh_nests()


if __name__ == "__main__":
    main()
