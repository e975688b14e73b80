"""CLI command for exporting nests from the nests database as GeoJSON.

Output goes to stdout; logs go to stderr.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, TextIO

import click

from nestwatch.config import ConfigManager, NestwatchConfig
from nestwatch.database.nests_store import NestsStore
from nestwatch.errors import (
    ConfigInvalidError,
    GeometryInvalidError,
    NotFoundError,
    StoreUnavailableError,
)
from nestwatch.geo.areas import last_segment
from nestwatch.utils.structlog_configurator import configure_structlog

logger = logging.getLogger(__name__)


async def export_nest(nests_store: Any, nest_id: int, out: TextIO) -> None:
    """Write a single nest as a GeoJSON Feature.

    Raises:
        NotFoundError: If there is no such nest
        GeometryInvalidError: If the nest has no usable polygon
    """
    nest = await nests_store.get_by_id(nest_id)
    if nest is None:
        raise NotFoundError(f"nest {nest_id} not found")
    json.dump(nest.as_feature(), out)
    out.write("\n")


async def export_nests(
    nests_store: Any, out: TextIO, include_inactive: bool = False, area: str | None = None
) -> dict[str, int]:
    """Stream nests as a GeoJSON FeatureCollection, one feature at a time.

    Returns:
        The number of features written per area name.
    """
    areas_processed: dict[str, int] = {}
    out.write('{"type":"FeatureCollection","features":[')
    first = True
    async for nest in nests_store.stream_nests(include_polygon=True):
        if not include_inactive and not nest.active:
            continue

        area_name = last_segment(nest.area_name or "")
        if area is not None and area != area_name:
            continue

        try:
            feature = nest.as_feature()
        except GeometryInvalidError as e:
            logger.warning("skipping nest %d: %s", nest.nest_id, e)
            continue

        if not first:
            out.write(",")
        json.dump(feature, out)
        first = False
        areas_processed[area_name] = areas_processed.get(area_name, 0) + 1

    out.write("]}\n")
    return areas_processed


async def _export_async(
    config: NestwatchConfig,
    include_inactive: bool,
    area: str | None,
    nest_id: int | None,
    out: TextIO,
) -> None:
    nests_store = NestsStore(config.nests_db)
    try:
        await nests_store.initialize()
        if nest_id is not None:
            await export_nest(nests_store, nest_id, out)
            return
        logger.info("Starting export...")
        areas = await export_nests(nests_store, out, include_inactive, area)
        for area_name, count in sorted(areas.items()):
            logger.info("Exported %d nest(s) for area '%s'", count, area_name)
    finally:
        await nests_store.dispose()


@click.command()
@click.option(
    "-f",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $NESTWATCH_CONFIG or configs/nestwatch.yaml)",
)
@click.option("--include-inactive", is_flag=True, help="Include inactive nests, also")
@click.option("--all-areas", is_flag=True, help="Export nests from all areas")
@click.option("--area", help="Export only one area")
@click.option("--nest-id", type=int, help="Export only one nest, as a Feature")
@click.option("--debug", is_flag=True, help="Log at DEBUG level")
def export_nests_command(
    config_path: Path | None,
    include_inactive: bool,
    all_areas: bool,
    area: str | None,
    nest_id: int | None,
    debug: bool,
) -> None:
    """Export nests as a GeoJSON FeatureCollection (or one nest as a Feature).

    Exactly one of --all-areas, --area or --nest-id is required.

    Examples:
        nestwatch-export --all-areas > all-areas.geojson

        nestwatch-export --area 'My Area Name' > myarea.geojson

        nestwatch-export --nest-id 12345 > mynest.geojson
    """
    selected = sum([all_areas, area is not None, nest_id is not None])
    if selected != 1:
        raise click.UsageError("exactly one of --all-areas, --area or --nest-id is required")

    try:
        config = ConfigManager(config_path).load()
    except ConfigInvalidError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)
    configure_structlog(config, debug=debug)

    try:
        asyncio.run(_export_async(config, include_inactive, area, nest_id, sys.stdout))
    except (NotFoundError, GeometryInvalidError, StoreUnavailableError) as e:
        click.echo(click.style(f"Export failed: {e}", fg="red"), err=True)
        sys.exit(1)


def main() -> None:
    export_nests_command()


if __name__ == "__main__":
    main()
