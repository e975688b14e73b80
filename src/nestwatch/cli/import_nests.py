"""CLI command for importing nest geofences."""

import asyncio
import logging
import sys
from dataclasses import dataclass
from pathlib import Path

import click

from nestwatch.config import ConfigManager, NestwatchConfig
from nestwatch.database.nests_store import NestsStore
from nestwatch.errors import (
    ConfigInvalidError,
    FeatureSourceError,
    ImportDestinationError,
    StoreUnavailableError,
)
from nestwatch.importer.destinations import KojiDestination, NestsDBDestination
from nestwatch.importer.koji import KojiAdminClient, KojiClient
from nestwatch.importer.models import Feature, ImportResult
from nestwatch.importer.overpass import OverpassClient, OverpassSource, find_area
from nestwatch.importer.runner import ImportRunner
from nestwatch.importer.sources import (
    FeatureSource,
    FileSource,
    KojiSource,
    NestsDBSource,
    load_features_file,
)
from nestwatch.utils.structlog_configurator import configure_structlog

logger = logging.getLogger(__name__)


@dataclass
class ImportOptions:
    file_path: Path | None = None
    koji_project: str | None = None
    koji_dest_project: str | None = None
    koji_create_properties: bool = False
    overpass_areas: str | None = None
    overpass_area: str | None = None
    overpass_koji_project: str | None = None


def check_options(
    source: str, dest: str, config: NestwatchConfig, options: ImportOptions
) -> None:
    """Refuse combinations of source, destination and options that cannot work.

    Raises:
        click.UsageError: If a needed option or config section is missing
    """
    if source == "file" and options.file_path is None:
        raise click.UsageError("'file' source needs --file")

    if source == "koji" and config.koji is None:
        raise click.UsageError("'koji' selected as source, but no 'koji' section in config")

    if source == "overpass":
        if not options.overpass_area:
            raise click.UsageError("'overpass' selected as source, but no --overpass-area given")
        if not options.overpass_areas:
            raise click.UsageError("'overpass' selected as source, but no --overpass-areas given")
        if options.overpass_areas == "koji":
            if config.koji is None:
                raise click.UsageError(
                    "--overpass-areas is 'koji', but no 'koji' section in config"
                )
            if not options.overpass_koji_project:
                raise click.UsageError(
                    "--overpass-areas is 'koji', but no --overpass-koji-project given"
                )

    if dest == "koji":
        if config.koji is None:
            raise click.UsageError(
                "'koji' selected as destination, but no 'koji' section in config"
            )
        if source == "koji":
            src_project = options.koji_project or config.koji.project
            dest_project = options.koji_dest_project or config.koji.project
            if src_project == dest_project:
                raise click.UsageError(
                    f"koji project '{src_project}' is both the source and the destination"
                )


async def load_overpass_areas(config: NestwatchConfig, options: ImportOptions) -> list[Feature]:
    """Load the areas overpass searches within, from koji or a file.

    Raises:
        FeatureSourceError: If the areas cannot be loaded or there are none
    """
    if options.overpass_areas == "koji":
        project = options.overpass_koji_project
        collection = await KojiClient.from_config(config.koji).get_feature_collection(project)
        areas = [f for f in collection.get("features") or [] if isinstance(f, dict)]
        where = f"koji project '{project}'"
    else:
        areas = load_features_file(options.overpass_areas)
        where = f"file {options.overpass_areas}"

    if not areas:
        raise FeatureSourceError(f"no geofence areas found in {where}")
    logger.info("Loaded %d area(s) from %s", len(areas), where)
    return areas


async def build_source(
    source: str,
    config: NestwatchConfig,
    nests_store: NestsStore,
    options: ImportOptions,
) -> FeatureSource:
    """Pick the feature source named on the command line.

    Raises:
        FeatureSourceError: If the overpass areas cannot be loaded
    """
    if source == "file":
        return FileSource(options.file_path)

    if source == "koji":
        project = options.koji_project or config.koji.project
        return KojiSource(KojiClient.from_config(config.koji), project)

    if source == "overpass":
        areas = await load_overpass_areas(config, options)
        area = find_area(areas, options.overpass_area)
        return OverpassSource(OverpassClient.from_config(config.overpass), area)

    return NestsDBSource(nests_store)


async def _import_async(
    config: NestwatchConfig,
    source: str,
    dest: str,
    options: ImportOptions,
) -> ImportResult:
    nests_store = NestsStore(config.nests_db)
    try:
        feature_source = await build_source(source, config, nests_store, options)
        if "db" in (source, dest):
            await nests_store.initialize()

        if dest == "koji":
            project = options.koji_dest_project or config.koji.project
            async with KojiAdminClient.from_config(config.koji) as koji:
                destination = KojiDestination(koji, project, options.koji_create_properties)
                return await ImportRunner(config.importer, feature_source, destination).run()

        destination = NestsDBDestination(nests_store)
        return await ImportRunner(config.importer, feature_source, destination).run()
    finally:
        await nests_store.dispose()


@click.command()
@click.argument("source", type=click.Choice(["file", "koji", "db", "overpass"]))
@click.option(
    "-f",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $NESTWATCH_CONFIG or configs/nestwatch.yaml)",
)
@click.option(
    "--dest",
    type=click.Choice(["db", "koji"]),
    default="db",
    show_default=True,
    help="Where to save the imported geofences",
)
@click.option(
    "--file",
    "file_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="GeoJSON file to import when SOURCE is 'file'",
)
@click.option("--koji-project", help="Koji project to import from (default: from config)")
@click.option("--koji-dest-project", help="Koji project to save to (default: from config)")
@click.option(
    "--koji-create-properties",
    is_flag=True,
    help="Create missing koji properties when saving to koji",
)
@click.option("--overpass-areas", help="Where to get areas to search: 'koji' or a filename")
@click.option("--overpass-area", help="Name of the area to search for nests in overpass")
@click.option("--overpass-koji-project", help="Koji project holding the areas")
@click.option("--debug", is_flag=True, help="Log at DEBUG level")
def import_nests(
    source: str,
    config_path: Path | None,
    dest: str,
    file_path: Path | None,
    koji_project: str | None,
    koji_dest_project: str | None,
    koji_create_properties: bool,
    overpass_areas: str | None,
    overpass_area: str | None,
    overpass_koji_project: str | None,
    debug: bool,
) -> None:
    """Import nest geofences into the nests database or a koji project.

    SOURCE is one of 'file' (a FeatureCollection or Feature on disk), 'koji',
    'db' (re-import the nests already stored, re-applying the filters) or
    'overpass' (parks and similar places from OpenStreetMap within an area).

    Examples:
        # Import from a file
        nestwatch-import file --file nests.geojson

        # Import a koji project
        nestwatch-import koji --koji-project my-nests

        # Find nests for an area kept in koji and save them to another project
        nestwatch-import overpass --overpass-areas koji --overpass-koji-project areas \\
            --overpass-area Downtown --dest koji --koji-dest-project nests
    """
    try:
        config = ConfigManager(config_path).load()
    except ConfigInvalidError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)
    configure_structlog(config, debug=debug)

    options = ImportOptions(
        file_path=file_path,
        koji_project=koji_project,
        koji_dest_project=koji_dest_project,
        koji_create_properties=koji_create_properties,
        overpass_areas=overpass_areas,
        overpass_area=overpass_area,
        overpass_koji_project=overpass_koji_project,
    )
    check_options(source, dest, config, options)

    try:
        result = asyncio.run(_import_async(config, source, dest, options))
    except (FeatureSourceError, ImportDestinationError, StoreUnavailableError) as e:
        click.echo(click.style(f"Import failed: {e}", fg="red"), err=True)
        sys.exit(1)

    click.echo(
        f"Imported {result.imported} new nest(s), updated {result.updated}, "
        f"skipped {result.skipped}, failed {result.failed}."
    )


def main() -> None:
    import_nests()


if __name__ == "__main__":
    main()
