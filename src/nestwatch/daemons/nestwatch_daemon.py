"""The nestwatch service: webhook ingest, nest processing and the HTTP API."""

import asyncio
import logging
import sys
from pathlib import Path

import click
import uvicorn

from nestwatch.config import ConfigManager
from nestwatch.errors import ConfigInvalidError
from nestwatch.utils.structlog_configurator import configure_structlog, get_logger
from nestwatch.web.core.factory import create_app

# Logger will be configured when main runs
logger = get_logger(__name__)


async def serve(config_path: Path | None, debug: bool) -> None:
    """Serve the app until uvicorn is told to stop (SIGINT/SIGTERM)."""
    config = ConfigManager(config_path).load()

    # Access lines would be one per webhook batch
    logging.getLogger("uvicorn.access").disabled = True
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)

    app = create_app(config_path, debug=debug)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.http.host,
            port=config.http.port,
            log_config=None,
            access_log=False,
        )
    )
    logger.info("Starting nestwatch", host=config.http.host, port=config.http.port)
    await server.serve()
    logger.info("nestwatch stopped")


@click.command()
@click.option(
    "-f",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Config file (default: $NESTWATCH_CONFIG or configs/nestwatch.yaml)",
)
@click.option("--debug", is_flag=True, help="Log at DEBUG level")
def main(config_path: Path | None, debug: bool) -> None:
    """Run the nestwatch daemon."""
    # Configure structlog first thing in main
    try:
        config = ConfigManager(config_path).load()
    except ConfigInvalidError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)
    configure_structlog(config, debug=debug)

    try:
        asyncio.run(serve(config_path, debug))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception:
        logger.exception("nestwatch exited with an error")
        sys.exit(1)


if __name__ == "__main__":
    main()
