"""Config API routes: show the processor config and reload it."""

import logging
from typing import Annotated

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from nestwatch import __version__
from nestwatch.processor.manager import NestProcessorManager
from nestwatch.web.core.container import Container
from nestwatch.web.core.reloader import ConfigReloader
from nestwatch.web.models.config import ConfigResponse, ConfigSection, MessageResponse
from nestwatch.web.models.nests import ErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/config")

INTERNAL_ERROR = "an internal error occurred: check the logs"


def parse_concurrency(value: str | None) -> int | None:
    """Return a positive concurrency, or None (with a warning) to use the default."""
    if not value:
        return None
    try:
        concurrency = int(value)
    except ValueError as e:
        logger.warning("ignoring invalid concurrency param '%s': %s", value, e)
        return None
    if concurrency <= 0:
        logger.warning("ignoring invalid concurrency param '%s': must be positive", value)
        return None
    return concurrency


@router.get("", response_model=ConfigResponse)
@inject
async def get_config(
    processor_manager: Annotated[
        NestProcessorManager, Depends(Provide[Container.processor_manager])
    ],
) -> ConfigResponse:
    """Return the processor configuration in use."""
    return ConfigResponse(
        config=ConfigSection(processor=processor_manager.get_config().model_dump()),
        version=__version__,
    )


@router.api_route(
    "/reload",
    methods=["GET", "PUT"],
    response_model=MessageResponse,
    responses={500: {"model": ErrorResponse}},
)
@inject
async def reload_config(
    reloader: Annotated[ConfigReloader, Depends(Provide[Container.config_reloader])],
    spawnpoints: str | None = None,
    refresh: str | None = None,
    concurrency: str | None = None,
) -> MessageResponse | JSONResponse:
    """Reload the config file, optionally refreshing nests in the database first.

    ``spawnpoints=all`` refreshes every spawnpoint count; ``refresh=1`` only
    fills in missing ones.
    """
    all_spawnpoints = spawnpoints == "all"

    if all_spawnpoints or refresh == "1":
        try:
            await reloader.refresh_nests(
                force_spawnpoints_refresh=all_spawnpoints,
                concurrency=parse_concurrency(concurrency),
            )
        except Exception as e:
            logger.error("failed to refresh nests: %s", e)
            return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR})

    try:
        await reloader.reload()
    except Exception as e:
        logger.error("failed to reload config: %s", e)
        return JSONResponse(status_code=500, content={"error": INTERNAL_ERROR})

    return MessageResponse(message="config has been reloaded")
