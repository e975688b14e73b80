"""Application factory for creating the FastAPI application with dependency injection."""

import logging
from pathlib import Path

from dependency_injector import providers
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from nestwatch import __version__
from nestwatch.web.core.container import Container
from nestwatch.web.core.lifespan import lifespan
from nestwatch.web.routers import (
    config_api_routes,
    nests_api_routes,
    stats_api_routes,
    webhook_routes,
)

logger = logging.getLogger(__name__)


async def bad_request_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("bad request to %s: %s", request.url.path, exc.errors())
    return JSONResponse(status_code=400, content={"error": "bad request json"})


def create_app(config_path: Path | str | None = None, debug: bool = False) -> FastAPI:
    """Create the FastAPI application with dependency injection.

    Args:
        config_path: Config file to use instead of NESTWATCH_CONFIG or the default.
        debug: Log at DEBUG level regardless of the configured level.

    Returns:
        FastAPI: The configured application instance.
    """
    container = Container()
    if config_path is not None:
        container.config_path.override(providers.Object(Path(config_path)))

    app = FastAPI(
        lifespan=lifespan,
        title="nestwatch API",
        description="Nest detection from scanner webhooks",
        version=__version__,
    )
    app.state.debug = debug

    app.add_exception_handler(RequestValidationError, bad_request_handler)  # type: ignore[arg-type]

    container.wire(
        modules=[
            "nestwatch.web.routers.config_api_routes",
            "nestwatch.web.routers.nests_api_routes",
            "nestwatch.web.routers.stats_api_routes",
            "nestwatch.web.routers.webhook_routes",
        ]
    )

    # Scanner webhooks are posted to the root
    app.include_router(webhook_routes.router, tags=["Webhooks"])

    app.include_router(config_api_routes.router, prefix="/api", tags=["Config API"])
    app.include_router(nests_api_routes.router, prefix="/api", tags=["Nests API"])
    app.include_router(stats_api_routes.router, prefix="/api", tags=["Stats API"])

    # Attach container to app for access in lifespan and tests
    app.container = container  # type: ignore[attr-defined]

    return app
