"""Stats API routes for purging stats history."""

from datetime import timedelta
from typing import Annotated

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from nestwatch.processor.manager import NestProcessorManager
from nestwatch.web.core.container import Container
from nestwatch.web.models.nests import ErrorResponse
from nestwatch.web.models.stats import PurgeRequest, PurgeResponse

router = APIRouter(prefix="/stats/purge")

ERROR_RESPONSES: dict[int | str, dict] = {
    400: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def purge_response(purged: tuple[int, timedelta]) -> PurgeResponse:
    time_periods, duration = purged
    return PurgeResponse(
        time_periods=time_periods, duration_minutes=int(duration.total_seconds() // 60)
    )


def check_request(
    request: PurgeRequest, processor_manager: NestProcessorManager
) -> JSONResponse | None:
    if request.duration_minutes <= 0:
        return JSONResponse(status_code=400, content={"error": "duration_minutes should be > 0"})
    return check_loaded(processor_manager)


def check_loaded(processor_manager: NestProcessorManager) -> JSONResponse | None:
    if processor_manager.get_processor() is None:
        return JSONResponse(status_code=503, content={"error": "nests are not loaded yet"})
    return None


@router.put("/all", response_model=PurgeResponse, responses=ERROR_RESPONSES)
@inject
async def purge_all_stats(
    processor_manager: Annotated[
        NestProcessorManager, Depends(Provide[Container.processor_manager])
    ],
) -> PurgeResponse | JSONResponse:
    """Drop every closed time period."""
    if error := check_loaded(processor_manager):
        return error
    return purge_response(processor_manager.purge_all_stats())


@router.put("/keep", response_model=PurgeResponse, responses=ERROR_RESPONSES)
@inject
async def purge_keep_stats(
    request: PurgeRequest,
    processor_manager: Annotated[
        NestProcessorManager, Depends(Provide[Container.processor_manager])
    ],
) -> PurgeResponse | JSONResponse:
    """Drop the oldest periods until at most ``duration_minutes`` of history remains."""
    if error := check_request(request, processor_manager):
        return error
    keep = timedelta(minutes=request.duration_minutes)
    return purge_response(processor_manager.keep_recent_stats(keep))


@router.put("/oldest", response_model=PurgeResponse, responses=ERROR_RESPONSES)
@inject
async def purge_oldest_stats(
    request: PurgeRequest,
    processor_manager: Annotated[
        NestProcessorManager, Depends(Provide[Container.processor_manager])
    ],
) -> PurgeResponse | JSONResponse:
    """Drop up to ``duration_minutes`` of the oldest periods."""
    if error := check_request(request, processor_manager):
        return error
    duration = timedelta(minutes=request.duration_minutes)
    return purge_response(processor_manager.purge_oldest_stats(duration))


@router.put("/newest", response_model=PurgeResponse, responses=ERROR_RESPONSES)
@inject
async def purge_newest_stats(
    request: PurgeRequest,
    processor_manager: Annotated[
        NestProcessorManager, Depends(Provide[Container.processor_manager])
    ],
) -> PurgeResponse | JSONResponse:
    """Drop up to ``duration_minutes`` of the newest periods."""
    if error := check_request(request, processor_manager):
        return error
    duration = timedelta(minutes=request.duration_minutes)
    return purge_response(
        processor_manager.purge_newest_stats(duration, include_current=request.include_current)
    )
