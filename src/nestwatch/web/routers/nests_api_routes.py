"""Nest API routes. Only nests loaded into the processor (active ones) are served."""

import logging
from datetime import datetime
from typing import Annotated

from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from nestwatch.processor.manager import NestProcessorManager
from nestwatch.processor.models import Nest, utcnow
from nestwatch.processor.processor import NestProcessor
from nestwatch.processor.rolling import StatsSnapshot
from nestwatch.web.core.container import Container
from nestwatch.web.models.nests import ApiNest, ErrorResponse, NestResponse, NestsResponse
from nestwatch.web.models.stats import (
    NestStats,
    NestStatsResponse,
    NestStatsTimePeriods,
    StatsTimePeriod,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/nests")

ERROR_RESPONSES: dict[int | str, dict] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def error_response(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error})


def not_loaded() -> JSONResponse:
    return error_response(503, "nests are not loaded yet")


def _nest_time_periods(
    nest: Nest, snapshot: StatsSnapshot, now: datetime
) -> NestStatsTimePeriods:
    return NestStatsTimePeriods(
        nest=ApiNest.from_nest(nest),
        time_periods=[
            StatsTimePeriod.from_period(period, period.counts_for_nest(nest.id), now)
            for period in snapshot.periods
        ],
    )


def build_stats(
    processor: NestProcessor, nests: list[Nest], single: bool
) -> NestStatsResponse:
    """Build per-nest and global counts for every time period in the history."""
    snapshot = processor.get_stats_snapshot()
    now = utcnow()
    global_periods = [
        StatsTimePeriod.from_period(period, period.global_counts, now)
        for period in snapshot.periods
    ]
    by_nest = {nest.id: _nest_time_periods(nest, snapshot, now) for nest in nests}

    stats = NestStats(
        duration_seconds=int(snapshot.duration.total_seconds()),
        global_time_periods=global_periods,
    )
    if single:
        stats.nest_stats = by_nest[nests[0].id]
    else:
        stats.nests_stats = by_nest
    return NestStatsResponse(stats=stats)


@router.get("", response_model=NestsResponse, responses={503: {"model": ErrorResponse}})
@inject
async def get_nests(
    processor_manager: Annotated[
        NestProcessorManager, Depends(Provide[Container.processor_manager])
    ],
) -> NestsResponse | JSONResponse:
    """List the nests being tracked."""
    processor = processor_manager.get_processor()
    if processor is None:
        return not_loaded()
    return NestsResponse(nests=[ApiNest.from_nest(nest) for nest in processor.get_nests()])


# Declared before /{nest_id} so "_" is not taken for an id
@router.get("/_/stats", response_model=NestStatsResponse, responses=ERROR_RESPONSES)
@inject
async def get_all_nest_stats(
    processor_manager: Annotated[
        NestProcessorManager, Depends(Provide[Container.processor_manager])
    ],
) -> NestStatsResponse | JSONResponse:
    """Return the stats history of every tracked nest."""
    processor = processor_manager.get_processor()
    if processor is None:
        return not_loaded()
    return build_stats(processor, processor.get_nests(), single=False)


@router.get("/{nest_id}", response_model=NestResponse, responses=ERROR_RESPONSES)
@inject
async def get_nest(
    nest_id: str,
    processor_manager: Annotated[
        NestProcessorManager, Depends(Provide[Container.processor_manager])
    ],
) -> NestResponse | JSONResponse:
    """Return one nest including its geometry."""
    try:
        parsed_id = int(nest_id)
    except ValueError as e:
        logger.warning("Bad nest id: %s", e)
        return error_response(400, "malformed nest ID")

    processor = processor_manager.get_processor()
    if processor is None:
        return not_loaded()

    nest = processor.get_nest_by_id(parsed_id)
    if nest is None:
        return error_response(404, "Nest not found")
    return NestResponse(nest=ApiNest.from_nest(nest, include_geometry=True))


@router.get("/{nest_id}/stats", response_model=NestStatsResponse, responses=ERROR_RESPONSES)
@inject
async def get_nest_stats(
    nest_id: str,
    processor_manager: Annotated[
        NestProcessorManager, Depends(Provide[Container.processor_manager])
    ],
) -> NestStatsResponse | JSONResponse:
    """Return the stats history of one nest."""
    try:
        parsed_id = int(nest_id)
    except ValueError as e:
        logger.warning("Bad nest id: %s", e)
        return error_response(400, "malformed nest ID")

    processor = processor_manager.get_processor()
    if processor is None:
        return not_loaded()

    nest = processor.get_nest_by_id(parsed_id)
    if nest is None:
        return error_response(404, "Nest not found")
    return build_stats(processor, [nest], single=True)
