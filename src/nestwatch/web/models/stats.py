"""Stats API contract models."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, SerializerFunctionWrapHandler, model_serializer

from nestwatch.processor.stats import PokemonCounts, TimePeriodCounts
from nestwatch.web.models.nests import ApiNest

# ==================== Request Models ====================


class PurgeRequest(BaseModel):
    """Body of the purge endpoints. ``include_current`` only applies to "newest"."""

    duration_minutes: int = 0
    include_current: bool = False


# ==================== Response Models ====================


class PurgeResponse(BaseModel):
    time_periods: int = Field(..., description="Number of time periods purged")
    duration_minutes: int = Field(..., description="Duration covered by the purged periods")


class StatsTimePeriod(BaseModel):
    """Counts for one time period."""

    start_time: datetime
    end_time: datetime
    duration_seconds: int
    pokemon_counts: dict[str, Any]

    @classmethod
    def from_period(
        cls, period: TimePeriodCounts, counts: PokemonCounts, now: datetime
    ) -> "StatsTimePeriod":
        end_time = period.end_time or now
        return cls(
            start_time=period.start_time,
            end_time=end_time,
            duration_seconds=int((end_time - period.start_time).total_seconds()),
            pokemon_counts=counts.to_dict(),
        )


class NestStatsTimePeriods(BaseModel):
    nest: ApiNest
    time_periods: list[StatsTimePeriod]


class NestStats(BaseModel):
    duration_seconds: int
    nest_stats: NestStatsTimePeriods | None = None
    nests_stats: dict[int, NestStatsTimePeriods] | None = None
    global_time_periods: list[StatsTimePeriod]

    @model_serializer(mode="wrap")
    def _omit_unused(self, handler: SerializerFunctionWrapHandler) -> dict[str, Any]:
        # One nest or all of them, never both
        data = handler(self)
        for key in ("nest_stats", "nests_stats"):
            if data.get(key) is None:
                data.pop(key, None)
        return data


class NestStatsResponse(BaseModel):
    stats: NestStats
