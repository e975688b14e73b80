"""Decide which pokemon, if any, is nesting in a nest."""

import logging
from datetime import timedelta

from nestwatch.config.models import ProcessorConfig
from nestwatch.processor.models import NestingPokemonInfo, utcnow
from nestwatch.processor.stats import NestPokemonCount, NestTimePeriodSummary

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 10

NEST_LOG_FORMAT = (
    "%s NEST [%s] #%02d: %d:%d nest: %d/%d (%0.3f%%), global: %d/%d (%0.3f%%), "
    "nest/global pct ratio: %0.3f)"
)


def nest_to_global_ratio(nest_pct: float, global_pct: float) -> float:
    if global_pct == 0:
        return 0.0
    return nest_pct / global_pct


def rejection_reason(
    count: NestPokemonCount, duration: timedelta, config: ProcessorConfig
) -> str | None:
    """Return why a pokemon is not nesting, or None if it is.

    The checks run in a fixed order so the first failing one is what gets
    logged.
    """
    nest_pct = count.nest_pct
    global_pct = count.global_pct
    ratio = nest_to_global_ratio(nest_pct, global_pct)

    if nest_pct < config.min_nest_pct:
        return (
            f"this pokemon's percent in the nest ({nest_pct:0.3f}) "
            f"too small (< {config.min_nest_pct:0.3f})"
        )
    if nest_pct < global_pct:
        return (
            f"this pokemon's percent in the nest ({nest_pct:0.3f}) "
            f"is less than global spawn percent ({global_pct:0.3f})"
        )
    if ratio < config.min_nest_to_global_ratio:
        return (
            f"this pokemon's ratio ({ratio:0.3f}) of nest percent ({nest_pct:0.3f}) "
            f"to global percent ({global_pct:0.3f}) is too small "
            f"(< {config.min_nest_to_global_ratio:0.3f})"
        )
    if config.max_global_pct > 0 and global_pct > config.max_global_pct:
        return (
            f"this pokemon's global spawn pct is too high "
            f"({global_pct:0.3f} > {config.max_global_pct:0.3f})"
        )
    if count.total < config.min_total_observations:
        return f"not enough pokemon seen overall ({count.total} < {config.min_total_observations})"
    if count.count < config.min_nest_observations:
        return f"not enough of this pokemon seen ({count.count} < {config.min_nest_observations})"
    if duration < config.min_history_duration:
        return "not enough stats history yet"
    return None


def build_nesting_info(
    summary: NestTimePeriodSummary, count: NestPokemonCount
) -> NestingPokemonInfo:
    hours = summary.duration / timedelta(hours=1)
    seen_at = summary.end_time or utcnow()
    return NestingPokemonInfo(
        key=count.key,
        stats_duration_minutes=int(summary.duration / timedelta(minutes=1)),
        nest_count=count.count,
        nest_total=count.total,
        nest_hourly_count=count.count / hours,
        nest_hourly_total=count.total / hours,
        global_count=count.global_count,
        global_total=count.global_total,
        global_hourly_count=count.global_count / hours,
        global_hourly_total=count.global_total / hours,
        detected_at=seen_at,
        updated_at=seen_at,
    )


def decide_nesting(
    summary: NestTimePeriodSummary,
    config: ProcessorConfig,
    log_prefix: str = "",
) -> NestingPokemonInfo | None:
    """Pick the nesting pokemon from a nest summary.

    Only the top candidates are considered, in summary order. The first one
    passing every check wins; the rest are still logged when ``log_prefix``
    is set.
    """
    nesting: NestingPokemonInfo | None = None

    for idx, count in enumerate(summary.counts):
        if idx >= MAX_CANDIDATES:
            if log_prefix:
                logger.info(
                    "%s NEST [%s] Stopping at %d out of %d pokemon",
                    log_prefix,
                    summary.nest,
                    idx,
                    len(summary.counts),
                )
            break

        if min(count.global_total, count.global_count, count.total, count.count) <= 0:
            logger.warning("Got unexpected stats when processing time period: %r", count)
            continue

        reason = ""
        if nesting is None:
            rejected = rejection_reason(count, summary.duration, config)
            if rejected is None:
                nesting = build_nesting_info(summary, count)
                reason = "nesting!"
            else:
                reason = rejected

        if log_prefix:
            _log_candidate(log_prefix, summary, count, reason)

    return nesting


def _log_candidate(
    log_prefix: str, summary: NestTimePeriodSummary, count: NestPokemonCount, reason: str
) -> None:
    fmt = NEST_LOG_FORMAT
    if reason:
        fmt += ": " + reason.replace("%", "%%")
    logger.info(
        fmt,
        log_prefix,
        summary.nest,
        count.rank,
        count.key.pokemon_id,
        count.key.form_id,
        count.count,
        count.total,
        count.nest_pct,
        count.global_count,
        count.global_total,
        count.global_pct,
        nest_to_global_ratio(count.nest_pct, count.global_pct),
    )
