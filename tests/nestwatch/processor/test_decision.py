"""Tests for the nesting pokemon decision."""

from datetime import timedelta

import pytest

from nestwatch.processor.decision import (
    MAX_CANDIDATES,
    decide_nesting,
    nest_to_global_ratio,
    rejection_reason,
)
from nestwatch.processor.models import PokemonKey
from nestwatch.processor.stats import NestPokemonCount, NestTimePeriodSummary


def make_count(
    count: int = 10,
    total: int = 20,
    global_count: int = 10,
    global_total: int = 1000,
    pokemon_id: int = 1,
    rank: int = 1,
) -> NestPokemonCount:
    return NestPokemonCount(
        rank=rank,
        key=PokemonKey(pokemon_id),
        count=count,
        total=total,
        global_count=global_count,
        global_total=global_total,
    )


@pytest.fixture
def summary(make_nest, clock):
    """Provide a factory for nest summaries ending at the test clock."""

    def _summary(counts, duration=timedelta(hours=2)):
        return NestTimePeriodSummary(
            nest=make_nest(1),
            counts=counts,
            start_time=clock() - duration,
            end_time=clock(),
            duration=duration,
        )

    return _summary


class TestRejectionReason:
    """Test each nesting check."""

    def test_passing_candidate(self, processor_config):
        """Should accept a pokemon clearing every threshold."""
        assert rejection_reason(make_count(), timedelta(hours=2), processor_config) is None

    @pytest.mark.parametrize(
        "count,duration,reason",
        [
            pytest.param(make_count(count=2, total=20), timedelta(hours=2), "too small", id="pct"),
            pytest.param(
                make_count(count=3, total=20, global_count=200),
                timedelta(hours=2),
                "less than global",
                id="below-global",
            ),
            pytest.param(
                make_count(count=4, total=20, global_count=30),
                timedelta(hours=2),
                "ratio",
                id="ratio",
            ),
            pytest.param(
                make_count(count=10, total=11),
                timedelta(hours=2),
                "not enough pokemon seen overall",
                id="total-observations",
            ),
            pytest.param(
                make_count(count=3, total=12, global_count=3),
                timedelta(hours=2),
                "not enough of this pokemon",
                id="nest-observations",
            ),
            pytest.param(
                make_count(), timedelta(minutes=59), "not enough stats history", id="history"
            ),
        ],
    )
    def test_rejections(self, processor_config, count, duration, reason):
        """Should report the first failing check."""
        assert reason in rejection_reason(count, duration, processor_config)

    def test_max_global_pct(self, processor_config):
        """Should reject pokemon too common everywhere, unless the ceiling is 0."""
        config = processor_config.model_copy(update={"min_nest_to_global_ratio": 1.0})
        count = make_count(count=18, total=20, global_count=160)

        assert "global spawn pct is too high" in rejection_reason(
            count, timedelta(hours=2), config
        )

        disabled = config.model_copy(update={"max_global_pct": 0})
        assert rejection_reason(count, timedelta(hours=2), disabled) is None

    def test_ratio_of_zero_global(self):
        """Should avoid dividing by zero."""
        assert nest_to_global_ratio(50.0, 0.0) == 0.0
        assert nest_to_global_ratio(50.0, 5.0) == 10.0


class TestDecideNesting:
    """Test picking a nesting pokemon from a summary."""

    def test_picks_first_passing(self, summary, processor_config, clock):
        """Should return the first candidate that passes."""
        counts = [
            make_count(count=12, total=40, global_count=500, pokemon_id=16, rank=1),
            make_count(count=10, total=40, global_count=20, pokemon_id=7, rank=2),
            make_count(count=8, total=40, global_count=10, pokemon_id=1, rank=3),
        ]

        nesting = decide_nesting(summary(counts), processor_config, "TEST:")

        assert nesting is not None
        assert nesting.key == PokemonKey(7)
        assert nesting.nest_count == 10
        assert nesting.nest_total == 40
        assert nesting.stats_duration_minutes == 120
        assert nesting.nest_hourly_count == 5.0
        assert nesting.global_hourly_total == 500.0
        assert nesting.detected_at == clock()

    def test_nothing_passes(self, summary, processor_config):
        """Should return None when every candidate fails."""
        counts = [make_count(count=1, total=40)]

        assert decide_nesting(summary(counts), processor_config) is None

    def test_only_top_candidates_considered(self, summary, processor_config):
        """Should stop after the first ten candidates."""
        failing = [
            make_count(count=1, total=200, pokemon_id=i, rank=i)
            for i in range(1, MAX_CANDIDATES + 1)
        ]
        passing = make_count(count=100, total=200, pokemon_id=99, rank=MAX_CANDIDATES + 1)

        assert decide_nesting(summary([*failing, passing]), processor_config) is None

    def test_skips_unexpected_counts(self, summary, processor_config, caplog):
        """Should ignore candidates with zero counts."""
        counts = [make_count(global_count=0, pokemon_id=2), make_count(pokemon_id=3)]

        nesting = decide_nesting(summary(counts), processor_config)

        assert nesting is not None
        assert nesting.key == PokemonKey(3)
        assert "unexpected stats" in caplog.text

    def test_logs_every_candidate(self, summary, processor_config, caplog):
        """Should log each candidate with its outcome when a prefix is given."""
        caplog.set_level("INFO")
        counts = [
            make_count(pokemon_id=7, rank=1),
            make_count(count=1, total=20, pokemon_id=8, rank=2),
        ]

        decide_nesting(summary(counts), processor_config, "All periods (8):")

        assert "All periods (8): NEST" in caplog.text
        assert "nesting!" in caplog.text
        assert caplog.text.count("#0") == 2
