"""Tests for per-period pokemon counts."""

from datetime import timedelta

import pytest

from nestwatch.processor.models import Pokemon, PokemonKey
from nestwatch.processor.stats import PokemonCounts, TimePeriodCounts, truncate_to_minute


def spawn(pokemon_id: int, form_id: int = 0) -> Pokemon:
    return Pokemon(pokemon_id=pokemon_id, form_id=form_id, lat=40.0, lon=-74.0)


class TestPokemonCounts:
    """Test count arithmetic."""

    def test_add_and_most_spawning(self):
        """Should track totals and pick the most seen pokemon."""
        counts = PokemonCounts()
        for pokemon_id in (1, 1, 1, 4):
            counts.add(PokemonKey(pokemon_id))

        key, pct = counts.most_spawning()

        assert counts.total == 4
        assert key == PokemonKey(1)
        assert pct == 75.0

    def test_most_spawning_tie_goes_to_lowest_id(self):
        """Should break ties by pokemon id."""
        counts = PokemonCounts(2, {PokemonKey(7): 1, PokemonKey(3): 1})

        assert counts.most_spawning()[0] == PokemonKey(3)

    def test_most_spawning_empty(self):
        """Should return nothing for empty counts."""
        assert PokemonCounts().most_spawning() == (None, 0.0)

    def test_subtract_drops_zeroes(self):
        """Should remove pokemon whose count reaches zero."""
        counts = PokemonCounts(3, {PokemonKey(1): 2, PokemonKey(4): 1})

        emptied = counts.subtract(PokemonCounts(1, {PokemonKey(4): 1}))

        assert emptied is False
        assert counts.total == 2
        assert counts.by_pokemon == {PokemonKey(1): 2}

    def test_subtract_to_empty(self):
        """Should report when nothing is left."""
        counts = PokemonCounts(1, {PokemonKey(1): 1})

        assert counts.subtract(counts.clone()) is True
        assert counts.total == 0
        assert counts.by_pokemon == {}

    def test_to_dict(self):
        """Should key pokemon by "id:form"."""
        counts = PokemonCounts(2, {PokemonKey(25, 3): 2})

        assert counts.to_dict() == {"total": 2, "by_pokemon": {"25:3": 2}}


class TestTimePeriodCounts:
    """Test a single time period."""

    def test_add_pokemon_counts_globally_and_per_nest(self, make_nest, clock):
        """Should count every spawn globally and in each matched nest."""
        period = TimePeriodCounts(clock())
        nest_a, nest_b = make_nest(1), make_nest(2)

        period.add_pokemon(spawn(1), [nest_a, nest_b])
        period.add_pokemon(spawn(1), [nest_a])
        period.add_pokemon(spawn(4), [])

        assert period.global_counts.total == 3
        assert period.nest_counts[1].total == 2
        assert period.nest_counts[2].by_pokemon == {PokemonKey(1): 1}

    def test_frozen_period_refuses_pokemon(self, clock):
        """Should not count anything once frozen."""
        period = TimePeriodCounts(clock())
        period.freeze(clock.advance(minutes=15))

        assert period.add_pokemon(spawn(1), []) is False
        assert period.global_counts.total == 0
        assert period.duration() == timedelta(minutes=15)

    def test_clone_is_frozen_copy(self, make_nest, clock):
        """Should copy counts without sharing them."""
        period = TimePeriodCounts(clock())
        period.add_pokemon(spawn(1), [make_nest(1)])

        cloned = period.clone(clock.advance(minutes=5))
        period.add_pokemon(spawn(1), [make_nest(1)])

        assert cloned.frozen
        assert cloned.end_time == clock()
        assert cloned.global_counts.total == 1
        assert period.global_counts.total == 2

    def test_summary_orders_by_count_then_global_rarity(self, make_nest, clock):
        """Should rank the most seen first, breaking ties by fewer global sightings."""
        nest = make_nest(1)
        period = TimePeriodCounts(clock())
        for pokemon_id in (10, 10, 20, 20, 30):
            period.add_pokemon(spawn(pokemon_id), [nest])
        # 10 is more common outside the nest than 20
        period.add_pokemon(spawn(10), [])

        summary = period.summary_for(nest, timedelta(hours=1))

        assert summary is not None
        assert [c.key.pokemon_id for c in summary.counts] == [20, 10, 30]
        assert [c.rank for c in summary.counts] == [1, 2, 3]
        top = summary.counts[0]
        assert (top.count, top.total, top.global_count, top.global_total) == (2, 5, 2, 6)
        assert top.nest_pct == pytest.approx(40.0)

    def test_summary_for_unseen_nest(self, make_nest, clock):
        """Should return None for a nest with no spawns."""
        assert TimePeriodCounts(clock()).summary_for(make_nest(1), timedelta(0)) is None

    def test_ordered_global(self, clock):
        """Should rank global counts with ties by pokemon id."""
        period = TimePeriodCounts(clock())
        for pokemon_id in (5, 3, 3, 1):
            period.add_pokemon(spawn(pokemon_id), [])

        ranked = period.ordered_global()

        assert [(c.rank, c.key.pokemon_id, c.count) for c in ranked] == [
            (1, 3, 2),
            (2, 1, 1),
            (3, 5, 1),
        ]

    def test_counts_for_nest_returns_copy(self, make_nest, clock):
        """Should return empty counts for an unseen nest."""
        period = TimePeriodCounts(clock())
        period.add_pokemon(spawn(1), [make_nest(1)])

        assert period.counts_for_nest(1).total == 1
        assert period.counts_for_nest(2).total == 0


def test_truncate_to_minute():
    """Should drop seconds."""
    assert truncate_to_minute(timedelta(minutes=4, seconds=59)) == timedelta(minutes=4)
