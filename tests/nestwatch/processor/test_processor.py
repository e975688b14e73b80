"""Tests for the NestProcessor."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from nestwatch.errors import StoreUnavailableError
from nestwatch.processor.matcher import NestMatcher
from nestwatch.processor.models import (
    NestingPokemonInfo,
    NestStatsInfo,
    Pokemon,
    PokemonKey,
    to_epoch,
)
from nestwatch.processor.processor import NestProcessor

NEST_LAT, NEST_LON = 40.0, -74.0
FAR_LAT, FAR_LON = 45.0, -70.0


@pytest.fixture
def nests_store():
    """Provide a mock store for nesting updates."""
    store = MagicMock()
    store.update_nest_partial = AsyncMock()
    return store


@pytest.fixture
def webhook_sender():
    """Provide a mock webhook queue."""
    return MagicMock()


@pytest.fixture
def nest(make_nest):
    """Provide a single nest."""
    return make_nest(1, lat=NEST_LAT, lon=NEST_LON)


@pytest.fixture
def processor(nest, nests_store, webhook_sender, processor_config, clock):
    """Provide a processor tracking one nest."""
    matcher = NestMatcher()
    matcher.add_nest(nest)
    return NestProcessor(nests_store, matcher, webhook_sender, processor_config, clock=clock)


def feed(processor: NestProcessor, nesting_pokemon: int | None, nest_spawns: int = 20) -> None:
    """Add spawns in the nest (mostly ``nesting_pokemon``) and plenty elsewhere."""
    for i in range(nest_spawns):
        if nesting_pokemon is not None and i < nest_spawns * 0.6:
            pokemon_id = nesting_pokemon
        else:
            pokemon_id = 200 + i
        processor.add_pokemon(Pokemon(pokemon_id, 0, NEST_LAT, NEST_LON))
    for i in range(200):
        processor.add_pokemon(Pokemon(300 + i % 40, 0, FAR_LAT, FAR_LON))


class TestAddPokemon:
    """Test counting spawns."""

    def test_counts_matches(self, processor):
        """Should return how many nests contain the spawn."""
        assert processor.add_pokemon(Pokemon(1, 0, NEST_LAT, NEST_LON)) == 1
        assert processor.add_pokemon(Pokemon(1, 0, FAR_LAT, FAR_LON)) == 0

        totals = processor.get_stats_snapshot().totals
        assert totals.global_counts.total == 2
        assert totals.nest_counts[1].total == 1


class TestProcessStats:
    """Test deciding and persisting nesting pokemon."""

    @pytest.mark.asyncio
    async def test_nest_start(self, processor, nest, nests_store, webhook_sender, clock):
        """Should store a newly detected nesting pokemon and queue a webhook."""
        feed(processor, nesting_pokemon=7)
        clock.advance(hours=2)

        await processor.rotate_and_process()

        nesting, updated_at = nest.get_nesting()
        assert nesting is not None
        assert nesting.key == PokemonKey(7)
        assert updated_at == clock()
        nests_store.update_nest_partial.assert_awaited_once()
        nest_id, nest_update = nests_store.update_nest_partial.await_args.args
        assert nest_id == 1
        assert nest_update.values()["pokemon_id"] == 7
        assert nest_update.values()["updated"] == to_epoch(clock())
        webhook_sender.add_nest_webhook.assert_called_once_with(nest, nesting)

    @pytest.mark.asyncio
    async def test_not_enough_history(self, processor, nest, nests_store, webhook_sender, clock):
        """Should not write anything before the minimum history is reached."""
        feed(processor, nesting_pokemon=7)
        clock.advance(minutes=30)

        await processor.rotate_and_process()

        nests_store.update_nest_partial.assert_not_awaited()
        webhook_sender.add_nest_webhook.assert_not_called()

    @pytest.mark.asyncio
    async def test_unchanged_pokemon_no_webhook(self, processor, webhook_sender, clock):
        """Should only send webhooks when the nesting pokemon starts or changes."""
        feed(processor, nesting_pokemon=7)
        clock.advance(hours=2)
        await processor.rotate_and_process()

        feed(processor, nesting_pokemon=7)
        clock.advance(minutes=15)
        await processor.rotate_and_process()

        assert webhook_sender.add_nest_webhook.call_count == 1

    @pytest.mark.asyncio
    async def test_nest_change(self, processor, nest, webhook_sender, clock):
        """Should queue a webhook when a different pokemon takes over."""
        previous = NestingPokemonInfo(key=PokemonKey(16), detected_at=clock())
        nest.stats_info = NestStatsInfo(previous, updated_at=clock())
        feed(processor, nesting_pokemon=7)
        clock.advance(hours=2)

        await processor.rotate_and_process()

        nesting, _ = nest.get_nesting()
        assert nesting.key == PokemonKey(7)
        assert nesting.detected_at == clock()
        webhook_sender.add_nest_webhook.assert_called_once()

    @pytest.mark.asyncio
    async def test_lost_nesting_kept_within_age(self, processor, nest, nests_store, clock):
        """Should leave a recently stored nesting pokemon in the database."""
        previous = NestingPokemonInfo(key=PokemonKey(7))
        nest.stats_info = NestStatsInfo(previous, updated_at=clock() - timedelta(hours=1))
        feed(processor, nesting_pokemon=None)
        clock.advance(hours=2)

        await processor.rotate_and_process()

        assert nest.get_nesting()[0] is None
        nests_store.update_nest_partial.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_lost_nesting_cleared_after_age(self, processor, nest, nests_store, clock):
        """Should clear the stored nesting pokemon once it has been gone long enough."""
        previous = NestingPokemonInfo(key=PokemonKey(7))
        nest.stats_info = NestStatsInfo(previous, updated_at=clock() - timedelta(hours=11))
        feed(processor, nesting_pokemon=None)
        clock.advance(hours=2)

        await processor.rotate_and_process()

        nests_store.update_nest_partial.assert_awaited_once()
        _, nest_update = nests_store.update_nest_partial.await_args.args
        assert nest_update.values()["pokemon_id"] is None
        assert nest.get_nesting() == (None, clock())

    @pytest.mark.asyncio
    async def test_store_failure_is_logged(self, processor, nest, nests_store, clock, caplog):
        """Should log a failed write and keep going."""
        nests_store.update_nest_partial.side_effect = StoreUnavailableError("db down")
        feed(processor, nesting_pokemon=7)
        clock.advance(hours=2)

        await processor.rotate_and_process()

        assert "failed to update DB to set nesting pokemon" in caplog.text
        assert nest.get_nesting()[0].key == PokemonKey(7)

    @pytest.mark.asyncio
    async def test_skipped_period_is_not_processed(self, processor, nests_store, clock):
        """Should do nothing when the closed period is thrown away."""
        for _ in range(100):
            processor.add_pokemon(Pokemon(1, 0, FAR_LAT, FAR_LON))
        clock.advance(hours=2)

        await processor.rotate_and_process()

        nests_store.update_nest_partial.assert_not_awaited()
        assert processor.stats.duration == timedelta(0)

    @pytest.mark.asyncio
    async def test_missing_nest_ignored(self, processor, make_nest, nests_store, clock, caplog):
        """Should skip counts for nests no longer loaded."""
        gone = make_nest(99, lat=FAR_LAT, lon=FAR_LON)
        for pokemon_id in range(1, 11):
            processor.stats.add_pokemon(Pokemon(pokemon_id, 0, FAR_LAT, FAR_LON), [gone])
        clock.advance(hours=2)

        await processor.rotate_and_process()

        assert "Ignoring missing nest 99" in caplog.text

    @pytest.mark.asyncio
    async def test_logs_last_period(self, processor, processor_config, clock, caplog):
        """Should log the latest period on its own when asked to."""
        caplog.set_level("INFO")
        processor.config = processor_config.model_copy(update={"log_last_stats_period": True})
        feed(processor, nesting_pokemon=7)
        clock.advance(hours=2)

        await processor.rotate_and_process()

        assert "Last stats period: dur:" in caplog.text
        assert "Last stats period: NEST" in caplog.text


def feed_ratio_period(processor: NestProcessor, global_nesting_count: int) -> None:
    """Add one period of spawns where pokemon 7 is 60% of the nest.

    Pokemon 7 is seen ``global_nesting_count`` times out of 300 spawns overall.
    """
    for i in range(20):
        pokemon_id = 7 if i < 12 else 200 + i
        processor.add_pokemon(Pokemon(pokemon_id, 0, NEST_LAT, NEST_LON))
    elsewhere = global_nesting_count - 12
    for i in range(280):
        pokemon_id = 7 if i < elsewhere else 300 + i % 40
        processor.add_pokemon(Pokemon(pokemon_id, 0, FAR_LAT, FAR_LON))


class TestNestToGlobalRatio:
    """Test the ratio check over an hour of rotated periods."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "global_nesting_count,expected",
        [
            pytest.param(24, None, id="ratio-7.5-rejected"),
            pytest.param(20, PokemonKey(7), id="ratio-9-accepted"),
        ],
    )
    async def test_ratio_threshold(
        self, processor, nest, webhook_sender, clock, caplog, global_nesting_count, expected
    ):
        """Should only accept a nesting pokemon whose nest/global ratio reaches 8."""
        caplog.set_level("INFO")
        snapshot = None
        for _ in range(4):
            feed_ratio_period(processor, global_nesting_count)
            clock.advance(minutes=15)
            snapshot = processor.rotate_stats()

        assert snapshot.duration == timedelta(hours=1)
        await processor.process_stats(snapshot)

        nesting, _ = nest.get_nesting()
        if expected is None:
            assert nesting is None
            webhook_sender.add_nest_webhook.assert_not_called()
            assert "ratio (7.500)" in caplog.text
            assert "is too small (< 8.000)" in caplog.text
        else:
            assert nesting.key == expected
            webhook_sender.add_nest_webhook.assert_called_once_with(nest, nesting)


class TestReloadedNests:
    """Test stats carried over a reload that removes a nest."""

    @pytest.mark.asyncio
    async def test_removed_nest_skipped_then_drained(
        self, nest, make_nest, nests_store, webhook_sender, processor_config, clock, caplog
    ):
        """Should warn about a removed nest's counts until they age out."""
        gone = make_nest(2, lat=NEST_LAT + 0.01, lon=NEST_LON)
        matcher = NestMatcher()
        matcher.add_nest(nest)
        matcher.add_nest(gone)
        before = NestProcessor(nests_store, matcher, webhook_sender, processor_config, clock=clock)
        for pokemon_id in range(1, 11):
            assert before.add_pokemon(Pokemon(pokemon_id, 0, NEST_LAT + 0.01, NEST_LON)) == 1
        clock.advance(minutes=15)
        before.rotate_stats()

        reloaded_matcher = NestMatcher()
        reloaded_matcher.add_nest(nest)
        after = NestProcessor(
            nests_store,
            reloaded_matcher,
            webhook_sender,
            processor_config,
            stats=before.stats,
            clock=clock,
        )
        assert after.add_pokemon(Pokemon(1, 0, NEST_LAT + 0.01, NEST_LON)) == 0
        after.add_pokemon(Pokemon(2, 0, NEST_LAT, NEST_LON))
        for pokemon_id in range(11, 21):
            after.add_pokemon(Pokemon(pokemon_id, 0, FAR_LAT, FAR_LON))
        clock.advance(minutes=15)
        snapshot = after.rotate_stats()

        assert 2 in snapshot.totals.nest_counts
        await after.process_stats(snapshot)

        assert "Ignoring missing nest 2" in caplog.text
        assert all(call.args[0] != 2 for call in nests_store.update_nest_partial.await_args_list)

        purged, _ = after.keep_recent_stats(timedelta(minutes=15))

        assert purged == 1
        totals = after.get_stats_snapshot().totals
        assert 2 not in totals.nest_counts
        assert totals.nest_counts[1].total == 1
