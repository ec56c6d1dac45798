import asyncio
from dataclasses import replace
from datetime import timedelta, timezone

import pytest

from src.core.errors import Conflict, DuplicateReference, DuplicateSlot, InvalidState, NotFound
from src.modules.scheduling.models import Game, GameFormat, GameState, Scrim, SlotKey

from tests.conftest import GUILD_ID, SLOT_TIME


def make_game(**overrides):
    fields = dict(
        guild_id=GUILD_ID, timestamp=SLOT_TIME, event_ref=900, opponent_user_id=77,
        game_format=GameFormat.SIXES, map_1='cp_process_f12', map_2='koth_product_final',
    )
    fields.update(overrides)
    return Game(**fields)


def make_scrim(**overrides):
    fields = dict(
        guild_id=GUILD_ID, timestamp=SLOT_TIME, format=GameFormat.SIXES, hosted=True,
        map_1='cp_process_f12', map_2='koth_product_final', opponent='froyotech',
    )
    fields.update(overrides)
    return Scrim(**fields)


async def test_upsert_guild_updates_existing_row(store, guild):
    await store.upsert_guild(replace(guild, game_format=GameFormat.HIGHLANDER, serveme_api_key=None))
    stored = await store.get_guild(GUILD_ID)
    assert stored.game_format is GameFormat.HIGHLANDER
    assert stored.serveme_api_key is None


async def test_get_unknown_guild_raises_not_found(store):
    with pytest.raises(NotFound):
        await store.get_guild(1)


async def test_second_game_in_same_slot_is_rejected(store, guild):
    await store.create_game(make_game())
    with pytest.raises(DuplicateSlot):
        await store.create_game(make_game(event_ref=901))

    games = await store.list_games(guild_id=GUILD_ID)
    assert len(games) == 1
    assert games[0].event_ref == 900


async def test_same_instant_in_other_timezone_is_the_same_slot(store, guild):
    await store.create_game(make_game())
    shifted = SLOT_TIME.astimezone(timezone(timedelta(hours=-5)))
    with pytest.raises(DuplicateSlot):
        await store.create_game(make_game(timestamp=shifted, event_ref=901))


async def test_event_ref_is_unique(store, guild):
    await store.create_game(make_game())
    with pytest.raises(DuplicateReference):
        await store.create_game(make_game(timestamp=SLOT_TIME + timedelta(days=1)))


async def test_game_for_unregistered_guild_is_rejected(store):
    with pytest.raises(NotFound):
        await store.create_game(make_game())


async def test_official_game_with_maps_is_invalid(store, guild):
    with pytest.raises(InvalidState):
        await store.create_game(make_game(rgl_match_id=555))


async def test_hosted_and_joined_at_once_is_invalid(store, guild):
    game = await store.create_game(make_game())

    def both(g):
        return replace(g, reservation_id=3, server_ip_and_port='1.2.3.4:27015',
                       server_password='pw', state=GameState.HOSTED)

    with pytest.raises(InvalidState):
        await store.transition_game(game.key, both, game.version)

    stored = await store.get_game(game.key)
    assert stored.state is GameState.UNDECIDED
    assert stored.reservation_id is None


async def test_check_constraints_hold_without_python_validation(store, db, guild):
    await store.create_game(make_game())
    import aiosqlite
    with pytest.raises(aiosqlite.IntegrityError):
        await db._execute(
            "UPDATE games SET reservation_id = 1, server_ip_and_port = 'x', server_password = 'y' WHERE event_ref = 900"
        )


async def test_transition_with_stale_version_conflicts(store, guild):
    game = await store.create_game(make_game())
    await store.transition_game(game.key, lambda g: replace(g, message_ref=1), game.version)

    with pytest.raises(Conflict):
        await store.transition_game(game.key, lambda g: replace(g, message_ref=2), game.version)

    stored = await store.get_game(game.key)
    assert stored.message_ref == 1
    assert stored.version == 2


async def test_concurrent_transitions_on_one_key_are_linearized(store, guild):
    game = await store.create_game(make_game())

    async def decide(g):
        return await store.transition_game(g.key, lambda cur: replace(cur, reservation_id=5, state=GameState.HOSTED), g.version)

    async def join(g):
        return await store.transition_game(
            g.key,
            lambda cur: replace(cur, server_ip_and_port='1.2.3.4:27015', server_password='pw', state=GameState.JOINED),
            g.version,
        )

    outcomes = await asyncio.gather(decide(game), join(game), return_exceptions=True)
    assert sum(isinstance(o, Conflict) for o in outcomes) == 1
    stored = await store.get_game(game.key)
    assert stored.version == 2
    assert stored.state in (GameState.HOSTED, GameState.JOINED)


async def test_lookup_by_event_and_message_refs(store, guild):
    game = await store.create_game(make_game())
    await store.transition_game(game.key, lambda g: replace(g, message_ref=4242), game.version)

    assert (await store.find_by_event_ref(900)).key == game.key
    assert (await store.find_by_message_ref(4242)).key == game.key
    assert await store.find_by_message_ref(1) is None


async def test_scrim_links_to_game_it_became(store, guild):
    scrim = await store.create_scrim(make_scrim())
    game = await store.create_game(make_game(), from_scrim=scrim.key)

    linked = await store.find_scrim_for_game(game.key)
    assert linked.key == scrim.key
    assert linked.game_timestamp == game.timestamp
    assert (await store.get_scrim(scrim.key)).game_timestamp == game.timestamp


async def test_duplicate_scrim_slot(store, guild):
    await store.create_scrim(make_scrim())
    with pytest.raises(DuplicateSlot):
        await store.create_scrim(make_scrim(opponent='someone else'))


async def test_expire_scrims_only_removes_unmatched_past_slots(store, guild):
    past = await store.create_scrim(make_scrim(timestamp=SLOT_TIME - timedelta(days=1)))
    matched = await store.create_scrim(make_scrim(timestamp=SLOT_TIME - timedelta(days=2)))
    await store.create_game(make_game(timestamp=matched.timestamp), from_scrim=matched.key)
    future = await store.create_scrim(make_scrim(timestamp=SLOT_TIME + timedelta(days=1)))

    expired = await store.expire_scrims(SLOT_TIME)

    assert [s.key for s in expired] == [past.key]
    with pytest.raises(NotFound):
        await store.get_scrim(past.key)
    assert await store.get_scrim(matched.key)
    assert await store.get_scrim(future.key)


async def test_list_games_filters_by_state(store, guild):
    first = await store.create_game(make_game())
    await store.create_game(make_game(timestamp=SLOT_TIME + timedelta(days=1), event_ref=901))
    await store.transition_game(
        first.key, lambda g: replace(g, reservation_id=9, state=GameState.HOSTED), first.version
    )

    hosted = await store.list_games(states=[GameState.HOSTED])
    assert [g.key for g in hosted] == [SlotKey(GUILD_ID, SLOT_TIME)]


async def test_link_existing_game_to_scrim(store, guild):
    game = await store.create_game(make_game())
    scrim = await store.create_scrim(make_scrim(timestamp=SLOT_TIME - timedelta(hours=1)))

    linked = await store.link_scrim_to_game(scrim.key, game.key)
    assert linked.game_timestamp == game.timestamp

    with pytest.raises(Conflict):
        await store.link_scrim_to_game(scrim.key, game.key)


async def test_link_to_missing_game_is_rejected(store, guild):
    scrim = await store.create_scrim(make_scrim())
    with pytest.raises(NotFound):
        await store.link_scrim_to_game(scrim.key, SlotKey(GUILD_ID, SLOT_TIME + timedelta(days=7)))
    assert (await store.get_scrim(scrim.key)).game_timestamp is None


async def test_failed_scrim_link_rolls_back_the_game(store, guild):
    with pytest.raises(Conflict):
        await store.create_game(make_game(), from_scrim=SlotKey(GUILD_ID, SLOT_TIME))
    assert await store.find_game(SlotKey(GUILD_ID, SLOT_TIME)) is None


async def test_interrupted_write_does_not_leak_into_the_next_commit(store, db, guild):
    commit = db.conn.commit

    async def interrupted_commit():
        db.conn.commit = commit
        raise asyncio.CancelledError()

    db.conn.commit = interrupted_commit
    with pytest.raises(asyncio.CancelledError):
        await db._execute("UPDATE guilds SET rgl_team_id = 99 WHERE id = ?", (GUILD_ID,))

    await store.create_scrim(make_scrim())

    assert (await store.get_guild(GUILD_ID)).rgl_team_id == 42
    assert (await store.get_scrim(SlotKey(GUILD_ID, SLOT_TIME))).opponent == 'froyotech'


async def test_update_scrim_only_touches_unmatched_slots(store, guild):
    scrim = await store.create_scrim(make_scrim())
    await store.update_scrim(replace(scrim, map_2='koth_bagel_rc5', opponent='Ascent'))

    stored = await store.get_scrim(scrim.key)
    assert (stored.map_2, stored.opponent) == ('koth_bagel_rc5', 'Ascent')

    await store.create_game(make_game(), from_scrim=scrim.key)
    with pytest.raises(Conflict):
        await store.update_scrim(replace(stored, opponent='someone else'))
    assert (await store.get_scrim(scrim.key)).opponent == 'Ascent'
