import asyncio

import aiohttp
import pytest
from aiohttp import web

from src.core.errors import FetchFailed, UnparseableResult
from src.core.utils import RetryPolicy
from src.modules.scheduling.models import MatchResult
from src.modules.scheduling.services.result_cache import ResultCache
from src.modules.scheduling.services.rgl_service import RglClient, TransportError, parse_match_result

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0, max_delay=0)


def match_document(winner=None, forfeit=False):
    return {
        'matchId': 555,
        'isForfeit': forfeit,
        'winner': winner,
        'teams': [
            {'teamId': 10, 'teamName': 'Froyotech', 'isHome': False},
            {'teamId': 20, 'teamName': 'Ascent', 'isHome': True},
        ],
        'maps': [
            {'mapName': 'cp_process_f12', 'homeScore': 5, 'awayScore': 2},
            {'mapName': 'koth_product_final', 'homeScore': 1, 'awayScore': 3},
            {'mapName': 'cp_gullywash_f9', 'homeScore': 4, 'awayScore': 0},
        ],
    }


def result(match_id=555, finalized=True):
    return MatchResult(match_id=match_id, home_team='Ascent', away_team='Froyotech',
                       home_score=2, away_score=1, winner='Ascent' if finalized else None, finalized=finalized)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# --- parsing ---

def test_parse_finished_match():
    parsed = parse_match_result(555, match_document(winner=20))

    assert parsed.home_team == 'Ascent'
    assert parsed.away_team == 'Froyotech'
    assert (parsed.home_score, parsed.away_score) == (2, 1)
    assert parsed.winner == 'Ascent'
    assert parsed.finalized
    assert [m.map_name for m in parsed.maps] == ['cp_process_f12', 'koth_product_final', 'cp_gullywash_f9']


def test_parse_unplayed_match_is_not_final():
    document = match_document()
    document['maps'] = [{'mapName': 'cp_process_f12', 'homeScore': None, 'awayScore': None}]

    parsed = parse_match_result(555, document)
    assert not parsed.finalized
    assert parsed.winner is None
    assert (parsed.home_score, parsed.away_score) == (0, 0)


def test_forfeit_is_final_without_winner():
    assert parse_match_result(555, match_document(forfeit=True)).finalized


@pytest.mark.parametrize("document", [
    [],
    {'teams': []},
    {'teams': [{'teamId': 1}, {'teamId': 2}]},
    {**match_document(), 'winner': 99},
    {**match_document(), 'maps': [{'homeScore': 1}]},
    {**match_document(), 'maps': [{'mapName': 'cp_process_f12', 'homeScore': 'five'}]},
])
def test_unexpected_shapes_are_unparseable(document):
    with pytest.raises(UnparseableResult):
        parse_match_result(555, document)


# --- RGL client ---

@pytest.fixture
async def rgl(aiohttp_server):
    routes = web.RouteTableDef()
    state = {'status': 200}

    @routes.get('/v0/matches/{match_id}')
    async def show(request):
        if state['status'] != 200:
            return web.Response(status=state['status'])
        if request.match_info['match_id'] == '404':
            return web.Response(status=404)
        if request.match_info['match_id'] == '1':
            return web.Response(text='<html>maintenance</html>', content_type='text/html')
        return web.json_response(match_document(winner=20))

    app = web.Application()
    app.add_routes(routes)
    server = await aiohttp_server(app)
    async with aiohttp.ClientSession() as session:
        client = RglClient(session, base_url=str(server.make_url('/v0')))
        client.state = state
        yield client


async def test_fetch_match_result(rgl):
    parsed = await rgl.fetch_match_result(555)
    assert parsed.match_id == 555
    assert parsed.winner == 'Ascent'


async def test_fetch_errors_are_classified(rgl):
    with pytest.raises(FetchFailed):
        await rgl.fetch_match_result(404)
    with pytest.raises(UnparseableResult):
        await rgl.fetch_match_result(1)

    rgl.state['status'] = 502
    with pytest.raises(TransportError):
        await rgl.fetch_match_result(555)


# --- cache ---

async def test_concurrent_misses_share_one_fetch():
    calls = []
    release = asyncio.Event()

    async def fetch(match_id):
        calls.append(match_id)
        await release.wait()
        return result(match_id)

    cache = ResultCache(fetch, ttl=600, retry_policy=NO_WAIT)
    waiters = [asyncio.create_task(cache.get_result(555)) for _ in range(50)]
    await asyncio.sleep(0)
    release.set()
    results = await asyncio.gather(*waiters)

    assert calls == [555]
    assert all(r == result(555) for r in results)


async def test_entries_expire_after_ttl():
    calls = []
    clock = FakeClock()

    async def fetch(match_id):
        calls.append(match_id)
        return result(match_id, finalized=len(calls) > 1)

    cache = ResultCache(fetch, ttl=600, retry_policy=NO_WAIT, clock=clock)

    assert not (await cache.get_result(555)).finalized
    clock.now += 599
    assert not (await cache.get_result(555)).finalized
    clock.now += 1
    assert (await cache.get_result(555)).finalized
    assert calls == [555, 555]


async def test_expired_entries_are_dropped_on_the_next_lookup():
    clock = FakeClock()

    async def fetch(match_id):
        return result(match_id)

    cache = ResultCache(fetch, ttl=600, retry_policy=NO_WAIT, clock=clock)
    for match_id in (1, 2, 3):
        await cache.get_result(match_id)
    assert len(cache._entries) == 3

    clock.now += 600
    await cache.get_result(4)

    assert list(cache._entries) == [4]


async def test_transport_errors_are_retried_then_reported():
    calls = []

    async def fetch(match_id):
        calls.append(match_id)
        raise TransportError("connection reset")

    cache = ResultCache(fetch, retry_policy=NO_WAIT)
    with pytest.raises(FetchFailed):
        await cache.get_result(555)

    assert len(calls) == NO_WAIT.max_attempts
    assert cache.peek(555) is None


async def test_failures_are_not_cached():
    outcomes = [TransportError("down"), TransportError("down"), TransportError("down"), result()]

    async def fetch(match_id):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    cache = ResultCache(fetch, retry_policy=NO_WAIT)
    with pytest.raises(FetchFailed):
        await cache.get_result(555)
    assert (await cache.get_result(555)).finalized


async def test_unparseable_result_is_not_retried():
    calls = []

    async def fetch(match_id):
        calls.append(match_id)
        raise UnparseableResult("no teams")

    cache = ResultCache(fetch, retry_policy=NO_WAIT)
    with pytest.raises(UnparseableResult):
        await cache.get_result(555)
    assert calls == [555]


async def test_caller_deadline_does_not_cancel_shared_fetch():
    release = asyncio.Event()

    async def fetch(match_id):
        await release.wait()
        return result(match_id)

    cache = ResultCache(fetch, retry_policy=NO_WAIT)
    patient = asyncio.create_task(cache.get_result(555))
    await asyncio.sleep(0)

    with pytest.raises(FetchFailed):
        await cache.get_result(555, deadline=0.01)

    release.set()
    assert (await patient).finalized
    assert cache.peek(555) is not None
