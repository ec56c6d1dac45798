# src/modules/scheduling/services/rgl_service.py

import asyncio
import logging
from typing import Any

import aiohttp

from src.core.errors import FetchFailed, UnparseableResult
from src.modules.scheduling.models import MapResult, MatchResult

logger = logging.getLogger(__name__)


class TransportError(Exception):
    """The stats site could not be reached or answered with a server error."""


def _int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise UnparseableResult(f"'{field_name}' is not a number: {value!r}")
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        raise UnparseableResult(f"'{field_name}' is not a number: {value!r}") from None


def parse_match_result(match_id: int, data: Any) -> MatchResult:
    """
    Turns an RGL match document into a MatchResult.
    Any deviation from the expected shape raises UnparseableResult.
    """
    if not isinstance(data, dict):
        raise UnparseableResult(f"match {match_id}: document is not an object")

    teams = data.get('teams')
    if not isinstance(teams, list) or len(teams) != 2 or not all(isinstance(t, dict) for t in teams):
        raise UnparseableResult(f"match {match_id}: expected exactly two teams")
    try:
        home = next((t for t in teams if t.get('isHome')), teams[0])
        away = teams[1] if home is teams[0] else teams[0]
        home_name, away_name = str(home['teamName']), str(away['teamName'])
        team_names = {home['teamId']: home_name, away['teamId']: away_name}
    except KeyError as e:
        raise UnparseableResult(f"match {match_id}: team is missing {e}") from None

    raw_maps = data.get('maps', [])
    if not isinstance(raw_maps, list):
        raise UnparseableResult(f"match {match_id}: 'maps' is not a list")
    maps = []
    for raw in raw_maps:
        if not isinstance(raw, dict) or 'mapName' not in raw:
            raise UnparseableResult(f"match {match_id}: malformed map entry {raw!r}")
        maps.append(MapResult(
            map_name=str(raw['mapName']),
            home_score=_int(raw.get('homeScore'), 'homeScore'),
            away_score=_int(raw.get('awayScore'), 'awayScore'),
        ))

    winner_id = data.get('winner')
    if winner_id is not None and winner_id not in team_names:
        raise UnparseableResult(f"match {match_id}: winner {winner_id!r} is not one of the teams")
    winner = team_names.get(winner_id) if winner_id is not None else None

    return MatchResult(
        match_id=match_id,
        home_team=home_name,
        away_team=away_name,
        home_score=sum(1 for m in maps if m.home_score > m.away_score),
        away_score=sum(1 for m in maps if m.away_score > m.home_score),
        winner=winner,
        finalized=winner is not None or bool(data.get('isForfeit')),
        maps=tuple(maps),
    )


class RglClient:
    """Unauthenticated reads from the RGL public API."""

    def __init__(self, session: aiohttp.ClientSession, base_url: str = 'https://api.rgl.gg/v0', request_timeout: float = 15.0):
        self.session = session
        self.base_url = base_url.rstrip('/')
        self.request_timeout = aiohttp.ClientTimeout(total=request_timeout)

    async def fetch_match_result(self, match_id: int) -> MatchResult:
        """
        One fetch, no retries.
        Raises TransportError for network trouble and 5xx, FetchFailed for other HTTP errors,
        UnparseableResult when the document has the wrong shape.
        """
        url = f"{self.base_url}/matches/{match_id}"
        try:
            async with self.session.get(url, headers={'Accept': 'application/json'}, timeout=self.request_timeout) as resp:
                if resp.status >= 500 or resp.status == 429:
                    raise TransportError(f"HTTP {resp.status} from {url}")
                if resp.status >= 400:
                    raise FetchFailed(f"match {match_id}: HTTP {resp.status}")
                try:
                    data = await resp.json(content_type=None)
                except ValueError as e:
                    raise UnparseableResult(f"match {match_id}: response is not JSON") from e
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
            raise TransportError(f"{url}: {e!r}") from e

        return parse_match_result(match_id, data)
