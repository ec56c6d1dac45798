# src/modules/scheduling/services/reservation_service.py

import asyncio
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import aiohttp

from src.core.errors import MissingCredential, ReservationUnavailable
from src.core.utils import RetryPolicy, retry_with_backoff, with_deadline
from src.modules.scheduling.models import GameFormat, normalize_timestamp

logger = logging.getLogger(__name__)

# Setup/teardown margin around the match itself.
RESERVATION_MARGIN = timedelta(minutes=15)

READY_STATUSES = {'Ready', 'SDR Ready'}
ENDED_STATUSES = {'Ended'}


@dataclass(frozen=True)
class ServerConfig:
    name: str
    id: int


SIXES_5CP = ServerConfig('rgl_6s_5cp_scrim', 69)
SIXES_KOTH = ServerConfig('rgl_6s_koth_scrim', 113)
HL_STOPWATCH = ServerConfig('rgl_HL_stopwatch', 55)
HL_KOTH = ServerConfig('rgl_HL_koth_bo5', 54)


def server_config_for(map_name: Optional[str], game_format: Optional[GameFormat]) -> Optional[ServerConfig]:
    """Picks the league config for a map: by game mode prefix within the format."""
    if not map_name or game_format is None:
        return None
    if game_format is GameFormat.SIXES:
        if map_name.startswith('cp_'):
            return SIXES_5CP
        if map_name.startswith('koth_'):
            return SIXES_KOTH
    else:
        if map_name.startswith(('pl_', 'cp_')):
            return HL_STOPWATCH
        if map_name.startswith('koth_'):
            return HL_KOTH
    return None


def _random_token(length: int) -> str:
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(length))


def _parse_time(value: str) -> datetime:
    # fromisoformat only accepts a trailing 'Z' from 3.11 on
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Reservation:
    """A booking as the provider reports it."""
    id: int
    status: str
    starts_at: datetime
    ends_at: datetime
    server_address: Optional[str]
    password: str
    rcon: str

    @property
    def is_ready(self) -> bool:
        return self.status in READY_STATUSES and bool(self.server_address)

    @property
    def is_over(self) -> bool:
        return self.status in ENDED_STATUSES

    @classmethod
    def from_payload(cls, payload: dict) -> "Reservation":
        data = payload.get('reservation', payload)
        server = data.get('server') or {}
        return cls(
            id=int(data['id']),
            status=data.get('status', ''),
            starts_at=_parse_time(data['starts_at']),
            ends_at=_parse_time(data['ends_at']),
            server_address=server.get('ip_and_port'),
            password=data.get('password', ''),
            rcon=data.get('rcon', ''),
        )


class _TransientProviderError(Exception):
    """5xx answer; retried like a network failure."""

    def __init__(self, status: int, reason: str):
        super().__init__(f"HTTP {status}: {reason}")
        self.status = status


_TRANSIENT = (aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError, asyncio.TimeoutError, _TransientProviderError)


class ReservationManager:
    """
    Books and releases game servers through the serveme.tf API.
    Keeps no reservation state of its own; the Game record says whether one exists.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        base_url: str = 'https://na.serveme.tf',
        retry_policy: RetryPolicy = RetryPolicy(),
        preferred_servers: Optional[list[str]] = None,
        request_timeout: float = 15.0,
    ):
        self.session = session
        self.base_url = base_url.rstrip('/')
        self.retry_policy = retry_policy
        self.preferred_servers = preferred_servers if preferred_servers is not None else ['chi', 'ks']
        self.request_timeout = aiohttp.ClientTimeout(total=request_timeout)

    @staticmethod
    def _headers(api_key: Optional[str]) -> dict:
        if not api_key:
            raise MissingCredential("this guild has no serveme API key configured")
        return {'Authorization': f'Token token={api_key}', 'Accept': 'application/json'}

    async def _request(self, method: str, path: str, api_key: str, json_body: Optional[dict] = None,
                       ok_missing: bool = False) -> tuple[int, Optional[dict]]:
        """One HTTP call. 5xx raises a transient error, other non-2xx raise ReservationUnavailable."""
        url = f"{self.base_url}{path}"
        async with self.session.request(
            method, url, headers=self._headers(api_key), json=json_body, timeout=self.request_timeout
        ) as resp:
            if resp.status >= 500:
                raise _TransientProviderError(resp.status, resp.reason or '')
            if ok_missing and resp.status in (404, 410):
                return resp.status, None
            if resp.status >= 400:
                body = await resp.text()
                raise ReservationUnavailable(f"{method} {path} rejected with HTTP {resp.status}: {body[:200]}")
            if resp.status == 204:
                return resp.status, None
            return resp.status, await resp.json(content_type=None)

    async def _call(self, operation_name: str, coro_func, deadline: Optional[float]):
        try:
            return await with_deadline(
                retry_with_backoff(coro_func, operation_name, self.retry_policy, _TRANSIENT),
                deadline
            )
        except _TRANSIENT as e:
            raise ReservationUnavailable(f"{operation_name} failed: {e!r}") from e

    def reservation_window(self, starts_at: datetime, duration: timedelta) -> tuple[datetime, datetime]:
        starts_at = normalize_timestamp(starts_at)
        return starts_at - RESERVATION_MARGIN, starts_at + duration + RESERVATION_MARGIN

    def _pick_server(self, servers: list[dict]) -> dict:
        for server in servers:
            address = server.get('ip_and_port', '')
            if any(address.startswith(prefix) for prefix in self.preferred_servers):
                return server
        return servers[0]

    async def reserve(
        self,
        api_key: Optional[str],
        starts_at: datetime,
        duration: timedelta,
        first_map: Optional[str] = None,
        game_format: Optional[GameFormat] = None,
        deadline: Optional[float] = None,
    ) -> int:
        """Books a server for the slot and returns the reservation id."""
        window_start, window_end = self.reservation_window(starts_at, duration)
        log_context = {'starts_at': window_start.isoformat(), 'ends_at': window_end.isoformat(), 'first_map': first_map}

        _, found = await self._call(
            "serveme find_servers",
            lambda: self._request('POST', '/api/reservations/find_servers', api_key, {
                'reservation': {'starts_at': window_start.isoformat(), 'ends_at': window_end.isoformat()}
            }),
            deadline,
        )
        servers = (found or {}).get('servers') or []
        if not servers:
            logger.warning("No free server for the requested window", extra=log_context)
            raise ReservationUnavailable("no server is free for this time slot")

        server = self._pick_server(servers)
        body = {
            'starts_at': window_start.isoformat(),
            'ends_at': window_end.isoformat(),
            'server_id': server['id'],
            'password': f"scrim.{_random_token(8)}",
            'rcon': f"scrim.rcon.{_random_token(32)}",
            'enable_plugins': True,
            'enable_demos_tf': True,
        }
        if first_map:
            body['first_map'] = first_map
        config = server_config_for(first_map, game_format)
        if config:
            body['server_config_id'] = config.id

        _, created = await self._call(
            "serveme create reservation",
            lambda: self._request('POST', '/api/reservations', api_key, {'reservation': body}),
            deadline,
        )
        try:
            reservation = Reservation.from_payload(created or {})
        except (KeyError, TypeError, ValueError) as e:
            raise ReservationUnavailable(f"unexpected reservation payload: {created!r}") from e

        logger.info("Reservation booked", extra={**log_context, 'reservation_id': reservation.id, 'server': server.get('name')})
        return reservation.id

    async def get_reservation(self, api_key: Optional[str], reservation_id: int,
                              deadline: Optional[float] = None) -> Optional[Reservation]:
        """Current provider view of a reservation, or None if the provider does not know it."""
        status, payload = await self._call(
            f"serveme get reservation {reservation_id}",
            lambda: self._request('GET', f'/api/reservations/{reservation_id}', api_key, ok_missing=True),
            deadline,
        )
        if payload is None:
            return None
        try:
            return Reservation.from_payload(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise ReservationUnavailable(f"unexpected reservation payload: {payload!r}") from e

    async def release(self, api_key: Optional[str], reservation_id: int, deadline: Optional[float] = None) -> None:
        """Ends a reservation. Already ended or unknown reservations count as released."""
        status, _ = await self._call(
            f"serveme delete reservation {reservation_id}",
            lambda: self._request('DELETE', f'/api/reservations/{reservation_id}', api_key, ok_missing=True),
            deadline,
        )
        if status in (404, 410):
            logger.info("Reservation already gone, nothing to release", extra={'reservation_id': reservation_id})
        else:
            logger.info("Reservation released", extra={'reservation_id': reservation_id})

    async def reconcile(self, api_key: Optional[str], reservation_id: int, deadline: Optional[float] = None) -> bool:
        """Whether a stored reservation id still refers to a live booking."""
        reservation = await self.get_reservation(api_key, reservation_id, deadline=deadline)
        return reservation is not None and not reservation.is_over
