import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.core.database import Database
from src.core.errors import ConfigurationFailed
from src.modules.scheduling.models import GameFormat, Guild, SlotKey
from src.modules.scheduling.services.lifecycle_service import GameLifecycleController
from src.modules.scheduling.services.reservation_service import Reservation
from src.modules.scheduling.services.store import SchedulingStore

GUILD_ID = 1001
SLOT_TIME = datetime(2030, 3, 5, 0, 30, tzinfo=timezone.utc)


class FakeReservations:
    """In-memory stand-in for the serveme API, recording every call in order."""

    def __init__(self):
        self.calls = []
        self.reservations: dict[int, Reservation] = {}
        self.next_id = 1
        self.reserve_error = None
        self.release_errors = []
        self.reserve_delay = 0.0
        self.before_release = None

    async def reserve(self, api_key, starts_at, duration, first_map=None, game_format=None, deadline=None):
        self.calls.append(('reserve', api_key, first_map))
        if self.reserve_delay:
            await asyncio.sleep(self.reserve_delay)
        if self.reserve_error:
            raise self.reserve_error
        reservation_id = self.next_id
        self.next_id += 1
        self.reservations[reservation_id] = Reservation(
            id=reservation_id, status='Starting', starts_at=starts_at - timedelta(minutes=15),
            ends_at=starts_at + duration + timedelta(minutes=15), server_address=None,
            password='', rcon='',
        )
        return reservation_id

    def make_ready(self, reservation_id, address, password, rcon='rcon-secret'):
        current = self.reservations[reservation_id]
        self.reservations[reservation_id] = Reservation(
            id=reservation_id, status='Ready', starts_at=current.starts_at, ends_at=current.ends_at,
            server_address=address, password=password, rcon=rcon,
        )

    async def get_reservation(self, api_key, reservation_id, deadline=None):
        self.calls.append(('get', reservation_id))
        return self.reservations.get(reservation_id)

    async def release(self, api_key, reservation_id, deadline=None):
        self.calls.append(('release', reservation_id))
        if self.before_release:
            await self.before_release(reservation_id)
        if self.release_errors:
            raise self.release_errors.pop(0)
        current = self.reservations.get(reservation_id)
        if current is not None:
            self.reservations[reservation_id] = Reservation(
                id=reservation_id, status='Ended', starts_at=current.starts_at, ends_at=current.ends_at,
                server_address=current.server_address, password=current.password, rcon=current.rcon,
            )

    async def reconcile(self, api_key, reservation_id, deadline=None):
        reservation = self.reservations.get(reservation_id)
        return reservation is not None and not reservation.is_over

    def released(self):
        return [c[1] for c in self.calls if c[0] == 'release']


class FakeConfigurator:
    def __init__(self):
        self.pushes = []
        self.server_configs = []
        self.commands = []
        self.failures_left = 0

    async def configure(self, server_address, credentials, map_name, match_password,
                        hostname=None, server_config=None, deadline=None):
        self.pushes.append({
            'address': server_address, 'rcon': credentials, 'map': map_name, 'password': match_password,
        })
        self.server_configs.append(server_config)
        if self.failures_left:
            self.failures_left -= 1
            raise ConfigurationFailed(f"{server_address} refused the connection")
        return object()

    async def execute(self, server_address, credentials, command, deadline=None):
        self.commands.append((server_address, command))
        return f"ok: {command}"


class FakeResults:
    def __init__(self):
        self.outcomes = []
        self.requested = []

    async def get_result(self, match_id, deadline=None):
        self.requested.append(match_id)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "scheduling.db"))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def store(db):
    return SchedulingStore(db)


@pytest.fixture
async def guild(store):
    return await store.upsert_guild(Guild(
        id=GUILD_ID, rgl_team_id=42, game_format=GameFormat.SIXES,
        games_channel_id=555, serveme_api_key='k' * 32,
    ))


@pytest.fixture
def key():
    return SlotKey(GUILD_ID, SLOT_TIME)


@pytest.fixture
def reservations():
    return FakeReservations()


@pytest.fixture
def configurator():
    return FakeConfigurator()


@pytest.fixture
def results():
    return FakeResults()


@pytest.fixture
def clock():
    return Clock(SLOT_TIME - timedelta(hours=2))


@pytest.fixture
def attention():
    return []


@pytest.fixture
def controller(store, reservations, configurator, results, clock, attention):
    async def on_needs_attention(game, reason):
        attention.append((game.key, reason))

    return GameLifecycleController(
        store, reservations, configurator, results,
        max_configuration_attempts=3,
        clock=clock,
        on_needs_attention=on_needs_attention,
    )
