# src/modules/scheduling/models.py

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional

from src.core.errors import InvalidState

logger = logging.getLogger(__name__)


class GameFormat(IntEnum):
    SIXES = 6
    HIGHLANDER = 9

    def __str__(self):
        return "Sixes" if self is GameFormat.SIXES else "Highlander"


class GameState(str, Enum):
    UNDECIDED = 'undecided'
    HOSTED = 'hosted'
    JOINED = 'joined'
    CONFIGURED = 'configured'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in (GameState.COMPLETED, GameState.CANCELLED)


class Provisioning(str, Enum):
    UNDECIDED = 'undecided'
    HOSTED = 'hosted'
    JOINED = 'joined'


class GameKind(str, Enum):
    OFFICIAL = 'official'
    SCRIM = 'scrim'


def normalize_timestamp(ts: datetime) -> datetime:
    """Slot timestamps are compared exactly, so they are always UTC with whole seconds."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(microsecond=0)


@dataclass(frozen=True)
class SlotKey:
    """(guild, timestamp): the key shared by a Scrim and the Game it may become."""
    guild_id: int
    timestamp: datetime

    def __post_init__(self):
        object.__setattr__(self, 'timestamp', normalize_timestamp(self.timestamp))

    def __str__(self):
        return f"{self.guild_id}@{self.timestamp.isoformat()}"


_CONNECT_RE = re.compile(
    r'^\s*connect\s+(?P<address>[^;\s]+)\s*(?:;\s*password\s+"?(?P<password>[^";]*)"?)?\s*;?\s*$',
    re.IGNORECASE
)


@dataclass(frozen=True)
class ConnectInfo:
    """Address and password of a server the opponent provides."""
    ip_and_port: str
    password: str

    @classmethod
    def parse(cls, text: str) -> "ConnectInfo":
        """Parses the `connect 1.2.3.4:27015; password "pw"` line players paste."""
        match = _CONNECT_RE.match(text)
        if not match or match.group('password') is None:
            raise ValueError(f"not a connect command: {text!r}")
        return cls(ip_and_port=match.group('address'), password=match.group('password'))

    def __str__(self):
        return f'connect {self.ip_and_port}; password "{self.password}"'


@dataclass
class Guild:
    """
    A community using the bot.
    Corresponds to the 'guilds' table.
    """
    id: int
    rgl_team_id: Optional[int] = None
    game_format: Optional[GameFormat] = None
    games_channel_id: Optional[int] = None
    serveme_api_key: Optional[str] = None


@dataclass
class Scrim:
    """
    An open slot a guild published.
    Corresponds to the 'scrims' table; `game_timestamp` points at the Game it turned into.
    """
    guild_id: int
    timestamp: datetime
    format: GameFormat
    hosted: bool
    map_1: str
    map_2: str
    opponent: str
    registration: Optional[int] = None
    game_timestamp: Optional[datetime] = None

    @property
    def key(self) -> SlotKey:
        return SlotKey(self.guild_id, self.timestamp)


@dataclass(frozen=True)
class MapResult:
    map_name: str
    home_score: int
    away_score: int


@dataclass(frozen=True)
class MatchResult:
    """A parsed official match page."""
    match_id: int
    home_team: str
    away_team: str
    home_score: int
    away_score: int
    winner: Optional[str]
    finalized: bool
    maps: tuple[MapResult, ...] = ()

    def to_dict(self) -> dict:
        return {
            'match_id': self.match_id,
            'home_team': self.home_team,
            'away_team': self.away_team,
            'home_score': self.home_score,
            'away_score': self.away_score,
            'winner': self.winner,
            'finalized': self.finalized,
            'maps': [
                {'map_name': m.map_name, 'home_score': m.home_score, 'away_score': m.away_score}
                for m in self.maps
            ],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MatchResult":
        return cls(
            match_id=data['match_id'],
            home_team=data['home_team'],
            away_team=data['away_team'],
            home_score=data['home_score'],
            away_score=data['away_score'],
            winner=data.get('winner'),
            finalized=data['finalized'],
            maps=tuple(MapResult(**m) for m in data.get('maps', [])),
        )


@dataclass
class Game:
    """
    A confirmed match.
    Corresponds to the 'games' table. It never references the Scrim it came from;
    the store looks that up through scrims.game_timestamp.
    """
    guild_id: int
    timestamp: datetime
    event_ref: int
    opponent_user_id: int
    game_format: GameFormat
    message_ref: Optional[int] = None
    reservation_id: Optional[int] = None
    server_ip_and_port: Optional[str] = None
    server_password: Optional[str] = None
    map_1: Optional[str] = None
    map_2: Optional[str] = None
    rgl_match_id: Optional[int] = None
    state: GameState = GameState.UNDECIDED
    config_attempts: int = 0
    result: Optional[MatchResult] = None
    version: int = field(default=1, compare=False)

    @property
    def key(self) -> SlotKey:
        return SlotKey(self.guild_id, self.timestamp)

    @property
    def provisioning(self) -> Provisioning:
        if self.reservation_id is not None:
            return Provisioning.HOSTED
        if self.server_ip_and_port is not None:
            return Provisioning.JOINED
        return Provisioning.UNDECIDED

    @property
    def kind(self) -> GameKind:
        return GameKind.OFFICIAL if self.rgl_match_id is not None else GameKind.SCRIM

    @property
    def connect_info(self) -> Optional[ConnectInfo]:
        if self.server_ip_and_port is None:
            return None
        return ConnectInfo(self.server_ip_and_port, self.server_password)

    @property
    def first_map(self) -> Optional[str]:
        return self.map_1 or self.map_2


def check_game_invariants(game: Game) -> None:
    """Raises InvalidState when a Game breaks provisioning, kind or state consistency."""
    has_reservation = game.reservation_id is not None
    has_address = game.server_ip_and_port is not None
    has_password = game.server_password is not None

    problems = []
    if has_address != has_password:
        problems.append("server address and password must be set together")
    if has_reservation and (has_address or has_password):
        problems.append("a hosted game cannot also carry connect info")

    if game.rgl_match_id is not None and (game.map_1 is not None or game.map_2 is not None):
        problems.append("an official game cannot carry scrim maps")

    provisioning = game.provisioning
    expected = {
        GameState.UNDECIDED: provisioning is Provisioning.UNDECIDED,
        GameState.HOSTED: provisioning is Provisioning.HOSTED,
        GameState.JOINED: provisioning is Provisioning.JOINED,
        GameState.CONFIGURED: provisioning is not Provisioning.UNDECIDED,
    }
    if not expected.get(game.state, True):
        problems.append(f"state '{game.state.value}' does not match provisioning '{provisioning.value}'")

    if game.state is GameState.COMPLETED and game.kind is GameKind.OFFICIAL and game.result is None:
        problems.append("a completed official game must carry its result")

    if problems:
        logger.critical(
            "Game invariant violated",
            extra={'game_key': str(game.key), 'problems': problems, 'game': repr(game)}
        )
        raise InvalidState(f"game {game.key}: " + "; ".join(problems))
