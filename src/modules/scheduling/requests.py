# src/modules/scheduling/requests.py

"""Typed requests the chat layer hands to GameLifecycleController.handle()."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from src.modules.scheduling.models import GameFormat, SlotKey


@dataclass(frozen=True)
class PublishSlot:
    guild_id: int
    timestamp: datetime
    format: GameFormat
    hosted: bool
    map_1: str
    map_2: str
    opponent: str
    registration: Optional[int] = None


@dataclass(frozen=True)
class CancelSlot:
    key: SlotKey


@dataclass(frozen=True)
class EditSlot:
    """Changes the details of a slot nobody has taken yet. Fields left as None keep their value."""
    key: SlotKey
    format: Optional[GameFormat] = None
    hosted: Optional[bool] = None
    map_1: Optional[str] = None
    map_2: Optional[str] = None
    opponent: Optional[str] = None


@dataclass(frozen=True)
class MatchOpponent:
    """An opponent took a published slot; the slot becomes a Game."""
    key: SlotKey
    opponent_user_id: int
    event_ref: int


@dataclass(frozen=True)
class ScheduleGame:
    """A Game created directly, without a published slot. Official games pass `rgl_match_id`."""
    guild_id: int
    timestamp: datetime
    opponent_user_id: int
    event_ref: int
    game_format: Optional[GameFormat] = None
    map_1: Optional[str] = None
    map_2: Optional[str] = None
    rgl_match_id: Optional[int] = None


@dataclass(frozen=True)
class EditGame:
    """Changes the opponent or maps of a Game that has not finished. Fields left as None keep their value."""
    key: SlotKey
    opponent_user_id: Optional[int] = None
    map_1: Optional[str] = None
    map_2: Optional[str] = None


@dataclass(frozen=True)
class DecideHost:
    key: SlotKey


@dataclass(frozen=True)
class DecideJoin:
    key: SlotKey
    connect: str


@dataclass(frozen=True)
class ConfigureGame:
    key: SlotKey


@dataclass(frozen=True)
class ChangeMap:
    """Switches the live server of a configured hosted Game to another map."""
    key: SlotKey
    map_name: str


@dataclass(frozen=True)
class RunRcon:
    key: SlotKey
    command: str


@dataclass(frozen=True)
class CompleteGame:
    key: SlotKey


@dataclass(frozen=True)
class CancelGame:
    key: SlotKey


@dataclass(frozen=True)
class RecordAnnouncement:
    key: SlotKey
    message_ref: int


LifecycleRequest = Union[
    PublishSlot, EditSlot, CancelSlot, MatchOpponent, ScheduleGame, EditGame, DecideHost, DecideJoin,
    ConfigureGame, ChangeMap, RunRcon, CompleteGame, CancelGame, RecordAnnouncement,
]
