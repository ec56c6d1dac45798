# src/modules/scheduling/services/store.py

import json
import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Optional

import aiosqlite

from src.core.database import Database
from src.core.errors import Conflict, DuplicateReference, DuplicateSlot, InvalidState, NotFound
from src.modules.scheduling.models import (
    Game, GameFormat, GameState, Guild, MatchResult, Scrim, SlotKey,
    check_game_invariants, normalize_timestamp,
)

logger = logging.getLogger(__name__)

GAME_COLUMNS = (
    'guild_id', 'timestamp', 'event_ref', 'message_ref', 'opponent_user_id', 'game_format',
    'reservation_id', 'server_ip_and_port', 'server_password', 'map_1', 'map_2',
    'rgl_match_id', 'state', 'config_attempts', 'result', 'version',
)


def _ts(value: datetime) -> str:
    return normalize_timestamp(value).isoformat()


def _from_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _guild_from_row(row) -> Guild:
    data = dict(row)
    if data.get('game_format') is not None:
        data['game_format'] = GameFormat(data['game_format'])
    return Guild(**data)


def _scrim_from_row(row) -> Scrim:
    data = dict(row)
    data['timestamp'] = _from_ts(data['timestamp'])
    data['game_timestamp'] = _from_ts(data['game_timestamp'])
    data['format'] = GameFormat(data['format'])
    data['hosted'] = bool(data['hosted'])
    return Scrim(**data)


def _game_from_row(row) -> Game:
    data = dict(row)
    data['timestamp'] = _from_ts(data['timestamp'])
    data['game_format'] = GameFormat(data['game_format'])
    data['state'] = GameState(data['state'])
    data['result'] = MatchResult.from_dict(json.loads(data['result'])) if data.get('result') else None
    return Game(**data)


def _game_params(game: Game) -> tuple:
    return (
        game.guild_id, _ts(game.timestamp), game.event_ref, game.message_ref, game.opponent_user_id,
        int(game.game_format), game.reservation_id, game.server_ip_and_port, game.server_password,
        game.map_1, game.map_2, game.rgl_match_id, game.state.value, game.config_attempts,
        json.dumps(game.result.to_dict()) if game.result else None, game.version,
    )


def _translate_integrity_error(error: aiosqlite.IntegrityError, key: SlotKey, table: str) -> Exception:
    """Maps SQLite constraint failures onto the scheduling error kinds."""
    message = str(error)
    if 'UNIQUE' in message or 'PRIMARY KEY' in message:
        if f'{table}.guild_id, {table}.timestamp' in message:
            return DuplicateSlot(f"a {table[:-1]} already exists at {key}")
        if 'event_ref' in message or 'message_ref' in message:
            return DuplicateReference(f"reference already used by another game ({message})")
        return DuplicateReference(message)
    if 'CHECK' in message:
        logger.critical("Storage rejected an invalid record", extra={'slot': str(key), 'error': message})
        return InvalidState(f"{table} {key}: {message}")
    if 'FOREIGN KEY' in message:
        return NotFound(f"guild {key.guild_id} is not registered")
    return error


class SchedulingStore:
    """
    Sole writer of Guild, Scrim and Game records.
    Writes to one Game are compare-and-set on its `version`: a transition that was
    computed from a stale read fails with Conflict instead of overwriting.
    """

    def __init__(self, db: Database):
        self.db = db

    # --- Guilds ---

    async def upsert_guild(self, guild: Guild) -> Guild:
        sql = """
            INSERT INTO guilds (id, rgl_team_id, game_format, games_channel_id, serveme_api_key)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                rgl_team_id = excluded.rgl_team_id,
                game_format = excluded.game_format,
                games_channel_id = excluded.games_channel_id,
                serveme_api_key = excluded.serveme_api_key;
        """
        game_format = int(guild.game_format) if guild.game_format is not None else None
        try:
            await self.db._execute(sql, (guild.id, guild.rgl_team_id, game_format, guild.games_channel_id, guild.serveme_api_key))
        except aiosqlite.IntegrityError as e:
            if 'rgl_team_id' in str(e):
                raise DuplicateReference(f"RGL team {guild.rgl_team_id} is already linked to another guild") from e
            raise InvalidState(f"guild {guild.id}: {e}") from e
        logger.info("Guild upserted", extra={'guild_id': guild.id})
        return guild

    async def get_guild(self, guild_id: int) -> Guild:
        row = await self.db._execute("SELECT * FROM guilds WHERE id = ?", (guild_id,), fetch='one')
        if not row:
            raise NotFound(f"guild {guild_id} is not registered")
        return _guild_from_row(row)

    # --- Scrims ---

    async def create_scrim(self, scrim: Scrim) -> Scrim:
        scrim.timestamp = normalize_timestamp(scrim.timestamp)
        sql = """
            INSERT INTO scrims (guild_id, timestamp, format, hosted, map_1, map_2, opponent, registration, game_timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, NULL)
        """
        params = (
            scrim.guild_id, _ts(scrim.timestamp), int(scrim.format), int(scrim.hosted),
            scrim.map_1, scrim.map_2, scrim.opponent, scrim.registration,
        )
        try:
            await self.db._execute(sql, params)
        except aiosqlite.IntegrityError as e:
            raise _translate_integrity_error(e, scrim.key, 'scrims') from e
        logger.info("Scrim slot published", extra={'slot': str(scrim.key), 'hosted': scrim.hosted})
        return scrim

    async def get_scrim(self, key: SlotKey) -> Scrim:
        sql = "SELECT * FROM scrims WHERE guild_id = ? AND timestamp = ?"
        row = await self.db._execute(sql, (key.guild_id, _ts(key.timestamp)), fetch='one')
        if not row:
            raise NotFound(f"no scrim at {key}")
        return _scrim_from_row(row)

    async def update_scrim(self, scrim: Scrim) -> Scrim:
        """Rewrites the details of an unmatched slot. Conflict if it is missing or already matched."""
        sql = """
            UPDATE scrims SET format = ?, hosted = ?, map_1 = ?, map_2 = ?, opponent = ?, registration = ?
            WHERE guild_id = ? AND timestamp = ? AND game_timestamp IS NULL
        """
        params = (
            int(scrim.format), int(scrim.hosted), scrim.map_1, scrim.map_2, scrim.opponent, scrim.registration,
            scrim.guild_id, _ts(scrim.timestamp),
        )
        rows_affected = await self.db._execute(sql, params)
        if rows_affected == 0:
            raise Conflict(f"scrim {scrim.key} is missing or already matched")
        logger.info("Scrim slot updated", extra={'slot': str(scrim.key)})
        return scrim

    async def delete_scrim(self, key: SlotKey) -> bool:
        """Removes an unmatched slot. Returns False if there was nothing to remove."""
        sql = "DELETE FROM scrims WHERE guild_id = ? AND timestamp = ? AND game_timestamp IS NULL"
        rows_affected = await self.db._execute(sql, (key.guild_id, _ts(key.timestamp)))
        return rows_affected > 0

    async def expire_scrims(self, before: datetime) -> list[Scrim]:
        """Deletes every unmatched scrim whose slot is earlier than `before`, returning them."""
        async with self.db.transaction() as conn:
            async with conn.execute(
                "SELECT * FROM scrims WHERE game_timestamp IS NULL AND timestamp < ?", (_ts(before),)
            ) as cursor:
                expired = [_scrim_from_row(row) for row in await cursor.fetchall()]
            await conn.execute(
                "DELETE FROM scrims WHERE game_timestamp IS NULL AND timestamp < ?", (_ts(before),)
            )
        if expired:
            logger.info("Expired unmatched scrims", extra={'count': len(expired), 'before': _ts(before)})
        return expired

    async def find_scrim_for_game(self, key: SlotKey) -> Optional[Scrim]:
        sql = "SELECT * FROM scrims WHERE guild_id = ? AND game_timestamp = ?"
        row = await self.db._execute(sql, (key.guild_id, _ts(key.timestamp)), fetch='one')
        return _scrim_from_row(row) if row else None

    # --- Games ---

    async def create_game(self, game: Game, from_scrim: Optional[SlotKey] = None) -> Game:
        """
        Inserts a new Game. With `from_scrim`, the scrim is linked to it in the same transaction.
        Raises DuplicateSlot if the (guild, timestamp) is taken.
        """
        game.timestamp = normalize_timestamp(game.timestamp)
        game.version = 1
        check_game_invariants(game)

        placeholders = ', '.join('?' for _ in GAME_COLUMNS)
        sql = f"INSERT INTO games ({', '.join(GAME_COLUMNS)}) VALUES ({placeholders})"
        try:
            async with self.db.transaction() as conn:
                await conn.execute(sql, _game_params(game))
                if from_scrim is not None:
                    await self._link(conn, from_scrim, game.key)
        except aiosqlite.IntegrityError as e:
            raise _translate_integrity_error(e, game.key, 'games') from e

        logger.info(
            "Game created",
            extra={'slot': str(game.key), 'kind': game.kind.value, 'from_scrim': from_scrim is not None}
        )
        return game

    @staticmethod
    async def _link(conn, scrim_key: SlotKey, game_key: SlotKey) -> None:
        if scrim_key.guild_id != game_key.guild_id:
            raise Conflict(f"scrim {scrim_key} and game {game_key} belong to different guilds")
        cursor = await conn.execute(
            "UPDATE scrims SET game_timestamp = ? WHERE guild_id = ? AND timestamp = ? AND game_timestamp IS NULL",
            (_ts(game_key.timestamp), scrim_key.guild_id, _ts(scrim_key.timestamp))
        )
        if cursor.rowcount == 0:
            raise Conflict(f"scrim {scrim_key} is missing or already matched")

    async def link_scrim_to_game(self, scrim_key: SlotKey, game_key: SlotKey) -> Scrim:
        """Points an unmatched scrim at an existing game. NotFound if the game does not exist."""
        try:
            async with self.db.transaction() as conn:
                await self._link(conn, scrim_key, game_key)
        except aiosqlite.IntegrityError as e:
            raise NotFound(f"no game at {game_key}") from e
        logger.info("Scrim linked to game", extra={'slot': str(scrim_key), 'game': str(game_key)})
        return await self.get_scrim(scrim_key)

    async def find_game(self, key: SlotKey) -> Optional[Game]:
        sql = "SELECT * FROM games WHERE guild_id = ? AND timestamp = ?"
        row = await self.db._execute(sql, (key.guild_id, _ts(key.timestamp)), fetch='one')
        return _game_from_row(row) if row else None

    async def get_game(self, key: SlotKey) -> Game:
        game = await self.find_game(key)
        if game is None:
            raise NotFound(f"no game at {key}")
        return game

    async def find_by_event_ref(self, event_ref: int) -> Optional[Game]:
        row = await self.db._execute("SELECT * FROM games WHERE event_ref = ?", (event_ref,), fetch='one')
        return _game_from_row(row) if row else None

    async def find_by_message_ref(self, message_ref: int) -> Optional[Game]:
        row = await self.db._execute("SELECT * FROM games WHERE message_ref = ?", (message_ref,), fetch='one')
        return _game_from_row(row) if row else None

    async def list_games(self, states: Optional[Iterable[GameState]] = None, guild_id: Optional[int] = None) -> list[Game]:
        clauses, params = [], []
        if states is not None:
            states = list(states)
            clauses.append(f"state IN ({','.join('?' for _ in states)})")
            params.extend(s.value for s in states)
        if guild_id is not None:
            clauses.append("guild_id = ?")
            params.append(guild_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self.db._execute(f"SELECT * FROM games {where} ORDER BY timestamp", tuple(params), fetch='all')
        return [_game_from_row(row) for row in rows] if rows else []

    async def transition_game(self, key: SlotKey, mutation: Callable[[Game], Game], expected_version: int) -> Game:
        """
        Applies `mutation` to the current record and writes it back, provided the record
        is still at `expected_version`. Raises Conflict otherwise, InvalidState if the
        mutated record breaks an invariant. Returns the stored Game.
        """
        assignments = ', '.join(f"{col} = ?" for col in GAME_COLUMNS if col not in ('guild_id', 'timestamp'))
        sql = f"UPDATE games SET {assignments} WHERE guild_id = ? AND timestamp = ? AND version = ?"

        try:
            async with self.db.transaction() as conn:
                async with conn.execute(
                    "SELECT * FROM games WHERE guild_id = ? AND timestamp = ?", (key.guild_id, _ts(key.timestamp))
                ) as cursor:
                    row = await cursor.fetchone()
                if row is None:
                    raise NotFound(f"no game at {key}")
                current = _game_from_row(row)
                if current.version != expected_version:
                    raise Conflict(
                        f"game {key} is at version {current.version}, expected {expected_version}"
                    )

                updated = replace(mutation(replace(current)), guild_id=current.guild_id,
                                  timestamp=current.timestamp, version=current.version + 1)
                check_game_invariants(updated)

                params = _game_params(updated)[2:] + (key.guild_id, _ts(key.timestamp), expected_version)
                cursor = await conn.execute(sql, params)
                if cursor.rowcount == 0:
                    raise Conflict(f"game {key} changed during the update")
        except aiosqlite.IntegrityError as e:
            raise _translate_integrity_error(e, key, 'games') from e

        logger.debug(
            "Game transitioned",
            extra={'slot': str(key), 'from_state': current.state.value, 'to_state': updated.state.value, 'version': updated.version}
        )
        return updated
