# src/modules/scheduling/services/lifecycle_service.py

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from src.core.errors import (
    AlreadyDecided, ConfigurationFailed, Conflict, DuplicateSlot, FetchFailed, IllegalTransition,
    ReservationUnavailable, SchedulingError,
)
from src.core.utils import KeyedLocks
from src.modules.scheduling.models import (
    ConnectInfo, Game, GameKind, GameState, Scrim, SlotKey, normalize_timestamp,
)
from src.modules.scheduling.requests import (
    CancelGame, CancelSlot, ChangeMap, CompleteGame, ConfigureGame, DecideHost, DecideJoin, EditGame, EditSlot,
    LifecycleRequest, MatchOpponent, PublishSlot, RecordAnnouncement, RunRcon, ScheduleGame,
)
from src.modules.scheduling.services.rcon_service import Ack
from src.modules.scheduling.services.reservation_service import server_config_for
from src.modules.scheduling.services.store import SchedulingStore

logger = logging.getLogger(__name__)

AttentionCallback = Callable[[Game, str], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepReport:
    configured: list[SlotKey] = field(default_factory=list)
    completed: list[SlotKey] = field(default_factory=list)
    expired_scrims: list[SlotKey] = field(default_factory=list)
    failures: dict = field(default_factory=dict)


class GameLifecycleController:
    """
    Drives a Game from Undecided to Completed or Cancelled.

    Every multi-step transition confirms the external effect first and writes second,
    so a reported failure leaves the Game exactly as it was last committed.
    Only this class calls SchedulingStore.transition_game.
    """

    def __init__(
        self,
        store: SchedulingStore,
        reservations,
        configurator,
        results,
        game_duration: timedelta = timedelta(minutes=60),
        max_configuration_attempts: int = 5,
        release_attempts: int = 2,
        decision_write_attempts: int = 3,
        scrim_expiry_enabled: bool = True,
        scrim_expiry_grace: timedelta = timedelta(0),
        call_deadline: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
        on_needs_attention: Optional[AttentionCallback] = None,
    ):
        self.store = store
        self.reservations = reservations
        self.configurator = configurator
        self.results = results
        self.game_duration = game_duration
        self.max_configuration_attempts = max_configuration_attempts
        self.release_attempts = release_attempts
        self.decision_write_attempts = decision_write_attempts
        self.scrim_expiry_enabled = scrim_expiry_enabled
        self.scrim_expiry_grace = scrim_expiry_grace
        self.call_deadline = call_deadline
        self.clock = clock
        self.on_needs_attention = on_needs_attention
        self._configure_locks = KeyedLocks()

    async def handle(self, request: LifecycleRequest):
        """Entry point for the chat layer: runs the operation matching the request type."""
        if isinstance(request, PublishSlot):
            return await self.publish_slot(request)
        if isinstance(request, EditSlot):
            return await self.edit_slot(request)
        if isinstance(request, CancelSlot):
            return await self.cancel_slot(request.key)
        if isinstance(request, MatchOpponent):
            return await self.match_opponent(request.key, request.opponent_user_id, request.event_ref)
        if isinstance(request, ScheduleGame):
            return await self.schedule_game(request)
        if isinstance(request, EditGame):
            return await self.edit_game(request)
        if isinstance(request, DecideHost):
            return await self.decide_host(request.key)
        if isinstance(request, DecideJoin):
            return await self.decide_join(request.key, request.connect)
        if isinstance(request, ConfigureGame):
            return await self.configure_game(request.key)
        if isinstance(request, ChangeMap):
            return await self.change_map(request.key, request.map_name)
        if isinstance(request, RunRcon):
            return await self.run_rcon(request.key, request.command)
        if isinstance(request, CompleteGame):
            return await self.complete_game(request.key)
        if isinstance(request, CancelGame):
            return await self.cancel_game(request.key)
        if isinstance(request, RecordAnnouncement):
            return await self.record_announcement(request.key, request.message_ref)
        raise TypeError(f"unsupported request: {request!r}")

    # ----------------------------------------------------------------
    # Slots
    # ----------------------------------------------------------------

    async def publish_slot(self, request: PublishSlot) -> Scrim:
        await self.store.get_guild(request.guild_id)
        scrim = Scrim(
            guild_id=request.guild_id,
            timestamp=request.timestamp,
            format=request.format,
            hosted=request.hosted,
            map_1=request.map_1,
            map_2=request.map_2,
            opponent=request.opponent,
            registration=request.registration,
        )
        return await self.store.create_scrim(scrim)

    async def edit_slot(self, request: EditSlot) -> Scrim:
        scrim = await self.store.get_scrim(request.key)
        if scrim.game_timestamp is not None:
            raise IllegalTransition(f"slot {request.key} already has a game, edit the game instead")
        changes = {
            name: getattr(request, name)
            for name in ('format', 'hosted', 'map_1', 'map_2', 'opponent')
            if getattr(request, name) is not None
        }
        return await self.store.update_scrim(replace(scrim, **changes))

    async def cancel_slot(self, key: SlotKey) -> bool:
        removed = await self.store.delete_scrim(key)
        logger.info("Slot cancel requested", extra={'slot': str(key), 'removed': removed})
        return removed

    async def match_opponent(self, key: SlotKey, opponent_user_id: int, event_ref: int) -> Game:
        scrim = await self.store.get_scrim(key)
        if scrim.game_timestamp is not None:
            raise DuplicateSlot(f"slot {key} already has a game")
        game = Game(
            guild_id=scrim.guild_id,
            timestamp=scrim.timestamp,
            event_ref=event_ref,
            opponent_user_id=opponent_user_id,
            game_format=scrim.format,
            map_1=scrim.map_1,
            map_2=scrim.map_2,
        )
        return await self.store.create_game(game, from_scrim=key)

    async def schedule_game(self, request: ScheduleGame) -> Game:
        guild = await self.store.get_guild(request.guild_id)
        game_format = request.game_format or guild.game_format
        if request.rgl_match_id is not None and (request.map_1 or request.map_2):
            raise ValueError("an official game takes its maps from the league, pass either rgl_match_id or maps")
        if game_format is None:
            raise IllegalTransition(f"guild {guild.id} has no game format configured")
        game = Game(
            guild_id=request.guild_id,
            timestamp=request.timestamp,
            event_ref=request.event_ref,
            opponent_user_id=request.opponent_user_id,
            game_format=game_format,
            map_1=request.map_1,
            map_2=request.map_2,
            rgl_match_id=request.rgl_match_id,
        )
        return await self.store.create_game(game)

    async def record_announcement(self, key: SlotKey, message_ref: int) -> Game:
        game = await self.store.get_game(key)
        return await self.store.transition_game(
            key, lambda g: replace(g, message_ref=message_ref), game.version
        )

    async def edit_game(self, request: EditGame) -> Game:
        """Official games keep the maps the league assigns, so only their opponent can change."""
        changes = {
            name: getattr(request, name)
            for name in ('opponent_user_id', 'map_1', 'map_2')
            if getattr(request, name) is not None
        }
        game = await self.store.get_game(request.key)
        if game.state.is_terminal:
            raise IllegalTransition(f"game {request.key} is already {game.state.value}")
        if game.kind is GameKind.OFFICIAL and ('map_1' in changes or 'map_2' in changes):
            raise ValueError(f"official game {request.key} takes its maps from the league")

        game = await self.store.transition_game(request.key, lambda g: replace(g, **changes), game.version)
        logger.info("Game edited", extra={'slot': str(request.key), 'fields': sorted(changes)})
        return game

    # ----------------------------------------------------------------
    # Provisioning decision
    # ----------------------------------------------------------------

    def _require_undecided(self, game: Game) -> None:
        if game.state.is_terminal:
            raise IllegalTransition(f"game {game.key} is already {game.state.value}")
        if game.state is not GameState.UNDECIDED:
            raise AlreadyDecided(f"game {game.key} is already {game.state.value}", game=game)

    async def _write_decision(self, game: Game, mutation: Callable[[Game], Game]) -> Game:
        """
        Writes a provisioning decision with compare-and-set.
        A conflicting write that was itself a decision wins; one that left the game
        Undecided (an announcement, say) is re-applied on top.
        """
        for _ in range(self.decision_write_attempts):
            try:
                return await self.store.transition_game(game.key, mutation, game.version)
            except Conflict:
                game = await self.store.get_game(game.key)
                self._require_undecided(game)
        raise Conflict(f"game {game.key} kept changing, try again")

    async def decide_host(self, key: SlotKey) -> Game:
        game = await self.store.get_game(key)
        self._require_undecided(game)
        guild = await self.store.get_guild(game.guild_id)

        reservation_id = await self.reservations.reserve(
            guild.serveme_api_key,
            game.timestamp,
            self.game_duration,
            first_map=game.first_map,
            game_format=game.game_format,
            deadline=self.call_deadline,
        )

        def mutation(g: Game) -> Game:
            return replace(g, reservation_id=reservation_id, state=GameState.HOSTED)

        recorded = False
        try:
            game = await self._write_decision(game, mutation)
            recorded = True
        finally:
            if not recorded:
                # also reached on cancellation
                await asyncio.shield(self._release_unrecorded(guild.serveme_api_key, key, reservation_id))

        logger.info("Game hosted", extra={'slot': str(key), 'reservation_id': reservation_id})
        return game

    async def _release_unrecorded(self, api_key: Optional[str], key: SlotKey, reservation_id: int) -> None:
        """Hands back a fresh booking unless the host decision using it was committed after all."""
        current = await self.store.find_game(key)
        if current is not None and current.reservation_id == reservation_id:
            return
        logger.info("Host decision not recorded, releasing fresh reservation",
                    extra={'slot': str(key), 'reservation_id': reservation_id})
        try:
            await self._release(api_key, reservation_id)
        except ReservationUnavailable:
            logger.error("Could not release orphaned reservation",
                         extra={'slot': str(key), 'reservation_id': reservation_id}, exc_info=True)

    async def decide_join(self, key: SlotKey, connect: str) -> Game:
        info = ConnectInfo.parse(connect)
        game = await self.store.get_game(key)
        self._require_undecided(game)

        def mutation(g: Game) -> Game:
            return replace(g, server_ip_and_port=info.ip_and_port, server_password=info.password, state=GameState.JOINED)

        game = await self._write_decision(game, mutation)
        logger.info("Game joined", extra={'slot': str(key), 'server': info.ip_and_port})
        return game

    # ----------------------------------------------------------------
    # Configuration
    # ----------------------------------------------------------------

    async def configure_game(self, key: SlotKey) -> Game:
        """
        Hosted: pushes map and password once the reservation has a live server.
        Joined: bookkeeping only. Returns the Game, still Hosted if the server is not ready.
        """
        async with self._configure_locks.hold(key):
            game = await self.store.get_game(key)

            if game.state is GameState.CONFIGURED:
                return game
            if game.state is GameState.JOINED:
                game = await self.store.transition_game(
                    key, lambda g: replace(g, state=GameState.CONFIGURED), game.version
                )
                logger.info("Joined game marked configured", extra={'slot': str(key)})
                return game
            if game.state is not GameState.HOSTED:
                raise IllegalTransition(f"game {key} cannot be configured while {game.state.value}")

            return await self._configure_hosted(game)

    async def _configure_hosted(self, game: Game) -> Game:
        key = game.key
        guild = await self.store.get_guild(game.guild_id)
        reservation = await self.reservations.get_reservation(
            guild.serveme_api_key, game.reservation_id, deadline=self.call_deadline
        )
        if reservation is None or reservation.is_over:
            reservation_id = game.reservation_id
            game = await self._forget_reservation(game)
            if game.state is GameState.UNDECIDED:
                await self._needs_attention(game, f"reservation {reservation_id} no longer exists")
            raise ReservationUnavailable(f"reservation {reservation_id} for game {key} is gone")
        if not reservation.is_ready:
            logger.debug("Reservation not ready yet", extra={'slot': str(key), 'status': reservation.status})
            return game

        try:
            await self.configurator.configure(
                reservation.server_address,
                reservation.rcon,
                game.first_map,
                reservation.password,
                hostname=f"{game.kind.value.title()} {game.timestamp:%Y-%m-%d %H:%M} UTC",
                deadline=self.call_deadline,
            )
        except ConfigurationFailed:
            game = await self._apply(game, lambda g: replace(g, config_attempts=g.config_attempts + 1))
            logger.warning(
                "Configuration attempt failed",
                extra={'slot': str(key), 'attempt': game.config_attempts, 'max_attempts': self.max_configuration_attempts}
            )
            if game.config_attempts == self.max_configuration_attempts:
                await self._needs_attention(game, "server configuration keeps failing")
            raise

        def configured(g: Game) -> Game:
            if g.state is not GameState.HOSTED or g.reservation_id != reservation.id:
                raise IllegalTransition(f"game {key} became {g.state.value} while its server was configured")
            return replace(g, state=GameState.CONFIGURED)

        game = await self._apply(game, configured)
        logger.info("Hosted game configured", extra={'slot': str(key), 'server': reservation.server_address})
        return game

    async def _apply(self, game: Game, mutation: Callable[[Game], Game]) -> Game:
        """
        Compare-and-set for mutations that hold on top of any concurrent write:
        a Conflict re-reads the game and applies the mutation again.
        """
        for _ in range(self.decision_write_attempts):
            try:
                return await self.store.transition_game(game.key, mutation, game.version)
            except Conflict:
                game = await self.store.get_game(game.key)
        raise Conflict(f"game {game.key} kept changing, try again")

    async def _forget_reservation(self, game: Game) -> Game:
        """Puts a game whose booking vanished back to Undecided, unless it already moved on."""
        reservation_id = game.reservation_id

        def forget(g: Game) -> Game:
            if g.reservation_id != reservation_id or g.state not in (GameState.HOSTED, GameState.CONFIGURED):
                return g
            return replace(g, reservation_id=None, state=GameState.UNDECIDED, config_attempts=0)

        game = await self._apply(game, forget)
        if game.state is GameState.UNDECIDED:
            logger.warning("Stored reservation is gone, game is undecided again",
                           extra={'slot': str(game.key), 'reservation_id': reservation_id})
        return game

    # ----------------------------------------------------------------
    # Live server
    # ----------------------------------------------------------------

    async def _live_reservation(self, game: Game):
        if game.reservation_id is None or game.state not in (GameState.HOSTED, GameState.CONFIGURED):
            raise IllegalTransition(f"game {game.key} is not running on a server we reserved")
        guild = await self.store.get_guild(game.guild_id)
        reservation = await self.reservations.get_reservation(
            guild.serveme_api_key, game.reservation_id, deadline=self.call_deadline
        )
        if reservation is None or reservation.is_over:
            raise ReservationUnavailable(f"reservation {game.reservation_id} for game {game.key} is gone")
        if not reservation.is_ready:
            raise IllegalTransition(f"the server for game {game.key} is not up yet")
        return reservation

    async def change_map(self, key: SlotKey, map_name: str) -> Ack:
        """
        Switches a configured server to `map_name` with the league config for that map.
        Before configuration the map comes from the Game itself, see edit_game.
        """
        async with self._configure_locks.hold(key):
            game = await self.store.get_game(key)
            if game.state is not GameState.CONFIGURED:
                raise IllegalTransition(f"game {key} cannot change map while {game.state.value}")
            reservation = await self._live_reservation(game)
            server_config = server_config_for(map_name, game.game_format)
            ack = await self.configurator.configure(
                reservation.server_address,
                reservation.rcon,
                map_name,
                None,
                server_config=server_config.name if server_config else None,
                deadline=self.call_deadline,
            )
        logger.info("Map changed", extra={'slot': str(key), 'map': map_name, 'server': reservation.server_address})
        return ack

    async def run_rcon(self, key: SlotKey, command: str) -> str:
        """Runs one rcon command on the game's reserved server and returns the reply."""
        game = await self.store.get_game(key)
        reservation = await self._live_reservation(game)
        return await self.configurator.execute(
            reservation.server_address, reservation.rcon, command, deadline=self.call_deadline
        )

    # ----------------------------------------------------------------
    # Completion and cancellation
    # ----------------------------------------------------------------

    async def complete_game(self, key: SlotKey) -> Game:
        """
        Official games complete once the stats site reports a final result; until then the
        Game is returned unchanged. Scrims complete on request once their slot has started.
        """
        game = await self.store.get_game(key)
        if game.state is GameState.COMPLETED:
            return game
        if game.state is not GameState.CONFIGURED:
            raise IllegalTransition(f"game {key} cannot be completed while {game.state.value}")

        result = None
        if game.kind is GameKind.OFFICIAL:
            result = await self.results.get_result(game.rgl_match_id, deadline=self.call_deadline)
            if not result.finalized:
                logger.debug("Official result not final yet", extra={'slot': str(key), 'match_id': game.rgl_match_id})
                return game
        elif self.clock() < normalize_timestamp(game.timestamp):
            raise IllegalTransition(f"scrim {key} has not started yet")

        if game.reservation_id is not None:
            guild = await self.store.get_guild(game.guild_id)
            await self._release(guild.serveme_api_key, game.reservation_id)

        game = await self.store.transition_game(
            key, lambda g: replace(g, state=GameState.COMPLETED, result=result), game.version
        )
        logger.info("Game completed", extra={'slot': str(key), 'kind': game.kind.value,
                                             'winner': result.winner if result else None})
        return game

    async def cancel_game(self, key: SlotKey) -> Game:
        game = await self.store.get_game(key)
        if game.state is GameState.CANCELLED:
            return game
        if game.state is GameState.COMPLETED:
            raise IllegalTransition(f"game {key} is already completed")

        if game.reservation_id is not None:
            guild = await self.store.get_guild(game.guild_id)
            await self._release(guild.serveme_api_key, game.reservation_id)

        game = await self.store.transition_game(
            key, lambda g: replace(g, state=GameState.CANCELLED), game.version
        )
        logger.info("Game cancelled", extra={'slot': str(key), 'reservation_id': game.reservation_id})
        return game

    async def _release(self, api_key: Optional[str], reservation_id: int) -> None:
        for attempt in range(1, self.release_attempts + 1):
            try:
                await self.reservations.release(api_key, reservation_id, deadline=self.call_deadline)
                return
            except ReservationUnavailable:
                if attempt == self.release_attempts:
                    raise
                logger.warning("Release failed, trying again",
                               extra={'reservation_id': reservation_id, 'attempt': attempt})

    # ----------------------------------------------------------------
    # Background work
    # ----------------------------------------------------------------

    async def sweep(self) -> SweepReport:
        """Retries pending configuration, polls official results and expires stale slots."""
        report = SweepReport()
        now = self.clock()

        for game in await self.store.list_games(states=[GameState.HOSTED, GameState.JOINED]):
            if game.config_attempts >= self.max_configuration_attempts:
                continue
            try:
                updated = await self.configure_game(game.key)
            except SchedulingError as e:
                report.failures[game.key] = e
                logger.warning("Sweep could not configure game", extra={'slot': str(game.key), 'error': repr(e)})
                continue
            if updated.state is GameState.CONFIGURED:
                report.configured.append(game.key)

        for game in await self.store.list_games(states=[GameState.CONFIGURED]):
            if game.kind is not GameKind.OFFICIAL or normalize_timestamp(game.timestamp) > now:
                continue
            try:
                updated = await self.complete_game(game.key)
            except SchedulingError as e:
                report.failures[game.key] = e
                log = logger.info if isinstance(e, FetchFailed) else logger.warning
                log("Sweep could not complete official game", extra={'slot': str(game.key), 'error': repr(e)})
                continue
            if updated.state is GameState.COMPLETED:
                report.completed.append(game.key)

        if self.scrim_expiry_enabled:
            expired = await self.store.expire_scrims(now - self.scrim_expiry_grace)
            report.expired_scrims.extend(s.key for s in expired)

        return report

    async def reconcile_reservations(self) -> list[SlotKey]:
        """
        Run at startup: a stored reservation id is only trusted once the provider confirms it.
        Games whose reservation vanished go back to Undecided. Returns their keys.
        """
        reverted = []
        for game in await self.store.list_games(states=[GameState.HOSTED, GameState.CONFIGURED]):
            if game.reservation_id is None:
                continue
            try:
                guild = await self.store.get_guild(game.guild_id)
                valid = await self.reservations.reconcile(
                    guild.serveme_api_key, game.reservation_id, deadline=self.call_deadline
                )
            except SchedulingError as e:
                logger.warning("Could not verify stored reservation",
                               extra={'slot': str(game.key), 'reservation_id': game.reservation_id, 'error': repr(e)})
                continue
            if valid:
                continue

            game = await self._forget_reservation(game)
            if game.state is not GameState.UNDECIDED:
                continue
            await self._needs_attention(game, "the reservation for this game no longer exists")
            reverted.append(game.key)
        return reverted

    async def _needs_attention(self, game: Game, reason: str) -> None:
        logger.error("Game needs manual follow-up", extra={'slot': str(game.key), 'reason': reason})
        if self.on_needs_attention is not None:
            await self.on_needs_attention(game, reason)
