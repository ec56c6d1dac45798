import discord
from discord.ext import commands
import asyncio
import pathlib
from datetime import timedelta
import aiohttp
from src.core.config import Settings
from src.core.database import Database
from src.modules.scheduling.services.store import SchedulingStore
from src.modules.scheduling.services.reservation_service import ReservationManager
from src.modules.scheduling.services.rcon_service import RconConfigurator
from src.modules.scheduling.services.rgl_service import RglClient
from src.modules.scheduling.services.result_cache import ResultCache
from src.modules.scheduling.services.lifecycle_service import GameLifecycleController
import logging
from src.core.logging_setup import setup_logging

logger = logging.getLogger(__name__)

class ScheduleBot(commands.Bot):
    def __init__(self, settings: Settings):
        logger.info("--- 0. Loading configuration ---")
        self.settings = settings
        self.guild_ids = settings.guild_ids
        if self.guild_ids:
            logger.info(f"Loaded {len(self.guild_ids)} target guild id(s).")
        else:
            logger.info("No GUILD_ID configured, commands sync globally.")

        intents = discord.Intents.default()
        super().__init__(command_prefix="!", intents=intents)

        self.db: Database | None = None
        self.http_session: aiohttp.ClientSession | None = None
        self.store: SchedulingStore | None = None
        self.result_cache: ResultCache | None = None
        self.lifecycle_controller: GameLifecycleController | None = None

    async def setup_hook(self) -> None:
        """
        Async initialisation before the gateway connects.
        Services first, then reservation reconciliation, then cogs.
        """
        settings = self.settings
        logger.info("--- 1. Initialising core services ---")
        self.db = Database(settings.db_name)
        await self.db.connect()
        self.http_session = aiohttp.ClientSession()

        self.store = SchedulingStore(self.db)
        reservations = ReservationManager(
            self.http_session,
            base_url=settings.serveme_base_url,
            retry_policy=settings.reservation_retry,
            preferred_servers=settings.serveme_preferred_servers,
            request_timeout=settings.http_timeout,
        )
        configurator = RconConfigurator(retry_policy=settings.rcon_retry, timeout=settings.rcon_timeout)
        rgl = RglClient(self.http_session, base_url=settings.rgl_api_base_url, request_timeout=settings.http_timeout)
        self.result_cache = ResultCache(rgl.fetch_match_result, ttl=settings.result_cache_ttl, retry_policy=settings.fetch_retry)
        self.lifecycle_controller = GameLifecycleController(
            self.store,
            reservations,
            configurator,
            self.result_cache,
            game_duration=timedelta(minutes=settings.game_duration_minutes),
            max_configuration_attempts=settings.max_configuration_attempts,
            scrim_expiry_enabled=settings.scrim_expiry_enabled,
            scrim_expiry_grace=timedelta(minutes=settings.scrim_expiry_grace_minutes),
        )
        logger.info("Core services ready.")

        logger.info("--- 2. Reconciling stored reservations ---")
        reverted = await self.lifecycle_controller.reconcile_reservations()
        logger.info(f"Reconciliation done, {len(reverted)} game(s) reverted to undecided.")

        logger.info("--- 3. Loading cogs ---")
        await self.load_all_cogs()

        logger.info("--- 4. Syncing application commands ---")
        await self.sync_commands()

    async def sync_commands(self) -> None:
        """
        Publishes the commands registered by chat-layer cogs.
        Skipped when no cog registered any, so an empty tree never wipes commands already live.
        """
        if not self.tree.get_commands():
            logger.info("No application commands registered, skipping sync.")
            return
        if self.guild_ids:
            for guild_id in self.guild_ids:
                guild = discord.Object(id=guild_id)
                self.tree.copy_global_to(guild=guild)
                await self.tree.sync(guild=guild)
                logger.info(f"Commands synced to guild {guild_id}")
        else:
            await self.tree.sync()
            logger.info("Commands synced globally.")

    async def on_ready(self):
        logger.info(f"Connected to Discord as {self.user} (ID: {self.user.id})")

    async def close(self):
        """Disconnects first, then releases our own resources."""
        logger.info("Shutting down...")
        await super().close()
        logger.info("Discord client closed.")

        if self.http_session and not self.http_session.closed:
            await self.http_session.close()
            logger.info("HTTP session closed.")

        if self.db:
            await self.db.close()

        logger.info("All resources released.")

    async def load_all_cogs(self):
        """Loads every cogs/*.py module under src/modules."""
        project_root = pathlib.Path(__file__).parent.parent
        modules_root = project_root / "src" / "modules"

        for path in modules_root.rglob("cogs/*.py"):
            if path.name == "__init__.py":
                continue

            # e.g. src/modules/scheduling/cogs/lifecycle_sweeper.py -> src.modules.scheduling.cogs.lifecycle_sweeper
            module_path = ".".join(path.relative_to(project_root).parts).removesuffix(".py")
            try:
                await self.load_extension(module_path)
                logger.info(f"Loaded: {module_path}")
            except commands.ExtensionError as e:
                logger.error(f"Failed to load {module_path}: {e}", exc_info=True)
                raise


async def main():
    setup_logging()
    settings = Settings.from_env()

    if not settings.discord_token:
        logger.critical("DISCORD_TOKEN is not set. The bot cannot start.")
        return

    bot = ScheduleBot(settings)

    try:
        await bot.start(settings.discord_token)
    except discord.errors.LoginFailure:
        logger.critical("DISCORD_TOKEN was rejected. Check your .env file.")
    finally:
        # runs on normal exit, errors and Ctrl+C alike
        if not bot.is_closed():
            logger.info("Exiting, closing the bot...")
            await bot.close()

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Exited cleanly.")
