# src/modules/scheduling/cogs/lifecycle_sweeper.py

import logging

from discord.ext import commands, tasks

from src.core.errors import SchedulingError
from src.modules.scheduling.models import Game

logger = logging.getLogger(__name__)


class LifecycleSweeper(commands.Cog):
    """
    Periodic lifecycle work: pending server configuration, official results, stale slots.
    Games that need a human are announced to the chat layer as the `game_needs_attention` event.
    """

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self.controller = bot.lifecycle_controller
        self.controller.on_needs_attention = self.report_needs_attention
        self.sweep.change_interval(seconds=bot.settings.sweep_interval_seconds)
        self.sweep.start()

    def cog_unload(self):
        """Stop the loop on unload so the cog can be reloaded."""
        self.sweep.cancel()
        self.controller.on_needs_attention = None

    async def report_needs_attention(self, game: Game, reason: str):
        logger.warning(
            "Dispatching game_needs_attention",
            extra={'guild_id': game.guild_id, 'slot': str(game.key), 'reason': reason}
        )
        self.bot.dispatch('game_needs_attention', game, reason)

    @tasks.loop(seconds=60)
    async def sweep(self):
        try:
            report = await self.controller.sweep()
        except SchedulingError:
            logger.error("Lifecycle sweep failed", exc_info=True)
            return

        if report.configured or report.completed or report.expired_scrims:
            logger.info(
                "Lifecycle sweep finished",
                extra={
                    'configured': len(report.configured),
                    'completed': len(report.completed),
                    'expired_scrims': len(report.expired_scrims),
                    'failures': len(report.failures),
                }
            )

    @sweep.before_loop
    async def before_sweep(self):
        await self.bot.wait_until_ready()


async def setup(bot: commands.Bot):
    await bot.add_cog(LifecycleSweeper(bot))
