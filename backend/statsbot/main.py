"""
Stats Bot Main Application
Main entry point for the discord.py stats worker
"""
import asyncio
import signal
import sys
from typing import Optional
import discord
from discord.ext import commands
from structlog import get_logger

from backend.statsbot.cogs.stats_cog import StatsCog
from backend.statsbot.config import StatsBotSettings, settings, validate_config
from backend.statsbot.database import DatabaseManager, StatsRepository, rehydrate_store
from backend.statsbot.errors import ConfigurationError, RehydrationError
from backend.statsbot.services import (
    AggregateStore, AnalyticsEngine, EventIngestor, FlushScheduler, VoiceSessionTracker
)
from backend.statsbot.utils import setup_logging, utc_now

logger = get_logger()


class StatsBot(commands.Bot):
    """Discord bot owning the stats engine for one process lifetime"""

    def __init__(self, config: StatsBotSettings, db_manager: DatabaseManager, store: AggregateStore):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.guild_messages = True
        intents.voice_states = True
        intents.members = True

        super().__init__(
            command_prefix=commands.when_mentioned_or(config.BOT_PREFIX),
            intents=intents,
            help_command=None,
        )

        self.config = config
        self.db_manager = db_manager
        self.store = store
        self.start_time = None
        self._stats_closed = False

        # Initialize services
        self.voice_tracker = VoiceSessionTracker(store)
        self.ingestor = EventIngestor(store, self.voice_tracker)
        self.analytics = AnalyticsEngine(store)
        self.flush_scheduler = FlushScheduler(
            store,
            StatsRepository(db_manager),
            interval_seconds=config.FLUSH_INTERVAL,
        )

    async def setup_hook(self):
        """Setup bot before running"""
        await self.add_cog(StatsCog(self, self.ingestor, self.analytics, self.config))
        self.flush_scheduler.start()
        self.start_time = utc_now()
        logger.info("Bot setup completed", users=len(self.store))

    async def on_ready(self):
        """Event handler for when bot is ready"""
        logger.info(f"Bot logged in as {self.user} (ID: {self.user.id})", guilds=len(self.guilds))
        await self.sync_commands()

    async def sync_commands(self):
        """Sync slash commands to Discord"""
        try:
            if self.config.COMMAND_SYNC_GUILD_ONLY and self.config.DISCORD_GUILD_ID:
                guild = discord.Object(id=self.config.DISCORD_GUILD_ID)
                self.tree.copy_global_to(guild=guild)
                synced = await self.tree.sync(guild=guild)
            else:
                synced = await self.tree.sync()
            logger.info(f"Synced {len(synced)} slash commands")
        except discord.HTTPException as e:
            logger.error("Failed to sync slash commands", error=str(e))

    async def on_disconnect(self):
        """Event handler for bot disconnect"""
        logger.warning("Bot disconnected from Discord Gateway")

    async def on_resumed(self):
        """Event handler for bot resume after disconnect"""
        logger.info("Bot resumed connection to Discord Gateway")

    async def shutdown_stats(self):
        """Stop the flush timer, credit open voice sessions and write everything out"""
        if self._stats_closed:
            return
        self._stats_closed = True
        self.voice_tracker.checkpoint_all(utc_now())
        await self.flush_scheduler.stop(final_flush=True)
        await self.db_manager.dispose()

    async def close(self):
        """Clean shutdown of bot and write-back"""
        logger.info("Bot shutting down, performing cleanup")
        try:
            await self.shutdown_stats()
        finally:
            await super().close()


def setup_signal_handlers(bot: StatsBot):
    """Setup signal handlers for graceful shutdown"""
    loop = asyncio.get_running_loop()

    def _request_close(signum):
        logger.info(f"Received signal {signum}, shutting down bot")
        asyncio.ensure_future(bot.close())

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, _request_close, signum)
        except NotImplementedError:
            # Windows event loops: fall back to KeyboardInterrupt handling
            pass


async def init_engine(config: StatsBotSettings):
    """
    Connect to the durable store and rebuild the aggregate store

    Returns:
        (db_manager, store) tuple

    Raises:
        RehydrationError: if the store cannot be loaded; ingestion must not start
    """
    db_manager = DatabaseManager(
        database_url=config.DATABASE_URL,
        pool_size=config.DATABASE_POOL_SIZE,
        max_overflow=config.DATABASE_MAX_OVERFLOW,
        echo=config.DEBUG
    )
    try:
        await db_manager.wait_for_database(config.DATABASE_CONNECT_ATTEMPTS, config.DATABASE_CONNECT_DELAY)
        await db_manager.create_tables()
        store = await rehydrate_store(StatsRepository(db_manager))
    except RehydrationError:
        await db_manager.dispose()
        raise
    except Exception as e:
        await db_manager.dispose()
        raise RehydrationError(f"Database initialization failed: {e}") from e
    return db_manager, store


async def run_bot(config: Optional[StatsBotSettings] = None):
    """Main function to run the bot"""
    config = config or settings
    if not validate_config(config):
        raise ConfigurationError("DISCORD_BOT_TOKEN must be set to a valid Discord bot token")

    db_manager, store = await init_engine(config)
    bot = StatsBot(config, db_manager, store)
    setup_signal_handlers(bot)

    try:
        async with bot:
            await bot.start(config.DISCORD_BOT_TOKEN)
    finally:
        # Covers login failures where close() was never reached
        await bot.shutdown_stats()
        logger.info("Bot shutdown complete")


def main():
    """Entry point for the bot application"""
    config = settings
    setup_logging()
    try:
        asyncio.run(run_bot(config))
    except KeyboardInterrupt:
        logger.info("Bot interrupted by user")
    except (ConfigurationError, RehydrationError) as e:
        logger.error("Error during initialization", error=str(e))
        sys.exit(1)
    except Exception as e:
        logger.error("Unexpected error", error=str(e), exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    main()
