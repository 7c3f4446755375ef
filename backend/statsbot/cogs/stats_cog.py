"""
Statistics Cog
Feeds Discord message and voice events into the stats engine and answers /stats
"""
from typing import Optional
import discord
from discord import app_commands
from discord.ext import commands
from structlog import get_logger

from backend.statsbot.config import StatsBotSettings, settings
from backend.statsbot.services.analytics import AnalyticsEngine
from backend.statsbot.services.ingestor import EventIngestor
from backend.statsbot.utils import CommandRateLimiter, utc_now

logger = get_logger()

# Per-day lines shown in /stats me; keeps the field under the embed value limit
SERIES_DAYS = 7


def _channel_id(state: Optional[discord.VoiceState]) -> Optional[int]:
    if state is None or state.channel is None:
        return None
    return state.channel.id


class StatsCog(commands.Cog):
    """Activity collection and read-back for Discord server members"""

    stats_group = app_commands.Group(name="stats", description="View your stats or server stats")

    def __init__(self, bot, ingestor: EventIngestor, analytics: AnalyticsEngine,
                 config: Optional[StatsBotSettings] = None,
                 rate_limiter: Optional[CommandRateLimiter] = None):
        self.bot = bot
        self.ingestor = ingestor
        self.analytics = analytics
        self.config = config or settings
        self.rate_limiter = rate_limiter or CommandRateLimiter(self.config.COMMAND_RATE_LIMIT)
        self.window_days = self.config.STATS_WINDOW_DAYS
        self.top_channels_limit = self.config.TOP_CHANNELS_LIMIT
        self.leaderboard_limit = self.config.LEADERBOARD_LIMIT

    @commands.Cog.listener()
    async def on_ready(self):
        """Pick up members that were already in voice when the bot started"""
        resumed = self.sync_voice_sessions()
        logger.info("Stats tracking ready", resumed_voice_sessions=resumed)

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message):
        """
        Track message activity for statistics

        Args:
            message: Discord message event
        """
        if message.author.bot:
            return
        self.ingestor.on_message(message.author.id, message.channel.id, message.created_at)

    @commands.Cog.listener()
    async def on_voice_state_update(self, member: Optional[discord.Member], before: discord.VoiceState,
                                    after: discord.VoiceState):
        """
        Track voice channel activity

        Args:
            member: Discord member
            before: Previous voice state
            after: Current voice state
        """
        self.ingestor.on_voice_transition(
            member.id if member is not None else None,
            _channel_id(before),
            _channel_id(after),
            utc_now(),
        )

    def sync_voice_sessions(self) -> int:
        """Open sessions for members currently connected to voice (after a restart)"""
        tracker = self.ingestor.voice_tracker
        guilds = self.bot.guilds
        if self.config.DISCORD_GUILD_ID:
            guilds = [g for g in guilds if g.id == self.config.DISCORD_GUILD_ID]

        now = utc_now()
        resumed = 0
        for guild in guilds:
            for member in guild.members:
                if member.voice is None or member.voice.channel is None:
                    continue
                if tracker.resume(str(member.id), str(member.voice.channel.id), now):
                    resumed += 1
        return resumed

    async def _check_cooldown(self, interaction: discord.Interaction) -> bool:
        retry_after = self.rate_limiter.retry_after(interaction.user.id)
        if retry_after > 0:
            await interaction.response.send_message(
                f"⏰ You're doing that too fast. Try again in {retry_after:.1f}s.", ephemeral=True
            )
            return False
        return True

    def build_user_embed(self, user: discord.abc.User) -> discord.Embed:
        summary = self.analytics.user_summary(user.id, days=self.window_days, top_n=self.top_channels_limit)
        days = summary['window_days']

        embed = discord.Embed(
            title=f"📊 Stats for {user.display_name}",
            color=discord.Color.green(),
            timestamp=utc_now()
        )
        embed.add_field(name="🏆 Rank", value=f"#{summary['rank']}" if summary['rank'] else "Unranked", inline=True)
        embed.add_field(name="💬 Messages (1d)", value=f"{summary['messages_1d']:,}", inline=True)
        embed.add_field(name=f"💬 Messages ({days}d)", value=f"{summary['messages_window']:,}", inline=True)
        embed.add_field(name="🎤 Voice (1d)", value=f"{summary['voice_hours_1d']}h", inline=True)
        embed.add_field(name=f"🎤 Voice ({days}d)", value=f"{summary['voice_hours_window']}h", inline=True)

        channels_text = "\n".join(
            f"{i + 1}. <#{channel_id}> ({count})"
            for i, (channel_id, count) in enumerate(summary['top_channels'])
        )
        embed.add_field(name="📢 Top Channels", value=channels_text or "No data", inline=False)

        series = self.analytics.daily_series(user.id, days=SERIES_DAYS)
        series_text = "\n".join(
            f"`{point.date}` {point.messages:,} msgs, {point.voice_hours}h voice" for point in series
        )
        embed.add_field(name=f"📈 Last {SERIES_DAYS} Days", value=series_text, inline=False)
        embed.set_footer(text=f"Last {days} days, UTC")
        return embed

    def build_server_embed(self, guild_name: str) -> discord.Embed:
        summary = self.analytics.server_summary(days=self.window_days)
        embed = discord.Embed(
            title=f"📊 {guild_name} - Last {summary['window_days']} Days",
            color=discord.Color.blurple(),
            timestamp=utc_now()
        )
        embed.add_field(name="💬 Messages", value=f"{summary['messages']:,}", inline=True)
        embed.add_field(name="🎤 Voice Time", value=f"{summary['voice_hours']}h", inline=True)
        embed.add_field(name="👥 Active Users", value=str(summary['active_users']), inline=True)

        leaders = self.analytics.leaderboard(days=self.window_days, limit=self.leaderboard_limit)
        leaders_text = "\n".join(
            f"{i + 1}. <@{user_id}> ({count})" for i, (user_id, count) in enumerate(leaders) if count
        )
        embed.add_field(name="🏆 Most Active", value=leaders_text or "No data", inline=False)
        return embed

    @stats_group.command(name="me", description="View your personal stats")
    async def stats_me(self, interaction: discord.Interaction):
        if not await self._check_cooldown(interaction):
            return
        try:
            await interaction.response.send_message(embed=self.build_user_embed(interaction.user))
            logger.info("Statistics command executed", user_id=interaction.user.id, subcommand="me")
        except discord.HTTPException as e:
            logger.error("Error replying to /stats me", user_id=interaction.user.id, error=str(e))

    @stats_group.command(name="server", description="View overall server stats")
    async def stats_server(self, interaction: discord.Interaction):
        if not await self._check_cooldown(interaction):
            return
        if len(self.analytics.store) == 0:
            await interaction.response.send_message("No stats available yet.", ephemeral=True)
            return
        guild_name = interaction.guild.name if interaction.guild else "Server"
        try:
            await interaction.response.send_message(embed=self.build_server_embed(guild_name))
            logger.info("Statistics command executed", user_id=interaction.user.id, subcommand="server")
        except discord.HTTPException as e:
            logger.error("Error replying to /stats server", user_id=interaction.user.id, error=str(e))
