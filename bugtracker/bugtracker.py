import asyncio
import contextlib
import datetime
import logging
from typing import Optional

import discord
from dateutil import parser as date_parser
from discord.ext import tasks
from redbot.core import commands, Config
from redbot.core.bot import Red
from redbot.core.data_manager import cog_data_path

from .analyzer import MessageAnalyzer
from .commands import BugTrackerCommandsMixin
from .config import CONFIG_IDENTIFIER, DEFAULT_GLOBAL_CONFIG
from .database import DatabaseManager
from .gateway import ChatMessage, DiscordGateway, emoji_name
from .reaction_sync import ReactionSync
from .reconcile import ChannelLocks, ReconciliationEngine


class BugTracker(BugTrackerCommandsMixin, commands.Cog):
    """
    Track bugs and feature requests posted in Discord channels.

    Features:
    - Messages starting with ▶️ open a bug (or a feature request)
    - Replies, and replies to replies, are collected into the bug's thread
    - ✅ in a reply, as a reaction, or as a standalone message closes a bug
    - Optional AI-assisted matching of standalone ✅ messages and loose discussion
    - Resumable history scans so nothing posted while offline is missed
    """
    __author__ = "Mosley"
    __version__ = "1.0.0"

    def __init__(self, bot: Red):
        self.bot = bot
        self.log = logging.getLogger("red.bugtracker")
        self.config = Config.get_conf(self, identifier=CONFIG_IDENTIFIER, force_registration=True)
        self.config.register_global(**DEFAULT_GLOBAL_CONFIG)

        self.db_manager = DatabaseManager()
        self.gateway = DiscordGateway(bot)
        self.locks = ChannelLocks()
        self.engine = ReconciliationEngine(self.db_manager, self.gateway, locks=self.locks)
        self.reaction_sync = ReactionSync(self.db_manager, self.gateway, locks=self.locks)

        self._startup_task: Optional[asyncio.Task] = None
        self._startup_done = asyncio.Event()

    async def cog_load(self):
        url = await self.config.db_url() or f"sqlite+aiosqlite:///{cog_data_path(self) / 'bugs.db'}"
        if not await self.db_manager.connect(url):
            self.log.error("Bug database is unavailable, bug tracking stays disabled until the cog is reloaded")
            return

        self.engine.backfill_ambient = await self.config.backfill_ambient()
        await self.refresh_analyzer()
        await self.refresh_monitored()
        self.log.info(f"Monitoring {len(self.engine.monitored)} channel(s)")

        self._startup_task = asyncio.create_task(self._startup())

        try:
            self.reaction_sync_task.change_interval(minutes=await self.config.reaction_sync_minutes())
            if not self.reaction_sync_task.is_running():
                self.reaction_sync_task.start()
        except Exception as e:
            self.log.error(f"Failed to start reaction sync: {e}")

    async def cog_unload(self):
        if self.reaction_sync_task.is_running():
            self.reaction_sync_task.cancel()

        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._startup_task

        if self.db_manager.is_connected():
            await self.engine.flush_live_positions()
        await self.db_manager.disconnect()

    async def _startup(self):
        """Backfill monitored channels once the bot is ready."""
        await self.gateway.wait_until_ready()
        try:
            if await self.config.scan_on_startup():
                self.log.info("Scanning monitored channels for messages missed while offline")
                results = await self.engine.scan_all(
                    since=await self.get_scan_since(),
                    max_messages=await self.config.scan_max_messages(),
                )
                self.log.info(f"Startup scan finished for {len(results)} channel(s)")
        except Exception:
            self.log.exception("Startup scan failed")
        finally:
            self._startup_done.set()

    async def refresh_monitored(self):
        """Reload the monitored channel set, falling back to the configured list when none are stored."""
        channel_ids = []
        if self.db_manager.is_connected():
            channel_ids = await self.db_manager.get_monitored_channel_ids()
        if not channel_ids:
            channel_ids = await self.config.fallback_channel_ids()
        self.engine.set_monitored(channel_ids)

    async def refresh_analyzer(self):
        """Rebuild the AI analyzer from config. No API key means no analyzer."""
        conf = await self.config.all()
        if conf["anthropic_api_key"]:
            self.engine.analyzer = MessageAnalyzer(
                conf["anthropic_api_key"], model=conf["ai_model"], timeout=conf["ai_timeout"]
            )
            self.log.info(f"AI-assisted matching enabled ({conf['ai_model']})")
        else:
            self.engine.analyzer = None

    async def get_scan_since(self) -> Optional[datetime.datetime]:
        value = await self.config.scan_since_date()
        if not value:
            return None
        try:
            return date_parser.isoparse(value)
        except ValueError:
            self.log.warning(f"Ignoring invalid scan_since_date {value!r}")
            return None

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message):
        """Classify new messages in monitored channels."""
        if message.author.bot or not self.engine.is_monitored(message.channel.id):
            return
        await self.engine.handle_message(ChatMessage.from_discord(message))

    @commands.Cog.listener()
    async def on_message_edit(self, before: discord.Message, after: discord.Message):
        if after.author.bot or not self.engine.is_monitored(after.channel.id):
            return
        if before.content == after.content:
            return
        await self.engine.handle_edit(ChatMessage.from_discord(after))

    @commands.Cog.listener()
    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent):
        if not self.engine.is_monitored(payload.channel_id):
            return
        await self.engine.handle_reaction(payload.channel_id, payload.message_id, emoji_name(payload.emoji), added=True)

    @commands.Cog.listener()
    async def on_raw_reaction_remove(self, payload: discord.RawReactionActionEvent):
        if not self.engine.is_monitored(payload.channel_id):
            return
        await self.engine.handle_reaction(payload.channel_id, payload.message_id, emoji_name(payload.emoji), added=False)

    @tasks.loop(minutes=30)
    async def reaction_sync_task(self):
        """Periodically pick up ✅ reactions on open bugs."""
        try:
            await self.reaction_sync.sync_open_bugs()
        except Exception:
            self.log.exception("Error in reaction sync task")

    @reaction_sync_task.before_loop
    async def before_reaction_sync_task(self):
        """Wait for the bot and the startup scan before the first sweep."""
        await self.bot.wait_until_red_ready()
        await self._startup_done.wait()
        self.log.debug("Reaction sync task started")
