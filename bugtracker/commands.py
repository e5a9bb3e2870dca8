"""
Commands mixin for the BugTracker cog.
Admin commands manage monitored channels and settings, recentbugs lists tracked bugs.
"""

import logging
from typing import Optional

import discord
from dateutil import parser as date_parser
from redbot.core import commands as red_commands, checks
from redbot.core.utils import chat_formatting

from .config import RECENT_BUGS_DEFAULT, RECENT_BUGS_EMBEDS, RECENT_BUGS_MAX
from .helpers import as_utc, shorten
from .markers import BugStatus, BugType, NEW_ISSUE_MARKERS

log = logging.getLogger("red.bugtracker.commands")

STATUS_CHOICES = ("all", "open", "fixed")


def bug_embed(bug) -> discord.Embed:
    """Build the listing embed of a single bug."""
    fixed = bug.status == BugStatus.FIXED.value
    status_emoji = "✅" if fixed else "🔴"
    type_emoji = "🐛" if bug.type == BugType.BUG.value else "✨"

    embed = discord.Embed(
        title=f"{type_emoji} Bug #{bug.id} {status_emoji}",
        description=shorten(bug.content, 200),
        url=bug.jump_url or None,
        color=0x6BCB77 if fixed else 0xFF6B6B,
        timestamp=as_utc(bug.created_at),
    )
    embed.add_field(name="Status", value=bug.status, inline=True)
    embed.add_field(name="Type", value=bug.type, inline=True)
    embed.add_field(name="Author", value=bug.author_name, inline=True)
    embed.add_field(name="Channel", value=f"#{bug.channel_name}", inline=True)
    embed.set_footer(text="Click title to view in Discord")
    return embed


class BugTrackerCommandsMixin:
    """Mixin class providing the bug tracker commands."""

    @red_commands.group()
    @red_commands.guild_only()
    @checks.admin_or_permissions(manage_guild=True)
    async def bugtrackerset(self, ctx):
        """Configure the bug tracker."""
        pass

    # Monitored channels

    @bugtrackerset.command(name="addchannel")
    async def bugtrackerset_addchannel(self, ctx, channel: discord.TextChannel):
        """
        Start tracking bugs in a channel.

        The last few hundred messages of the channel are scanned for existing bugs
        right away. Messages starting with ▶️ are tracked as bugs from then on.
        """
        added = await self.db_manager.add_monitored_channel(
            guild_id=ctx.guild.id,
            channel_id=channel.id,
            channel_name=channel.name,
            added_by_id=ctx.author.id,
            added_by_name=ctx.author.name,
        )
        if not added:
            await ctx.send(f"⚠️ {channel.mention} is already being monitored.")
            return

        await self.refresh_monitored()
        await ctx.send(f"✅ Now monitoring {channel.mention} for bug reports!\n\n🔍 Scanning recent messages for existing bugs...")

        async with ctx.typing():
            stats = await self.engine.scan_recent(channel.id)

        if stats.failed:
            await ctx.send("⚠️ Could not scan all of the history, but the channel is now being monitored.")
            return
        await ctx.send(
            f"✅ Scan complete for {channel.mention}!\n\n"
            f"📊 Found: **{stats.created}** bugs, **{stats.updates}** replies\n"
            f"💡 Messages starting with `{NEW_ISSUE_MARKERS[0]}` will be tracked as bugs."
        )

    @bugtrackerset.command(name="removechannel")
    async def bugtrackerset_removechannel(self, ctx, channel: discord.TextChannel):
        """Stop tracking bugs in a channel. Existing bugs are kept."""
        if await self.db_manager.remove_monitored_channel(channel.id):
            await self.refresh_monitored()
            await ctx.send(f"✅ Stopped monitoring {channel.mention}. Existing bugs from this channel are preserved.")
        else:
            await ctx.send(f"⚠️ {channel.mention} was not being monitored.")

    @bugtrackerset.command(name="deletechannel")
    async def bugtrackerset_deletechannel(self, ctx, channel: discord.TextChannel):
        """Stop tracking a channel and delete every bug recorded from it."""
        was_monitored = await self.db_manager.remove_monitored_channel(channel.id)
        deleted = await self.db_manager.delete_bugs_by_channel(channel.id)
        await self.refresh_monitored()

        if was_monitored or deleted:
            plural = "" if deleted == 1 else "s"
            await ctx.send(f"🗑️ Removed {channel.mention} and deleted **{deleted}** bug{plural} from it.")
        else:
            await ctx.send(f"⚠️ {channel.mention} was not being monitored and had no bugs recorded.")

    @bugtrackerset.command(name="listchannels")
    async def bugtrackerset_listchannels(self, ctx):
        """List the channels being monitored in this server."""
        channels = await self.db_manager.get_monitored_channels(ctx.guild.id)
        if not channels:
            fallback = await self.config.fallback_channel_ids()
            if fallback:
                mentions = ", ".join(f"<#{channel_id}>" for channel_id in fallback)
                await ctx.send(
                    f"📡 **Monitored Channels (fallback list)**\n\nChannels: {mentions}\n\n"
                    f"*Use `{ctx.clean_prefix}bugtrackerset addchannel` to switch to managed channels.*"
                )
            else:
                await ctx.send(
                    f"📡 **No channels are being monitored**\n\n"
                    f"Use `{ctx.clean_prefix}bugtrackerset addchannel` to start tracking bugs in a channel."
                )
            return

        lines = [
            f"• <#{ch.channel_id}> - added by {ch.added_by_name} ({discord.utils.format_dt(as_utc(ch.added_at), 'R')})"
            for ch in channels
        ]
        for page in chat_formatting.pagify(f"📡 **Monitored Channels ({len(channels)})**\n\n" + "\n".join(lines)):
            await ctx.send(page)

    # Settings

    @bugtrackerset.command(name="aikey")
    @checks.is_owner()
    async def bugtrackerset_aikey(self, ctx, api_key: Optional[str] = None):
        """
        Set the Anthropic API key used for AI-assisted matching.

        Leave empty to clear the key and disable AI matching. Your message is deleted
        so the key does not stay in the channel.
        """
        try:
            await ctx.message.delete()
        except discord.HTTPException as e:
            log.warning(f"Could not delete the message holding the API key: {e}")

        await self.config.anthropic_api_key.set(api_key or None)
        await self.refresh_analyzer()
        if api_key:
            await ctx.send("🤖 API key set, AI-assisted matching is enabled.")
        else:
            await ctx.send("API key cleared, AI-assisted matching is disabled.")

    @bugtrackerset.command(name="model")
    @checks.is_owner()
    async def bugtrackerset_model(self, ctx, model: str):
        """Set the Claude model used for AI-assisted matching."""
        await self.config.ai_model.set(model)
        await self.refresh_analyzer()
        await ctx.send(f"AI model set to `{model}`.")
        await ctx.tick()

    @bugtrackerset.command(name="since")
    async def bugtrackerset_since(self, ctx, *, date: Optional[str] = None):
        """
        Set the date history scans start from when a channel has no saved position.

        Accepts an ISO date such as `2024-01-31` or `2024-01-31T12:00:00Z`.
        Leave empty to scan from the beginning of each channel.
        """
        if not date:
            await self.config.scan_since_date.set(None)
            await ctx.send("Scan start date cleared, new channels are scanned from the beginning.")
            return

        try:
            parsed = date_parser.isoparse(date)
        except ValueError:
            await ctx.send("❌ Invalid date. Use an ISO date such as `2024-01-31`.")
            return

        await self.config.scan_since_date.set(parsed.isoformat())
        await ctx.send(f"History scans will start from `{parsed.isoformat()}` when no position is saved.")
        await ctx.tick()

    @bugtrackerset.command(name="backfillambient")
    async def bugtrackerset_backfillambient(self, ctx, enabled: bool):
        """Set whether history scans ask the AI about plain messages too."""
        await self.config.backfill_ambient.set(enabled)
        self.engine.backfill_ambient = enabled
        await ctx.send(f"AI classification during history scans {'enabled' if enabled else 'disabled'}.")

    @bugtrackerset.command(name="syncinterval")
    async def bugtrackerset_syncinterval(self, ctx, minutes: int):
        """Set how often open bugs are checked for ✅ reactions, in minutes."""
        if minutes < 1:
            await ctx.send("❌ The interval must be at least 1 minute.")
            return
        await self.config.reaction_sync_minutes.set(minutes)
        self.reaction_sync_task.change_interval(minutes=minutes)
        await ctx.send(f"Reaction sync interval set to {minutes} minutes.")

    # Maintenance

    @bugtrackerset.command(name="scan")
    async def bugtrackerset_scan(self, ctx, channel: Optional[discord.TextChannel] = None):
        """
        Scan history for bugs now.

        Resumes from the saved position of each channel. Without a channel every
        monitored channel is scanned.
        """
        since = await self.get_scan_since()
        max_messages = await self.config.scan_max_messages()

        async with ctx.typing():
            if channel is not None:
                if not self.engine.is_monitored(channel.id):
                    await ctx.send(f"⚠️ {channel.mention} is not being monitored.")
                    return
                results = {channel.id: await self.engine.scan_channel(channel.id, since=since, max_messages=max_messages)}
            else:
                results = await self.engine.scan_all(since=since, max_messages=max_messages)

        if not results:
            await ctx.send("No channels to scan.")
            return
        lines = [f"<#{channel_id}>: {stats.summary()}" for channel_id, stats in results.items()]
        for page in chat_formatting.pagify("\n".join(lines)):
            await ctx.send(page)

    @bugtrackerset.command(name="syncreactions")
    async def bugtrackerset_syncreactions(self, ctx):
        """Check every open bug for ✅ reactions now."""
        async with ctx.typing():
            fixed = await self.reaction_sync.sync_open_bugs()
        await ctx.send(f"Reaction sync complete, {fixed} bug{'s' if fixed != 1 else ''} marked fixed.")

    @bugtrackerset.command(name="show")
    async def bugtrackerset_show(self, ctx):
        """Show the current bug tracker settings."""
        conf = await self.config.all()
        stats = await self.db_manager.stats() if self.db_manager.is_connected() else None

        embed = discord.Embed(title="BugTracker Configuration", color=await ctx.embed_color())
        embed.add_field(name="Database", value="✅ Connected" if self.db_manager.is_connected() else "❌ Not connected", inline=False)
        embed.add_field(name="AI Matching", value="✅ Enabled" if conf["anthropic_api_key"] else "❌ Disabled", inline=True)
        embed.add_field(name="AI Model", value=conf["ai_model"], inline=True)
        embed.add_field(name="Scan On Startup", value="Yes" if conf["scan_on_startup"] else "No", inline=True)
        embed.add_field(name="Scan Since", value=conf["scan_since_date"] or "Beginning", inline=True)
        embed.add_field(name="Scan Cap", value=str(conf["scan_max_messages"] or "None"), inline=True)
        embed.add_field(name="Backfill AI", value="Yes" if conf["backfill_ambient"] else "No", inline=True)
        embed.add_field(name="Reaction Sync", value=f"Every {conf['reaction_sync_minutes']} minutes", inline=True)
        embed.add_field(name="Monitored Channels", value=str(len(self.engine.monitored)), inline=True)
        if stats:
            embed.add_field(
                name="Bugs",
                value=(f"{stats['total']} total, {stats['open']} open, {stats['fixed']} fixed\n"
                       f"🐛 {stats['bugs']['total']} bugs, ✨ {stats['requests']['total']} requests"),
                inline=False,
            )
        await ctx.send(embed=embed)

    # Listing

    @red_commands.command()
    @red_commands.guild_only()
    async def recentbugs(self, ctx, count: int = RECENT_BUGS_DEFAULT, status: str = "all"):
        """
        Show recent bugs with links to their messages.

        `count` is between 1 and 10, `status` is one of all, open or fixed.
        """
        status = status.lower()
        if status not in STATUS_CHOICES:
            await ctx.send(f"❌ Status must be one of: {', '.join(STATUS_CHOICES)}.")
            return
        count = max(1, min(count, RECENT_BUGS_MAX))
        status_filter = None if status == "all" else BugStatus(status)

        bugs = await self.db_manager.get_bugs(status=status_filter, guild_id=ctx.guild.id, limit=count)
        suffix = f" ({status})" if status_filter else ""
        if not bugs:
            await ctx.send(f"🐛 **No bugs found**{f' with status: {status}' if status_filter else ''}")
            return

        embeds = [bug_embed(bug) for bug in bugs[:RECENT_BUGS_EMBEDS]]
        more = ""
        if len(bugs) > RECENT_BUGS_EMBEDS:
            more = f"\n\n*Showing {RECENT_BUGS_EMBEDS} of {len(bugs)} bugs.*"
        await ctx.send(content=f"🐛 **Recent Bugs**{suffix}{more}", embeds=embeds)
