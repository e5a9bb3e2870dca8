"""
Chat gateway used by the reconciliation engine.

The engine only ever talks to a ChatGateway and only ever sees ChatMessage values,
so history scans and reaction sweeps can run against anything that can page
through a channel. DiscordGateway is the discord.py implementation used by the cog.
"""
import datetime
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

import discord

from .helpers import build_jump_url
from .models import Reaction

log = logging.getLogger("red.bugtracker.gateway")


def emoji_name(emoji: Union[str, discord.Emoji, discord.PartialEmoji]) -> str:
    """Name used to store an emoji: the character itself for unicode, else the custom emoji name."""
    if isinstance(emoji, str):
        return emoji
    return emoji.name or str(emoji)


@dataclass
class ChatMessage:
    id: int
    channel_id: int
    author_id: int
    author_name: str
    content: str
    created_at: datetime.datetime
    guild_id: Optional[int] = None
    reply_to_id: Optional[int] = None
    author_is_bot: bool = False
    jump_url: str = ""
    reactions: List[Reaction] = field(default_factory=list)
    image_urls: List[str] = field(default_factory=list)
    source: Any = field(default=None, compare=False, repr=False)

    def __post_init__(self):
        if not self.jump_url:
            self.jump_url = build_jump_url(self.guild_id, self.channel_id, self.id)

    def attachment_fields(self) -> dict:
        """Attachment descriptor stored on a BugUpdate made from this message."""
        if not self.image_urls:
            return {}
        return {"attachment_type": "screenshot", "attachment_url": self.image_urls[0]}

    @classmethod
    def from_discord(cls, message: discord.Message) -> "ChatMessage":
        """
        Convert a discord.py message.

        Reactions carry counts only; user lists need an extra request per reaction
        and are fetched by ChatGateway.fetch_reactions when a snapshot is stored.
        """
        reply_to_id = None
        if message.reference is not None and message.reference.message_id:
            reply_to_id = message.reference.message_id

        image_urls = [
            attachment.url for attachment in message.attachments
            if (attachment.content_type or "").startswith("image/")
        ]

        return cls(
            id=message.id,
            channel_id=message.channel.id,
            guild_id=message.guild.id if message.guild else None,
            author_id=message.author.id,
            author_name=message.author.name,
            content=message.content or "",
            created_at=message.created_at,
            reply_to_id=reply_to_id,
            author_is_bot=message.author.bot,
            jump_url=message.jump_url,
            reactions=[Reaction(emoji=emoji_name(r.emoji), count=r.count) for r in message.reactions],
            image_urls=image_urls,
            source=message,
        )


class ChatGateway:
    """Calls the engine makes back into the chat platform."""

    async def wait_until_ready(self) -> None:
        raise NotImplementedError

    async def channel_name(self, channel_id: int) -> str:
        raise NotImplementedError

    async def fetch_history(self, channel_id: int, *, limit: int, before: Optional[int] = None,
                            after: Optional[int] = None) -> List[ChatMessage]:
        """
        Fetch one page of a channel's history.

        With `after` the page starts right after that id; with `before` it ends
        right before it. Callers must not rely on the order of the returned page.
        """
        raise NotImplementedError

    async def fetch_message(self, channel_id: int, message_id: int) -> Optional[ChatMessage]:
        """Fetch a single message, or None if it was deleted."""
        raise NotImplementedError

    async def fetch_reactions(self, message: ChatMessage) -> List[Reaction]:
        """Fetch the full reaction state of a message, including who reacted."""
        raise NotImplementedError


class DiscordGateway(ChatGateway):
    def __init__(self, bot):
        self.bot = bot

    async def wait_until_ready(self) -> None:
        await self.bot.wait_until_red_ready()

    async def _get_channel(self, channel_id: int):
        channel = self.bot.get_channel(channel_id)
        if channel is None:
            channel = await self.bot.fetch_channel(channel_id)
        return channel

    async def channel_name(self, channel_id: int) -> str:
        try:
            channel = await self._get_channel(channel_id)
        except discord.HTTPException:
            return "unknown"
        return getattr(channel, "name", None) or "unknown"

    async def fetch_history(self, channel_id: int, *, limit: int, before: Optional[int] = None,
                            after: Optional[int] = None) -> List[ChatMessage]:
        channel = await self._get_channel(channel_id)
        kwargs = {"limit": limit}
        if after is not None:
            kwargs["after"] = discord.Object(id=after)
            kwargs["oldest_first"] = True
        if before is not None:
            kwargs["before"] = discord.Object(id=before)
        return [ChatMessage.from_discord(message) async for message in channel.history(**kwargs)]

    async def fetch_message(self, channel_id: int, message_id: int) -> Optional[ChatMessage]:
        channel = await self._get_channel(channel_id)
        try:
            message = await channel.fetch_message(message_id)
        except discord.NotFound:
            return None
        return ChatMessage.from_discord(message)

    async def fetch_reactions(self, message: ChatMessage) -> List[Reaction]:
        source = message.source
        if source is None:
            channel = await self._get_channel(message.channel_id)
            source = await channel.fetch_message(message.id)

        reactions = []
        for reaction in source.reactions:
            try:
                users = [user.name async for user in reaction.users(limit=100)]
            except discord.HTTPException as e:
                log.debug(f"Could not fetch reactors of {reaction.emoji} on {message.id}: {e}")
                users = []
            reactions.append(Reaction(emoji=emoji_name(reaction.emoji), count=reaction.count, users=users))
        return reactions
