import datetime
import itertools
from typing import Dict, List, Optional

import pytest

from bugtracker.analyzer import AttachResult, MatchResult
from bugtracker.database import DatabaseManager
from bugtracker.gateway import ChatGateway, ChatMessage
from bugtracker.helpers import datetime_to_snowflake
from bugtracker.models import Reaction
from bugtracker.reconcile import ReconciliationEngine

GUILD = 900
CHANNEL = 111
OTHER_CHANNEL = 222
BASE_TIME = datetime.datetime(2024, 3, 1, 12, 0, tzinfo=datetime.timezone.utc)


class MessageFactory:
    """Builds ChatMessages with strictly increasing, time-ordered snowflake ids."""

    def __init__(self, start: datetime.datetime = BASE_TIME):
        self.now = start
        self._sequence = itertools.count(1)
        self._authors: Dict[str, int] = {}

    def __call__(self, content: str, *, channel_id: int = CHANNEL, author: str = "alice",
                 reply_to=None, bot: bool = False, at: Optional[datetime.datetime] = None) -> ChatMessage:
        self.now = at if at is not None else self.now + datetime.timedelta(seconds=1)
        author_id = self._authors.setdefault(author, 1000 + len(self._authors))
        if isinstance(reply_to, ChatMessage):
            reply_to = reply_to.id
        return ChatMessage(
            id=datetime_to_snowflake(self.now) + next(self._sequence),
            channel_id=channel_id,
            guild_id=GUILD,
            author_id=author_id,
            author_name=author,
            content=content,
            created_at=self.now,
            reply_to_id=reply_to,
            author_is_bot=bot,
        )


class FakeGateway(ChatGateway):
    """In-memory channels with Discord's paging semantics, pages returned newest first."""

    def __init__(self):
        self.channels: Dict[int, List[ChatMessage]] = {}
        self.reactions: Dict[int, List[Reaction]] = {}
        self.deleted = set()
        self.broken = set()
        self.history_calls: List[dict] = []
        self.fail_on_call: Optional[int] = None

    def post(self, message: ChatMessage) -> ChatMessage:
        self.channels.setdefault(message.channel_id, []).append(message)
        return message

    def react(self, message: ChatMessage, emoji: str, *users: str):
        reaction = Reaction(emoji=emoji, count=len(users), users=list(users))
        current = [r for r in self.reactions.get(message.id, []) if r.emoji != emoji]
        self.reactions[message.id] = current + [reaction]
        message.reactions = [Reaction(emoji=r.emoji, count=r.count) for r in self.reactions[message.id]]

    def unreact(self, message: ChatMessage, emoji: str):
        self.reactions[message.id] = [r for r in self.reactions.get(message.id, []) if r.emoji != emoji]
        message.reactions = [Reaction(emoji=r.emoji, count=r.count) for r in self.reactions[message.id]]

    def _live(self, channel_id: int) -> List[ChatMessage]:
        messages = [m for m in self.channels.get(channel_id, []) if m.id not in self.deleted]
        return sorted(messages, key=lambda m: m.id)

    async def wait_until_ready(self):
        return None

    async def channel_name(self, channel_id: int) -> str:
        return f"channel-{channel_id}"

    async def fetch_history(self, channel_id, *, limit, before=None, after=None):
        self.history_calls.append({"channel_id": channel_id, "limit": limit, "before": before, "after": after})
        if self.fail_on_call is not None and len(self.history_calls) == self.fail_on_call:
            raise ConnectionError("gateway went away")

        messages = self._live(channel_id)
        if after is not None:
            page = [m for m in messages if m.id > after][:limit]
        else:
            if before is not None:
                messages = [m for m in messages if m.id < before]
            page = messages[-limit:]
        return list(reversed(page))

    async def fetch_message(self, channel_id, message_id):
        if message_id in self.broken:
            raise ConnectionError("cannot fetch")
        for message in self._live(channel_id):
            if message.id == message_id:
                return message
        return None

    async def fetch_reactions(self, message):
        return [Reaction(emoji=r.emoji, count=r.count, users=list(r.users)) for r in self.reactions.get(message.id, [])]


class FakeAnalyzer:
    """Scripted stand-in for MessageAnalyzer that records every call."""

    def __init__(self, match: Optional[MatchResult] = None, attach: Optional[AttachResult] = None):
        self.match_result = match or MatchResult.declined()
        self.attach_result = attach or AttachResult.declined()
        self.match_calls = []
        self.attach_calls = []

    async def match_completion(self, text, candidates):
        self.match_calls.append({"text": text, "candidates": [bug.id for bug in candidates]})
        return self.match_result

    async def should_attach(self, text, author, candidates, recent):
        self.attach_calls.append({
            "text": text,
            "author": author,
            "candidates": [bug.id for bug in candidates],
            "recent": list(recent),
        })
        return self.attach_result


@pytest.fixture
async def db(tmp_path):
    manager = DatabaseManager()
    assert await manager.connect(f"sqlite+aiosqlite:///{tmp_path / 'bugs.db'}")
    yield manager
    await manager.disconnect()


@pytest.fixture
def make_message():
    return MessageFactory()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(db, gateway):
    return ReconciliationEngine(db, gateway, monitored=[CHANNEL, OTHER_CHANNEL])


@pytest.fixture
def add_bug(db, make_message):
    """Insert a bug straight into the store and return it."""

    async def _add_bug(content: str, *, channel_id: int = CHANNEL, author: str = "alice", status="open"):
        message = make_message(content, channel_id=channel_id, author=author)
        return await db.add_bug(
            message_id=message.id,
            guild_id=GUILD,
            channel_id=channel_id,
            channel_name=f"channel-{channel_id}",
            author_id=message.author_id,
            author_name=author,
            content=content,
            bug_type="bug",
            status=status,
            created_at=message.created_at,
            jump_url=message.jump_url,
        )

    return _add_bug
