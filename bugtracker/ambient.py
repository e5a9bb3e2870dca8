"""
Ambient context classification for plain, non-reply messages.

People rarely reply properly when discussing a bug, so plain messages are offered
to the AI analyzer together with the channel's most recently active open bugs and
the last few messages of the channel. When it is unsure the analyzer is told to
prefer attaching, losing context being worse than over-attaching.
"""
import logging
from typing import List, Optional, Sequence

from .analyzer import MessageAnalyzer
from .config import AMBIENT_CANDIDATE_LIMIT
from .database import DatabaseManager
from .gateway import ChatMessage
from .models import Bug
from .outcome import Outcome
from .recent import RecentMessage

log = logging.getLogger("red.bugtracker.ambient")


class AmbientClassifier:
    def __init__(self, db: DatabaseManager, analyzer: Optional[MessageAnalyzer] = None,
                 candidate_limit: int = AMBIENT_CANDIDATE_LIMIT):
        self.db = db
        self.analyzer = analyzer
        self.candidate_limit = candidate_limit

    async def candidates(self, channel_id: int) -> List[Bug]:
        return await self.db.get_recently_active_bugs(channel_id, self.candidate_limit)

    async def classify(self, message: ChatMessage, candidates: Sequence[Bug],
                       recent: Sequence[RecentMessage]) -> Optional[Bug]:
        """Return the candidate bug the message should be attached to, if any."""
        if self.analyzer is None:
            return None
        if not candidates:
            return None

        result = await self.analyzer.should_attach(message.content, message.author_name, candidates, recent)
        if not result.should_add:
            log.debug(f"Message {message.id} left unattached: {result.reasoning}")
            return None

        for bug in candidates:
            if bug.id == result.bug_id:
                log.debug(f"Message {message.id} belongs to bug #{bug.id} ({result.confidence.value}): "
                          f"{result.reasoning}")
                return bug

        log.warning(f"Analyzer picked bug #{result.bug_id} for message {message.id}, which was not offered")
        return None

    async def classify_message(self, message: ChatMessage, recent: Sequence[RecentMessage]) -> Optional[Bug]:
        """Look up the channel's candidates and classify the message against them."""
        if self.analyzer is None:
            return None
        candidates = await self.candidates(message.channel_id)
        return await self.classify(message, candidates, recent)

    async def attach(self, message: ChatMessage, bug: Bug) -> Outcome:
        update = await self.db.add_bug_update(
            bug_id=bug.id,
            message_id=message.id,
            author_id=message.author_id,
            author_name=message.author_name,
            content=message.content,
            created_at=message.created_at,
            jump_url=message.jump_url,
            **message.attachment_fields(),
        )
        if update is None:
            return Outcome.DUPLICATE
        log.info(f"Added {message.author_name}'s message {message.id} to bug #{bug.id} as context")
        return Outcome.ATTACHED_CONTEXT
