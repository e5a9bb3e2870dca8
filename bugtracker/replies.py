"""
Reply chain resolution.

A reply to a bug message, or to any message already stored in a bug's thread,
belongs to that bug. Updates always point at the root bug, so chains of any
depth collapse onto it with at most two lookups.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional

from .database import DatabaseManager
from .gateway import ChatMessage
from .markers import BugStatus, is_completion
from .models import Bug, Reaction
from .outcome import Outcome

log = logging.getLogger("red.bugtracker.replies")


@dataclass
class Resolution:
    bug: Bug
    via_update: bool = False


class ReplyChainResolver:
    def __init__(self, db: DatabaseManager):
        self.db = db

    async def resolve(self, reply_to_id: Optional[int]) -> Optional[Resolution]:
        """Find the bug owning the message being replied to, if it is tracked."""
        if not reply_to_id:
            return None

        bug = await self.db.get_bug_by_message_id(reply_to_id)
        if bug is not None:
            return Resolution(bug=bug)

        bug = await self.db.get_bug_by_update_message_id(reply_to_id)
        if bug is not None:
            return Resolution(bug=bug, via_update=True)

        return None

    async def attach(self, message: ChatMessage, resolution: Resolution,
                     reactions: Optional[List[Reaction]] = None) -> Outcome:
        """
        Append a reply to the resolved bug's thread.

        A reply carrying the ✅ marker also closes the bug if it is still open. The
        close is retried on a duplicate insert so a replay finishes an interrupted one.
        """
        bug = resolution.bug
        update = await self.db.add_bug_update(
            bug_id=bug.id,
            message_id=message.id,
            author_id=message.author_id,
            author_name=message.author_name,
            content=message.content,
            created_at=message.created_at,
            jump_url=message.jump_url,
            reactions=reactions,
            **message.attachment_fields(),
        )
        if update is not None:
            via = "reply chain" if resolution.via_update else "reply"
            log.info(f"Added {message.author_name}'s {via} {message.id} to bug #{bug.id}")

        if is_completion(message.content) and bug.status == BugStatus.OPEN.value:
            if await self.db.mark_fixed(bug.id):
                log.info(f"Bug #{bug.id} completed by reply {message.id} from {message.author_name}")
                return Outcome.CLOSED_BUG

        return Outcome.ATTACHED_UPDATE if update is not None else Outcome.DUPLICATE
