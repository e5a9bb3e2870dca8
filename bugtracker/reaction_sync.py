"""
Reaction sweep over open bugs.

Catches ✅ reactions added while the bot was offline. For each open bug the
bug message and then every message of its thread are re-fetched; the first one
carrying the done emoji closes the bug. Every message checked along the way gets
its stored reaction snapshot replaced, so removed reactions disappear as well.
"""
import logging
from typing import List, Optional, Tuple

from .database import DatabaseManager
from .gateway import ChatGateway
from .markers import has_done_reaction
from .models import Bug
from .reconcile import ChannelLocks

log = logging.getLogger("red.bugtracker.reaction_sync")


class ReactionSync:
    def __init__(self, db: DatabaseManager, gateway: ChatGateway, locks: Optional[ChannelLocks] = None):
        self.db = db
        self.gateway = gateway
        self.locks = locks if locks is not None else ChannelLocks()

    async def _thread_messages(self, bug: Bug) -> List[Tuple[int, bool]]:
        updates = await self.db.get_bug_updates(bug.id)
        return [(bug.message_id, False)] + [(update.message_id, True) for update in updates]

    async def sync_bug(self, bug: Bug) -> bool:
        """Refresh the reactions of one bug's thread. Returns True if the bug was closed."""
        for message_id, is_update in await self._thread_messages(bug):
            message = await self.gateway.fetch_message(bug.channel_id, message_id)
            if message is None:
                log.debug(f"Message {message_id} of bug #{bug.id} was deleted, skipping")
                continue

            reactions = await self.gateway.fetch_reactions(message)
            if is_update:
                await self.db.set_update_reactions(message_id, reactions)
            else:
                await self.db.set_bug_reactions(message_id, reactions)

            if has_done_reaction(reactions):
                closed = await self.db.mark_fixed(bug.id)
                if closed:
                    where = "reply" if is_update else "bug"
                    log.info(f"Bug #{bug.id} marked fixed (✅ reaction on {where} {message_id})")
                return closed

        return False

    async def sync_open_bugs(self) -> int:
        """Sweep every open bug. Returns how many were closed."""
        open_bugs = await self.db.get_open_bugs()
        if not open_bugs:
            log.debug("No open bugs to sync reactions for")
            return 0

        log.info(f"Checking {len(open_bugs)} open bugs for new ✅ reactions")
        fixed = 0
        for bug in open_bugs:
            try:
                async with self.locks(bug.channel_id):
                    if await self.sync_bug(bug):
                        fixed += 1
            except Exception:
                log.exception(f"Failed to sync reactions of bug #{bug.id}")

        log.info(f"Reaction sync complete, {fixed} bugs marked fixed")
        return fixed
