"""
Reconciliation engine.

Runs the same classification pipeline for two sources of messages:

- Live events, one message at a time in arrival order per channel
- History scans, in pages of up to 100 messages processed oldest first

Every write is keyed by the Discord message id, so live events and scans can
overlap and replays are harmless. Scans resume from a per-channel watermark
that is only ever moved forward, and only past fully processed pages.
"""
import asyncio
import datetime
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .ambient import AmbientClassifier
from .analyzer import MessageAnalyzer
from .completion import CompletionMatcher
from .config import ADD_CHANNEL_SCAN_LIMIT, HISTORY_BATCH_SIZE, SCAN_PROGRESS_EVERY
from .database import DatabaseManager
from .gateway import ChatGateway, ChatMessage
from .helpers import since_date_lower_bound
from .markers import BugStatus, MessageKind, classify, derive_type, has_done_reaction, is_completion, is_done_emoji
from .models import Reaction
from .outcome import Outcome
from .recent import RecentContextCache
from .replies import ReplyChainResolver

log = logging.getLogger("red.bugtracker.reconcile")


class ChannelLocks:
    """One asyncio.Lock per channel, so a channel is only ever processed by one pass at a time."""

    def __init__(self):
        self._locks: Dict[int, asyncio.Lock] = {}

    def __call__(self, channel_id: int) -> asyncio.Lock:
        lock = self._locks.get(channel_id)
        if lock is None:
            lock = self._locks[channel_id] = asyncio.Lock()
        return lock

    def locked(self, channel_id: int) -> bool:
        lock = self._locks.get(channel_id)
        return lock is not None and lock.locked()


@dataclass
class ScanStats:
    channel_id: int
    scanned: int = 0
    batches: int = 0
    watermark: Optional[int] = None
    failed: bool = False
    outcomes: Counter = field(default_factory=Counter)

    def record(self, outcome: Outcome):
        self.scanned += 1
        self.outcomes[outcome] += 1

    @property
    def created(self) -> int:
        return self.outcomes[Outcome.CREATED_BUG]

    @property
    def updates(self) -> int:
        return self.outcomes[Outcome.ATTACHED_UPDATE] + self.outcomes[Outcome.ATTACHED_CONTEXT]

    @property
    def closed(self) -> int:
        return self.outcomes[Outcome.CLOSED_BUG]

    def summary(self) -> str:
        text = (f"{self.scanned} messages scanned, {self.created} bugs created, "
                f"{self.updates} updates added, {self.closed} bugs closed")
        if self.failed:
            text += " (stopped early after an error)"
        return text


class ReconciliationEngine:
    def __init__(self, db: DatabaseManager, gateway: ChatGateway, analyzer: Optional[MessageAnalyzer] = None, *,
                 recent: Optional[RecentContextCache] = None, locks: Optional[ChannelLocks] = None,
                 backfill_ambient: bool = False, monitored: Iterable[int] = ()):
        self.db = db
        self.gateway = gateway
        self.recent = recent if recent is not None else RecentContextCache()
        self.locks = locks if locks is not None else ChannelLocks()
        self.replies = ReplyChainResolver(db)
        self.completions = CompletionMatcher(db, analyzer)
        self.ambient = AmbientClassifier(db, analyzer)
        self.backfill_ambient = backfill_ambient
        self.monitored: Set[int] = set(monitored)

        self._live_positions: Dict[int, int] = {}
        self._live_failed: Set[int] = set()
        self._backfilled: Set[int] = set()

    @property
    def analyzer(self) -> Optional[MessageAnalyzer]:
        return self.completions.analyzer

    @analyzer.setter
    def analyzer(self, analyzer: Optional[MessageAnalyzer]):
        self.completions.analyzer = analyzer
        self.ambient.analyzer = analyzer

    def set_monitored(self, channel_ids: Iterable[int]):
        self.monitored = set(channel_ids)

    def is_monitored(self, channel_id: int) -> bool:
        return channel_id in self.monitored

    # Classification pipeline

    async def _process(self, message: ChatMessage, *, live: bool) -> Outcome:
        """Classify one message and apply it to the store. Caller holds the channel lock."""
        kind = classify(message.content)

        if kind is MessageKind.NEW_ISSUE:
            return await self._create_bug(message, live=live)

        if message.reply_to_id:
            resolution = await self.replies.resolve(message.reply_to_id)
            if resolution is not None:
                reactions = await self._fetch_reactions(message)
                outcome = await self.replies.attach(message, resolution, reactions)
                # A reply found in history that was already ticked off closes its bug
                if not live and outcome is not Outcome.CLOSED_BUG and has_done_reaction(reactions):
                    if await self.db.mark_fixed(resolution.bug.id):
                        log.info(f"Bug #{resolution.bug.id} marked as fixed (✅ reaction on reply {message.id})")
                        outcome = Outcome.CLOSED_BUG
                self.recent.push(message.channel_id, message.author_name, message.content,
                                 message.created_at, resolution.bug.id)
                return outcome
            if kind is MessageKind.COMPLETION:
                log.info(f"Completion {message.id} replies to untracked message {message.reply_to_id}")
                return Outcome.UNMATCHED
            # Plain reply to something untracked is treated like any other plain message

        if kind is MessageKind.COMPLETION:
            if not live:
                log.debug(f"Skipping standalone completion {message.id} during history scan")
                return Outcome.SKIPPED
            return await self.completions.handle(message)

        if not live and not self.backfill_ambient:
            return Outcome.SKIPPED
        return await self._classify_ambient(message)

    async def _fetch_reactions(self, message: ChatMessage) -> List[Reaction]:
        """Reaction snapshot with user lists, for messages that carry any reactions."""
        if not message.reactions:
            return []
        try:
            return await self.gateway.fetch_reactions(message)
        except Exception as e:
            log.warning(f"Could not fetch reactions of {message.id}, keeping counts only: {e}")
            return list(message.reactions)

    async def _create_bug(self, message: ChatMessage, *, live: bool) -> Outcome:
        reactions = await self._fetch_reactions(message)

        # A bug found in history that was already ticked off starts out fixed
        status = BugStatus.OPEN
        if not live and has_done_reaction(reactions):
            status = BugStatus.FIXED

        bug = await self.db.add_bug(
            message_id=message.id,
            guild_id=message.guild_id,
            channel_id=message.channel_id,
            channel_name=await self.gateway.channel_name(message.channel_id),
            author_id=message.author_id,
            author_name=message.author_name,
            content=message.content,
            bug_type=derive_type(message.content),
            status=status,
            created_at=message.created_at,
            jump_url=message.jump_url,
            reactions=reactions,
        )
        if bug is None:
            return Outcome.DUPLICATE

        self.recent.push(message.channel_id, message.author_name, message.content, message.created_at, bug.id)
        return Outcome.CREATED_BUG

    async def _classify_ambient(self, message: ChatMessage) -> Outcome:
        if not message.content.strip():
            return Outcome.IGNORED

        recent = self.recent.get(message.channel_id)
        bug = await self.ambient.classify_message(message, recent)
        outcome = Outcome.CACHED
        if bug is not None:
            outcome = await self.ambient.attach(message, bug)

        self.recent.push(message.channel_id, message.author_name, message.content, message.created_at,
                         bug.id if bug is not None else None)
        return outcome

    # Live events

    def note_live(self, channel_id: int, message_id: int):
        """Remember the newest message handled live in a channel."""
        if message_id > self._live_positions.get(channel_id, 0):
            self._live_positions[channel_id] = message_id

    async def handle_message(self, message: ChatMessage) -> Outcome:
        if message.author_is_bot or not self.is_monitored(message.channel_id):
            return Outcome.IGNORED

        try:
            async with self.locks(message.channel_id):
                outcome = await self._process(message, live=True)
        except Exception:
            log.exception(f"Error processing message {message.id} in channel {message.channel_id}")
            self._live_failed.add(message.channel_id)
            return Outcome.FAILED

        self.note_live(message.channel_id, message.id)
        return outcome

    async def handle_edit(self, message: ChatMessage) -> Outcome:
        """
        Handle an edited message.

        Tracked messages only get their stored text refreshed, and an edited reply
        that now carries the ✅ marker closes its bug. Anything else is classified
        as if it had just been posted.
        """
        if message.author_is_bot or not self.is_monitored(message.channel_id):
            return Outcome.IGNORED

        try:
            async with self.locks(message.channel_id):
                if not await self.db.set_message_content(message.id, message.content):
                    return await self._process(message, live=True)

                log.debug(f"Refreshed content of edited message {message.id}")
                bug = await self.db.get_bug_by_update_message_id(message.id)
                if bug is not None and bug.status == BugStatus.OPEN.value and is_completion(message.content):
                    if await self.db.mark_fixed(bug.id):
                        log.info(f"Bug #{bug.id} completed by edited reply {message.id}")
                        return Outcome.CLOSED_BUG
                return Outcome.REFRESHED
        except Exception:
            log.exception(f"Error processing edit of message {message.id}")
            return Outcome.FAILED

    async def handle_reaction(self, channel_id: int, message_id: int, emoji: str, added: bool) -> Outcome:
        """
        Handle a reaction being added or removed on a message.

        Adding the done emoji to a bug message or any message of its thread closes
        the bug. The stored reaction snapshot of the message is always refreshed.
        """
        if not self.is_monitored(channel_id):
            return Outcome.IGNORED

        try:
            async with self.locks(channel_id):
                is_update = False
                bug = await self.db.get_bug_by_message_id(message_id)
                if bug is None:
                    bug = await self.db.get_bug_by_update_message_id(message_id)
                    is_update = bug is not None
                if bug is None:
                    return Outcome.IGNORED

                outcome = Outcome.REFRESHED
                if added and is_done_emoji(emoji) and bug.status == BugStatus.OPEN.value:
                    if await self.db.mark_fixed(bug.id):
                        log.info(f"Bug #{bug.id} marked as fixed ({emoji} reaction on message {message_id})")
                        outcome = Outcome.CLOSED_BUG

                await self.refresh_reactions(channel_id, message_id, is_update=is_update)
                return outcome
        except Exception:
            log.exception(f"Error handling reaction {emoji} on message {message_id}")
            return Outcome.FAILED

    async def refresh_reactions(self, channel_id: int, message_id: int, *, is_update: bool) -> Optional[List[Reaction]]:
        """Replace the stored reaction snapshot of a tracked message. None if the message is gone."""
        message = await self.gateway.fetch_message(channel_id, message_id)
        if message is None:
            log.debug(f"Message {message_id} no longer exists, keeping its reaction snapshot")
            return None

        reactions = await self.gateway.fetch_reactions(message)
        if is_update:
            await self.db.set_update_reactions(message_id, reactions)
        else:
            await self.db.set_bug_reactions(message_id, reactions)
        return reactions

    # History scans

    async def _starting_cursor(self, channel_id: int, since: Optional[datetime.datetime], resume: bool) -> int:
        if resume:
            state = await self.db.get_scan_state(channel_id)
            if state is not None:
                log.info(f"Resuming scan of channel {channel_id} after message {state.last_message_id}")
                return state.last_message_id
        if since is not None:
            log.info(f"Scanning channel {channel_id} from {since.isoformat()}")
            return since_date_lower_bound(since)
        log.info(f"Scanning channel {channel_id} from the beginning")
        return 0

    async def _process_batch(self, batch: List[ChatMessage], stats: ScanStats):
        async with self.locks(stats.channel_id):
            for message in batch:
                if message.author_is_bot:
                    stats.record(Outcome.IGNORED)
                    continue
                try:
                    outcome = await self._process(message, live=False)
                except Exception:
                    log.exception(f"Error processing message {message.id} during scan of channel {stats.channel_id}")
                    outcome = Outcome.FAILED
                stats.record(outcome)

                if stats.scanned % SCAN_PROGRESS_EVERY == 0:
                    log.info(f"Channel {stats.channel_id}: {stats.scanned} messages scanned so far")

    async def _save_watermark(self, stats: ScanStats, newest: Optional[int]):
        if newest is None:
            return
        try:
            stats.watermark = await self.db.save_scan_state(stats.channel_id, newest)
        except Exception:
            log.exception(f"Could not save scan position of channel {stats.channel_id}")
            stats.failed = True

    async def scan_channel(self, channel_id: int, *, since: Optional[datetime.datetime] = None,
                           resume: bool = True, max_messages: Optional[int] = None) -> ScanStats:
        """
        Replay a channel's history through the pipeline, oldest message first.

        Starts after the saved watermark when `resume` is set and one exists, else
        at `since`, else at the very beginning. Pages are fetched with an `after`
        cursor until a short page or `max_messages` is reached. The watermark is
        saved once at the end and only covers pages that were fully processed.
        """
        stats = ScanStats(channel_id=channel_id)
        cursor = await self._starting_cursor(channel_id, since, resume)
        newest: Optional[int] = None

        try:
            while max_messages is None or stats.scanned < max_messages:
                limit = HISTORY_BATCH_SIZE
                if max_messages is not None:
                    limit = min(limit, max_messages - stats.scanned)

                try:
                    batch = await self.gateway.fetch_history(channel_id, limit=limit, after=cursor)
                except Exception:
                    log.exception(f"Failed to fetch history of channel {channel_id} after {cursor}")
                    stats.failed = True
                    break

                if not batch:
                    break

                batch.sort(key=lambda m: m.id)
                await self._process_batch(batch, stats)
                stats.batches += 1

                cursor = max(cursor, batch[-1].id)
                newest = cursor

                if len(batch) < limit:
                    break
        finally:
            await self._save_watermark(stats, newest)

        if not stats.failed:
            self._backfilled.add(channel_id)
        log.info(f"Finished scan of channel {channel_id}: {stats.summary()}")
        return stats

    async def scan_recent(self, channel_id: int, limit: int = ADD_CHANNEL_SCAN_LIMIT) -> ScanStats:
        """
        Scan the most recent `limit` messages of a channel.

        Used when a channel starts being monitored. Pages backwards with a `before`
        cursor, then processes everything oldest first. Older history is not
        covered, so the watermark is left alone and the channel is not counted as
        backfilled; the next `scan_channel` still starts from its saved position.
        """
        stats = ScanStats(channel_id=channel_id)
        messages: Dict[int, ChatMessage] = {}
        before: Optional[int] = None

        while len(messages) < limit:
            page_limit = min(HISTORY_BATCH_SIZE, limit - len(messages))
            try:
                page = await self.gateway.fetch_history(channel_id, limit=page_limit, before=before)
            except Exception:
                log.exception(f"Failed to fetch recent history of channel {channel_id}")
                stats.failed = True
                break
            if not page:
                break
            for message in page:
                messages[message.id] = message
            before = min(m.id for m in page)
            if len(page) < page_limit:
                break

        ordered = [messages[message_id] for message_id in sorted(messages)]
        for start in range(0, len(ordered), HISTORY_BATCH_SIZE):
            await self._process_batch(ordered[start:start + HISTORY_BATCH_SIZE], stats)
            stats.batches += 1

        log.info(f"Finished recent history scan of channel {channel_id}: {stats.summary()}")
        return stats

    async def scan_all(self, *, since: Optional[datetime.datetime] = None, resume: bool = True,
                       max_messages: Optional[int] = None) -> Dict[int, ScanStats]:
        """Scan every monitored channel in turn. A failing channel does not stop the others."""
        results: Dict[int, ScanStats] = {}
        for channel_id in sorted(self.monitored):
            try:
                results[channel_id] = await self.scan_channel(
                    channel_id, since=since, resume=resume, max_messages=max_messages
                )
            except Exception:
                log.exception(f"Scan of channel {channel_id} failed")
        return results

    async def flush_live_positions(self) -> Dict[int, int]:
        """
        Save the newest live message of each channel as its watermark.

        Only channels whose history scan completed in this process are saved, and
        none where a live message failed, so the next scan cannot skip anything.
        """
        saved: Dict[int, int] = {}
        for channel_id, message_id in list(self._live_positions.items()):
            if channel_id not in self._backfilled or channel_id in self._live_failed:
                continue
            try:
                saved[channel_id] = await self.db.save_scan_state(channel_id, message_id)
            except Exception:
                log.exception(f"Could not save live position of channel {channel_id}")
        if saved:
            log.info(f"Saved live scan positions for {len(saved)} channels")
        return saved
