"""
Database manager for the BugTracker cog using SQLAlchemy.
"""
import datetime
import logging
from typing import Optional, List, Dict, Any
from contextlib import asynccontextmanager

from sqlalchemy import event, select, update, delete, func, and_
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import IntegrityError

from .markers import BugStatus, BugType
from .models import Base, Bug, BugUpdate, ScanState, MonitoredChannel, Reaction, reactions_to_json

log = logging.getLogger("red.bugtracker.database")


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """
    Manages the database connection and the store operations of the bug tracker.

    Inserts keyed by a Discord message id are idempotent: inserting a bug or update
    whose message id is already stored returns None instead of raising.
    """

    def __init__(self):
        self.engine = None
        self.session_maker = None

    async def connect(self, url: str) -> bool:
        """
        Create the database engine and make sure all tables exist.

        Args:
            url: SQLAlchemy async database URL, e.g. sqlite+aiosqlite:///path/to/bugs.db

        Returns:
            True if the connection was established
        """
        try:
            # Close existing connection if it exists
            await self.disconnect()

            engine = create_async_engine(url, echo=False, pool_pre_ping=True)
            if engine.dialect.name == "sqlite":
                event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

            session_maker = async_sessionmaker(
                bind=engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all, checkfirst=True)

            self.engine = engine
            self.session_maker = session_maker

            log.info(f"Connected to bug database ({engine.dialect.name})")
            return True

        except Exception as e:
            log.error(f"Failed to connect to bug database: {e}")
            await self.disconnect()
            return False

    async def disconnect(self):
        """Dispose of the engine, if any."""
        try:
            if self.engine is not None:
                await self.engine.dispose()
                log.info("Disconnected bug database")
        except Exception as e:
            log.error(f"Error disconnecting bug database: {e}")
        finally:
            self.engine = None
            self.session_maker = None

    def is_connected(self) -> bool:
        return self.engine is not None and self.session_maker is not None

    @asynccontextmanager
    async def get_session(self):
        """
        Get a database session.

        Yields:
            AsyncSession: Database session, committed on success and rolled back on error

        Raises:
            RuntimeError: If the database is not connected
        """
        if not self.is_connected():
            raise RuntimeError("Bug database is not connected")

        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # Bugs

    async def add_bug(self, *, message_id: int, channel_id: int, author_id: int, author_name: str,
                      content: str, bug_type: BugType, created_at: datetime.datetime,
                      guild_id: Optional[int] = None, channel_name: str = "unknown",
                      status: BugStatus = BugStatus.OPEN, jump_url: str = "",
                      reactions: Optional[List[Reaction]] = None) -> Optional[Bug]:
        """Insert a bug unless its message id is already tracked."""
        try:
            async with self.get_session() as session:
                bug = Bug(
                    message_id=message_id,
                    guild_id=guild_id,
                    channel_id=channel_id,
                    channel_name=channel_name,
                    author_id=author_id,
                    author_name=author_name,
                    content=content,
                    type=BugType(bug_type).value,
                    status=BugStatus(status).value,
                    created_at=created_at,
                    updated_at=created_at,
                    jump_url=jump_url,
                    reactions=reactions_to_json(reactions),
                )
                session.add(bug)
                await session.flush()
                await session.refresh(bug)
        except IntegrityError:
            log.debug(f"Bug for message {message_id} already tracked")
            return None

        log.info(f"Created {bug.type} #{bug.id} from message {message_id}")
        return bug

    async def get_bug(self, bug_id: int) -> Optional[Bug]:
        async with self.get_session() as session:
            return await session.get(Bug, bug_id)

    async def get_bug_by_message_id(self, message_id: int) -> Optional[Bug]:
        """Get the bug opened by a message."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Bug).where(Bug.message_id == message_id)
            )
            return result.scalar_one_or_none()

    async def get_bug_by_update_message_id(self, message_id: int) -> Optional[Bug]:
        """Get the bug owning the update stored for a message (reply chain tracking)."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Bug)
                .join(BugUpdate, BugUpdate.bug_id == Bug.id)
                .where(BugUpdate.message_id == message_id)
            )
            return result.scalar_one_or_none()

    async def get_open_bugs(self) -> List[Bug]:
        """Get every open bug, most recently updated first."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Bug)
                .where(Bug.status == BugStatus.OPEN.value)
                .order_by(Bug.updated_at.desc(), Bug.id.desc())
            )
            return list(result.scalars().all())

    async def get_recently_active_bugs(self, channel_id: int, limit: int = 5) -> List[Bug]:
        """Get the open bugs of a channel that were updated most recently."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Bug)
                .where(and_(Bug.channel_id == channel_id, Bug.status == BugStatus.OPEN.value))
                .order_by(Bug.updated_at.desc(), Bug.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_bugs(self, status: Optional[BugStatus] = None, bug_type: Optional[BugType] = None,
                       channel_id: Optional[int] = None, guild_id: Optional[int] = None,
                       limit: Optional[int] = None) -> List[Bug]:
        """Get bugs with optional filters, newest first."""
        query = select(Bug)
        if guild_id:
            query = query.where(Bug.guild_id == guild_id)
        if status:
            query = query.where(Bug.status == BugStatus(status).value)
        if bug_type:
            query = query.where(Bug.type == BugType(bug_type).value)
        if channel_id:
            query = query.where(Bug.channel_id == channel_id)
        query = query.order_by(Bug.created_at.desc(), Bug.id.desc())
        if limit:
            query = query.limit(limit)

        async with self.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def mark_fixed(self, bug_id: int) -> bool:
        """
        Transition a bug from open to fixed.

        Returns False if the bug does not exist or is already fixed. There is no way
        back to open from here.
        """
        async with self.get_session() as session:
            result = await session.execute(
                update(Bug)
                .where(and_(Bug.id == bug_id, Bug.status == BugStatus.OPEN.value))
                .values(status=BugStatus.FIXED.value, updated_at=_utcnow())
            )
            changed = result.rowcount > 0

        if changed:
            log.info(f"Bug #{bug_id} marked as fixed")
        return changed

    async def set_bug_reactions(self, message_id: int, reactions: List[Reaction]) -> bool:
        """Replace the reaction snapshot of a bug message."""
        async with self.get_session() as session:
            result = await session.execute(
                update(Bug)
                .where(Bug.message_id == message_id)
                .values(reactions=reactions_to_json(reactions))
            )
            return result.rowcount > 0

    async def delete_bugs_by_channel(self, channel_id: int) -> int:
        """Delete every bug recorded from a channel, with their updates. Returns the bug count."""
        async with self.get_session() as session:
            bug_ids = select(Bug.id).where(Bug.channel_id == channel_id)
            await session.execute(
                delete(BugUpdate).where(BugUpdate.bug_id.in_(bug_ids))
            )
            result = await session.execute(
                delete(Bug).where(Bug.channel_id == channel_id)
            )
            count = result.rowcount

        log.info(f"Deleted {count} bugs from channel {channel_id}")
        return count

    # Updates

    async def add_bug_update(self, *, bug_id: int, message_id: int, author_id: int, author_name: str,
                             content: str, created_at: datetime.datetime, jump_url: str = "",
                             reactions: Optional[List[Reaction]] = None,
                             attachment_type: Optional[str] = None, attachment_url: Optional[str] = None,
                             attachment_data: Optional[str] = None) -> Optional[BugUpdate]:
        """
        Insert a thread entry for a bug unless its message id is already stored.

        The owning bug's updated_at moves forward to the update's timestamp.
        """
        try:
            async with self.get_session() as session:
                bug_update = BugUpdate(
                    bug_id=bug_id,
                    message_id=message_id,
                    author_id=author_id,
                    author_name=author_name,
                    content=content,
                    created_at=created_at,
                    jump_url=jump_url,
                    reactions=reactions_to_json(reactions),
                    attachment_type=attachment_type,
                    attachment_url=attachment_url,
                    attachment_data=attachment_data,
                )
                session.add(bug_update)
                await session.flush()
                await session.refresh(bug_update)

                await session.execute(
                    update(Bug)
                    .where(and_(Bug.id == bug_id, Bug.updated_at < created_at))
                    .values(updated_at=created_at)
                )
        except IntegrityError:
            log.debug(f"Update for message {message_id} already tracked (or bug #{bug_id} missing)")
            return None

        log.debug(f"Added update {message_id} to bug #{bug_id}")
        return bug_update

    async def get_update_by_message_id(self, message_id: int) -> Optional[BugUpdate]:
        async with self.get_session() as session:
            result = await session.execute(
                select(BugUpdate).where(BugUpdate.message_id == message_id)
            )
            return result.scalar_one_or_none()

    async def get_bug_updates(self, bug_id: int) -> List[BugUpdate]:
        """Get the thread of a bug, oldest first."""
        async with self.get_session() as session:
            result = await session.execute(
                select(BugUpdate)
                .where(BugUpdate.bug_id == bug_id)
                .order_by(BugUpdate.created_at.asc(), BugUpdate.id.asc())
            )
            return list(result.scalars().all())

    async def set_update_reactions(self, message_id: int, reactions: List[Reaction]) -> bool:
        """Replace the reaction snapshot of an update message."""
        async with self.get_session() as session:
            result = await session.execute(
                update(BugUpdate)
                .where(BugUpdate.message_id == message_id)
                .values(reactions=reactions_to_json(reactions))
            )
            return result.rowcount > 0

    async def set_message_content(self, message_id: int, content: str) -> bool:
        """Refresh the stored text of an edited bug or update message."""
        async with self.get_session() as session:
            result = await session.execute(
                update(Bug)
                .where(Bug.message_id == message_id)
                .values(content=content)
            )
            if result.rowcount:
                return True
            result = await session.execute(
                update(BugUpdate)
                .where(BugUpdate.message_id == message_id)
                .values(content=content)
            )
            return result.rowcount > 0

    async def involved_authors(self, bug_id: int) -> List[str]:
        """Names of the bug author and everyone who posted in its thread, in order of appearance."""
        bug = await self.get_bug(bug_id)
        if not bug:
            return []
        authors = [bug.author_name]
        for bug_update in await self.get_bug_updates(bug_id):
            if bug_update.author_name not in authors:
                authors.append(bug_update.author_name)
        return authors

    async def stats(self) -> Dict[str, Any]:
        """Totals by status and by type."""
        async with self.get_session() as session:
            result = await session.execute(
                select(Bug.type, Bug.status, func.count(Bug.id)).group_by(Bug.type, Bug.status)
            )
            rows = result.all()

        stats: Dict[str, Any] = {
            "total": 0,
            "open": 0,
            "fixed": 0,
            "bugs": {"total": 0, "open": 0, "fixed": 0},
            "requests": {"total": 0, "open": 0, "fixed": 0},
        }
        for bug_type, status, count in rows:
            bucket = stats["bugs"] if bug_type == BugType.BUG.value else stats["requests"]
            stats["total"] += count
            bucket["total"] += count
            if status in (BugStatus.OPEN.value, BugStatus.FIXED.value):
                stats[status] += count
                bucket[status] += count
        return stats

    # Scan state

    async def get_scan_state(self, channel_id: int) -> Optional[ScanState]:
        async with self.get_session() as session:
            return await session.get(ScanState, channel_id)

    async def save_scan_state(self, channel_id: int, message_id: int) -> int:
        """
        Advance the scan watermark of a channel.

        The stored id never moves backwards. Returns the watermark after the save.
        """
        async with self.get_session() as session:
            state = await session.get(ScanState, channel_id)
            if state is None:
                session.add(ScanState(channel_id=channel_id, last_message_id=message_id, last_scan_at=_utcnow()))
                watermark = message_id
            else:
                if message_id > state.last_message_id:
                    state.last_message_id = message_id
                state.last_scan_at = _utcnow()
                watermark = state.last_message_id

        log.debug(f"Scan position for channel {channel_id} is now {watermark}")
        return watermark

    # Monitored channels

    async def add_monitored_channel(self, *, guild_id: int, channel_id: int, channel_name: str,
                                    added_by_id: int, added_by_name: str) -> bool:
        """Start monitoring a channel. Returns False if it was already monitored."""
        try:
            async with self.get_session() as session:
                session.add(MonitoredChannel(
                    guild_id=guild_id,
                    channel_id=channel_id,
                    channel_name=channel_name,
                    added_by_id=added_by_id,
                    added_by_name=added_by_name,
                    added_at=_utcnow(),
                ))
        except IntegrityError:
            return False
        log.info(f"Now monitoring channel #{channel_name} ({channel_id})")
        return True

    async def remove_monitored_channel(self, channel_id: int) -> bool:
        async with self.get_session() as session:
            result = await session.execute(
                delete(MonitoredChannel).where(MonitoredChannel.channel_id == channel_id)
            )
            return result.rowcount > 0

    async def get_monitored_channels(self, guild_id: Optional[int] = None) -> List[MonitoredChannel]:
        query = select(MonitoredChannel).order_by(MonitoredChannel.added_at.desc())
        if guild_id:
            query = query.where(MonitoredChannel.guild_id == guild_id)
        async with self.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def get_monitored_channel_ids(self) -> List[int]:
        async with self.get_session() as session:
            result = await session.execute(select(MonitoredChannel.channel_id))
            return list(result.scalars().all())
