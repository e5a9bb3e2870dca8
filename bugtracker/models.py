"""
SQLAlchemy models for the BugTracker cog.
"""
from dataclasses import dataclass, field, asdict
from typing import List, Optional

from sqlalchemy import Column, Integer, String, BigInteger, DateTime, Text, JSON, ForeignKey
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


@dataclass
class Reaction:
    """Point-in-time snapshot of one reaction on a message."""
    emoji: str
    count: int
    users: List[str] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict):
        return cls(
            emoji=data.get("emoji", ""),
            count=int(data.get("count", 0)),
            users=list(data.get("users") or []),
        )


def reactions_to_json(reactions: Optional[List[Reaction]]) -> List[dict]:
    return [r.to_dict() for r in reactions or []]


def reactions_from_json(data: Optional[List[dict]]) -> List[Reaction]:
    return [Reaction.from_dict(r) for r in data or []]


class Bug(Base):
    """
    A bug or feature request opened by a ▶️ message.

    `message_id` is the Discord id of the originating message and is unique,
    so replays of the same message can never create a second bug.
    """
    __tablename__ = 'bugs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(BigInteger, nullable=False, unique=True, index=True)
    guild_id = Column(BigInteger, nullable=True)
    channel_id = Column(BigInteger, nullable=False, index=True)
    channel_name = Column(String(100), nullable=False, default="unknown")
    author_id = Column(BigInteger, nullable=False)
    author_name = Column(String(100), nullable=False)
    content = Column(Text, nullable=False)
    type = Column(String(16), nullable=False, default="bug")
    status = Column(String(16), nullable=False, default="open", index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.current_timestamp())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.current_timestamp(), index=True)
    jump_url = Column(String(200), nullable=False, default="")
    reactions = Column(JSON, nullable=False, default=list)

    updates = relationship(
        "BugUpdate",
        back_populates="bug",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="BugUpdate.created_at",
    )

    def __repr__(self):
        return f"<Bug(id={self.id}, message_id={self.message_id}, type='{self.type}', status='{self.status}')>"

    @property
    def reaction_list(self) -> List[Reaction]:
        return reactions_from_json(self.reactions)

    def to_dict(self):
        """Convert the model to a dictionary for embeds and listings."""
        return {
            'id': self.id,
            'message_id': self.message_id,
            'guild_id': self.guild_id,
            'channel_id': self.channel_id,
            'channel_name': self.channel_name,
            'author_id': self.author_id,
            'author_name': self.author_name,
            'content': self.content,
            'type': self.type,
            'status': self.status,
            'created_at': self.created_at,
            'updated_at': self.updated_at,
            'jump_url': self.jump_url,
            'reactions': list(self.reactions or []),
        }


class BugUpdate(Base):
    """A message in a bug's thread: reply, reply-to-reply, or AI-attached context."""
    __tablename__ = 'bug_updates'

    id = Column(Integer, primary_key=True, autoincrement=True)
    bug_id = Column(Integer, ForeignKey('bugs.id', ondelete='CASCADE'), nullable=False, index=True)
    message_id = Column(BigInteger, nullable=False, unique=True, index=True)
    author_id = Column(BigInteger, nullable=False)
    author_name = Column(String(100), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.current_timestamp())
    jump_url = Column(String(200), nullable=False, default="")
    reactions = Column(JSON, nullable=False, default=list)
    attachment_type = Column(String(16), nullable=True)
    attachment_url = Column(Text, nullable=True)
    attachment_data = Column(Text, nullable=True)

    bug = relationship("Bug", back_populates="updates")

    def __repr__(self):
        return f"<BugUpdate(id={self.id}, bug_id={self.bug_id}, message_id={self.message_id})>"

    @property
    def reaction_list(self) -> List[Reaction]:
        return reactions_from_json(self.reactions)

    def to_dict(self):
        return {
            'id': self.id,
            'bug_id': self.bug_id,
            'message_id': self.message_id,
            'author_id': self.author_id,
            'author_name': self.author_name,
            'content': self.content,
            'created_at': self.created_at,
            'jump_url': self.jump_url,
            'reactions': list(self.reactions or []),
            'attachment_type': self.attachment_type,
            'attachment_url': self.attachment_url,
            'attachment_data': self.attachment_data,
        }


class ScanState(Base):
    """Highest message id fully processed by the history scan of a channel."""
    __tablename__ = 'scan_state'

    channel_id = Column(BigInteger, primary_key=True, autoincrement=False)
    last_message_id = Column(BigInteger, nullable=False)
    last_scan_at = Column(DateTime(timezone=True), nullable=False, default=func.current_timestamp())

    def __repr__(self):
        return f"<ScanState(channel_id={self.channel_id}, last_message_id={self.last_message_id})>"


class MonitoredChannel(Base):
    """A channel the bot classifies messages in. Managed by the admin commands."""
    __tablename__ = 'monitored_channels'

    id = Column(Integer, primary_key=True, autoincrement=True)
    guild_id = Column(BigInteger, nullable=False, index=True)
    channel_id = Column(BigInteger, nullable=False, unique=True)
    channel_name = Column(String(100), nullable=False)
    added_by_id = Column(BigInteger, nullable=False)
    added_by_name = Column(String(100), nullable=False)
    added_at = Column(DateTime(timezone=True), nullable=False, default=func.current_timestamp())

    def __repr__(self):
        return f"<MonitoredChannel(channel_id={self.channel_id}, guild_id={self.guild_id})>"
