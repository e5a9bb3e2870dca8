import datetime
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, List, Optional

from .config import RECENT_CONTEXT_CAPACITY


@dataclass
class RecentMessage:
    author_name: str
    content: str
    created_at: datetime.datetime
    bug_id: Optional[int] = None


class RecentContextCache:
    """
    Sliding window of the last few messages seen in each channel.

    Only used as disambiguation context for the ambient classifier. It lives for
    the lifetime of the process and starts empty after a restart.
    """

    def __init__(self, capacity: int = RECENT_CONTEXT_CAPACITY):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._channels: Dict[int, Deque[RecentMessage]] = {}

    def push(self, channel_id: int, author_name: str, content: str, created_at: datetime.datetime,
             bug_id: Optional[int] = None) -> RecentMessage:
        entry = RecentMessage(author_name=author_name, content=content, created_at=created_at, bug_id=bug_id)
        window = self._channels.get(channel_id)
        if window is None:
            window = self._channels[channel_id] = deque(maxlen=self.capacity)
        window.append(entry)
        return entry

    def get(self, channel_id: int) -> List[RecentMessage]:
        """Recent messages of a channel, oldest first."""
        return list(self._channels.get(channel_id, ()))

    def clear(self, channel_id: Optional[int] = None):
        if channel_id is None:
            self._channels.clear()
        else:
            self._channels.pop(channel_id, None)

    def __len__(self):
        return sum(len(window) for window in self._channels.values())
