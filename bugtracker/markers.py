"""
Marker detection for bug tracking messages.

- ▶️ at the start of a message opens a new bug or feature request
- ✅ anywhere in a message marks a completion
- Everything else is plain conversation

Everything here is pure so live events and history replays classify the same way.
"""
import enum
from typing import Iterable

NEW_ISSUE_MARKERS = ("▶️", "▶")  # ▶️ with and without the emoji variation selector
DONE_MARKER = "✅"  # ✅
DONE_EMOJI_NAMES = {DONE_MARKER, "white_check_mark"}

BUG_KEYWORDS = (
    "bug",
    "issue",
    "broken",
    "error",
    "crash",
    "fail",
    "problem",
    "not working",
    "doesn't work",
    "doesnt work",
)


class MessageKind(enum.Enum):
    NEW_ISSUE = "new_issue"
    COMPLETION = "completion"
    PLAIN = "plain"


class BugType(str, enum.Enum):
    BUG = "bug"
    REQUEST = "request"


class BugStatus(str, enum.Enum):
    OPEN = "open"
    FIXED = "fixed"


def is_new_issue(text: str) -> bool:
    """Check if a message starts with the ▶️ marker."""
    return (text or "").strip().startswith(NEW_ISSUE_MARKERS)


def is_completion(text: str) -> bool:
    """Check if a message contains the ✅ marker."""
    return DONE_MARKER in (text or "")


def classify(text: str) -> MessageKind:
    """Classify raw message text. New-issue wins over completion."""
    if is_new_issue(text):
        return MessageKind.NEW_ISSUE
    if is_completion(text):
        return MessageKind.COMPLETION
    return MessageKind.PLAIN


def derive_type(text: str) -> BugType:
    """
    Decide whether a ▶️ message is a bug or a feature request.

    Only called once, when the bug is created.
    """
    lower = (text or "").lower()
    for keyword in BUG_KEYWORDS:
        if keyword in lower:
            return BugType.BUG
    return BugType.REQUEST


def is_done_emoji(name: str) -> bool:
    return name in DONE_EMOJI_NAMES


def has_done_reaction(reactions: Iterable) -> bool:
    """Check a reaction snapshot for the done emoji."""
    return any(is_done_emoji(r.emoji) for r in reactions)
