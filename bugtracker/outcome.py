import enum


class Outcome(enum.Enum):
    """What processing a single message did to the store."""
    IGNORED = "ignored"  # bot author, unmonitored channel or empty message
    CREATED_BUG = "created_bug"
    DUPLICATE = "duplicate"  # already tracked, nothing written
    ATTACHED_UPDATE = "attached_update"  # reply appended to a thread
    CLOSED_BUG = "closed_bug"
    ATTACHED_CONTEXT = "attached_context"  # plain message attached by the classifier
    REFRESHED = "refreshed"  # stored content or reactions of a tracked message replaced
    CACHED = "cached"  # only remembered as recent context
    UNMATCHED = "unmatched"  # completion that could not be tied to a bug
    SKIPPED = "skipped"  # left alone on purpose during a history scan
    FAILED = "failed"
