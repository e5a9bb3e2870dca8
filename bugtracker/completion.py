"""
Completion matching for standalone ✅ messages.

A ✅ that is not a reply has to be tied to an open bug by its text alone.
The first step that produces a match wins:

1. Text match - containment, equality, or more than 70% word overlap
2. AI match - only when an analyzer is configured, low confidence is a decline
3. Single bug - when exactly one bug is open, it is assumed to be the one
4. Otherwise the completion is logged and dropped
"""
import enum
import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence, Set

from .analyzer import Confidence, MessageAnalyzer
from .config import MIN_TOKEN_LENGTH, WORD_OVERLAP_THRESHOLD
from .database import DatabaseManager
from .gateway import ChatMessage
from .markers import DONE_MARKER, NEW_ISSUE_MARKERS
from .models import Bug
from .outcome import Outcome

log = logging.getLogger("red.bugtracker.completion")

_MARKER_RE = re.compile("|".join(re.escape(m) for m in (*NEW_ISSUE_MARKERS, DONE_MARKER, "\ufe0f")))
_LABEL_RE = re.compile(r"^bug:\s*", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_TOKEN_RE = re.compile(r"[\w'’]+")


class MatchMethod(str, enum.Enum):
    EXACT = "exact"
    AI = "ai"
    SINGLE = "single"


@dataclass
class CompletionMatch:
    bug_id: int
    confidence: Confidence
    reasoning: str
    method: MatchMethod


def normalize(text: str) -> str:
    """Strip marker glyphs and a leading "bug:" label, lower-case and collapse whitespace."""
    text = _MARKER_RE.sub(" ", text or "").strip()
    text = _LABEL_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text.lower()).strip()


def tokens(text: str) -> Set[str]:
    return {token for token in _TOKEN_RE.findall(text) if len(token) >= MIN_TOKEN_LENGTH}


def word_overlap(a: str, b: str) -> float:
    """Shared tokens as a fraction of the larger token set."""
    a_tokens, b_tokens = tokens(a), tokens(b)
    if not a_tokens or not b_tokens:
        return 0.0
    return len(a_tokens & b_tokens) / max(len(a_tokens), len(b_tokens))


def texts_match(completion: str, bug: str) -> bool:
    """Compare two already normalised texts."""
    if not completion or not bug:
        return False
    if completion in bug or bug in completion:
        return True
    return word_overlap(completion, bug) > WORD_OVERLAP_THRESHOLD


def find_text_match(text: str, open_bugs: Sequence[Bug]) -> Optional[Bug]:
    completion = normalize(text)
    for bug in open_bugs:
        if texts_match(completion, normalize(bug.content)):
            return bug
    return None


class CompletionMatcher:
    def __init__(self, db: DatabaseManager, analyzer: Optional[MessageAnalyzer] = None):
        self.db = db
        self.analyzer = analyzer

    async def match(self, text: str, open_bugs: Sequence[Bug]) -> Optional[CompletionMatch]:
        if not open_bugs:
            return None

        bug = find_text_match(text, open_bugs)
        if bug is not None:
            return CompletionMatch(bug.id, Confidence.HIGH, "text match", MatchMethod.EXACT)

        if self.analyzer is not None:
            result = await self.analyzer.match_completion(normalize(text), open_bugs)
            candidate_ids = {b.id for b in open_bugs}
            if result.accepted and result.bug_id in candidate_ids:
                return CompletionMatch(result.bug_id, result.confidence, result.reasoning, MatchMethod.AI)
            if result.bug_id is not None and result.bug_id not in candidate_ids:
                log.warning(f"AI matched completion to bug #{result.bug_id}, which is not open")
            else:
                log.debug(f"AI declined completion match ({result.confidence.value}): {result.reasoning}")

        if len(open_bugs) == 1:
            return CompletionMatch(open_bugs[0].id, Confidence.MEDIUM, "only open bug", MatchMethod.SINGLE)

        return None

    async def close(self, match: CompletionMatch) -> bool:
        """Mark the matched bug fixed. Returns False if it was no longer open."""
        closed = await self.db.mark_fixed(match.bug_id)
        if closed:
            log.info(f"Bug #{match.bug_id} marked as fixed ({match.method.value}, "
                     f"{match.confidence.value}: {match.reasoning})")
        return closed

    async def handle(self, message: ChatMessage) -> Outcome:
        """Match a standalone completion against every open bug and close the winner."""
        open_bugs = await self.db.get_open_bugs()
        if not open_bugs:
            log.info(f"Completion {message.id} from {message.author_name} ignored, no open bugs")
            return Outcome.UNMATCHED

        match = await self.match(message.content, open_bugs)
        if match is None:
            log.info(f"Could not match completion {message.id} among {len(open_bugs)} open bugs: "
                     f"{message.content[:50]!r}")
            return Outcome.UNMATCHED

        if await self.close(match):
            return Outcome.CLOSED_BUG
        return Outcome.DUPLICATE
