"""
AI-assisted message analysis using Claude over the Anthropic Messages API.

Two questions are asked of the model:
1. should_attach - whether a plain, non-reply message belongs to one of the channel's active bugs
2. match_completion - which open bug a standalone ✅ message is completing

Every failure (transport, timeout, non-200, unparseable answer) comes back as a
declined result, never as an exception.
"""
import asyncio
import enum
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import aiohttp

log = logging.getLogger("red.bugtracker.analyzer")

API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"
DEFAULT_MODEL = "claude-3-haiku-20240307"

JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

ATTACH_PROMPT = """You are analyzing a Discord channel that tracks bugs. A new message was posted (NOT a reply to anything). Determine if this message is discussing one of the recently active bugs, or if it's unrelated conversation.

RECENTLY ACTIVE BUGS:
{bugs}

RECENT CHANNEL MESSAGES (for context):
{context}

NEW MESSAGE (from {author}):
"{content}"

Should this message be added to one of the bugs' context? Consider:
- Is the message discussing a bug's topic?
- Does it provide additional info, clarification, or discussion about a bug?
- Is the author continuing a conversation about a bug?
- Or is this unrelated chat/different topic entirely?

If it's clearly unrelated conversation (greetings, off-topic chat, different subject), don't add it.
If it seems related to a bug, even loosely, prefer to add it (more context is better).

Respond with ONLY a JSON object:
{{"shouldAdd": true/false, "bugId": <number or null>, "confidence": "high|medium|low", "reasoning": "brief explanation"}}"""

MATCH_PROMPT = """Someone marked a bug as complete with this message:
"✅ {content}"

Which of these open bugs does it match?

OPEN BUGS:
{bugs}

Match based on:
- Similar wording/description
- Same topic/issue being described
- Partial matches (the completion text might be abbreviated)

Respond with ONLY a JSON object:
{{"bugId": <number>, "confidence": "high|medium|low", "reasoning": "brief explanation"}}

If you cannot determine a match, use bugId: null."""


class Confidence(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def parse(cls, value: Any) -> "Confidence":
        # A missing tier counts as medium, an unknown one as low
        if value is None or value == "":
            return cls.MEDIUM
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.LOW


@dataclass
class MatchResult:
    bug_id: Optional[int]
    confidence: Confidence
    reasoning: str = ""

    @property
    def accepted(self) -> bool:
        return self.bug_id is not None and self.confidence != Confidence.LOW

    @classmethod
    def declined(cls, reasoning: str = "") -> "MatchResult":
        return cls(bug_id=None, confidence=Confidence.LOW, reasoning=reasoning)


@dataclass
class AttachResult:
    should_add: bool
    bug_id: Optional[int]
    confidence: Confidence
    reasoning: str = ""

    @classmethod
    def declined(cls, reasoning: str = "") -> "AttachResult":
        return cls(should_add=False, bug_id=None, confidence=Confidence.LOW, reasoning=reasoning)


def _parse_bug_id(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def extract_json(text: str) -> Optional[Dict[str, Any]]:
    """Pull the first JSON object out of a model answer."""
    match = JSON_OBJECT_RE.search(text or "")
    if not match:
        return None
    try:
        parsed = json.loads(match.group(0))
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


class MessageAnalyzer:
    def __init__(self, api_key: str, model: str = DEFAULT_MODEL, timeout: float = 20, max_tokens: int = 150):
        self.api_key = api_key
        self.model = model or DEFAULT_MODEL
        self.timeout = timeout
        self.max_tokens = max_tokens

    async def _complete(self, prompt: str) -> Optional[str]:
        """Send a single-turn prompt and return the text of the answer."""
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": [{"role": "user", "content": prompt}],
        }

        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            async with session.post(API_URL, headers=headers, json=payload) as response:
                if response.status != 200:
                    body = await response.text()
                    log.error(f"Anthropic request failed with status {response.status}: {body[:200]}")
                    return None
                data = await response.json()

        for block in data.get("content") or []:
            if block.get("type") == "text":
                return block.get("text", "")
        return ""

    async def _ask(self, prompt: str, what: str) -> Optional[Dict[str, Any]]:
        try:
            text = await self._complete(prompt)
        except asyncio.TimeoutError:
            log.warning(f"{what} timed out after {self.timeout}s")
            return None
        except aiohttp.ClientError as e:
            log.warning(f"{what} failed: {e}")
            return None
        except Exception:
            log.exception(f"{what} failed unexpectedly")
            return None

        if text is None:
            return None
        parsed = extract_json(text)
        if parsed is None:
            log.warning(f"{what} returned no usable JSON: {text[:200]!r}")
        return parsed

    async def match_completion(self, text: str, candidates: Sequence) -> MatchResult:
        """
        Match a completion message to the open bug it is completing.

        Args:
            text: The completion text with the ✅ marker removed
            candidates: Open bugs (id, content, author_name) to choose from
        """
        if not candidates:
            return MatchResult(bug_id=None, confidence=Confidence.HIGH, reasoning="no open bugs to match")

        if len(candidates) == 1:
            return MatchResult(bug_id=candidates[0].id, confidence=Confidence.MEDIUM, reasoning="only one open bug")

        bugs = "\n\n".join(
            f'Bug #{bug.id} (by {bug.author_name}): "{bug.content[:300]}"' for bug in candidates
        )
        parsed = await self._ask(MATCH_PROMPT.format(content=text, bugs=bugs), "Completion match")
        if parsed is None:
            return MatchResult.declined("analysis failed")

        return MatchResult(
            bug_id=_parse_bug_id(parsed.get("bugId")),
            confidence=Confidence.parse(parsed.get("confidence")),
            reasoning=str(parsed.get("reasoning") or ""),
        )

    async def should_attach(self, text: str, author: str, candidates: Sequence, recent: Sequence) -> AttachResult:
        """
        Decide whether a plain message should be added to one of the candidate bugs.

        Args:
            text: Message content
            author: Name of the message author
            candidates: Recently active open bugs of the channel
            recent: Recent channel messages (author_name, content, bug_id) for context
        """
        if not candidates:
            return AttachResult(should_add=False, bug_id=None, confidence=Confidence.HIGH)

        bugs = "\n".join(
            f'Bug #{bug.id} (by {bug.author_name}): "{bug.content[:200]}"' for bug in candidates
        )
        lines = []
        for m in recent:
            bug_ref = f" [about bug #{m.bug_id}]" if m.bug_id else ""
            lines.append(f'- {m.author_name}{bug_ref}: "{m.content[:150]}"')
        context = "\n".join(lines) if lines else "No recent messages"

        prompt = ATTACH_PROMPT.format(bugs=bugs, context=context, author=author, content=text)
        parsed = await self._ask(prompt, "Context classification")
        if parsed is None:
            return AttachResult.declined("analysis failed")

        return AttachResult(
            should_add=bool(parsed.get("shouldAdd")),
            bug_id=_parse_bug_id(parsed.get("bugId")),
            confidence=Confidence.parse(parsed.get("confidence")),
            reasoning=str(parsed.get("reasoning") or ""),
        )
