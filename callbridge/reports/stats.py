"""
Call outcome counts and fuzzy agent lookup.

Usage:
    counts = count_by_status(records)
    counts.answered, counts.total
    best_agent_match(["Jane Doe", "Jan Lee"], "jane")  # -> "Jane Doe"
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional

from callbridge.schemas.record_schema import CallRecord

logger = logging.getLogger(__name__)

STATUS_ANSWER = "ANSWER"
STATUS_CANCEL = "CANCEL"
STATUS_BUSY = "BUSY"

# An edit-distance match this close beats a substring match.
NEAR_EXACT_DISTANCE = 2

UNKNOWN_AGENT = "Unknown"


@dataclass
class StatusCounts:
    """Per-status call counts for a set of records."""
    counts: dict[str, int] = field(default_factory=dict)
    total: int = 0

    @property
    def answered(self) -> int:
        return self.counts.get(STATUS_ANSWER, 0)

    @property
    def cancelled(self) -> int:
        return self.counts.get(STATUS_CANCEL, 0)

    @property
    def busy(self) -> int:
        return self.counts.get(STATUS_BUSY, 0)


def count_by_status(records: Iterable[CallRecord]) -> StatusCounts:
    """Count records per status; the counts always sum to ``total``."""
    counter: Counter[str] = Counter(r.status.strip() for r in records)
    return StatusCounts(counts=dict(counter), total=sum(counter.values()))


def count_by_agent(records: Iterable[CallRecord]) -> list[tuple[str, int]]:
    """Calls per agent, busiest first; ties keep first-seen order."""
    counter: Counter[str] = Counter(r.agent or UNKNOWN_AGENT for r in records)
    # Counter preserves insertion order and sorted() is stable.
    return sorted(counter.items(), key=lambda item: item[1], reverse=True)


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def best_agent_match(agents: Iterable[str], query: str) -> Optional[str]:
    """Resolve free-text agent input to one of ``agents``.

    The closest candidate by edit distance and the first candidate that
    contains the query are both computed (case-insensitively). The
    substring hit wins unless the edit-distance winner is within
    NEAR_EXACT_DISTANCE edits. Returns None when there is no candidate.
    """
    needle = (query or "").strip().lower()
    best: Optional[str] = None
    best_score: Optional[int] = None
    substring: Optional[str] = None

    for agent in agents:
        lowered = agent.lower()
        score = levenshtein(lowered, needle)
        if best_score is None or score < best_score:
            best, best_score = agent, score
        if substring is None and needle and needle in lowered:
            substring = agent

    if best is None:
        return None
    if substring is not None and best_score is not None and best_score > NEAR_EXACT_DISTANCE:
        logger.debug("Agent %r matched by substring (best distance %d)", substring, best_score)
        return substring
    return best
