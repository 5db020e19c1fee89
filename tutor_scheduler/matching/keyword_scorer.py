"""
Deterministic keyword scorer used when semantic retrieval is unavailable.

Pure functions, no external calls. Each catalog entry earns fixed
weights for topic, mode, day, and time overlap with the request; a
total of zero means the entry does not match at all.
"""

from dataclasses import dataclass
from typing import Optional, Sequence

from tutor_scheduler.config import MatchingConfig, settings
from tutor_scheduler.schemas.catalog_schema import CatalogEntry
from tutor_scheduler.schemas.match_schema import SearchCriteria
from tutor_scheduler.utils import time_matches


@dataclass(frozen=True)
class KeywordWeights:
    topic: int = 10
    mode: int = 5
    day: int = 3
    time: int = 2

    @classmethod
    def from_config(cls, config: MatchingConfig) -> "KeywordWeights":
        return cls(
            topic=config.topic_weight,
            mode=config.mode_weight,
            day=config.day_weight,
            time=config.time_weight,
        )


def topic_overlaps(requested: str, entry_topics: Sequence[str]) -> bool:
    """Case-insensitive substring match in either direction."""
    wanted = requested.strip().lower()
    if not wanted:
        return False
    for topic in entry_topics:
        have = topic.lower()
        if wanted in have or have in wanted:
            return True
    return False


def score_entry(
    criteria: SearchCriteria, entry: CatalogEntry, weights: Optional[KeywordWeights] = None
) -> int:
    """Return the raw keyword score of one entry against the criteria."""
    weights = weights or KeywordWeights.from_config(settings.matching)
    score = 0
    for topic in criteria.topics:
        if topic_overlaps(topic, entry.topics):
            score += weights.topic
    if criteria.mode and entry.mode == criteria.mode:
        score += weights.mode
    if criteria.day and any(slot.day.lower() == criteria.day.lower() for slot in entry.slots):
        score += weights.day
    if criteria.time and any(time_matches(criteria.time, slot.time) for slot in entry.slots):
        score += weights.time
    return score


def max_score(criteria: SearchCriteria, weights: Optional[KeywordWeights] = None) -> int:
    """Highest score any entry could earn for these criteria."""
    weights = weights or KeywordWeights.from_config(settings.matching)
    total = weights.topic * len(criteria.topics)
    if criteria.mode:
        total += weights.mode
    if criteria.day:
        total += weights.day
    if criteria.time:
        total += weights.time
    return total


def rank_entries(
    criteria: SearchCriteria,
    entries: Sequence[CatalogEntry],
    weights: Optional[KeywordWeights] = None,
) -> list[tuple[CatalogEntry, float]]:
    """Score every entry and return non-zero matches, best first.

    Scores are normalised to [0, 1] by the maximum achievable score.
    Ties keep catalog order. An empty list means nothing matched.

    Examples:
        >>> entry = CatalogEntry(id=1, name="A", mode="online", topics=["Python"])
        >>> rank_entries(SearchCriteria(topics=("python",)), [entry])[0][1]
        1.0
    """
    weights = weights or KeywordWeights.from_config(settings.matching)
    ceiling = max_score(criteria, weights) or 1
    scored = [(entry, score_entry(criteria, entry, weights)) for entry in entries]
    matched = [(entry, raw) for entry, raw in scored if raw > 0]
    matched.sort(key=lambda pair: pair[1], reverse=True)
    return [(entry, min(1.0, raw / ceiling)) for entry, raw in matched]
