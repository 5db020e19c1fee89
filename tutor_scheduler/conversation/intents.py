"""
Lightweight pattern rules for reading intent and search details from a turn.

These helpers only recognise wording; deciding what a turn means given
the session state is the controller's job.
"""

import re
from typing import Optional, Sequence

from tutor_scheduler.schemas.catalog_schema import CatalogEntry
from tutor_scheduler.schemas.match_schema import SearchCriteria
from tutor_scheduler.tools.catalog import TOPIC_ALIASES
from tutor_scheduler.utils import WEEKDAYS, normalize_day, normalize_mode, whole_word_pattern

MAX_FREE_TEXT_TOPIC = 200
MIN_NAME_PART_LENGTH = 2

GREETING_RE = re.compile(
    r"^(hi|hello|hey|hiya|howdy|good (morning|afternoon|evening))( there)?[!.,\s]*$",
    re.IGNORECASE,
)
YES_RE = re.compile(r"^(yes|y|yeah|yep|yup|sure)[.!\s]*$", re.IGNORECASE)
NO_RE = re.compile(r"^(no|n|nope|nah)[.!\s]*$", re.IGNORECASE)
AFFIRMATIVE_RE = re.compile(
    r"^(yes|y|yeah|yep|yup|sure|ok|okay|sounds good)[.!\s]*$|\bbook(ing)?\b|\bconfirm\b",
    re.IGNORECASE,
)
CANCEL_RE = re.compile(
    r"^cancel[.!\s]*$|\bcancel (the |my |this )?booking\b|\bstart over\b",
    re.IGNORECASE,
)
OTHERS_RE = re.compile(
    r"\b(other|another|different|more)\s+(tutors?|options?|matches|people|ones?)\b"
    r"|\bsomeone else\b|\banyone else\b|\bshow (me )?(all|others)\b",
    re.IGNORECASE,
)
SEARCH_WORDING_RE = re.compile(
    r"\b(help with|tutors?|need help|looking for|find|search)\b", re.IGNORECASE
)
EXPLICIT_SEARCH_RE = re.compile(
    r"\bnew search\b|\bsearch for\b|\bfind (me )?(a |another )?tutor\b"
    r"|\blooking for (a |another )?tutor\b|\bdifferent tutor\b",
    re.IGNORECASE,
)
FORM_ANSWER_RE = re.compile(r"^(yes|y|no|n|skip|cancel)[.!\s]*$", re.IGNORECASE)
CONTACT_WORDING_RE = re.compile(r"name\s*:|email\s*:|my name is", re.IGNORECASE)

TIME_RANGE_RE = re.compile(r"\b(\d{1,2}:\d{2})(?:\s*-\s*(\d{1,2}:\d{2}))?")
HOUR_AMPM_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b", re.IGNORECASE)
MODE_RE = re.compile(
    r"\b(online|remote|virtual|zoom|in[ -]person|on[ -]campus|onsite|on[ -]site)\b",
    re.IGNORECASE,
)


def is_greeting(text: str) -> bool:
    return bool(GREETING_RE.match(text.strip()))


def is_yes(text: str) -> bool:
    return bool(YES_RE.match(text.strip()))


def is_no(text: str) -> bool:
    return bool(NO_RE.match(text.strip()))


def is_affirmative(text: str) -> bool:
    return bool(AFFIRMATIVE_RE.search(text.strip()))


def is_cancel(text: str) -> bool:
    return bool(CANCEL_RE.search(text))


def is_others_request(text: str) -> bool:
    return bool(OTHERS_RE.search(text))


def find_topics(text: str, known_topics: Sequence[str]) -> list[str]:
    """Known topics and aliases mentioned in the text, first mention first."""
    found: list[tuple[int, str]] = []
    for topic in known_topics:
        match = whole_word_pattern(topic).search(text)
        if match:
            found.append((match.start(), topic))
    for alias, topic in TOPIC_ALIASES.items():
        if topic not in known_topics:
            continue
        match = whole_word_pattern(alias).search(text)
        if match:
            found.append((match.start(), topic))
    found.sort(key=lambda pair: pair[0])
    topics: list[str] = []
    for _, topic in found:
        if topic not in topics:
            topics.append(topic)
    return topics


def is_new_search(text: str, known_topics: Sequence[str], free_text_step: bool = False) -> bool:
    """Check whether a turn reads as a fresh tutor search.

    Plain form answers (yes/no/skip, contact details) never count. During
    free-text form steps a bare topic mention is an answer, since the
    student is expected to describe topics there; search wording together
    with a known topic, or explicit search wording, still counts.
    """
    stripped = text.strip()
    if FORM_ANSWER_RE.match(stripped) or CONTACT_WORDING_RE.search(stripped):
        return False
    if free_text_step:
        if EXPLICIT_SEARCH_RE.search(stripped):
            return True
        return bool(SEARCH_WORDING_RE.search(stripped) and find_topics(stripped, known_topics))
    return bool(SEARCH_WORDING_RE.search(stripped) or find_topics(stripped, known_topics))


def extract_time(text: str) -> Optional[str]:
    """Find a clock time or range, normalised without leading zeros.

    Examples:
        >>> extract_time("Monday at 10:00")
        '10:00'
        >>> extract_time("around 2pm")
        '2:00'
    """
    match = TIME_RANGE_RE.search(text)
    if match:
        start = match.group(1).lstrip("0") or "0"
        if start.startswith(":"):
            start = "0" + start
        if match.group(2):
            return f"{start}-{match.group(2).lstrip('0') or '0'}"
        return start
    match = HOUR_AMPM_RE.search(text)
    if match:
        hour = int(match.group(1)) % 12 or 12
        return f"{hour}:{match.group(2) or '00'}"
    return None


def extract_day(text: str) -> Optional[str]:
    for day in WEEKDAYS:
        if whole_word_pattern(day).search(text):
            return normalize_day(day)
    return None


def extract_mode(text: str) -> Optional[str]:
    match = MODE_RE.search(text)
    return normalize_mode(match.group(1)) if match else None


def extract_criteria(text: str, known_topics: Sequence[str]) -> Optional[SearchCriteria]:
    """Build search criteria from a free-text request.

    Falls back to the cleaned request text as the topic when no known
    topic is named, so semantic search can still interpret it.
    """
    cleaned = " ".join(text.split())
    if not cleaned:
        return None
    topics = find_topics(cleaned, known_topics) or [cleaned[:MAX_FREE_TEXT_TOPIC]]
    return SearchCriteria(
        topics=tuple(topics),
        day=extract_day(cleaned),
        time=extract_time(cleaned),
        mode=extract_mode(cleaned),
    )


def _name_patterns(name: str) -> list[re.Pattern[str]]:
    parts = [p for p in name.split() if len(p) >= MIN_NAME_PART_LENGTH]
    phrases = [name]
    if parts:
        phrases.append(parts[0])
    if len(parts) > 1:
        phrases.append(parts[-1])
    return [whole_word_pattern(phrase) for phrase in phrases]


def names_mentioned(text: str, entries: Sequence[CatalogEntry]) -> list[CatalogEntry]:
    """Entries whose full, first, or last name appears as a whole word.

    A full-name mention wins over partial mentions of other entries.
    """
    full = [e for e in entries if whole_word_pattern(e.name).search(text)]
    if full:
        return full
    return [e for e in entries if any(p.search(text) for p in _name_patterns(e.name))]
