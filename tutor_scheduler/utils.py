"""Shared text utilities used across matching and conversation code."""

import re
from typing import Optional

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def normalize_day(value: str) -> Optional[str]:
    """Normalize a weekday name to title case, or None if it isn't one.

    Examples:
        >>> normalize_day(" monday ")
        'Monday'
        >>> normalize_day("someday") is None
        True
    """
    cleaned = value.strip().lower()
    if cleaned in WEEKDAYS:
        return cleaned.title()
    return None


def normalize_mode(value: str) -> Optional[str]:
    """Map free-text session mode wording onto ``online`` / ``in-person``.

    Examples:
        >>> normalize_mode("On Campus")
        'in-person'
        >>> normalize_mode("ONLINE")
        'online'
    """
    cleaned = re.sub(r"[\s_-]+", " ", value.strip().lower())
    if cleaned in ("online", "remote", "virtual", "zoom"):
        return "online"
    if cleaned in ("in person", "on campus", "campus", "onsite", "on site"):
        return "in-person"
    return None


def slot_start(time_range: str) -> str:
    """Return the start of a ``H:MM-H:MM`` slot range.

    Examples:
        >>> slot_start("9:30-10:00")
        '9:30'
    """
    return time_range.split("-", 1)[0].strip()


def time_matches(requested: str, time_range: str) -> bool:
    """Check whether a requested time refers to a slot range.

    Matches the whole range or its start time, ignoring leading zeros
    (``09:30`` matches ``9:30-10:00``, ``10:00`` does not).

    Examples:
        >>> time_matches("10:00", "10:00-10:30")
        True
        >>> time_matches("10:00", "9:30-10:00")
        False
    """
    requested = requested.strip().replace(" ", "")
    if not requested:
        return False
    if requested == time_range.replace(" ", ""):
        return True
    return requested.lstrip("0") == slot_start(time_range).lstrip("0")


def whole_word_pattern(phrase: str) -> re.Pattern[str]:
    """Compile a case-insensitive whole-word pattern for a literal phrase.

    Word edges are checked with lookarounds so phrases ending in symbols
    (``C++``) still match.

    Examples:
        >>> bool(whole_word_pattern("C++").search("help with c++ please"))
        True
        >>> bool(whole_word_pattern("Java").search("JavaScript"))
        False
    """
    return re.compile(rf"(?<!\w){re.escape(phrase)}(?!\w)", re.IGNORECASE)
