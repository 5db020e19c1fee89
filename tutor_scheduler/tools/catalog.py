"""
Tutor catalog with topics, modes, and weekly availability.

In production the catalog lives in a record store (D1 / SQLite / Postgres)
exposing simple read queries. ``InMemoryCatalog`` implements the same read
contract over a seed list and is what tests and the console demo use.
"""

import logging
from typing import Iterable, Optional, Protocol

from tutor_scheduler.schemas.catalog_schema import CatalogEntry

logger = logging.getLogger(__name__)


class CatalogStore(Protocol):
    """Read-only catalog contract used by the matcher and controller."""

    def list_entries(self) -> list[CatalogEntry]: ...

    def get_entry(self, entry_id: int) -> Optional[CatalogEntry]: ...


SEED_TUTORS: list[dict] = [
    {
        "id": 1,
        "name": "Aung Nanda O",
        "pronouns": "he/him",
        "bio": "I also go by Nikki. Extrovert who enjoys helping others succeed. "
               "Skilled in Python, Java, JavaScript, React, HTML, CSS.",
        "mode": "online",
        "topics": ["Python", "Java", "JavaScript", "React", "HTML", "CSS"],
        "slots": [
            {"day": "Monday", "time": "9:30-10:00", "mode": "online"},
            {"day": "Wednesday", "time": "4:00-4:30", "mode": "online"},
            {"day": "Wednesday", "time": "4:30-5:00", "mode": "online"},
        ],
    },
    {
        "id": 2,
        "name": "Mei O",
        "pronouns": "she/they",
        "bio": "Aspiring AI & Linguistics researcher. Daily Arch Linux user. "
               "Passionate about Python, Linux, and machine learning concepts.",
        "mode": "online",
        "topics": ["Python", "Linux", "Debugging"],
        "slots": [
            {"day": "Tuesday", "time": "11:00-11:30", "mode": "online"},
            {"day": "Tuesday", "time": "11:30-12:00", "mode": "online"},
            {"day": "Thursday", "time": "2:30-3:00", "mode": "online"},
        ],
    },
    {
        "id": 3,
        "name": "Chris H",
        "pronouns": "he/him",
        "bio": "Problem solver and travel enthusiast. Experienced with Python, Java, "
               "SQL, JavaScript, CSS, and MIPS assembly.",
        "mode": "in-person",
        "topics": ["Python", "Java", "SQL", "JavaScript", "CSS", "MIPS Assembly"],
        "slots": [
            {"day": "Monday", "time": "10:00-10:30", "mode": "in-person"},
            {"day": "Monday", "time": "10:30-11:00", "mode": "in-person"},
            {"day": "Friday", "time": "11:00-11:30", "mode": "in-person"},
        ],
    },
    {
        "id": 4,
        "name": "Claire C",
        "pronouns": None,
        "bio": "Second-year CS major. Swimmer, pianist, and board game lover. "
               "Excited to tutor programming fundamentals.",
        "mode": "in-person",
        "topics": ["Python", "C++", "Debugging"],
        "slots": [
            {"day": "Wednesday", "time": "9:30-10:00", "mode": "in-person"},
            {"day": "Wednesday", "time": "10:00-10:30", "mode": "in-person"},
            {"day": "Wednesday", "time": "7:00-7:30", "mode": "in-person"},
        ],
    },
]

TOPIC_ALIASES: dict[str, str] = {
    "js": "JavaScript", "node": "JavaScript", "typescript": "JavaScript",
    "py": "Python", "pandas": "Python",
    "cpp": "C++", "c plus plus": "C++",
    "mips": "MIPS Assembly", "assembly": "MIPS Assembly",
    "database": "SQL", "databases": "SQL", "postgres": "SQL", "mysql": "SQL",
    "bash": "Linux", "shell": "Linux", "terminal": "Linux",
    "bug": "Debugging", "bugs": "Debugging", "debug": "Debugging",
    "web": "HTML", "frontend": "React",
}


class InMemoryCatalog:
    """Catalog store backed by an ordered list; list order is insertion order."""

    def __init__(self, entries: Optional[Iterable[CatalogEntry]] = None) -> None:
        if entries is None:
            entries = [CatalogEntry.model_validate(raw) for raw in SEED_TUTORS]
        self._entries: list[CatalogEntry] = list(entries)
        self._by_id = {entry.id: entry for entry in self._entries}
        if len(self._by_id) != len(self._entries):
            raise ValueError("Catalog entry ids must be unique")

    def list_entries(self) -> list[CatalogEntry]:
        return list(self._entries)

    def get_entry(self, entry_id: int) -> Optional[CatalogEntry]:
        return self._by_id.get(entry_id)


def get_known_topics(catalog: CatalogStore) -> list[str]:
    """Return every topic taught by any catalog entry, in first-seen order.

    This is the single source of truth for topic recognition in user
    text, alongside ``TOPIC_ALIASES``.
    """
    seen: dict[str, None] = {}
    for entry in catalog.list_entries():
        for topic in entry.topics:
            seen.setdefault(topic, None)
    return list(seen)

