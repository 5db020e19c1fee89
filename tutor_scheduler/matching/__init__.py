"""Retrieval-augmented tutor matching with a deterministic keyword fallback."""

from tutor_scheduler.matching.reasoner import MatchReasoner, filter_slots
from tutor_scheduler.matching.retriever import (
    CandidateRetriever,
    RetrievalResult,
    index_catalog,
)

__all__ = [
    "CandidateRetriever",
    "MatchReasoner",
    "RetrievalResult",
    "filter_slots",
    "index_catalog",
]
