"""
Two-tier candidate retrieval: semantic similarity first, keywords second.

The semantic tier embeds a natural-language rendering of the search
criteria and queries the injected similarity index. When the embedding
service or index fails, times out, or returns nothing usable, the
keyword scorer ranks the catalog locally so retrieval never hard-fails
the conversation.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Iterable, Literal, Optional

from tutor_scheduler.config import AppConfig, settings
from tutor_scheduler.errors import DependencyUnavailableError
from tutor_scheduler.logging_context import get_session_logger
from tutor_scheduler.matching.keyword_scorer import KeywordWeights, rank_entries
from tutor_scheduler.schemas.catalog_schema import CatalogEntry
from tutor_scheduler.schemas.match_schema import Candidate, SearchCriteria
from tutor_scheduler.tools.catalog import CatalogStore
from tutor_scheduler.tools.model_client import EmbeddingService
from tutor_scheduler.tools.similarity_index import IndexMatch, IndexRecord, SimilarityIndex

logger = get_session_logger(__name__)

INDEX_ID_PREFIX = "tutor-"

Tier = Literal["semantic", "keyword"]


@dataclass
class RetrievalResult:
    """Ranked candidates plus the tier that produced them."""

    candidates: list[Candidate] = field(default_factory=list)
    tier: Tier = "semantic"

    def __bool__(self) -> bool:
        return bool(self.candidates)

    @property
    def top(self) -> Optional[Candidate]:
        return self.candidates[0] if self.candidates else None


def index_id_for(entry_id: int) -> str:
    return f"{INDEX_ID_PREFIX}{entry_id}"


def entry_id_from_match(match: IndexMatch) -> Optional[int]:
    """Resolve an index hit back to a catalog id via metadata or the id convention."""
    raw = (match.get("metadata") or {}).get("entryId")
    if raw is None:
        vid = str(match["id"])
        raw = vid[len(INDEX_ID_PREFIX):] if vid.startswith(INDEX_ID_PREFIX) else vid
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def build_entry_document(entry: CatalogEntry) -> str:
    """Text embedded for a catalog entry."""
    availability = ", ".join(f"{slot.day} {slot.time} ({slot.mode})" for slot in entry.slots)
    return (
        f"Tutor: {entry.name}\n"
        f"Bio: {entry.bio}\n"
        f"Skills: {', '.join(entry.topics)}\n"
        f"Mode: {entry.mode}\n"
        f"Availability: {availability}"
    )


async def index_catalog(
    catalog: CatalogStore, embedder: EmbeddingService, index: SimilarityIndex
) -> int:
    """Embed every catalog entry and upsert it into the similarity index."""
    records: list[IndexRecord] = []
    for entry in catalog.list_entries():
        vector = await embedder.embed(build_entry_document(entry))
        records.append({
            "id": index_id_for(entry.id),
            "values": vector,
            "metadata": {
                "entryId": entry.id,
                "name": entry.name,
                "topics": list(entry.topics),
                "mode": entry.mode,
            },
        })
    count = await index.upsert(records)
    logger.info("Indexed %d catalog entries", count)
    return count


class CandidateRetriever:
    """Turns search criteria into ranked catalog candidates."""

    def __init__(
        self,
        catalog: CatalogStore,
        embedder: EmbeddingService,
        index: SimilarityIndex,
        config: Optional[AppConfig] = None,
    ) -> None:
        self._catalog = catalog
        self._embedder = embedder
        self._index = index
        self._config = config or settings
        self._weights = KeywordWeights.from_config(self._config.matching)

    async def index_catalog(self) -> int:
        """Embed and upsert the whole catalog into this retriever's index."""
        return await index_catalog(self._catalog, self._embedder, self._index)

    async def retrieve(
        self,
        criteria: SearchCriteria,
        top_k: Optional[int] = None,
        exclude_ids: Iterable[int] = (),
    ) -> RetrievalResult:
        """Return up to ``top_k`` candidates, score-descending.

        Args:
            criteria: The search request.
            top_k: Result size; defaults to the single-match size.
            exclude_ids: Catalog ids that must not appear in the result.
        """
        top_k = top_k or self._config.matching.single_match_top_k
        excluded = set(exclude_ids)
        ranks = self._catalog_ranks()

        try:
            matches = await self._semantic_query(criteria, top_k)
        except (DependencyUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning("Semantic retrieval unavailable, using keyword fallback: %s", exc)
            matches = []

        candidates = self._resolve_matches(matches, excluded)
        if candidates:
            if top_k >= self._config.matching.others_top_k:
                candidates = self._merge_keyword(criteria.topics_only(), candidates, excluded)
            return RetrievalResult(self._ordered(candidates, ranks)[:top_k], "semantic")

        keyword = [
            Candidate(entry_id=entry.id, score=score, attributes=entry)
            for entry, score in rank_entries(criteria, self._catalog.list_entries(), self._weights)
            if entry.id not in excluded
        ]
        logger.info(
            "Keyword fallback for %r: %d candidates", criteria.topics_text(), len(keyword)
        )
        return RetrievalResult(self._ordered(keyword, ranks)[:top_k], "keyword")

    async def _semantic_query(self, criteria: SearchCriteria, top_k: int) -> list[IndexMatch]:
        timeout = self._config.model.embedding_timeout_sec
        vector = await asyncio.wait_for(self._embedder.embed(criteria.describe()), timeout)
        return await asyncio.wait_for(self._index.query(vector, top_k), timeout)

    def _resolve_matches(self, matches: list[IndexMatch], excluded: set[int]) -> list[Candidate]:
        candidates: list[Candidate] = []
        seen: set[int] = set()
        for match in matches:
            entry_id = entry_id_from_match(match)
            if entry_id is None or entry_id in excluded or entry_id in seen:
                continue
            entry = self._catalog.get_entry(entry_id)
            if entry is None:
                logger.debug("Dropping unresolvable index id %s", match["id"])
                continue
            seen.add(entry_id)
            score = min(1.0, max(0.0, float(match["score"])))
            candidates.append(Candidate(entry_id=entry_id, score=score, attributes=entry))
        return candidates

    def _merge_keyword(
        self, criteria: SearchCriteria, candidates: list[Candidate], excluded: set[int]
    ) -> list[Candidate]:
        """Add keyword matches the semantic tier missed, with their keyword score."""
        present = {c.entry_id for c in candidates} | excluded
        merged = list(candidates)
        for entry, score in rank_entries(criteria, self._catalog.list_entries(), self._weights):
            if entry.id not in present:
                merged.append(Candidate(entry_id=entry.id, score=score, attributes=entry))
        return merged

    def _catalog_ranks(self) -> dict[int, int]:
        return {entry.id: idx for idx, entry in enumerate(self._catalog.list_entries())}

    @staticmethod
    def _ordered(candidates: list[Candidate], ranks: dict[int, int]) -> list[Candidate]:
        return sorted(candidates, key=lambda c: (-c.score, ranks.get(c.entry_id, len(ranks))))
