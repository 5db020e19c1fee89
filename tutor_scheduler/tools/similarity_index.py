"""
Vector similarity index for catalog entries.

In production this is a hosted vector index (Cloudflare Vectorize,
Milvus, pgvector). ``InMemorySimilarityIndex`` implements the same
query/upsert contract with numpy cosine similarity and is injected
wherever a real index handle is not configured.
"""

import logging
from typing import Any, Optional, Protocol, TypedDict

import numpy as np

from tutor_scheduler.errors import DependencyUnavailableError

logger = logging.getLogger(__name__)


class IndexRecord(TypedDict):
    """A vector stored for one catalog entry."""

    id: str
    values: list[float]
    metadata: dict[str, Any]


class IndexMatch(TypedDict):
    """A single query hit, highest score first."""

    id: str
    score: float
    metadata: dict[str, Any]


class SimilarityIndex(Protocol):
    """Query/upsert contract. Implementations raise DependencyUnavailableError when unreachable."""

    async def query(self, vector: list[float], top_k: int) -> list[IndexMatch]: ...

    async def upsert(self, records: list[IndexRecord]) -> int: ...


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    if a.shape != b.shape:
        raise ValueError(f"Embeddings must have the same dimension: {a.shape} vs {b.shape}")
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.dot(a, b) / denom)


class InMemorySimilarityIndex:
    """Brute-force cosine index kept in process memory."""

    def __init__(self) -> None:
        self._vectors: dict[str, np.ndarray] = {}
        self._metadata: dict[str, dict[str, Any]] = {}
        self._dimension: Optional[int] = None

    def __len__(self) -> int:
        return len(self._vectors)

    async def upsert(self, records: list[IndexRecord]) -> int:
        for record in records:
            vector = np.asarray(record["values"], dtype=float)
            if self._dimension is None:
                self._dimension = vector.shape[0]
            elif vector.shape[0] != self._dimension:
                raise ValueError(
                    f"Vector '{record['id']}' has dimension {vector.shape[0]}, "
                    f"index expects {self._dimension}"
                )
            self._vectors[record["id"]] = vector
            self._metadata[record["id"]] = dict(record.get("metadata") or {})
        logger.debug("Upserted %d vectors (total %d)", len(records), len(self._vectors))
        return len(records)

    async def query(self, vector: list[float], top_k: int) -> list[IndexMatch]:
        if not self._vectors:
            return []
        query_vec = np.asarray(vector, dtype=float)
        if query_vec.shape != (self._dimension,):
            # Embedding model and stored vectors disagree; treat as an unusable index
            raise DependencyUnavailableError(
                "index", f"query has shape {query_vec.shape}, index expects {self._dimension}"
            )
        matches: list[IndexMatch] = [
            {
                "id": vid,
                "score": cosine_similarity(query_vec, stored),
                "metadata": self._metadata[vid],
            }
            for vid, stored in self._vectors.items()
        ]
        # sorted() is stable, so equal scores keep upsert order
        matches = sorted(matches, key=lambda m: m["score"], reverse=True)
        return matches[:top_k]
