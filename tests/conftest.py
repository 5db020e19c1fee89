"""Shared test fixtures and fake collaborators."""

import asyncio
from dataclasses import replace
from typing import AsyncIterator, Optional, Sequence

import pytest

from tutor_scheduler.config import AppConfig, settings
from tutor_scheduler.conversation.controller import ConversationController
from tutor_scheduler.errors import DependencyUnavailableError
from tutor_scheduler.matching.reasoner import MatchReasoner
from tutor_scheduler.matching.retriever import CandidateRetriever
from tutor_scheduler.schemas.catalog_schema import Slot
from tutor_scheduler.schemas.match_schema import Candidate, ReasoningOutput, SearchCriteria
from tutor_scheduler.schemas.session_schema import BookingDraft
from tutor_scheduler.session.store import InMemoryKeyValueStore, SessionStore
from tutor_scheduler.tools.booking import FinalizeResult, InMemoryBookingFinalizer
from tutor_scheduler.tools.catalog import InMemoryCatalog
from tutor_scheduler.tools.similarity_index import IndexMatch, IndexRecord, InMemorySimilarityIndex
from tutor_scheduler.utils import whole_word_pattern

VOCABULARY = (
    "python", "java", "javascript", "sql", "linux", "debugging", "c++", "react",
    "css", "html", "mips", "online", "in-person",
)

SCENARIO_A = "I need help with Python on Monday at 10:00"
CONTACT_INSTITUTION = "Name: Ada Lovelace, Email: ada@mail.ccsf.edu"
CONTACT_PERSONAL = "Name: Sam Lee, Email: sam.lee@gmail.com"


class FakeEmbedder:
    """Bag-of-words embedder over a fixed vocabulary, plus a constant bias term."""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.calls: list[str] = []

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise DependencyUnavailableError("embedding", "offline")
        return [1.0 if whole_word_pattern(term).search(text) else 0.0 for term in VOCABULARY] + [0.1]


class ScriptedIndex:
    """Similarity index returning preset matches."""

    def __init__(self, matches: Optional[list[IndexMatch]] = None, delay: float = 0.0) -> None:
        self.matches = matches or []
        self.delay = delay
        self.queries: list[int] = []
        self.records: list[IndexRecord] = []

    async def query(self, vector: list[float], top_k: int) -> list[IndexMatch]:
        self.queries.append(top_k)
        if self.delay:
            await asyncio.sleep(self.delay)
        return [dict(m) for m in self.matches][:top_k]

    async def upsert(self, records: list[IndexRecord]) -> int:
        self.records.extend(records)
        return len(records)


def hit(entry_id, score: float) -> IndexMatch:
    return {"id": f"tutor-{entry_id}", "score": score, "metadata": {}}


class FakeReasoner:
    """Reasoning service with a scripted answer; defaults to the first candidate."""

    def __init__(
        self,
        selected_name: Optional[str] = None,
        offered_slots: Optional[list[Slot]] = None,
        reasoning: str = "Strong topic fit and matching availability.",
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.selected_name = selected_name
        self.offered_slots = offered_slots
        self.reasoning = reasoning
        self.error = error
        self.delay = delay
        self.calls: list[list[Candidate]] = []
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None

    async def reason(
        self, criteria: SearchCriteria, candidates: Sequence[Candidate]
    ) -> ReasoningOutput:
        self.calls.append(list(candidates))
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        chosen = candidates[0]
        return ReasoningOutput(
            selected_name=self.selected_name or chosen.name,
            reasoning=self.reasoning,
            offered_slots=self.offered_slots if self.offered_slots is not None
            else list(chosen.attributes.slots),
        )


class FakeReplyStreamer:
    def __init__(
        self, deltas: Sequence[str] = (), fail: bool = False, stall: float = 0.0
    ) -> None:
        self.deltas = list(deltas)
        self.fail = fail
        self.stall = stall
        self.prompts: list[str] = []

    async def stream_reply(self, prompt: str, history) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        for delta in self.deltas:
            yield delta
        if self.stall:
            await asyncio.sleep(self.stall)
        if self.fail:
            raise DependencyUnavailableError("reply", "stream dropped")


class FlakyFinalizer(InMemoryBookingFinalizer):
    """Fails the first ``failures`` attempts, then books normally."""

    def __init__(self, failures: int = 1, raise_error: bool = False) -> None:
        super().__init__()
        self.failures = failures
        self.raise_error = raise_error
        self.attempts = 0

    async def finalize(self, draft: BookingDraft) -> FinalizeResult:
        self.attempts += 1
        if self.attempts <= self.failures:
            if self.raise_error:
                raise DependencyUnavailableError("booking", "automation crashed")
            return {
                "success": False,
                "error_detail": "site down",
                "booking_url": "https://example.test/book",
            }
        return await super().finalize(draft)


def make_config(**matching) -> AppConfig:
    """Settings with short timeouts for tests."""
    return replace(
        settings,
        model=replace(
            settings.model,
            embedding_timeout_sec=0.2,
            reasoning_timeout_sec=0.2,
            reply_timeout_sec=0.2,
            stream_replies=False,
        ),
        matching=replace(settings.matching, **matching),
        booking=replace(settings.booking, finalize_timeout_sec=0.2),
    )


def make_controller(
    embedder=None,
    index=None,
    reasoner_service=None,
    finalizer=None,
    reply_streamer=None,
    config: Optional[AppConfig] = None,
    kv: Optional[InMemoryKeyValueStore] = None,
) -> ConversationController:
    """Controller over the seed catalog; retrieval falls back to keywords by default."""
    config = config or make_config()
    catalog = InMemoryCatalog()
    return ConversationController(
        store=SessionStore(kv if kv is not None else InMemoryKeyValueStore(), flush_delay=0),
        catalog=catalog,
        retriever=CandidateRetriever(
            catalog, embedder if embedder is not None else FakeEmbedder(),
            index if index is not None else InMemorySimilarityIndex(),
            config,
        ),
        reasoner=MatchReasoner(reasoner_service, config),
        finalizer=finalizer if finalizer is not None else InMemoryBookingFinalizer(),
        reply_streamer=reply_streamer,
        config=config,
    )


async def run_turns(controller: ConversationController, session_id: str, *texts: str):
    """Send turns in order and return the last result."""
    result = None
    for text in texts:
        result = await controller.handle_turn(session_id, text)
    return result


@pytest.fixture
def catalog():
    return InMemoryCatalog()


@pytest.fixture
def controller():
    return make_controller()
