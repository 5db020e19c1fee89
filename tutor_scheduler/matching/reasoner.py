"""
Best-match selection over the top retrieved candidates.

The reasoning service picks one candidate and justifies it in a fixed
schema. Its answer is only trusted when the name matches a candidate
and the offered slots exist in that candidate's catalog availability;
otherwise the highest-scoring candidate is selected with a generic
explanation.
"""

import asyncio
from typing import Optional, Sequence

from tutor_scheduler.config import AppConfig, settings
from tutor_scheduler.errors import DependencyUnavailableError
from tutor_scheduler.logging_context import get_session_logger
from tutor_scheduler.schemas.catalog_schema import CatalogEntry, Slot
from tutor_scheduler.schemas.match_schema import (
    Candidate,
    MatchResult,
    ReasoningOutput,
    SearchCriteria,
)
from tutor_scheduler.tools.model_client import ReasoningService
from tutor_scheduler.utils import time_matches

logger = get_session_logger(__name__)


def _slot_key(slot: Slot) -> tuple[str, str, str]:
    return slot.day.strip().lower(), slot.time.replace(" ", ""), slot.mode


def slot_fits(slot: Slot, criteria: SearchCriteria) -> bool:
    if criteria.day and slot.day.lower() != criteria.day.lower():
        return False
    if criteria.time and not time_matches(criteria.time, slot.time):
        return False
    if criteria.mode and slot.mode != criteria.mode:
        return False
    return True


def filter_slots(entry: CatalogEntry, criteria: SearchCriteria) -> list[Slot]:
    """Slots matching the day/time/mode preferences, or every slot if none do."""
    matching = [slot for slot in entry.slots if slot_fits(slot, criteria)]
    return matching or list(entry.slots)


def generic_reasoning(candidate: Candidate, criteria: SearchCriteria) -> str:
    entry = candidate.attributes
    return (
        f"{entry.name} is the closest match for {criteria.topics_text()}, "
        f"with experience in {', '.join(entry.topics)} and {entry.mode} sessions available."
    )


class MatchReasoner:
    """Selects one candidate, with a score-based fallback."""

    def __init__(
        self,
        service: Optional[ReasoningService] = None,
        config: Optional[AppConfig] = None,
    ) -> None:
        self._service = service
        self._config = config or settings

    async def select(
        self, criteria: SearchCriteria, candidates: Sequence[Candidate]
    ) -> Optional[MatchResult]:
        """Pick the best candidate, or None when there are no candidates."""
        if not candidates:
            return None
        shortlist = list(candidates[: self._config.matching.max_reasoning_candidates])

        output = await self._ask_service(criteria, shortlist)
        chosen = self._resolve_name(output, shortlist) if output else None
        if chosen is None or output is None:
            best = max(shortlist, key=lambda c: c.score)
            return MatchResult(
                candidate=best,
                reasoning=generic_reasoning(best, criteria),
                offered_slots=filter_slots(best.attributes, criteria),
            )

        offered = self._accepted_slots(output, chosen.attributes, criteria)
        return MatchResult(
            candidate=chosen,
            reasoning=output.reasoning.strip() or generic_reasoning(chosen, criteria),
            offered_slots=offered or filter_slots(chosen.attributes, criteria),
        )

    async def _ask_service(
        self, criteria: SearchCriteria, shortlist: list[Candidate]
    ) -> Optional[ReasoningOutput]:
        if self._service is None:
            return None
        try:
            return await asyncio.wait_for(
                self._service.reason(criteria, shortlist),
                self._config.model.reasoning_timeout_sec,
            )
        except (DependencyUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning("Reasoning unavailable, selecting by score: %s", exc)
            return None

    @staticmethod
    def _resolve_name(output: ReasoningOutput, shortlist: list[Candidate]) -> Optional[Candidate]:
        wanted = output.selected_name.strip().casefold()
        for candidate in shortlist:
            if candidate.name.strip().casefold() == wanted:
                return candidate
        logger.warning(
            "Reasoning selected %r which is not a candidate; using highest score",
            output.selected_name,
        )
        return None

    @staticmethod
    def _accepted_slots(
        output: ReasoningOutput, entry: CatalogEntry, criteria: SearchCriteria
    ) -> list[Slot]:
        """Keep only proposed slots that are real catalog slots fitting the request."""
        catalog_slots = {_slot_key(slot): slot for slot in entry.slots}
        accepted: list[Slot] = []
        for proposed in output.offered_slots:
            real = catalog_slots.get(_slot_key(proposed))
            if real is None:
                logger.debug("Discarding invented slot %s for %s", proposed.label(), entry.name)
                continue
            if real not in accepted and slot_fits(real, criteria):
                accepted.append(real)
        return accepted
