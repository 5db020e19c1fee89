"""
Turn-by-turn conversation controller.

Every turn is classified by an ordered rule table of
``(name, predicate, handler)`` entries; the first rule whose predicate
holds handles the turn. Handlers work on a deep copy of the session and
the copy is committed to the session store only when the handler
finishes, so a turn either applies completely or not at all.

Turns for one session are serialised by a per-session lock. Each turn
also takes a generation token; a turn that finds a newer generation
after an external call discards its work instead of committing it.
"""

import asyncio
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Iterator, Optional

from tutor_scheduler.config import AppConfig, settings
from tutor_scheduler.conversation import intents
from tutor_scheduler.conversation.booking_form import BookingForm
from tutor_scheduler.conversation.state_machine import ConversationState, conversation_state
from tutor_scheduler.errors import DependencyUnavailableError, StaleTurnError
from tutor_scheduler.logging_context import get_session_logger, session_scope
from tutor_scheduler.matching.reasoner import MatchReasoner, filter_slots, generic_reasoning
from tutor_scheduler.matching.retriever import CandidateRetriever
from tutor_scheduler.prompts import prompt_templates as templates
from tutor_scheduler.schemas.catalog_schema import Slot
from tutor_scheduler.schemas.match_schema import MatchResult, SearchCriteria
from tutor_scheduler.schemas.session_schema import BookingDraft, BookingStep, Role, Session
from tutor_scheduler.session.store import SessionStore
from tutor_scheduler.tools.booking import BookingFinalizer, FinalizeResult, build_booking_url
from tutor_scheduler.tools.catalog import CatalogStore, get_known_topics
from tutor_scheduler.tools.model_client import ReplyStreamer
from tutor_scheduler.utils import time_matches

logger = get_session_logger(__name__)

DeltaCallback = Callable[[str], Awaitable[None]]

FREE_TEXT_STEPS = (BookingStep.DETAIL_TEXT, BookingStep.NOTES)


@dataclass
class TurnContext:
    """Everything a rule needs to evaluate and handle one turn."""

    session: Session
    text: str
    state: ConversationState
    generation: int
    known_topics: list[str]
    on_delta: Optional[DeltaCallback] = None
    replies: list[str] = field(default_factory=list)

    @property
    def draft(self) -> Optional[BookingDraft]:
        return self.session.booking_draft


@dataclass(frozen=True)
class Rule:
    """One entry of the ordered intent rule table."""

    name: str
    predicate: Callable[[TurnContext], bool]
    handler: Callable[[TurnContext], Awaitable[None]]


@dataclass
class SessionSlot:
    """Turn lock and generation counter for one session with turns in flight."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    generation: int = 0
    users: int = 0


@dataclass
class TurnResult:
    reply: str
    rule: str
    session: Session
    done: bool = True


class ConversationController:
    """
    Single writer of session state.

    Collaborators are injected: the retriever carries the similarity
    index handle, the reasoner the reasoning service, and the finalizer
    the booking automation. ``reply_streamer`` is optional; without it
    match replies use the templated text.
    """

    def __init__(
        self,
        store: SessionStore,
        catalog: CatalogStore,
        retriever: CandidateRetriever,
        reasoner: MatchReasoner,
        finalizer: BookingFinalizer,
        reply_streamer: Optional[ReplyStreamer] = None,
        config: Optional[AppConfig] = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._retriever = retriever
        self._reasoner = reasoner
        self._finalizer = finalizer
        self._reply_streamer = reply_streamer
        self._config = config or settings
        self._slots: dict[str, SessionSlot] = {}
        self.rules: list[Rule] = self._build_rules()

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def retriever(self) -> CandidateRetriever:
        return self._retriever

    @property
    def active_sessions(self) -> int:
        """Sessions that currently have a call in flight."""
        return len(self._slots)

    def _build_rules(self) -> list[Rule]:
        return [
            Rule("cancel_booking", self._is_cancel, self._handle_cancel),
            Rule("interruption_answer", self._is_interruption_answer, self._handle_interruption_answer),
            Rule("interruption_guard", self._is_interruption, self._handle_interruption),
            Rule("other_candidates", self._is_others_request, self._handle_others),
            Rule("named_selection", self._is_named_selection, self._handle_named_selection),
            Rule("slot_selection", self._is_slot_selection, self._handle_slot_selection),
            Rule("confirm_booking", self._is_confirmation, self._handle_confirmation),
            Rule("booking_step", self._is_booking, self._handle_booking_step),
            Rule("greeting", self._is_greeting, self._handle_greeting),
            Rule("new_search", lambda ctx: True, self._handle_new_search),
        ]

    # --- Session access ---

    def new_session(self, session_id: str) -> Session:
        session = Session(session_id=session_id)
        session.append_message(Role.ASSISTANT, templates.WELCOME_MESSAGE)
        return session

    async def _load(self, session_id: str) -> Session:
        session = await self._store.get(session_id)
        if session is None:
            session = await self._store.put(self.new_session(session_id))
            logger.info("Created session '%s'", session_id)
        return session

    @contextmanager
    def _claim(self, session_id: str) -> Iterator[SessionSlot]:
        """Hold the session's slot; it is dropped when the last holder leaves."""
        slot = self._slots.get(session_id)
        if slot is None:
            slot = self._slots[session_id] = SessionSlot()
        slot.users += 1
        try:
            yield slot
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._slots[session_id]

    async def get_session(self, session_id: str) -> Session:
        """Return the session, creating it with the welcome message if missing."""
        with self._claim(session_id) as slot:
            async with slot.lock:
                return await self._load(session_id)

    async def update_session(self, session_id: str, partial: dict) -> Session:
        with session_scope(session_id), self._claim(session_id) as slot:
            async with slot.lock:
                session = await self._load(session_id)
                return await self._store.update(session, partial)

    async def reset_session(self, session_id: str) -> Session:
        with session_scope(session_id), self._claim(session_id) as slot:
            slot.generation += 1
            async with slot.lock:
                logger.info("Resetting session '%s'", session_id)
                return await self._store.put(self.new_session(session_id))

    # --- Turn processing ---

    def select_rule(self, ctx: TurnContext) -> Rule:
        for rule in self.rules:
            if rule.predicate(ctx):
                return rule
        raise RuntimeError("Rule table has no catch-all rule")

    async def handle_turn(
        self, session_id: str, text: str, on_delta: Optional[DeltaCallback] = None
    ) -> TurnResult:
        """
        Process one user turn and commit the resulting session.

        Raises:
            StaleTurnError: A newer turn for the session superseded this one;
                nothing from this turn was committed.
        """
        with session_scope(session_id), self._claim(session_id) as slot:
            slot.generation += 1
            generation = slot.generation

            async with slot.lock:
                committed = await self._load(session_id)
                working = committed.model_copy(deep=True)
                ctx = TurnContext(
                    session=working,
                    text=text.strip(),
                    state=conversation_state(working),
                    generation=generation,
                    known_topics=get_known_topics(self._catalog),
                    on_delta=on_delta,
                )
                rule = self.select_rule(ctx)
                working.append_message(Role.USER, text)
                logger.info("Turn matched rule '%s' (state=%s)", rule.name, ctx.state.value)

                await rule.handler(ctx)
                self._ensure_current(ctx)
                if rule.name != "interruption_guard":
                    working.pending_interruption = None

                await self._store.put(working)
                return TurnResult(reply="\n\n".join(ctx.replies), rule=rule.name, session=working)

    async def stream_turn(self, session_id: str, text: str) -> AsyncIterator[str]:
        """Yield reply text deltas for a turn as they are produced."""
        queue: asyncio.Queue[Optional[str]] = asyncio.Queue()

        async def on_delta(delta: str) -> None:
            await queue.put(delta)

        task = asyncio.create_task(self.handle_turn(session_id, text, on_delta=on_delta))
        task.add_done_callback(lambda _: queue.put_nowait(None))
        while True:
            delta = await queue.get()
            if delta is None:
                break
            yield delta
        await task

    def _ensure_current(self, ctx: TurnContext) -> None:
        latest = self._slots[ctx.session.session_id].generation
        if latest != ctx.generation:
            raise StaleTurnError(f"turn {ctx.generation} superseded by turn {latest}")

    async def _reply(self, ctx: TurnContext, text: str, match: Optional[MatchResult] = None) -> None:
        ctx.session.append_message(Role.ASSISTANT, text, match=match)
        ctx.replies.append(text)
        if ctx.on_delta is not None:
            await ctx.on_delta(text)

    async def _stream_match_reply(
        self, ctx: TurnContext, criteria: SearchCriteria, match: MatchResult
    ) -> None:
        """Append the assistant message once, then fill it in place as tokens arrive."""
        fallback = templates.build_match_reply(match)
        if self._reply_streamer is None:
            await self._reply(ctx, fallback, match)
            return

        message = ctx.session.append_message(Role.ASSISTANT, "", match=match)
        history = [
            {"role": m.role.value, "content": m.content}
            for m in ctx.session.messages[:-2]
            if m.content
        ]
        prompt = templates.build_match_stream_prompt(criteria, match)

        async def consume() -> None:
            async for delta in self._reply_streamer.stream_reply(prompt, history):
                message.content += delta
                if ctx.on_delta is not None:
                    await ctx.on_delta(delta)

        try:
            await asyncio.wait_for(consume(), self._config.model.reply_timeout_sec)
        except (DependencyUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning("Reply streaming failed, using template: %s", exc)
            if not message.content:
                message.content = fallback
                if ctx.on_delta is not None:
                    await ctx.on_delta(fallback)
        if not message.content:
            message.content = fallback
        ctx.replies.append(message.content)

    # --- Predicates ---

    def _is_cancel(self, ctx: TurnContext) -> bool:
        return ctx.state == ConversationState.BOOKING and intents.is_cancel(ctx.text)

    def _is_interruption_answer(self, ctx: TurnContext) -> bool:
        if ctx.state != ConversationState.BOOKING or not ctx.session.pending_interruption:
            return False
        last = ctx.session.last_assistant_message()
        if last is None or templates.INTERRUPTION_MARKER not in last.content:
            return False
        return intents.is_yes(ctx.text) or intents.is_no(ctx.text)

    def _is_interruption(self, ctx: TurnContext) -> bool:
        if ctx.state != ConversationState.BOOKING:
            return False
        free_text = ctx.draft is not None and ctx.draft.step in FREE_TEXT_STEPS
        return intents.is_new_search(ctx.text, ctx.known_topics, free_text_step=free_text)

    def _is_others_request(self, ctx: TurnContext) -> bool:
        return ctx.state != ConversationState.BOOKING and intents.is_others_request(ctx.text)

    def _is_named_selection(self, ctx: TurnContext) -> bool:
        if ctx.state == ConversationState.BOOKING or not ctx.session.candidate_list:
            return False
        entries = [r.candidate.attributes for r in ctx.session.candidate_list]
        return bool(intents.names_mentioned(ctx.text, entries))

    def _is_slot_selection(self, ctx: TurnContext) -> bool:
        if ctx.state != ConversationState.MATCH_PENDING:
            return False
        return self._requested_slot(ctx) is not None

    def _is_confirmation(self, ctx: TurnContext) -> bool:
        if ctx.state == ConversationState.BOOKING:
            return False
        has_match = ctx.state == ConversationState.MATCH_PENDING or bool(ctx.session.candidate_list)
        if not has_match or not intents.is_affirmative(ctx.text):
            return False
        return not intents.is_new_search(ctx.text, ctx.known_topics)

    def _is_booking(self, ctx: TurnContext) -> bool:
        return ctx.state == ConversationState.BOOKING

    def _is_greeting(self, ctx: TurnContext) -> bool:
        return intents.is_greeting(ctx.text)

    def _requested_slot(self, ctx: TurnContext) -> Optional[Slot]:
        """The pending match's slot named by a day + time pair in the turn."""
        match = ctx.session.pending_match
        day = intents.extract_day(ctx.text)
        time = intents.extract_time(ctx.text)
        if match is None or not day or not time:
            return None
        for slot in match.candidate.attributes.slots:
            if slot.day.lower() == day.lower() and time_matches(time, slot.time):
                return slot
        return None

    # --- Handlers ---

    def _clear_booking_state(self, session: Session) -> None:
        session.booking_draft = None
        session.pending_match = None
        session.candidate_list = []

    async def _handle_cancel(self, ctx: TurnContext) -> None:
        self._clear_booking_state(ctx.session)
        logger.info("Booking cancelled by user")
        if intents.find_topics(ctx.text, ctx.known_topics):
            await self._search(ctx, ctx.text)
        else:
            await self._reply(ctx, templates.CANCELLED_REPLY)

    async def _handle_interruption_answer(self, ctx: TurnContext) -> None:
        captured = ctx.session.pending_interruption or ""
        ctx.session.pending_interruption = None
        if intents.is_yes(ctx.text):
            logger.info("Abandoning booking for new search")
            self._clear_booking_state(ctx.session)
            await self._search(ctx, captured)
            return
        form = BookingForm(ctx.draft, self._config.booking)
        await self._reply(
            ctx, f"Great! Let's continue with your booking.\n\n{form.current_prompt()}"
        )

    async def _handle_interruption(self, ctx: TurnContext) -> None:
        session = ctx.session
        session.pending_interruption = ctx.text
        pending = session.pending_match
        if session.last_search_criteria is not None:
            previous_topic = session.last_search_criteria.primary_topic
        elif pending is not None and pending.candidate.attributes.topics:
            previous_topic = pending.candidate.attributes.topics[0]
        else:
            previous_topic = "your previous search"
        await self._reply(
            ctx,
            templates.build_interruption_prompt(
                ctx.text, pending.name if pending else None, previous_topic
            ),
        )

    async def _handle_others(self, ctx: TurnContext) -> None:
        session = ctx.session
        named_topics = intents.find_topics(ctx.text, ctx.known_topics)
        if named_topics:
            criteria = SearchCriteria(topics=tuple(named_topics), mode=intents.extract_mode(ctx.text))
            session.last_search_criteria = criteria
        elif session.last_search_criteria is not None:
            criteria = session.last_search_criteria
        elif session.pending_match is not None and session.pending_match.candidate.attributes.topics:
            criteria = SearchCriteria(topics=(session.pending_match.candidate.attributes.topics[0],))
        else:
            await self._reply(ctx, templates.build_clarify_topic_reply())
            return

        exclude = [session.pending_match.entry_id] if session.pending_match else []
        result = await self._retriever.retrieve(
            criteria, self._config.matching.others_top_k, exclude_ids=exclude
        )
        self._ensure_current(ctx)
        if not result:
            await self._reply(ctx, templates.build_only_match_reply(session.pending_match))
            return

        session.candidate_list = [
            MatchResult(
                candidate=candidate,
                reasoning=generic_reasoning(candidate, criteria),
                offered_slots=filter_slots(candidate.attributes, criteria),
            )
            for candidate in result.candidates
        ]
        logger.info(
            "Listed %d other candidates (%s tier)", len(session.candidate_list), result.tier
        )
        await self._reply(
            ctx, templates.build_candidate_list_reply(session.candidate_list, criteria.topics_text())
        )

    async def _handle_named_selection(self, ctx: TurnContext) -> None:
        session = ctx.session
        entries = [r.candidate.attributes for r in session.candidate_list]
        named = intents.names_mentioned(ctx.text, entries)
        if len(named) > 1:
            names = " or ".join(entry.name for entry in named)
            await self._reply(ctx, f"Which {templates.PROVIDER} did you mean: {names}?")
            return
        chosen = next(r for r in session.candidate_list if r.entry_id == named[0].id)
        session.pending_match = chosen
        session.candidate_list = []
        await self._reply(ctx, templates.build_slot_choice_reply(chosen), chosen)

    async def _handle_slot_selection(self, ctx: TurnContext) -> None:
        slot = self._requested_slot(ctx)
        await self._start_booking(ctx, ctx.session.pending_match, slot)

    async def _handle_confirmation(self, ctx: TurnContext) -> None:
        session = ctx.session
        chosen = session.pending_match
        if session.candidate_list:
            chosen = self._resolve_confirmed_candidate(session)
        slots = chosen.offered_slots or chosen.candidate.attributes.slots
        if not slots:
            await self._reply(
                ctx, f"Sorry, {chosen.name} has no open slots right now. Try \"show me other tutors\"."
            )
            return
        session.pending_match = chosen
        session.candidate_list = []
        await self._start_booking(ctx, chosen, slots[0])

    @staticmethod
    def _resolve_confirmed_candidate(session: Session) -> MatchResult:
        """Single listed candidate, else the one the last reply named alone, else the best-ranked."""
        listed = session.candidate_list
        if len(listed) == 1:
            return listed[0]
        last = session.last_assistant_message()
        if last is not None:
            named = intents.names_mentioned(last.content, [r.candidate.attributes for r in listed])
            if len(named) == 1:
                return next(r for r in listed if r.entry_id == named[0].id)
        return listed[0]

    async def _start_booking(self, ctx: TurnContext, match: MatchResult, slot: Slot) -> None:
        draft = BookingDraft(entry_id=match.entry_id, slot=slot)
        ctx.session.booking_draft = draft
        form = BookingForm(draft, self._config.booking)
        logger.info("Booking started with entry %d on %s", match.entry_id, slot.label())
        await self._reply(
            ctx, templates.build_booking_started_reply(match.name, slot, form.current_prompt())
        )

    async def _handle_booking_step(self, ctx: TurnContext) -> None:
        draft = ctx.draft
        form = BookingForm(draft, self._config.booking)
        finalizing = draft.step == BookingStep.NOTES
        ok, message = form.submit(ctx.text)
        if not ok:
            await self._reply(ctx, message)
            return
        if finalizing:
            await self._finalize(ctx, form)
            return
        await self._reply(ctx, f"{message}\n\n{form.current_prompt()}")

    async def _finalize(self, ctx: TurnContext, form: BookingForm) -> None:
        session = ctx.session
        draft = form.draft
        try:
            result: FinalizeResult = await asyncio.wait_for(
                self._finalizer.finalize(draft.model_copy(deep=True)),
                self._config.booking.finalize_timeout_sec,
            )
        except (DependencyUnavailableError, asyncio.TimeoutError) as exc:
            logger.warning("Booking finalization unavailable: %s", exc)
            result = {
                "success": False,
                "error_detail": "the booking service is not responding",
                "booking_url": build_booking_url(draft.slot.day, draft.slot.time),
            }

        booking_url = result.get("booking_url", "")
        if not result.get("success"):
            logger.warning("Booking finalization failed: %s", result.get("error_detail"))
            await self._reply(
                ctx,
                templates.build_booking_failed_reply(
                    result.get("error_detail") or "unknown error", booking_url
                ),
            )
            return

        provider = session.pending_match.name if session.pending_match else templates.PROVIDER
        form.mark_finalized()
        self._clear_booking_state(session)
        await self._reply(
            ctx,
            templates.build_booking_success_reply(
                provider, draft.slot, result.get("reference", ""), booking_url
            ),
        )

    async def _handle_greeting(self, ctx: TurnContext) -> None:
        await self._reply(ctx, templates.GREETING_REPLY)

    async def _handle_new_search(self, ctx: TurnContext) -> None:
        await self._search(ctx, ctx.text)

    async def _search(self, ctx: TurnContext, text: str) -> None:
        session = ctx.session
        criteria = intents.extract_criteria(text, ctx.known_topics)
        if criteria is None:
            await self._reply(ctx, templates.GREETING_REPLY)
            return
        session.last_search_criteria = criteria
        session.pending_match = None
        session.candidate_list = []

        result = await self._retriever.retrieve(criteria, self._config.matching.single_match_top_k)
        self._ensure_current(ctx)
        match = await self._reasoner.select(criteria, result.candidates)
        self._ensure_current(ctx)
        if match is None:
            await self._reply(ctx, templates.build_no_match_reply(criteria))
            return

        session.pending_match = match
        logger.info(
            "Matched entry %d (%s tier, score %.2f)", match.entry_id, result.tier, match.candidate.score
        )
        await self._stream_match_reply(ctx, criteria, match)
        self._ensure_current(ctx)
