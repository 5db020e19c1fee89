"""Conversation controller tests: full turns over the seed catalog."""

import asyncio
import logging

import pytest

from tests.conftest import (
    CONTACT_INSTITUTION,
    CONTACT_PERSONAL,
    SCENARIO_A,
    FakeReasoner,
    FakeReplyStreamer,
    FlakyFinalizer,
    make_controller,
    run_turns,
)
from tutor_scheduler.conversation.state_machine import ConversationState, conversation_state
from tutor_scheduler.errors import DependencyUnavailableError, StaleTurnError
from tutor_scheduler.logging_context import NO_SESSION, get_session_id
from tutor_scheduler.prompts.prompt_templates import (
    CANCELLED_REPLY,
    GREETING_REPLY,
    INTERRUPTION_MARKER,
    WELCOME_MESSAGE,
)
from tutor_scheduler.schemas.session_schema import BookingStep, Role
from tutor_scheduler.session.store import InMemoryKeyValueStore, SessionStore

BOOKING_ANSWERS = (
    CONTACT_INSTITUTION,
    "S12345678",
    "yes",
    "110A, 131B",
    "A programming assignment on nested loops",
)


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_new_session_has_welcome(self, controller):
        session = await controller.get_session("s1")
        assert [m.content for m in session.messages] == [WELCOME_MESSAGE]
        assert conversation_state(session) == ConversationState.IDLE

    @pytest.mark.asyncio
    async def test_greeting(self, controller):
        result = await controller.handle_turn("s1", "hello")
        assert result.rule == "greeting"
        assert result.reply == GREETING_REPLY

    @pytest.mark.asyncio
    async def test_messages_alternate_in_order(self, controller):
        await run_turns(controller, "s1", "hi", SCENARIO_A)
        session = await controller.get_session("s1")
        roles = [m.role for m in session.messages]
        assert roles == [Role.ASSISTANT, Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]
        stamps = [m.timestamp for m in session.messages]
        assert stamps == sorted(stamps)

    @pytest.mark.asyncio
    async def test_reset_clears_everything(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes")
        session = await controller.reset_session("s1")
        assert session.booking_draft is None
        assert session.pending_match is None
        assert len(session.messages) == 1

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, controller):
        await controller.handle_turn("a", SCENARIO_A)
        other = await controller.get_session("b")
        assert other.pending_match is None

    @pytest.mark.asyncio
    async def test_turns_persist_to_backing_store(self):
        kv = InMemoryKeyValueStore()
        controller = make_controller(kv=kv)
        await controller.handle_turn("s1", SCENARIO_A)
        await controller.store.flush()
        restored = await SessionStore(kv, flush_delay=0).get("s1")
        assert restored.pending_match.name == "Chris H"

    @pytest.mark.asyncio
    async def test_turn_logs_carry_session_id(self, controller, caplog):
        with caplog.at_level(logging.INFO, logger="tutor_scheduler"):
            await controller.handle_turn("sess-7", SCENARIO_A)
        turn_records = [r for r in caplog.records if "matched rule" in r.getMessage()]
        assert [r.session_id for r in turn_records] == ["sess-7"]
        fallback = [r for r in caplog.records if r.name == "tutor_scheduler.matching.retriever"]
        assert fallback
        assert {r.session_id for r in fallback} == {"sess-7"}
        assert get_session_id() == NO_SESSION

    @pytest.mark.asyncio
    async def test_finished_sessions_release_their_slot(self, controller):
        await run_turns(controller, "s1", "hi", SCENARIO_A)
        await controller.get_session("s2")
        await controller.reset_session("s1")
        assert controller.active_sessions == 0


class TestSearch:
    @pytest.mark.asyncio
    async def test_best_match_for_topic_day_time(self, controller):
        result = await controller.handle_turn("s1", SCENARIO_A)
        assert result.rule == "new_search"
        assert "Chris H" in result.reply
        assert "Monday at 10:00-10:30 (in-person)" in result.reply
        session = result.session
        assert conversation_state(session) == ConversationState.MATCH_PENDING
        assert session.last_search_criteria.topics == ("Python",)
        assert session.messages[-1].match.name == "Chris H"

    @pytest.mark.asyncio
    async def test_reasoning_service_choice_used(self):
        controller = make_controller(reasoner_service=FakeReasoner(selected_name="Aung Nanda O"))
        result = await controller.handle_turn("s1", SCENARIO_A)
        assert result.session.pending_match.name == "Aung Nanda O"

    @pytest.mark.asyncio
    async def test_hallucinated_choice_falls_back_to_best_score(self):
        controller = make_controller(reasoner_service=FakeReasoner(selected_name="Dr. Nobody"))
        result = await controller.handle_turn("s1", SCENARIO_A)
        assert result.session.pending_match.name == "Chris H"

    @pytest.mark.asyncio
    async def test_reasoning_outage_selects_highest_score(self):
        service = FakeReasoner(error=DependencyUnavailableError("reasoning", "down"))
        controller = make_controller(reasoner_service=service)
        result = await controller.handle_turn("s1", SCENARIO_A)
        match = result.session.pending_match
        assert match.name == "Chris H"
        assert match.candidate.score == pytest.approx(1.0)
        assert match.reasoning.startswith("Chris H is the closest match")
        assert len(service.calls) == 1

    @pytest.mark.asyncio
    async def test_no_match_reply(self, controller):
        result = await controller.handle_turn("s1", "I need help with underwater basket weaving")
        assert "couldn't find" in result.reply
        assert conversation_state(result.session) == ConversationState.IDLE

    @pytest.mark.asyncio
    async def test_new_search_replaces_pending_match(self, controller):
        await controller.handle_turn("s1", SCENARIO_A)
        result = await controller.handle_turn("s1", "Can someone help me with Linux?")
        assert result.session.pending_match.name == "Mei O"


class TestOtherCandidates:
    @pytest.mark.asyncio
    async def test_pending_match_excluded(self, controller):
        first = await controller.handle_turn("s1", "Can someone help me with Java?")
        assert first.session.pending_match.name == "Aung Nanda O"

        result = await controller.handle_turn("s1", "show me other tutors")
        assert result.rule == "other_candidates"
        names = [r.name for r in result.session.candidate_list]
        assert names == ["Chris H"]
        assert "Aung Nanda O" not in result.reply

    @pytest.mark.asyncio
    async def test_named_topic_takes_priority(self, controller):
        await controller.handle_turn("s1", "Can someone help me with Java?")
        result = await controller.handle_turn("s1", "show me other tutors for Linux")
        assert [r.name for r in result.session.candidate_list] == ["Mei O"]
        assert result.session.last_search_criteria.topics == ("Linux",)

    @pytest.mark.asyncio
    async def test_only_match_reply(self, controller):
        await controller.handle_turn("s1", "I need help with SQL")
        result = await controller.handle_turn("s1", "any other tutors?")
        assert "Chris H is the only tutor" in result.reply
        assert result.session.candidate_list == []

    @pytest.mark.asyncio
    async def test_without_context_asks_for_topic(self, controller):
        result = await controller.handle_turn("s1", "show me other tutors")
        assert "What topic" in result.reply

    @pytest.mark.asyncio
    async def test_choose_by_name_then_slot(self, controller):
        await run_turns(controller, "s1", "Can someone help me with Java?", "show me other tutors")
        chosen = await controller.handle_turn("s1", "Chris")
        assert chosen.rule == "named_selection"
        assert chosen.session.pending_match.name == "Chris H"
        assert chosen.session.candidate_list == []

        booked = await controller.handle_turn("s1", "Monday 10:30")
        assert booked.rule == "slot_selection"
        draft = booked.session.booking_draft
        assert draft.entry_id == 3
        assert draft.slot.time == "10:30-11:00"
        assert "**Step 1/7:**" in booked.reply

    @pytest.mark.asyncio
    async def test_ambiguous_name_asks(self, controller):
        await controller.handle_turn("s1", "show me other tutors for Python")
        result = await controller.handle_turn("s1", "Chris or Claire")
        assert result.reply.startswith("Which tutor did you mean")
        assert len(result.session.candidate_list) == 4

    @pytest.mark.asyncio
    async def test_yes_with_several_listed_picks_first(self, controller):
        await controller.handle_turn("s1", "show me other tutors for Python")
        result = await controller.handle_turn("s1", "yes")
        assert result.rule == "confirm_booking"
        assert result.session.booking_draft.entry_id == 1
        assert "Aung Nanda O" in result.reply


class TestBookingFlow:
    @pytest.mark.asyncio
    async def test_complete_booking(self):
        finalizer = FlakyFinalizer(failures=0)
        controller = make_controller(finalizer=finalizer)
        result = await run_turns(controller, "s1", SCENARIO_A, "yes")
        assert result.rule == "confirm_booking"
        assert result.session.booking_draft.slot.time == "10:00-10:30"
        assert "**Step 1/7:**" in result.reply

        result = await controller.handle_turn("s1", CONTACT_INSTITUTION)
        assert "**Step 2/6:**" in result.reply

        result = await run_turns(controller, "s1", *BOOKING_ANSWERS[1:], "skip")
        assert "is booked" in result.reply
        assert "BK-" in result.reply
        session = result.session
        assert session.booking_draft is None
        assert session.pending_match is None
        assert conversation_state(session) == ConversationState.IDLE
        assert len(finalizer) == 1

    @pytest.mark.asyncio
    async def test_invalid_answer_keeps_step(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes", CONTACT_INSTITUTION)
        result = await controller.handle_turn("s1", "abc")
        assert result.rule == "booking_step"
        assert "doesn't look right" in result.reply
        assert "Letter(s) followed by digits" in result.reply
        assert result.session.booking_draft.step == BookingStep.EXTERNAL_ID

    @pytest.mark.asyncio
    async def test_personal_email_adds_step(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes")
        result = await controller.handle_turn("s1", CONTACT_PERSONAL)
        assert result.session.booking_draft.step == BookingStep.SECONDARY_EMAIL
        result = await controller.handle_turn("s1", "sam.lee@mail.ccsf.edu")
        assert result.session.booking_draft.step == BookingStep.EXTERNAL_ID
        assert "**Step 3/7:**" in result.reply

    @pytest.mark.asyncio
    async def test_topic_words_in_details_are_not_a_new_search(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes", *BOOKING_ANSWERS[:4])
        result = await controller.handle_turn("s1", "Python loops and SQL joins for homework")
        assert result.rule == "booking_step"
        assert result.session.booking_draft.step == BookingStep.NOTES

    @pytest.mark.asyncio
    async def test_finalize_failure_keeps_notes_step(self):
        finalizer = FlakyFinalizer(failures=1)
        controller = make_controller(finalizer=finalizer)
        await run_turns(controller, "s1", SCENARIO_A, "yes", *BOOKING_ANSWERS)

        failed = await controller.handle_turn("s1", "skip")
        assert "couldn't complete the booking (site down)" in failed.reply
        assert "https://example.test/book" in failed.reply
        assert failed.session.booking_draft.step == BookingStep.NOTES

        retried = await controller.handle_turn("s1", "skip")
        assert "is booked" in retried.reply
        assert finalizer.attempts == 2

    @pytest.mark.asyncio
    async def test_finalizer_outage_gives_manual_link(self):
        controller = make_controller(finalizer=FlakyFinalizer(failures=5, raise_error=True))
        await run_turns(controller, "s1", SCENARIO_A, "yes", *BOOKING_ANSWERS)
        result = await controller.handle_turn("s1", "no")
        assert "not responding" in result.reply
        assert "book manually here" in result.reply
        assert conversation_state(result.session) == ConversationState.BOOKING


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_mid_booking(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes", CONTACT_INSTITUTION)
        result = await controller.handle_turn("s1", "cancel")
        assert result.rule == "cancel_booking"
        assert result.reply == CANCELLED_REPLY
        assert result.session.booking_draft is None
        assert result.session.pending_match is None

    @pytest.mark.asyncio
    async def test_start_over_with_topic_searches(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes")
        result = await controller.handle_turn("s1", "start over, I need help with Linux")
        assert result.rule == "cancel_booking"
        assert result.session.booking_draft is None
        assert result.session.pending_match.name == "Mei O"


class TestInterruption:
    @pytest.mark.asyncio
    async def test_guard_then_continue(self, controller):
        before = await run_turns(controller, "s1", SCENARIO_A, "yes", CONTACT_INSTITUTION)
        guarded = await controller.handle_turn("s1", "I need help with SQL instead")
        assert guarded.rule == "interruption_guard"
        assert INTERRUPTION_MARKER in guarded.reply
        assert "Python" in guarded.reply
        assert guarded.session.pending_interruption == "I need help with SQL instead"
        assert guarded.session.booking_draft.step == BookingStep.EXTERNAL_ID

        resumed = await controller.handle_turn("s1", "no")
        assert resumed.rule == "interruption_answer"
        assert "continue with your booking" in resumed.reply
        assert "**Step 2/6:**" in resumed.reply
        assert resumed.session.pending_interruption is None
        assert resumed.session.booking_draft.step == BookingStep.EXTERNAL_ID
        assert resumed.session.booking_draft == before.session.booking_draft

    @pytest.mark.asyncio
    async def test_guard_then_switch(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes", CONTACT_INSTITUTION)
        await controller.handle_turn("s1", "I need help with SQL instead")
        switched = await controller.handle_turn("s1", "yes")
        assert switched.rule == "interruption_answer"
        session = switched.session
        assert session.booking_draft is None
        assert session.pending_interruption is None
        assert session.pending_match.name == "Chris H"
        assert session.last_search_criteria.topics == ("SQL",)

    @pytest.mark.asyncio
    async def test_yes_without_guard_prompt_is_a_form_answer(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes", CONTACT_INSTITUTION, "S12345678")
        result = await controller.handle_turn("s1", "yes")
        assert result.rule == "booking_step"
        assert result.session.booking_draft.consent_flag is True

    @pytest.mark.asyncio
    async def test_pending_interruption_cleared_by_other_turns(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes", CONTACT_INSTITUTION)
        await controller.handle_turn("s1", "I need help with SQL instead")
        result = await controller.handle_turn("s1", "cancel")
        assert result.session.pending_interruption is None

    @pytest.mark.asyncio
    async def test_explicit_search_during_notes(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes", *BOOKING_ANSWERS)
        result = await controller.handle_turn("s1", "find me a tutor for SQL instead")
        assert result.rule == "interruption_guard"

    @pytest.mark.asyncio
    async def test_new_search_wording_asks_before_cancelling(self, controller):
        await run_turns(controller, "s1", SCENARIO_A, "yes", CONTACT_INSTITUTION)
        result = await controller.handle_turn("s1", "new search for SQL")
        assert result.rule == "interruption_guard"
        assert INTERRUPTION_MARKER in result.reply
        assert result.session.booking_draft.step == BookingStep.EXTERNAL_ID
        assert result.session.pending_match.name == "Chris H"

    @pytest.mark.asyncio
    async def test_topic_search_during_notes_does_not_finalize(self):
        finalizer = FlakyFinalizer(failures=0)
        controller = make_controller(finalizer=finalizer)
        await run_turns(controller, "s1", SCENARIO_A, "yes", *BOOKING_ANSWERS)

        result = await controller.handle_turn("s1", "I need help with SQL")
        assert result.rule == "interruption_guard"
        assert result.session.booking_draft.step == BookingStep.NOTES
        assert finalizer.attempts == 0

        resumed = await controller.handle_turn("s1", "no")
        assert resumed.session.booking_draft.step == BookingStep.NOTES
        assert finalizer.attempts == 0


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_superseded_turn_commits_nothing(self):
        service = FakeReasoner()
        service.gate = asyncio.Event()
        service.entered = asyncio.Event()
        controller = make_controller(reasoner_service=service)
        await controller.get_session("s1")

        slow = asyncio.create_task(controller.handle_turn("s1", SCENARIO_A))
        await service.entered.wait()
        fast = asyncio.create_task(controller.handle_turn("s1", "hello"))
        await asyncio.sleep(0)
        service.gate.set()

        with pytest.raises(StaleTurnError):
            await slow
        result = await fast
        assert result.rule == "greeting"

        session = await controller.get_session("s1")
        assert session.pending_match is None
        assert [m.content for m in session.messages] == [WELCOME_MESSAGE, "hello", GREETING_REPLY]

    @pytest.mark.asyncio
    async def test_different_sessions_run_independently(self, controller):
        results = await asyncio.gather(
            controller.handle_turn("s1", "hi"),
            controller.handle_turn("s2", SCENARIO_A),
        )
        assert [r.rule for r in results] == ["greeting", "new_search"]


class TestStreaming:
    @pytest.mark.asyncio
    async def test_stream_turn_yields_deltas(self):
        streamer = FakeReplyStreamer(["Chris H ", "fits ", "perfectly."])
        controller = make_controller(reply_streamer=streamer)
        deltas = [d async for d in controller.stream_turn("s1", SCENARIO_A)]
        assert deltas == ["Chris H ", "fits ", "perfectly."]
        session = await controller.get_session("s1")
        assert session.messages[-1].content == "Chris H fits perfectly."
        assert session.messages[-1].match.name == "Chris H"
        assert "Chris H" in streamer.prompts[0]

    @pytest.mark.asyncio
    async def test_stream_failure_uses_template(self):
        controller = make_controller(reply_streamer=FakeReplyStreamer(fail=True))
        result = await controller.handle_turn("s1", SCENARIO_A)
        assert "I found a great match: **Chris H**" in result.reply
        assert result.session.messages[-1].content == result.reply

    @pytest.mark.asyncio
    async def test_stalled_stream_times_out_to_template(self):
        controller = make_controller(reply_streamer=FakeReplyStreamer(stall=3600))
        result = await asyncio.wait_for(controller.handle_turn("s1", SCENARIO_A), 2)
        assert "I found a great match: **Chris H**" in result.reply
        assert result.session.pending_match.name == "Chris H"

    @pytest.mark.asyncio
    async def test_stalled_stream_keeps_partial_reply(self):
        controller = make_controller(reply_streamer=FakeReplyStreamer(["Chris H is "], stall=3600))
        result = await asyncio.wait_for(controller.handle_turn("s1", SCENARIO_A), 2)
        assert result.reply == "Chris H is "
        assert result.session.messages[-1].content == "Chris H is "

    @pytest.mark.asyncio
    async def test_non_match_replies_stream_whole(self, controller):
        deltas = [d async for d in controller.stream_turn("s1", "hello")]
        assert deltas == [GREETING_REPLY]
