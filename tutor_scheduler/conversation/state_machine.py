"""
Finite state machines for the conversation and the booking form.

The session-level state (Idle, MatchPending, Booking) is derived from the
session snapshot rather than stored, so it can never disagree with it.
Booking steps advance only through explicit transitions; anything else
is rejected with the list of valid triggers.

Usage:
    sm = BookingStepMachine(BookingStep.CONTACT_INFO)
    sm.transition(StepTrigger.INSTITUTION_CONTACT_GIVEN)
    assert sm.current_step == BookingStep.EXTERNAL_ID
"""

import logging
from dataclasses import dataclass
from enum import Enum

from tutor_scheduler.errors import InvalidTransitionError
from tutor_scheduler.schemas.session_schema import BookingStep, Session

logger = logging.getLogger(__name__)


class ConversationState(str, Enum):
    """Per-session conversation states."""
    IDLE = "idle"
    MATCH_PENDING = "match_pending"
    BOOKING = "booking"


def conversation_state(session: Session) -> ConversationState:
    """Derive the conversation state from a session snapshot."""
    draft = session.booking_draft
    if draft is not None and draft.step != BookingStep.COMPLETE:
        return ConversationState.BOOKING
    if session.pending_match is not None:
        return ConversationState.MATCH_PENDING
    return ConversationState.IDLE


class StepTrigger(str, Enum):
    """Events that advance the booking form."""
    CONTACT_GIVEN = "contact_given"
    INSTITUTION_CONTACT_GIVEN = "institution_contact_given"
    SECONDARY_EMAIL_GIVEN = "secondary_email_given"
    EXTERNAL_ID_GIVEN = "external_id_given"
    CONSENT_GIVEN = "consent_given"
    TOPICS_GIVEN = "topics_given"
    DETAIL_GIVEN = "detail_given"
    FINALIZED = "finalized"


@dataclass(frozen=True)
class StepTransition:
    """A single valid booking step transition."""
    from_step: BookingStep
    to_step: BookingStep
    trigger: StepTrigger


class BookingStepMachine:
    """Deterministic transitions between booking form steps."""

    TRANSITIONS: list[StepTransition] = [
        # --- Contact details ---
        StepTransition(BookingStep.CONTACT_INFO, BookingStep.SECONDARY_EMAIL,
                       StepTrigger.CONTACT_GIVEN),
        StepTransition(BookingStep.CONTACT_INFO, BookingStep.EXTERNAL_ID,
                       StepTrigger.INSTITUTION_CONTACT_GIVEN),
        StepTransition(BookingStep.SECONDARY_EMAIL, BookingStep.EXTERNAL_ID,
                       StepTrigger.SECONDARY_EMAIL_GIVEN),

        # --- Student details ---
        StepTransition(BookingStep.EXTERNAL_ID, BookingStep.CONSENT_JOINT,
                       StepTrigger.EXTERNAL_ID_GIVEN),
        StepTransition(BookingStep.CONSENT_JOINT, BookingStep.TOPICS,
                       StepTrigger.CONSENT_GIVEN),
        StepTransition(BookingStep.TOPICS, BookingStep.DETAIL_TEXT,
                       StepTrigger.TOPICS_GIVEN),
        StepTransition(BookingStep.DETAIL_TEXT, BookingStep.NOTES,
                       StepTrigger.DETAIL_GIVEN),

        # --- Terminal ---
        StepTransition(BookingStep.NOTES, BookingStep.COMPLETE,
                       StepTrigger.FINALIZED),
    ]

    def __init__(self, step: BookingStep = BookingStep.CONTACT_INFO) -> None:
        self._current_step = step

    @property
    def current_step(self) -> BookingStep:
        return self._current_step

    def transition(self, trigger: StepTrigger) -> BookingStep:
        """
        Advance to the next step.

        Raises:
            InvalidTransitionError: If the trigger is not valid from the current step.
        """
        for t in self.TRANSITIONS:
            if t.from_step == self._current_step and t.trigger == trigger:
                old_step = self._current_step
                self._current_step = t.to_step
                logger.debug(
                    "Booking step: %s -> %s (trigger: %s)",
                    old_step.value, self._current_step.value, trigger.value,
                )
                return self._current_step

        valid = [t.value for t in self.get_valid_triggers()]
        raise InvalidTransitionError(
            f"No valid transition from '{self._current_step.value}' "
            f"with trigger '{trigger.value}'. Valid triggers: {valid}"
        )

    def get_valid_triggers(self) -> list[StepTrigger]:
        return [t.trigger for t in self.TRANSITIONS if t.from_step == self._current_step]

    def is_terminal(self) -> bool:
        return self._current_step == BookingStep.COMPLETE
