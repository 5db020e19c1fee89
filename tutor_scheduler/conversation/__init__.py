from tutor_scheduler.conversation.booking_form import BookingForm
from tutor_scheduler.conversation.controller import (
    ConversationController,
    Rule,
    TurnContext,
    TurnResult,
)
from tutor_scheduler.conversation.state_machine import (
    BookingStepMachine,
    ConversationState,
    StepTrigger,
    conversation_state,
)

__all__ = [
    "ConversationController",
    "Rule",
    "TurnContext",
    "TurnResult",
    "BookingForm",
    "BookingStepMachine",
    "ConversationState",
    "StepTrigger",
    "conversation_state",
]
