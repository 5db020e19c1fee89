"""Reply text and dynamic prompt construction for the conversation controller."""

from typing import Optional, Sequence

from tutor_scheduler.config import settings
from tutor_scheduler.schemas.catalog_schema import Slot
from tutor_scheduler.schemas.match_schema import Candidate, MatchResult, SearchCriteria

PROVIDER = settings.catalog.provider_label

# Recognised in the last assistant message when interpreting a yes/no answer
INTERRUPTION_MARKER = "Are you sure you don't want help with"

WELCOME_MESSAGE = (
    f"Hi! I'm the {settings.catalog.name} scheduling assistant. Tell me what you need "
    f"help with (for example \"Python on Monday at 10:00\") and I'll find you a {PROVIDER}."
)

GREETING_REPLY = (
    "Hello! What would you like help with today? You can mention a topic, "
    "a day, a time, and whether you prefer online or in-person sessions."
)

CANCELLED_REPLY = (
    "Okay, I've cancelled that booking. What would you like help with instead?"
)


def format_slots(slots: Sequence[Slot]) -> str:
    return "\n".join(f"- {slot.label()}" for slot in slots)


def build_reasoning_prompt(criteria: SearchCriteria, candidates: Sequence[Candidate]) -> str:
    """Build the user message for the reasoning call."""
    lines = [
        criteria.describe(),
        "",
        f"Available {PROVIDER}s (ranked by similarity):",
    ]
    for idx, candidate in enumerate(candidates, start=1):
        entry = candidate.attributes
        lines.append(f"\n{idx}. {entry.name} (similarity: {candidate.score:.2f})")
        lines.append(f"   Bio: {entry.bio}")
        lines.append(f"   Skills: {', '.join(entry.topics)}")
        lines.append(f"   Mode: {entry.mode}")
        lines.append("   Availability:")
        lines.extend(f"     - {slot.day} {slot.time} ({slot.mode})" for slot in entry.slots)
    lines.append(
        f"\nSelect the best {PROVIDER}. Return their exact name, your reasoning, "
        "and the slots that fit the student's preferences."
    )
    return "\n".join(lines)


def build_match_reply(match: MatchResult) -> str:
    """Templated match explanation, used when reply streaming is off or fails."""
    return (
        f"I found a great match: **{match.name}**.\n\n"
        f"{match.reasoning}\n\n"
        f"Available time slots:\n{format_slots(match.offered_slots)}\n\n"
        f"Would you like to book a session with {match.name}? Reply \"yes\" to book, "
        f"pick a time like \"Monday 10:00\", or say \"show me other {PROVIDER}s\"."
    )


def build_match_stream_prompt(criteria: SearchCriteria, match: MatchResult) -> str:
    """Prompt handed to the reply streamer to phrase a match naturally."""
    return (
        f"A student asked for help with {criteria.topics_text()}.\n"
        f"I found a great match: {match.name}.\n"
        f"{match.reasoning}\n\n"
        f"Available time slots:\n{format_slots(match.offered_slots)}\n\n"
        f"Please generate a friendly, natural response to tell the student about this match. "
        f"Include the {PROVIDER} name, reasoning, available slots, and ask if they'd like "
        f"to book or see other {PROVIDER}s."
    )


def build_no_match_reply(criteria: SearchCriteria) -> str:
    return (
        f"I couldn't find a {PROVIDER} for {criteria.topics_text()}. Could you tell me a bit "
        f"more, or try a related topic (for example Python, Java, SQL, or Debugging)?"
    )


def build_clarify_topic_reply() -> str:
    return (
        f"Happy to show you other {PROVIDER}s! What topic do you need help with? "
        "For example: \"show me other tutors for Java\"."
    )


def build_only_match_reply(match: Optional[MatchResult]) -> str:
    if match is None:
        return f"That's the only {PROVIDER} I found for this topic."
    return (
        f"{match.name} is the only {PROVIDER} I found for this topic. "
        f"Would you like to book with {match.name}?"
    )


def build_candidate_list_reply(results: Sequence[MatchResult], topic: str) -> str:
    lines = [f"Here are other {PROVIDER}s who can help with {topic}:"]
    for result in results:
        entry = result.candidate.attributes
        lines.append(f"\n**{entry.name}** ({entry.mode}) - {', '.join(entry.topics)}")
        lines.append(format_slots(result.offered_slots))
    lines.append(f"\nReply with a {PROVIDER}'s name to choose them.")
    return "\n".join(lines)


def build_slot_choice_reply(match: MatchResult) -> str:
    return (
        f"Great choice! {match.name} is available at:\n{format_slots(match.offered_slots)}\n\n"
        "Which time works for you? (e.g. \"Monday 10:00\"), or reply \"yes\" to book the first one."
    )


def build_interruption_prompt(
    new_request: str, provider_name: Optional[str], previous_topic: str
) -> str:
    return (
        f"I see you're asking for a new {PROVIDER} search ({new_request}), but we're "
        f"currently in the middle of booking a session with "
        f"{provider_name or f'a {PROVIDER}'} for {previous_topic}.\n\n"
        f"**{INTERRUPTION_MARKER} {previous_topic}?**\n\n"
        "Please reply with \"yes\" to cancel the current booking and start the new search, "
        "or \"no\" to continue with the current booking."
    )


def build_booking_started_reply(name: str, slot: Slot, first_prompt: str) -> str:
    return f"Let's book your session with **{name}** on {slot.label()}.\n\n{first_prompt}"


def build_booking_success_reply(name: str, slot: Slot, reference: str, booking_url: str = "") -> str:
    reply = (
        f"Your session with **{name}** on {slot.label()} is booked! "
        f"Reference number: {reference}."
    )
    if booking_url:
        reply += f"\n\nYou can review it here: {booking_url}"
    return reply


def build_booking_failed_reply(detail: str, booking_url: str = "") -> str:
    reply = (
        f"Sorry, I couldn't complete the booking ({detail}). "
        "Please send your notes again (or \"skip\") to retry."
    )
    if booking_url:
        reply += f"\n\nYou can also book manually here: {booking_url}"
    return reply
