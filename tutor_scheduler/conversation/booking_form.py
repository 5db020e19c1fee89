"""
Step-by-step booking form: Extract -> Validate -> Advance.

Each step parses its field(s) from one chat turn with strict format
rules. A failed parse leaves the draft untouched and returns a message
that repeats the expected format; a successful parse writes the field
into the draft and advances the step through ``BookingStepMachine``.

Usage:
    form = BookingForm(draft)
    ok, msg = form.submit("Name: Ada Lovelace, Email: ada@mail.ccsf.edu")
    if ok:
        reply = form.current_prompt()
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Optional

from tutor_scheduler.config import BookingConfig, settings
from tutor_scheduler.conversation.state_machine import BookingStepMachine, StepTrigger
from tutor_scheduler.schemas.session_schema import BookingDraft, BookingStep
from tutor_scheduler.utils import whole_word_pattern

logger = logging.getLogger(__name__)

# Validation thresholds
MIN_NAME_LENGTH = 2

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)+")
NAME_RE = re.compile(
    r"(?:\bname\s*(?:is)?\s*[:=]?\s*|\bmy name is\s+|\bi am\s+|\bi'm\s+)"
    r"([A-Za-z][A-Za-z .'-]*?)\s*(?=,|;|\n|\bemail\b|\band\b|[A-Za-z0-9._%+-]+@|$)",
    re.IGNORECASE,
)
EXTERNAL_ID_RE = re.compile(r"^[A-Za-z]{1,3}\d{6,10}$")
YES_RE = re.compile(r"^(yes|y|yeah|yep|sure|ok|okay|of course|fine)\b", re.IGNORECASE)
NO_RE = re.compile(r"^(no|n|nope|nah|not really)\b", re.IGNORECASE)
SKIP_RE = re.compile(r"^(skip|no|none|nope|n/a|nothing)[.!]?$", re.IGNORECASE)

FALLBACK_TOPIC_CODE = "Other"


def extract_email(text: str) -> Optional[str]:
    match = EMAIL_RE.search(text)
    return match.group(0) if match else None


def extract_name(text: str) -> Optional[str]:
    """Pull a name from ``Name: X`` / ``my name is X`` wording.

    Examples:
        >>> extract_name("Name: Ada Lovelace, Email: ada@example.com")
        'Ada Lovelace'
    """
    match = NAME_RE.search(text)
    if not match:
        return None
    name = match.group(1).strip(" .'-")
    return name if len(name) >= MIN_NAME_LENGTH else None


def is_institution_email(email: str, domain: str) -> bool:
    return email.lower().endswith("@" + domain.lower())


def extract_course_codes(text: str, course_codes: tuple[str, ...]) -> list[str]:
    """Return configured course codes mentioned in the text, in config order."""
    return [code for code in course_codes if whole_word_pattern(code).search(text)]


@dataclass(frozen=True)
class StepDefinition:
    """Schema for a single booking form step."""

    step: BookingStep
    display_name: str
    prompt: str
    format_hint: str = ""


StepHandler = Callable[["BookingForm", str], tuple[bool, str]]


class BookingForm:
    """
    Drives one ``BookingDraft`` through its steps.

    The form mutates the draft it was given; callers hand it the
    working copy of the session, never the committed snapshot.
    """

    STEP_DEFINITIONS: list[StepDefinition] = [
        StepDefinition(
            step=BookingStep.CONTACT_INFO,
            display_name="name and email",
            prompt="Please provide:\n- Your name\n- Your email (your {domain} address if you have one)",
            format_hint='Format: "Name: [Your Name], Email: [Your Email]"',
        ),
        StepDefinition(
            step=BookingStep.SECONDARY_EMAIL,
            display_name="school email",
            prompt="What is your @{domain} email address?",
            format_hint="It must end with @{domain}.",
        ),
        StepDefinition(
            step=BookingStep.EXTERNAL_ID,
            display_name="student ID",
            prompt="What is your student ID number?",
            format_hint=(
                "**Format:** Letter(s) followed by digits (e.g., S12345678)\n\n"
                'You can skip this by typing "skip"'
            ),
        ),
        StepDefinition(
            step=BookingStep.CONSENT_JOINT,
            display_name="group session consent",
            prompt="Are you okay with other students joining during your session?",
            format_hint='Please reply with "yes" or "no".',
        ),
        StepDefinition(
            step=BookingStep.TOPICS,
            display_name="classes",
            prompt="What classes are you seeking help for? List all that apply.",
            format_hint='e.g. "110A, 131B" (anything else counts as "Other")',
        ),
        StepDefinition(
            step=BookingStep.DETAIL_TEXT,
            display_name="help details",
            prompt="What specifically do you need help with?",
            format_hint=(
                'e.g. "A programming assignment on nested loops"\n\n'
                "Please don't copy/paste code here."
            ),
        ),
        StepDefinition(
            step=BookingStep.NOTES,
            display_name="notes",
            prompt="Anything else the tutor should know?",
            format_hint='Type "no" or "skip" if nothing.',
        ),
    ]

    def __init__(self, draft: BookingDraft, config: Optional[BookingConfig] = None) -> None:
        self.draft = draft
        self._config = config or settings.booking
        self._handlers: dict[BookingStep, StepHandler] = {
            BookingStep.CONTACT_INFO: BookingForm._submit_contact,
            BookingStep.SECONDARY_EMAIL: BookingForm._submit_secondary_email,
            BookingStep.EXTERNAL_ID: BookingForm._submit_external_id,
            BookingStep.CONSENT_JOINT: BookingForm._submit_consent,
            BookingStep.TOPICS: BookingForm._submit_topics,
            BookingStep.DETAIL_TEXT: BookingForm._submit_detail,
            BookingStep.NOTES: BookingForm._submit_notes,
        }

    @property
    def step(self) -> BookingStep:
        return self.draft.step

    def _get_definition(self, step: BookingStep) -> StepDefinition:
        for defn in self.STEP_DEFINITIONS:
            if defn.step == step:
                return defn
        raise ValueError(f"No form step for: {step.value}")

    def _advance(self, trigger: StepTrigger) -> None:
        machine = BookingStepMachine(self.draft.step)
        self.draft.step = machine.transition(trigger)

    def step_number(self, step: Optional[BookingStep] = None) -> int:
        """1-based position of a step, counting the secondary email step only if asked."""
        step = step or self.draft.step
        order = [d.step for d in self.STEP_DEFINITIONS]
        number = order.index(step) + 1
        if self.draft.secondary_email_skipped and number > order.index(BookingStep.SECONDARY_EMAIL) + 1:
            number -= 1
        return number

    def prompt_for(self, step: BookingStep, include_hint: bool = True) -> str:
        defn = self._get_definition(step)
        domain = self._config.institution_email_domain
        text = f"**Step {self.step_number(step)}/{self.draft.total_steps}:** "
        text += defn.prompt.format(domain=domain)
        if include_hint and defn.format_hint:
            text += "\n\n" + defn.format_hint.format(domain=domain)
        return text

    def current_prompt(self) -> str:
        return self.prompt_for(self.draft.step)

    def submit(self, text: str) -> tuple[bool, str]:
        """
        Apply one turn of user text to the current step.

        Returns:
            (success, message): on success the draft has advanced (except at
            the notes step, which waits for finalization); on failure the
            message re-prompts with the expected format.
        """
        handler = self._handlers.get(self.draft.step)
        if handler is None:
            raise ValueError(f"Booking form has no input step at: {self.draft.step.value}")
        ok, message = handler(self, text.strip())
        if not ok:
            logger.debug("Booking step '%s' rejected input", self.draft.step.value)
        return ok, message

    def mark_finalized(self) -> None:
        self._advance(StepTrigger.FINALIZED)

    # --- Step handlers ---

    def _reject(self, problem: str) -> tuple[bool, str]:
        return False, f"{problem}\n\n{self.current_prompt()}"

    def _submit_contact(self, text: str) -> tuple[bool, str]:
        name = extract_name(text)
        email = extract_email(text)
        if not name and not email:
            return self._reject("I need both your name and your email.")
        if not name:
            return self._reject("I couldn't find your name.")
        if not email:
            return self._reject("I couldn't find a valid email address.")

        self.draft.contact_name = name
        self.draft.contact_email = email
        if is_institution_email(email, self._config.institution_email_domain):
            self.draft.secondary_email = email
            self._advance(StepTrigger.INSTITUTION_CONTACT_GIVEN)
        else:
            self._advance(StepTrigger.CONTACT_GIVEN)
        return True, f"Thanks, {name}!"

    def _submit_secondary_email(self, text: str) -> tuple[bool, str]:
        email = extract_email(text)
        domain = self._config.institution_email_domain
        if not email or not is_institution_email(email, domain):
            return self._reject(f"That doesn't look like an @{domain} email address.")
        self.draft.secondary_email = email
        self._advance(StepTrigger.SECONDARY_EMAIL_GIVEN)
        return True, f"Got it: {email}."

    def _submit_external_id(self, text: str) -> tuple[bool, str]:
        if text.lower() == "skip":
            self.draft.external_id = None
            self._advance(StepTrigger.EXTERNAL_ID_GIVEN)
            return True, "No problem, skipping the student ID."
        candidate = text.replace(" ", "")
        if not EXTERNAL_ID_RE.match(candidate):
            return self._reject(f"The student ID '{text}' doesn't look right.")
        self.draft.external_id = candidate.upper()
        self._advance(StepTrigger.EXTERNAL_ID_GIVEN)
        return True, f"Got student ID: {self.draft.external_id}."

    def _submit_consent(self, text: str) -> tuple[bool, str]:
        if YES_RE.match(text):
            self.draft.consent_flag = True
        elif NO_RE.match(text):
            self.draft.consent_flag = False
        else:
            return self._reject("I didn't catch that.")
        self._advance(StepTrigger.CONSENT_GIVEN)
        return True, "Noted."

    def _submit_topics(self, text: str) -> tuple[bool, str]:
        codes = extract_course_codes(text, self._config.course_codes)
        self.draft.topic_codes = codes or [FALLBACK_TOPIC_CODE]
        self._advance(StepTrigger.TOPICS_GIVEN)
        return True, f"Classes: {', '.join(self.draft.topic_codes)}."

    def _submit_detail(self, text: str) -> tuple[bool, str]:
        if not text:
            return self._reject("Please describe what you need help with.")
        self.draft.detail = text
        self._advance(StepTrigger.DETAIL_GIVEN)
        return True, "Thanks for the details."

    def _submit_notes(self, text: str) -> tuple[bool, str]:
        self.draft.notes = None if (not text or SKIP_RE.match(text)) else text
        return True, "Finalizing your booking..."
