"""Per-session conversation state persisted by the session store."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import Field

from tutor_scheduler.schemas.catalog_schema import CamelModel, Slot
from tutor_scheduler.schemas.match_schema import MatchResult, SearchCriteria


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class BookingStep(str, Enum):
    """Ordered fields of the booking form."""
    CONTACT_INFO = "contact_info"
    SECONDARY_EMAIL = "secondary_email"
    EXTERNAL_ID = "external_id"
    CONSENT_JOINT = "consent_joint"
    TOPICS = "topics"
    DETAIL_TEXT = "detail_text"
    NOTES = "notes"
    COMPLETE = "complete"


class Message(CamelModel):
    """A single chat message. Insertion order is temporal order."""

    role: Role
    content: str
    match: Optional[MatchResult] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class BookingDraft(CamelModel):
    """In-progress booking form collected one step at a time."""

    entry_id: int
    slot: Slot
    step: BookingStep = BookingStep.CONTACT_INFO
    contact_name: str = ""
    contact_email: str = ""
    secondary_email: str = ""
    external_id: Optional[str] = None
    consent_flag: Optional[bool] = None
    topic_codes: list[str] = Field(default_factory=list)
    detail: str = ""
    notes: Optional[str] = None

    @property
    def secondary_email_skipped(self) -> bool:
        return bool(self.contact_email) and self.secondary_email == self.contact_email

    @property
    def total_steps(self) -> int:
        return 6 if self.secondary_email_skipped else 7


class Session(CamelModel):
    """
    Durable per-conversation state container.

    The conversation controller is the only writer; the session store is
    the only persistence authority. Absent fields in stored snapshots
    default to empty values so older sessions stay readable.
    """

    session_id: str = ""
    messages: list[Message] = Field(default_factory=list)
    pending_match: Optional[MatchResult] = None
    last_search_criteria: Optional[SearchCriteria] = None
    candidate_list: list[MatchResult] = Field(default_factory=list)
    booking_draft: Optional[BookingDraft] = None
    pending_interruption: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    last_accessed_at: datetime = Field(default_factory=_utcnow)

    def append_message(
        self, role: Role, content: str, match: Optional[MatchResult] = None
    ) -> Message:
        message = Message(role=role, content=content, match=match)
        self.messages.append(message)
        return message

    def last_assistant_message(self) -> Optional[Message]:
        for message in reversed(self.messages):
            if message.role == Role.ASSISTANT:
                return message
        return None

    def to_snapshot(self) -> dict[str, Any]:
        """Serialize to the JSON-compatible snapshot shape."""
        return self.to_json_dict()

    @classmethod
    def from_snapshot(cls, data: dict[str, Any]) -> "Session":
        return cls.model_validate(data)
