"""Search criteria, ranked candidates, and match result models."""

from typing import Optional

from pydantic import ConfigDict, Field, field_validator

from tutor_scheduler.schemas.catalog_schema import CamelModel, CatalogEntry, Mode, Slot


class SearchCriteria(CamelModel):
    """Structured search request built from one user turn.

    Frozen: a new instance is created for every retrieval attempt.
    """

    model_config = ConfigDict(frozen=True)

    topics: tuple[str, ...] = Field(min_length=1)
    day: Optional[str] = None
    time: Optional[str] = None
    mode: Optional[Mode] = None

    @field_validator("topics")
    @classmethod
    def _strip_topics(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(t.strip() for t in value if t and t.strip())
        if not cleaned:
            raise ValueError("at least one non-blank topic is required")
        return cleaned

    @property
    def primary_topic(self) -> str:
        return self.topics[0]

    def topics_text(self) -> str:
        return ", ".join(self.topics)

    def describe(self) -> str:
        """Natural-language rendering used as the embedding query."""
        lines = [f"Student needs help with: {self.topics_text()}"]
        if self.day:
            lines.append(f"Preferred day: {self.day}")
        if self.time:
            lines.append(f"Preferred time: {self.time}")
        if self.mode:
            lines.append(f"Preferred mode: {self.mode}")
        return "\n".join(lines)

    def topics_only(self) -> "SearchCriteria":
        """Same topics with the day/time/mode filters dropped."""
        return SearchCriteria(topics=self.topics)


class Candidate(CamelModel):
    """A catalog entry ranked against a search request."""
    entry_id: int
    score: float = Field(ge=0.0, le=1.0)
    attributes: CatalogEntry

    @property
    def name(self) -> str:
        return self.attributes.name


class ReasoningOutput(CamelModel):
    """Fixed response schema the reasoning service must answer in."""
    selected_name: str = Field(description="The exact name of the chosen tutor from the candidate list")
    reasoning: str = Field(description="One or two sentences explaining why this tutor fits best")
    offered_slots: list[Slot] = Field(
        description="Slots of the chosen tutor that fit the student's preferences"
    )


class MatchResult(CamelModel):
    """Selected candidate with its justification and bookable slots."""
    candidate: Candidate
    reasoning: str
    offered_slots: list[Slot] = Field(default_factory=list)

    @property
    def entry_id(self) -> int:
        return self.candidate.entry_id

    @property
    def name(self) -> str:
        return self.candidate.name
