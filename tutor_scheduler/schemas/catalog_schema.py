"""Catalog entry and availability slot models."""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Mode = Literal["online", "in-person"]


class CamelModel(BaseModel):
    """Base model persisted with stable camelCase JSON field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class Slot(CamelModel):
    """Single weekly availability slot, e.g. Monday 10:00-10:30 online."""
    day: str
    time: str
    mode: Mode

    def label(self) -> str:
        return f"{self.day} at {self.time} ({self.mode})"


class CatalogEntry(CamelModel):
    """Bookable tutor record from the catalog store."""
    id: int
    name: str
    pronouns: Optional[str] = None
    bio: str = ""
    mode: Mode
    topics: list[str] = Field(default_factory=list)
    slots: list[Slot] = Field(default_factory=list)
