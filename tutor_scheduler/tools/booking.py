"""
Booking finalization against the scheduling site.

In production a form-filling automation submits the completed draft to
the booking page. ``InMemoryBookingFinalizer`` records bookings locally
and always returns a manual booking link alongside the result, so a
failed submission still leaves the student a way to finish.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, TypedDict
from urllib.parse import urlencode

from tutor_scheduler.config import settings
from tutor_scheduler.schemas.session_schema import BookingDraft
from tutor_scheduler.utils import WEEKDAYS, slot_start

logger = logging.getLogger(__name__)

# Scheduling site runs on fixed Pacific standard time
BOOKING_TZ = timezone(timedelta(hours=-8))
BOOKING_UTC_OFFSET = "-08:00"


class FinalizeResult(TypedDict, total=False):
    """Result from finalizing a booking draft."""

    success: bool
    reference: str
    error_detail: str
    booking_url: str


class BookingFinalizer(Protocol):
    async def finalize(self, draft: BookingDraft) -> FinalizeResult: ...


def _to_24h(start: str) -> tuple[int, int]:
    """Slot times are written without am/pm; 1:00-7:59 are afternoon hours."""
    hours, minutes = (int(part) for part in start.split(":", 1))
    if 1 <= hours < 8:
        hours += 12
    return hours, minutes


def next_occurrence(day: str, time_range: str, now: Optional[datetime] = None) -> datetime:
    """Return the next date the weekly slot occurs, today included if still ahead.

    Weekdays and slot times are read on the booking site's clock, so ``now``
    is converted to ``BOOKING_TZ`` first.
    """
    now = (now or datetime.now(BOOKING_TZ)).astimezone(BOOKING_TZ)
    target_weekday = WEEKDAYS.index(day.strip().lower())
    days_ahead = (target_weekday - now.weekday()) % 7
    hours, minutes = _to_24h(slot_start(time_range))
    target = (now + timedelta(days=days_ahead)).replace(
        hour=hours, minute=minutes, second=0, microsecond=0
    )
    if target < now:
        target += timedelta(days=7)
    return target


def build_booking_url(day: str, time_range: str, now: Optional[datetime] = None) -> str:
    """Build a booking page link with the slot's date and time preselected."""
    target = next_occurrence(day, time_range, now)
    date_str = target.strftime("%Y-%m-%d")
    params = urlencode({"back": "1", "month": target.strftime("%Y-%m"), "date": date_str})
    stamp = f"{date_str}T{target.strftime('%H:%M')}:00{BOOKING_UTC_OFFSET}"
    return f"{settings.catalog.booking_base_url}/{stamp}?{params}"


def _missing_fields(draft: BookingDraft) -> list[str]:
    return [
        field_name
        for field_name, value in [
            ("contact_name", draft.contact_name),
            ("contact_email", draft.contact_email),
            ("secondary_email", draft.secondary_email),
            ("detail", draft.detail),
        ]
        if not value or not value.strip()
    ]


class InMemoryBookingFinalizer:
    """Finalizer that stores confirmed bookings in process memory."""

    def __init__(self) -> None:
        self._bookings: dict[str, dict] = {}

    async def finalize(self, draft: BookingDraft) -> FinalizeResult:
        booking_url = build_booking_url(draft.slot.day, draft.slot.time)
        missing = _missing_fields(draft)
        if missing:
            return {
                "success": False,
                "error_detail": f"missing required fields: {', '.join(missing)}",
                "booking_url": booking_url,
            }

        ref = f"BK-{uuid.uuid4().hex[:6].upper()}"
        self._bookings[ref] = {
            **draft.to_json_dict(),
            "reference": ref,
            "status": "confirmed",
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        logger.info(
            "Booking created: %s for %s on %s at %s",
            ref, draft.contact_name, draft.slot.day, draft.slot.time,
        )
        return {"success": True, "reference": ref, "booking_url": booking_url}

    def get_booking(self, reference: str) -> Optional[dict]:
        return self._bookings.get(reference)

    def __len__(self) -> int:
        return len(self._bookings)
