"""Therapist availability: validation, slot generation and special-date upkeep.

Everything here works on plain dicts/lists (the JSON stored on
``TherapistAvailability``) so it can be used without an app context.
All instants are naive UTC datetimes; ``HH:MM`` times are local to the
therapist's timezone.
"""
from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

SESSION_TYPES = ("video", "audio", "chat")
DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")

DEFAULT_SESSION_PRICES = {"video": 4500, "audio": 4000, "chat": 3500}
# Client-facing discount off the hourly rate when a slot carries no price
SESSION_TYPE_DISCOUNTS = {"video": 0, "audio": 500, "chat": 1000}

DEFAULT_AVAILABILITY_SETTINGS = {
    "buffer_time": 15,
    "max_sessions_per_day": 8,
    "advance_booking_days": 30,
    "cancellation_policy": {
        "hours_before_session": 24,
        "refund_percentage": 100,
    },
    "session_types": {
        "video": {"enabled": True, "price": 4500},
        "audio": {"enabled": True, "price": 4000},
        "chat": {"enabled": True, "price": 3500},
    },
}


class AvailabilityValidationError(ValueError):
    """Raised when submitted schedule data is malformed."""


@dataclass(frozen=True)
class Slot:
    slot_id: str
    date: date
    start_time: str
    end_time: str
    starts_at: datetime
    ends_at: datetime
    session_type: str
    price: int | None = None
    is_recurring: bool = True

    @property
    def duration(self) -> int:
        return int((self.ends_at - self.starts_at).total_seconds() // 60)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.starts_at < end and start < self.ends_at

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.slot_id,
            "date": self.date.isoformat(),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "starts_at": self.starts_at.isoformat(),
            "ends_at": self.ends_at.isoformat(),
            "duration": self.duration,
            "price": self.price,
            "session_type": self.session_type,
            "is_recurring": self.is_recurring,
        }


def day_of_week(value: date) -> int:
    """Day index with 0 = Sunday."""
    return (value.weekday() + 1) % 7


def parse_time(value) -> time:
    try:
        return datetime.strptime(str(value), "%H:%M").time()
    except ValueError as exc:
        raise AvailabilityValidationError(f"invalid time '{value}', expected HH:MM") from exc


def parse_date(value) -> date:
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value), "%Y-%m-%d").date()
    except ValueError as exc:
        raise AvailabilityValidationError(f"invalid date '{value}', expected YYYY-MM-DD") from exc


def resolve_timezone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


def to_utc(on_date: date, hhmm: str, tz: ZoneInfo) -> datetime:
    """Combine a local date and ``HH:MM`` into a naive UTC datetime."""
    local = datetime.combine(on_date, parse_time(hhmm), tzinfo=tz)
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def local_date(instant: datetime, tz: ZoneInfo) -> date:
    """The calendar date in ``tz`` of a naive UTC instant."""
    return instant.replace(tzinfo=timezone.utc).astimezone(tz).date()


# --- BEGIN: validation ---


def _new_slot_id() -> str:
    return f"slot-{uuid.uuid4().hex[:12]}"


def _normalize_time_slot(raw: Mapping, recurring: bool) -> dict[str, object]:
    if not isinstance(raw, Mapping):
        raise AvailabilityValidationError("time slots must be objects")

    start = parse_time(raw.get("start_time"))
    end = parse_time(raw.get("end_time"))
    if end <= start:
        raise AvailabilityValidationError(
            f"slot {raw.get('start_time')}-{raw.get('end_time')} must end after it starts"
        )

    session_type = str(raw.get("session_type") or "video").strip().lower()
    if session_type not in SESSION_TYPES:
        raise AvailabilityValidationError(f"unknown session type '{session_type}'")

    price = raw.get("price")
    if price is not None:
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
            raise AvailabilityValidationError("price must be a non-negative number")

    slot = {
        "id": raw.get("id") or _new_slot_id(),
        "start_time": start.strftime("%H:%M"),
        "end_time": end.strftime("%H:%M"),
        "is_available": bool(raw.get("is_available", True)),
        "is_recurring": bool(raw.get("is_recurring", recurring)),
        "session_type": session_type,
        "price": price,
    }
    if raw.get("is_booked"):
        slot["is_booked"] = True
        slot["booking_id"] = raw.get("booking_id")
    return slot


def validate_weekly_schedule(weekly) -> list[dict[str, object]]:
    if weekly is None:
        return []
    if not isinstance(weekly, list):
        raise AvailabilityValidationError("weekly_schedule must be a list")

    seen: set[int] = set()
    days = []
    for entry in weekly:
        if not isinstance(entry, Mapping):
            raise AvailabilityValidationError("weekly_schedule entries must be objects")
        day = entry.get("day_of_week")
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise AvailabilityValidationError("day_of_week must be an integer between 0 and 6")
        if day in seen:
            raise AvailabilityValidationError(f"duplicate entry for day {day}")
        seen.add(day)
        days.append({
            "day_of_week": day,
            "day_name": DAY_NAMES[day],
            "is_available": bool(entry.get("is_available", True)),
            "time_slots": [
                _normalize_time_slot(slot, recurring=True) for slot in entry.get("time_slots") or []
            ],
        })
    return sorted(days, key=lambda d: d["day_of_week"])


def validate_special_dates(special) -> list[dict[str, object]]:
    if special is None:
        return []
    if not isinstance(special, list):
        raise AvailabilityValidationError("special_dates must be a list")

    seen: set[date] = set()
    dates = []
    for entry in special:
        if not isinstance(entry, Mapping):
            raise AvailabilityValidationError("special_dates entries must be objects")
        on_date = parse_date(entry.get("date"))
        if on_date in seen:
            raise AvailabilityValidationError(f"duplicate entry for date {on_date.isoformat()}")
        seen.add(on_date)
        item = {
            "date": on_date.isoformat(),
            "is_available": bool(entry.get("is_available", False)),
            "time_slots": [
                _normalize_time_slot(slot, recurring=False) for slot in entry.get("time_slots") or []
            ],
        }
        if entry.get("reason"):
            item["reason"] = str(entry["reason"])
        dates.append(item)
    return sorted(dates, key=lambda d: d["date"])


def validate_timezone(name: str | None) -> str:
    if not name:
        raise AvailabilityValidationError("timezone is required")
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise AvailabilityValidationError(f"unknown timezone '{name}'") from exc
    return name


# --- END: validation ---


def _time_slots_for(availability: Mapping, on_date: date) -> list[Mapping]:
    iso = on_date.isoformat()
    for special in availability.get("special_dates") or []:
        if special.get("date") == iso:
            if not special.get("is_available"):
                return []
            return special.get("time_slots") or []

    dow = day_of_week(on_date)
    for day in availability.get("weekly_schedule") or []:
        if day.get("day_of_week") == dow:
            if not day.get("is_available"):
                return []
            return day.get("time_slots") or []
    return []


def generate_slots(
    availability: Mapping | None,
    on_date: date,
    booked: Iterable[tuple[datetime, datetime]] = (),
    now: datetime | None = None,
    lead_minutes: int = 15,
) -> list[Slot]:
    """Return the bookable slots for ``on_date``, sorted by start time.

    ``booked`` holds (start, end) intervals of the therapist's scheduled
    or active sessions. Slots starting within ``lead_minutes`` of ``now``
    are not offered.
    """
    if not availability or not availability.get("is_active", True):
        return []

    tz = resolve_timezone(availability.get("timezone"))
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    cutoff = now + timedelta(minutes=lead_minutes)
    intervals = list(booked)

    slots = []
    for raw in _time_slots_for(availability, on_date):
        if not raw.get("is_available", True) or raw.get("is_booked"):
            continue
        slot = Slot(
            slot_id=raw.get("id") or "",
            date=on_date,
            start_time=raw["start_time"],
            end_time=raw["end_time"],
            starts_at=to_utc(on_date, raw["start_time"], tz),
            ends_at=to_utc(on_date, raw["end_time"], tz),
            session_type=raw.get("session_type") or "video",
            price=raw.get("price"),
            is_recurring=bool(raw.get("is_recurring", True)),
        )
        if slot.starts_at <= cutoff:
            continue
        if any(slot.overlaps(start, end) for start, end in intervals):
            continue
        slots.append(slot)

    return sorted(slots, key=lambda s: s.starts_at)


def find_slot(
    availability: Mapping | None,
    starts_at: datetime,
    booked: Iterable[tuple[datetime, datetime]] = (),
    now: datetime | None = None,
    lead_minutes: int = 15,
) -> Slot | None:
    """Return the bookable slot starting exactly at ``starts_at`` (naive UTC)."""
    if not availability:
        return None
    tz = resolve_timezone(availability.get("timezone"))
    on_date = local_date(starts_at, tz)
    for slot in generate_slots(availability, on_date, booked, now, lead_minutes):
        if slot.starts_at == starts_at:
            return slot
    return None


def upcoming_days(
    availability: Mapping | None,
    start_date: date,
    days: int = 7,
    booked: Iterable[tuple[datetime, datetime]] = (),
    now: datetime | None = None,
    lead_minutes: int = 15,
) -> list[dict[str, object]]:
    intervals = list(booked)
    result = []
    for offset in range(days):
        current = start_date + timedelta(days=offset)
        slots = generate_slots(availability, current, intervals, now, lead_minutes)
        result.append({
            "date": current.isoformat(),
            "day_name": DAY_NAMES[day_of_week(current)],
            "slots": [slot.to_dict() for slot in slots],
        })
    return result


def mark_slot_booked(special_dates: list, on_date: date, start_time: str, booking_id: str) -> list | None:
    """Flag the special-date slot at ``start_time`` as booked.

    Returns an updated copy of ``special_dates``, or None when no
    special-date slot matches (weekly slots are never flagged).
    """
    updated = copy.deepcopy(special_dates or [])
    iso = on_date.isoformat()
    for special in updated:
        if special.get("date") != iso:
            continue
        for slot in special.get("time_slots") or []:
            if slot.get("start_time") == start_time and not slot.get("is_booked"):
                slot["is_booked"] = True
                slot["booking_id"] = booking_id
                return updated
    return None


def release_slot(special_dates: list, booking_id: str) -> list | None:
    updated = copy.deepcopy(special_dates or [])
    for special in updated:
        for slot in special.get("time_slots") or []:
            if slot.get("is_booked") and slot.get("booking_id") == booking_id:
                slot["is_booked"] = False
                slot.pop("booking_id", None)
                return updated
    return None


def bulk_special_dates(
    special_dates: list,
    start: date,
    end: date,
    is_available: bool,
    reason: str | None = None,
) -> list[dict[str, object]]:
    """Replace or create one special date per day in ``start..end`` inclusive."""
    if end < start:
        raise AvailabilityValidationError("end_date must not be before start_date")

    by_date = {item["date"]: item for item in copy.deepcopy(special_dates or [])}
    current = start
    while current <= end:
        item = {"date": current.isoformat(), "is_available": is_available, "time_slots": []}
        if reason:
            item["reason"] = reason
        by_date[current.isoformat()] = item
        current += timedelta(days=1)
    return [by_date[key] for key in sorted(by_date)]


def _overlay(target: dict, updates: Mapping) -> None:
    for key, value in updates.items():
        if isinstance(value, Mapping) and isinstance(target.get(key), dict):
            _overlay(target[key], value)
        else:
            target[key] = copy.deepcopy(value)


def merge_settings(*layers: Mapping | None) -> dict[str, object]:
    """Overlay stored settings (and any later updates) on the defaults."""
    merged = copy.deepcopy(DEFAULT_AVAILABILITY_SETTINGS)
    for layer in layers:
        _overlay(merged, layer or {})
    return merged


def slot_price(slot: Slot, hourly_rate: int | None) -> int:
    """Price in major units: the slot's own price, else the rate less the type discount."""
    if slot.price is not None:
        return int(slot.price)
    base = hourly_rate if hourly_rate is not None else DEFAULT_SESSION_PRICES["video"]
    return max(0, int(base) - SESSION_TYPE_DISCOUNTS.get(slot.session_type, 0))
