from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any

from app.services.timezone_utils import (
    TimezoneConversionError,
    ensure_utc,
    is_valid_timezone,
    parse_wall_clock_minutes,
)

DAYS_OF_WEEK_IN_ORDER: tuple[str, ...] = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)
PAYMENT_STATUSES = frozenset({"pending", "processing", "succeeded", "failed", "refunded"})

DEFAULT_BEFORE_EVENT_BUFFER = 0
DEFAULT_AFTER_EVENT_BUFFER = 0
DEFAULT_MINIMUM_NOTICE = 0
DEFAULT_TIME_SLOT_INTERVAL = 15
DEFAULT_BOOKING_WINDOW_DAYS = 60


class ScheduleDefinitionError(ValueError):
    pass


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass(frozen=True)
class AvailabilityWindow:
    start: str
    end: str

    @property
    def start_minutes(self) -> int:
        return parse_wall_clock_minutes(self.start)

    @property
    def end_minutes(self) -> int:
        return parse_wall_clock_minutes(self.end)


@dataclass
class Schedule:
    expert_id: str
    timezone: str
    availabilities: dict[str, list[AvailabilityWindow]] = field(default_factory=dict)
    before_event_buffer: int = DEFAULT_BEFORE_EVENT_BUFFER
    after_event_buffer: int = DEFAULT_AFTER_EVENT_BUFFER
    minimum_notice: int = DEFAULT_MINIMUM_NOTICE
    time_slot_interval: int = DEFAULT_TIME_SLOT_INTERVAL
    booking_window_days: int = DEFAULT_BOOKING_WINDOW_DAYS

    def __post_init__(self) -> None:
        if not is_valid_timezone(self.timezone):
            raise ScheduleDefinitionError(f"Unknown schedule timezone: {self.timezone!r}.")
        for name in ("before_event_buffer", "after_event_buffer", "minimum_notice"):
            if getattr(self, name) < 0:
                raise ScheduleDefinitionError(f"{name} must not be negative.")
        if self.time_slot_interval <= 0:
            raise ScheduleDefinitionError("time_slot_interval must be positive.")
        if self.booking_window_days <= 0:
            raise ScheduleDefinitionError("booking_window_days must be positive.")

        normalized: dict[str, list[AvailabilityWindow]] = {}
        for raw_day, windows in self.availabilities.items():
            day = raw_day.strip().lower()
            if day not in DAYS_OF_WEEK_IN_ORDER:
                raise ScheduleDefinitionError(f"Unknown day of week: {raw_day!r}.")
            normalized[day] = _validate_day_windows(day, windows)
        self.availabilities = normalized

    def windows_for(self, local_date: date) -> list[AvailabilityWindow]:
        return list(self.availabilities.get(DAYS_OF_WEEK_IN_ORDER[local_date.weekday()], []))

    def to_record(self) -> dict[str, Any]:
        return {
            "expert_id": self.expert_id,
            "timezone": self.timezone,
            "availabilities": {
                day: [{"start": window.start, "end": window.end} for window in windows]
                for day, windows in self.availabilities.items()
            },
            "before_event_buffer": self.before_event_buffer,
            "after_event_buffer": self.after_event_buffer,
            "minimum_notice": self.minimum_notice,
            "time_slot_interval": self.time_slot_interval,
            "booking_window_days": self.booking_window_days,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Schedule:
        raw_availabilities = record.get("availabilities") or {}
        return cls(
            expert_id=str(record["expert_id"]),
            timezone=str(record["timezone"]),
            availabilities={
                day: [
                    AvailabilityWindow(start=str(window["start"]), end=str(window["end"]))
                    for window in windows
                ]
                for day, windows in raw_availabilities.items()
            },
            before_event_buffer=int(record.get("before_event_buffer", DEFAULT_BEFORE_EVENT_BUFFER)),
            after_event_buffer=int(record.get("after_event_buffer", DEFAULT_AFTER_EVENT_BUFFER)),
            minimum_notice=int(record.get("minimum_notice", DEFAULT_MINIMUM_NOTICE)),
            time_slot_interval=int(record.get("time_slot_interval", DEFAULT_TIME_SLOT_INTERVAL)),
            booking_window_days=int(record.get("booking_window_days", DEFAULT_BOOKING_WINDOW_DAYS)),
        )


def _validate_day_windows(day: str, windows: list[AvailabilityWindow]) -> list[AvailabilityWindow]:
    bounds: list[tuple[int, int, AvailabilityWindow]] = []
    for window in windows:
        try:
            start_minutes = window.start_minutes
            end_minutes = window.end_minutes
        except TimezoneConversionError as exc:
            raise ScheduleDefinitionError(str(exc)) from exc
        if start_minutes >= end_minutes:
            raise ScheduleDefinitionError(
                f"Availability window on {day} must start before it ends ({window.start}-{window.end}).",
            )
        bounds.append((start_minutes, end_minutes, window))

    bounds.sort(key=lambda item: item[0])
    for previous, current in zip(bounds, bounds[1:]):
        if current[0] < previous[1]:
            raise ScheduleDefinitionError(f"Availability windows on {day} overlap.")
    return [window for _, _, window in bounds]


@dataclass
class BlockedDate:
    id: str
    expert_id: str
    date: date
    timezone: str
    reason: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "expert_id": self.expert_id,
            "date": self.date.isoformat(),
            "timezone": self.timezone,
            "reason": self.reason,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> BlockedDate:
        return cls(
            id=str(record.get("_id", "")),
            expert_id=str(record["expert_id"]),
            date=date.fromisoformat(str(record["date"])),
            timezone=str(record.get("timezone") or "UTC"),
            reason=record.get("reason"),
        )


@dataclass
class Event:
    id: str
    expert_id: str
    slug: str
    duration_minutes: int
    is_active: bool = True
    name: str = ""

    def to_record(self) -> dict[str, Any]:
        return {
            "event_id": self.id,
            "expert_id": self.expert_id,
            "slug": self.slug,
            "duration_minutes": self.duration_minutes,
            "is_active": self.is_active,
            "name": self.name,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Event:
        return cls(
            id=str(record["event_id"]),
            expert_id=str(record["expert_id"]),
            slug=str(record.get("slug", "")),
            duration_minutes=int(record["duration_minutes"]),
            is_active=bool(record.get("is_active", True)),
            name=str(record.get("name", "")),
        )


@dataclass(frozen=True)
class GuestIdentity:
    email: str
    name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "email", normalize_email(self.email))
        object.__setattr__(self, "name", (self.name or "").strip())


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and self.start < end

    def expanded(self, before_minutes: int, after_minutes: int) -> BusyInterval:
        return BusyInterval(
            start=self.start - timedelta(minutes=before_minutes),
            end=self.end + timedelta(minutes=after_minutes),
        )


@dataclass
class Meeting:
    id: str
    event_id: str
    expert_id: str
    guest_email: str
    guest_name: str
    start_time: datetime
    duration_minutes: int
    timezone: str = "UTC"
    payment_reference: str | None = None
    payment_status: str | None = None
    guest_notes: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        self.start_time = ensure_utc(self.start_time)
        self.guest_email = normalize_email(self.guest_email)

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)

    def as_busy_interval(self) -> BusyInterval:
        return BusyInterval(start=self.start_time, end=self.end_time)

    def to_record(self) -> dict[str, Any]:
        return {
            "meeting_id": self.id,
            "event_id": self.event_id,
            "expert_id": self.expert_id,
            "guest_email": self.guest_email,
            "guest_name": self.guest_name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_minutes": self.duration_minutes,
            "timezone": self.timezone,
            "payment_reference": self.payment_reference,
            "payment_status": self.payment_status,
            "guest_notes": self.guest_notes,
            "created_at": self.created_at,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Meeting:
        return cls(
            id=str(record["meeting_id"]),
            event_id=str(record["event_id"]),
            expert_id=str(record["expert_id"]),
            guest_email=str(record["guest_email"]),
            guest_name=str(record.get("guest_name", "")),
            start_time=_as_utc(record["start_time"]),
            duration_minutes=int(record["duration_minutes"]),
            timezone=str(record.get("timezone") or "UTC"),
            payment_reference=record.get("payment_reference"),
            payment_status=record.get("payment_status"),
            guest_notes=record.get("guest_notes"),
            created_at=_as_utc(record.get("created_at") or datetime.now(UTC)),
        )


@dataclass
class SlotReservation:
    id: str
    event_id: str
    expert_id: str
    guest_email: str
    start_time: datetime
    end_time: datetime
    expires_at: datetime
    payment_reference: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def is_live(self, now: datetime) -> bool:
        return self.expires_at > now

    def to_record(self) -> dict[str, Any]:
        return {
            "reservation_id": self.id,
            "event_id": self.event_id,
            "expert_id": self.expert_id,
            "guest_email": self.guest_email,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "expires_at": self.expires_at,
            "payment_reference": self.payment_reference,
            "created_at": self.created_at,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> SlotReservation:
        return cls(
            id=str(record["reservation_id"]),
            event_id=str(record["event_id"]),
            expert_id=str(record["expert_id"]),
            guest_email=str(record["guest_email"]),
            start_time=_as_utc(record["start_time"]),
            end_time=_as_utc(record["end_time"]),
            expires_at=_as_utc(record["expires_at"]),
            payment_reference=record.get("payment_reference"),
            created_at=_as_utc(record.get("created_at") or datetime.now(UTC)),
        )


def _as_utc(value: datetime) -> datetime:
    # Stored instants are UTC even when the driver hands them back naive.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
