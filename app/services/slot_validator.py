from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from app.services.scheduling_models import BlockedDate, BusyInterval, Event, Schedule
from app.services.timezone_utils import ensure_utc, utc_to_local_date

REASON_MINIMUM_NOTICE = "minimum_notice"
REASON_BLOCKED_DATE = "blocked_date"
REASON_BUFFER = "buffer"
REASON_ALREADY_BOOKED = "already_booked"
REASON_CALENDAR_BUSY = "calendar_busy"

REASON_MESSAGES = {
    REASON_MINIMUM_NOTICE: "The requested time is inside the expert's minimum notice period.",
    REASON_BLOCKED_DATE: "The expert is unavailable on the requested date.",
    REASON_BUFFER: "The requested time is too close to another commitment.",
    REASON_ALREADY_BOOKED: "The requested time overlaps an existing booking.",
    REASON_CALENDAR_BUSY: "The expert's calendar is busy at the requested time.",
}


@dataclass
class SlotValidationResult:
    slots: list[datetime] = field(default_factory=list)
    degraded: bool = False


@dataclass(frozen=True)
class _PreparedInputs:
    earliest_start: datetime
    duration: timedelta
    blocked_dates: tuple[BlockedDate, ...]
    expanded_intervals: tuple[tuple[BusyInterval, BusyInterval, str], ...]
    calendar_intervals: tuple[BusyInterval, ...]


class SlotValidator:
    """Reduces candidate start instants to the ones bookable at ``now``.

    Stages run in a fixed order (minimum notice, blocked dates, buffers,
    calendar busy) and the first failing stage names the rejection reason.
    The validator has no state and never reads the clock; ``now`` is an input.
    """

    def validate(
        self,
        candidates: Iterable[datetime],
        *,
        schedule: Schedule,
        event: Event,
        busy_intervals: Sequence[BusyInterval],
        now: datetime,
        blocked_dates: Sequence[BlockedDate] = (),
        booked_intervals: Sequence[BusyInterval] = (),
        calendar_available: bool = True,
    ) -> SlotValidationResult:
        prepared = self._prepare(
            schedule=schedule,
            event=event,
            busy_intervals=busy_intervals,
            booked_intervals=booked_intervals,
            blocked_dates=blocked_dates,
            now=now,
        )
        slots = [
            ensure_utc(candidate)
            for candidate in candidates
            if self._first_rejection(ensure_utc(candidate), prepared) is None
        ]
        return SlotValidationResult(slots=slots, degraded=not calendar_available)

    def rejection_reason(
        self,
        candidate: datetime,
        *,
        schedule: Schedule,
        event: Event,
        busy_intervals: Sequence[BusyInterval],
        now: datetime,
        blocked_dates: Sequence[BlockedDate] = (),
        booked_intervals: Sequence[BusyInterval] = (),
    ) -> str | None:
        prepared = self._prepare(
            schedule=schedule,
            event=event,
            busy_intervals=busy_intervals,
            booked_intervals=booked_intervals,
            blocked_dates=blocked_dates,
            now=now,
        )
        return self._first_rejection(ensure_utc(candidate), prepared)

    def _prepare(
        self,
        *,
        schedule: Schedule,
        event: Event,
        busy_intervals: Sequence[BusyInterval],
        booked_intervals: Sequence[BusyInterval],
        blocked_dates: Sequence[BlockedDate],
        now: datetime,
    ) -> _PreparedInputs:
        before = schedule.before_event_buffer
        after = schedule.after_event_buffer
        expanded: list[tuple[BusyInterval, BusyInterval, str]] = []
        for interval in booked_intervals:
            expanded.append((interval, interval.expanded(before, after), REASON_ALREADY_BOOKED))
        for interval in busy_intervals:
            expanded.append((interval, interval.expanded(before, after), REASON_CALENDAR_BUSY))
        return _PreparedInputs(
            earliest_start=ensure_utc(now) + timedelta(minutes=schedule.minimum_notice),
            duration=timedelta(minutes=event.duration_minutes),
            blocked_dates=tuple(blocked_dates),
            expanded_intervals=tuple(expanded),
            calendar_intervals=tuple(busy_intervals),
        )

    def _first_rejection(self, candidate: datetime, prepared: _PreparedInputs) -> str | None:
        if candidate < prepared.earliest_start:
            return REASON_MINIMUM_NOTICE

        for blocked in prepared.blocked_dates:
            if utc_to_local_date(candidate, blocked.timezone) == blocked.date:
                return REASON_BLOCKED_DATE

        candidate_end = candidate + prepared.duration
        # Booked meetings come first, so a direct overlap with one wins over padding.
        for raw, expanded, raw_reason in prepared.expanded_intervals:
            if raw.overlaps(candidate, candidate_end):
                if raw_reason == REASON_ALREADY_BOOKED:
                    return REASON_ALREADY_BOOKED
                continue
            if expanded.overlaps(candidate, candidate_end):
                return REASON_BUFFER

        for interval in prepared.calendar_intervals:
            if interval.overlaps(candidate, candidate_end):
                return REASON_CALENDAR_BUSY
        return None
