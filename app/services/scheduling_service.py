from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta

from pymongo.errors import PyMongoError

from app.core.config import Settings, get_settings
from app.services.booking_errors import (
    BlockedDateNotFound,
    EventNotFoundOrInactive,
    InvalidTimeSlot,
    ScheduleNotFound,
    UpstreamUnavailable,
    ValidationError,
)
from app.services.calendar_availability import (
    CalendarAvailabilityProvider,
    CalendarUnavailableError,
    StaticCalendarAvailabilityProvider,
)
from app.services.conflict_resolver import BookingConfirmation, BookingConflictResolver
from app.services.google_calendar_client import GoogleCalendarAvailabilityProvider
from app.services.meeting_store import MeetingStore, create_meeting_store
from app.services.reservation_store import ReservationStore, create_reservation_store
from app.services.schedule_store import ScheduleStore, create_schedule_store
from app.services.scheduling_models import (
    PAYMENT_STATUSES,
    AvailabilityWindow,
    BlockedDate,
    BusyInterval,
    Event,
    GuestIdentity,
    Schedule,
    ScheduleDefinitionError,
    SlotReservation,
    normalize_email,
)
from app.services.slot_generator import generate_candidate_slots
from app.services.slot_validator import REASON_MESSAGES, SlotValidator
from app.services.timezone_utils import TimezoneConversionError, ensure_utc, is_valid_timezone

logger = logging.getLogger(__name__)

REASON_OUTSIDE_AVAILABILITY = "outside_availability"


@dataclass
class AvailableSlots:
    slots: list[datetime] = field(default_factory=list)
    degraded: bool = False


@dataclass
class ReservationCleanupResult:
    deleted_count: int
    deleted: list[SlotReservation] = field(default_factory=list)


class SchedulingService:
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        schedule_store: ScheduleStore | None = None,
        meeting_store: MeetingStore | None = None,
        reservation_store: ReservationStore | None = None,
        calendar_provider: CalendarAvailabilityProvider | None = None,
        validator: SlotValidator | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.schedule_store = schedule_store or create_schedule_store(self.settings)
        self.meeting_store = meeting_store or create_meeting_store(self.settings)
        self.reservation_store = reservation_store or create_reservation_store(self.settings)
        self.calendar_provider = calendar_provider or self._create_calendar_provider()
        self.validator = validator or SlotValidator()
        self.resolver = BookingConflictResolver(
            meeting_store=self.meeting_store,
            reservation_store=self.reservation_store,
        )

    def list_available_slots(
        self,
        *,
        expert_id: str,
        event_id: str,
        range_start: datetime,
        range_end: datetime,
        now: datetime | None = None,
        guest_email: str | None = None,
    ) -> AvailableSlots:
        now = ensure_utc(now) if now else datetime.now(UTC)
        range_start, range_end = self._validate_range(range_start, range_end)
        event = self._get_active_event(event_id, expert_id=expert_id)

        try:
            schedule = self.schedule_store.get_schedule(expert_id)
            if schedule is None:
                return AvailableSlots()

            candidates = list(
                generate_candidate_slots(
                    schedule,
                    event.duration_minutes,
                    range_start,
                    range_end,
                    now,
                ),
            )
            if not candidates:
                return AvailableSlots()

            lookup_start, lookup_end = self._busy_lookup_range(schedule, candidates, event)
            busy_intervals, calendar_available = self._fetch_busy_intervals(
                expert_id,
                lookup_start,
                lookup_end,
                allow_degraded=self.settings.calendar_degraded_mode_enabled,
            )
            booked_intervals = [
                meeting.as_busy_interval()
                for meeting in self.meeting_store.list_for_expert(
                    expert_id=expert_id,
                    range_start=lookup_start,
                    range_end=lookup_end,
                )
            ]
            result = self.validator.validate(
                candidates,
                schedule=schedule,
                event=event,
                busy_intervals=busy_intervals,
                booked_intervals=booked_intervals,
                blocked_dates=self.schedule_store.get_blocked_dates(expert_id),
                now=now,
                calendar_available=calendar_available,
            )
            held_starts = self._held_start_times(expert_id, now=now, guest_email=guest_email)
        except PyMongoError as exc:
            raise UpstreamUnavailable("Scheduling storage is unavailable.") from exc

        slots = [slot for slot in result.slots if slot not in held_starts]
        return AvailableSlots(slots=slots, degraded=result.degraded)

    def reserve_slot(
        self,
        *,
        event_id: str,
        start_time: datetime,
        guest: GuestIdentity,
        payment_reference: str | None = None,
        now: datetime | None = None,
    ) -> SlotReservation:
        now = ensure_utc(now) if now else datetime.now(UTC)
        start_time = self._validate_instant(start_time, "start_time")
        self._validate_guest(guest)
        event = self._get_active_event(event_id)
        self._assert_slot_bookable(event=event, start_time=start_time, now=now)

        reservation = self.resolver.reserve(
            event=event,
            start_time=start_time,
            guest=guest,
            ttl=timedelta(minutes=self.settings.slot_reservation_ttl_minutes),
            now=now,
            payment_reference=payment_reference,
        )
        logger.info(
            "Reserved slot %s for event %s until %s",
            start_time.isoformat(),
            event.id,
            reservation.expires_at.isoformat(),
        )
        return reservation

    def book_slot(
        self,
        *,
        event_id: str,
        start_time: datetime,
        guest: GuestIdentity,
        payment_reference: str | None = None,
        payment_status: str | None = None,
        guest_timezone: str = "UTC",
        guest_notes: str | None = None,
        now: datetime | None = None,
    ) -> BookingConfirmation:
        now = ensure_utc(now) if now else datetime.now(UTC)
        start_time = self._validate_instant(start_time, "start_time")
        self._validate_guest(guest)
        payment_reference = (payment_reference or "").strip() or None
        normalized_status = (payment_status or "").strip().lower() or None
        if normalized_status and normalized_status not in PAYMENT_STATUSES:
            raise ValidationError(f"Unknown payment status: {payment_status}.")
        if not is_valid_timezone(guest_timezone):
            raise ValidationError(f"Unknown timezone: {guest_timezone}.")

        event = self._get_active_event(event_id)

        existing = self.resolver.find_existing(
            event=event,
            start_time=start_time,
            guest=guest,
            payment_reference=payment_reference,
        )
        if existing:
            logger.info(
                "Duplicate booking for event %s at %s resolved to meeting %s",
                event.id,
                start_time.isoformat(),
                existing.id,
            )
            return BookingConfirmation(meeting=existing, created=False)

        # A guest who has already been charged keeps the booking even if the
        # schedule changed after checkout; conflict checks still apply.
        already_paid = normalized_status == "succeeded" and payment_reference is not None
        if already_paid:
            logger.info(
                "Skipping slot validation for paid booking %s on event %s",
                payment_reference,
                event.id,
            )
        else:
            self._assert_slot_bookable(event=event, start_time=start_time, now=now)

        confirmation = self.resolver.confirm(
            event=event,
            start_time=start_time,
            guest=guest,
            now=now,
            payment_reference=payment_reference,
            payment_status=normalized_status,
            guest_timezone=guest_timezone,
            guest_notes=guest_notes,
        )
        if confirmation.created:
            logger.info(
                "Booked meeting %s for event %s at %s",
                confirmation.meeting.id,
                event.id,
                start_time.isoformat(),
            )
        return confirmation

    def cleanup_expired_reservations(self, now: datetime | None = None) -> ReservationCleanupResult:
        now = ensure_utc(now) if now else datetime.now(UTC)
        try:
            deleted = self.reservation_store.delete_expired(now)
        except PyMongoError as exc:
            raise UpstreamUnavailable("Reservation storage is unavailable.") from exc
        logger.info("Removed %s expired slot reservations", len(deleted))
        return ReservationCleanupResult(deleted_count=len(deleted), deleted=deleted)

    def save_schedule(
        self,
        *,
        expert_id: str,
        timezone: str,
        availabilities: Mapping[str, Sequence[tuple[str, str]]],
        before_event_buffer: int,
        after_event_buffer: int,
        minimum_notice: int,
        time_slot_interval: int,
        booking_window_days: int,
    ) -> Schedule:
        try:
            schedule = Schedule(
                expert_id=expert_id,
                timezone=timezone,
                availabilities={
                    day: [AvailabilityWindow(start=start, end=end) for start, end in windows]
                    for day, windows in availabilities.items()
                },
                before_event_buffer=before_event_buffer,
                after_event_buffer=after_event_buffer,
                minimum_notice=minimum_notice,
                time_slot_interval=time_slot_interval,
                booking_window_days=booking_window_days,
            )
        except ScheduleDefinitionError as exc:
            raise ValidationError(str(exc)) from exc
        return self.schedule_store.save_schedule(schedule)

    def get_schedule(self, expert_id: str) -> Schedule:
        schedule = self.schedule_store.get_schedule(expert_id)
        if schedule is None:
            raise ScheduleNotFound()
        return schedule

    def add_blocked_dates(
        self,
        *,
        expert_id: str,
        entries: Sequence[tuple[date, str | None, str | None]],
    ) -> list[BlockedDate]:
        schedule = self.schedule_store.get_schedule(expert_id)
        default_timezone = schedule.timezone if schedule else "UTC"
        blocked_dates: list[BlockedDate] = []
        for blocked_on, reason, timezone in entries:
            resolved_timezone = (timezone or "").strip() or default_timezone
            if not is_valid_timezone(resolved_timezone):
                raise ValidationError(f"Unknown timezone: {resolved_timezone}.")
            blocked_dates.append(
                BlockedDate(
                    id="",
                    expert_id=expert_id,
                    date=blocked_on,
                    timezone=resolved_timezone,
                    reason=(reason or "").strip() or None,
                ),
            )
        return self.schedule_store.add_blocked_dates(blocked_dates)

    def list_blocked_dates(self, expert_id: str) -> list[BlockedDate]:
        return self.schedule_store.get_blocked_dates(expert_id)

    def remove_blocked_date(self, *, expert_id: str, blocked_date_id: str) -> None:
        removed = self.schedule_store.remove_blocked_date(
            expert_id=expert_id,
            blocked_date_id=blocked_date_id,
        )
        if not removed:
            raise BlockedDateNotFound()

    def save_event(
        self,
        *,
        event_id: str,
        expert_id: str,
        slug: str,
        duration_minutes: int,
        is_active: bool = True,
        name: str = "",
    ) -> Event:
        if duration_minutes <= 0:
            raise ValidationError("duration_minutes must be positive.")
        if not event_id.strip() or not expert_id.strip():
            raise ValidationError("event_id and expert_id are required.")
        return self.schedule_store.save_event(
            Event(
                id=event_id.strip(),
                expert_id=expert_id.strip(),
                slug=slug.strip(),
                duration_minutes=duration_minutes,
                is_active=is_active,
                name=name.strip(),
            ),
        )

    def get_event(self, event_id: str) -> Event:
        event = self.schedule_store.get_event(event_id)
        if event is None:
            raise EventNotFoundOrInactive("Event not found.")
        return event

    def _assert_slot_bookable(self, *, event: Event, start_time: datetime, now: datetime) -> None:
        schedule = self.schedule_store.get_schedule(event.expert_id)
        if schedule is None:
            raise InvalidTimeSlot(
                "The expert has no availability schedule.",
                reason=REASON_OUTSIDE_AVAILABILITY,
            )

        candidates = generate_candidate_slots(
            schedule,
            event.duration_minutes,
            start_time,
            start_time + timedelta(minutes=1),
            now,
        )
        if start_time not in list(candidates):
            raise InvalidTimeSlot(
                "The requested time is outside the expert's availability.",
                reason=REASON_OUTSIDE_AVAILABILITY,
            )

        lookup_start, lookup_end = self._busy_lookup_range(schedule, [start_time], event)
        # Bookings never degrade: an unreachable calendar could hide a conflict.
        busy_intervals, _ = self._fetch_busy_intervals(
            event.expert_id,
            lookup_start,
            lookup_end,
            allow_degraded=False,
        )
        try:
            booked_intervals = [
                meeting.as_busy_interval()
                for meeting in self.meeting_store.list_for_expert(
                    expert_id=event.expert_id,
                    range_start=lookup_start,
                    range_end=lookup_end,
                )
                if not (meeting.event_id == event.id and meeting.start_time == start_time)
            ]
            blocked_dates = self.schedule_store.get_blocked_dates(event.expert_id)
        except PyMongoError as exc:
            raise UpstreamUnavailable("Scheduling storage is unavailable.") from exc

        reason = self.validator.rejection_reason(
            start_time,
            schedule=schedule,
            event=event,
            busy_intervals=busy_intervals,
            booked_intervals=booked_intervals,
            blocked_dates=blocked_dates,
            now=now,
        )
        if reason:
            logger.info(
                "Rejected slot %s for event %s: %s",
                start_time.isoformat(),
                event.id,
                reason,
            )
            raise InvalidTimeSlot(REASON_MESSAGES[reason], reason=reason)

    def _fetch_busy_intervals(
        self,
        expert_id: str,
        range_start: datetime,
        range_end: datetime,
        *,
        allow_degraded: bool,
    ) -> tuple[list[BusyInterval], bool]:
        try:
            return self.calendar_provider.get_busy_intervals(expert_id, range_start, range_end), True
        except CalendarUnavailableError as exc:
            if not allow_degraded:
                raise UpstreamUnavailable("Calendar provider is unavailable.") from exc
            logger.warning(
                "Calendar provider unavailable for expert %s; serving degraded availability: %s",
                expert_id,
                exc,
            )
            return [], False

    def _busy_lookup_range(
        self,
        schedule: Schedule,
        candidates: Sequence[datetime],
        event: Event,
    ) -> tuple[datetime, datetime]:
        before = timedelta(minutes=schedule.before_event_buffer)
        after = timedelta(minutes=schedule.after_event_buffer)
        duration = timedelta(minutes=event.duration_minutes)
        return min(candidates) - after, max(candidates) + duration + before

    def _held_start_times(
        self,
        expert_id: str,
        *,
        now: datetime,
        guest_email: str | None,
    ) -> set[datetime]:
        requesting_guest = normalize_email(guest_email) if guest_email else None
        return {
            reservation.start_time
            for reservation in self.reservation_store.list_live_for_expert(expert_id=expert_id, now=now)
            if reservation.guest_email != requesting_guest
        }

    def _get_active_event(self, event_id: str, *, expert_id: str | None = None) -> Event:
        if not event_id or not event_id.strip():
            raise ValidationError("event_id is required.")
        try:
            event = self.schedule_store.get_event(event_id.strip())
        except PyMongoError as exc:
            raise UpstreamUnavailable("Scheduling storage is unavailable.") from exc
        if event is None or not event.is_active:
            raise EventNotFoundOrInactive()
        if expert_id is not None and event.expert_id != expert_id:
            raise EventNotFoundOrInactive()
        return event

    def _validate_range(self, range_start: datetime, range_end: datetime) -> tuple[datetime, datetime]:
        start = self._validate_instant(range_start, "range_start")
        end = self._validate_instant(range_end, "range_end")
        if end <= start:
            raise ValidationError("range_end must be after range_start.")
        if end - start > timedelta(days=self.settings.max_slot_range_days):
            raise ValidationError(
                f"Slot range must not exceed {self.settings.max_slot_range_days} days.",
            )
        return start, end

    def _validate_instant(self, value: datetime, field_name: str) -> datetime:
        try:
            return ensure_utc(value)
        except TimezoneConversionError as exc:
            raise ValidationError(f"{field_name} must include a UTC offset.") from exc

    def _validate_guest(self, guest: GuestIdentity) -> None:
        if "@" not in guest.email or len(guest.email) < 3:
            raise ValidationError("A valid guest email is required.")

    def _create_calendar_provider(self) -> CalendarAvailabilityProvider:
        if self.settings.calendar_provider != "google":
            return StaticCalendarAvailabilityProvider()
        return GoogleCalendarAvailabilityProvider(
            access_token=self.settings.google_calendar_api_token,
            refresh_token=self.settings.google_calendar_refresh_token,
            client_id=self.settings.google_calendar_client_id,
            client_secret=self.settings.google_calendar_client_secret,
            calendar_ids_by_expert=self.settings.google_calendar_ids_by_expert,
            timeout_seconds=self.settings.google_calendar_api_timeout_seconds,
        )
