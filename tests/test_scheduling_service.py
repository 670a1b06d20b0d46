from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

from app.core.config import Settings
from app.services.booking_errors import (
    BlockedDateNotFound,
    EventNotFoundOrInactive,
    InvalidTimeSlot,
    ScheduleNotFound,
    SchedulingError,
    SlotAlreadyBooked,
    SlotTemporarilyReserved,
    UpstreamUnavailable,
    ValidationError,
)
from app.services.calendar_availability import (
    CalendarAvailabilityProvider,
    CalendarUnavailableError,
    StaticCalendarAvailabilityProvider,
)
from app.services.meeting_store import InMemoryMeetingStore
from app.services.reservation_store import InMemoryReservationStore
from app.services.schedule_store import InMemoryScheduleStore
from app.services.scheduling_models import BusyInterval, GuestIdentity
from app.services.scheduling_service import REASON_OUTSIDE_AVAILABILITY, SchedulingService
from app.services.slot_validator import REASON_ALREADY_BOOKED, REASON_MINIMUM_NOTICE

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
MONDAY_START = datetime(2026, 3, 2, 0, 0, tzinfo=UTC)
MONDAY_END = datetime(2026, 3, 3, 0, 0, tzinfo=UTC)
ALICE = GuestIdentity(email="alice@example.com", name="Alice")
BOB = GuestIdentity(email="bob@example.com", name="Bob")


class _UnavailableCalendar(CalendarAvailabilityProvider):
    def get_busy_intervals(self, expert_id, range_start, range_end):  # type: ignore[no-untyped-def]
        raise CalendarUnavailableError("calendar timeout")


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute, tzinfo=UTC)


def _service(
    calendar_provider: CalendarAvailabilityProvider | None = None,
    **settings_overrides: object,
) -> SchedulingService:
    return SchedulingService(
        Settings(**settings_overrides),
        schedule_store=InMemoryScheduleStore(),
        meeting_store=InMemoryMeetingStore(),
        reservation_store=InMemoryReservationStore(),
        calendar_provider=calendar_provider or StaticCalendarAvailabilityProvider(),
    )


def _configure(
    service: SchedulingService,
    *,
    timezone: str = "UTC",
    windows: list[tuple[str, str]] | None = None,
    before_event_buffer: int = 0,
    after_event_buffer: int = 0,
    minimum_notice: int = 0,
    time_slot_interval: int = 30,
    duration_minutes: int = 30,
) -> None:
    service.save_schedule(
        expert_id="expert-1",
        timezone=timezone,
        availabilities={"monday": windows or [("09:00", "12:00")]},
        before_event_buffer=before_event_buffer,
        after_event_buffer=after_event_buffer,
        minimum_notice=minimum_notice,
        time_slot_interval=time_slot_interval,
        booking_window_days=60,
    )
    service.save_event(
        event_id="event-1",
        expert_id="expert-1",
        slug="intro-call",
        duration_minutes=duration_minutes,
        name="Intro call",
    )


def _slots(service: SchedulingService, **kwargs: object) -> list[datetime]:
    return service.list_available_slots(
        expert_id="expert-1",
        event_id="event-1",
        range_start=MONDAY_START,
        range_end=MONDAY_END,
        now=NOW,
        **kwargs,
    ).slots


@pytest.mark.parametrize(
    ("time_slot_interval", "first_local_slot"),
    [(30, (9, 30)), (60, (10, 0))],
)
def test_first_slot_after_minimum_notice_in_new_york(
    time_slot_interval: int,
    first_local_slot: tuple[int, int],
) -> None:
    service = _service()
    _configure(
        service,
        timezone="America/New_York",
        windows=[("09:00", "17:00")],
        before_event_buffer=15,
        after_event_buffer=15,
        minimum_notice=60,
        time_slot_interval=time_slot_interval,
    )
    # Monday 08:30 in New York (EST).
    now = datetime(2026, 3, 2, 13, 30, tzinfo=UTC)

    result = service.list_available_slots(
        expert_id="expert-1",
        event_id="event-1",
        range_start=datetime(2026, 3, 2, 5, 0, tzinfo=UTC),
        range_end=datetime(2026, 3, 3, 5, 0, tzinfo=UTC),
        now=now,
    )

    first = result.slots[0].astimezone(ZoneInfo("America/New_York"))
    assert (first.hour, first.minute) == first_local_slot
    assert not result.degraded


def test_listing_excludes_calendar_busy_and_booked_times() -> None:
    calendar = StaticCalendarAvailabilityProvider(
        {"expert-1": [BusyInterval(start=_at(9, 0), end=_at(10, 0))]},
    )
    service = _service(calendar)
    _configure(service)
    service.book_slot(event_id="event-1", start_time=_at(11, 0), guest=ALICE, now=NOW)

    assert _slots(service) == [_at(10, 0), _at(10, 30), _at(11, 30)]


def test_listing_without_schedule_returns_no_slots() -> None:
    service = _service()
    service.save_event(event_id="event-1", expert_id="expert-1", slug="intro", duration_minutes=30)

    assert _slots(service) == []


def test_listing_rejects_inactive_or_foreign_event() -> None:
    service = _service()
    _configure(service)
    service.save_event(
        event_id="event-2",
        expert_id="expert-1",
        slug="paused",
        duration_minutes=30,
        is_active=False,
    )
    service.save_event(event_id="event-3", expert_id="expert-2", slug="other", duration_minutes=30)

    with pytest.raises(EventNotFoundOrInactive):
        service.list_available_slots(
            expert_id="expert-1",
            event_id="event-2",
            range_start=MONDAY_START,
            range_end=MONDAY_END,
            now=NOW,
        )
    with pytest.raises(EventNotFoundOrInactive):
        service.list_available_slots(
            expert_id="expert-1",
            event_id="event-3",
            range_start=MONDAY_START,
            range_end=MONDAY_END,
            now=NOW,
        )


def test_listing_validates_range() -> None:
    service = _service(max_slot_range_days=7)
    _configure(service)

    with pytest.raises(ValidationError):
        service.list_available_slots(
            expert_id="expert-1",
            event_id="event-1",
            range_start=MONDAY_END,
            range_end=MONDAY_START,
            now=NOW,
        )
    with pytest.raises(ValidationError):
        service.list_available_slots(
            expert_id="expert-1",
            event_id="event-1",
            range_start=MONDAY_START,
            range_end=MONDAY_START + timedelta(days=8),
            now=NOW,
        )
    with pytest.raises(ValidationError):
        service.list_available_slots(
            expert_id="expert-1",
            event_id="event-1",
            range_start=datetime(2026, 3, 2),
            range_end=MONDAY_END,
            now=NOW,
        )


def test_listing_degrades_when_calendar_is_unavailable() -> None:
    service = _service(_UnavailableCalendar())
    _configure(service)

    result = service.list_available_slots(
        expert_id="expert-1",
        event_id="event-1",
        range_start=MONDAY_START,
        range_end=MONDAY_END,
        now=NOW,
    )

    assert result.degraded
    assert len(result.slots) == 6


def test_listing_fails_when_degraded_mode_is_disabled() -> None:
    service = _service(_UnavailableCalendar(), calendar_degraded_mode_enabled=False)
    _configure(service)

    with pytest.raises(UpstreamUnavailable):
        _slots(service)


def test_booking_never_degrades_on_calendar_failure() -> None:
    service = _service(_UnavailableCalendar())
    _configure(service)

    with pytest.raises(UpstreamUnavailable):
        service.book_slot(event_id="event-1", start_time=_at(9, 0), guest=ALICE, now=NOW)


def test_reserved_slot_is_hidden_from_other_guests_only() -> None:
    service = _service()
    _configure(service)
    service.reserve_slot(event_id="event-1", start_time=_at(9, 30), guest=ALICE, now=NOW)

    assert _at(9, 30) not in _slots(service)
    assert _at(9, 30) not in _slots(service, guest_email="bob@example.com")
    assert _at(9, 30) in _slots(service, guest_email="ALICE@example.com")


def test_reserve_then_book_by_same_guest() -> None:
    service = _service()
    _configure(service)
    reservation = service.reserve_slot(event_id="event-1", start_time=_at(9, 30), guest=ALICE, now=NOW)

    assert reservation.expires_at == NOW + timedelta(minutes=15)
    with pytest.raises(SlotTemporarilyReserved):
        service.book_slot(event_id="event-1", start_time=_at(9, 30), guest=BOB, now=NOW)

    confirmation = service.book_slot(event_id="event-1", start_time=_at(9, 30), guest=ALICE, now=NOW)
    assert confirmation.created
    with pytest.raises(SlotAlreadyBooked):
        service.reserve_slot(event_id="event-1", start_time=_at(9, 30), guest=BOB, now=NOW)


def test_booking_rejects_time_outside_availability() -> None:
    service = _service()
    _configure(service)

    with pytest.raises(InvalidTimeSlot) as exc_info:
        service.book_slot(event_id="event-1", start_time=_at(9, 15), guest=ALICE, now=NOW)

    assert exc_info.value.reason == REASON_OUTSIDE_AVAILABILITY


def test_booking_reports_validator_reason() -> None:
    service = _service()
    _configure(service, minimum_notice=120)

    with pytest.raises(InvalidTimeSlot) as exc_info:
        service.book_slot(
            event_id="event-1",
            start_time=_at(9, 0),
            guest=ALICE,
            now=_at(8, 0),
        )

    assert exc_info.value.reason == REASON_MINIMUM_NOTICE


def test_booking_rejects_overlap_with_another_event_of_the_expert() -> None:
    service = _service()
    _configure(service)
    service.save_event(event_id="event-2", expert_id="expert-1", slug="deep-dive", duration_minutes=60)
    service.book_slot(event_id="event-2", start_time=_at(9, 0), guest=BOB, now=NOW)

    with pytest.raises(InvalidTimeSlot) as exc_info:
        service.book_slot(event_id="event-1", start_time=_at(9, 30), guest=ALICE, now=NOW)

    assert exc_info.value.reason == REASON_ALREADY_BOOKED


def test_concurrent_bookings_for_same_slot_create_one_meeting() -> None:
    service = _service()
    _configure(service)
    guests = [GuestIdentity(email=f"guest-{index}@example.com") for index in range(8)]

    def attempt(guest: GuestIdentity) -> object:
        try:
            return service.book_slot(event_id="event-1", start_time=_at(10, 0), guest=guest, now=NOW)
        except SchedulingError as exc:
            return exc

    with ThreadPoolExecutor(max_workers=len(guests)) as executor:
        outcomes = list(executor.map(attempt, guests))

    failures = [outcome for outcome in outcomes if isinstance(outcome, SchedulingError)]
    assert len(failures) == len(guests) - 1
    assert all(isinstance(failure, SlotAlreadyBooked) for failure in failures)
    booked = service.meeting_store.list_for_expert(
        expert_id="expert-1",
        range_start=MONDAY_START,
        range_end=MONDAY_END,
    )
    assert len(booked) == 1


def test_redelivered_payment_returns_original_meeting() -> None:
    service = _service()
    _configure(service)
    original = service.book_slot(
        event_id="event-1",
        start_time=_at(10, 0),
        guest=ALICE,
        payment_reference="pi_123",
        payment_status="succeeded",
        now=NOW,
    )

    redelivered = service.book_slot(
        event_id="event-1",
        start_time=_at(10, 0),
        guest=ALICE,
        payment_reference="pi_123",
        payment_status="succeeded",
        now=NOW + timedelta(minutes=10),
    )

    assert original.created
    assert not redelivered.created
    assert redelivered.meeting.id == original.meeting.id


def test_paid_booking_survives_schedule_change() -> None:
    service = _service()
    _configure(service)
    _configure(service, windows=[("14:00", "15:00")])

    with pytest.raises(InvalidTimeSlot):
        service.book_slot(event_id="event-1", start_time=_at(10, 0), guest=BOB, now=NOW)

    confirmation = service.book_slot(
        event_id="event-1",
        start_time=_at(10, 0),
        guest=ALICE,
        payment_reference="pi_456",
        payment_status="Succeeded",
        now=NOW,
    )

    assert confirmation.created
    assert confirmation.meeting.payment_status == "succeeded"


def test_booking_validates_inputs() -> None:
    service = _service()
    _configure(service)

    with pytest.raises(ValidationError):
        service.book_slot(
            event_id="event-1",
            start_time=_at(10, 0),
            guest=ALICE,
            payment_status="settled",
            now=NOW,
        )
    with pytest.raises(ValidationError):
        service.book_slot(
            event_id="event-1",
            start_time=_at(10, 0),
            guest=ALICE,
            guest_timezone="Mars/Olympus",
            now=NOW,
        )
    with pytest.raises(ValidationError):
        service.book_slot(
            event_id="event-1",
            start_time=_at(10, 0),
            guest=GuestIdentity(email="not-an-email"),
            now=NOW,
        )
    with pytest.raises(ValidationError):
        service.book_slot(
            event_id="event-1",
            start_time=datetime(2026, 3, 2, 10, 0),
            guest=ALICE,
            now=NOW,
        )


def test_cleanup_removes_only_expired_reservations() -> None:
    service = _service()
    _configure(service)
    service.reserve_slot(event_id="event-1", start_time=_at(9, 0), guest=ALICE, now=NOW)
    service.reserve_slot(
        event_id="event-1",
        start_time=_at(9, 30),
        guest=BOB,
        now=NOW + timedelta(minutes=10),
    )

    result = service.cleanup_expired_reservations(NOW + timedelta(minutes=20))

    assert result.deleted_count == 1
    assert result.deleted[0].guest_email == "alice@example.com"
    live = service.reservation_store.list_live_for_expert(
        expert_id="expert-1",
        now=NOW + timedelta(minutes=20),
    )
    assert [reservation.guest_email for reservation in live] == ["bob@example.com"]


def test_blocked_dates_default_to_schedule_timezone() -> None:
    service = _service()
    created_without_schedule = service.add_blocked_dates(
        expert_id="expert-2",
        entries=[(date(2026, 3, 2), None, None)],
    )
    _configure(service, timezone="Europe/Lisbon")

    created = service.add_blocked_dates(
        expert_id="expert-1",
        entries=[
            (date(2026, 3, 2), " Holiday ", None),
            (date(2026, 3, 9), None, "Asia/Tokyo"),
        ],
    )

    assert created_without_schedule[0].timezone == "UTC"
    assert [(entry.timezone, entry.reason) for entry in created] == [
        ("Europe/Lisbon", "Holiday"),
        ("Asia/Tokyo", None),
    ]
    assert _slots(service) == []
    with pytest.raises(ValidationError):
        service.add_blocked_dates(expert_id="expert-1", entries=[(date(2026, 3, 2), None, "Nowhere/City")])


def test_remove_blocked_date_restores_slots() -> None:
    service = _service()
    _configure(service)
    [blocked] = service.add_blocked_dates(expert_id="expert-1", entries=[(date(2026, 3, 2), None, None)])
    assert _slots(service) == []

    service.remove_blocked_date(expert_id="expert-1", blocked_date_id=blocked.id)

    assert len(_slots(service)) == 6
    with pytest.raises(BlockedDateNotFound):
        service.remove_blocked_date(expert_id="expert-1", blocked_date_id=blocked.id)


def test_schedule_management_errors() -> None:
    service = _service()

    with pytest.raises(ScheduleNotFound):
        service.get_schedule("expert-1")
    with pytest.raises(ValidationError):
        service.save_schedule(
            expert_id="expert-1",
            timezone="UTC",
            availabilities={"monday": [("12:00", "09:00")]},
            before_event_buffer=0,
            after_event_buffer=0,
            minimum_notice=0,
            time_slot_interval=30,
            booking_window_days=60,
        )
    with pytest.raises(ValidationError):
        service.save_event(event_id="event-1", expert_id="expert-1", slug="intro", duration_minutes=0)
    with pytest.raises(EventNotFoundOrInactive):
        service.get_event("missing")
