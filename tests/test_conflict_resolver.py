from datetime import UTC, datetime, timedelta

import pytest
from pymongo.errors import PyMongoError

from app.services.booking_errors import SlotAlreadyBooked, SlotTemporarilyReserved, UpstreamUnavailable
from app.services.conflict_resolver import BookingConflictResolver
from app.services.meeting_store import InMemoryMeetingStore
from app.services.reservation_store import InMemoryReservationStore
from app.services.scheduling_models import Event, GuestIdentity, Meeting

EVENT = Event(id="event-1", expert_id="expert-1", slug="intro-call", duration_minutes=30)
START = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)
NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
TTL = timedelta(minutes=15)
ALICE = GuestIdentity(email="Alice@Example.com", name="Alice")
BOB = GuestIdentity(email="bob@example.com", name="Bob")


class _RacingMeetingStore(InMemoryMeetingStore):
    """Lets a competing meeting land between the conflict check and the insert."""

    def __init__(self, competitor: Meeting) -> None:
        super().__init__()
        self.competitor = competitor

    def insert(self, meeting: Meeting) -> Meeting:
        super().insert(self.competitor)
        return super().insert(meeting)


class _FailingMeetingStore(InMemoryMeetingStore):
    def find_by_idempotency_key(self, **kwargs):  # type: ignore[no-untyped-def]
        raise PyMongoError("connection reset")

    def find_conflicting(self, **kwargs):  # type: ignore[no-untyped-def]
        raise PyMongoError("connection reset")


def _resolver(
    meeting_store: InMemoryMeetingStore | None = None,
) -> tuple[BookingConflictResolver, InMemoryMeetingStore, InMemoryReservationStore]:
    meetings = meeting_store or InMemoryMeetingStore()
    reservations = InMemoryReservationStore()
    return (
        BookingConflictResolver(meeting_store=meetings, reservation_store=reservations),
        meetings,
        reservations,
    )


def _meeting(guest: GuestIdentity, *, payment_reference: str | None = None) -> Meeting:
    return Meeting(
        id=f"meeting-{guest.email}",
        event_id=EVENT.id,
        expert_id=EVENT.expert_id,
        guest_email=guest.email,
        guest_name=guest.name,
        start_time=START,
        duration_minutes=EVENT.duration_minutes,
        payment_reference=payment_reference,
        created_at=NOW,
    )


def test_reserve_holds_slot_against_other_guests() -> None:
    resolver, _, _ = _resolver()

    reservation = resolver.reserve(event=EVENT, start_time=START, guest=ALICE, ttl=TTL, now=NOW)

    assert reservation.guest_email == "alice@example.com"
    assert reservation.expires_at == NOW + TTL
    assert reservation.end_time == START + timedelta(minutes=30)
    with pytest.raises(SlotTemporarilyReserved):
        resolver.reserve(event=EVENT, start_time=START, guest=BOB, ttl=TTL, now=NOW + timedelta(minutes=5))


def test_reserve_again_by_same_guest_extends_hold() -> None:
    resolver, _, _ = _resolver()
    first = resolver.reserve(event=EVENT, start_time=START, guest=ALICE, ttl=TTL, now=NOW)

    later = NOW + timedelta(minutes=10)
    second = resolver.reserve(event=EVENT, start_time=START, guest=ALICE, ttl=TTL, now=later)

    assert second.id == first.id
    assert second.expires_at == later + TTL


def test_expired_reservation_no_longer_blocks() -> None:
    resolver, _, _ = _resolver()
    resolver.reserve(event=EVENT, start_time=START, guest=ALICE, ttl=TTL, now=NOW)

    reservation = resolver.reserve(
        event=EVENT,
        start_time=START,
        guest=BOB,
        ttl=TTL,
        now=NOW + TTL,
    )

    assert reservation.guest_email == "bob@example.com"


def test_reserve_rejects_slot_booked_by_another_guest() -> None:
    resolver, meetings, _ = _resolver()
    meetings.insert(_meeting(BOB))

    with pytest.raises(SlotAlreadyBooked):
        resolver.reserve(event=EVENT, start_time=START, guest=ALICE, ttl=TTL, now=NOW)


def test_confirm_creates_meeting_and_releases_own_reservation() -> None:
    resolver, _, reservations = _resolver()
    resolver.reserve(event=EVENT, start_time=START, guest=ALICE, ttl=TTL, now=NOW)

    confirmation = resolver.confirm(
        event=EVENT,
        start_time=START,
        guest=ALICE,
        now=NOW,
        payment_reference="pi_123",
        payment_status="succeeded",
        guest_timezone="Europe/Lisbon",
    )

    assert confirmation.created
    assert confirmation.meeting.guest_email == "alice@example.com"
    assert confirmation.meeting.end_time == START + timedelta(minutes=30)
    assert confirmation.meeting.timezone == "Europe/Lisbon"
    assert reservations.find_live(event_id=EVENT.id, start_time=START, now=NOW) is None


def test_confirm_is_idempotent_on_payment_reference() -> None:
    resolver, meetings, _ = _resolver()
    first = resolver.confirm(event=EVENT, start_time=START, guest=ALICE, now=NOW, payment_reference="pi_123")

    redelivered = resolver.confirm(
        event=EVENT,
        start_time=START,
        guest=ALICE,
        now=NOW + timedelta(minutes=10),
        payment_reference="pi_123",
    )

    assert not redelivered.created
    assert redelivered.meeting.id == first.meeting.id
    assert len(meetings.list_for_expert(expert_id="expert-1", range_start=START, range_end=START + TTL)) == 1


def test_confirm_without_payment_reference_uses_guest_and_slot() -> None:
    resolver, _, _ = _resolver()
    first = resolver.confirm(event=EVENT, start_time=START, guest=ALICE, now=NOW)

    again = resolver.confirm(
        event=EVENT,
        start_time=START,
        guest=GuestIdentity(email=" alice@example.com "),
        now=NOW,
    )

    assert not again.created
    assert again.meeting.id == first.meeting.id


def test_confirm_rejects_second_guest_for_booked_slot() -> None:
    resolver, _, _ = _resolver()
    resolver.confirm(event=EVENT, start_time=START, guest=ALICE, now=NOW, payment_reference="pi_1")

    with pytest.raises(SlotAlreadyBooked):
        resolver.confirm(event=EVENT, start_time=START, guest=BOB, now=NOW, payment_reference="pi_2")


def test_confirm_rejects_slot_reserved_by_another_guest() -> None:
    resolver, _, _ = _resolver()
    resolver.reserve(event=EVENT, start_time=START, guest=ALICE, ttl=TTL, now=NOW)

    with pytest.raises(SlotTemporarilyReserved):
        resolver.confirm(event=EVENT, start_time=START, guest=BOB, now=NOW + timedelta(minutes=1))


def test_confirm_losing_insert_race_reports_already_booked() -> None:
    resolver, meetings, _ = _resolver(_RacingMeetingStore(_meeting(BOB)))

    with pytest.raises(SlotAlreadyBooked):
        resolver.confirm(event=EVENT, start_time=START, guest=ALICE, now=NOW)

    booked = meetings.list_for_expert(expert_id="expert-1", range_start=START, range_end=START + TTL)
    assert [meeting.guest_email for meeting in booked] == ["bob@example.com"]


def test_confirm_losing_race_to_own_retry_returns_existing_meeting() -> None:
    resolver, _, _ = _resolver(_RacingMeetingStore(_meeting(ALICE, payment_reference="pi_9")))

    confirmation = resolver.confirm(
        event=EVENT,
        start_time=START,
        guest=ALICE,
        now=NOW,
        payment_reference="pi_9",
    )

    assert not confirmation.created
    assert confirmation.meeting.id == "meeting-alice@example.com"


def test_storage_failures_surface_as_upstream_unavailable() -> None:
    resolver, _, _ = _resolver(_FailingMeetingStore())

    with pytest.raises(UpstreamUnavailable):
        resolver.reserve(event=EVENT, start_time=START, guest=ALICE, ttl=TTL, now=NOW)
    with pytest.raises(UpstreamUnavailable):
        resolver.confirm(event=EVENT, start_time=START, guest=ALICE, now=NOW)
