from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from uuid import uuid4

from pymongo.errors import PyMongoError

from app.services.booking_errors import SlotAlreadyBooked, SlotTemporarilyReserved, UpstreamUnavailable
from app.services.meeting_store import MeetingConflictError, MeetingStore
from app.services.reservation_store import ReservationStore
from app.services.scheduling_models import Event, GuestIdentity, Meeting, SlotReservation

logger = logging.getLogger(__name__)


@dataclass
class BookingConfirmation:
    meeting: Meeting
    created: bool


class BookingConflictResolver:
    """Serializes bookings per (event, start time).

    A key moves OPEN -> RESERVED -> CONFIRMED, or falls back to OPEN once its
    reservation expires. Expiry is never written; a reservation counts only
    while ``expires_at > now``. The storage uniqueness guard on
    (event_id, start_time) is what makes confirmation safe across processes.
    """

    def __init__(self, *, meeting_store: MeetingStore, reservation_store: ReservationStore) -> None:
        self.meeting_store = meeting_store
        self.reservation_store = reservation_store

    def reserve(
        self,
        *,
        event: Event,
        start_time: datetime,
        guest: GuestIdentity,
        ttl: timedelta,
        now: datetime,
        payment_reference: str | None = None,
    ) -> SlotReservation:
        try:
            conflicting = self.meeting_store.find_conflicting(
                event_id=event.id,
                start_time=start_time,
                exclude_guest_email=guest.email,
            )
            if conflicting:
                raise SlotAlreadyBooked()

            result = self.reservation_store.try_reserve(
                event_id=event.id,
                expert_id=event.expert_id,
                start_time=start_time,
                end_time=start_time + timedelta(minutes=event.duration_minutes),
                guest_email=guest.email,
                ttl=ttl,
                now=now,
                payment_reference=payment_reference,
            )
        except PyMongoError as exc:
            raise UpstreamUnavailable("Reservation storage is unavailable.") from exc

        if not result.reserved:
            logger.info(
                "Slot %s for event %s is held by another guest until %s",
                start_time.isoformat(),
                event.id,
                result.reservation.expires_at.isoformat(),
            )
            raise SlotTemporarilyReserved()
        return result.reservation

    def find_existing(
        self,
        *,
        event: Event,
        start_time: datetime,
        guest: GuestIdentity,
        payment_reference: str | None,
    ) -> Meeting | None:
        try:
            return self.meeting_store.find_by_idempotency_key(
                payment_reference=payment_reference,
                event_id=event.id,
                start_time=start_time,
                guest_email=guest.email,
            )
        except PyMongoError as exc:
            raise UpstreamUnavailable("Meeting storage is unavailable.") from exc

    def confirm(
        self,
        *,
        event: Event,
        start_time: datetime,
        guest: GuestIdentity,
        now: datetime,
        payment_reference: str | None = None,
        payment_status: str | None = None,
        guest_timezone: str = "UTC",
        guest_notes: str | None = None,
    ) -> BookingConfirmation:
        existing = self.find_existing(
            event=event,
            start_time=start_time,
            guest=guest,
            payment_reference=payment_reference,
        )
        if existing:
            logger.info("Returning existing meeting %s for repeated booking", existing.id)
            return BookingConfirmation(meeting=existing, created=False)

        try:
            return self._insert_meeting(
                event=event,
                start_time=start_time,
                guest=guest,
                now=now,
                payment_reference=payment_reference,
                payment_status=payment_status,
                guest_timezone=guest_timezone,
                guest_notes=guest_notes,
            )
        except PyMongoError as exc:
            raise UpstreamUnavailable("Meeting storage is unavailable.") from exc

    def _insert_meeting(
        self,
        *,
        event: Event,
        start_time: datetime,
        guest: GuestIdentity,
        now: datetime,
        payment_reference: str | None,
        payment_status: str | None,
        guest_timezone: str,
        guest_notes: str | None,
    ) -> BookingConfirmation:
        if self.meeting_store.find_conflicting(
            event_id=event.id,
            start_time=start_time,
            exclude_guest_email=guest.email,
        ):
            raise SlotAlreadyBooked()

        reservation = self.reservation_store.find_live(event_id=event.id, start_time=start_time, now=now)
        if reservation and reservation.guest_email != guest.email:
            raise SlotTemporarilyReserved()

        meeting = Meeting(
            id=uuid4().hex,
            event_id=event.id,
            expert_id=event.expert_id,
            guest_email=guest.email,
            guest_name=guest.name,
            start_time=start_time,
            duration_minutes=event.duration_minutes,
            timezone=guest_timezone,
            payment_reference=payment_reference,
            payment_status=payment_status,
            guest_notes=guest_notes,
            created_at=now,
        )
        try:
            self.meeting_store.insert(meeting)
        except MeetingConflictError:
            # Lost the race: a concurrent retry from the same guest is still a success.
            existing = self.meeting_store.find_by_idempotency_key(
                payment_reference=payment_reference,
                event_id=event.id,
                start_time=start_time,
                guest_email=guest.email,
            )
            if existing:
                return BookingConfirmation(meeting=existing, created=False)
            logger.warning(
                "Meeting insert for event %s at %s rejected by uniqueness guard",
                event.id,
                start_time.isoformat(),
            )
            raise SlotAlreadyBooked() from None

        self.reservation_store.release(event_id=event.id, start_time=start_time, guest_email=guest.email)
        return BookingConfirmation(meeting=meeting, created=True)
