from datetime import datetime, timedelta

from fastapi import APIRouter, Query, status

from app.schemas.scheduling import (
    BookingRequest,
    BookingResponse,
    MeetingResponse,
    ReservationCleanupResponse,
    SchedulingSlot,
    SchedulingSlotsResponse,
    SlotReservationRequest,
    SlotReservationResponse,
)
from app.services.scheduling_models import GuestIdentity, Meeting
from app.services.scheduling_service import SchedulingService

router = APIRouter(prefix="/scheduling", tags=["scheduling"])


@router.get(
    "/experts/{expert_id}/events/{event_id}/slots",
    response_model=SchedulingSlotsResponse,
)
def get_slots(
    expert_id: str,
    event_id: str,
    start: datetime = Query(...),
    end: datetime = Query(...),
    guest_email: str | None = Query(default=None),
) -> SchedulingSlotsResponse:
    service = SchedulingService()
    event = service.get_event(event_id)
    available = service.list_available_slots(
        expert_id=expert_id,
        event_id=event_id,
        range_start=start,
        range_end=end,
        guest_email=guest_email,
    )
    duration = timedelta(minutes=event.duration_minutes)
    return SchedulingSlotsResponse(
        expert_id=expert_id,
        event_id=event_id,
        degraded=available.degraded,
        items=[SchedulingSlot(starts_at=slot, ends_at=slot + duration) for slot in available.slots],
    )


@router.post(
    "/reservations",
    response_model=SlotReservationResponse,
    status_code=status.HTTP_201_CREATED,
)
def reserve_slot(payload: SlotReservationRequest) -> SlotReservationResponse:
    service = SchedulingService()
    reservation = service.reserve_slot(
        event_id=payload.event_id,
        start_time=payload.start_time,
        guest=GuestIdentity(email=payload.guest.email, name=payload.guest.name),
        payment_reference=payload.payment_reference,
    )
    return SlotReservationResponse(
        id=reservation.id,
        event_id=reservation.event_id,
        expert_id=reservation.expert_id,
        guest_email=reservation.guest_email,
        start_time=reservation.start_time,
        end_time=reservation.end_time,
        expires_at=reservation.expires_at,
    )


@router.post("/reservations/cleanup", response_model=ReservationCleanupResponse)
def cleanup_expired_reservations() -> ReservationCleanupResponse:
    service = SchedulingService()
    result = service.cleanup_expired_reservations()
    return ReservationCleanupResponse(deleted_count=result.deleted_count)


@router.post("/bookings", response_model=BookingResponse)
def book_slot(payload: BookingRequest) -> BookingResponse:
    service = SchedulingService()
    confirmation = service.book_slot(
        event_id=payload.event_id,
        start_time=payload.start_time,
        guest=GuestIdentity(email=payload.guest.email, name=payload.guest.name),
        payment_reference=payload.payment_reference,
        payment_status=payload.payment_status,
        guest_timezone=payload.timezone,
        guest_notes=payload.guest_notes,
    )
    return BookingResponse(
        created=confirmation.created,
        meeting=_map_meeting(confirmation.meeting),
    )


def _map_meeting(meeting: Meeting) -> MeetingResponse:
    return MeetingResponse(
        id=meeting.id,
        event_id=meeting.event_id,
        expert_id=meeting.expert_id,
        guest_email=meeting.guest_email,
        guest_name=meeting.guest_name,
        start_time=meeting.start_time,
        end_time=meeting.end_time,
        timezone=meeting.timezone,
        payment_reference=meeting.payment_reference,
        payment_status=meeting.payment_status,
        created_at=meeting.created_at,
    )
