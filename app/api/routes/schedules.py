from fastapi import APIRouter, Response, status

from app.schemas.scheduling import (
    AvailabilityWindowPayload,
    BlockedDateResponse,
    BlockedDatesCreateRequest,
    BlockedDatesResponse,
    EventResponse,
    EventUpsertRequest,
    ScheduleResponse,
    ScheduleUpsertRequest,
)
from app.services.scheduling_models import BlockedDate, Event, Schedule
from app.services.scheduling_service import SchedulingService

router = APIRouter(prefix="/scheduling", tags=["schedules"])


@router.put("/experts/{expert_id}/schedule", response_model=ScheduleResponse)
def upsert_schedule(expert_id: str, payload: ScheduleUpsertRequest) -> ScheduleResponse:
    service = SchedulingService()
    schedule = service.save_schedule(
        expert_id=expert_id,
        timezone=payload.timezone,
        availabilities={
            day: [(window.start, window.end) for window in windows]
            for day, windows in payload.availabilities.items()
        },
        before_event_buffer=payload.before_event_buffer,
        after_event_buffer=payload.after_event_buffer,
        minimum_notice=payload.minimum_notice,
        time_slot_interval=payload.time_slot_interval,
        booking_window_days=payload.booking_window_days,
    )
    return _map_schedule(schedule)


@router.get("/experts/{expert_id}/schedule", response_model=ScheduleResponse)
def get_schedule(expert_id: str) -> ScheduleResponse:
    service = SchedulingService()
    return _map_schedule(service.get_schedule(expert_id))


@router.get("/experts/{expert_id}/blocked-dates", response_model=BlockedDatesResponse)
def list_blocked_dates(expert_id: str) -> BlockedDatesResponse:
    service = SchedulingService()
    return BlockedDatesResponse(
        items=[_map_blocked_date(blocked) for blocked in service.list_blocked_dates(expert_id)],
    )


@router.post(
    "/experts/{expert_id}/blocked-dates",
    response_model=BlockedDatesResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_blocked_dates(expert_id: str, payload: BlockedDatesCreateRequest) -> BlockedDatesResponse:
    service = SchedulingService()
    created = service.add_blocked_dates(
        expert_id=expert_id,
        entries=[(entry.date, entry.reason, entry.timezone) for entry in payload.dates],
    )
    return BlockedDatesResponse(items=[_map_blocked_date(blocked) for blocked in created])


@router.delete(
    "/experts/{expert_id}/blocked-dates/{blocked_date_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def remove_blocked_date(expert_id: str, blocked_date_id: str) -> Response:
    service = SchedulingService()
    service.remove_blocked_date(expert_id=expert_id, blocked_date_id=blocked_date_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/events/{event_id}", response_model=EventResponse)
def upsert_event(event_id: str, payload: EventUpsertRequest) -> EventResponse:
    service = SchedulingService()
    event = service.save_event(
        event_id=event_id,
        expert_id=payload.expert_id,
        slug=payload.slug,
        duration_minutes=payload.duration_minutes,
        is_active=payload.is_active,
        name=payload.name,
    )
    return _map_event(event)


@router.get("/events/{event_id}", response_model=EventResponse)
def get_event(event_id: str) -> EventResponse:
    service = SchedulingService()
    return _map_event(service.get_event(event_id))


def _map_schedule(schedule: Schedule) -> ScheduleResponse:
    return ScheduleResponse(
        expert_id=schedule.expert_id,
        timezone=schedule.timezone,
        availabilities={
            day: [AvailabilityWindowPayload(start=window.start, end=window.end) for window in windows]
            for day, windows in schedule.availabilities.items()
        },
        before_event_buffer=schedule.before_event_buffer,
        after_event_buffer=schedule.after_event_buffer,
        minimum_notice=schedule.minimum_notice,
        time_slot_interval=schedule.time_slot_interval,
        booking_window_days=schedule.booking_window_days,
    )


def _map_blocked_date(blocked: BlockedDate) -> BlockedDateResponse:
    return BlockedDateResponse(
        id=blocked.id,
        expert_id=blocked.expert_id,
        date=blocked.date,
        timezone=blocked.timezone,
        reason=blocked.reason,
    )


def _map_event(event: Event) -> EventResponse:
    return EventResponse(
        id=event.id,
        expert_id=event.expert_id,
        slug=event.slug,
        duration_minutes=event.duration_minutes,
        is_active=event.is_active,
        name=event.name,
    )
