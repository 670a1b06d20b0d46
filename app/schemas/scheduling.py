import datetime as dt

from pydantic import AwareDatetime, BaseModel, Field


class AvailabilityWindowPayload(BaseModel):
    start: str
    end: str


class ScheduleUpsertRequest(BaseModel):
    timezone: str
    availabilities: dict[str, list[AvailabilityWindowPayload]] = Field(default_factory=dict)
    before_event_buffer: int = 0
    after_event_buffer: int = 0
    minimum_notice: int = 0
    time_slot_interval: int = 15
    booking_window_days: int = 60


class ScheduleResponse(ScheduleUpsertRequest):
    expert_id: str


class BlockedDateInput(BaseModel):
    date: dt.date
    reason: str | None = None
    timezone: str | None = None


class BlockedDatesCreateRequest(BaseModel):
    dates: list[BlockedDateInput] = Field(min_length=1)


class BlockedDateResponse(BaseModel):
    id: str
    expert_id: str
    date: dt.date
    timezone: str
    reason: str | None = None


class BlockedDatesResponse(BaseModel):
    items: list[BlockedDateResponse] = Field(default_factory=list)


class EventUpsertRequest(BaseModel):
    expert_id: str
    slug: str
    duration_minutes: int
    is_active: bool = True
    name: str = ""


class EventResponse(EventUpsertRequest):
    id: str


class SchedulingSlot(BaseModel):
    starts_at: dt.datetime
    ends_at: dt.datetime


class SchedulingSlotsResponse(BaseModel):
    expert_id: str
    event_id: str
    degraded: bool = False
    items: list[SchedulingSlot] = Field(default_factory=list)


class GuestPayload(BaseModel):
    email: str
    name: str = ""


class SlotReservationRequest(BaseModel):
    event_id: str
    start_time: AwareDatetime
    guest: GuestPayload
    payment_reference: str | None = None


class SlotReservationResponse(BaseModel):
    id: str
    event_id: str
    expert_id: str
    guest_email: str
    start_time: dt.datetime
    end_time: dt.datetime
    expires_at: dt.datetime


class BookingRequest(BaseModel):
    event_id: str
    start_time: AwareDatetime
    guest: GuestPayload
    timezone: str = "UTC"
    payment_reference: str | None = None
    payment_status: str | None = None
    guest_notes: str | None = None


class MeetingResponse(BaseModel):
    id: str
    event_id: str
    expert_id: str
    guest_email: str
    guest_name: str
    start_time: dt.datetime
    end_time: dt.datetime
    timezone: str
    payment_reference: str | None = None
    payment_status: str | None = None
    created_at: dt.datetime


class BookingResponse(BaseModel):
    created: bool
    meeting: MeetingResponse


class ReservationCleanupResponse(BaseModel):
    deleted_count: int
