from __future__ import annotations

from fastapi import status


class SchedulingError(Exception):
    code = "SCHEDULING_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Scheduling request failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(SchedulingError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_message = "The booking request is malformed."


class EventNotFoundOrInactive(SchedulingError):
    code = "EVENT_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Event not found or inactive."


class ScheduleNotFound(SchedulingError):
    code = "SCHEDULE_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "The expert has no availability schedule."


class BlockedDateNotFound(SchedulingError):
    code = "BLOCKED_DATE_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Blocked date not found."


class InvalidTimeSlot(SchedulingError):
    code = "INVALID_TIME_SLOT"
    status_code = status.HTTP_409_CONFLICT
    default_message = "The requested time is not available. Please pick another slot."

    def __init__(self, message: str | None = None, *, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(message)


class SlotTemporarilyReserved(SchedulingError):
    code = "SLOT_TEMPORARILY_RESERVED"
    status_code = status.HTTP_409_CONFLICT
    default_message = (
        "This time slot is temporarily reserved by another user. "
        "Please choose a different time or try again later."
    )


class SlotAlreadyBooked(SchedulingError):
    code = "SLOT_ALREADY_BOOKED"
    status_code = status.HTTP_409_CONFLICT
    default_message = (
        "This time slot has just been booked by another user. Please choose a different time."
    )


class UpstreamUnavailable(SchedulingError):
    code = "UPSTREAM_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "A required upstream service is unavailable. Please retry."
