from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta

from app.services.scheduling_models import Schedule
from app.services.timezone_utils import ensure_utc, local_minutes_to_utc, utc_to_local_date


class CandidateSlots:
    """Candidate start instants for one event duration over a bounded range.

    Iterating walks the expert's weekly windows day by day in the schedule
    timezone. Nothing is computed until iteration, and every iteration starts
    from the beginning, so the same object can be consumed more than once.
    """

    def __init__(
        self,
        *,
        schedule: Schedule,
        duration_minutes: int,
        range_start: datetime,
        range_end: datetime,
        now: datetime,
    ) -> None:
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive.")
        self.schedule = schedule
        self.duration = timedelta(minutes=duration_minutes)
        self.range_start = ensure_utc(range_start)
        horizon = ensure_utc(now) + timedelta(days=schedule.booking_window_days)
        self.range_end = min(ensure_utc(range_end), horizon)

    def __iter__(self) -> Iterator[datetime]:
        if self.range_end <= self.range_start:
            return
        timezone_name = self.schedule.timezone
        step = timedelta(minutes=self.schedule.time_slot_interval)
        last_emitted: datetime | None = None

        local_day = utc_to_local_date(self.range_start, timezone_name)
        last_local_day = utc_to_local_date(self.range_end, timezone_name)
        while local_day <= last_local_day:
            day_candidates: list[datetime] = []
            for window in self.schedule.windows_for(local_day):
                window_start = local_minutes_to_utc(local_day, window.start_minutes, timezone_name)
                window_end = local_minutes_to_utc(local_day, window.end_minutes, timezone_name)
                candidate = window_start
                while candidate + self.duration <= window_end:
                    if self.range_start <= candidate < self.range_end:
                        day_candidates.append(candidate)
                    candidate += step

            for candidate in sorted(day_candidates):
                if last_emitted is not None and candidate <= last_emitted:
                    continue
                last_emitted = candidate
                yield candidate
            local_day += timedelta(days=1)


def generate_candidate_slots(
    schedule: Schedule,
    duration_minutes: int,
    range_start: datetime,
    range_end: datetime,
    now: datetime,
) -> CandidateSlots:
    return CandidateSlots(
        schedule=schedule,
        duration_minutes=duration_minutes,
        range_start=range_start,
        range_end=range_end,
        now=now,
    )
