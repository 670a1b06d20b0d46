from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from datetime import datetime

from app.services.scheduling_models import BusyInterval


class CalendarUnavailableError(Exception):
    pass


class CalendarAvailabilityProvider(ABC):
    @abstractmethod
    def get_busy_intervals(
        self,
        expert_id: str,
        range_start: datetime,
        range_end: datetime,
    ) -> list[BusyInterval]:
        raise NotImplementedError


class StaticCalendarAvailabilityProvider(CalendarAvailabilityProvider):
    """Serves busy intervals from memory; used when no calendar is connected."""

    def __init__(self, busy_by_expert: Mapping[str, Sequence[BusyInterval]] | None = None) -> None:
        self._busy_by_expert: dict[str, list[BusyInterval]] = {
            expert_id: list(intervals)
            for expert_id, intervals in (busy_by_expert or {}).items()
        }

    def add_busy_interval(self, expert_id: str, interval: BusyInterval) -> None:
        self._busy_by_expert.setdefault(expert_id, []).append(interval)

    def get_busy_intervals(
        self,
        expert_id: str,
        range_start: datetime,
        range_end: datetime,
    ) -> list[BusyInterval]:
        return [
            interval
            for interval in self._busy_by_expert.get(expert_id, [])
            if interval.overlaps(range_start, range_end)
        ]
