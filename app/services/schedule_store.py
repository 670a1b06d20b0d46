from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from datetime import UTC, datetime
from functools import lru_cache
from threading import Lock
from typing import Any

from app.core.config import Settings
from app.services.scheduling_models import BlockedDate, Event, Schedule


class ScheduleStore(ABC):
    @abstractmethod
    def get_schedule(self, expert_id: str) -> Schedule | None:
        raise NotImplementedError

    @abstractmethod
    def save_schedule(self, schedule: Schedule) -> Schedule:
        raise NotImplementedError

    @abstractmethod
    def get_blocked_dates(self, expert_id: str) -> list[BlockedDate]:
        raise NotImplementedError

    @abstractmethod
    def add_blocked_dates(self, entries: Sequence[BlockedDate]) -> list[BlockedDate]:
        raise NotImplementedError

    @abstractmethod
    def remove_blocked_date(self, *, expert_id: str, blocked_date_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def get_event(self, event_id: str) -> Event | None:
        raise NotImplementedError

    @abstractmethod
    def save_event(self, event: Event) -> Event:
        raise NotImplementedError


class InMemoryScheduleStore(ScheduleStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._next_blocked_date_id = 1
        self._schedules_by_expert: dict[str, dict[str, Any]] = {}
        self._blocked_dates_by_id: dict[str, dict[str, Any]] = {}
        self._events_by_id: dict[str, dict[str, Any]] = {}

    def get_schedule(self, expert_id: str) -> Schedule | None:
        record = self._schedules_by_expert.get(expert_id)
        if not record:
            return None
        return Schedule.from_record(record)

    def save_schedule(self, schedule: Schedule) -> Schedule:
        self._schedules_by_expert[schedule.expert_id] = schedule.to_record()
        return schedule

    def get_blocked_dates(self, expert_id: str) -> list[BlockedDate]:
        records = [
            record
            for record in self._blocked_dates_by_id.values()
            if record.get("expert_id") == expert_id
        ]
        records.sort(key=lambda record: (record["date"], record["_id"]))
        return [BlockedDate.from_record(record) for record in records]

    def add_blocked_dates(self, entries: Sequence[BlockedDate]) -> list[BlockedDate]:
        created: list[BlockedDate] = []
        with self._lock:
            for entry in entries:
                blocked_date_id = str(self._next_blocked_date_id)
                self._next_blocked_date_id += 1
                record = entry.to_record()
                record["_id"] = blocked_date_id
                record["created_at"] = datetime.now(UTC)
                self._blocked_dates_by_id[blocked_date_id] = record
                created.append(BlockedDate.from_record(record))
        return created

    def remove_blocked_date(self, *, expert_id: str, blocked_date_id: str) -> bool:
        with self._lock:
            record = self._blocked_dates_by_id.get(blocked_date_id)
            if not record or record.get("expert_id") != expert_id:
                return False
            del self._blocked_dates_by_id[blocked_date_id]
            return True

    def get_event(self, event_id: str) -> Event | None:
        record = self._events_by_id.get(event_id)
        if not record:
            return None
        return Event.from_record(record)

    def save_event(self, event: Event) -> Event:
        self._events_by_id[event.id] = event.to_record()
        return event


class MongoScheduleStore(ScheduleStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        schedules_collection_name: str,
        blocked_dates_collection_name: str,
        events_collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
        )
        database = self._client[db_name]
        self._schedules = database[schedules_collection_name]
        self._blocked_dates = database[blocked_dates_collection_name]
        self._events = database[events_collection_name]

        self._schedules.create_index("expert_id", unique=True)
        self._blocked_dates.create_index([("expert_id", 1), ("date", 1)])
        self._events.create_index("event_id", unique=True)
        self._events.create_index([("expert_id", 1), ("slug", 1)])

    def get_schedule(self, expert_id: str) -> Schedule | None:
        record = self._schedules.find_one({"expert_id": expert_id})
        if not record:
            return None
        return Schedule.from_record(record)

    def save_schedule(self, schedule: Schedule) -> Schedule:
        payload = schedule.to_record()
        payload["updated_at"] = datetime.now(UTC)
        self._schedules.update_one(
            {"expert_id": schedule.expert_id},
            {"$set": payload, "$setOnInsert": {"created_at": datetime.now(UTC)}},
            upsert=True,
        )
        return schedule

    def get_blocked_dates(self, expert_id: str) -> list[BlockedDate]:
        cursor = self._blocked_dates.find({"expert_id": expert_id}).sort("date", 1)
        return [BlockedDate.from_record(record) for record in cursor]

    def add_blocked_dates(self, entries: Sequence[BlockedDate]) -> list[BlockedDate]:
        payload: list[dict[str, Any]] = []
        for entry in entries:
            record = entry.to_record()
            record["created_at"] = datetime.now(UTC)
            payload.append(record)
        if not payload:
            return []
        insert_result = self._blocked_dates.insert_many(payload)
        created: list[BlockedDate] = []
        for record, inserted_id in zip(payload, insert_result.inserted_ids):
            record["_id"] = str(inserted_id)
            created.append(BlockedDate.from_record(record))
        return created

    def remove_blocked_date(self, *, expert_id: str, blocked_date_id: str) -> bool:
        object_id = _to_object_id(blocked_date_id)
        if object_id is None:
            return False
        result = self._blocked_dates.delete_one({"_id": object_id, "expert_id": expert_id})
        return result.deleted_count > 0

    def get_event(self, event_id: str) -> Event | None:
        record = self._events.find_one({"event_id": event_id})
        if not record:
            return None
        return Event.from_record(record)

    def save_event(self, event: Event) -> Event:
        payload = event.to_record()
        payload["updated_at"] = datetime.now(UTC)
        self._events.update_one({"event_id": event.id}, {"$set": payload}, upsert=True)
        return event


def _to_object_id(record_id: str) -> Any | None:
    from bson import ObjectId
    from bson.errors import InvalidId

    try:
        return ObjectId(record_id)
    except InvalidId:
        return None


def create_schedule_store(settings: Settings) -> ScheduleStore:
    return _create_schedule_store_cached(
        scheduling_store=settings.scheduling_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_schedules_collection=settings.mongodb_schedules_collection,
        mongodb_blocked_dates_collection=settings.mongodb_blocked_dates_collection,
        mongodb_events_collection=settings.mongodb_events_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_schedule_store_cached(
    *,
    scheduling_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_schedules_collection: str,
    mongodb_blocked_dates_collection: str,
    mongodb_events_collection: str,
    mongodb_connect_timeout_ms: int,
) -> ScheduleStore:
    if scheduling_store == "mongodb":
        return MongoScheduleStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            schedules_collection_name=mongodb_schedules_collection,
            blocked_dates_collection_name=mongodb_blocked_dates_collection,
            events_collection_name=mongodb_events_collection,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryScheduleStore()


def clear_schedule_store_cache() -> None:
    _create_schedule_store_cached.cache_clear()
