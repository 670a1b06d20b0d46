from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache
from threading import Lock

from app.core.config import Settings
from app.services.scheduling_models import Meeting, normalize_email


class MeetingConflictError(Exception):
    """Raised by ``insert`` when the storage uniqueness guard rejects a meeting."""


class MeetingStore(ABC):
    @abstractmethod
    def find_by_idempotency_key(
        self,
        *,
        payment_reference: str | None,
        event_id: str,
        start_time: datetime,
        guest_email: str,
    ) -> Meeting | None:
        raise NotImplementedError

    @abstractmethod
    def find_conflicting(
        self,
        *,
        event_id: str,
        start_time: datetime,
        exclude_guest_email: str,
    ) -> Meeting | None:
        raise NotImplementedError

    @abstractmethod
    def insert(self, meeting: Meeting) -> Meeting:
        raise NotImplementedError

    @abstractmethod
    def list_for_expert(
        self,
        *,
        expert_id: str,
        range_start: datetime,
        range_end: datetime,
    ) -> list[Meeting]:
        raise NotImplementedError


class InMemoryMeetingStore(MeetingStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._meetings: list[Meeting] = []

    def find_by_idempotency_key(
        self,
        *,
        payment_reference: str | None,
        event_id: str,
        start_time: datetime,
        guest_email: str,
    ) -> Meeting | None:
        with self._lock:
            return self._find_by_idempotency_key_locked(
                payment_reference=payment_reference,
                event_id=event_id,
                start_time=start_time,
                guest_email=normalize_email(guest_email),
            )

    def find_conflicting(
        self,
        *,
        event_id: str,
        start_time: datetime,
        exclude_guest_email: str,
    ) -> Meeting | None:
        normalized_email = normalize_email(exclude_guest_email)
        with self._lock:
            for meeting in self._meetings:
                if (
                    meeting.event_id == event_id
                    and meeting.start_time == start_time
                    and meeting.guest_email != normalized_email
                ):
                    return meeting
        return None

    def insert(self, meeting: Meeting) -> Meeting:
        with self._lock:
            for existing in self._meetings:
                if existing.event_id == meeting.event_id and existing.start_time == meeting.start_time:
                    raise MeetingConflictError("duplicate_event_start_time")
                if meeting.payment_reference and existing.payment_reference == meeting.payment_reference:
                    raise MeetingConflictError("duplicate_payment_reference")
            self._meetings.append(meeting)
        return meeting

    def list_for_expert(
        self,
        *,
        expert_id: str,
        range_start: datetime,
        range_end: datetime,
    ) -> list[Meeting]:
        with self._lock:
            matches = [
                meeting
                for meeting in self._meetings
                if meeting.expert_id == expert_id
                and meeting.start_time < range_end
                and meeting.end_time > range_start
            ]
        return sorted(matches, key=lambda meeting: meeting.start_time)

    def _find_by_idempotency_key_locked(
        self,
        *,
        payment_reference: str | None,
        event_id: str,
        start_time: datetime,
        guest_email: str,
    ) -> Meeting | None:
        if payment_reference:
            for meeting in self._meetings:
                if meeting.payment_reference == payment_reference:
                    return meeting
        for meeting in self._meetings:
            if (
                meeting.event_id == event_id
                and meeting.start_time == start_time
                and meeting.guest_email == guest_email
            ):
                return meeting
        return None


class MongoMeetingStore(MeetingStore):
    def __init__(
        self,
        *,
        uri: str,
        db_name: str,
        collection_name: str,
        connect_timeout_ms: int = 2000,
    ) -> None:
        from pymongo import MongoClient

        self._client = MongoClient(
            uri,
            serverSelectionTimeoutMS=connect_timeout_ms,
            connectTimeoutMS=connect_timeout_ms,
            tz_aware=True,
        )
        self._collection = self._client[db_name][collection_name]
        self._collection.create_index("meeting_id", unique=True)
        self._collection.create_index([("event_id", 1), ("start_time", 1)], unique=True)
        self._collection.create_index(
            [("payment_reference", 1)],
            unique=True,
            partialFilterExpression={"payment_reference": {"$type": "string"}},
        )
        self._collection.create_index([("expert_id", 1), ("start_time", 1)])

    def find_by_idempotency_key(
        self,
        *,
        payment_reference: str | None,
        event_id: str,
        start_time: datetime,
        guest_email: str,
    ) -> Meeting | None:
        if payment_reference:
            record = self._collection.find_one({"payment_reference": payment_reference})
            if record:
                return Meeting.from_record(record)
        record = self._collection.find_one(
            {
                "event_id": event_id,
                "start_time": start_time,
                "guest_email": normalize_email(guest_email),
            },
        )
        if not record:
            return None
        return Meeting.from_record(record)

    def find_conflicting(
        self,
        *,
        event_id: str,
        start_time: datetime,
        exclude_guest_email: str,
    ) -> Meeting | None:
        record = self._collection.find_one(
            {
                "event_id": event_id,
                "start_time": start_time,
                "guest_email": {"$ne": normalize_email(exclude_guest_email)},
            },
        )
        if not record:
            return None
        return Meeting.from_record(record)

    def insert(self, meeting: Meeting) -> Meeting:
        from pymongo.errors import DuplicateKeyError

        try:
            self._collection.insert_one(meeting.to_record())
        except DuplicateKeyError as exc:
            raise MeetingConflictError(str(exc)) from exc
        return meeting

    def list_for_expert(
        self,
        *,
        expert_id: str,
        range_start: datetime,
        range_end: datetime,
    ) -> list[Meeting]:
        cursor = self._collection.find(
            {
                "expert_id": expert_id,
                "start_time": {"$lt": range_end},
                "end_time": {"$gt": range_start},
            },
        ).sort("start_time", 1)
        return [Meeting.from_record(record) for record in cursor]


def create_meeting_store(settings: Settings) -> MeetingStore:
    return _create_meeting_store_cached(
        scheduling_store=settings.scheduling_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_meetings_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_meeting_store_cached(
    *,
    scheduling_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> MeetingStore:
    if scheduling_store == "mongodb":
        return MongoMeetingStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryMeetingStore()


def clear_meeting_store_cache() -> None:
    _create_meeting_store_cached.cache_clear()
