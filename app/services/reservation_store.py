from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from threading import Lock
from uuid import uuid4

from app.core.config import Settings
from app.services.scheduling_models import SlotReservation, normalize_email


@dataclass
class ReservationResult:
    reserved: bool
    reservation: SlotReservation

    @property
    def held_by_other(self) -> bool:
        return not self.reserved


class ReservationStore(ABC):
    @abstractmethod
    def try_reserve(
        self,
        *,
        event_id: str,
        expert_id: str,
        start_time: datetime,
        end_time: datetime,
        guest_email: str,
        ttl: timedelta,
        now: datetime,
        payment_reference: str | None = None,
    ) -> ReservationResult:
        raise NotImplementedError

    @abstractmethod
    def find_live(self, *, event_id: str, start_time: datetime, now: datetime) -> SlotReservation | None:
        raise NotImplementedError

    @abstractmethod
    def list_live_for_expert(self, *, expert_id: str, now: datetime) -> list[SlotReservation]:
        raise NotImplementedError

    @abstractmethod
    def release(self, *, event_id: str, start_time: datetime, guest_email: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def delete_expired(self, now: datetime) -> list[SlotReservation]:
        raise NotImplementedError


class InMemoryReservationStore(ReservationStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._reservations_by_key: dict[tuple[str, datetime], SlotReservation] = {}

    def try_reserve(
        self,
        *,
        event_id: str,
        expert_id: str,
        start_time: datetime,
        end_time: datetime,
        guest_email: str,
        ttl: timedelta,
        now: datetime,
        payment_reference: str | None = None,
    ) -> ReservationResult:
        normalized_email = normalize_email(guest_email)
        key = (event_id, start_time)
        with self._lock:
            existing = self._reservations_by_key.get(key)
            if existing and existing.is_live(now) and existing.guest_email != normalized_email:
                return ReservationResult(reserved=False, reservation=existing)

            if existing and existing.guest_email == normalized_email:
                existing.expires_at = now + ttl
                existing.end_time = end_time
                if payment_reference:
                    existing.payment_reference = payment_reference
                return ReservationResult(reserved=True, reservation=existing)

            reservation = SlotReservation(
                id=uuid4().hex,
                event_id=event_id,
                expert_id=expert_id,
                guest_email=normalized_email,
                start_time=start_time,
                end_time=end_time,
                expires_at=now + ttl,
                payment_reference=payment_reference,
                created_at=now,
            )
            self._reservations_by_key[key] = reservation
            return ReservationResult(reserved=True, reservation=reservation)

    def find_live(self, *, event_id: str, start_time: datetime, now: datetime) -> SlotReservation | None:
        reservation = self._reservations_by_key.get((event_id, start_time))
        if reservation and reservation.is_live(now):
            return reservation
        return None

    def list_live_for_expert(self, *, expert_id: str, now: datetime) -> list[SlotReservation]:
        with self._lock:
            live = [
                reservation
                for reservation in self._reservations_by_key.values()
                if reservation.expert_id == expert_id and reservation.is_live(now)
            ]
        return sorted(live, key=lambda reservation: reservation.start_time)

    def release(self, *, event_id: str, start_time: datetime, guest_email: str) -> bool:
        key = (event_id, start_time)
        with self._lock:
            existing = self._reservations_by_key.get(key)
            if not existing or existing.guest_email != normalize_email(guest_email):
                return False
            del self._reservations_by_key[key]
            return True

    def delete_expired(self, now: datetime) -> list[SlotReservation]:
        with self._lock:
            expired_keys = [
                key
                for key, reservation in self._reservations_by_key.items()
                if not reservation.is_live(now)
            ]
            return [self._reservations_by_key.pop(key) for key in expired_keys]


class MongoReservationStore(ReservationStore):
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
        self._collection.create_index([("event_id", 1), ("start_time", 1)], unique=True)
        self._collection.create_index([("expert_id", 1), ("expires_at", 1)])
        self._collection.create_index("expires_at")

    def try_reserve(
        self,
        *,
        event_id: str,
        expert_id: str,
        start_time: datetime,
        end_time: datetime,
        guest_email: str,
        ttl: timedelta,
        now: datetime,
        payment_reference: str | None = None,
    ) -> ReservationResult:
        from pymongo import ReturnDocument
        from pymongo.errors import DuplicateKeyError

        normalized_email = normalize_email(guest_email)
        refresh: dict[str, object] = {"expires_at": now + ttl, "end_time": end_time}
        if payment_reference:
            refresh["payment_reference"] = payment_reference
        refreshed = self._collection.find_one_and_update(
            {"event_id": event_id, "start_time": start_time, "guest_email": normalized_email},
            {"$set": refresh},
            return_document=ReturnDocument.AFTER,
        )
        if refreshed:
            return ReservationResult(reserved=True, reservation=SlotReservation.from_record(refreshed))

        # Take the key only when it is free or its hold has lapsed; a live hold
        # by another guest makes the upsert collide with the unique index.
        reservation = SlotReservation(
            id=uuid4().hex,
            event_id=event_id,
            expert_id=expert_id,
            guest_email=normalized_email,
            start_time=start_time,
            end_time=end_time,
            expires_at=now + ttl,
            payment_reference=payment_reference,
            created_at=now,
        )
        try:
            created = self._collection.find_one_and_update(
                {"event_id": event_id, "start_time": start_time, "expires_at": {"$lte": now}},
                {"$set": reservation.to_record()},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            existing = self._collection.find_one({"event_id": event_id, "start_time": start_time})
            if not existing:
                raise
            return ReservationResult(reserved=False, reservation=SlotReservation.from_record(existing))
        return ReservationResult(reserved=True, reservation=SlotReservation.from_record(created))

    def find_live(self, *, event_id: str, start_time: datetime, now: datetime) -> SlotReservation | None:
        record = self._collection.find_one(
            {"event_id": event_id, "start_time": start_time, "expires_at": {"$gt": now}},
        )
        if not record:
            return None
        return SlotReservation.from_record(record)

    def list_live_for_expert(self, *, expert_id: str, now: datetime) -> list[SlotReservation]:
        cursor = self._collection.find(
            {"expert_id": expert_id, "expires_at": {"$gt": now}},
        ).sort("start_time", 1)
        return [SlotReservation.from_record(record) for record in cursor]

    def release(self, *, event_id: str, start_time: datetime, guest_email: str) -> bool:
        result = self._collection.delete_one(
            {
                "event_id": event_id,
                "start_time": start_time,
                "guest_email": normalize_email(guest_email),
            },
        )
        return result.deleted_count > 0

    def delete_expired(self, now: datetime) -> list[SlotReservation]:
        expired_records = list(self._collection.find({"expires_at": {"$lte": now}}))
        if not expired_records:
            return []
        self._collection.delete_many(
            {
                "_id": {"$in": [record["_id"] for record in expired_records]},
                "expires_at": {"$lte": now},
            },
        )
        return [SlotReservation.from_record(record) for record in expired_records]


def create_reservation_store(settings: Settings) -> ReservationStore:
    return _create_reservation_store_cached(
        scheduling_store=settings.scheduling_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_slot_reservations_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )


@lru_cache
def _create_reservation_store_cached(
    *,
    scheduling_store: str,
    mongodb_uri: str,
    mongodb_db_name: str,
    mongodb_collection_name: str,
    mongodb_connect_timeout_ms: int,
) -> ReservationStore:
    if scheduling_store == "mongodb":
        return MongoReservationStore(
            uri=mongodb_uri,
            db_name=mongodb_db_name,
            collection_name=mongodb_collection_name,
            connect_timeout_ms=mongodb_connect_timeout_ms,
        )

    return InMemoryReservationStore()


def clear_reservation_store_cache() -> None:
    _create_reservation_store_cached.cache_clear()
