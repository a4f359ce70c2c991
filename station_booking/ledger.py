from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Any, ContextManager, Iterator, Protocol

from .booking import Interval
from .errors import TransactionAborted

STATUS_PENDING = "pending"
STATUS_CONFIRMED = "confirmed"
STATUS_CANCELLED = "cancelled"
STATUS_COMPLETED = "completed"
ACTIVE_STATUSES = frozenset({STATUS_PENDING, STATUS_CONFIRMED})
ALL_STATUSES = frozenset({STATUS_PENDING, STATUS_CONFIRMED, STATUS_CANCELLED, STATUS_COMPLETED})

PAYMENT_UNPAID = "unpaid"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"

DEFAULT_LOCK_TIMEOUT_SECONDS = 5.0


@dataclass(frozen=True)
class PartitionKey:
    """The key space one transaction serializes: every unit of one resource type on one day."""

    cafe_id: str
    resource_type: str
    subtype: str | None
    date: date

    def slug(self) -> str:
        subtype = self.subtype or "_"
        return f"{self.cafe_id}/{self.resource_type}-{subtype}/{self.date.isoformat()}"


@dataclass(frozen=True)
class ReservationRecord:
    reservation_id: str
    cafe_id: str
    resource_type: str
    subtype: str | None
    unit_number: int
    date: date
    start_time: str
    end_time: str
    start_minute: int
    end_minute: int
    duration_hours: float
    hourly_rate: float
    amount: float
    owner_ref: str
    created_at: datetime
    updated_at: datetime
    status: str = STATUS_PENDING
    payment_status: str = PAYMENT_UNPAID
    payment_ref: str | None = None
    group_id: str | None = None
    group_index: int = 1
    group_size: int = 1
    refund_status: str | None = None
    refund_amount: float | None = None
    notes: str | None = None

    def __post_init__(self) -> None:
        if self.unit_number < 1:
            raise ValueError(f"unit_number must be at least 1, got {self.unit_number}")
        if self.start_minute >= self.end_minute:
            raise ValueError(f"start_minute {self.start_minute} must be before end_minute {self.end_minute}")

    @property
    def partition(self) -> PartitionKey:
        return PartitionKey(self.cafe_id, self.resource_type, self.subtype, self.date)

    @property
    def holds_slot(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def interval(self) -> Interval:
        return Interval(self.start_minute, self.end_minute)

    @property
    def starts_at(self) -> datetime:
        return datetime.combine(self.date, datetime.min.time()) + timedelta(minutes=self.start_minute)

    @property
    def ends_at(self) -> datetime:
        return datetime.combine(self.date, datetime.min.time()) + timedelta(minutes=self.end_minute)

    def transition(self, now: datetime, **changes: Any) -> "ReservationRecord":
        return replace(self, updated_at=now, **changes)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "reservation_id": self.reservation_id,
            "cafe_id": self.cafe_id,
            "resource_type": self.resource_type,
            "subtype": self.subtype,
            "unit_number": self.unit_number,
            "date": self.date.isoformat(),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "start_minute": self.start_minute,
            "end_minute": self.end_minute,
            "duration_hours": self.duration_hours,
            "hourly_rate": self.hourly_rate,
            "amount": self.amount,
            "owner_ref": self.owner_ref,
            "status": self.status,
            "payment_status": self.payment_status,
            "group_id": self.group_id,
            "group_index": self.group_index,
            "group_size": self.group_size,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "updated_at": self.updated_at.isoformat(timespec="seconds"),
        }
        for key in ("payment_ref", "refund_status", "refund_amount", "notes"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationRecord":
        refund_amount = data.get("refund_amount")
        return ReservationRecord(
            reservation_id=str(data["reservation_id"]),
            cafe_id=str(data["cafe_id"]),
            resource_type=str(data["resource_type"]),
            subtype=(str(data["subtype"]) if data.get("subtype") is not None else None),
            unit_number=int(data["unit_number"]),
            date=date.fromisoformat(str(data["date"])),
            start_time=str(data["start_time"]),
            end_time=str(data["end_time"]),
            start_minute=int(data["start_minute"]),
            end_minute=int(data["end_minute"]),
            duration_hours=float(data["duration_hours"]),
            hourly_rate=float(data["hourly_rate"]),
            amount=float(data["amount"]),
            owner_ref=str(data["owner_ref"]),
            created_at=datetime.fromisoformat(str(data["created_at"])),
            updated_at=datetime.fromisoformat(str(data["updated_at"])),
            status=str(data.get("status", STATUS_PENDING)),
            payment_status=str(data.get("payment_status", PAYMENT_UNPAID)),
            payment_ref=(str(data["payment_ref"]) if data.get("payment_ref") is not None else None),
            group_id=(str(data["group_id"]) if data.get("group_id") is not None else None),
            group_index=int(data.get("group_index", 1)),
            group_size=int(data.get("group_size", 1)),
            refund_status=(str(data["refund_status"]) if data.get("refund_status") is not None else None),
            refund_amount=(float(refund_amount) if refund_amount is not None else None),
            notes=(str(data["notes"]) if data.get("notes") is not None else None),
        )


class PartitionTransaction:
    """Snapshot of one partition plus the writes staged against it.

    Nothing staged here is visible to other callers until the owning ledger
    commits, which it does only when the ``with`` block exits cleanly.
    """

    def __init__(self, partition: PartitionKey, rows: list[ReservationRecord]) -> None:
        self.partition = partition
        self._rows = {row.reservation_id: row for row in rows}
        self._staged: dict[str, ReservationRecord] = {}
        self._removed: set[str] = set()

    def reservations(self) -> list[ReservationRecord]:
        merged = dict(self._rows)
        merged.update(self._staged)
        return [row for reservation_id, row in merged.items() if reservation_id not in self._removed]

    def active_reservations(self) -> list[ReservationRecord]:
        return [row for row in self.reservations() if row.holds_slot]

    def get(self, reservation_id: str) -> ReservationRecord | None:
        if reservation_id in self._removed:
            return None
        return self._staged.get(reservation_id) or self._rows.get(reservation_id)

    def stage(self, record: ReservationRecord) -> None:
        if record.partition != self.partition:
            raise ValueError("record does not belong to this transaction's partition")
        self._removed.discard(record.reservation_id)
        self._staged[record.reservation_id] = record

    def remove(self, reservation_id: str) -> None:
        """Drop a row that never became a real booking, e.g. one whose charge could not be registered."""
        self._staged.pop(reservation_id, None)
        if reservation_id in self._rows:
            self._removed.add(reservation_id)

    @property
    def staged(self) -> list[ReservationRecord]:
        return list(self._staged.values())

    @property
    def removed(self) -> list[str]:
        return sorted(self._removed)

    @property
    def changed(self) -> bool:
        return bool(self._staged or self._removed)


class ReservationLedger(Protocol):
    def transaction(self, partition: PartitionKey) -> ContextManager[PartitionTransaction]: ...

    def find_partition(self, reservation_id: str) -> PartitionKey | None: ...

    def all_reservations(self) -> list[ReservationRecord]: ...


class _PartitionLock:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class InMemoryLedger:
    """Single-process ledger: one lock per partition, unrelated partitions never contend."""

    def __init__(self, lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        self.lock_timeout = lock_timeout
        self._partitions: dict[PartitionKey, list[ReservationRecord]] = {}
        self._locks: dict[PartitionKey, _PartitionLock] = {}
        self._index: dict[str, PartitionKey] = {}
        self._registry_lock = threading.Lock()

    def _checkout_lock(self, partition: PartitionKey) -> _PartitionLock:
        with self._registry_lock:
            entry = self._locks.get(partition)
            if entry is None:
                entry = self._locks[partition] = _PartitionLock()
            entry.users += 1
            return entry

    def _return_lock(self, partition: PartitionKey, entry: _PartitionLock) -> None:
        with self._registry_lock:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[partition]

    @contextmanager
    def transaction(self, partition: PartitionKey) -> Iterator[PartitionTransaction]:
        entry = self._checkout_lock(partition)
        try:
            if not entry.lock.acquire(timeout=self.lock_timeout):
                raise TransactionAborted(
                    f"Timed out waiting for reservations of {partition.slug()}; please retry.",
                    partition=partition.slug(),
                )
            try:
                tx = PartitionTransaction(partition, list(self._partitions.get(partition, [])))
                yield tx
                if tx.changed:
                    self._commit(partition, tx)
            finally:
                entry.lock.release()
        finally:
            self._return_lock(partition, entry)

    def _commit(self, partition: PartitionKey, tx: PartitionTransaction) -> None:
        rows = tx.reservations()
        with self._registry_lock:
            if rows:
                self._partitions[partition] = rows
            else:
                self._partitions.pop(partition, None)
            for row in tx.staged:
                self._index[row.reservation_id] = partition
            for reservation_id in tx.removed:
                self._index.pop(reservation_id, None)

    @property
    def held_partitions(self) -> int:
        with self._registry_lock:
            return len(self._locks)

    def find_partition(self, reservation_id: str) -> PartitionKey | None:
        with self._registry_lock:
            return self._index.get(reservation_id)

    def all_reservations(self) -> list[ReservationRecord]:
        with self._registry_lock:
            return [row for rows in self._partitions.values() for row in rows]
