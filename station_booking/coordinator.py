from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable
from uuid import uuid4

from .availability import find_conflicting_units, free_units
from .catalog import CafeCatalog, CatalogProvider, describe_resource, require_catalog, validate_resource
from .errors import (
    BookingError,
    CapacityExceeded,
    DependencyFailure,
    InvalidRequest,
    InvalidTransition,
    InvalidWindow,
    NotAuthorized,
    ReservationConflict,
    ResourceInactive,
    ResourceNotFound,
)
from .events import (
    PAYMENT_FAILED,
    RESERVATION_CANCELLED,
    RESERVATION_COMMITTED,
    RESERVATION_COMPLETED,
    RESERVATION_CONFIRMED,
    RESERVATION_REJECTED,
    RESERVATION_REQUESTED,
    EventRecorder,
    LoggingEventRecorder,
)
from .ledger import (
    PAYMENT_FAILED as PAYMENT_STATUS_FAILED,
    PAYMENT_PAID,
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
    PartitionKey,
    PartitionTransaction,
    ReservationLedger,
    ReservationRecord,
)
from .operating_hours import NormalizedWindow
from .payments import PaymentCharge, PaymentCollaborator, RefundRequest
from .refund import REFUND_INITIATED, REFUND_NOT_APPLICABLE, REFUND_NOT_ELIGIBLE, RefundPolicy

logger = logging.getLogger(__name__)

MIN_DURATION_MINUTES = 60
MAX_GROUP_SIZE = 20


@dataclass(frozen=True)
class Pricing:
    duration_hours: float
    hourly_rate: float
    estimated_total: float

    def to_dict(self) -> dict[str, float]:
        return {
            "duration_hours": self.duration_hours,
            "hourly_rate": self.hourly_rate,
            "estimated_total": self.estimated_total,
        }


@dataclass(frozen=True)
class AvailabilityCheck:
    unit_number: int
    available: bool
    estimated_cost: float
    duration_hours: float
    hourly_rate: float
    total_units: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_number": self.unit_number,
            "available": self.available,
            "estimated_cost": self.estimated_cost,
            "duration_hours": self.duration_hours,
            "hourly_rate": self.hourly_rate,
            "total_units": self.total_units,
        }


@dataclass(frozen=True)
class AvailableUnits:
    available_units: list[int]
    total_units: int
    pricing: Pricing

    @property
    def first_available(self) -> int | None:
        return self.available_units[0] if self.available_units else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "available_units": list(self.available_units),
            "total_units": self.total_units,
            "available_count": len(self.available_units),
            "first_available": self.first_available,
            "pricing": self.pricing.to_dict(),
        }


@dataclass(frozen=True)
class GroupReservationResult:
    reservations: list[ReservationRecord]
    total_amount: float
    group_id: str | None
    duration_hours: float
    hourly_rate: float

    @property
    def unit_numbers(self) -> list[int]:
        return [row.unit_number for row in self.reservations]

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservations": [row.to_dict() for row in self.reservations],
            "unit_numbers": self.unit_numbers,
            "group_id": self.group_id,
            "billing": {
                "duration_hours": self.duration_hours,
                "hourly_rate": self.hourly_rate,
                "unit_count": len(self.reservations),
                "total_amount": self.total_amount,
            },
        }


@dataclass(frozen=True)
class CancellationResult:
    reservation: ReservationRecord
    refund_amount: float
    refund_status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservation": self.reservation.to_dict(),
            "refund_amount": self.refund_amount,
            "refund_status": self.refund_status,
        }


@dataclass(frozen=True)
class _ResolvedRequest:
    catalog: CafeCatalog
    partition: PartitionKey
    window: NormalizedWindow
    total_units: int
    hourly_rate: float

    @property
    def unit_amount(self) -> float:
        return round(self.window.duration_hours * self.hourly_rate, 2)

    def pricing(self) -> Pricing:
        return Pricing(self.window.duration_hours, self.hourly_rate, self.unit_amount)


class ReservationTransactionCoordinator:
    """Validates, prices and atomically commits reservations against a ledger.

    Availability that decides a write is always recomputed inside
    ``ledger.transaction`` for the request's partition; everything else is
    checked before the transaction opens.
    """

    def __init__(
        self,
        catalog: CatalogProvider,
        ledger: ReservationLedger,
        payment: PaymentCollaborator | None = None,
        events: EventRecorder | None = None,
        clock: Callable[[], datetime] | None = None,
        refund_policy: RefundPolicy | None = None,
    ) -> None:
        self.catalog = catalog
        self.ledger = ledger
        self.payment = payment
        self.events = events or LoggingEventRecorder()
        self.clock: Callable[[], datetime] = clock or datetime.now
        self.refund_policy = refund_policy or RefundPolicy()

    def check_availability(
        self,
        cafe_id: str,
        resource_type: str,
        subtype: str | None,
        unit_number: int,
        day: date | str,
        start: str,
        end: str,
    ) -> AvailabilityCheck:
        resolved = self._resolve(cafe_id, resource_type, subtype, day, start, end)
        if unit_number < 1 or unit_number > resolved.total_units:
            raise CapacityExceeded(
                f"Invalid {describe_resource(resource_type, resolved.partition.subtype)} number. "
                f"Available: 1-{resolved.total_units}",
                total_units=resolved.total_units,
            )

        available = free_units(
            self._snapshot(resolved.partition),
            resolved.total_units,
            resolved.window.start,
            resolved.window.end,
        )
        return AvailabilityCheck(
            unit_number=unit_number,
            available=unit_number in available,
            estimated_cost=resolved.unit_amount,
            duration_hours=resolved.window.duration_hours,
            hourly_rate=resolved.hourly_rate,
            total_units=resolved.total_units,
        )

    def get_available_units(
        self,
        cafe_id: str,
        resource_type: str,
        subtype: str | None,
        day: date | str,
        start: str,
        end: str,
    ) -> AvailableUnits:
        resolved = self._resolve(cafe_id, resource_type, subtype, day, start, end)
        available = free_units(
            self._snapshot(resolved.partition),
            resolved.total_units,
            resolved.window.start,
            resolved.window.end,
        )
        return AvailableUnits(available_units=available, total_units=resolved.total_units, pricing=resolved.pricing())

    def create_group_reservation(
        self,
        cafe_id: str,
        resource_type: str,
        subtype: str | None,
        first_unit: int,
        unit_count: int,
        day: date | str,
        start: str,
        end: str,
        owner_ref: str,
        notes: str | None = None,
    ) -> GroupReservationResult:
        request_payload = {
            "cafe_id": cafe_id,
            "resource_type": resource_type,
            "subtype": subtype,
            "first_unit": first_unit,
            "unit_count": unit_count,
            "date": str(day),
            "start": start,
            "end": end,
            "owner_ref": owner_ref,
        }
        self.events.record(RESERVATION_REQUESTED, request_payload, self.clock())

        try:
            result = self._create_group(cafe_id, resource_type, subtype, first_unit, unit_count, day, start, end, owner_ref, notes)
        except BookingError as error:
            self.events.record(RESERVATION_REJECTED, {**request_payload, **error.to_dict()}, self.clock())
            raise

        self.events.record(
            RESERVATION_COMMITTED,
            {
                **request_payload,
                "reservation_ids": [row.reservation_id for row in result.reservations],
                "group_id": result.group_id,
                "total_amount": result.total_amount,
            },
            self.clock(),
        )
        return result

    def _create_group(
        self,
        cafe_id: str,
        resource_type: str,
        subtype: str | None,
        first_unit: int,
        unit_count: int,
        day: date | str,
        start: str,
        end: str,
        owner_ref: str,
        notes: str | None,
    ) -> GroupReservationResult:
        if not owner_ref or not str(owner_ref).strip():
            raise InvalidRequest("owner_ref must not be empty")
        if unit_count < 1:
            raise InvalidRequest("unit_count must be at least 1")
        if unit_count > MAX_GROUP_SIZE:
            raise CapacityExceeded(f"Number of units must be between 1 and {MAX_GROUP_SIZE}", max_group_size=MAX_GROUP_SIZE)

        resolved = self._resolve(cafe_id, resource_type, subtype, day, start, end)
        if resolved.window.duration_minutes < MIN_DURATION_MINUTES:
            raise InvalidWindow("Minimum booking duration is 1 hour")

        last_unit = first_unit + unit_count - 1
        if first_unit < 1 or last_unit > resolved.total_units:
            raise CapacityExceeded(
                f"Requested {unit_count} {describe_resource(resource_type, resolved.partition.subtype)} starting from "
                f"#{first_unit}, but only {resolved.total_units} are available.",
                total_units=resolved.total_units,
            )

        requested_units = list(range(first_unit, last_unit + 1))
        unit_amount = resolved.unit_amount
        total_amount = round(resolved.window.duration_hours * resolved.hourly_rate * unit_count, 2)
        group_id = f"GROUP_{uuid4().hex}" if unit_count > 1 else None
        now = self.clock()

        with self.ledger.transaction(resolved.partition) as tx:
            active = tx.active_reservations()
            available = free_units(active, resolved.total_units, resolved.window.start, resolved.window.end)
            unavailable = find_conflicting_units(active, requested_units, resolved.window.start, resolved.window.end)
            if unavailable:
                raise ReservationConflict(
                    _conflict_message(resource_type, resolved.partition.subtype, unavailable, available),
                    unavailable_units=unavailable,
                    available_units=available,
                )

            records = [
                ReservationRecord(
                    reservation_id=str(uuid4()),
                    cafe_id=cafe_id,
                    resource_type=resource_type,
                    subtype=resolved.partition.subtype,
                    unit_number=unit,
                    date=resolved.partition.date,
                    start_time=start,
                    end_time=end,
                    start_minute=resolved.window.start,
                    end_minute=resolved.window.end,
                    duration_hours=resolved.window.duration_hours,
                    hourly_rate=resolved.hourly_rate,
                    amount=unit_amount,
                    owner_ref=owner_ref,
                    created_at=now,
                    updated_at=now,
                    group_id=group_id,
                    group_index=index,
                    group_size=unit_count,
                    notes=notes,
                )
                for index, unit in enumerate(requested_units, start=1)
            ]
            for record in records:
                tx.stage(record)

        if self.payment is not None:
            charge = PaymentCharge(
                charge_ref=group_id or records[0].reservation_id,
                owner_ref=owner_ref,
                amount=total_amount,
                reservation_ids=tuple(record.reservation_id for record in records),
            )
            try:
                self._call_payment("register_charge", charge)
            except DependencyFailure:
                self._withdraw(resolved.partition, records)
                raise

        logger.info(
            "Reserved %s unit(s) %s of %s for %s on %s %s-%s (total %.2f)",
            unit_count,
            requested_units,
            resolved.partition.slug(),
            owner_ref,
            resolved.partition.date.isoformat(),
            start,
            end,
            total_amount,
        )
        return GroupReservationResult(
            reservations=records,
            total_amount=total_amount,
            group_id=group_id,
            duration_hours=resolved.window.duration_hours,
            hourly_rate=resolved.hourly_rate,
        )

    def cancel_reservation(self, reservation_id: str, requested_by: str | None = None) -> CancellationResult:
        now = self.clock()
        outcome: dict[str, Any] = {}

        def apply(tx: PartitionTransaction, record: ReservationRecord) -> list[ReservationRecord]:
            if requested_by is not None and record.owner_ref != requested_by:
                raise NotAuthorized("Not authorized to cancel this booking", reservation_id=record.reservation_id)
            if record.status == STATUS_CANCELLED:
                raise InvalidTransition("Booking is already cancelled", status=record.status)
            if record.status == STATUS_COMPLETED:
                raise InvalidTransition("Cannot cancel a completed booking", status=record.status)

            if record.payment_status != PAYMENT_PAID:
                refund_amount, refund_status = 0.0, REFUND_NOT_APPLICABLE
            else:
                refund_amount = self.refund_policy.refund_amount(record.starts_at, now, record.amount)
                refund_status = REFUND_INITIATED if refund_amount > 0 else REFUND_NOT_ELIGIBLE
                if refund_amount > 0 and self.payment is not None:
                    self._call_payment(
                        "request_refund",
                        RefundRequest(
                            refund_ref=f"REF_{record.reservation_id}",
                            reservation_id=record.reservation_id,
                            payment_ref=record.payment_ref,
                            amount=refund_amount,
                            reason="Booking cancelled by user",
                        ),
                    )

            outcome.update(refund_amount=refund_amount, refund_status=refund_status)
            return [
                record.transition(
                    now,
                    status=STATUS_CANCELLED,
                    refund_status=refund_status,
                    refund_amount=refund_amount,
                )
            ]

        cancelled = self._update(reservation_id, apply)[0]
        self.events.record(
            RESERVATION_CANCELLED,
            {
                "reservation_id": reservation_id,
                "group_id": cancelled.group_id,
                "refund_amount": outcome["refund_amount"],
                "refund_status": outcome["refund_status"],
            },
            now,
        )
        return CancellationResult(
            reservation=cancelled,
            refund_amount=outcome["refund_amount"],
            refund_status=outcome["refund_status"],
        )

    def confirm_payment(self, reservation_id: str, payment_ref: str | None = None) -> list[ReservationRecord]:
        """Mark the charge behind ``reservation_id`` as paid.

        A group is billed as one charge, so every pending member of the group
        is confirmed together.
        """
        now = self.clock()

        def apply(tx: PartitionTransaction, record: ReservationRecord) -> list[ReservationRecord]:
            if record.status == STATUS_CONFIRMED and record.payment_status == PAYMENT_PAID:
                return []
            if record.status != STATUS_PENDING:
                raise InvalidTransition(f"Cannot confirm a {record.status} booking", status=record.status)
            return [
                row.transition(now, status=STATUS_CONFIRMED, payment_status=PAYMENT_PAID, payment_ref=payment_ref)
                for row in _group_members(tx, record)
                if row.status == STATUS_PENDING
            ]

        updated = self._update(reservation_id, apply)
        if updated:
            self.events.record(
                RESERVATION_CONFIRMED,
                {"reservation_ids": [row.reservation_id for row in updated], "payment_ref": payment_ref},
                now,
            )
        return updated

    def mark_payment_failed(self, reservation_id: str) -> list[ReservationRecord]:
        now = self.clock()

        def apply(tx: PartitionTransaction, record: ReservationRecord) -> list[ReservationRecord]:
            if record.status != STATUS_PENDING:
                raise InvalidTransition(f"Cannot fail payment of a {record.status} booking", status=record.status)
            return [
                row.transition(now, payment_status=PAYMENT_STATUS_FAILED)
                for row in _group_members(tx, record)
                if row.status == STATUS_PENDING
            ]

        updated = self._update(reservation_id, apply)
        self.events.record(PAYMENT_FAILED, {"reservation_ids": [row.reservation_id for row in updated]}, now)
        return updated

    def complete_reservation(self, reservation_id: str) -> ReservationRecord:
        now = self.clock()

        def apply(tx: PartitionTransaction, record: ReservationRecord) -> list[ReservationRecord]:
            if record.status != STATUS_CONFIRMED:
                raise InvalidTransition(f"Cannot complete a {record.status} booking", status=record.status)
            return [record.transition(now, status=STATUS_COMPLETED)]

        completed = self._update(reservation_id, apply)[0]
        self.events.record(RESERVATION_COMPLETED, {"reservation_id": reservation_id, "reason": "owner"}, now)
        return completed

    def complete_elapsed(self, now: datetime | None = None) -> int:
        """Move confirmed reservations whose window has ended to ``completed``."""
        effective_now = now or self.clock()
        candidates: dict[PartitionKey, set[str]] = defaultdict(set)
        for row in self.ledger.all_reservations():
            if row.status == STATUS_CONFIRMED and row.ends_at <= effective_now:
                candidates[row.partition].add(row.reservation_id)

        completed: list[ReservationRecord] = []
        for partition, reservation_ids in candidates.items():
            with self.ledger.transaction(partition) as tx:
                for reservation_id in reservation_ids:
                    row = tx.get(reservation_id)
                    if row is None or row.status != STATUS_CONFIRMED or row.ends_at > effective_now:
                        continue
                    updated = row.transition(effective_now, status=STATUS_COMPLETED)
                    tx.stage(updated)
                    completed.append(updated)

        for row in completed:
            self.events.record(
                RESERVATION_COMPLETED,
                {"reservation_id": row.reservation_id, "reason": "elapsed", "end": row.ends_at.isoformat(timespec="minutes")},
                effective_now,
            )
        return len(completed)

    def get_reservation(self, reservation_id: str) -> ReservationRecord:
        partition = self.ledger.find_partition(reservation_id)
        if partition is not None:
            with self.ledger.transaction(partition) as tx:
                record = tx.get(reservation_id)
            if record is not None:
                return record
        raise ResourceNotFound("Booking not found", reservation_id=reservation_id)

    def list_reservations(
        self,
        owner_ref: str | None = None,
        cafe_id: str | None = None,
        day: date | str | None = None,
        status: str | None = None,
    ) -> list[ReservationRecord]:
        target_day = _coerce_date(day) if day is not None else None
        rows = [
            row
            for row in self.ledger.all_reservations()
            if (owner_ref is None or row.owner_ref == owner_ref)
            and (cafe_id is None or row.cafe_id == cafe_id)
            and (target_day is None or row.date == target_day)
            and (status is None or row.status == status)
        ]
        rows.sort(key=lambda row: (row.date, row.start_minute, row.resource_type, row.subtype or "", row.unit_number))
        return rows

    def _resolve(
        self,
        cafe_id: str,
        resource_type: str,
        subtype: str | None,
        day: date | str,
        start: str,
        end: str,
    ) -> _ResolvedRequest:
        subtype = validate_resource(resource_type, subtype)
        target_day = _coerce_date(day)
        catalog = require_catalog(self.catalog, cafe_id)
        if not catalog.is_active:
            raise ResourceInactive("This cafe is currently not accepting bookings", cafe_id=cafe_id)

        total_units = catalog.unit_count(resource_type, subtype)
        if total_units <= 0:
            raise ResourceNotFound(
                f"This cafe does not have any {describe_resource(resource_type, subtype)} available",
                cafe_id=cafe_id,
            )

        window = catalog.operating_window().normalize(start, end)
        return _ResolvedRequest(
            catalog=catalog,
            partition=PartitionKey(cafe_id, resource_type, subtype, target_day),
            window=window,
            total_units=total_units,
            hourly_rate=catalog.hourly_rate(resource_type, subtype),
        )

    def _withdraw(self, partition: PartitionKey, records: list[ReservationRecord]) -> None:
        with self.ledger.transaction(partition) as tx:
            for record in records:
                tx.remove(record.reservation_id)
        logger.warning(
            "Withdrew %s reservation(s) of %s: charge could not be registered",
            len(records),
            partition.slug(),
        )

    def _snapshot(self, partition: PartitionKey) -> list[ReservationRecord]:
        with self.ledger.transaction(partition) as tx:
            return tx.active_reservations()

    def _update(
        self,
        reservation_id: str,
        apply: Callable[[PartitionTransaction, ReservationRecord], list[ReservationRecord]],
    ) -> list[ReservationRecord]:
        partition = self.ledger.find_partition(reservation_id)
        if partition is None:
            raise ResourceNotFound("Booking not found", reservation_id=reservation_id)

        with self.ledger.transaction(partition) as tx:
            record = tx.get(reservation_id)
            if record is None:
                raise ResourceNotFound("Booking not found", reservation_id=reservation_id)
            updated = apply(tx, record)
            for row in updated:
                tx.stage(row)
        return updated

    def _call_payment(self, method: str, payload: Any) -> None:
        try:
            getattr(self.payment, method)(payload)
        except BookingError:
            raise
        except Exception as error:
            logger.error("Payment collaborator %s failed: %s", method, error)
            raise DependencyFailure("Payment service is unavailable; nothing was changed.") from error


def _group_members(tx: PartitionTransaction, record: ReservationRecord) -> list[ReservationRecord]:
    if record.group_id is None:
        return [record]
    members = [row for row in tx.reservations() if row.group_id == record.group_id]
    return sorted(members, key=lambda row: row.group_index)


def _conflict_message(resource_type: str, subtype: str | None, unavailable: list[int], available: list[int]) -> str:
    busy = ", ".join(f"#{unit}" for unit in unavailable)
    free = ", ".join(f"#{unit}" for unit in available) if available else "None"
    return (
        f"Some {describe_resource(resource_type, subtype)} ({busy}) are already booked "
        f"for the selected time slot. Available: {free}"
    )


def _coerce_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError as error:
        raise InvalidRequest(f"Date must be YYYY-MM-DD, got {value!r}") from error
