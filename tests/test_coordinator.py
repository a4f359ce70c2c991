import unittest
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Any, Iterator

from station_booking import (
    CafeCatalog,
    CapacityExceeded,
    DependencyFailure,
    InMemoryCatalogProvider,
    InMemoryLedger,
    InMemoryPaymentCollaborator,
    InvalidRequest,
    InvalidTransition,
    InvalidWindow,
    NotAuthorized,
    OutOfHours,
    PartitionKey,
    PartitionTransaction,
    ReservationConflict,
    ReservationRecord,
    ReservationTransactionCoordinator,
    ResourceInactive,
    ResourceNotFound,
    TransactionAborted,
)

NOW = datetime(2026, 3, 1, 12, 0)
DAY = date(2026, 3, 2)


class RecordingEvents:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def record(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        self.events.append((event_type, payload))

    @property
    def types(self) -> list[str]:
        return [event_type for event_type, _payload in self.events]


class FailingRefunds(InMemoryPaymentCollaborator):
    def request_refund(self, refund: Any) -> None:
        raise RuntimeError("payment gateway down")


class FailingCharges(InMemoryPaymentCollaborator):
    def register_charge(self, charge: Any) -> None:
        raise RuntimeError("payment gateway down")


class UnreliableSaveLedger(InMemoryLedger):
    """Fails the next ``failures`` commits as if the save had been lost."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__(lock_timeout=1.0)
        self.failures = failures

    def _commit(self, partition: PartitionKey, tx: PartitionTransaction) -> None:
        if self.failures:
            self.failures -= 1
            raise TransactionAborted("save lost", partition=partition.slug())
        super()._commit(partition, tx)


class BrokenCatalog:
    def get_catalog(self, cafe_id: str) -> CafeCatalog | None:
        raise ConnectionError("catalog backend unreachable")


class CompetingLedger(InMemoryLedger):
    """Commits ``competitor`` just before the first caller's transaction opens."""

    def __init__(self, competitor: ReservationRecord) -> None:
        super().__init__(lock_timeout=1.0)
        self.competitor = competitor
        self.injected = False

    @contextmanager
    def transaction(self, partition: PartitionKey) -> Iterator[PartitionTransaction]:
        if not self.injected:
            self.injected = True
            with super().transaction(self.competitor.partition) as tx:
                tx.stage(self.competitor)
        with super().transaction(partition) as tx:
            yield tx


def build_catalog() -> InMemoryCatalogProvider:
    return InMemoryCatalogProvider(
        [
            CafeCatalog(
                cafe_id="cafe-1",
                opening_time="09:00",
                closing_time="22:00",
                unit_counts={"pc": 5, "console:ps5": 2},
                hourly_rates={"pc": 100.0, "console:ps5": 150.0},
            ),
            CafeCatalog(
                cafe_id="night-owl",
                opening_time="18:00",
                closing_time="02:00",
                unit_counts={"pc": 3},
                hourly_rates={"pc": 80.0},
            ),
            CafeCatalog(
                cafe_id="closed-cafe",
                opening_time="09:00",
                closing_time="22:00",
                is_active=False,
                unit_counts={"pc": 2},
                hourly_rates={"pc": 50.0},
            ),
        ]
    )


def competitor_record(unit: int, start_minute: int, end_minute: int) -> ReservationRecord:
    return ReservationRecord(
        reservation_id="competitor",
        cafe_id="cafe-1",
        resource_type="pc",
        subtype=None,
        unit_number=unit,
        date=DAY,
        start_time="10:00",
        end_time="11:00",
        start_minute=start_minute,
        end_minute=end_minute,
        duration_hours=1.0,
        hourly_rate=100.0,
        amount=100.0,
        owner_ref="someone-else",
        created_at=NOW,
        updated_at=NOW,
    )


class CoordinatorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.now = NOW
        self.ledger = InMemoryLedger(lock_timeout=1.0)
        self.payment = InMemoryPaymentCollaborator()
        self.events = RecordingEvents()
        self.coordinator = self.build(self.ledger, self.payment)

    def build(self, ledger: Any, payment: Any = None, catalog: Any = None) -> ReservationTransactionCoordinator:
        return ReservationTransactionCoordinator(
            catalog=catalog or build_catalog(),
            ledger=ledger,
            payment=payment,
            events=self.events,
            clock=lambda: self.now,
        )

    def book(self, first_unit: int, start: str, end: str, unit_count: int = 1, **kwargs: Any) -> Any:
        params: dict[str, Any] = {
            "cafe_id": "cafe-1",
            "resource_type": "pc",
            "subtype": None,
            "first_unit": first_unit,
            "unit_count": unit_count,
            "day": DAY,
            "start": start,
            "end": end,
            "owner_ref": "user-1",
        }
        params.update(kwargs)
        return self.coordinator.create_group_reservation(**params)


class TestEndToEndExample(CoordinatorTestCase):
    def test_conflicting_request_then_free_unit(self) -> None:
        self.book(2, "09:00", "10:00")

        with self.assertRaises(ReservationConflict) as ctx:
            self.book(2, "09:30", "10:30")
        self.assertEqual(ctx.exception.unavailable_units, [2])
        self.assertEqual(ctx.exception.available_units, [1, 3, 4, 5])
        self.assertIn("#2", str(ctx.exception))

        result = self.book(3, "09:00", "11:00")
        self.assertEqual(result.total_amount, 200.0)
        self.assertEqual(result.duration_hours, 2.0)
        self.assertEqual(result.unit_numbers, [3])
        self.assertIsNone(result.group_id)
        self.assertEqual(len(self.ledger.all_reservations()), 2)

    def test_available_units_and_pricing(self) -> None:
        self.book(2, "09:00", "10:00")

        result = self.coordinator.get_available_units("cafe-1", "pc", None, DAY, "09:30", "10:30")

        self.assertEqual(result.available_units, [1, 3, 4, 5])
        self.assertEqual(result.total_units, 5)
        self.assertEqual(result.first_available, 1)
        self.assertEqual(result.pricing.estimated_total, 100.0)
        self.assertEqual(result.to_dict()["available_count"], 4)

    def test_check_single_unit(self) -> None:
        self.book(2, "09:00", "10:00")

        busy = self.coordinator.check_availability("cafe-1", "pc", None, 2, DAY, "09:30", "10:30")
        free = self.coordinator.check_availability("cafe-1", "pc", None, 1, "2026-03-02", "09:30", "11:00")

        self.assertFalse(busy.available)
        self.assertTrue(free.available)
        self.assertEqual(free.estimated_cost, 150.0)
        self.assertEqual(free.duration_hours, 1.5)
        with self.assertRaises(CapacityExceeded):
            self.coordinator.check_availability("cafe-1", "pc", None, 6, DAY, "09:00", "10:00")


class TestGroupReservation(CoordinatorTestCase):
    def test_group_books_consecutive_units_as_one_charge(self) -> None:
        result = self.book(2, "14:00", "15:00", unit_count=3, notes="team practice")

        self.assertEqual(result.unit_numbers, [2, 3, 4])
        self.assertEqual(result.total_amount, 300.0)
        self.assertIsNotNone(result.group_id)
        self.assertEqual([row.group_index for row in result.reservations], [1, 2, 3])
        self.assertTrue(all(row.group_id == result.group_id for row in result.reservations))
        self.assertTrue(all(row.amount == 100.0 for row in result.reservations))
        self.assertTrue(all(row.status == "pending" for row in result.reservations))

        self.assertEqual(len(self.payment.charges), 1)
        charge = self.payment.charges[0]
        self.assertEqual(charge.amount, 300.0)
        self.assertEqual(charge.charge_ref, result.group_id)
        self.assertEqual(len(charge.reservation_ids), 3)
        self.assertIn("RESERVATION_COMMITTED", self.events.types)

    def test_partial_conflict_books_nothing(self) -> None:
        self.book(3, "14:00", "15:00")

        with self.assertRaises(ReservationConflict) as ctx:
            self.book(2, "14:30", "15:30", unit_count=3)

        self.assertEqual(ctx.exception.unavailable_units, [3])
        self.assertEqual(ctx.exception.available_units, [1, 2, 4, 5])
        self.assertEqual(len(self.ledger.all_reservations()), 1)
        self.assertEqual(len(self.payment.charges), 1)

    def test_competing_commit_inside_transaction_aborts_whole_group(self) -> None:
        ledger = CompetingLedger(competitor_record(unit=3, start_minute=600, end_minute=660))
        self.coordinator = self.build(ledger, self.payment)

        with self.assertRaises(ReservationConflict) as ctx:
            self.book(2, "10:00", "11:00", unit_count=3)

        self.assertEqual(ctx.exception.unavailable_units, [3])
        self.assertEqual([row.reservation_id for row in ledger.all_reservations()], ["competitor"])
        self.assertEqual(self.payment.charges, [])

    def test_charge_failure_commits_nothing(self) -> None:
        self.coordinator = self.build(self.ledger, FailingCharges())

        with self.assertRaises(DependencyFailure):
            self.book(1, "14:00", "15:00", unit_count=2)

        self.assertEqual(self.ledger.all_reservations(), [])
        available = self.coordinator.get_available_units("cafe-1", "pc", None, DAY, "14:00", "15:00")
        self.assertEqual(available.available_units, [1, 2, 3, 4, 5])
        self.assertEqual(self.ledger.held_partitions, 0)

    def test_console_partition_is_independent_of_pcs(self) -> None:
        self.book(1, "14:00", "16:00")

        result = self.book(1, "14:00", "16:00", resource_type="console", subtype="ps5")

        self.assertEqual(result.total_amount, 300.0)
        self.assertEqual(result.reservations[0].subtype, "ps5")


class TestValidation(CoordinatorTestCase):
    def assertRejected(self, error_type: type, **kwargs: Any) -> None:
        params: dict[str, Any] = {"first_unit": 1, "start": "10:00", "end": "11:00"}
        params.update(kwargs)
        with self.assertRaises(error_type):
            self.book(**params)
        self.assertEqual(self.ledger.all_reservations(), [])
        self.assertEqual(self.events.types[-1], "RESERVATION_REJECTED")

    def test_unknown_cafe(self) -> None:
        self.assertRejected(ResourceNotFound, cafe_id="nowhere")

    def test_inactive_cafe(self) -> None:
        self.assertRejected(ResourceInactive, cafe_id="closed-cafe")
        self.assertTrue(issubclass(ResourceInactive, ResourceNotFound))

    def test_cafe_without_that_console(self) -> None:
        self.assertRejected(ResourceNotFound, resource_type="console", subtype="xbox_one")

    def test_unknown_resource_type(self) -> None:
        self.assertRejected(InvalidRequest, resource_type="arcade")

    def test_console_requires_subtype(self) -> None:
        self.assertRejected(InvalidRequest, resource_type="console", subtype=None)

    def test_minimum_duration(self) -> None:
        self.assertRejected(InvalidWindow, start="10:00", end="10:30")

    def test_end_before_start(self) -> None:
        self.assertRejected(InvalidWindow, start="12:00", end="11:00")

    def test_outside_hours(self) -> None:
        self.assertRejected(OutOfHours, start="21:00", end="23:00")

    def test_group_size_limits(self) -> None:
        self.assertRejected(InvalidRequest, unit_count=0)
        self.assertRejected(CapacityExceeded, unit_count=21)

    def test_range_past_catalog(self) -> None:
        self.assertRejected(CapacityExceeded, first_unit=4, unit_count=3)
        self.assertRejected(CapacityExceeded, first_unit=0)

    def test_malformed_date(self) -> None:
        self.assertRejected(InvalidRequest, day="02/03/2026")

    def test_catalog_failure_is_dependency_failure(self) -> None:
        self.coordinator = self.build(self.ledger, self.payment, catalog=BrokenCatalog())
        self.assertRejected(DependencyFailure)

    def test_rejection_payload_carries_error_kind(self) -> None:
        with self.assertRaises(ResourceNotFound):
            self.book(1, "10:00", "11:00", cafe_id="nowhere")

        _event_type, payload = self.events.events[-1]
        self.assertEqual(payload["kind"], "not_found")
        self.assertEqual(payload["cafe_id"], "nowhere")


class TestOvernightCafe(CoordinatorTestCase):
    def test_booking_across_midnight(self) -> None:
        result = self.book(1, "23:00", "01:00", cafe_id="night-owl")

        record = result.reservations[0]
        self.assertEqual((record.start_minute, record.end_minute), (1380, 1500))
        self.assertEqual(record.date, DAY)
        self.assertEqual(record.starts_at, datetime(2026, 3, 2, 23, 0))
        self.assertEqual(record.ends_at, datetime(2026, 3, 3, 1, 0))
        self.assertEqual(result.total_amount, 160.0)

    def test_after_close_is_rejected(self) -> None:
        with self.assertRaises(OutOfHours):
            self.book(1, "03:00", "04:00", cafe_id="night-owl")

    def test_post_midnight_overlap_is_detected(self) -> None:
        self.book(1, "23:00", "01:00", cafe_id="night-owl")

        with self.assertRaises(ReservationConflict) as ctx:
            self.book(1, "00:30", "01:30", cafe_id="night-owl")
        self.assertEqual(ctx.exception.available_units, [2, 3])

    def test_refund_window_uses_next_calendar_day_start(self) -> None:
        result = self.book(1, "00:30", "01:30", cafe_id="night-owl")
        reservation_id = result.reservations[0].reservation_id
        self.coordinator.confirm_payment(reservation_id, payment_ref="pay-1")

        self.now = datetime(2026, 3, 2, 23, 0)
        cancelled = self.coordinator.cancel_reservation(reservation_id)

        self.assertEqual(cancelled.refund_status, "initiated")
        self.assertEqual(cancelled.refund_amount, 80.0)


class TestLifecycle(CoordinatorTestCase):
    def test_confirm_then_cancel_early_refunds_in_full(self) -> None:
        result = self.book(1, "14:00", "16:00", unit_count=2)
        first_id = result.reservations[0].reservation_id

        confirmed = self.coordinator.confirm_payment(first_id, payment_ref="pay-123")
        self.assertEqual(len(confirmed), 2)
        self.assertTrue(all(row.status == "confirmed" and row.payment_status == "paid" for row in confirmed))

        self.now = datetime(2026, 3, 2, 9, 0)
        cancelled = self.coordinator.cancel_reservation(first_id, requested_by="user-1")

        self.assertEqual(cancelled.refund_status, "initiated")
        self.assertEqual(cancelled.refund_amount, 200.0)
        self.assertEqual(cancelled.reservation.status, "cancelled")
        self.assertEqual(len(self.payment.refunds), 1)
        self.assertEqual(self.payment.refunds[0].payment_ref, "pay-123")

        sibling = self.coordinator.get_reservation(result.reservations[1].reservation_id)
        self.assertEqual(sibling.status, "confirmed")

        available = self.coordinator.get_available_units("cafe-1", "pc", None, DAY, "14:00", "16:00")
        self.assertEqual(available.available_units, [1, 3, 4, 5])

    def test_cancel_unpaid_is_not_applicable(self) -> None:
        result = self.book(1, "14:00", "15:00")

        cancelled = self.coordinator.cancel_reservation(result.reservations[0].reservation_id)

        self.assertEqual(cancelled.refund_status, "not_applicable")
        self.assertEqual(cancelled.refund_amount, 0.0)
        self.assertEqual(self.payment.refunds, [])

    def test_cancel_inside_cutoff_is_not_eligible(self) -> None:
        reservation_id = self.book(1, "14:00", "15:00").reservations[0].reservation_id
        self.coordinator.confirm_payment(reservation_id)

        self.now = datetime(2026, 3, 2, 13, 30)
        cancelled = self.coordinator.cancel_reservation(reservation_id)

        self.assertEqual(cancelled.refund_status, "not_eligible")
        self.assertEqual(cancelled.refund_amount, 0.0)
        self.assertEqual(self.payment.refunds, [])

    def test_cancel_exactly_one_hour_before_is_eligible(self) -> None:
        reservation_id = self.book(1, "14:00", "15:00").reservations[0].reservation_id
        self.coordinator.confirm_payment(reservation_id)

        self.now = datetime(2026, 3, 2, 13, 0)
        cancelled = self.coordinator.cancel_reservation(reservation_id)

        self.assertEqual(cancelled.refund_status, "initiated")
        self.assertEqual(cancelled.refund_amount, 100.0)

    def test_cancel_guards(self) -> None:
        reservation_id = self.book(1, "14:00", "15:00").reservations[0].reservation_id

        with self.assertRaises(NotAuthorized):
            self.coordinator.cancel_reservation(reservation_id, requested_by="user-2")
        self.coordinator.cancel_reservation(reservation_id)
        with self.assertRaises(InvalidTransition):
            self.coordinator.cancel_reservation(reservation_id)
        with self.assertRaises(ResourceNotFound):
            self.coordinator.cancel_reservation("missing")

    def test_refund_failure_leaves_reservation_untouched(self) -> None:
        self.coordinator = self.build(self.ledger, FailingRefunds())
        reservation_id = self.book(1, "14:00", "15:00").reservations[0].reservation_id
        self.coordinator.confirm_payment(reservation_id, payment_ref="pay-9")

        with self.assertRaises(DependencyFailure):
            self.coordinator.cancel_reservation(reservation_id)

        record = self.coordinator.get_reservation(reservation_id)
        self.assertEqual(record.status, "confirmed")
        self.assertIsNone(record.refund_status)

    def test_retried_cancel_after_lost_save_refunds_once(self) -> None:
        ledger = UnreliableSaveLedger(failures=0)
        self.coordinator = self.build(ledger, self.payment)
        reservation_id = self.book(1, "14:00", "15:00").reservations[0].reservation_id
        self.coordinator.confirm_payment(reservation_id, payment_ref="pay-7")
        self.now = datetime(2026, 3, 2, 9, 0)
        ledger.failures = 1

        with self.assertRaises(TransactionAborted):
            self.coordinator.cancel_reservation(reservation_id)
        self.assertEqual(self.coordinator.get_reservation(reservation_id).status, "confirmed")

        cancelled = self.coordinator.cancel_reservation(reservation_id)

        self.assertEqual(cancelled.reservation.status, "cancelled")
        self.assertEqual(len(self.payment.refunds), 1)
        self.assertEqual(self.payment.refunds[0].refund_ref, f"REF_{reservation_id}")
        self.assertEqual(self.payment.refunds[0].amount, 100.0)

    def test_payment_failure_keeps_reservation_pending(self) -> None:
        reservation_id = self.book(1, "14:00", "15:00").reservations[0].reservation_id

        failed = self.coordinator.mark_payment_failed(reservation_id)
        self.assertEqual(failed[0].status, "pending")
        self.assertEqual(failed[0].payment_status, "failed")

        confirmed = self.coordinator.confirm_payment(reservation_id, payment_ref="retry-1")
        self.assertEqual(confirmed[0].status, "confirmed")
        with self.assertRaises(InvalidTransition):
            self.coordinator.mark_payment_failed(reservation_id)

    def test_confirm_is_idempotent_for_paid_reservation(self) -> None:
        reservation_id = self.book(1, "14:00", "15:00").reservations[0].reservation_id
        self.coordinator.confirm_payment(reservation_id)

        self.assertEqual(self.coordinator.confirm_payment(reservation_id), [])

    def test_complete_requires_confirmed(self) -> None:
        reservation_id = self.book(1, "14:00", "15:00").reservations[0].reservation_id

        with self.assertRaises(InvalidTransition):
            self.coordinator.complete_reservation(reservation_id)

        self.coordinator.confirm_payment(reservation_id)
        completed = self.coordinator.complete_reservation(reservation_id)
        self.assertEqual(completed.status, "completed")
        with self.assertRaises(InvalidTransition):
            self.coordinator.cancel_reservation(reservation_id)

    def test_complete_elapsed_sweeps_finished_confirmed(self) -> None:
        finished = self.book(1, "09:00", "10:00").reservations[0].reservation_id
        later = self.book(1, "12:00", "13:00").reservations[0].reservation_id
        unpaid = self.book(2, "09:00", "10:00").reservations[0].reservation_id
        self.coordinator.confirm_payment(finished)
        self.coordinator.confirm_payment(later)

        moved = self.coordinator.complete_elapsed(datetime(2026, 3, 2, 10, 30))

        self.assertEqual(moved, 1)
        self.assertEqual(self.coordinator.get_reservation(finished).status, "completed")
        self.assertEqual(self.coordinator.get_reservation(later).status, "confirmed")
        self.assertEqual(self.coordinator.get_reservation(unpaid).status, "pending")
        self.assertEqual(self.coordinator.complete_elapsed(datetime(2026, 3, 2, 10, 30)), 0)


class TestQueries(CoordinatorTestCase):
    def test_list_filters_and_sorts(self) -> None:
        self.book(3, "15:00", "16:00")
        self.book(1, "10:00", "11:00", unit_count=2)
        self.book(5, "10:00", "11:00", owner_ref="user-2")
        self.book(1, "10:00", "11:00", day=DAY + timedelta(days=1))

        mine = self.coordinator.list_reservations(owner_ref="user-1", day=DAY)
        self.assertEqual([(row.start_minute, row.unit_number) for row in mine], [(600, 1), (600, 2), (900, 3)])

        self.assertEqual(len(self.coordinator.list_reservations(cafe_id="cafe-1")), 5)
        self.assertEqual(len(self.coordinator.list_reservations(owner_ref="user-2")), 1)
        self.assertEqual(self.coordinator.list_reservations(status="cancelled"), [])

    def test_repeated_availability_reads_agree(self) -> None:
        pending = self.book(1, "10:00", "12:00").reservations[0].reservation_id
        confirmed = self.book(2, "11:00", "13:00").reservations[0].reservation_id
        cancelled = self.book(3, "10:00", "11:00").reservations[0].reservation_id
        self.coordinator.confirm_payment(confirmed)
        self.coordinator.cancel_reservation(cancelled)
        statuses = {row.reservation_id: row.status for row in self.ledger.all_reservations()}
        self.assertEqual(statuses, {pending: "pending", confirmed: "confirmed", cancelled: "cancelled"})

        first = self.coordinator.get_available_units("cafe-1", "pc", None, DAY, "10:30", "11:30")
        second = self.coordinator.get_available_units("cafe-1", "pc", None, DAY, "10:30", "11:30")

        self.assertEqual(first.available_units, [3, 4, 5])
        self.assertEqual(first.to_dict(), second.to_dict())
        self.assertEqual(self.ledger.held_partitions, 0)

    def test_get_missing_reservation(self) -> None:
        with self.assertRaises(ResourceNotFound):
            self.coordinator.get_reservation("missing")


if __name__ == "__main__":
    unittest.main()
