from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class PaymentCharge:
    charge_ref: str
    owner_ref: str
    amount: float
    reservation_ids: tuple[str, ...]


@dataclass(frozen=True)
class RefundRequest:
    refund_ref: str
    reservation_id: str
    payment_ref: str | None
    amount: float
    reason: str


class PaymentCollaborator(Protocol):
    """The payment side of a booking, owned outside this package.

    It learns the amount to collect once reservations are committed and
    reports back through ``confirm_payment`` / ``mark_payment_failed``.
    Refunds are only requested here, never executed.

    A refund is requested before the cancellation is saved, so the same
    ``refund_ref`` arrives again when a cancel is retried after a failed
    save. Implementations must treat a repeated ``refund_ref`` as the
    request they already have.
    """

    def register_charge(self, charge: PaymentCharge) -> None: ...

    def request_refund(self, refund: RefundRequest) -> None: ...


class InMemoryPaymentCollaborator:
    def __init__(self) -> None:
        self.charges: list[PaymentCharge] = []
        self.refunds: list[RefundRequest] = []

    def register_charge(self, charge: PaymentCharge) -> None:
        self.charges.append(charge)

    def request_refund(self, refund: RefundRequest) -> None:
        if any(existing.refund_ref == refund.refund_ref for existing in self.refunds):
            return
        self.refunds.append(refund)
