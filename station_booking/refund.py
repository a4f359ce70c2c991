from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

REFUND_CUTOFF = timedelta(hours=1)

REFUND_NOT_APPLICABLE = "not_applicable"
REFUND_NOT_ELIGIBLE = "not_eligible"
REFUND_INITIATED = "initiated"


@dataclass(frozen=True)
class RefundPolicy:
    """Full refund when cancelled at least ``cutoff`` before the slot starts, nothing after.

    Exactly ``cutoff`` ahead still counts as eligible.
    """

    cutoff: timedelta = REFUND_CUTOFF

    def is_eligible(self, start_at: datetime, now: datetime) -> bool:
        return start_at - now >= self.cutoff

    def refund_amount(self, start_at: datetime, now: datetime, amount_paid: float) -> float:
        if amount_paid <= 0:
            return 0.0
        if self.is_eligible(start_at, now):
            return round(float(amount_paid), 2)
        return 0.0
