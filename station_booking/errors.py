from __future__ import annotations

from typing import Any


class BookingError(Exception):
    """Base error for every rejected booking operation.

    ``kind`` is a stable machine-checkable tag; the message is for humans.
    """

    kind = "booking_error"
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message, "retryable": self.retryable}
        payload.update(self.details)
        return payload


class ResourceNotFound(BookingError):
    kind = "not_found"


class ResourceInactive(ResourceNotFound):
    kind = "inactive"


class InvalidRequest(BookingError):
    kind = "invalid_request"


class OutOfHours(BookingError):
    kind = "out_of_hours"


class InvalidWindow(BookingError):
    kind = "invalid_window"


class CapacityExceeded(BookingError):
    kind = "capacity_exceeded"


class ReservationConflict(BookingError):
    kind = "conflict"

    def __init__(self, message: str, unavailable_units: list[int], available_units: list[int]) -> None:
        super().__init__(message, unavailable_units=list(unavailable_units), available_units=list(available_units))
        self.unavailable_units = list(unavailable_units)
        self.available_units = list(available_units)


class TransactionAborted(BookingError):
    kind = "transaction_aborted"
    retryable = True


class DependencyFailure(BookingError):
    kind = "dependency_failure"


class InvalidTransition(BookingError):
    kind = "invalid_transition"


class NotAuthorized(BookingError):
    kind = "not_authorized"
