from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable
import logging
import os

from flask import Flask, jsonify, request

from .catalog import CatalogProvider, YamlCatalogProvider
from .coordinator import ReservationTransactionCoordinator
from .errors import BookingError, InvalidRequest
from .events import CompositeEventRecorder, LoggingEventRecorder
from .payments import PaymentCollaborator
from .yaml_store import YamlReservationLedger

logger = logging.getLogger(__name__)

DATA_DIR_ENV = "STATION_BOOKING_DATA_DIR"

ERROR_STATUS_CODES = {
    "not_found": 404,
    "inactive": 404,
    "invalid_request": 400,
    "out_of_hours": 400,
    "invalid_window": 400,
    "capacity_exceeded": 400,
    "conflict": 409,
    "not_authorized": 403,
    "invalid_transition": 422,
    "transaction_aborted": 503,
    "dependency_failure": 503,
}


def create_app(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
    payment: PaymentCollaborator | None = None,
    catalog: CatalogProvider | None = None,
) -> Flask:
    app = Flask(__name__)
    data_path = Path(data_dir)
    ledger = YamlReservationLedger(data_path)
    coordinator = ReservationTransactionCoordinator(
        catalog=catalog or YamlCatalogProvider(data_path / "cafes.yaml"),
        ledger=ledger,
        payment=payment,
        events=CompositeEventRecorder(LoggingEventRecorder(), ledger.event_log),
        clock=now_provider,
    )
    app.extensions["station_booking"] = coordinator

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    @app.errorhandler(BookingError)
    def handle_booking_error(error: BookingError) -> Any:
        status_code = ERROR_STATUS_CODES.get(error.kind, 400)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, error)
        return jsonify({"ok": False, "message": str(error), "error": error.to_dict()}), status_code

    @app.get("/api/cafes/<cafe_id>/available-units")
    def get_available_units(cafe_id: str) -> Any:
        args = request.args
        result = coordinator.get_available_units(
            cafe_id,
            _required(args, "resource_type"),
            args.get("subtype") or None,
            _required(args, "date"),
            _required(args, "start"),
            _required(args, "end"),
        )
        return jsonify({"ok": True, **result.to_dict()})

    @app.post("/api/cafes/<cafe_id>/check-availability")
    def check_availability(cafe_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        result = coordinator.check_availability(
            cafe_id,
            _required(payload, "resource_type"),
            payload.get("subtype") or None,
            _int_field(payload, "unit_number"),
            _required(payload, "date"),
            _required(payload, "start"),
            _required(payload, "end"),
        )
        return jsonify({"ok": True, **result.to_dict()})

    @app.post("/api/cafes/<cafe_id>/reservations")
    def create_reservation(cafe_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        result = coordinator.create_group_reservation(
            cafe_id,
            _required(payload, "resource_type"),
            payload.get("subtype") or None,
            first_unit=_int_field(payload, "first_unit"),
            unit_count=_int_field(payload, "unit_count", default=1),
            day=_required(payload, "date"),
            start=_required(payload, "start"),
            end=_required(payload, "end"),
            owner_ref=_required(payload, "owner_ref"),
            notes=payload.get("notes"),
        )
        return jsonify({"ok": True, **result.to_dict()}), 201

    @app.get("/api/reservations")
    def list_reservations() -> Any:
        args = request.args
        rows = coordinator.list_reservations(
            owner_ref=args.get("owner") or None,
            cafe_id=args.get("cafe_id") or None,
            day=args.get("date") or None,
            status=args.get("status") or None,
        )
        return jsonify({"ok": True, "reservations": [row.to_dict() for row in rows]})

    @app.get("/api/reservations/<reservation_id>")
    def get_reservation(reservation_id: str) -> Any:
        record = coordinator.get_reservation(reservation_id)
        return jsonify({"ok": True, "reservation": record.to_dict()})

    @app.post("/api/reservations/<reservation_id>/cancel")
    def cancel_reservation(reservation_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        result = coordinator.cancel_reservation(reservation_id, requested_by=payload.get("owner_ref") or None)
        return jsonify({"ok": True, **result.to_dict()})

    @app.post("/api/reservations/<reservation_id>/payment")
    def update_payment(reservation_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        status = str(payload.get("status", "")).strip().lower()
        if status == "paid":
            updated = coordinator.confirm_payment(reservation_id, payment_ref=payload.get("payment_ref"))
        elif status == "failed":
            updated = coordinator.mark_payment_failed(reservation_id)
        else:
            raise InvalidRequest("status must be 'paid' or 'failed'")
        return jsonify({"ok": True, "reservations": [row.to_dict() for row in updated]})

    @app.post("/api/reservations/<reservation_id>/complete")
    def complete_reservation(reservation_id: str) -> Any:
        record = coordinator.complete_reservation(reservation_id)
        return jsonify({"ok": True, "reservation": record.to_dict()})

    return app


def _required(source: Any, key: str) -> str:
    value = str(source.get(key, "") or "").strip()
    if not value:
        raise InvalidRequest(f"{key} is required")
    return value


def _int_field(source: Any, key: str, default: int | None = None) -> int:
    value = source.get(key, default)
    if value is None or value == "":
        raise InvalidRequest(f"{key} is required")
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise InvalidRequest(f"{key} must be an integer") from error


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app = create_app(os.environ.get(DATA_DIR_ENV, "data"))
    app.run(host="127.0.0.1", port=5000, debug=False)
