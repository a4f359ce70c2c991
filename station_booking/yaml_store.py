from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator
from uuid import uuid4
import logging
import re
import shutil

import yaml
from filelock import FileLock, Timeout as FileLockTimeout

from .errors import TransactionAborted
from .ledger import (
    DEFAULT_LOCK_TIMEOUT_SECONDS,
    PartitionKey,
    PartitionTransaction,
    ReservationRecord,
)

logger = logging.getLogger(__name__)

_UNSAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9_.-]")


class ReservationStorageError(RuntimeError):
    pass


class YamlEventLog:
    """Append-only event log kept next to the reservation files."""

    def __init__(self, path: str | Path, lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_suffix(".lock")
        self.lock_timeout = lock_timeout
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("[]\n", encoding="utf-8")

    def record(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = (event_time or datetime.now()).isoformat(timespec="seconds")
        try:
            with FileLock(self.lock_path, timeout=self.lock_timeout):
                events = _read_yaml_list(self.path)
                events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})
                _write_yaml_list(self.path, events)
        except FileLockTimeout:
            logger.error("Dropped %s event: event log %s stayed locked", event_type, self.path)

    def events(self) -> list[dict[str, Any]]:
        return _read_yaml_list(self.path, recover=False)


class YamlReservationLedger:
    """Reservation ledger stored as one YAML file per partition.

    Each partition has its own lock file, so every process pointed at the
    same data directory serializes on a partition while other partitions
    stay independent. The lock is an OS file lock, released by the kernel
    if its holder dies.
    """

    def __init__(
        self,
        base_dir: str | Path = "data",
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS,
        event_log: YamlEventLog | None = None,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.reservations_dir = self.base_dir / "reservations"
        self.locks_dir = self.base_dir / "locks"
        self.lock_timeout = lock_timeout
        self.event_log = event_log or YamlEventLog(self.base_dir / "reservation_events.yaml")
        self._ensure_dirs()

    def _ensure_dirs(self) -> None:
        self.reservations_dir.mkdir(parents=True, exist_ok=True)
        self.locks_dir.mkdir(parents=True, exist_ok=True)

    def partition_file(self, partition: PartitionKey) -> Path:
        return self.reservations_dir / _partition_relpath(partition).with_suffix(".yaml")

    def lock_file(self, partition: PartitionKey) -> Path:
        return self.locks_dir / _partition_relpath(partition).with_suffix(".lock")

    @contextmanager
    def transaction(self, partition: PartitionKey) -> Iterator[PartitionTransaction]:
        path = self.partition_file(partition)
        lock_path = self.lock_file(partition)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with FileLock(lock_path, timeout=self.lock_timeout):
                tx = PartitionTransaction(partition, self._load_rows(path))
                yield tx
                if tx.changed:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    _write_yaml_list(path, [row.to_dict() for row in tx.reservations()])
        except FileLockTimeout as error:
            raise TransactionAborted(
                f"Timed out waiting for reservations of {partition.slug()}; please retry.",
                partition=partition.slug(),
            ) from error
        except ReservationStorageError as error:
            raise TransactionAborted(
                f"Could not save reservations of {partition.slug()}; nothing was written.",
                partition=partition.slug(),
            ) from error

    def _load_rows(self, path: Path, recover: bool = True) -> list[ReservationRecord]:
        rows = _read_yaml_list(path, self.event_log, recover=recover)
        records: list[ReservationRecord] = []
        for index, row in enumerate(rows):
            try:
                records.append(ReservationRecord.from_dict(row))
            except (KeyError, TypeError, ValueError) as error:
                self.event_log.record(
                    "YAML_ROW_SKIPPED",
                    {"file": str(path.name), "index": index, "reason": str(error)},
                )
        return records

    def find_partition(self, reservation_id: str) -> PartitionKey | None:
        for record in self.all_reservations():
            if record.reservation_id == reservation_id:
                return record.partition
        return None

    def all_reservations(self) -> list[ReservationRecord]:
        """Read every partition without taking partition locks.

        A file that does not parse is skipped here and left for the next
        transaction on that partition to back up and reset.
        """
        records: list[ReservationRecord] = []
        for path in sorted(self.reservations_dir.rglob("*.yaml")):
            if ".corrupt." in path.name:
                continue
            records.extend(self._load_rows(path, recover=False))
        return records


def _partition_relpath(partition: PartitionKey) -> Path:
    cafe = _safe_segment(partition.cafe_id)
    resource = _safe_segment(f"{partition.resource_type}-{partition.subtype or '_'}")
    return Path(cafe) / resource / partition.date.isoformat()


def _safe_segment(value: str) -> str:
    cleaned = _UNSAFE_SEGMENT_RE.sub("_", value.strip())
    if cleaned in {"", ".", ".."}:
        raise ValueError(f"cannot build a storage path from {value!r}")
    return cleaned


def _read_yaml_list(path: Path, event_log: YamlEventLog | None = None, recover: bool = True) -> list[dict[str, Any]]:
    """Load a YAML list, dropping rows that are not mappings.

    Only callers holding the file's lock may pass ``recover=True``; an
    unreadable file is then backed up and reset. Without the lock it is
    skipped untouched.
    """
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return []
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
        _handle_unreadable(path, error, event_log, recover)
        return []

    if payload is None:
        return []
    if not isinstance(payload, list):
        _handle_unreadable(path, ValueError("top-level YAML is not a list"), event_log, recover)
        return []

    sanitized: list[dict[str, Any]] = []
    for index, row in enumerate(payload):
        if isinstance(row, dict):
            sanitized.append(row)
        elif event_log is not None:
            event_log.record(
                "YAML_ROW_SKIPPED",
                {
                    "file": str(path.name),
                    "index": index,
                    "reason": "row is not a mapping",
                },
            )
    return sanitized


def _write_yaml_list(path: Path, rows: list[dict[str, Any]]) -> None:
    temp_path = path.with_name(f"{path.name}.{uuid4().hex}.tmp")
    try:
        temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
        temp_path.replace(path)
    except OSError as error:
        raise ReservationStorageError(f"Failed to write YAML file: {path}") from error
    finally:
        if temp_path.exists():
            temp_path.unlink(missing_ok=True)


def _recover_corrupted_yaml(path: Path, error: Exception, event_log: YamlEventLog | None = None) -> None:
    timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
    backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
    try:
        if path.exists():
            shutil.copy2(path, backup_path)
    except OSError:
        logger.exception("Could not back up corrupted YAML file %s", path)

    _write_yaml_list(path, [])
    logger.warning("Recovered corrupted YAML file %s: %s", path, error)
    if event_log is not None and path != event_log.path:
        event_log.record(
            "YAML_RECOVERED",
            {
                "file": str(path.name),
                "backup": str(backup_path.name),
                "reason": str(error),
            },
        )


def _handle_unreadable(path: Path, error: Exception, event_log: YamlEventLog | None, recover: bool) -> None:
    if recover:
        _recover_corrupted_yaml(path, error, event_log)
    else:
        logger.warning("Skipping unreadable YAML file %s: %s", path, error)
