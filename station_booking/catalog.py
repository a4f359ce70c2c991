from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

from .errors import DependencyFailure, InvalidRequest, ResourceNotFound
from .operating_hours import OperatingWindow

RESOURCE_PC = "pc"
RESOURCE_CONSOLE = "console"
RESOURCE_TYPES = (RESOURCE_PC, RESOURCE_CONSOLE)
CONSOLE_TYPES = ("ps5", "ps4", "xbox_series_x", "xbox_series_s", "xbox_one", "nintendo_switch")


def resource_key(resource_type: str, subtype: str | None = None) -> str:
    return f"{resource_type}:{subtype}" if subtype else resource_type


def validate_resource(resource_type: str, subtype: str | None) -> str | None:
    """Check the type/sub-type pair and return the sub-type to key storage on."""
    if resource_type not in RESOURCE_TYPES:
        raise InvalidRequest(f"Invalid resource type {resource_type!r}. Valid types: {', '.join(RESOURCE_TYPES)}")
    if resource_type == RESOURCE_PC:
        return None
    if not subtype:
        raise InvalidRequest("Console type is required for console bookings")
    if subtype not in CONSOLE_TYPES:
        raise InvalidRequest(f"Invalid console type {subtype!r}. Valid types: {', '.join(CONSOLE_TYPES)}")
    return subtype


def describe_resource(resource_type: str, subtype: str | None) -> str:
    if resource_type == RESOURCE_PC:
        return "PC stations"
    return f"{subtype} consoles"


@dataclass(frozen=True)
class CafeCatalog:
    cafe_id: str
    opening_time: str
    closing_time: str
    is_active: bool = True
    unit_counts: dict[str, int] = field(default_factory=dict)
    hourly_rates: dict[str, float] = field(default_factory=dict)
    default_hourly_rate: float = 0.0

    def operating_window(self) -> OperatingWindow:
        return OperatingWindow.from_strings(self.opening_time, self.closing_time)

    def unit_count(self, resource_type: str, subtype: str | None = None) -> int:
        return int(self.unit_counts.get(resource_key(resource_type, subtype), 0))

    def hourly_rate(self, resource_type: str, subtype: str | None = None) -> float:
        rate = float(self.hourly_rates.get(resource_key(resource_type, subtype), 0) or 0)
        return rate if rate > 0 else float(self.default_hourly_rate)

    @staticmethod
    def from_dict(cafe_id: str, data: dict[str, Any]) -> "CafeCatalog":
        return CafeCatalog(
            cafe_id=cafe_id,
            opening_time=str(data["opening_time"]),
            closing_time=str(data["closing_time"]),
            is_active=bool(data.get("is_active", True)),
            unit_counts={str(key): int(value) for key, value in (data.get("unit_counts") or {}).items()},
            hourly_rates={str(key): float(value) for key, value in (data.get("hourly_rates") or {}).items()},
            default_hourly_rate=float(data.get("default_hourly_rate", 0) or 0),
        )


class CatalogProvider(Protocol):
    def get_catalog(self, cafe_id: str) -> CafeCatalog | None: ...


class InMemoryCatalogProvider:
    def __init__(self, catalogs: list[CafeCatalog] | None = None) -> None:
        self._catalogs = {catalog.cafe_id: catalog for catalog in catalogs or []}

    def add(self, catalog: CafeCatalog) -> None:
        self._catalogs[catalog.cafe_id] = catalog

    def get_catalog(self, cafe_id: str) -> CafeCatalog | None:
        return self._catalogs.get(cafe_id)


class YamlCatalogProvider:
    """Reads ``cafes.yaml``: a mapping of cafe id to catalog fields.

    The file belongs to whoever manages cafes; this side only reads it, and
    reads it on every call so edits show up without a restart.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def get_catalog(self, cafe_id: str) -> CafeCatalog | None:
        try:
            payload = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            raise DependencyFailure(f"Could not read cafe catalog: {self.path.name}") from error

        if not isinstance(payload, dict):
            return None
        row = payload.get(cafe_id)
        if not isinstance(row, dict):
            return None
        try:
            return CafeCatalog.from_dict(cafe_id, row)
        except (KeyError, TypeError, ValueError) as error:
            raise DependencyFailure(f"Cafe catalog entry for {cafe_id} is malformed") from error


def require_catalog(provider: CatalogProvider, cafe_id: str) -> CafeCatalog:
    try:
        catalog = provider.get_catalog(cafe_id)
    except DependencyFailure:
        raise
    except Exception as error:
        raise DependencyFailure(f"Cafe catalog is unavailable for {cafe_id}") from error

    if catalog is None:
        raise ResourceNotFound("Cafe not found", cafe_id=cafe_id)
    return catalog
