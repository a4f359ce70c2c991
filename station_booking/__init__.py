from .availability import find_conflicting_units, free_units, group_by_unit
from .booking import Interval, can_reserve, has_time_overlap
from .catalog import CafeCatalog, CatalogProvider, InMemoryCatalogProvider, YamlCatalogProvider
from .coordinator import (
	MAX_GROUP_SIZE,
	MIN_DURATION_MINUTES,
	AvailabilityCheck,
	AvailableUnits,
	CancellationResult,
	GroupReservationResult,
	Pricing,
	ReservationTransactionCoordinator,
)
from .errors import (
	BookingError,
	CapacityExceeded,
	DependencyFailure,
	InvalidRequest,
	InvalidTransition,
	InvalidWindow,
	NotAuthorized,
	OutOfHours,
	ReservationConflict,
	ResourceInactive,
	ResourceNotFound,
	TransactionAborted,
)
from .events import CompositeEventRecorder, EventRecorder, LoggingEventRecorder
from .ledger import InMemoryLedger, PartitionKey, PartitionTransaction, ReservationLedger, ReservationRecord
from .operating_hours import NormalizedWindow, OperatingWindow, time_to_minutes
from .payments import InMemoryPaymentCollaborator, PaymentCharge, PaymentCollaborator, RefundRequest
from .refund import REFUND_CUTOFF, RefundPolicy
from .yaml_store import ReservationStorageError, YamlEventLog, YamlReservationLedger

__all__ = [
	"find_conflicting_units",
	"free_units",
	"group_by_unit",
	"Interval",
	"can_reserve",
	"has_time_overlap",
	"CafeCatalog",
	"CatalogProvider",
	"InMemoryCatalogProvider",
	"YamlCatalogProvider",
	"MAX_GROUP_SIZE",
	"MIN_DURATION_MINUTES",
	"AvailabilityCheck",
	"AvailableUnits",
	"CancellationResult",
	"GroupReservationResult",
	"Pricing",
	"ReservationTransactionCoordinator",
	"BookingError",
	"CapacityExceeded",
	"DependencyFailure",
	"InvalidRequest",
	"InvalidTransition",
	"InvalidWindow",
	"NotAuthorized",
	"OutOfHours",
	"ReservationConflict",
	"ResourceInactive",
	"ResourceNotFound",
	"TransactionAborted",
	"CompositeEventRecorder",
	"EventRecorder",
	"LoggingEventRecorder",
	"InMemoryLedger",
	"PartitionKey",
	"PartitionTransaction",
	"ReservationLedger",
	"ReservationRecord",
	"NormalizedWindow",
	"OperatingWindow",
	"time_to_minutes",
	"InMemoryPaymentCollaborator",
	"PaymentCharge",
	"PaymentCollaborator",
	"RefundRequest",
	"REFUND_CUTOFF",
	"RefundPolicy",
	"ReservationStorageError",
	"YamlEventLog",
	"YamlReservationLedger",
]
