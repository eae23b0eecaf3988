"""
Data classes shared by the resolver, index builder, orchestrator and report.

Records are snapshots of what a backing service returned at fetch time. Nothing
here is ever sent back to a service; only deletes and actions keyed by
native_id are.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from .errors import IdentityValidationError

SERIAL_TAG = '[SerialNumber]'


class ServiceKind(Enum):
    REGISTRY = 'registry'
    MANAGEMENT = 'management'
    DIRECTORY = 'directory'

    @property
    def label(self):
        return SERVICE_LABELS[self]


SERVICE_LABELS = {
    ServiceKind.REGISTRY: 'Autopilot',
    ServiceKind.MANAGEMENT: 'Intune',
    ServiceKind.DIRECTORY: 'Entra ID',
}

# Management layer first, identity layer last
DELETION_ORDER = (ServiceKind.MANAGEMENT, ServiceKind.REGISTRY, ServiceKind.DIRECTORY)


class ManagementState(Enum):
    MANAGED = 'managed'
    RETIRE_PENDING = 'retirePending'
    RETIRE_FAILED = 'retireFailed'
    WIPE_PENDING = 'wipePending'
    WIPE_FAILED = 'wipeFailed'
    UNHEALTHY = 'unhealthy'
    DELETE_PENDING = 'deletePending'
    RETIRE_ISSUED = 'retireIssued'
    WIPE_ISSUED = 'wipeIssued'
    WIPE_CANCELED = 'wipeCanceled'
    RETIRE_CANCELED = 'retireCanceled'
    DISCOVERED = 'discovered'
    OTHER = 'other'

    @classmethod
    def parse(cls, value):
        if not value:
            return None
        for state in cls:
            if state.value.lower() == str(value).lower():
                return state
        return cls.OTHER

    @property
    def is_pending(self):
        return self in (
            ManagementState.WIPE_PENDING,
            ManagementState.RETIRE_PENDING,
            ManagementState.DELETE_PENDING,
            ManagementState.WIPE_ISSUED,
            ManagementState.RETIRE_ISSUED,
        )


def normalize_serial(serial: Optional[str]) -> Optional[str]:
    if serial is None:
        return None
    serial = str(serial).strip()
    return serial.upper() or None


def normalize_name(name: Optional[str]) -> Optional[str]:
    if name is None:
        return None
    name = str(name).strip()
    return name.lower() or None


@dataclass(frozen=True)
class DeviceRecord:
    """One device entity as a single backing service reported it"""
    service: ServiceKind
    native_id: str
    display_name: Optional[str] = None
    serial_number: Optional[str] = None
    management_state: Optional[ManagementState] = None
    physical_ids: Tuple[str, ...] = ()
    raw: Dict = field(default_factory=dict, compare=False, repr=False, hash=False)

    @property
    def embedded_serial(self) -> Optional[str]:
        """Serial carried in the multi-valued physicalIds field, if any.

        Entries look like ``[SerialNumber]:C02XK0AAJG5H``; the directory service
        has no other source of serial data.
        """
        for entry in self.physical_ids:
            if not entry:
                continue
            if entry.upper().startswith(SERIAL_TAG.upper()):
                value = entry[len(SERIAL_TAG):].lstrip(':').strip()
                if value:
                    return value
        return None

    @property
    def effective_serial(self) -> Optional[str]:
        return self.serial_number or self.embedded_serial

    def describe(self):
        return f"{self.display_name or '<no name>'} | {self.effective_serial or '<no serial>'} | {self.native_id}"


@dataclass(frozen=True)
class DeviceIdentity:
    """Partial identity an operator supplies: name, serial, or both"""
    name: Optional[str] = None
    serial: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'name', (self.name or '').strip() or None)
        object.__setattr__(self, 'serial', (self.serial or '').strip() or None)

    @property
    def is_empty(self):
        return not self.name and not self.serial

    def validate(self):
        if self.is_empty:
            raise IdentityValidationError('A device name or serial number is required')
        return self

    def __str__(self):
        parts = []
        if self.name:
            parts.append(self.name)
        if self.serial:
            parts.append(f"serial {self.serial}")
        return ' / '.join(parts) or '<empty identity>'


@dataclass
class ResolvedDevice:
    """Per-service candidate records for one identity"""
    identity: DeviceIdentity
    records: Dict[ServiceKind, List[DeviceRecord]] = field(default_factory=dict)
    matched_by: Dict[ServiceKind, Optional[str]] = field(default_factory=dict)
    low_confidence: set = field(default_factory=set)

    def get(self, service: ServiceKind) -> List[DeviceRecord]:
        return self.records.get(service, [])

    def found(self, service: ServiceKind) -> bool:
        return bool(self.get(service))

    @property
    def found_anywhere(self):
        return any(self.records.get(service) for service in ServiceKind)

    def lookup_identity(self) -> DeviceIdentity:
        """Identity enriched with whatever serial/name the resolved records carry.

        Used by verification so that a name-only request can still be polled by
        serial once a serial is known.
        """
        name = self.identity.name
        serial = self.identity.serial
        for service in DELETION_ORDER:
            for record in self.get(service):
                if not serial and record.serial_number:
                    serial = record.serial_number
                if not name and record.display_name:
                    name = record.display_name
        return DeviceIdentity(name=name, serial=serial)


@dataclass(frozen=True)
class IndexRow:
    registry: DeviceRecord
    management: Optional[DeviceRecord] = None
    management_match: Optional[str] = None
    directory: Optional[DeviceRecord] = None

    @property
    def is_orphan(self):
        return self.management is None

    @property
    def device_name(self):
        if self.management and self.management.display_name:
            return self.management.display_name
        return self.registry.display_name


@dataclass(frozen=True)
class CrossServiceIndex:
    """Read-only snapshot built from exactly one full listing per service"""
    registry: Tuple[DeviceRecord, ...]
    management_by_serial: Dict[str, DeviceRecord]
    management_by_name: Dict[str, DeviceRecord]
    directory_by_name: Dict[str, Tuple[DeviceRecord, ...]]
    rows: Tuple[IndexRow, ...]
    built_at: datetime


class ErrorClass(Enum):
    NONE = 'none'
    ALREADY_REMOVED = 'already_removed'
    ALREADY_QUEUED = 'already_queued'
    CONFLICT = 'conflict'
    UNKNOWN = 'unknown'


@dataclass(frozen=True)
class OperationOutcome:
    """Normalized result of one delete/action call against one record"""
    service: ServiceKind
    found: bool
    success: bool
    error_class: ErrorClass = ErrorClass.NONE
    message: Optional[str] = None
    native_id: Optional[str] = None
    dry_run: bool = False

    @property
    def is_hard_failure(self):
        return not self.success

    @property
    def sent(self):
        """True when a call was accepted (or would have been, under dry run)"""
        return self.found and self.success


@dataclass
class ServiceOutcome:
    """All per-record outcomes of one service for one device"""
    service: ServiceKind
    outcomes: List[OperationOutcome] = field(default_factory=list)

    @property
    def found(self):
        return any(outcome.found for outcome in self.outcomes)

    @property
    def success(self):
        return all(outcome.success for outcome in self.outcomes)

    @property
    def partial(self):
        return self.found and not self.success and any(outcome.success for outcome in self.outcomes)

    @property
    def failures(self) -> List[OperationOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    @property
    def messages(self) -> List[str]:
        return [
            outcome.message for outcome in self.outcomes
            if outcome.message and outcome.error_class in (ErrorClass.UNKNOWN, ErrorClass.CONFLICT)
        ]


@dataclass(frozen=True)
class VerificationResult:
    confirmed: FrozenSet[ServiceKind] = frozenset()
    timed_out: bool = False
    pending: FrozenSet[ServiceKind] = frozenset()
    skipped: bool = False
    elapsed: float = 0.0


class DeviceStatus(Enum):
    SUCCEEDED = 'succeeded'
    PARTIAL = 'partial'
    FAILED = 'failed'
    ABORTED = 'aborted'
    NOT_FOUND = 'not_found'
    TIMED_OUT = 'timed_out'


@dataclass
class DeviceReconciliationResult:
    identity: DeviceIdentity
    targets: Tuple[ServiceKind, ...] = ()
    outcomes: Dict[ServiceKind, ServiceOutcome] = field(default_factory=dict)
    wipe: Optional[ServiceOutcome] = None
    wipe_verification: Optional[VerificationResult] = None
    verification: Optional[VerificationResult] = None
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    elapsed: float = 0.0
    aborted: bool = False
    error: Optional[str] = None

    def outcome(self, service: ServiceKind) -> Optional[ServiceOutcome]:
        return self.outcomes.get(service)

    @property
    def status(self) -> DeviceStatus:
        if self.aborted:
            return DeviceStatus.ABORTED
        outcomes = list(self.outcomes.values())
        if any(o.partial for o in outcomes):
            return DeviceStatus.PARTIAL
        if any(not o.success for o in outcomes):
            if any(o.found and o.success for o in outcomes):
                return DeviceStatus.PARTIAL
            return DeviceStatus.FAILED
        if outcomes and not any(o.found for o in outcomes):
            return DeviceStatus.NOT_FOUND
        if self.verification and self.verification.timed_out:
            return DeviceStatus.TIMED_OUT
        return DeviceStatus.SUCCEEDED

    @property
    def verified_removed(self) -> Dict[ServiceKind, bool]:
        confirmed = self.verification.confirmed if self.verification else frozenset()
        return {service: service in confirmed for service in self.targets}

    def finish(self, finished_at: Optional[datetime] = None, elapsed: Optional[float] = None):
        self.finished_at = finished_at or datetime.now()
        if elapsed is not None:
            self.elapsed = elapsed
        else:
            self.elapsed = (self.finished_at - self.started_at).total_seconds()
        return self
