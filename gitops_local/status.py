"""Status information for an Application and the resources it manages.

The status of an Application is an immutable record that is replaced, never
mutated, on every reconcile pass. The store assigns each published record a
monotonically increasing version so readers can tell records apart.
"""

from dataclasses import dataclass, field
import datetime
from enum import StrEnum

from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig

from .exceptions import GitOpsException, InvalidTransition
from .manifest import NamedResource

__all__ = [
    "SyncStatus",
    "HealthStatus",
    "ApplicationPhase",
    "ResourceStatus",
    "Condition",
    "ApplicationStatus",
    "SyncHistoryEntry",
]


class SyncStatus(StrEnum):
    """Whether live state matches desired state."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"


class HealthStatus(StrEnum):
    """Health of a single resource or the aggregate of an Application."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    SUSPENDED = "Suspended"
    MISSING = "Missing"


# Worst wins when aggregating
_HEALTH_ORDER = [
    HealthStatus.HEALTHY,
    HealthStatus.SUSPENDED,
    HealthStatus.PROGRESSING,
    HealthStatus.MISSING,
    HealthStatus.DEGRADED,
]


def aggregate_health(values: list[HealthStatus]) -> HealthStatus:
    """Return the worst health of the values, Healthy when there are none."""
    if not values:
        return HealthStatus.HEALTHY
    return max(values, key=_HEALTH_ORDER.index)


class ApplicationPhase(StrEnum):
    """The states of the reconciliation state machine."""

    UNKNOWN = "Unknown"
    COMPARING = "Comparing"
    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    SYNCING = "Syncing"
    DEGRADED = "Degraded"


_TRANSITIONS: dict[ApplicationPhase, set[ApplicationPhase]] = {
    ApplicationPhase.UNKNOWN: set(),
    # Comparing may fall back to any phase when the source cannot be fetched
    ApplicationPhase.COMPARING: set(ApplicationPhase),
    ApplicationPhase.SYNCED: set(),
    ApplicationPhase.OUT_OF_SYNC: set(),
    ApplicationPhase.SYNCING: {
        ApplicationPhase.SYNCED,
        ApplicationPhase.DEGRADED,
        ApplicationPhase.OUT_OF_SYNC,
    },
    ApplicationPhase.DEGRADED: set(),
}
# Any phase may start a comparison or a sync
_ALWAYS_ALLOWED = {ApplicationPhase.COMPARING, ApplicationPhase.SYNCING}


def check_transition(current: ApplicationPhase, new: ApplicationPhase) -> None:
    """Raise InvalidTransition if the state machine does not allow the change."""
    if new == current or new in _ALWAYS_ALLOWED or new in _TRANSITIONS[current]:
        return
    raise InvalidTransition(f"Invalid phase transition {current} -> {new}")


class ConditionType(StrEnum):
    """Error categories attached to the status of an Application."""

    FETCH_ERROR = "FetchError"
    VALIDATION_ERROR = "ValidationError"
    APPLY_ERROR = "ApplyError"
    DRIFT_ERROR = "DriftError"
    SYNC_ERROR = "SyncError"


class OperationPhase(StrEnum):
    """Outcome of a sync operation."""

    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    TIMEOUT = "Timeout"


class ResultCode(StrEnum):
    """Outcome of a sync operation for a single resource."""

    SYNCED = "Synced"
    PRUNED = "Pruned"
    SYNC_FAILED = "SyncFailed"
    PRUNE_SKIPPED = "PruneSkipped"
    PENDING = "Pending"


class Initiator(StrEnum):
    """What started a sync operation."""

    MANUAL = "manual"
    AUTOMATED = "automated"
    SELF_HEAL = "self-heal"


def utcnow() -> datetime.datetime:
    """Return the current time, timezone aware."""
    return datetime.datetime.now(datetime.timezone.utc)


class _Base(DataClassDictMixin):
    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True)
class Condition(_Base):
    """An error surfaced on the status of an Application."""

    type: ConditionType
    message: str

    @classmethod
    def from_exception(cls, err: GitOpsException) -> "Condition":
        """Create a condition from an error, typed by the error class."""
        try:
            condition_type = ConditionType(type(err).__name__)
        except ValueError:
            condition_type = ConditionType.SYNC_ERROR
        return cls(type=condition_type, message=str(err))

    def __str__(self) -> str:
        return f"{self.type}: {self.message}"


@dataclass(frozen=True)
class ResourceStatus(_Base):
    """Sync and health status of one managed resource."""

    resource_id: NamedResource
    sync_status: SyncStatus
    health: HealthStatus
    message: str | None = None
    requires_pruning: bool = False


@dataclass(frozen=True)
class ResourceResult(_Base):
    """Outcome of applying or pruning one resource during a sync."""

    resource_id: NamedResource
    code: ResultCode
    attempts: int = 0
    message: str | None = None


@dataclass(frozen=True)
class OperationState(_Base):
    """The state of the last sync operation."""

    initiated_by: Initiator
    phase: OperationPhase
    revision: str | None
    started_at: datetime.datetime
    finished_at: datetime.datetime | None = None
    message: str | None = None
    results: list[ResourceResult] = field(default_factory=list)


@dataclass(frozen=True)
class ApplicationStatus(_Base):
    """A versioned snapshot of the status of an Application."""

    phase: ApplicationPhase = ApplicationPhase.UNKNOWN
    sync_status: SyncStatus = SyncStatus.UNKNOWN
    health_status: HealthStatus = HealthStatus.MISSING
    version: int = 0
    revision: str | None = None
    resources: list[ResourceStatus] = field(default_factory=list)
    conditions: list[Condition] = field(default_factory=list)
    operation: OperationState | None = None
    reconciled_at: datetime.datetime | None = None

    def __str__(self) -> str:
        """Return a string representation of the status."""
        text = f"{self.phase} (sync={self.sync_status}, health={self.health_status})"
        if self.conditions:
            return f"{text}: {'; '.join(str(c) for c in self.conditions)}"
        return text


@dataclass(frozen=True)
class SyncHistoryEntry(_Base):
    """A record of one completed sync operation."""

    id: int
    revision: str | None
    initiated_by: Initiator
    phase: OperationPhase
    started_at: datetime.datetime
    finished_at: datetime.datetime
    message: str | None = None
