from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utcnow():
    return datetime.now(timezone.utc)


class Health(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    FAILED = "failed"


class SlotName(str, Enum):
    STAGING = "staging"
    PRODUCTION = "production"


class Phase(str, Enum):
    REQUESTED = "requested"
    STAGING = "staging"
    OBSERVING = "observing"
    PROMOTING = "promoting"
    PROMOTED = "promoted"
    DISCARDING = "discarding"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


TERMINAL_PHASES = frozenset({Phase.PROMOTED, Phase.ROLLED_BACK, Phase.FAILED})


class Outcome(str, Enum):
    PENDING = "pending"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class ErrorKind(str, Enum):
    CONCURRENT_ROLLOUT_REJECTED = "ConcurrentRolloutRejected"
    SLOT_BUSY = "SlotBusy"
    SWAP_PRECONDITION = "SwapPrecondition"
    AUTOSCALE_TIMEOUT = "AutoscaleTimeout"
    HEALTH_CHECK_WINDOW_EXCEEDED = "HealthCheckWindowExceeded"
    CONFIGURATION_INVALID = "ConfigurationInvalid"


class ScaleDirection(str, Enum):
    SCALE_UP = "scale_up"
    SCALE_DOWN = "scale_down"
    STEADY = "steady"


class Advice(str, Enum):
    PROCEED = "proceed"
    DEFER = "defer"


@dataclass
class Slot:
    """A named binding to the artifact version currently held by a slot"""
    name: SlotName
    version: str = None
    deployment_id: str = None  # Owning in-flight deployment (staging) or the promoting one (production)
    health: Health = Health.UNKNOWN
    updated_at: datetime = None
    retired: bool = False  # Demoted production build kept for instant revert

    @property
    def empty(self):
        return self.version is None


@dataclass(frozen=True)
class AuditRecord:
    """One swap or discard, kept forever in the slot manager's audit log"""
    timestamp: datetime
    environment: str
    action: str  # "swap" or "discard"
    previous_version: str
    new_version: str
    actor: str
    deployment_id: str = None


@dataclass(frozen=True)
class StagingHandle:
    environment: str
    version: str
    deployment_id: str
    staged_at: datetime


@dataclass(frozen=True)
class SwapResult:
    swapped: bool
    previous_version: str = None
    new_version: str = None
    record: AuditRecord = None


@dataclass(frozen=True)
class HealthCheckResult:
    endpoint: str
    timestamp: datetime
    passed: bool
    latency_s: float
    status_code: int = None
    error: str = None


@dataclass(frozen=True)
class ScaleSignal:
    metric: str
    value: float
    threshold: float
    direction: ScaleDirection
    sampled_at: datetime = field(default_factory=utcnow)


@dataclass
class HealthPolicy:
    """How a staged build is probed and when it is judged healthy"""
    endpoint: str
    expected_status: tuple = ()  # Empty means any 2xx
    expected_body: str = None  # Substring the response body must contain
    timeout_s: float = 2.0  # Timeout per probe
    interval_s: float = 1.0  # Cadence between probes
    required_passes: int = 3  # Consecutive passes needed for promotion
    failure_threshold: int = 3  # Consecutive failures that end observation
    window_intervals: int = 5  # Intervals after the first probe before the window is exceeded

    def expects(self, status):
        if self.expected_status:
            return status in self.expected_status
        return 200 <= status < 300


@dataclass
class AutoscalePolicy:
    metric: str = "cpu_utilization"
    scale_up_threshold: float = 0.8
    scale_down_threshold: float = 0.3
    ceiling_factor: int = 3  # Hard ceiling, as a multiple of the health window
    prometheus_url: str = None
    query: str = None


@dataclass
class RolloutConfig:
    health: HealthPolicy
    autoscale: AutoscalePolicy = None
    actor: str = "controller"


@dataclass
class Deployment:
    """Status record for one rollout attempt"""
    deployment_id: str
    artifact_ref: str
    environment: str
    created_at: datetime = field(default_factory=utcnow)
    phase: Phase = Phase.REQUESTED
    outcome: Outcome = Outcome.PENDING
    error_kind: ErrorKind = None
    error_detail: str = None
    probes_observed: int = 0
    consecutive_passes: int = 0
    consecutive_failures: int = 0
    autoscale_deferrals: int = 0
    finished_at: datetime = None
    history: list = field(default_factory=list)  # Phase changes and notable events

    @property
    def terminal(self):
        return self.phase in TERMINAL_PHASES

    def to_dict(self):
        return {
            "deployment_id": self.deployment_id,
            "artifact_ref": self.artifact_ref,
            "environment": self.environment,
            "created_at": self.created_at.isoformat(),
            "phase": self.phase.value,
            "outcome": self.outcome.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_detail": self.error_detail,
            "probes_observed": self.probes_observed,
            "autoscale_deferrals": self.autoscale_deferrals,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "history": list(self.history),
        }
