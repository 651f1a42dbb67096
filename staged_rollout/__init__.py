from .models import (
    Advice, AuditRecord, AutoscalePolicy, Deployment, ErrorKind, Health, HealthCheckResult,
    HealthPolicy, Outcome, Phase, RolloutConfig, ScaleDirection, ScaleSignal, Slot, SlotName
)
from .errors import (
    AutoscaleTimeout, ConcurrentRolloutRejected, ConfigurationInvalid,
    HealthCheckWindowExceeded, RolloutError, SlotBusy, SwapPrecondition
)
from .slots import SlotManager
from .prober import HealthProber
from .autoscale import AutoscaleMonitor, PrometheusMetricSource, StaticMetricSource
from .controller import RolloutController
from .engine import RolloutEngine
from .failure import FailureInjector
from .config import load_config

__all__ = [
    "Advice", "AuditRecord", "AutoscalePolicy", "Deployment", "ErrorKind", "Health",
    "HealthCheckResult", "HealthPolicy", "Outcome", "Phase", "RolloutConfig",
    "ScaleDirection", "ScaleSignal", "Slot", "SlotName",
    "RolloutError", "ConcurrentRolloutRejected", "SlotBusy", "SwapPrecondition",
    "AutoscaleTimeout", "HealthCheckWindowExceeded", "ConfigurationInvalid",
    "SlotManager", "HealthProber", "AutoscaleMonitor", "PrometheusMetricSource",
    "StaticMetricSource", "RolloutController", "RolloutEngine", "FailureInjector",
    "load_config",
]
