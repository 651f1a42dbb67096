from .models import ErrorKind


class RolloutError(Exception):
    """Base class for errors that end a single deployment"""
    kind: ErrorKind = None

    def __init__(self, message=None):
        super().__init__(message or self.kind.value)
        self.detail = message or self.kind.value


class ConcurrentRolloutRejected(RolloutError):
    kind = ErrorKind.CONCURRENT_ROLLOUT_REJECTED


class SlotBusy(RolloutError):
    kind = ErrorKind.SLOT_BUSY


class SwapPrecondition(RolloutError):
    kind = ErrorKind.SWAP_PRECONDITION


class AutoscaleTimeout(RolloutError):
    kind = ErrorKind.AUTOSCALE_TIMEOUT


class HealthCheckWindowExceeded(RolloutError):
    kind = ErrorKind.HEALTH_CHECK_WINDOW_EXCEEDED


class ConfigurationInvalid(RolloutError):
    kind = ErrorKind.CONFIGURATION_INVALID
