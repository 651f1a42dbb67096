import asyncio
from dataclasses import dataclass
from urllib.parse import urlsplit

import aiohttp

from .autoscale import AutoscaleMonitor
from .config import validate_config
from .errors import (
    AutoscaleTimeout, ConfigurationInvalid, HealthCheckWindowExceeded,
    RolloutError, SlotBusy, SwapPrecondition
)
from .logger import get_logger
from .models import Advice, ErrorKind, Health, Outcome, Phase, utcnow

TRANSITIONS = {
    Phase.REQUESTED: {Phase.STAGING, Phase.FAILED},
    Phase.STAGING: {Phase.OBSERVING, Phase.DISCARDING, Phase.FAILED},
    Phase.OBSERVING: {Phase.PROMOTING, Phase.DISCARDING, Phase.FAILED},
    Phase.PROMOTING: {Phase.PROMOTED, Phase.FAILED},
    Phase.DISCARDING: {Phase.ROLLED_BACK, Phase.FAILED},
}

ABORTABLE = (Phase.REQUESTED, Phase.STAGING, Phase.OBSERVING)

# Errors that still fail the deployment after staging has been discarded
FAIL_AFTER_DISCARD = (ErrorKind.AUTOSCALE_TIMEOUT, ErrorKind.CONFIGURATION_INVALID)

DEFAULT_CEILING_FACTOR = 3

_EXHAUSTED = object()


@dataclass
class Verdict:
    promote: bool
    reason: str
    error: RolloutError = None


class RolloutController:
    """Drives one deployment from staging to promotion or rollback.

    A controller is used for exactly one deployment. All of its transitions
    run inside ``run()``; ``abort()`` only raises a flag that ``run()`` reads.
    """

    def __init__(self, deployment, config, slots, prober, autoscale=None, listener=None):
        self.deployment = deployment
        self.config = config
        self.slots = slots
        self.prober = prober
        self.autoscale = autoscale
        self.listener = listener
        self.logger = get_logger("controller")
        self._abort = asyncio.Event()
        self._abort_reason = None

    def abort(self, reason="operator abort"):
        """Ask the rollout to stop and discard staging.

        Ignored once promotion has started.
        """
        if self.deployment.phase not in ABORTABLE:
            self.logger.info(f"Ignoring abort for {self.deployment.deployment_id} "
                             f"in phase {self.deployment.phase.value}")
            return False
        self._abort_reason = reason
        self._abort.set()
        self._record("abort_requested", reason=reason)
        return True

    async def run(self):
        d = self.deployment
        try:
            await self._run()
        except asyncio.CancelledError:
            if not d.terminal:
                self._release_staging()
                self._finish(Phase.FAILED, Outcome.FAILED, detail="rollout task cancelled")
            raise
        except Exception as e:
            self.logger.exception(f"Unexpected error in deployment {d.deployment_id}")
            if not d.terminal:
                self._release_staging()
                self._finish(Phase.FAILED, Outcome.FAILED, detail=f"unexpected error: {e}")
        return d

    async def _run(self):
        d = self.deployment
        self.logger.info(f"Rollout {d.deployment_id} requested: {d.artifact_ref} -> {d.environment}")
        self._record("requested", artifact_ref=d.artifact_ref)

        try:
            validate_config(self.config)
        except ConfigurationInvalid as e:
            self._fail(e)
            return

        self._transition(Phase.STAGING)
        try:
            self.slots.stage(d.artifact_ref, d.deployment_id, actor=self.config.actor)
        except SlotBusy as e:
            self._fail(e)
            return

        if self._abort.is_set():
            await self._discard(Verdict(False, self._abort_reason))
            return

        self._transition(Phase.OBSERVING)
        verdict = await self._observe()
        if verdict.promote and self._abort.is_set():
            # Aborted while the autoscale advice was pending
            verdict = Verdict(False, self._abort_reason)
        if verdict.promote:
            self._promote()
        else:
            await self._discard(verdict)

    async def _observe(self):
        d = self.deployment
        policy = self.config.health
        window = policy.window_intervals
        factor = self.config.autoscale.ceiling_factor if self.config.autoscale else DEFAULT_CEILING_FACTOR
        # The opening probe plus one per interval
        limit = window + 1
        expected = _origin(policy.endpoint)

        stream = self.prober.watch(policy.endpoint, policy)
        try:
            while True:
                try:
                    result = await self._next_result(stream)
                except ConfigurationInvalid as e:
                    return Verdict(False, "invalid health configuration", e)
                if self._abort.is_set():
                    return Verdict(False, self._abort_reason)
                if result is _EXHAUSTED:
                    return Verdict(False, "health stream ended",
                                   HealthCheckWindowExceeded("health stream ended before a verdict"))

                d.probes_observed += 1
                if _origin(result.endpoint) != expected:
                    return Verdict(False, "health endpoint changed", ConfigurationInvalid(
                        f"health endpoint moved from {policy.endpoint} to {result.endpoint}"))

                if result.passed:
                    d.consecutive_passes += 1
                    d.consecutive_failures = 0
                    self.slots.mark_health(Health.HEALTHY)
                else:
                    d.consecutive_failures += 1
                    d.consecutive_passes = 0
                    self.logger.warning(f"Probe {d.probes_observed} failed for {d.deployment_id}: "
                                        f"{result.error} ({d.consecutive_failures}/{policy.failure_threshold})")
                    self.slots.mark_health(Health.DEGRADED)
                self._record("probe", tick=d.probes_observed, passed=result.passed,
                             latency_s=round(result.latency_s, 4), error=result.error)

                if d.consecutive_failures >= policy.failure_threshold:
                    self.slots.mark_health(Health.FAILED)
                    return Verdict(False, f"{d.consecutive_failures} consecutive probe failures")

                if d.consecutive_passes >= policy.required_passes:
                    if await self._advice() == Advice.PROCEED:
                        return Verdict(True, f"{d.consecutive_passes} consecutive probe passes")
                    d.autoscale_deferrals += 1
                    limit = window * factor + 1
                    self._record("autoscale_defer", tick=d.probes_observed, limit=limit)
                    self.logger.info(f"Autoscale deferred promotion of {d.deployment_id} "
                                     f"(probe {d.probes_observed}, ceiling {limit})")

                if d.probes_observed >= limit:
                    if d.consecutive_passes >= policy.required_passes:
                        return Verdict(False, "autoscale never settled", AutoscaleTimeout(
                            f"production still scaling after {d.probes_observed} probes"))
                    return Verdict(False, "observation window exceeded", HealthCheckWindowExceeded(
                        f"{policy.required_passes} consecutive passes not seen within {limit} probes"))
        finally:
            await stream.aclose()

    async def _next_result(self, stream):
        """Wait for the next probe, returning early if an abort arrives"""
        async def pull():
            try:
                return await stream.__anext__()
            except StopAsyncIteration:
                return _EXHAUSTED

        next_task = asyncio.ensure_future(pull())
        abort_task = asyncio.ensure_future(self._abort.wait())
        try:
            await asyncio.wait({next_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (next_task, abort_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(next_task, abort_task, return_exceptions=True)

        if self._abort.is_set() or next_task.cancelled():
            return None
        return next_task.result()

    async def _advice(self):
        if self.autoscale is None:
            return Advice.PROCEED
        try:
            signal = await self.autoscale.current_signal()
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            # Advisory only: an unreadable metric never blocks promotion
            self.logger.warning(f"Autoscale signal unavailable, proceeding: {e}")
            return Advice.PROCEED
        advice = AutoscaleMonitor.advise(signal)
        self._record("autoscale_advice", advice=advice.value, direction=signal.direction.value,
                     value=signal.value)
        return advice

    def _promote(self):
        d = self.deployment
        self._transition(Phase.PROMOTING)
        try:
            result = self.slots.swap(actor=self.config.actor, deployment_id=d.deployment_id)
        except SwapPrecondition as e:
            # Staging stays as-is so an operator can inspect it
            self._fail(e)
            return
        self._record("swapped", previous_version=result.previous_version,
                     new_version=result.new_version)
        self._finish(Phase.PROMOTED, Outcome.PROMOTED)
        self.logger.info(f"SUCCESS: {d.artifact_ref} promoted to production in {d.environment}")

    async def _discard(self, verdict):
        d = self.deployment
        self._transition(Phase.DISCARDING, reason=verdict.reason)
        if self.slots.staging.deployment_id == d.deployment_id:
            self.slots.discard(actor=self.config.actor)

        error = verdict.error
        if error is not None and error.kind in FAIL_AFTER_DISCARD:
            self._fail(error)
            return
        self._finish(Phase.ROLLED_BACK, Outcome.ROLLED_BACK,
                     kind=error.kind if error else None,
                     detail=error.detail if error else verdict.reason)
        self.logger.warning(f"ROLLED BACK: {d.artifact_ref} discarded from {d.environment} "
                            f"({verdict.reason})")

    def _release_staging(self):
        """Free a staging slot this deployment still holds"""
        d = self.deployment
        if d.phase == Phase.PROMOTING:
            return
        if self.slots.staging.deployment_id == d.deployment_id:
            self.slots.discard(actor=self.config.actor)

    def _fail(self, error):
        self._finish(Phase.FAILED, Outcome.FAILED, kind=error.kind, detail=error.detail)
        self.logger.error(f"Deployment {self.deployment.deployment_id} failed: "
                          f"{error.kind.value}: {error.detail}")

    def _finish(self, phase, outcome, kind=None, detail=None):
        d = self.deployment
        d.error_kind = kind
        d.error_detail = detail
        self._transition(phase)
        d.outcome = outcome
        d.finished_at = utcnow()

    def _transition(self, phase, **extra):
        d = self.deployment
        if phase not in TRANSITIONS.get(d.phase, ()):
            raise RuntimeError(f"illegal transition {d.phase.value} -> {phase.value}")
        previous = d.phase
        d.phase = phase
        self.logger.info(f"Deployment {d.deployment_id}: {previous.value} -> {phase.value}")
        self._record("phase", previous=previous.value, phase=phase.value, **extra)

    def _record(self, event, **fields):
        entry = {"event": event, "at": utcnow().isoformat(), **fields}
        self.deployment.history.append(entry)
        if self.listener is not None:
            self.listener(self.deployment, entry)


def _origin(url):
    parts = urlsplit(url)
    return parts.scheme, parts.hostname, parts.port
