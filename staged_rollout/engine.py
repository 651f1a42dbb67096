import asyncio
import uuid

from .autoscale import monitor_from_policy
from .controller import RolloutController
from .errors import ConcurrentRolloutRejected
from .logger import get_logger
from .models import Deployment, Outcome, Phase, utcnow
from .prober import HealthProber
from .slots import SlotManager


class RolloutEngine:
    """Entry point for rollouts across environments.

    Keeps every deployment record, allows at most one in-flight rollout per
    environment and gives each rollout its own controller.
    """

    def __init__(self, slot_managers=None, prober=None, autoscale=None, failure_injector=None):
        self.slot_managers = dict(slot_managers or {})
        self.prober = prober if prober else HealthProber(failure_injector=failure_injector)
        self.autoscale = autoscale
        self.logger = get_logger("engine")
        self.deployments = {}
        self._in_flight = {}  # environment -> deployment_id
        self._controllers = {}
        self._tasks = {}
        self._listeners = []

    def subscribe(self, listener):
        """Register ``listener(deployment, event)`` for every state-change event"""
        self._listeners.append(listener)

    def slots(self, environment):
        if environment not in self.slot_managers:
            self.slot_managers[environment] = SlotManager(environment)
        return self.slot_managers[environment]

    def in_flight(self, environment):
        deployment_id = self._in_flight.get(environment)
        return self.deployments.get(deployment_id) if deployment_id else None

    def status(self, deployment_id):
        return self.deployments.get(deployment_id)

    def start(self, artifact_ref, environment, config, autoscale=None):
        """Register a rollout and schedule it on the running event loop"""
        deployment = Deployment(deployment_id=uuid.uuid4().hex[:12], artifact_ref=artifact_ref,
                                environment=environment)

        # No await between this check and the registration below
        current = self._in_flight.get(environment)
        if current is not None:
            self._reject(deployment, current)
            self.deployments[deployment.deployment_id] = deployment
            return deployment

        self._in_flight[environment] = deployment.deployment_id
        self.deployments[deployment.deployment_id] = deployment
        if autoscale is None:
            autoscale = self.autoscale or monitor_from_policy(getattr(config, "autoscale", None))
        controller = RolloutController(deployment, config, self.slots(environment), self.prober,
                                       autoscale=autoscale, listener=self._emit)
        self._controllers[deployment.deployment_id] = controller
        task = asyncio.get_running_loop().create_task(self._run(controller))
        self._tasks[deployment.deployment_id] = task
        return deployment

    async def deploy(self, artifact_ref, environment, config, autoscale=None):
        """Run one rollout to a terminal state"""
        deployment = self.start(artifact_ref, environment, config, autoscale=autoscale)
        return await self.wait(deployment.deployment_id)

    async def wait(self, deployment_id):
        task = self._tasks.get(deployment_id)
        if task is not None:
            await asyncio.shield(task)
        return self.deployments[deployment_id]

    def abort(self, deployment_id, reason="operator abort"):
        controller = self._controllers.get(deployment_id)
        if controller is None:
            return False
        return controller.abort(reason)

    async def close(self):
        await self.prober.close()

    async def _run(self, controller):
        deployment = controller.deployment
        try:
            await controller.run()
        finally:
            if self._in_flight.get(deployment.environment) == deployment.deployment_id:
                del self._in_flight[deployment.environment]
            self._controllers.pop(deployment.deployment_id, None)
            self.logger.debug(f"Rollout lock released for {deployment.environment}")
        return deployment

    def _reject(self, deployment, current):
        error = ConcurrentRolloutRejected(
            f"deployment {current} is already in flight for {deployment.environment}"
        )
        self.logger.error(error.detail)
        deployment.phase = Phase.FAILED
        deployment.outcome = Outcome.FAILED
        deployment.error_kind = error.kind
        deployment.error_detail = error.detail
        deployment.finished_at = utcnow()
        entry = {"event": "phase", "at": deployment.finished_at.isoformat(),
                 "previous": Phase.REQUESTED.value, "phase": Phase.FAILED.value}
        deployment.history.append(entry)
        self._emit(deployment, entry)

    def _emit(self, deployment, event):
        for listener in self._listeners:
            try:
                listener(deployment, event)
            except Exception:
                self.logger.exception(f"Listener {listener!r} failed on {event['event']} "
                                      f"for {deployment.deployment_id}")
