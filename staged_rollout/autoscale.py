import asyncio
import inspect

import aiohttp

from .logger import get_logger
from .models import Advice, ScaleDirection, ScaleSignal


class StaticMetricSource:
    """Returns a fixed value, or walks through a list of values"""

    def __init__(self, values):
        self.values = list(values) if isinstance(values, (list, tuple)) else [values]
        self.reads = 0

    def __call__(self):
        value = self.values[min(self.reads, len(self.values) - 1)]
        self.reads += 1
        return value


class PrometheusMetricSource:
    """Reads a single instant-vector value from a Prometheus query API"""

    def __init__(self, base_url, query, timeout_s=10.0):
        self.url = base_url.rstrip("/") + "/api/v1/query"
        self.query = query
        self.timeout_s = timeout_s

    async def __call__(self):
        timeout = aiohttp.ClientTimeout(total=self.timeout_s)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.url, params={"query": self.query}) as response:
                response.raise_for_status()
                data = await response.json()
        if data.get("status") != "success" or not data["data"]["result"]:
            raise ValueError(f"no result for query {self.query!r}")
        return float(data["data"]["result"][0]["value"][1])


class AutoscaleMonitor:
    def __init__(self, source, policy):
        self.source = source
        self.policy = policy
        self.logger = get_logger("autoscale")
        self.latest = None
        self._task = None

    def classify(self, value):
        if value > self.policy.scale_up_threshold:
            return ScaleSignal(self.policy.metric, value, self.policy.scale_up_threshold,
                               ScaleDirection.SCALE_UP)
        if value < self.policy.scale_down_threshold:
            return ScaleSignal(self.policy.metric, value, self.policy.scale_down_threshold,
                               ScaleDirection.SCALE_DOWN)
        return ScaleSignal(self.policy.metric, value, self.policy.scale_up_threshold,
                           ScaleDirection.STEADY)

    async def sample(self):
        """Take one metric reading"""
        value = self.source()
        if inspect.isawaitable(value):
            value = await value
        signal = self.classify(float(value))
        self.logger.debug(f"{signal.metric}={signal.value} -> {signal.direction.value}")
        return signal

    @staticmethod
    def advise(signal):
        """Defer promotion while production is already scaling up"""
        if signal is not None and signal.direction == ScaleDirection.SCALE_UP:
            return Advice.DEFER
        return Advice.PROCEED

    async def current_signal(self):
        if self.running and self.latest is not None:
            return self.latest
        return await self.sample()

    @property
    def running(self):
        return self._task is not None and not self._task.done()

    def start(self, interval_s=5.0):
        """Sample in the background, keeping ``latest`` fresh"""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(interval_s))

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self, interval_s):
        while True:
            try:
                self.latest = await self.sample()
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                self.logger.warning(f"Autoscale sample failed: {e}")
            await asyncio.sleep(interval_s)


def monitor_from_policy(policy):
    """Build a Prometheus-backed monitor when the policy names a query"""
    if policy is None or not policy.prometheus_url or not policy.query:
        return None
    return AutoscaleMonitor(PrometheusMetricSource(policy.prometheus_url, policy.query), policy)
