import asyncio
import time
from urllib.parse import urlsplit

import aiohttp

from .errors import ConfigurationInvalid
from .logger import get_logger
from .models import HealthCheckResult, utcnow


def validate_endpoint(endpoint):
    """Reject endpoints that can never be probed"""
    if not isinstance(endpoint, str) or not endpoint.strip():
        raise ConfigurationInvalid(f"health endpoint must be a non-empty URL, got {endpoint!r}")
    try:
        parts = urlsplit(endpoint)
        parts.port  # Raises ValueError on a garbage port
    except ValueError as e:
        raise ConfigurationInvalid(f"unparseable health endpoint {endpoint!r}: {e}") from e
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise ConfigurationInvalid(f"health endpoint must be an http(s) URL, got {endpoint!r}")
    return parts


def validate_policy(policy):
    validate_endpoint(policy.endpoint)
    for name in ("timeout_s", "interval_s"):
        value = getattr(policy, name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ConfigurationInvalid(f"{name} must be a number, got {value!r}")
    if policy.timeout_s <= 0:
        raise ConfigurationInvalid("timeout_s must be > 0")
    if policy.interval_s < 0:
        raise ConfigurationInvalid("interval_s must be >= 0")
    for name in ("required_passes", "failure_threshold", "window_intervals"):
        value = getattr(policy, name)
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise ConfigurationInvalid(f"{name} must be an integer >= 1, got {value!r}")
    # A window of k intervals holds k + 1 probes
    if policy.window_intervals + 1 < policy.required_passes:
        raise ConfigurationInvalid("window_intervals must leave room for required_passes probes")
    for status in policy.expected_status:
        if isinstance(status, bool) or not isinstance(status, int) or not 100 <= status <= 599:
            raise ConfigurationInvalid(f"invalid expected status: {status!r}")


class HealthProber:
    """Runs HTTP health checks against a staged build.

    An unhealthy target is reported as a failed result. Only configuration
    that can never work raises.
    """

    def __init__(self, session=None, failure_injector=None):
        self.failure_injector = failure_injector
        self.logger = get_logger("prober")
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def close(self):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def check(self, endpoint, policy):
        """Probe the endpoint once, honoring the policy timeout"""
        validate_endpoint(endpoint)
        if not policy.timeout_s or policy.timeout_s <= 0:
            raise ConfigurationInvalid("timeout_s must be > 0")

        started = time.monotonic()
        try:
            result = await asyncio.wait_for(self._probe(endpoint, policy, started),
                                            timeout=policy.timeout_s)
        except asyncio.TimeoutError:
            result = self._result(endpoint, started, False,
                                  error=f"timed out after {policy.timeout_s}s")

        if result.passed:
            self.logger.debug(f"Probe passed for {endpoint} in {result.latency_s:.3f}s")
        else:
            self.logger.debug(f"Probe failed for {endpoint}: {result.error}")
        return result

    async def watch(self, endpoint, policy, cadence=None):
        """Yield health results forever, one per cadence interval.

        Every call starts a fresh stream; the consumer decides when to stop
        and should close it.
        """
        validate_endpoint(endpoint)
        interval = policy.interval_s if cadence is None else cadence
        while True:
            yield await self.check(endpoint, policy)
            await asyncio.sleep(interval)

    async def _probe(self, endpoint, policy, started):
        injector = self.failure_injector
        if injector is not None and injector.scripted(endpoint):
            delay = injector.delay_seconds()
            if delay > 0:
                await asyncio.sleep(delay)
            outcome = injector.next_outcome(endpoint)
            if outcome is not None:
                return self._result(endpoint, started, outcome,
                                    status_code=200 if outcome else 503,
                                    error=None if outcome else "Simulated probe failure")

        session = self._get_session()
        try:
            async with session.get(endpoint) as response:
                final_url = str(response.url)
                if not policy.expects(response.status):
                    return self._result(final_url, started, False, response.status,
                                        f"unexpected status {response.status}")
                if policy.expected_body is not None:
                    body = await response.text(errors="replace")
                    if policy.expected_body not in body:
                        return self._result(final_url, started, False, response.status,
                                            "response body did not match")
                return self._result(final_url, started, True, response.status)
        except (aiohttp.ClientError, OSError) as e:
            return self._result(endpoint, started, False, error=str(e) or type(e).__name__)

    @staticmethod
    def _result(endpoint, started, passed, status_code=None, error=None):
        return HealthCheckResult(
            endpoint=endpoint,
            timestamp=utcnow(),
            passed=passed,
            latency_s=time.monotonic() - started,
            status_code=status_code,
            error=error,
        )
