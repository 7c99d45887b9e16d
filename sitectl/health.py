"""
Readiness polling.

Probes an HTTP endpoint (or runs a command) until it reports success or the
attempt budget runs out. Each attempt has its own timeout, so the total wait is
bounded by interval * (attempts - 1) + timeout * attempts.
"""

import logging
import subprocess
import time
from typing import Callable, Optional

import httpx

from .models import HealthCheckPolicy, HealthResult

logger = logging.getLogger(__name__)


class HealthChecker:
    """Polls a readiness probe with bounded retries."""

    def __init__(
        self,
        transport: httpx.BaseTransport = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    def probe_once(self, policy: HealthCheckPolicy, client: httpx.Client = None) -> tuple[bool, Optional[str]]:
        """Run a single probe attempt. Returns (success, error description)."""
        if not policy.is_http:
            return self._probe_command(policy)

        if client is None:
            with httpx.Client(transport=self._transport) as own_client:
                return self._probe_http(policy, own_client)
        return self._probe_http(policy, client)

    def _probe_http(self, policy: HealthCheckPolicy, client: httpx.Client) -> tuple[bool, Optional[str]]:
        try:
            response = client.get(policy.target, timeout=policy.timeout)
        except httpx.TimeoutException:
            return False, f"timed out after {policy.timeout}s"
        except httpx.TransportError as e:
            # Connection refused, DNS failure, reset...
            return False, f"connection error: {e}"

        if response.is_success:
            return True, None
        return False, f"HTTP {response.status_code}"

    def _probe_command(self, policy: HealthCheckPolicy) -> tuple[bool, Optional[str]]:
        try:
            result = subprocess.run(
                policy.target,
                capture_output=True,
                timeout=policy.timeout,
            )
        except subprocess.TimeoutExpired:
            return False, f"timed out after {policy.timeout}s"
        except OSError as e:
            return False, str(e)

        if result.returncode == 0:
            return True, None
        return False, f"exit code {result.returncode}"

    def await_ready(self, policy: HealthCheckPolicy) -> HealthResult:
        """Probe until the first success or until max_attempts failures.

        httpx applies the timeout per phase (connect, read, write, pool), so a
        single attempt can outlast policy.timeout. Polling also stops once the
        policy.max_wait budget is spent; the result then has deadline_reached set
        and fewer than max_attempts attempts.
        """
        target = policy.describe()
        logger.info(f"Performing health check on {target}...")

        started = self._clock()
        deadline = started + policy.max_wait
        last_error = None
        attempt = 0
        deadline_reached = False

        with httpx.Client(transport=self._transport) as client:
            while attempt < policy.max_attempts:
                attempt += 1
                ok, last_error = self.probe_once(policy, client)
                if ok:
                    elapsed = self._clock() - started
                    logger.info(f"Health check passed on attempt {attempt} ({elapsed:.1f}s)")
                    return HealthResult(ready=True, attempts=attempt, elapsed=elapsed)

                if attempt >= policy.max_attempts:
                    break
                if self._clock() + policy.interval > deadline:
                    logger.warning(
                        f"Health check deadline of {policy.max_wait:g}s reached after "
                        f"{attempt}/{policy.max_attempts} attempts"
                    )
                    deadline_reached = True
                    break

                logger.info(
                    f"Health check attempt {attempt}/{policy.max_attempts} failed ({last_error}), "
                    f"retrying in {policy.interval:g} seconds..."
                )
                self._sleep(policy.interval)

        elapsed = self._clock() - started
        logger.error(f"Health check failed after {attempt} attempts: {last_error}")
        return HealthResult(
            ready=False,
            attempts=attempt,
            elapsed=elapsed,
            last_error=last_error,
            deadline_reached=deadline_reached,
        )
