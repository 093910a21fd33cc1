"""Bounded readiness polling.

``wait_healthy`` always returns within its timeout (plus at most one
per-request timeout): the orchestrator has to make a promote or fallback
decision afterwards, so an endpoint that hangs or never comes up must not
stall the deploy.
"""

from __future__ import annotations

import http.client
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from typing import Protocol

from rollout import __version__
from rollout.output.console import ConsoleProtocol, Style

from .models import ProbeResult

__all__ = ["HealthMonitor", "HealthProbe", "UrllibProbe"]

_MIN_REQUEST_TIMEOUT_SECONDS = 0.5


class HealthProbe(Protocol):
    def probe(self, url: str, timeout: float) -> ProbeResult:
        """Issue one GET; never raises."""
        ...


class UrllibProbe:
    """GET probe over urllib. Redirects are followed; only 2xx is healthy."""

    def __init__(
        self,
        *,
        user_agent: str = f"rollout/{__version__}",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._user_agent = user_agent
        self._clock = clock

    def probe(self, url: str, timeout: float) -> ProbeResult:
        start = self._clock()
        try:
            req = urllib.request.Request(
                url,
                headers={"User-Agent": self._user_agent},
                method="GET",
            )
            with urllib.request.urlopen(req, timeout=timeout) as response:
                status = int(response.status)
        except urllib.error.HTTPError as e:
            return ProbeResult(True, e.code, self._elapsed_ms(start))
        except urllib.error.URLError:
            return ProbeResult(False, None, self._elapsed_ms(start))
        except TimeoutError:
            return ProbeResult(False, None, self._elapsed_ms(start))
        except (OSError, ValueError, http.client.HTTPException):
            return ProbeResult(False, None, self._elapsed_ms(start))
        return ProbeResult(True, status, self._elapsed_ms(start))

    def _elapsed_ms(self, start: float) -> float:
        return (self._clock() - start) * 1000.0


class HealthMonitor:
    """Polls an endpoint at a fixed interval until healthy or out of time."""

    def __init__(
        self,
        *,
        console: ConsoleProtocol,
        probe: HealthProbe | None = None,
        request_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._console = console
        self._probe = probe or UrllibProbe(clock=clock)
        self._request_timeout = request_timeout
        self._clock = clock
        self._sleep = sleep

    def probe_once(self, endpoint: str) -> ProbeResult:
        return self._probe.probe(endpoint, self._request_timeout)

    def wait_healthy(self, endpoint: str, timeout: float, poll_interval: float) -> bool:
        """Wait for the first 2xx from endpoint.

        Each poll waits ``poll_interval`` first (the service was just
        (re)started), then probes with a per-request timeout capped by the
        remaining budget.

        Returns:
            True on the first healthy probe, False once timeout has elapsed.

        Raises:
            ValueError: If timeout or poll_interval is not positive.
        """
        if timeout <= 0 or poll_interval <= 0:
            raise ValueError("timeout and poll_interval must be positive")

        start = self._clock()
        deadline = start + timeout
        polls = 0

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                self._console.warning(
                    f"{endpoint} not healthy after {timeout:g}s ({polls} probes)"
                )
                return False

            self._sleep(min(poll_interval, remaining))
            polls += 1

            budget = max(deadline - self._clock(), _MIN_REQUEST_TIMEOUT_SECONDS)
            result = self._probe.probe(endpoint, min(self._request_timeout, budget))
            elapsed = self._clock() - start
            if result.healthy:
                self._console.success(f"{endpoint} healthy after {elapsed:.0f}s")
                return True

            self._console.print(
                f"waiting for {endpoint}... {elapsed:.0f}s ({_describe(result)})",
                Style.DIM,
            )


def _describe(result: ProbeResult) -> str:
    if not result.reachable:
        return "unreachable"
    return f"HTTP {result.status_code}"
