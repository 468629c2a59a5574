from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from threading import Event
from typing import Any, Callable

import httpx

from .descriptors import HealthCheck, ServiceDescriptor
from .errors import HealthTimeoutError, ProbeTransportError, ServiceUnhealthyError


@dataclass(frozen=True)
class ProbeResult:
    healthy: bool
    detail: str
    latency_ms: float | None = None
    status_code: int | None = None
    # True when no HTTP answer arrived at all (port not bound yet, DNS, timeout).
    transport_error: bool = False


class WaitResult(str, enum.Enum):
    HEALTHY = "healthy"
    CANCELLED = "cancelled"


# Predicate: (check, response) -> (healthy, detail)
Predicate = Callable[[HealthCheck, httpx.Response], tuple[bool, str]]


def _status_predicate(check: HealthCheck, resp: httpx.Response) -> tuple[bool, str]:
    if resp.status_code == check.expected_status:
        return True, "Healthy"
    return False, f"HTTP {resp.status_code}"


def _any_2xx_predicate(check: HealthCheck, resp: httpx.Response) -> tuple[bool, str]:
    if 200 <= resp.status_code < 300:
        return True, "Healthy"
    return False, f"HTTP {resp.status_code}"


def _json_status_predicate(check: HealthCheck, resp: httpx.Response) -> tuple[bool, str]:
    """Expected JSON: {"status": "healthy"}."""
    if resp.status_code != check.expected_status:
        return False, f"HTTP {resp.status_code}"
    try:
        data = resp.json()
    except ValueError:
        return False, "Invalid JSON"
    if isinstance(data, dict) and data.get("status") == "healthy":
        return True, "Healthy"
    return False, f"Unhealthy payload: {data!r}"


_PREDICATES: dict[str, Predicate] = {
    "status": _status_predicate,
    "2xx": _any_2xx_predicate,
    "json_status": _json_status_predicate,
}


def register_predicate(name: str, fn: Predicate) -> None:
    _PREDICATES[name] = fn


def get_predicate(name: str) -> Predicate:
    try:
        return _PREDICATES[name]
    except KeyError:
        raise ValueError(f"Unknown health predicate '{name}'. Known: {sorted(_PREDICATES)}") from None


def probe_http(check: HealthCheck, timeout_s: float | None = None, transport: Any = None) -> ProbeResult:
    """Call a service health endpoint once."""
    predicate = get_predicate(check.predicate)
    timeout_s = check.timeout_s if timeout_s is None else timeout_s
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(check.url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        ok, detail = predicate(check, resp)
        return ProbeResult(ok, detail, latency_ms, resp.status_code)
    except httpx.TransportError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return ProbeResult(False, f"No response: {type(e).__name__}", latency_ms, transport_error=True)


Probe = Callable[[HealthCheck, float], ProbeResult]


class HealthProber:
    """Polls a service's health endpoint until it passes, times out or is cancelled."""

    def __init__(self, probe: Probe | None = None, default_timeout_s: float = 120.0):
        self.probe = probe or (lambda check, timeout_s: probe_http(check, timeout_s))
        self.default_timeout_s = default_timeout_s

    def wait_healthy(
        self,
        descriptor: ServiceDescriptor,
        timeout: float | None = None,
        cancel: Event | None = None,
        on_probe: Callable[[ProbeResult], None] | None = None,
    ) -> WaitResult:
        check = descriptor.health_check
        timeout = self.default_timeout_s if timeout is None else timeout
        interval = max(0.01, check.interval_s)
        # A single probe never outlives one interval, so cancellation stays prompt.
        probe_timeout = min(check.timeout_s, interval)
        cancel = cancel or Event()
        deadline = time.monotonic() + timeout

        transport_failures = 0
        unhealthy = 0
        last: ProbeResult | None = None
        while True:
            if cancel.is_set():
                return WaitResult.CANCELLED

            last = self.probe(check, probe_timeout)
            if on_probe is not None:
                on_probe(last)
            if last.healthy:
                return WaitResult.HEALTHY

            if last.transport_error:
                transport_failures += 1
                unhealthy = 0
                if transport_failures >= check.transport_failure_limit:
                    raise ProbeTransportError(
                        descriptor.name,
                        f"{transport_failures} consecutive connection failures: {last.detail}",
                    )
            else:
                unhealthy += 1
                transport_failures = 0
                if unhealthy >= check.unhealthy_threshold:
                    raise ServiceUnhealthyError(
                        descriptor.name,
                        f"Reported unhealthy {unhealthy} times in a row: {last.detail}",
                    )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise HealthTimeoutError(
                    descriptor.name,
                    f"Not healthy after {timeout:g}s (last probe: {last.detail})",
                )
            if cancel.wait(min(interval, remaining)):
                return WaitResult.CANCELLED
