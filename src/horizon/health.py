"""Readiness probing for the running workload."""

from __future__ import annotations

import enum
import subprocess
from dataclasses import dataclass

import aiohttp

from horizon.runtime import WorkloadRuntime


class HealthState(enum.StrEnum):
    STARTING = "starting"
    READY = "ready"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    detail: str
    exited: bool = False  # the workload is gone; further polling is pointless


async def _probe_http(url: str, timeout: float) -> tuple[bool, str]:
    try:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as session:
            async with session.get(url) as resp:
                # any non-5xx counts: the server has no dedicated health endpoint
                if resp.status < 500:
                    return True, f"{url} answered {resp.status}"
                return False, f"{url} answered {resp.status}"
    except (aiohttp.ClientError, OSError, TimeoutError) as exc:
        return False, f"{url} unreachable: {exc or type(exc).__name__}"


async def probe_workload(
    runtime: WorkloadRuntime,
    name: str,
    *,
    health_url: str | None = None,
    timeout: float = 5.0,
) -> ProbeResult:
    """One readiness attempt.

    Succeeds when the container is running, its Docker health status is
    ``healthy`` (or the image defines none), and, if *health_url* is set,
    the endpoint answers with a status below 500.
    """
    try:
        state = await runtime.inspect_state(name)
    except (subprocess.TimeoutExpired, OSError) as exc:
        # counts as one failed attempt; the caller keeps polling
        return ProbeResult(False, f"inspect failed: {exc}")
    if state is None:
        return ProbeResult(False, f"container {name} not found", exited=True)
    if state.exited:
        return ProbeResult(
            False,
            f"container {name} is {state.status} (exit code {state.exit_code})",
            exited=True,
        )
    if not state.running:
        return ProbeResult(False, f"container {name} is {state.status}")
    if state.health not in (None, "healthy"):
        return ProbeResult(False, f"container health is {state.health}")

    if health_url:
        ok, detail = await _probe_http(health_url, timeout)
        return ProbeResult(ok, detail)
    return ProbeResult(True, f"container {name} is running")
