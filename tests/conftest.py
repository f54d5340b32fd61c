"""Shared test fixtures for Horizon."""

from __future__ import annotations

import asyncio
import io
import json
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from horizon.errors import WorkloadStartError
from horizon.logger import Level, LogConfig, Logger, configure_logging
from horizon.runtime import ContainerInstance, ContainerState, RunSpec

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset({"project_root", "descriptor_path", "build_context"})


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Readiness polling defaults to a fast policy (no sleep, 3 attempts).
    Accepts both model fields and cached property overrides.

    Usage::

        s = make_settings(project_root=tmp_path)
        s = make_settings(readiness=ReadinessConfig(max_attempts=5, interval=0))
    """
    from horizon.config import (
        BuildConfig,
        ContainerConfig,
        LoggingConfig,
        ReadinessConfig,
        Settings,
        VerifyConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "logging": LoggingConfig(),
        "container": ContainerConfig(),
        "readiness": ReadinessConfig(interval=0, max_attempts=3),
        "build": BuildConfig(),
        "verify": VerifyConfig(health_retry_interval=0),
        "env_file": ".env",
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def read_records(path: Path) -> list[dict]:
    """Parse a JSON-lines log file."""
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def records(logger: Logger, *, operation: str | None = None, level: str | None = None) -> list[dict]:
    """Records the logger has written to its file sink, optionally filtered."""
    out = read_records(logger.config.sink_path)
    if operation is not None:
        out = [r for r in out if r["operation"] == operation]
    if level is not None:
        out = [r for r in out if r["level"] == level]
    return out


def running(health: str | None = None) -> ContainerState:
    return ContainerState(status="running", running=True, health=health)


def exited(code: int = 1) -> ContainerState:
    return ContainerState(status="exited", running=False, exit_code=code)


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


# ---------------------------------------------------------------------------
# In-memory container runtime
# ---------------------------------------------------------------------------


class FakeProcess:
    """Stands in for the attached ``docker exec`` session."""

    def __init__(self, returncode: int | None = 0) -> None:
        self.returncode: int | None = None
        self.terminated = False
        self.killed = False
        self._done = asyncio.Event()
        if returncode is not None:
            self.finish(returncode)

    def finish(self, returncode: int) -> None:
        self.returncode = returncode
        self._done.set()

    async def wait(self) -> int:
        await self._done.wait()
        return self.returncode  # type: ignore[return-value]

    def terminate(self) -> None:
        self.terminated = True
        self.finish(-15)

    def kill(self) -> None:
        self.killed = True
        self.finish(-9)


class FakeRuntime:
    """Implements ``WorkloadRuntime`` against a dict of containers.

    ``states`` scripts what ``inspect_state`` reports for the started
    workload: each call consumes one entry and the last one sticks.
    ``exec_handler`` (if set) answers first, then ``exec_results`` maps a
    joined command line to its result; anything else succeeds.
    """

    def __init__(self) -> None:
        self.containers: dict[str, ContainerInstance] = {}
        self.current: dict[str, ContainerState] = {}
        self.states: list[ContainerState] = [running()]
        self.calls: list[tuple] = []
        self.start_error: str | None = None
        self.stop_fails = False
        self.remove_fails = False
        self.log_text = "workload started\n"
        self.exec_results: dict[str, subprocess.CompletedProcess[str]] = {}
        self.exec_default = completed(0, "ok\n")
        self.exec_handler: Callable[[tuple[str, ...]], subprocess.CompletedProcess[str] | None] | None = None
        self.session_factory: Callable[[], FakeProcess] = FakeProcess
        self.session: FakeProcess | None = None
        self.on_inspect: Callable[[int], None] | None = None
        self._ids = 0
        self._inspects = 0
        self._scripted: str | None = None
        self._stopped: set[str] = set()

    # --- test helpers ---

    def add_container(self, name: str, image: str, state: ContainerState | None = None) -> str:
        self._ids += 1
        cid = f"{self._ids:012x}deadbeef"
        self.containers[cid] = ContainerInstance(id=cid, name=name, image=image, status="Up")
        self.current[cid] = state or running()
        return cid

    def _find(self, name_or_id: str) -> str | None:
        for cid, inst in self.containers.items():
            if cid == name_or_id or inst.name == name_or_id:
                return cid
        return None

    def called(self, op: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == op]

    # --- WorkloadRuntime ---

    async def inspect_state(self, name: str) -> ContainerState | None:
        self.calls.append(("inspect", name))
        self._inspects += 1
        if self.on_inspect is not None:
            self.on_inspect(self._inspects)
        cid = self._find(name)
        if cid is None:
            return None
        if cid == self._scripted and cid not in self._stopped and self.states:
            self.current[cid] = self.states.pop(0) if len(self.states) > 1 else self.states[0]
        return self.current[cid]

    async def start(self, spec: RunSpec) -> str:
        self.calls.append(("start", spec))
        if self.start_error is not None:
            raise WorkloadStartError(spec.name, self.start_error)
        self._scripted = self.add_container(spec.name, spec.image)
        return self._scripted

    async def stop(self, name: str, timeout: int = 10) -> bool:
        self.calls.append(("stop", name, timeout))
        cid = self._find(name)
        if cid is None or self.stop_fails:
            return False
        self.current[cid] = exited(0)
        self._stopped.add(cid)
        return True

    async def remove(self, name: str) -> bool:
        self.calls.append(("remove", name))
        if self.remove_fails:
            return False
        cid = self._find(name)
        if cid is not None:
            del self.containers[cid]
            del self.current[cid]
        return True

    async def list_instances(self, name: str, image: str | None = None) -> list[ContainerInstance]:
        self.calls.append(("list", name, image))
        return [c for c in self.containers.values() if c.name == name or (image and c.image == image)]

    async def logs(self, name: str, tail: int = 30) -> str:
        self.calls.append(("logs", name, tail))
        return self.log_text

    async def exec(self, name: str, *command: str, timeout: int = 30) -> subprocess.CompletedProcess[str]:
        self.calls.append(("exec", name, command))
        if self.exec_handler is not None:
            result = self.exec_handler(command)
            if result is not None:
                return result
        return self.exec_results.get(" ".join(command), self.exec_default)

    async def attach(self, name: str, command) -> FakeProcess:
        self.calls.append(("attach", name, tuple(command)))
        self.session = self.session_factory()
        return self.session


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def log_stream():
    return io.StringIO()


@pytest.fixture
def logger(tmp_path, log_stream):
    """DEBUG-level logger writing to tmp_path/logs/horizon.log and an in-memory console."""
    lg = configure_logging(
        LogConfig(min_level=Level.DEBUG, log_dir=tmp_path / "logs"),
        stream=log_stream,
    )
    yield lg
    lg.close()


@pytest.fixture
def settings(tmp_path):
    return make_settings(project_root=tmp_path)


@pytest.fixture
def runtime():
    return FakeRuntime()
