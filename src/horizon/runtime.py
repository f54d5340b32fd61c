"""Container runtime adapter — thin wrapper over the docker CLI.

Shared by the builder, the sequencer and the verifier. Blocking calls
(``build``/``push``) are plain ``subprocess.run``; everything the sequencer
and verifier need is async, with the subprocess running in a worker thread
via ``asyncio.to_thread`` so waits stay cancellable.

Any docker-compatible CLI works (``cli="podman"``).
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from horizon.errors import RuntimeUnavailableError, WorkloadStartError


@dataclass(frozen=True)
class ContainerState:
    """Subset of ``docker inspect .State`` the orchestrator cares about."""

    status: str  # created | running | paused | restarting | exited | dead
    running: bool
    exit_code: int = 0
    health: str | None = None  # None when the image defines no HEALTHCHECK
    error: str = ""

    @property
    def exited(self) -> bool:
        return self.status in ("exited", "dead")

    @classmethod
    def from_inspect(cls, raw: dict) -> ContainerState:
        health = raw.get("Health") or {}
        return cls(
            status=str(raw.get("Status", "unknown")),
            running=bool(raw.get("Running", False)),
            exit_code=int(raw.get("ExitCode", 0) or 0),
            health=health.get("Status") or None,
            error=str(raw.get("Error", "") or ""),
        )


@dataclass(frozen=True)
class ContainerInstance:
    id: str
    name: str
    image: str
    status: str


@dataclass(frozen=True)
class Mount:
    source: Path
    target: str
    readonly: bool = False

    def as_arg(self) -> str:
        spec = f"{self.source}:{self.target}"
        return f"{spec}:ro" if self.readonly else spec


@dataclass(frozen=True)
class RunSpec:
    """Everything ``docker run -d`` needs to start the workload."""

    name: str
    image: str
    env_file: Path | None = None
    mounts: Sequence[Mount] = ()
    ports: Sequence[str] = ()
    workdir: str | None = None
    keep_alive_tty: bool = True
    command: Sequence[str] = ()
    security_opts: Sequence[str] = field(default=("no-new-privileges:true",))


def build_run_args(spec: RunSpec) -> list[str]:
    """Translate a :class:`RunSpec` into ``docker run`` arguments (no CLI name)."""
    args = ["run", "-d", "--name", spec.name]
    if spec.env_file is not None:
        args += ["--env-file", str(spec.env_file)]
    for mount in spec.mounts:
        args += ["-v", mount.as_arg()]
    for port in spec.ports:
        args += ["-p", port]
    if spec.workdir:
        args += ["-w", spec.workdir]
    for opt in spec.security_opts:
        args += ["--security-opt", opt]
    if spec.keep_alive_tty:
        # an interactive entrypoint exits immediately without a TTY on stdin
        args += ["-i", "-t"]
    args.append(spec.image)
    args.extend(spec.command)
    return args


class WorkloadRuntime(Protocol):
    """The operations the sequencer and verifier drive a container through."""

    async def inspect_state(self, name: str) -> ContainerState | None: ...

    async def start(self, spec: RunSpec) -> str: ...

    async def stop(self, name: str, timeout: int = 10) -> bool: ...

    async def remove(self, name: str) -> bool: ...

    async def list_instances(self, name: str, image: str | None = None) -> list[ContainerInstance]: ...

    async def logs(self, name: str, tail: int = 30) -> str: ...

    async def exec(
        self, name: str, *command: str, timeout: int = 30
    ) -> subprocess.CompletedProcess[str]: ...

    async def attach(self, name: str, command: Sequence[str]) -> asyncio.subprocess.Process: ...


class DockerRuntime:
    """Runtime adapter for the docker CLI."""

    def __init__(self, cli: str = "docker") -> None:
        self.cli = cli

    # --- sync (build path) ---

    def is_available(self) -> bool:
        return shutil.which(self.cli) is not None

    def ensure_running(self) -> None:
        """Raise :class:`RuntimeUnavailableError` unless the daemon answers."""
        if not self.is_available():
            raise RuntimeUnavailableError(f"{self.cli} is not installed or not on PATH")
        try:
            subprocess.run(
                [self.cli, "info"],
                capture_output=True,
                check=True,
                timeout=30,
            )
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as exc:
            raise RuntimeUnavailableError(
                f"{self.cli} daemon is not running. Start with: sudo systemctl start docker"
            ) from exc

    def run_sync(
        self,
        *args: str,
        timeout: float | None = 30,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a CLI command (blocking). Never raises on a non-zero exit."""
        return subprocess.run(
            [self.cli, *args],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
            env=env,
        )

    def build_image(
        self,
        context: Path,
        ref: str,
        *,
        no_cache: bool = False,
        timeout: float | None = 1800,
    ) -> subprocess.CompletedProcess[str]:
        args = ["build", "-t", ref]
        if no_cache:
            args.append("--no-cache")
        args.append(str(context))
        return self.run_sync(*args, timeout=timeout, env={**os.environ, "DOCKER_BUILDKIT": "1"})

    def tag_image(self, source: str, target: str) -> subprocess.CompletedProcess[str]:
        return self.run_sync("tag", source, target)

    def push_image(self, ref: str, *, timeout: float | None = 1800) -> subprocess.CompletedProcess[str]:
        return self.run_sync("push", ref, timeout=timeout)

    # --- async (sequencer / verifier) ---

    async def run(self, *args: str, timeout: float = 30) -> subprocess.CompletedProcess[str]:
        """Run a CLI command without blocking the event loop."""
        return await asyncio.to_thread(self.run_sync, *args, timeout=timeout)

    async def inspect_state(self, name: str) -> ContainerState | None:
        """Current state of *name*, or ``None`` if no such container exists."""
        result = await self.run("inspect", "--format", "{{json .State}}", name)
        if result.returncode != 0:
            return None
        try:
            raw = json.loads(result.stdout.strip() or "{}")
        except json.JSONDecodeError:
            return None
        return ContainerState.from_inspect(raw)

    async def start(self, spec: RunSpec) -> str:
        """``docker run -d``; returns the container id."""
        result = await self.run(*build_run_args(spec), timeout=120)
        if result.returncode != 0:
            raise WorkloadStartError(spec.name, result.stderr)
        return result.stdout.strip()

    async def stop(self, name: str, timeout: int = 10) -> bool:
        result = await self.run("stop", "-t", str(timeout), name, timeout=timeout + 30)
        return result.returncode == 0

    async def remove(self, name: str) -> bool:
        """Force-remove *name*. Returns ``False`` only on a real failure."""
        result = await self.run("rm", "-f", name)
        if result.returncode == 0:
            return True
        return "no such container" in result.stderr.lower()

    async def list_instances(self, name: str, image: str | None = None) -> list[ContainerInstance]:
        """Every container (any state) named *name* or, if given, built from *image*."""
        found: dict[str, ContainerInstance] = {}
        filters = [("name", f"^/?{name}$")]
        if image:
            filters.append(("ancestor", image))
        for key, value in filters:
            result = await self.run("ps", "-a", "--filter", f"{key}={value}", "--format", "{{json .}}")
            if result.returncode != 0:
                continue
            for line in result.stdout.strip().splitlines():
                if not line:
                    continue
                c = json.loads(line)
                cid = c.get("ID", "")
                found[cid] = ContainerInstance(
                    id=cid,
                    name=c.get("Names", ""),
                    image=c.get("Image", ""),
                    status=c.get("Status", ""),
                )
        return list(found.values())

    async def logs(self, name: str, tail: int = 30) -> str:
        result = await self.run("logs", "--tail", str(tail), name)
        # docker logs replays the container's stderr on our stderr
        return (result.stdout + result.stderr).strip()

    async def exec(
        self, name: str, *command: str, timeout: int = 30
    ) -> subprocess.CompletedProcess[str]:
        return await self.run("exec", name, *command, timeout=timeout)

    async def attach(self, name: str, command: Sequence[str]) -> asyncio.subprocess.Process:
        """Start an exec session that inherits this process's terminal."""
        args = [self.cli, "exec", "-i"]
        if sys.stdin.isatty():
            args.append("-t")
        args += [name, *command]
        return await asyncio.create_subprocess_exec(*args)
