"""The fixed battery of post-start checks.

Each check is an async function taking a :class:`CheckContext`. It returns
a short pass reason, raises :class:`CheckFailed` for a FAIL, or
:class:`CheckSkipped` when it has nothing to check. Any other exception is
turned into a FAIL by the suite runner.
"""

from __future__ import annotations

import asyncio
import json
import shlex
import subprocess
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

from horizon.config import CapabilityConfig, Settings
from horizon.environment import OPTIONAL_NAMES, REQUIRED_NAMES
from horizon.logger import Logger
from horizon.runtime import WorkloadRuntime

_OP = "test_execution"
MOUNT_SENTINEL = ".horizon_mount_probe"


class CheckFailed(Exception):
    pass


class CheckSkipped(Exception):
    pass


@dataclass
class CheckContext:
    runtime: WorkloadRuntime
    container: str
    settings: Settings
    logger: Logger
    project_root: Path

    async def exec(self, *command: str, timeout: int | None = None) -> subprocess.CompletedProcess[str]:
        return await self.runtime.exec(
            self.container, *command, timeout=timeout or self.settings.verify.command_timeout
        )

    async def succeeds(self, *command: str, timeout: int | None = None) -> bool:
        return (await self.exec(*command, timeout=timeout)).returncode == 0

    @property
    def tool(self) -> list[str]:
        return list(self.settings.container.interactive_command)


CheckFunc = Callable[[CheckContext], Awaitable[str]]


@dataclass(frozen=True)
class Check:
    name: str
    func: CheckFunc
    required: bool = True
    gate: bool = False  # when it fails, every later check is skipped


# ---------------------------------------------------------------------------
# Container
# ---------------------------------------------------------------------------


async def check_container_running(ctx: CheckContext) -> str:
    state = await ctx.runtime.inspect_state(ctx.container)
    if state is None:
        raise CheckFailed(f"container {ctx.container} not found")
    if not state.running:
        raise CheckFailed(f"container is {state.status} (exit code {state.exit_code})")
    return "Container is running"


async def check_container_health(ctx: CheckContext) -> str:
    v = ctx.settings.verify
    for attempt in range(v.health_retries + 1):
        state = await ctx.runtime.inspect_state(ctx.container)
        if state is None or not state.running:
            raise CheckFailed("container is not running")
        if state.health is None:
            return "Container is running (no health check defined)"
        if state.health == "healthy":
            return "Container is healthy"
        if state.health != "starting":
            raise CheckFailed(f"container health is {state.health}")
        if attempt < v.health_retries:
            ctx.logger.warning(
                _OP,
                "Container is still starting, waiting",
                attempt=attempt + 1,
                retries=v.health_retries,
            )
            await asyncio.sleep(v.health_retry_interval)
    raise CheckFailed(f"container still starting after {v.health_retries} re-checks")


# ---------------------------------------------------------------------------
# Tooling
# ---------------------------------------------------------------------------


async def check_installation(ctx: CheckContext) -> str:
    result = await ctx.exec(*ctx.tool, "--version")
    if result.returncode != 0:
        raise CheckFailed(f"{ctx.tool[0]} command not found or not working")
    version = result.stdout.replace("\r", "").strip().splitlines()
    return f"{ctx.tool[0]} is installed (version: {version[0] if version else 'unknown'})"


async def check_configuration(ctx: CheckContext) -> str:
    paths = ctx.settings.verify.config_paths
    for path in paths:
        # double quotes so $HOME expands inside the container
        result = await ctx.exec("sh", "-c", f'cat -- "{path}"')
        if result.returncode != 0:
            continue
        ctx.logger.debug(_OP, f"Found configuration at {path}")
        try:
            json.loads(result.stdout)
        except json.JSONDecodeError as exc:
            raise CheckFailed(f"{path} is not valid JSON: {exc.msg} (line {exc.lineno})") from None
        return f"Configuration at {path} is valid"

    ctx.logger.warning(_OP, "Configuration file not found in standard locations", checked=paths)
    if await ctx.succeeds(*ctx.tool, "--help"):
        return "No configuration file; running with defaults"
    raise CheckFailed(f"no configuration found and {ctx.tool[0]} is not responding")


def capability_check(cap: CapabilityConfig) -> CheckFunc:
    async def check_capability(ctx: CheckContext) -> str:
        if await ctx.succeeds("sh", "-c", f"command -v {shlex.quote(cap.command)}"):
            if await ctx.succeeds(cap.command, "--version", timeout=5):
                return f"{cap.name} is responding"
            if await ctx.succeeds(cap.command, "--help", timeout=5):
                return f"{cap.name} is available (responds to --help)"
            raise CheckFailed(f"{cap.command} is installed but not responding")
        if cap.package and await ctx.succeeds("npm", "list", "-g", cap.package):
            return f"{cap.name} is installed as npm package {cap.package}"
        raise CheckFailed(f"{cap.name} not found (command: {cap.command})")

    return check_capability


async def check_functionality(ctx: CheckContext) -> str:
    if not await ctx.succeeds(*ctx.tool, "--help"):
        raise CheckFailed(f"{ctx.tool[0]} --help failed")
    return f"{ctx.tool[0]} basic functionality works"


# ---------------------------------------------------------------------------
# Mounts and environment
# ---------------------------------------------------------------------------


def _workspace_source(ctx: CheckContext) -> Path:
    workdir = ctx.settings.container.workdir
    for m in ctx.settings.container.mounts:
        if m.target.rstrip("/") == workdir.rstrip("/"):
            return ctx.settings.resolve_path(m.source)
    return ctx.project_root


async def check_workspace_mount(ctx: CheckContext) -> str:
    sentinel = _workspace_source(ctx) / MOUNT_SENTINEL
    target = f"{ctx.settings.container.workdir.rstrip('/')}/{MOUNT_SENTINEL}"
    try:
        sentinel.write_text("horizon\n", encoding="utf-8")
        visible = await ctx.succeeds("test", "-f", target)
    finally:
        sentinel.unlink(missing_ok=True)
    if not visible:
        raise CheckFailed(f"{sentinel.parent} is not mounted at {ctx.settings.container.workdir}")
    return "Workspace is properly mounted"


async def check_ai_assets_mount(ctx: CheckContext) -> str:
    v = ctx.settings.verify
    if not await ctx.succeeds("test", "-d", v.ai_assets_dir):
        raise CheckFailed(f"{v.ai_assets_dir} directory not mounted")
    if not await ctx.succeeds("test", "-f", f"{v.ai_assets_dir.rstrip('/')}/{v.ai_assets_marker}"):
        raise CheckFailed(f"{v.ai_assets_marker} not found in {v.ai_assets_dir}")
    return "AI assets are properly mounted"


async def _env_present(ctx: CheckContext, name: str) -> bool:
    # test -n only; the value never leaves the container
    return await ctx.succeeds("sh", "-c", f'test -n "${{{name}:-}}"')


async def check_environment(ctx: CheckContext) -> str:
    missing = [name for name in sorted(REQUIRED_NAMES) if not await _env_present(ctx, name)]
    for name in sorted(OPTIONAL_NAMES):
        state = "configured" if await _env_present(ctx, name) else "not configured"
        ctx.logger.info(_OP, f"{name} {state}")
    if missing:
        raise CheckFailed(f"required variable(s) missing: {', '.join(missing)}")
    return "Environment variables are properly configured"


# ---------------------------------------------------------------------------
# Runtime signals
# ---------------------------------------------------------------------------


async def check_container_logs(ctx: CheckContext) -> str:
    text = await ctx.runtime.logs(ctx.container, tail=ctx.settings.verify.log_tail)
    lines = [line for line in text.splitlines() if line.strip()]
    if not lines:
        raise CheckFailed("no logs found")
    return f"Container is producing logs ({len(lines)} lines)"


async def check_health_script(ctx: CheckContext) -> str:
    script = ctx.settings.verify.health_script
    result = await ctx.exec(script)
    if result.returncode != 0:
        output = (result.stdout + result.stderr).strip()
        ctx.logger.error("test_result", "Health check output", output=output[-2000:])
        raise CheckFailed(f"health check script failed (exit code: {result.returncode})")
    return "Internal health check passed"


def default_checks(settings: Settings) -> list[Check]:
    checks = [
        Check("container_running", check_container_running, gate=True),
        Check("container_health", check_container_health),
        Check("installation", check_installation),
        Check("configuration", check_configuration),
    ]
    checks += [
        Check(f"capability:{cap.name}", capability_check(cap), required=False)
        for cap in settings.verify.capabilities
    ]
    checks += [
        Check("workspace_mount", check_workspace_mount),
        Check("ai_assets_mount", check_ai_assets_mount),
        Check("environment", check_environment),
        Check("functionality", check_functionality),
        Check("container_logs", check_container_logs),
        Check("health_script", check_health_script),
    ]
    return checks
