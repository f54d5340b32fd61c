"""Workload lifecycle state machine.

INIT → PREPARING → STARTING → POLLING → READY → SESSION → CLEANUP → DONE

Any state can fall into CLEANUP (start failure, readiness timeout, workload
death, cancellation, unexpected error). CLEANUP always runs and always ends
in DONE; the run's outcome is reported as a :class:`SequencerResult` and the
CLI turns its ``exit_code`` into the process status.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import signal
from dataclasses import dataclass, field
from pathlib import Path

from horizon._lifecycle import CancelToken
from horizon.config import Settings
from horizon.errors import EXIT_FAILURE, EXIT_OK, WorkloadStartError, signal_exit_code
from horizon.health import HealthState, ProbeResult, probe_workload
from horizon.logger import Logger
from horizon.runtime import Mount, RunSpec, WorkloadRuntime

_LOG_TAIL = 30
_TERMINATE_GRACE = 5.0


class SequencerState(enum.StrEnum):
    INIT = "init"
    PREPARING = "preparing"
    STARTING = "starting"
    POLLING = "polling"
    READY = "ready"
    SESSION = "session"
    CLEANUP = "cleanup"
    DONE = "done"


class SessionMode(enum.StrEnum):
    INTERACTIVE = "interactive"
    DIAGNOSTIC = "diagnostic"


class StopReason(enum.StrEnum):
    SESSION_ENDED = "session_ended"
    SIGNAL = "signal"
    TIMED_OUT = "timed_out"
    START_FAILED = "start_failed"
    WORKLOAD_DIED = "workload_died"
    ERROR = "error"


@dataclass(frozen=True)
class WorkloadHandle:
    name: str
    image: str
    container_id: str = ""


@dataclass
class SequencerResult:
    state: SequencerState
    reason: StopReason
    health: HealthState
    exit_code: int
    handle: WorkloadHandle | None = None
    transitions: list[SequencerState] = field(default_factory=list)
    cleaned_up: bool = True
    session_exit_code: int | None = None


class _Cancelled(Exception):
    """Internal: the cancel token tripped while the sequence was running."""


class Sequencer:
    """Drives one workload from start to guaranteed cleanup."""

    def __init__(
        self,
        runtime: WorkloadRuntime,
        settings: Settings,
        logger: Logger,
        *,
        env_file: Path | None,
        cancel: CancelToken | None = None,
    ) -> None:
        self.runtime = runtime
        self.settings = settings
        self.logger = logger
        self.env_file = env_file
        self.cancel = cancel or CancelToken()
        self.state = SequencerState.INIT
        self.health = HealthState.STARTING
        self.handle: WorkloadHandle | None = None
        self.transitions: list[SequencerState] = [SequencerState.INIT]
        self._session_exit_code: int | None = None

    @property
    def name(self) -> str:
        return self.settings.container.name

    @property
    def image(self) -> str:
        return self.settings.container.image_ref()

    def _transition(self, new: SequencerState) -> None:
        self.logger.debug("sequencer", f"{self.state} -> {new}", state=str(new))
        self.state = new
        self.transitions.append(new)

    def _check_cancel(self) -> None:
        if self.cancel.cancelled:
            raise _Cancelled

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self, mode: SessionMode = SessionMode.INTERACTIVE) -> SequencerResult:
        reason = StopReason.ERROR
        cleaned = False
        try:
            reason = await self._drive(mode)
        except _Cancelled:
            reason = StopReason.SIGNAL
        except WorkloadStartError as exc:
            reason = StopReason.START_FAILED
            self.logger.error("container_start", str(exc), container=exc.name, stderr=exc.stderr.strip())
        except Exception as exc:
            reason = StopReason.ERROR
            self.logger.error(
                "sequencer",
                f"Unexpected error during {self.state}: {exc}",
                exc_info=True,
            )
        finally:
            self._transition(SequencerState.CLEANUP)
            cleaned = await cleanup_workload(
                self.runtime,
                self.name,
                self.image,
                logger=self.logger,
                stop_timeout=self.settings.container.stop_timeout,
            )
            self._transition(SequencerState.DONE)

        # a signal that arrived mid-step wins over whatever the step reported
        if self.cancel.cancelled:
            reason = StopReason.SIGNAL

        exit_code = self._exit_code(reason)
        if not cleaned and exit_code == EXIT_OK:
            exit_code = EXIT_FAILURE
        self.logger.info(
            "sequencer",
            f"Run finished: {reason}",
            reason=str(reason),
            health=str(self.health),
            exit_code=exit_code,
        )
        return SequencerResult(
            state=self.state,
            reason=reason,
            health=self.health,
            exit_code=exit_code,
            handle=self.handle,
            transitions=list(self.transitions),
            cleaned_up=cleaned,
            session_exit_code=self._session_exit_code,
        )

    def _exit_code(self, reason: StopReason) -> int:
        match reason:
            case StopReason.SESSION_ENDED:
                return EXIT_OK
            case StopReason.SIGNAL:
                return signal_exit_code(self.cancel.signal or signal.SIGINT)
            case _:
                return EXIT_FAILURE

    async def _drive(self, mode: SessionMode) -> StopReason:
        self._transition(SequencerState.PREPARING)
        self._check_cancel()
        await self._remove_stale()

        self._transition(SequencerState.STARTING)
        self._check_cancel()
        spec = self._run_spec()
        self.logger.info("container_start", f"Starting {self.name} from {self.image}")
        container_id = await self.runtime.start(spec)
        self.handle = WorkloadHandle(self.name, self.image, container_id)
        self.logger.info("container_start", f"Container started: {self.name}", container_id=container_id[:12])

        self._transition(SequencerState.POLLING)
        failure = await self._poll()
        if failure is not None:
            return failure

        self._transition(SequencerState.READY)
        self._check_cancel()
        self._transition(SequencerState.SESSION)
        return await self._session(mode)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _remove_stale(self) -> None:
        if await self.runtime.inspect_state(self.name) is None:
            return
        self.logger.info("container_start", f"Removing stale container {self.name}")
        if not await self.runtime.remove(self.name):
            self.logger.warning("container_start", f"Could not remove stale container {self.name}")

    def _run_spec(self) -> RunSpec:
        c = self.settings.container
        return RunSpec(
            name=c.name,
            image=self.image,
            env_file=self.env_file,
            mounts=[Mount(self.settings.resolve_path(m.source), m.target, m.readonly) for m in c.mounts],
            ports=c.ports,
            workdir=c.workdir,
            keep_alive_tty=c.keep_alive_tty,
            command=c.command,
        )

    async def _probe(self) -> ProbeResult:
        r = self.settings.readiness
        return await probe_workload(
            self.runtime, self.name, health_url=r.health_url, timeout=r.probe_timeout
        )

    async def _log_tail(self) -> str:
        try:
            return await self.runtime.logs(self.name, tail=_LOG_TAIL)
        except Exception as exc:
            return f"(logs unavailable: {exc})"

    async def _poll(self) -> StopReason | None:
        """Probe at a fixed interval. Returns ``None`` once ready."""
        r = self.settings.readiness
        last = ProbeResult(False, "no probe attempted")
        for attempt in range(1, r.max_attempts + 1):
            self._check_cancel()
            last = await self._probe()
            if last.ok:
                self.health = HealthState.READY
                self.logger.info(
                    "readiness", f"Workload ready after {attempt} attempt(s)", detail=last.detail
                )
                return None

            self.logger.debug("readiness", f"Attempt {attempt}/{r.max_attempts}: {last.detail}")
            if last.exited:
                self.health = HealthState.UNHEALTHY
                self.logger.error(
                    "workload_exited",
                    f"Workload exited during startup: {last.detail}",
                    logs=await self._log_tail(),
                )
                return StopReason.WORKLOAD_DIED

            if attempt < r.max_attempts and await self.cancel.sleep(r.interval):
                raise _Cancelled

        self.health = HealthState.TIMED_OUT
        self.logger.error(
            "startup_timeout",
            f"Workload not ready after {r.max_attempts} attempts: {last.detail}",
            attempts=r.max_attempts,
            interval=r.interval,
            logs=await self._log_tail(),
        )
        return StopReason.TIMED_OUT

    async def _session(self, mode: SessionMode) -> StopReason:
        c = self.settings.container
        command = c.interactive_command if mode is SessionMode.INTERACTIVE else c.diagnostic_command
        self.logger.info("session", f"Starting {mode} session", command=command)
        proc = await self.runtime.attach(self.name, command)

        wait_proc = asyncio.ensure_future(proc.wait())
        wait_cancel = asyncio.ensure_future(self.cancel.wait())
        try:
            await asyncio.wait({wait_proc, wait_cancel}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            wait_cancel.cancel()

        if self.cancel.cancelled:
            await self._terminate(proc, wait_proc)
            raise _Cancelled

        self._session_exit_code = wait_proc.result()
        self.logger.info(
            "session", f"Session ended (exit {self._session_exit_code})", exit_code=self._session_exit_code
        )

        probe = await self._probe()
        if probe.ok:
            return StopReason.SESSION_ENDED
        self.health = HealthState.UNHEALTHY
        if probe.exited:
            self.logger.error(
                "workload_exited",
                f"Workload died during the session: {probe.detail}",
                logs=await self._log_tail(),
            )
            return StopReason.WORKLOAD_DIED
        self.logger.warning("readiness", f"Workload unhealthy after session: {probe.detail}")
        return StopReason.SESSION_ENDED

    async def _terminate(self, proc: asyncio.subprocess.Process, wait_proc: asyncio.Future) -> None:
        if wait_proc.done():
            return
        self.logger.info("session", "Terminating session")
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        try:
            await asyncio.wait_for(wait_proc, timeout=_TERMINATE_GRACE)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------


async def _sweep(runtime: WorkloadRuntime, name: str, image: str, logger: Logger) -> None:
    for instance in await runtime.list_instances(name, image):
        logger.info(
            "container_cleanup",
            f"Removing leftover container {instance.name or instance.id}",
            container_id=instance.id[:12],
        )
        if not await runtime.remove(instance.id):
            logger.warning("container_cleanup", f"Could not remove {instance.id[:12]}")


async def cleanup_workload(
    runtime: WorkloadRuntime,
    name: str,
    image: str,
    *,
    logger: Logger,
    stop_timeout: int = 10,
) -> bool:
    """Stop, remove, and sweep every instance of the workload.

    Each step is attempted regardless of the previous one; failures are
    logged at WARN. Returns ``True`` when no instance remains afterwards.
    """
    logger.info("container_cleanup", f"Cleaning up {name}")

    try:
        state = await runtime.inspect_state(name)
        if state is not None and state.running:
            if not await runtime.stop(name, stop_timeout):
                logger.warning("container_cleanup", f"docker stop failed for {name}")
    except Exception as exc:
        logger.warning("container_cleanup", f"Stop step failed: {exc}", step="stop")

    try:
        if not await runtime.remove(name):
            logger.warning("container_cleanup", f"docker rm failed for {name}")
    except Exception as exc:
        logger.warning("container_cleanup", f"Remove step failed: {exc}", step="remove")

    try:
        await _sweep(runtime, name, image, logger)
    except Exception as exc:
        logger.warning("container_cleanup", f"Sweep step failed: {exc}", step="sweep")

    try:
        remaining = await runtime.list_instances(name, image)
    except Exception as exc:
        logger.error("container_cleanup", f"Could not confirm cleanup: {exc}")
        return False
    if remaining:
        logger.error(
            "container_cleanup",
            f"{len(remaining)} container(s) still present after cleanup",
            containers=[i.name or i.id for i in remaining],
        )
        return False
    logger.info("container_cleanup", "Cleanup complete")
    return True


async def stop_workload(runtime: WorkloadRuntime, settings: Settings, logger: Logger) -> bool:
    """Run only the cleanup path. Safe to call when nothing is running."""
    c = settings.container
    image = c.image_ref()
    if not await runtime.list_instances(c.name, image):
        logger.info("container_cleanup", f"No {c.name} container found; nothing to stop")
        return True
    return await cleanup_workload(runtime, c.name, image, logger=logger, stop_timeout=c.stop_timeout)
