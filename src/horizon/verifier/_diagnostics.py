"""Diagnostics dump logged when verification fails."""

from __future__ import annotations

from horizon.config import Settings
from horizon.environment import OPTIONAL_NAMES, REQUIRED_NAMES
from horizon.logger import Logger
from horizon.runtime import WorkloadRuntime
from horizon.verifier._report import Outcome, VerificationReport

_OP = "diagnostics"
_PROCESS_LINES = 10


def troubleshooting_hints(settings: Settings) -> list[str]:
    c = settings.container
    cli = c.cli
    return [
        f"Check container logs: {cli} logs {c.name}",
        f"Check container status: {cli} ps -a --filter name={c.name}",
        f"Access container shell: horizon start --mode diagnostic (or {cli} exec -it {c.name} bash)",
        f"Run internal health check: {cli} exec {c.name} {settings.verify.health_script}",
        "Rebuild the image: horizon build",
        f"Check environment variables in {settings.env_file}",
        "Restart the workload: horizon stop && horizon start",
    ]


async def dump_diagnostics(
    runtime: WorkloadRuntime,
    container: str,
    *,
    settings: Settings,
    logger: Logger,
    report: VerificationReport | None = None,
) -> None:
    """Log inspected state, recent logs, processes, and hints. Never raises."""
    logger.info(_OP, "Detailed diagnostics")

    try:
        state = await runtime.inspect_state(container)
        if state is None:
            logger.info(_OP, f"Container state: {container} not found")
        else:
            logger.info(
                _OP,
                f"Container state: {state.status}",
                running=state.running,
                exit_code=state.exit_code,
                health=state.health,
                error=state.error,
            )
    except Exception as exc:
        logger.warning(_OP, f"Could not inspect container: {exc}")

    try:
        logs = await runtime.logs(container, tail=settings.verify.log_tail)
        logger.info(_OP, f"Recent container logs (last {settings.verify.log_tail} lines)", logs=logs)
    except Exception as exc:
        logger.warning(_OP, f"No logs available: {exc}")

    try:
        ps = await runtime.exec(container, "ps", "aux", timeout=settings.verify.command_timeout)
        if ps.returncode == 0:
            lines = ps.stdout.strip().splitlines()[:_PROCESS_LINES]
            logger.info(_OP, "Container processes", processes=lines)
        else:
            logger.info(_OP, "Unable to retrieve process information")
    except Exception as exc:
        logger.warning(_OP, f"Unable to retrieve process information: {exc}")

    if report is not None:
        failed = [r.name for r in report.results if r.outcome is Outcome.FAIL]
        logger.info(_OP, "Failed checks", checks=failed)
        for note in report.notes:
            logger.info(_OP, f"Note from {note.check}: {note.message}")

    logger.info(
        _OP,
        "Credentials expected in the workload",
        required=sorted(REQUIRED_NAMES),
        optional=sorted(OPTIONAL_NAMES),
    )
    for i, hint in enumerate(troubleshooting_hints(settings), start=1):
        logger.info(_OP, f"{i}. {hint}")
