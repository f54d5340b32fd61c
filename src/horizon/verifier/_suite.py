"""Run the check battery and log the outcome."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

from horizon.config import Settings
from horizon.logger import Logger
from horizon.runtime import WorkloadRuntime
from horizon.sequencer import WorkloadHandle
from horizon.verifier._checks import Check, CheckContext, CheckFailed, CheckSkipped, default_checks
from horizon.verifier._diagnostics import dump_diagnostics
from horizon.verifier._report import Outcome, VerificationReport


async def run_suite(
    runtime: WorkloadRuntime,
    target: WorkloadHandle | str,
    *,
    settings: Settings,
    logger: Logger,
    project_root: Path | None = None,
    checks: Sequence[Check] | None = None,
) -> VerificationReport:
    """Run every check in order against the running workload *target*.

    A failing check never stops the suite, except a gate check, after
    which the rest are recorded as SKIP. The report is finalized on return.
    """
    container = target.name if isinstance(target, WorkloadHandle) else target
    ctx = CheckContext(
        runtime=runtime,
        container=container,
        settings=settings,
        logger=logger,
        project_root=project_root or settings.project_root,
    )
    report = VerificationReport()
    logger.info("verify", f"Starting verification of {container}")

    gated_by: str | None = None
    for check in checks if checks is not None else default_checks(settings):
        if gated_by is not None:
            report.record(check.name, Outcome.SKIP, f"skipped: {gated_by} failed", required=check.required)
            logger.info("test_result", f"- {check.name} skipped ({gated_by} failed)")
            continue

        logger.info("test_execution", f"Testing: {check.name}")
        try:
            reason = await check.func(ctx)
            outcome = Outcome.PASS
        except CheckSkipped as exc:
            reason, outcome = str(exc), Outcome.SKIP
        except CheckFailed as exc:
            reason, outcome = str(exc), Outcome.FAIL
        except Exception as exc:
            reason, outcome = f"{type(exc).__name__}: {exc}", Outcome.FAIL

        result = report.record(check.name, outcome, reason, required=check.required)
        if result.outcome is Outcome.PASS:
            logger.info("test_result", f"✓ {reason}", check=check.name)
        elif result.outcome is Outcome.FAIL:
            logger.error("test_result", f"✗ {check.name} - {reason}", check=check.name)
            if check.gate:
                gated_by = check.name
        elif outcome is Outcome.FAIL:
            logger.warning(
                "test_result",
                f"{check.name} unavailable (optional): {reason}",
                check=check.name,
            )
        else:
            logger.info("test_result", f"- {check.name} skipped: {reason}", check=check.name)

    report.finalize()
    logger.info(
        "verify",
        "Test summary",
        total=report.total,
        passed=report.passed,
        failed=report.failed,
        skipped=report.skipped,
    )
    if report.failed:
        logger.error("verify", f"{report.failed} check(s) failed")
        await dump_diagnostics(runtime, container, settings=settings, logger=logger, report=report)
    else:
        logger.info("verify", "All required checks passed")
    return report
