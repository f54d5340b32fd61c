"""Post-start verification suite."""

from horizon.verifier._checks import Check, CheckContext, CheckFailed, CheckSkipped, default_checks
from horizon.verifier._diagnostics import dump_diagnostics, troubleshooting_hints
from horizon.verifier._report import (
    CheckResult,
    Note,
    Outcome,
    ReportFinalizedError,
    VerificationReport,
)
from horizon.verifier._suite import run_suite

__all__ = [
    "Check",
    "CheckContext",
    "CheckFailed",
    "CheckResult",
    "CheckSkipped",
    "Note",
    "Outcome",
    "ReportFinalizedError",
    "VerificationReport",
    "default_checks",
    "dump_diagnostics",
    "run_suite",
    "troubleshooting_hints",
]
