"""Verification report — ordered check outcomes plus WARN notes."""

from __future__ import annotations

import enum
from dataclasses import dataclass

from horizon.errors import EXIT_FAILURE, EXIT_OK


class Outcome(enum.StrEnum):
    PASS = "PASS"
    FAIL = "FAIL"
    SKIP = "SKIP"


@dataclass(frozen=True)
class CheckResult:
    name: str
    outcome: Outcome
    reason: str = ""
    required: bool = True


@dataclass(frozen=True)
class Note:
    """A WARN-level observation that does not affect the exit code."""

    check: str
    message: str


class ReportFinalizedError(RuntimeError):
    pass


class VerificationReport:
    """Append-only while the suite runs; immutable after :meth:`finalize`."""

    def __init__(self) -> None:
        self._results: list[CheckResult] = []
        self._notes: list[Note] = []
        self._final = False

    def _ensure_open(self) -> None:
        if self._final:
            raise ReportFinalizedError("verification report is finalized")

    def record(self, name: str, outcome: Outcome, reason: str = "", *, required: bool = True) -> CheckResult:
        """Append one outcome. An optional check's FAIL is stored as SKIP plus a note."""
        self._ensure_open()
        if outcome is Outcome.FAIL and not required:
            self._notes.append(Note(name, reason or "optional check failed"))
            outcome = Outcome.SKIP
        result = CheckResult(name, outcome, reason, required)
        self._results.append(result)
        return result

    def note(self, check: str, message: str) -> None:
        self._ensure_open()
        self._notes.append(Note(check, message))

    def finalize(self) -> VerificationReport:
        self._final = True
        return self

    @property
    def finalized(self) -> bool:
        return self._final

    @property
    def results(self) -> tuple[CheckResult, ...]:
        return tuple(self._results)

    @property
    def notes(self) -> tuple[Note, ...]:
        return tuple(self._notes)

    def _count(self, outcome: Outcome) -> int:
        return sum(1 for r in self._results if r.outcome is outcome)

    @property
    def passed(self) -> int:
        return self._count(Outcome.PASS)

    @property
    def failed(self) -> int:
        return self._count(Outcome.FAIL)

    @property
    def skipped(self) -> int:
        return self._count(Outcome.SKIP)

    @property
    def total(self) -> int:
        return self.passed + self.failed

    @property
    def exit_code(self) -> int:
        return EXIT_OK if self.failed == 0 else EXIT_FAILURE

    def get(self, name: str) -> CheckResult | None:
        return next((r for r in self._results if r.name == name), None)
