"""Three-layer verification pass run once per session after the steps settle."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Sequence

from ..execution.state import EventSink, discard_events
from ..schema import GeneratedFile, TestReport, TestResult
from ..telemetry import emit_event
from .api_smoke import ApiSmokeTester
from .functional import FunctionalReviewer
from .static_checks import run_static_checks

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]


def summarise(results: Sequence[TestResult], duration_ms: int) -> str:
    passed = sum(1 for result in results if result.severity == "pass")
    warnings = sum(1 for result in results if result.severity == "warn")
    failures = sum(1 for result in results if result.severity == "fail")
    if failures:
        return f"{failures} test(s) FAILED, {warnings} warning(s), {passed} passed ({duration_ms}ms)"
    if warnings:
        return f"All tests passed with {warnings} warning(s) ({duration_ms}ms)"
    return f"All {passed} test(s) passed ({duration_ms}ms)"


class VerificationAgent:
    """Run static checks, API smoke probes and the functional review.

    Findings are advisory: the report is returned to the caller and never
    blocks or reverts the writes the session already made.
    """

    def __init__(
        self,
        *,
        smoke: Optional[ApiSmokeTester] = None,
        reviewer: Optional[FunctionalReviewer] = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._smoke = smoke
        self._reviewer = reviewer
        self._clock = clock

    def run(
        self,
        request: str,
        files: Sequence[GeneratedFile],
        diff: str,
        *,
        emit: EventSink = discard_events,
        session_id: str = "",
    ) -> TestReport:
        if not files:
            return TestReport(summary="No files to test")
        started = self._clock()

        emit("progress", {"message": "Verification: running static analysis"})
        results = run_static_checks(files)

        if self._smoke is not None:
            emit("progress", {"message": "Verification: checking API endpoints"})
            results.extend(self._smoke.run(files))

        if self._reviewer is not None:
            emit("progress", {"message": "Verification: functional review"})
            results.extend(self._reviewer.review(request, diff, session_id=session_id))

        duration_ms = int((self._clock() - started) * 1000)
        report = TestReport(results=results, summary=summarise(results, duration_ms), duration_ms=duration_ms)
        LOGGER.info("Verification: %s", report.summary)
        emit_event(
            "verification.completed",
            session_id=session_id,
            passed=report.passed,
            warnings=report.warnings,
            failures=report.failures,
            duration_ms=duration_ms,
        )
        return report


__all__ = ["VerificationAgent", "summarise"]
