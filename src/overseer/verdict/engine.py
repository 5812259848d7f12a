"""Verdict Engine - turn CI workflow results into a pass/fail verdict.

Rules, first match wins:
1. An expected workflow is missing -> fail, confidence 0.7, escalate.
2. An expected workflow concluded ``failure`` -> fail. Confidence starts at
   0.9, -0.2 without parsed test detail, -0.1 if more than two workflows
   failed, floor 0.5. Escalate when confidence < 0.8.
3. Any workflow cancelled or skipped -> fail, confidence 0.6, escalate.
4. Otherwise -> pass, confidence 1.0.

A failed test workflow whose parsed failures are all suppressed flaky tests
does not count as a failure.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ..config import Settings
from .parser import TestOutput

logger = logging.getLogger(__name__)

BASE_FAILURE_CONFIDENCE = 0.9
NO_DETAIL_PENALTY = 0.2
MANY_FAILURES_PENALTY = 0.1
MANY_FAILURES = 2
FAILURE_CONFIDENCE_FLOOR = 0.5
ESCALATION_CONFIDENCE = 0.8
MISSING_CONFIDENCE = 0.7
INCOMPLETE_CONFIDENCE = 0.6

INCOMPLETE_CONCLUSIONS = frozenset({"cancelled", "skipped"})


class Verdict(StrEnum):
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True)
class WorkflowResult:
    workflow_name: str
    conclusion: str | None
    status: str = "completed"
    run_id: int | None = None
    run_url: str = ""

    @property
    def is_test_workflow(self) -> bool:
        return "test" in self.workflow_name.lower()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowResult:
        return cls(
            workflow_name=data.get("workflow_name") or data.get("name", ""),
            conclusion=data.get("conclusion"),
            status=data.get("status", "completed"),
            run_id=data.get("run_id"),
            run_url=data.get("run_url") or data.get("html_url", ""),
        )


@dataclass
class SentinelVerdict:
    verdict: Verdict
    confidence: float
    reasoning: str
    workflow_results: list[WorkflowResult] = field(default_factory=list)
    test_output: TestOutput | None = None
    escalation_required: bool = False
    escalation_reason: str | None = None
    ignored_tests: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0.0, 1.0], got {self.confidence}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": str(self.verdict),
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "workflow_results": [w.__dict__ for w in self.workflow_results],
            "test_output": self.test_output.to_dict() if self.test_output else None,
            "escalation_required": self.escalation_required,
            "escalation_reason": self.escalation_reason,
            "ignored_tests": list(self.ignored_tests),
        }


def _failure_details(test_output: TestOutput | None) -> str:
    if test_output is None or test_output.failed == 0:
        return "No test details available."

    names = ", ".join(f'"{f.test_name}"' for f in test_output.failures[:3])
    extra = len(test_output.failures) - 3
    remaining = f" and {extra} more" if extra > 0 else ""
    return f"Failed tests: {names}{remaining}. ({test_output.failed}/{test_output.total_tests} failed)"


def _success_details(test_output: TestOutput | None) -> str:
    if test_output is None or test_output.total_tests == 0:
        return ""
    return f"Tests: {test_output.passed}/{test_output.total_tests} passed."


class VerdictEngine:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()

    @property
    def expected_workflows(self) -> list[str]:
        return list(self.settings.expected_workflows)

    def failure_confidence(self, failed_count: int, test_output: TestOutput | None) -> float:
        confidence = BASE_FAILURE_CONFIDENCE
        if test_output is None or test_output.total_tests == 0:
            confidence -= NO_DETAIL_PENALTY
        if failed_count > MANY_FAILURES:
            confidence -= MANY_FAILURES_PENALTY
        return round(max(FAILURE_CONFIDENCE_FLOOR, confidence), 4)

    def analyze(
        self,
        workflow_results: Sequence[WorkflowResult],
        test_output: TestOutput | None = None,
        suppressed_tests: Collection[str] = (),
    ) -> SentinelVerdict:
        """Decide pass/fail for one set of CI results.

        Args:
            workflow_results: One entry per workflow run
            test_output: Parsed test log, if one was available
            suppressed_tests: Names of tests currently classified as ignorable flakes
        """
        results = list(workflow_results)
        by_name = {w.workflow_name: w for w in results}
        expected = self.expected_workflows

        missing = [name for name in expected if name not in by_name]
        if missing:
            return SentinelVerdict(
                verdict=Verdict.FAIL,
                confidence=MISSING_CONFIDENCE,
                reasoning=(
                    f"Missing expected workflows: {', '.join(missing)}. "
                    "Cannot make reliable quality assessment."
                ),
                workflow_results=results,
                test_output=test_output,
                escalation_required=True,
                escalation_reason="Incomplete workflow execution",
            )

        ignored = self._ignored_failures(test_output, suppressed_tests)
        failed = [
            by_name[name]
            for name in expected
            if by_name[name].conclusion == "failure"
            and not (ignored and by_name[name].is_test_workflow)
        ]
        if ignored:
            logger.info("Ignoring flaky test failures: %s", ", ".join(ignored))

        if failed:
            confidence = self.failure_confidence(len(failed), test_output)
            escalate = confidence < ESCALATION_CONFIDENCE
            names = ", ".join(w.workflow_name for w in failed)
            return SentinelVerdict(
                verdict=Verdict.FAIL,
                confidence=confidence,
                reasoning=f"Workflows failed: {names}. {_failure_details(test_output)}",
                workflow_results=results,
                test_output=test_output,
                escalation_required=escalate,
                escalation_reason="Low confidence in failure analysis" if escalate else None,
                ignored_tests=ignored,
            )

        if any(w.conclusion in INCOMPLETE_CONCLUSIONS for w in results):
            return SentinelVerdict(
                verdict=Verdict.FAIL,
                confidence=INCOMPLETE_CONFIDENCE,
                reasoning="Some workflows were cancelled or skipped. Manual review required.",
                workflow_results=results,
                test_output=test_output,
                escalation_required=True,
                escalation_reason="Incomplete workflow execution",
                ignored_tests=ignored,
            )

        reasoning = f"All expected workflows passed successfully. {_success_details(test_output)}"
        if ignored:
            reasoning += f" Ignored flaky tests: {', '.join(ignored)}."
        return SentinelVerdict(
            verdict=Verdict.PASS,
            confidence=1.0,
            reasoning=reasoning.strip(),
            workflow_results=results,
            test_output=test_output,
            ignored_tests=ignored,
        )

    @staticmethod
    def _ignored_failures(
        test_output: TestOutput | None, suppressed_tests: Collection[str]
    ) -> list[str]:
        """Failure names to ignore; only when every reported failure is a suppressed flake."""
        if test_output is None or not test_output.failures or not suppressed_tests:
            return []
        names = [f.test_name for f in test_output.failures]
        if len(names) < test_output.failed:
            return []
        if all(name in suppressed_tests for name in names):
            return names
        return []
