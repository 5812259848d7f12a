"""Parse test runner output from CI logs.

Supported formats:

Check-mark style (integration scripts)::

    ✓ Test Name
    ✗ Failed Test Name
      Error: Reason for failure
    Tests: 18/20 passed

Jest::

    FAIL  src/other.test.ts
      ● suite › failing test
        expect(received).toBe(expected)
    Tests:       5 passed, 2 failed, 7 total

pytest::

    FAILED tests/test_api.py::test_health - AssertionError: boom
    ========= 1 failed, 12 passed, 2 skipped in 3.21s =========
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

CHECKMARK_SUMMARY = re.compile(r"Tests:\s*(\d+)/(\d+)\s+passed", re.IGNORECASE)
JEST_SUMMARY = re.compile(
    r"Tests:\s+(?:(\d+)\s+failed,\s+)?(?:(\d+)\s+skipped,\s+)?(\d+)\s+passed,\s+(\d+)\s+total",
    re.IGNORECASE,
)
JEST_SUMMARY_PASSED_FIRST = re.compile(
    r"Tests:\s+(\d+)\s+passed,\s+(\d+)\s+failed,\s+(\d+)\s+total", re.IGNORECASE
)
PYTEST_FAILED = re.compile(r"^FAILED\s+(\S+)(?:\s+-\s+(.*))?$")
PYTEST_SUMMARY = re.compile(r"^=+\s+(.*?)\s+in\s+[\d.]+s(?:\s+\([^)]*\))?\s+=+$")
PYTEST_COUNT = re.compile(r"(\d+)\s+(passed|failed|skipped|error|errors)")


@dataclass(frozen=True)
class TestFailure:
    __test__ = False

    test_name: str
    error_message: str = ""


@dataclass
class TestOutput:
    """Parsed test results for one CI run."""

    __test__ = False

    total_tests: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0
    failures: list[TestFailure] = field(default_factory=list)
    passed_tests: list[str] = field(default_factory=list)

    @property
    def has_detail(self) -> bool:
        return self.total_tests > 0

    def to_dict(self) -> dict[str, object]:
        return {
            "total_tests": self.total_tests,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_ms": self.duration_ms,
            "failures": [f.__dict__ for f in self.failures],
            "passed_tests": list(self.passed_tests),
        }


class TestOutputParser:
    """Turn raw log text into :class:`TestOutput`."""

    __test__ = False

    @staticmethod
    def parse_checkmark(output: str) -> TestOutput:
        failures: list[TestFailure] = []
        passed_tests: list[str] = []
        passed = failed = 0
        current: str | None = None

        for raw in output.splitlines():
            line = raw.strip()
            if line.startswith("✓"):
                passed_tests.append(line[1:].strip())
                passed += 1
                continue
            if line.startswith("✗"):
                if current is not None:
                    failures.append(TestFailure(current))
                current = line[1:].strip()
                failed += 1
                continue
            if current is not None and line.startswith("Error:"):
                failures.append(TestFailure(current, line[len("Error:"):].strip()))
                current = None
                continue
            summary = CHECKMARK_SUMMARY.search(line)
            if summary:
                passed = int(summary[1])
                failed = int(summary[2]) - passed
                break

        if current is not None:
            failures.append(TestFailure(current))
        return TestOutput(
            total_tests=passed + failed,
            passed=passed,
            failed=failed,
            failures=failures,
            passed_tests=passed_tests,
        )

    @staticmethod
    def parse_jest(output: str) -> TestOutput:
        failures: list[TestFailure] = []
        passed = failed = skipped = 0
        current: str | None = None

        for raw in output.splitlines():
            line = raw.strip()
            summary = JEST_SUMMARY_PASSED_FIRST.search(line)
            if summary:
                passed, failed, total = int(summary[1]), int(summary[2]), int(summary[3])
                skipped = total - passed - failed
                break
            summary = JEST_SUMMARY.search(line)
            if summary:
                failed = int(summary[1] or 0)
                skipped = int(summary[2] or 0)
                passed = int(summary[3])
                total = int(summary[4])
                skipped = max(skipped, total - passed - failed)
                break
            if line.startswith("● "):
                if current is not None:
                    failures.append(TestFailure(current))
                current = line[2:].strip()
                continue
            if current is not None and line:
                failures.append(TestFailure(current, line))
                current = None

        if current is not None:
            failures.append(TestFailure(current))
        return TestOutput(
            total_tests=passed + failed + skipped,
            passed=passed,
            failed=failed,
            skipped=skipped,
            failures=failures,
        )

    @staticmethod
    def parse_pytest(output: str) -> TestOutput:
        failures: list[TestFailure] = []
        counts = {"passed": 0, "failed": 0, "skipped": 0, "error": 0}

        for raw in output.splitlines():
            line = raw.strip()
            failed_line = PYTEST_FAILED.match(line)
            if failed_line:
                failures.append(TestFailure(failed_line[1], (failed_line[2] or "").strip()))
                continue
            summary = PYTEST_SUMMARY.match(line)
            if summary:
                for number, kind in PYTEST_COUNT.findall(summary[1]):
                    counts["error" if kind.startswith("error") else kind] += int(number)

        failed = counts["failed"] + counts["error"]
        return TestOutput(
            total_tests=counts["passed"] + failed + counts["skipped"],
            passed=counts["passed"],
            failed=failed,
            skipped=counts["skipped"],
            failures=failures,
        )

    @classmethod
    def parse(cls, output: str) -> TestOutput:
        """Detect the format and parse; unknown formats yield an empty result."""
        if "Tests:" in output and ("✓" in output or "✗" in output):
            return cls.parse_checkmark(output)
        # pytest's "FAILED" lines would also match the Jest markers
        if any(PYTEST_SUMMARY.match(line.strip()) for line in output.splitlines()):
            return cls.parse_pytest(output)
        if "PASS" in output or "FAIL" in output:
            return cls.parse_jest(output)
        return TestOutput()
