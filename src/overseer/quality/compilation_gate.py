"""Compilation Gate - classify a change's compiler/linter diagnostics.

Decision logic:
- 0 errors -> proceed
- 1..warn_max errors -> warn (non-blocking, first 10 kept for the log)
- more than warn_max -> escalate (blocking, first 20 kept for review)

A tool that times out, crashes, or exits non-zero without parseable output is
an escalate with a single ``unknown`` diagnostic, never a proceed.
"""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from ..config import Settings

logger = logging.getLogger(__name__)

# src/lib/example.ts(45,12): error TS2304: Cannot find name 'foo'.
TSC_PATTERN = re.compile(r"^(.+?)\((\d+),(\d+)\):\s+error\s+(TS\d+):\s+(.+)$", re.MULTILINE)

# src/app.py:10:5: F401 `os` imported but unused
# src/app.py:12: error: Incompatible return value  [return-value]
# main.c:3:5: error: expected ';' before '}' token
COLON_PATTERN = re.compile(
    r"^(?P<file>[^\s:][^:\n]*):(?P<line>\d+):(?:(?P<col>\d+):)?\s+"
    r"(?:(?P<severity>error|warning|note):\s+)?"
    r"(?:(?P<code>[A-Z]+\d+)\s+)?(?P<message>.+)$",
    re.MULTILINE,
)

UNKNOWN_CODE = "unknown"


class GateDecision(StrEnum):
    PROCEED = "proceed"
    WARN = "warn"
    ESCALATE = "escalate"


@dataclass(frozen=True)
class Diagnostic:
    file: str
    line: int
    column: int
    code: str
    message: str

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.column} - {self.code}: {self.message}"


@dataclass
class CompilationCheckResult:
    """Outcome of a compilation check."""

    decision: GateDecision
    error_count: int
    diagnostics: list[Diagnostic] = field(default_factory=list)
    advice: str = ""
    tool_error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "decision": str(self.decision),
            "error_count": self.error_count,
            "diagnostics": [d.__dict__ for d in self.diagnostics],
            "advice": self.advice,
            "tool_error": self.tool_error,
        }


def parse_tsc(output: str) -> list[Diagnostic]:
    return [
        Diagnostic(file=m[1], line=int(m[2]), column=int(m[3]), code=m[4], message=m[5].strip())
        for m in TSC_PATTERN.finditer(output)
    ]


def parse_colon_style(output: str) -> list[Diagnostic]:
    """Parse ``file:line[:col]: [severity:] [CODE] message`` lines, errors only."""
    diagnostics = []
    for m in COLON_PATTERN.finditer(output):
        if m["severity"] in ("warning", "note"):
            continue
        diagnostics.append(
            Diagnostic(
                file=m["file"],
                line=int(m["line"]),
                column=int(m["col"] or 0),
                code=m["code"] or "error",
                message=m["message"].strip(),
            )
        )
    return diagnostics


def parse_diagnostics(output: str) -> list[Diagnostic]:
    """Try the tsc format first, then the colon-separated format."""
    return parse_tsc(output) or parse_colon_style(output)


class QualityGate:
    """Turn diagnostics into proceed / warn / escalate."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()

    def evaluate(self, diagnostics: Sequence[Diagnostic]) -> CompilationCheckResult:
        count = len(diagnostics)
        warn_max = self.settings.compilation_warn_max

        if count == 0:
            return CompilationCheckResult(
                decision=GateDecision.PROCEED,
                error_count=0,
                advice="Compilation successful, proceed with merge",
            )
        if count <= warn_max:
            logger.warning("%d error(s) within warning threshold", count)
            return CompilationCheckResult(
                decision=GateDecision.WARN,
                error_count=count,
                diagnostics=list(diagnostics[: self.settings.compilation_warn_sample]),
                advice=(
                    f"{count} error(s) detected, below escalation threshold. "
                    "Review recommended but not blocking."
                ),
            )

        logger.error("%d error(s) exceed threshold, escalating", count)
        return CompilationCheckResult(
            decision=GateDecision.ESCALATE,
            error_count=count,
            diagnostics=list(diagnostics[: self.settings.compilation_escalate_sample]),
            advice=f"{count} error(s) exceed threshold. Escalating for review and fixes.",
        )

    def check_output(self, output: str, exit_code: int = 1) -> CompilationCheckResult:
        """Classify raw tool output.

        Args:
            output: Combined stdout/stderr of the compiler or linter
            exit_code: Tool exit code; non-zero with nothing parseable is a tool failure
        """
        diagnostics = parse_diagnostics(output)
        if not diagnostics and exit_code != 0:
            first_line = next((ln for ln in output.splitlines() if ln.strip()), "")
            return self.tool_failure(
                f"exit code {exit_code} with no parseable diagnostics: {first_line[:200]}"
            )
        return self.evaluate(diagnostics)

    def tool_failure(self, detail: str) -> CompilationCheckResult:
        logger.error("Compilation tool failure: %s", detail)
        return CompilationCheckResult(
            decision=GateDecision.ESCALATE,
            error_count=1,
            diagnostics=[Diagnostic(file="", line=0, column=0, code=UNKNOWN_CODE, message=detail)],
            advice="Verification tool failed. Escalating; the change was not verified.",
            tool_error=detail,
        )

    def run(
        self,
        command: Sequence[str],
        cwd: Path | str,
        timeout: float | None = None,
    ) -> CompilationCheckResult:
        """Run a compiler/linter (e.g. ``npx tsc --noEmit``) and classify its output."""
        timeout = timeout or self.settings.compilation_timeout_seconds
        logger.info("Running %s in %s", " ".join(command), cwd)
        try:
            result = subprocess.run(
                list(command),
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=str(cwd),
                check=False,
            )
        except subprocess.TimeoutExpired:
            return self.tool_failure(f"timed out after {timeout:.0f}s")
        except OSError as e:
            return self.tool_failure(f"could not start {command[0]}: {e}")

        if result.returncode == 0:
            return self.evaluate([])
        # tsc reports on stdout; stderr may carry unrelated npm noise
        output = "\n".join(part for part in (result.stdout, result.stderr) if part)
        return self.check_output(output, result.returncode)


def format_summary(result: CompilationCheckResult) -> str:
    """Human-readable summary for logs and escalation notes."""
    if result.error_count == 0:
        return "Compilation successful (0 errors)"

    lines = [
        f"Errors: {result.error_count}",
        f"Decision: {str(result.decision).upper()}",
        "",
    ]
    if result.diagnostics:
        lines.append("Top errors:")
        lines.extend(f"  {d}" for d in result.diagnostics[:5])
    if result.advice:
        lines += ["", f"Advice: {result.advice}"]
    return "\n".join(lines)
