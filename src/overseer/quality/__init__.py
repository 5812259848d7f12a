"""Quality gate for compiler and linter diagnostics."""

from .compilation_gate import (
    CompilationCheckResult,
    Diagnostic,
    GateDecision,
    QualityGate,
    format_summary,
    parse_colon_style,
    parse_diagnostics,
    parse_tsc,
)

__all__ = [
    "CompilationCheckResult",
    "Diagnostic",
    "GateDecision",
    "QualityGate",
    "format_summary",
    "parse_colon_style",
    "parse_diagnostics",
    "parse_tsc",
]
