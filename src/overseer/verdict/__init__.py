"""CI verdicts: log parsing, flakiness tracking and the sentinel service."""

from .engine import SentinelVerdict, Verdict, VerdictEngine, WorkflowResult
from .flakiness import FlakinessClassifier, TestClassification, TestStats
from .history import TestHistoryLedger, TestHistoryRecord
from .parser import TestFailure, TestOutput, TestOutputParser
from .service import (
    GitHubLogFetcher,
    LogFetcher,
    SentinelAnalysisRequest,
    SentinelResult,
    SentinelService,
    merge_test_outputs,
)

__all__ = [
    # Engine
    "SentinelVerdict",
    "Verdict",
    "VerdictEngine",
    "WorkflowResult",
    # Flakiness
    "FlakinessClassifier",
    "TestClassification",
    "TestHistoryLedger",
    "TestHistoryRecord",
    "TestStats",
    # Parsing
    "TestFailure",
    "TestOutput",
    "TestOutputParser",
    # Service
    "GitHubLogFetcher",
    "LogFetcher",
    "SentinelAnalysisRequest",
    "SentinelResult",
    "SentinelService",
    "merge_test_outputs",
]
