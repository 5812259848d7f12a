"""Sentinel Service - CI completion handling for pull-request work orders.

Usage:
    service = SentinelService(state_machine, settings=settings)
    result = await service.analyze(
        SentinelAnalysisRequest(github_pr_number=42, workflow_results=[...])
    )
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from ..config import Settings
from ..errors import OverseerError, WorkOrderNotFoundError
from ..storage import isoformat
from ..workorders import WorkOrder, WorkOrderStateMachine, WorkOrderStatus
from .engine import SentinelVerdict, Verdict, VerdictEngine, WorkflowResult
from .flakiness import FlakinessClassifier
from .history import TestHistoryLedger, TestHistoryRecord
from .parser import TestOutput, TestOutputParser

if TYPE_CHECKING:
    from ..escalation import CriticalErrorHandler, EscalationEngine
    from ..learning import OutcomeAggregator

logger = logging.getLogger(__name__)

RUN_URL_PATTERN = re.compile(r"github\.com/([^/]+)/([^/]+)/actions/runs/(\d+)")


@dataclass
class SentinelAnalysisRequest:
    github_pr_number: int
    workflow_results: list[WorkflowResult]
    work_order_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SentinelAnalysisRequest:
        return cls(
            github_pr_number=int(data["github_pr_number"]),
            workflow_results=[WorkflowResult.from_dict(w) for w in data.get("workflow_results", [])],
            work_order_id=data.get("work_order_id"),
        )


@dataclass
class SentinelResult:
    work_order_id: str
    verdict: SentinelVerdict
    status: WorkOrderStatus
    escalation_id: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "work_order_id": self.work_order_id,
            "status": str(self.status),
            "escalation_id": self.escalation_id,
            "warnings": list(self.warnings),
            **self.verdict.to_dict(),
        }


class LogFetcher(Protocol):
    """Source of raw CI log text for a workflow run."""

    async def fetch(self, workflow: WorkflowResult) -> str | None: ...


class GitHubLogFetcher:
    """Download job logs for a GitHub Actions run.

    Network failures and timeouts are logged and reported as "no log".
    """

    def __init__(
        self,
        token: str | None = None,
        base_url: str = "https://api.github.com",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def fetch(self, workflow: WorkflowResult) -> str | None:
        match = RUN_URL_PATTERN.search(workflow.run_url or "")
        if match is None:
            logger.debug("No run URL for %s, skipping log fetch", workflow.workflow_name)
            return None
        owner, repo, run_id = match.groups()

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout,
                follow_redirects=True,
                transport=self.transport,
            ) as client:
                response = await client.get(f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs")
                response.raise_for_status()
                chunks: list[str] = []
                for job in response.json().get("jobs", []):
                    logs = await client.get(f"/repos/{owner}/{repo}/actions/jobs/{job['id']}/logs")
                    logs.raise_for_status()
                    chunks.append(logs.text)
                return "\n".join(chunks)
        except httpx.TimeoutException:
            logger.warning("Timed out fetching logs for run %s", run_id)
        except httpx.HTTPError as e:
            logger.warning("Failed to fetch logs for run %s: %s", run_id, e)
        return None


def merge_test_outputs(outputs: list[TestOutput]) -> TestOutput | None:
    """Combine parsed outputs from several test workflows into one."""
    detailed = [o for o in outputs if o.has_detail]
    if not detailed:
        return None
    if len(detailed) == 1:
        return detailed[0]
    return TestOutput(
        total_tests=sum(o.total_tests for o in detailed),
        passed=sum(o.passed for o in detailed),
        failed=sum(o.failed for o in detailed),
        skipped=sum(o.skipped for o in detailed),
        duration_ms=sum(o.duration_ms for o in detailed),
        failures=[f for o in detailed for f in o.failures],
        passed_tests=[t for o in detailed for t in o.passed_tests],
    )


class SentinelService:
    """Turns a CI completion into a verdict and the matching work-order transition."""

    def __init__(
        self,
        state_machine: WorkOrderStateMachine,
        settings: Settings | None = None,
        verdict_engine: VerdictEngine | None = None,
        classifier: FlakinessClassifier | None = None,
        log_fetcher: LogFetcher | None = None,
        escalation_engine: EscalationEngine | None = None,
        critical_handler: CriticalErrorHandler | None = None,
        history_path: Path | None = None,
        outcome_aggregator: OutcomeAggregator | None = None,
    ) -> None:
        self.settings = settings or Settings()
        self.state_machine = state_machine
        self.repository = state_machine.repository
        self.verdict_engine = verdict_engine or VerdictEngine(self.settings)
        self.classifier = classifier or FlakinessClassifier(self.settings)
        self.log_fetcher = log_fetcher or GitHubLogFetcher(
            token=self.settings.github_token,
            base_url=self.settings.github_api_url,
            timeout=self.settings.log_fetch_timeout_seconds,
        )
        self.escalation_engine = escalation_engine
        self.critical_handler = critical_handler
        self.history_path = history_path or self.settings.test_history_path
        self.outcome_aggregator = outcome_aggregator

    async def find_work_order(self, request: SentinelAnalysisRequest) -> WorkOrder:
        """Look the work order up by id or PR number, retrying while the PR link lands."""
        attempts = max(1, self.settings.work_order_fetch_attempts)
        for attempt in range(1, attempts + 1):
            if request.work_order_id:
                work_order = self.repository.get(request.work_order_id)
            else:
                work_order = self.repository.find_by_pr(request.github_pr_number)
            if work_order is not None:
                return work_order
            if attempt < attempts:
                logger.info(
                    "Work order for PR #%s not found (attempt %d/%d), retrying",
                    request.github_pr_number,
                    attempt,
                    attempts,
                )
                await asyncio.sleep(self.settings.work_order_fetch_delay_seconds)

        key = request.work_order_id or f"PR #{request.github_pr_number}"
        error = WorkOrderNotFoundError(key, attempts)
        if self.critical_handler is not None:
            self.critical_handler.handle_critical_error(
                "sentinel",
                "find_work_order",
                error,
                request.work_order_id,
                severity="critical",
                metadata={"github_pr_number": request.github_pr_number},
            )
        raise error

    async def fetch_test_outputs(self, workflows: list[WorkflowResult]) -> dict[str, TestOutput]:
        """Parsed log of each test workflow, keyed by workflow name."""
        outputs: dict[str, TestOutput] = {}
        for workflow in workflows:
            if not workflow.is_test_workflow:
                continue
            log_text = await self.log_fetcher.fetch(workflow)
            if log_text:
                outputs[workflow.workflow_name] = TestOutputParser.parse(log_text)
        return outputs

    async def collect_test_output(self, workflows: list[WorkflowResult]) -> TestOutput | None:
        return merge_test_outputs(list((await self.fetch_test_outputs(workflows)).values()))

    def record_ci_events(
        self,
        work_order_id: str,
        request: SentinelAnalysisRequest,
        outputs: dict[str, TestOutput],
    ) -> None:
        """Store one ``workflow_run`` event per workflow for outcome aggregation."""
        if self.outcome_aggregator is None:
            return
        for workflow in request.workflow_results:
            payload: dict[str, Any] = {
                "conclusion": workflow.conclusion,
                "run_id": workflow.run_id,
                "run_url": workflow.run_url,
                "github_pr_number": request.github_pr_number,
            }
            output = outputs.get(workflow.workflow_name)
            if output is not None and output.has_detail:
                payload["test_stats"] = {
                    "total": output.total_tests,
                    "passed": output.passed,
                    "failed": output.failed,
                    "skipped": output.skipped,
                }
                payload["duration_ms"] = output.duration_ms
            self.outcome_aggregator.record_ci_event(
                work_order_id,
                "workflow_run",
                workflow_name=workflow.workflow_name,
                status=workflow.conclusion or workflow.status,
                payload=payload,
            )

    async def analyze(self, request: SentinelAnalysisRequest) -> SentinelResult:
        """Fetch logs, decide the verdict, update test history and the work order.

        Raises:
            WorkOrderNotFoundError: if no work order matches after all attempts
        """
        work_order = await self.find_work_order(request)
        outputs = await self.fetch_test_outputs(request.workflow_results)
        test_output = merge_test_outputs(list(outputs.values()))
        run_id = next(
            (str(w.run_id) for w in request.workflow_results if w.run_id is not None), ""
        )

        async with TestHistoryLedger(self.history_path, self.settings.flaky_window) as ledger:
            suppressed: dict[str, Any] = {}
            if test_output is not None and test_output.failures:
                # Judged against prior runs only
                suppressed = await ledger.suppressed(
                    (f.test_name for f in test_output.failures), self.classifier
                )
            verdict = self.verdict_engine.analyze(
                request.workflow_results, test_output, suppressed_tests=suppressed.keys()
            )
            if test_output is not None:
                records = [
                    TestHistoryRecord(f.test_name, False, run_id, work_order.id)
                    for f in test_output.failures
                ] + [
                    TestHistoryRecord(name, True, run_id, work_order.id)
                    for name in test_output.passed_tests
                ]
                await ledger.record(records)

        self.record_ci_events(work_order.id, request, outputs)

        logger.info(
            "Sentinel verdict for %s (PR #%s): %s (confidence %.2f)",
            work_order.id,
            request.github_pr_number,
            verdict.verdict,
            verdict.confidence,
        )

        result = SentinelResult(work_order_id=work_order.id, verdict=verdict, status=work_order.status)
        self._apply_verdict(work_order, verdict, result)

        if verdict.escalation_required and result.escalation_id is None:
            self._escalate(work_order.id, verdict, result)
        return result

    def _apply_verdict(
        self, work_order: WorkOrder, verdict: SentinelVerdict, result: SentinelResult
    ) -> None:
        decision = {
            "verdict": str(verdict.verdict),
            "confidence": verdict.confidence,
            "reasoning": verdict.reasoning,
            "ignored_tests": list(verdict.ignored_tests),
            "decided_at": isoformat(),
        }
        if verdict.verdict is Verdict.PASS:
            target = WorkOrderStatus.COMPLETED
            metadata: dict[str, Any] = {"sentinel_decision": decision}
        else:
            target = WorkOrderStatus.FAILED
            metadata = {
                "sentinel_decision": decision,
                "sentinel_failures": int(work_order.metadata.get("sentinel_failures") or 0) + 1,
            }

        try:
            updated = self.state_machine.transition(
                work_order.id, target, metadata=metadata, reason=f"sentinel {verdict.verdict}"
            )
            result.status = updated.status
        except OverseerError as e:
            result.warnings.append(str(e))
            self.state_machine.merge_metadata(work_order.id, metadata)
            if self.critical_handler is not None:
                _, escalation_id = self.critical_handler.handle_critical_error(
                    "sentinel",
                    "apply_verdict",
                    e,
                    work_order.id,
                    severity="critical",
                    metadata={"verdict": str(verdict.verdict), "target_status": str(target)},
                )
                result.escalation_id = escalation_id
            else:
                logger.warning("Could not apply verdict to %s: %s", work_order.id, e)

    def _escalate(self, work_order_id: str, verdict: SentinelVerdict, result: SentinelResult) -> None:
        if self.escalation_engine is None:
            result.warnings.append("Escalation required but no escalation engine configured")
            return
        try:
            escalation, _ = self.escalation_engine.create_escalation(
                work_order_id, force=True, reason=verdict.escalation_reason
            )
            result.escalation_id = escalation.id
            current = self.repository.get(work_order_id)
            if current is not None:
                result.status = current.status
        except OverseerError as e:
            result.warnings.append(str(e))
            logger.error("Sentinel escalation for %s failed: %s", work_order_id, e)
