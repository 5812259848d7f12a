"""FastAPI server for programmatic overseer access."""

from __future__ import annotations

import time
import uuid
from typing import Any

import click
from fastapi import Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from overseer import __version__
from overseer.errors import (
    EscalationAlreadyResolvedError,
    EscalationCriteriaError,
    EscalationNotFoundError,
    InvalidOptionError,
    InvalidTransitionError,
    OverseerError,
    WorkOrderNotFoundError,
)
from overseer.escalation import EscalationDecision, EscalationStatus
from overseer.services import Services, build_services
from overseer.verdict import SentinelAnalysisRequest, TestOutputParser, WorkflowResult
from overseer.workorders import RiskLevel, WorkOrder

_start_time = time.monotonic()


# ═══════════════════════════════════════════════════════════════════════════
# REQUEST MODELS
# ═══════════════════════════════════════════════════════════════════════════


class WorkOrderIn(BaseModel):
    id: str | None = None
    title: str
    description: str = ""
    risk_level: RiskLevel = RiskLevel.LOW
    acceptance_criteria: list[str] = Field(default_factory=list)
    files_in_scope: list[str] = Field(default_factory=list)
    context_budget_estimate: int | None = None
    estimated_cost: float = Field(default=0.0, ge=0.0)
    github_pr_number: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_work_order(self) -> WorkOrder:
        return WorkOrder(
            id=self.id or f"wo-{uuid.uuid4().hex[:12]}",
            title=self.title,
            description=self.description,
            risk_level=self.risk_level,
            acceptance_criteria=self.acceptance_criteria,
            files_in_scope=self.files_in_scope,
            context_budget_estimate=self.context_budget_estimate,
            estimated_cost=self.estimated_cost,
            github_pr_number=self.github_pr_number,
            metadata=self.metadata,
        )


class RouteIn(BaseModel):
    work_order_id: str | None = None
    work_order: WorkOrderIn | None = None


class QualityCheckIn(BaseModel):
    output: str
    exit_code: int = 1


class WorkflowIn(BaseModel):
    workflow_name: str
    conclusion: str | None = None
    status: str = "completed"
    run_id: int | None = None
    run_url: str = ""

    def to_result(self) -> WorkflowResult:
        return WorkflowResult(**self.model_dump())


class VerdictIn(BaseModel):
    workflow_results: list[WorkflowIn]
    test_log: str | None = None


class SentinelIn(BaseModel):
    github_pr_number: int
    workflow_results: list[WorkflowIn]
    work_order_id: str | None = None


class EscalationIn(BaseModel):
    work_order_id: str
    force: bool = False
    reason: str | None = None


class DecisionIn(BaseModel):
    chosen_option_id: str
    human_notes: str = ""


class AcknowledgeIn(BaseModel):
    notes: str = ""


class CIEventIn(BaseModel):
    event_type: str
    workflow_name: str | None = None
    status: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class SampleIn(BaseModel):
    work_order_id: str


# ═══════════════════════════════════════════════════════════════════════════
# APP
# ═══════════════════════════════════════════════════════════════════════════


def get_services(request: Request) -> Services:
    """Services are built on first use so importing the module touches no files."""
    if request.app.state.services is None:
        request.app.state.services = build_services()
    return request.app.state.services


def _http_error(error: OverseerError) -> HTTPException:
    if isinstance(error, (WorkOrderNotFoundError, EscalationNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (EscalationAlreadyResolvedError, InvalidTransitionError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, (InvalidOptionError, EscalationCriteriaError)):
        return HTTPException(status_code=422, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(
        title="Overseer API",
        version=__version__,
        description="Adaptive routing, budget guard, CI verdicts and escalation",
    )
    app.state.services = services

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        """Health check."""
        uptime = time.monotonic() - _start_time
        return {"status": "ok", "version": __version__, "uptime_seconds": round(uptime, 1)}

    # ── work orders ───────────────────────────────────────────────────────

    @app.post("/api/work-orders", status_code=201)
    async def create_work_order(
        body: WorkOrderIn, svc: Services = Depends(get_services)
    ) -> dict[str, Any]:
        return svc.repository.create(body.to_work_order()).to_dict()

    @app.get("/api/work-orders/{work_order_id}")
    async def get_work_order(
        work_order_id: str, svc: Services = Depends(get_services)
    ) -> dict[str, Any]:
        work_order = svc.repository.get(work_order_id)
        if work_order is None:
            raise _http_error(WorkOrderNotFoundError(work_order_id))
        return work_order.to_dict()

    @app.post("/api/route")
    async def route(body: RouteIn, svc: Services = Depends(get_services)) -> dict[str, Any]:
        """Route a stored work order (decision recorded) or an ad-hoc one (not recorded)."""
        if body.work_order_id:
            work_order = svc.repository.get(body.work_order_id)
            if work_order is None:
                raise _http_error(WorkOrderNotFoundError(body.work_order_id))
        elif body.work_order is not None:
            work_order = body.work_order.to_work_order()
        else:
            raise HTTPException(status_code=422, detail="work_order_id or work_order is required")

        decision = svc.router.route(work_order, svc.budget_guard.status().level)
        if body.work_order_id:
            svc.routing_history.record(decision)
            svc.repository.update(work_order.id, complexity_score=decision.score)
        return decision.to_dict()

    # ── quality & verdicts ────────────────────────────────────────────────

    @app.post("/api/quality/check")
    async def quality_check(
        body: QualityCheckIn, svc: Services = Depends(get_services)
    ) -> dict[str, Any]:
        return svc.quality_gate.check_output(body.output, body.exit_code).to_dict()

    @app.post("/api/verdict")
    async def verdict(body: VerdictIn, svc: Services = Depends(get_services)) -> dict[str, Any]:
        """Stateless verdict for a set of workflow results and an optional test log."""
        test_output = TestOutputParser.parse(body.test_log) if body.test_log else None
        if test_output is not None and not test_output.has_detail:
            test_output = None
        results = [w.to_result() for w in body.workflow_results]
        return svc.verdict_engine.analyze(results, test_output).to_dict()

    @app.post("/api/sentinel")
    async def sentinel(body: SentinelIn, svc: Services = Depends(get_services)) -> dict[str, Any]:
        """CI completion for a PR: verdict, test history and work order transition."""
        request = SentinelAnalysisRequest(
            github_pr_number=body.github_pr_number,
            workflow_results=[w.to_result() for w in body.workflow_results],
            work_order_id=body.work_order_id,
        )
        try:
            result = await svc.sentinel.analyze(request)
        except OverseerError as e:
            raise _http_error(e) from e
        return result.to_dict()

    # ── escalations ───────────────────────────────────────────────────────

    @app.post("/api/escalations", status_code=201)
    async def create_escalation(
        body: EscalationIn, svc: Services = Depends(get_services)
    ) -> dict[str, Any]:
        try:
            escalation, recommendation = svc.escalation_engine.create_escalation(
                body.work_order_id, force=body.force, reason=body.reason
            )
        except OverseerError as e:
            raise _http_error(e) from e
        return {
            "escalation": escalation.to_dict(),
            "recommendation": escalation.context.get("recommendation"),
            "recommended_option_id": recommendation.recommended_option_id,
        }

    @app.get("/api/escalations")
    async def list_escalations(
        status: EscalationStatus | None = None,
        limit: int = 50,
        svc: Services = Depends(get_services),
    ) -> dict[str, Any]:
        escalations = svc.escalation_engine.list_escalations(status, limit)
        return {"escalations": [e.to_dict() for e in escalations], "count": len(escalations)}

    @app.get("/api/escalations/{escalation_id}")
    async def get_escalation(
        escalation_id: str, svc: Services = Depends(get_services)
    ) -> dict[str, Any]:
        try:
            return svc.escalation_engine.get_escalation(escalation_id).to_dict()
        except OverseerError as e:
            raise _http_error(e) from e

    @app.post("/api/escalations/{escalation_id}/decision")
    async def decide(
        escalation_id: str, body: DecisionIn, svc: Services = Depends(get_services)
    ) -> dict[str, Any]:
        decision = EscalationDecision(escalation_id, body.chosen_option_id, body.human_notes)
        try:
            result = svc.escalation_engine.execute_decision(decision)
        except OverseerError as e:
            raise _http_error(e) from e
        return {
            "escalation_id": result.escalation_id,
            "resolution_outcome": str(result.resolution_outcome),
            "final_cost": result.final_cost,
            "lessons_learned": result.lessons_learned,
            "pattern_for_memory": result.pattern_for_memory,
        }

    @app.post("/api/escalations/{escalation_id}/acknowledge")
    async def acknowledge(
        escalation_id: str, body: AcknowledgeIn, svc: Services = Depends(get_services)
    ) -> dict[str, Any]:
        try:
            return svc.escalation_engine.acknowledge(escalation_id, body.notes).to_dict()
        except OverseerError as e:
            raise _http_error(e) from e

    # ── learning & budget ─────────────────────────────────────────────────

    @app.post("/api/work-orders/{work_order_id}/ci-events", status_code=201)
    async def record_ci_event(
        work_order_id: str, body: CIEventIn, svc: Services = Depends(get_services)
    ) -> dict[str, Any]:
        """Ingest a pull_request or workflow_run event for outcome aggregation."""
        if svc.repository.get(work_order_id) is None:
            raise _http_error(WorkOrderNotFoundError(work_order_id))
        event_id = svc.aggregator.record_ci_event(
            work_order_id,
            body.event_type,
            workflow_name=body.workflow_name,
            status=body.status,
            payload=body.payload,
        )
        return {"id": event_id, "work_order_id": work_order_id, **body.model_dump()}

    @app.post("/api/samples", status_code=201)
    async def emit_sample(body: SampleIn, svc: Services = Depends(get_services)) -> dict[str, Any]:
        try:
            sample = svc.sample_builder.emit(body.work_order_id)
        except OverseerError as e:
            raise _http_error(e) from e
        return {"id": sample.sample_id, **sample.to_dict()}

    @app.get("/api/samples")
    async def list_samples(
        limit: int = 50, svc: Services = Depends(get_services)
    ) -> dict[str, Any]:
        samples = svc.sample_builder.recent(limit)
        return {
            "samples": [{"id": s.sample_id, **s.to_dict()} for s in samples],
            "count": len(samples),
        }

    @app.get("/api/budget")
    async def budget(svc: Services = Depends(get_services)) -> dict[str, Any]:
        return svc.budget_guard.status().to_dict()

    @app.post("/api/budget/check")
    async def budget_check(svc: Services = Depends(get_services)) -> dict[str, Any]:
        """Open a system budget escalation if today's spend is near the limits."""
        escalation = svc.escalation_engine.check_budget()
        return {
            "budget": svc.budget_guard.status().to_dict(),
            "escalation": escalation.to_dict() if escalation else None,
        }

    return app


app = create_app()


@click.command()
@click.option("--port", default=3850, help="Port to listen on")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
def main(port: int, host: str) -> None:
    """Start the Overseer API server."""
    import uvicorn

    uvicorn.run(app, host=host, port=port)
