"""Component wiring shared by the API server and the CLI."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import Settings
from .escalation import CriticalErrorHandler, EscalationEngine
from .learning import LearningSampleBuilder, OutcomeAggregator
from .quality import QualityGate
from .routing import ComplexityRouter, RoutingHistory, WeightUpdater
from .safety import BudgetGuard
from .storage import Database
from .verdict import FlakinessClassifier, LogFetcher, SentinelService, VerdictEngine
from .workorders import WorkOrderRepository, WorkOrderStateMachine

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    db: Database
    repository: WorkOrderRepository
    state_machine: WorkOrderStateMachine
    router: ComplexityRouter
    routing_history: RoutingHistory
    weight_updater: WeightUpdater
    budget_guard: BudgetGuard
    quality_gate: QualityGate
    verdict_engine: VerdictEngine
    classifier: FlakinessClassifier
    escalation_engine: EscalationEngine
    critical_handler: CriticalErrorHandler
    sentinel: SentinelService
    aggregator: OutcomeAggregator
    sample_builder: LearningSampleBuilder


def build_services(settings: Settings | None = None, log_fetcher: LogFetcher | None = None) -> Services:
    """Create every component against one database, restoring the latest router weights."""
    settings = settings or Settings()
    db = Database(settings.data_dir)
    db.ensure_tables()

    repository = WorkOrderRepository(db)
    state_machine = WorkOrderStateMachine(repository)
    router = ComplexityRouter(settings)
    weight_updater = WeightUpdater(db, router)
    if weight_updater.restore() is not None:
        logger.info("Restored router weights from history")

    budget_guard = BudgetGuard(db, settings)
    escalation_engine = EscalationEngine(db, state_machine, settings, budget_guard)
    critical_handler = CriticalErrorHandler(db, escalation_engine)
    verdict_engine = VerdictEngine(settings)
    classifier = FlakinessClassifier(settings)
    aggregator = OutcomeAggregator(db, settings)

    return Services(
        settings=settings,
        db=db,
        repository=repository,
        state_machine=state_machine,
        router=router,
        routing_history=RoutingHistory(db),
        weight_updater=weight_updater,
        budget_guard=budget_guard,
        quality_gate=QualityGate(settings),
        verdict_engine=verdict_engine,
        classifier=classifier,
        escalation_engine=escalation_engine,
        critical_handler=critical_handler,
        sentinel=SentinelService(
            state_machine,
            settings,
            verdict_engine=verdict_engine,
            classifier=classifier,
            log_fetcher=log_fetcher,
            escalation_engine=escalation_engine,
            critical_handler=critical_handler,
            outcome_aggregator=aggregator,
        ),
        aggregator=aggregator,
        sample_builder=LearningSampleBuilder(db, repository, aggregator),
    )
