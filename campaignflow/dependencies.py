from __future__ import annotations

from .core.config import Settings, get_settings
from .core.logging import configure_logging, get_logger
from .orchestration.coordinator import HandoffCoordinator
from .orchestration.corrector import RepairExecutor
from .orchestration.error_strategy import ErrorStrategyResolver
from .orchestration.quality_gate import CheckpointExecutor, QualityGateController
from .orchestration.runner import OperationExecutor, PlanRunner
from .orchestration.sequencer import ExecutionSequencer
from .orchestration.store import WorkflowStateStore
from .services.llm import LLMService

logger = get_logger(name=__name__)

_workflow_store_singleton: WorkflowStateStore | None = None


def get_workflow_store(settings: Settings | None = None) -> WorkflowStateStore:
    global _workflow_store_singleton
    if _workflow_store_singleton is None:
        settings = settings or get_settings()
        _workflow_store_singleton = WorkflowStateStore(
            history=settings.history,
            error_handling=settings.error_handling,
        )
    return _workflow_store_singleton


def reset_workflow_store() -> None:
    global _workflow_store_singleton
    _workflow_store_singleton = None


def build_coordinator(
    settings: Settings | None = None,
    *,
    checkpoint_executor: CheckpointExecutor | None = None,
    repair_executor: RepairExecutor | None = None,
    store: WorkflowStateStore | None = None,
) -> HandoffCoordinator:
    """Wire a coordinator from settings; the repair executor defaults to the LLM service."""
    settings = settings or get_settings()
    configure_logging(settings.observability.log_level)
    if repair_executor is None and settings.handoff.enable_correction:
        repair_executor = LLMService.from_settings(settings)
    coordinator = HandoffCoordinator.from_settings(
        settings,
        repair_executor=repair_executor,
        checkpoint_executor=checkpoint_executor,
        store=store or get_workflow_store(settings),
    )
    logger.info(
        "handoff_coordinator_ready",
        environment=settings.environment,
        correction_enabled=repair_executor is not None,
        checkpoint_configured=checkpoint_executor is not None,
    )
    return coordinator


def build_plan_runner(
    executor: OperationExecutor,
    settings: Settings | None = None,
    *,
    store: WorkflowStateStore | None = None,
) -> PlanRunner:
    settings = settings or get_settings()
    store = store or get_workflow_store(settings)
    quality_gate = QualityGateController(settings.quality_gate, store=store)
    return PlanRunner(
        executor,
        sequencer=ExecutionSequencer(settings.sequencer, quality_gate=quality_gate),
        resolver=ErrorStrategyResolver(settings.error_handling, store=store),
        quality_gate=quality_gate,
        settings=settings.error_handling,
    )
