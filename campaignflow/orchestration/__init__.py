"""
Orchestration Package

Handoff-gated workflow engine for the five-stage campaign pipeline:
- Error strategy resolution for failing operations
- Execution sequencing and re-planning
- Mandatory quality gate before delivery
- Handoff validation and automated payload repair
- Transition coordination and plan execution
"""

from .coordinator import HandoffCoordinator
from .corrector import AutomatedDataCorrector, RepairExecutor, extract_structured_payload, payload_hash
from .enums import HaltReason, StepStatus
from .error_strategy import (
    ClassificationRule,
    ErrorStrategyResolver,
    describe_error,
)
from .exceptions import OperationFailure, PlanExecutionError, WorkflowError
from .handoff_validator import HandoffValidator
from .quality_gate import CheckpointExecutor, QualityGateController
from .runner import OperationExecutor, PlanRunner, PlanRunResult, StepOutcome
from .sequencer import ExecutionSequencer, StepCondition
from .store import BoundedHistory, WorkflowStateStore

__all__ = [
    # Coordination
    "HandoffCoordinator",
    "HandoffValidator",
    "AutomatedDataCorrector",
    "RepairExecutor",
    "extract_structured_payload",
    "payload_hash",
    # Quality gate
    "QualityGateController",
    "CheckpointExecutor",
    # Planning
    "ExecutionSequencer",
    "StepCondition",
    "PlanRunner",
    "PlanRunResult",
    "StepOutcome",
    "OperationExecutor",
    "StepStatus",
    "HaltReason",
    # Error handling
    "ErrorStrategyResolver",
    "ClassificationRule",
    "describe_error",
    "WorkflowError",
    "PlanExecutionError",
    "OperationFailure",
    # State
    "WorkflowStateStore",
    "BoundedHistory",
]
