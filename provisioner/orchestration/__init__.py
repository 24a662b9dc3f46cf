"""Checkpointed workflow orchestration."""

from .context import WorkflowContext
from .selection import StepSelection, resolve_enabled_steps
from .state_manager import (
    CheckpointState,
    CheckpointStore,
    ErrorRecord,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    RunMetadata,
    StepFlags,
)
from .workflow_engine import (
    OrchestratorSettings,
    ParallelFailurePolicy,
    ParallelGroupRunner,
    StepDefinition,
    StepExecutor,
    StepResult,
    StepStatus,
    WorkflowDefinition,
    WorkflowObserver,
    WorkflowOrchestrator,
    WorkflowResult,
    WorkflowStatus,
    define_workflow,
)

__all__ = [
    # Core workflow classes
    "OrchestratorSettings",
    "ParallelFailurePolicy",
    "StepDefinition",
    "StepResult",
    "StepStatus",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowOrchestrator",
    "WorkflowResult",
    "WorkflowStatus",
    "define_workflow",
    # Executors
    "ParallelGroupRunner",
    "StepExecutor",
    "WorkflowObserver",
    # Selection
    "StepSelection",
    "resolve_enabled_steps",
    # Checkpoint state
    "CheckpointState",
    "CheckpointStore",
    "ErrorRecord",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "RunMetadata",
    "StepFlags",
]
