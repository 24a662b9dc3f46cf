"""
Resumable workflow engine.

This package contains the engine components:
- steps: Step models, results and the validated workflow definition
- executors: Single-step execution policy and parallel group runner
- core: Stage traversal, completion and failure handling
"""

from __future__ import annotations

from .core import OrchestratorSettings, WorkflowOrchestrator
from .executors import Invocation, ParallelGroupRunner, StepExecutor, WorkflowObserver
from .steps import (
    RESERVED_STEP_NAMES,
    ParallelFailurePolicy,
    Stage,
    StepDefinition,
    StepResult,
    StepStatus,
    WorkflowDefinition,
    WorkflowResult,
    WorkflowStatus,
    define_workflow,
)

__all__ = [
    # Step models
    "RESERVED_STEP_NAMES",
    "ParallelFailurePolicy",
    "Stage",
    "StepDefinition",
    "StepResult",
    "StepStatus",
    "WorkflowDefinition",
    "WorkflowResult",
    "WorkflowStatus",
    "define_workflow",

    # Core orchestrator
    "OrchestratorSettings",
    "WorkflowOrchestrator",

    # Executors
    "Invocation",
    "ParallelGroupRunner",
    "StepExecutor",
    "WorkflowObserver",
]
