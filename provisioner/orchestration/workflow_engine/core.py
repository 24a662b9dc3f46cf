"""
Core workflow orchestration engine.

The orchestrator walks the enabled stages of a workflow definition in order,
running sequential steps through the StepExecutor and parallel groups through
the ParallelGroupRunner. Progress lives in the checkpoint store: a halted run
keeps its checkpoint for a later resume, a completed run discards it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from ...errors import StepFailedError
from ..selection import StepSelection, resolve_enabled_steps
from ..state_manager import CheckpointState, CheckpointStore
from .executors import ParallelGroupRunner, StepExecutor, WorkflowObserver
from .steps import (
    ParallelFailurePolicy,
    Stage,
    StepDefinition,
    StepResult,
    StepStatus,
    WorkflowDefinition,
    WorkflowResult,
    WorkflowStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrchestratorSettings:
    """Execution settings, resolved once by the configuration layer.

    Attributes:
        max_workers: Worker pool size for parallel groups
        parallel_timeout: Join deadline for a parallel group, in seconds
        parallel_failure_policy: Whether a failed group member halts the run
        retain_completed_checkpoint: Keep the checkpoint (with completed=true) after success
    """

    max_workers: int = 4
    parallel_timeout: float = 600.0
    parallel_failure_policy: ParallelFailurePolicy = ParallelFailurePolicy.ISOLATE
    retain_completed_checkpoint: bool = False

    def __post_init__(self) -> None:
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.parallel_timeout is None or self.parallel_timeout <= 0:
            raise ValueError("parallel_timeout must be positive")


class WorkflowOrchestrator:
    """Drive one workflow instance through its step graph with checkpointing."""

    def __init__(
        self,
        store: CheckpointStore,
        settings: Optional[OrchestratorSettings] = None,
        observer: Optional[WorkflowObserver] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize workflow orchestrator.

        Args:
            store: Checkpoint persistence
            settings: Execution settings
            observer: Receiver of step/run notifications (console output)
            sleep: Sleep used between step retries
            clock: Monotonic clock used for durations
        """
        self.store = store
        self.settings = settings or OrchestratorSettings()
        self.observer = observer or WorkflowObserver()
        self.executor = StepExecutor(store, observer=self.observer, sleep=sleep, clock=clock)
        self.group_runner = ParallelGroupRunner(self.executor, max_workers=self.settings.max_workers)
        self._clock = clock
        self._lock = Lock()

        self._metrics = {
            "workflows_started": 0,
            "workflows_completed": 0,
            "workflows_incomplete": 0,
            "workflows_failed": 0,
            "steps_executed": 0,
            "steps_skipped": 0,
            "steps_failed": 0,
        }

    def run(
        self,
        definition: WorkflowDefinition,
        instance_id: str,
        resume: bool = False,
        force: bool = False,
        selection: Optional[StepSelection] = None,
    ) -> WorkflowResult:
        """Run a workflow instance.

        Args:
            definition: Workflow to run
            instance_id: Run target identifier (e.g. destination name)
            resume: Continue from the saved checkpoint
            force: Ignore saved progress and re-run every enabled step
            selection: Profile or include-list restricting the enabled steps

        Returns:
            WorkflowResult with status COMPLETED or INCOMPLETE

        Raises:
            StepFailedError: A sequential step (or, under the abort policy, a
                group member) failed; the checkpoint is preserved
            WorkflowDefinitionError: The selection does not match the workflow
        """
        enabled = resolve_enabled_steps(definition, selection)
        state = self.store.load(instance_id, definition.step_names, resume=resume, force=force)

        checkpoint_path = self.store.path_for(instance_id)
        result = WorkflowResult(
            instance_id=instance_id,
            status=WorkflowStatus.RUNNING,
            enabled_steps=enabled,
            checkpoint_path=str(checkpoint_path) if checkpoint_path else None,
        )
        with self._lock:
            self._metrics["workflows_started"] += 1

        if force:
            self.store.save(state)

        logger.info(
            f"Starting workflow {definition.name} for '{instance_id}' "
            f"({len(enabled)} enabled step(s), resume={resume}, force={force})"
        )

        start = self._clock()
        try:
            for stage in definition.stages(enabled):
                if stage.is_parallel:
                    self._run_group(stage, state, force, result)
                else:
                    self._run_sequential(stage.steps[0], state, force, result)
        except StepFailedError as failure:
            result.duration = self._clock() - start
            self._fail(failure, result)
            raise

        result.duration = self._clock() - start
        self._finish(definition, state, result)
        return result

    def _missing_requirements(self, step: StepDefinition, state: CheckpointState) -> List[str]:
        return [dep for dep in step.requires if not state.is_complete(dep)]

    def _block(self, step: StepDefinition, missing: List[str]) -> StepResult:
        logger.warning(
            f"Step {step.name} blocked: required step(s) {', '.join(missing)} not complete"
        )
        self.observer.on_step_blocked(step, missing)
        return StepResult(
            step_name=step.name,
            status=StepStatus.BLOCKED,
            message=f"waiting for {', '.join(missing)}",
        )

    def _run_sequential(
        self, step: StepDefinition, state: CheckpointState, force: bool, result: WorkflowResult
    ) -> None:
        if not self.executor.should_skip(step, state, force):
            missing = self._missing_requirements(step, state)
            if missing:
                result.step_results[step.name] = self._block(step, missing)
                return

        try:
            step_result = self.executor.run(step, state, force=force)
        except StepFailedError as failure:
            failed = StepResult(step_name=step.name, status=StepStatus.FAILED, error=failure)
            result.step_results[step.name] = failed
            self._count(failed)
            raise
        result.step_results[step.name] = step_result
        self._count(step_result)

    def _run_group(
        self, stage: Stage, state: CheckpointState, force: bool, result: WorkflowResult
    ) -> None:
        runnable: List[StepDefinition] = []
        for step in stage.steps:
            missing = [] if self.executor.should_skip(step, state, force) else (
                self._missing_requirements(step, state)
            )
            if missing:
                result.step_results[step.name] = self._block(step, missing)
            else:
                runnable.append(step)

        group_results = self.group_runner.run_group(
            runnable, state, force=force, timeout=self.settings.parallel_timeout
        )

        first_failure: Optional[StepFailedError] = None
        for step in runnable:
            step_result = group_results[step.name]
            result.step_results[step.name] = step_result
            self._count(step_result)
            if step_result.status == StepStatus.FAILED:
                logger.warning(
                    f"Parallel step {step.name} failed; siblings in group '{stage.group}' "
                    "are unaffected"
                )
                if first_failure is None:
                    first_failure = step_result.error

        if (
            first_failure is not None
            and self.settings.parallel_failure_policy == ParallelFailurePolicy.ABORT
        ):
            raise first_failure

    def _count(self, step_result: StepResult) -> None:
        with self._lock:
            if step_result.status == StepStatus.COMPLETED:
                self._metrics["steps_executed"] += 1
            elif step_result.status == StepStatus.SKIPPED:
                self._metrics["steps_skipped"] += 1
            elif step_result.status == StepStatus.FAILED:
                self._metrics["steps_failed"] += 1

    def _finish(
        self, definition: WorkflowDefinition, state: CheckpointState, result: WorkflowResult
    ) -> None:
        unresolved = [name for name in result.enabled_steps if not state.is_complete(name)]
        if unresolved:
            result.status = WorkflowStatus.INCOMPLETE
            self.store.save(state)
            with self._lock:
                self._metrics["workflows_incomplete"] += 1
            logger.warning(
                f"Workflow {definition.name} for '{result.instance_id}' finished with "
                f"unresolved step(s): {', '.join(unresolved)}. Re-run with resume to finish them."
            )
        else:
            result.status = WorkflowStatus.COMPLETED
            state.metadata.completed = True
            if self.settings.retain_completed_checkpoint:
                self.store.save(state)
            else:
                self.store.clear(result.instance_id)
            with self._lock:
                self._metrics["workflows_completed"] += 1
            logger.info(
                f"Workflow {definition.name} for '{result.instance_id}' completed "
                f"in {result.duration:.2f}s"
            )

        self.observer.on_run_finished(result)

    def _fail(self, failure: StepFailedError, result: WorkflowResult) -> None:
        result.status = WorkflowStatus.FAILED
        result.failed_step = failure.step_name
        result.error = failure.error
        failure.result = result
        with self._lock:
            self._metrics["workflows_failed"] += 1
        logger.error(failure.recovery_guidance())
        self.observer.on_run_failed(failure)

    def get_metrics(self) -> Dict[str, Any]:
        """Get orchestrator metrics.

        Returns:
            Metrics dictionary
        """
        with self._lock:
            return self._metrics.copy()
