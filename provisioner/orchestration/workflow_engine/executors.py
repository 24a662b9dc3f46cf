"""
Step execution strategies.

StepExecutor applies the skip / retry / checkpoint / error-recording policy
around a single step. ParallelGroupRunner runs a group of independent steps on
a small thread pool and joins them with a deadline. Worker threads only invoke
step actions; every checkpoint mutation and save happens on the calling
thread, so the checkpoint keeps a single writer.
"""

from __future__ import annotations

import concurrent.futures
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ...errors import (
    IdempotencyConflict,
    StepFailedError,
    TransientUnavailable,
    classify_exception,
)
from ...utils.retry import call_with_retry
from ..state_manager import CheckpointState, CheckpointStore
from .steps import StepDefinition, StepResult, StepStatus, WorkflowResult

logger = logging.getLogger(__name__)


class WorkflowObserver:
    """Receives step and run lifecycle notifications. All hooks default to no-ops."""

    def on_step_start(self, step: StepDefinition) -> None:
        pass

    def on_step_skipped(self, step: StepDefinition) -> None:
        pass

    def on_step_success(self, step: StepDefinition, result: StepResult) -> None:
        pass

    def on_step_deferred(self, step: StepDefinition, result: StepResult) -> None:
        pass

    def on_step_failed(self, step: StepDefinition, error: StepFailedError) -> None:
        pass

    def on_step_unresolved(self, step: StepDefinition, result: StepResult) -> None:
        pass

    def on_step_blocked(self, step: StepDefinition, missing: List[str]) -> None:
        pass

    def on_run_finished(self, result: WorkflowResult) -> None:
        pass

    def on_run_failed(self, failure: StepFailedError) -> None:
        pass


@dataclass
class Invocation:
    """Raw outcome of calling a step action."""

    value: Any = None
    error: Optional[Exception] = None
    attempts: int = 0
    duration: float = 0.0


class StepExecutor:
    """Run one step with skip, retry, persistence and error recording."""

    def __init__(
        self,
        store: CheckpointStore,
        observer: Optional[WorkflowObserver] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the executor.

        Args:
            store: Checkpoint store used to persist after each step
            observer: Optional receiver of step notifications
            sleep: Sleep function used between retries
            clock: Monotonic clock used for step durations
        """
        self.store = store
        self.observer = observer or WorkflowObserver()
        self._sleep = sleep
        self._clock = clock

    def should_skip(self, step: StepDefinition, state: CheckpointState, force: bool) -> bool:
        return state.is_complete(step.name) and not force

    def skip(self, step: StepDefinition) -> StepResult:
        logger.info(f"Skipping step {step.name}: already completed")
        self.observer.on_step_skipped(step)
        return StepResult(step_name=step.name, status=StepStatus.SKIPPED)

    def invoke(self, step: StepDefinition) -> Invocation:
        """Call the step action, retrying transient errors if the step has a policy.

        Never raises; the error, if any, is returned in the Invocation. Safe to
        call from worker threads.
        """
        invocation = Invocation()

        def attempt() -> Any:
            invocation.attempts += 1
            try:
                return step.action()
            except IdempotencyConflict as conflict:
                logger.info(f"Step {step.name}: target already in desired state")
                return conflict.resource_id

        start = self._clock()
        try:
            if step.retry_policy is not None:
                invocation.value = call_with_retry(
                    attempt, step.retry_policy, sleep=self._sleep, name=step.name
                )
            else:
                invocation.value = attempt()
        except Exception as e:
            invocation.error = e
        invocation.duration = self._clock() - start
        return invocation

    def run(self, step: StepDefinition, state: CheckpointState, force: bool = False) -> StepResult:
        """Execute a step unless its flag is already set.

        Returns:
            StepResult with status SKIPPED, COMPLETED or DEFERRED

        Raises:
            StepFailedError: If the action failed; the error is recorded and
                persisted in the checkpoint first
        """
        if self.should_skip(step, state, force):
            return self.skip(step)

        logger.info(f"Executing step: {step.display_name}")
        self.observer.on_step_start(step)
        invocation = self.invoke(step)
        result = self.settle(step, state, invocation)
        if result.status == StepStatus.FAILED:
            raise result.error
        return result

    def settle(self, step: StepDefinition, state: CheckpointState, invocation: Invocation) -> StepResult:
        """Apply an invocation's outcome to the checkpoint and persist it.

        A failure is returned as a FAILED StepResult whose ``error`` is a
        StepFailedError; it is not raised here.
        """
        if invocation.error is None:
            return self._commit_success(step, state, invocation)
        if isinstance(invocation.error, TransientUnavailable) and step.deferrable:
            return self._defer(step, invocation)
        return self._commit_failure(step, state, invocation)

    def _commit_success(
        self, step: StepDefinition, state: CheckpointState, invocation: Invocation
    ) -> StepResult:
        state.mark_complete(step.name)
        self.store.save(state)

        result = StepResult(
            step_name=step.name,
            status=StepStatus.COMPLETED,
            result=invocation.value,
            duration=invocation.duration,
            attempts=invocation.attempts,
            message=step.success_message or "",
        )
        logger.info(
            f"{step.success_message or f'Step {step.name} completed'} ({invocation.duration:.2f}s)"
        )
        self.observer.on_step_success(step, result)
        return result

    def _defer(self, step: StepDefinition, invocation: Invocation) -> StepResult:
        result = StepResult(
            step_name=step.name,
            status=StepStatus.DEFERRED,
            error=invocation.error,
            duration=invocation.duration,
            attempts=invocation.attempts,
            message="will complete later",
        )
        logger.warning(
            f"Step {step.name} deferred, will complete on a later resume: {invocation.error}"
        )
        self.observer.on_step_deferred(step, result)
        return result

    def _commit_failure(
        self, step: StepDefinition, state: CheckpointState, invocation: Invocation
    ) -> StepResult:
        error = classify_exception(invocation.error)
        state.record_error(step.name, str(error))
        self.store.save(state)

        failure = StepFailedError(
            step.name,
            error,
            instance_id=state.instance_id,
            checkpoint_path=self.store.path_for(state.instance_id),
        )
        failure.__cause__ = invocation.error
        logger.error(f"Step {step.name} failed after {invocation.attempts} attempt(s): {error}")
        self.observer.on_step_failed(step, failure)
        return StepResult(
            step_name=step.name,
            status=StepStatus.FAILED,
            error=failure,
            duration=invocation.duration,
            attempts=invocation.attempts,
        )


class ParallelGroupRunner:
    """Run mutually independent steps concurrently and join them with a deadline."""

    def __init__(self, executor: StepExecutor, max_workers: int = 4):
        """Initialize the runner.

        Args:
            executor: StepExecutor whose policy is applied to each member
            max_workers: Size of the worker pool per group
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.executor = executor
        self.max_workers = max_workers

    def run_group(
        self,
        steps: List[StepDefinition],
        state: CheckpointState,
        force: bool = False,
        timeout: Optional[float] = None,
    ) -> Dict[str, StepResult]:
        """Run a parallel group.

        Members that finish within ``timeout`` are settled (and persisted) one
        by one as they complete. Members still running at the deadline are
        reported UNRESOLVED; their threads are not interrupted and any late
        result is discarded. A failing member never affects its siblings.

        Returns:
            Mapping of step name to StepResult for every member
        """
        results: Dict[str, StepResult] = {}
        pending: List[StepDefinition] = []
        for step in steps:
            if self.executor.should_skip(step, state, force):
                results[step.name] = self.executor.skip(step)
            else:
                pending.append(step)

        if not pending:
            return results

        group = pending[0].group or "group"
        logger.info(f"Running {len(pending)} step(s) of group '{group}' in parallel")
        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(pending)),
            thread_name_prefix=f"step-{group}",
        )
        futures: Dict[concurrent.futures.Future, StepDefinition] = {}
        try:
            for step in pending:
                self.executor.observer.on_step_start(step)
                futures[pool.submit(self.executor.invoke, step)] = step

            try:
                for future in concurrent.futures.as_completed(futures, timeout=timeout):
                    step = futures[future]
                    results[step.name] = self.executor.settle(step, state, future.result())
            except concurrent.futures.TimeoutError:
                for step in futures.values():
                    if step.name in results:
                        continue
                    result = StepResult(
                        step_name=step.name,
                        status=StepStatus.UNRESOLVED,
                        duration=timeout,
                        message=f"not finished within {timeout}s",
                    )
                    logger.warning(
                        f"Step {step.name} did not finish within {timeout}s; "
                        "leaving it incomplete for a later resume"
                    )
                    self.executor.observer.on_step_unresolved(step, result)
                    results[step.name] = result
        finally:
            pool.shutdown(wait=False)

        return results
