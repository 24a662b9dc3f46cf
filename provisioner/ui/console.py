"""Console output for provisioning runs.

ConsoleManager renders step progress, run summaries, recovery guidance,
checkpoint status and batch reports either with Rich (panels and tables on
stderr) or as JSON lines on stdout for machine consumption.
"""

from __future__ import annotations

import json
import logging
import re
import sys
import threading
from datetime import datetime
from typing import Any, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ..bulk.coordinator import BatchObserver, BatchReport
from ..bulk.manifest import BatchItem, ItemStatus, StageSummary
from ..errors import StepFailedError
from ..orchestration.state_manager import CheckpointState
from ..orchestration.workflow_engine.executors import WorkflowObserver
from ..orchestration.workflow_engine.steps import (
    StepDefinition,
    StepResult,
    StepStatus,
    WorkflowDefinition,
    WorkflowResult,
    WorkflowStatus,
)

STATUS_STYLES = {
    StepStatus.COMPLETED: "green",
    StepStatus.SKIPPED: "dim",
    StepStatus.FAILED: "red",
    StepStatus.DEFERRED: "yellow",
    StepStatus.BLOCKED: "yellow",
    StepStatus.UNRESOLVED: "yellow",
    StepStatus.PENDING: "white",
}

RUN_STYLES = {
    WorkflowStatus.COMPLETED: "green",
    WorkflowStatus.INCOMPLETE: "yellow",
    WorkflowStatus.FAILED: "red",
}


class ThreadSafeConsole:
    """Rich Console guarded by a lock; parallel workers report through it."""

    def __init__(self, console: Console):
        self._console = console
        self._lock = threading.RLock()

    @property
    def raw(self) -> Console:
        return self._console

    def print(self, *args, **kwargs):
        with self._lock:
            self._console.print(*args, **kwargs)


class ConsoleManager:
    """Manages console output with Rich integration."""

    def __init__(
        self,
        verbose: bool = False,
        json_output: bool = False,
        console: Optional[Console] = None,
    ):
        self.verbose = verbose
        self.json_output = json_output
        self._json_max_field_length = 500
        self._json_max_nesting_depth = 10
        self._emit_lock = threading.Lock()

        if self.json_output:
            self.console = None
        else:
            self.console = ThreadSafeConsole(console or Console(stderr=True))

    def setup_logging(self, logger: logging.Logger) -> None:
        """Attach a Rich handler, or a plain stderr handler in JSON mode."""

        def _has_handler_of_type(h_type):
            return any(type(h) is h_type for h in logger.handlers)

        if self.json_output:
            if not _has_handler_of_type(logging.StreamHandler):
                handler = logging.StreamHandler(sys.stderr)
                handler.setFormatter(logging.Formatter("%(message)s"))
                logger.addHandler(handler)
        elif not _has_handler_of_type(RichHandler):
            logger.addHandler(
                RichHandler(
                    console=self.console.raw if self.console else None,
                    show_time=True,
                    show_path=self.verbose,
                    rich_tracebacks=True,
                )
            )
        logger.setLevel(logging.DEBUG if self.verbose else logging.INFO)

    # JSON output

    def emit(self, event: str, **fields: Any) -> None:
        """Write one JSON event line to stdout."""
        payload = {"timestamp": self._get_timestamp(), "type": event}
        payload.update(self._sanitize_json_value(fields))
        with self._emit_lock:
            print(json.dumps(payload), flush=True)

    def _get_timestamp(self) -> str:
        return datetime.now().isoformat()

    def _sanitize_json_value(self, value: Any, depth: int = 0) -> Any:
        """Make a value JSON-safe with bounded depth and string length."""
        if depth > self._json_max_nesting_depth:
            return "[TRUNCATED]"
        if isinstance(value, bool) or value is None:
            return value
        if isinstance(value, (int, float)):
            if value != value or value in (float("inf"), float("-inf")):
                return None
            return value
        if isinstance(value, dict):
            return {str(k): self._sanitize_json_value(v, depth + 1) for k, v in value.items()}
        if isinstance(value, (list, tuple, set)):
            return [self._sanitize_json_value(item, depth + 1) for item in value]
        return self._sanitize_string_field(str(value))

    def _sanitize_string_field(self, value: str) -> str:
        value = re.sub(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]", "", value)
        if len(value) > self._json_max_field_length:
            value = value[: self._json_max_field_length - 3] + "..."
        return value

    # Messages

    def print_message(self, message: str, style: str = "white") -> None:
        if self.json_output:
            self.emit("message", message=message)
        else:
            self.console.print(f"[{style}]{message}[/{style}]")

    def print_error(self, message: str) -> None:
        if self.json_output:
            self.emit("error", message=message)
        else:
            self.console.print(f"[red]ERROR: {message}[/red]")

    def print_step(self, step: StepDefinition, status: StepStatus, detail: str = "") -> None:
        if self.json_output:
            self.emit("step", step=step.name, status=status.value, detail=detail)
            return
        style = STATUS_STYLES.get(status, "white")
        line = f"[{style}]{status.value:<10}[/{style}] {step.display_name}"
        if detail:
            line += f" [dim]({detail})[/dim]"
        self.console.print(line)

    # Runs

    def print_run_result(self, result: WorkflowResult) -> None:
        """Print the per-step summary of a run."""
        if self.json_output:
            self.emit(
                "summary",
                instance_id=result.instance_id,
                status=result.status.value,
                duration=result.duration,
                checkpoint=result.checkpoint_path,
                steps={
                    name: {
                        "status": step.status.value,
                        "duration": step.duration,
                        "message": step.message,
                    }
                    for name, step in result.step_results.items()
                },
                unresolved=result.unresolved_steps,
            )
            return

        table = Table(title=f"Provisioning summary: {result.instance_id}")
        table.add_column("Step", style="cyan")
        table.add_column("Status", style="bold")
        table.add_column("Duration", justify="right")
        table.add_column("Detail")
        for name in result.enabled_steps:
            step = result.step_results.get(name, StepResult(step_name=name))
            style = STATUS_STYLES.get(step.status, "white")
            duration = f"{step.duration:.1f}s" if step.duration is not None else "-"
            detail = step.message or (str(step.error) if step.error else "")
            table.add_row(name, f"[{style}]{step.status.value}[/{style}]", duration, detail)
        self.console.print(table)

        style = RUN_STYLES.get(result.status, "white")
        text = f"[bold]{result.status.value}[/bold] in {result.duration:.1f}s"
        if result.status == WorkflowStatus.INCOMPLETE:
            text += (
                f"\nUnresolved: {', '.join(result.unresolved_steps)}"
                f"\nRe-run with --resume to finish. Checkpoint: {result.checkpoint_path}"
            )
        self.console.print(Panel(text, style=style, padding=(0, 1)))

    def print_failure(self, failure: StepFailedError) -> None:
        """Print the failed step, its error and the recovery options."""
        if self.json_output:
            self.emit(
                "failure",
                instance_id=failure.instance_id,
                step=failure.step_name,
                error=str(failure.error),
                checkpoint=str(failure.checkpoint_path) if failure.checkpoint_path else None,
                recovery=failure.recovery_guidance().splitlines()[2:],
            )
            return
        self.console.print(
            Panel(
                failure.recovery_guidance(),
                title=f"Step '{failure.step_name}' failed",
                style="red",
                padding=(0, 1),
            )
        )

    # Inspection

    def print_checkpoint(self, instance_id: str, state: Optional[CheckpointState], path: Any = None) -> None:
        if state is None:
            self.print_message(f"No checkpoint for '{instance_id}'", style="yellow")
            return
        if self.json_output:
            self.emit("checkpoint", instance_id=instance_id, path=str(path) if path else None,
                      checkpoint=state.to_dict())
            return

        table = Table(title=f"Checkpoint: {instance_id}")
        table.add_column("Step", style="cyan")
        table.add_column("Complete")
        for name, done in state.flags:
            table.add_row(name, "[green]yes[/green]" if done else "[yellow]no[/yellow]")
        self.console.print(table)

        last = state.metadata.last_update.isoformat() if state.metadata.last_update else "never"
        self.console.print(f"Completed: {state.metadata.completed}  Last update: {last}")
        if path:
            self.console.print(f"File: {path}")
        for record in state.errors:
            self.console.print(
                f"[red]{record.timestamp.isoformat()} {record.step}: {record.message}[/red]"
            )

    def print_steps(self, definition: WorkflowDefinition) -> None:
        if self.json_output:
            self.emit(
                "steps",
                workflow=definition.name,
                steps=[
                    {
                        "name": step.name,
                        "label": step.display_name,
                        "group": step.group,
                        "requires": list(step.requires),
                    }
                    for step in definition.steps
                ],
                profiles={
                    name: [step for step, on in table.items() if on]
                    for name, table in definition.profiles.items()
                },
            )
            return

        table = Table(title=f"Workflow: {definition.name}")
        table.add_column("#", justify="right")
        table.add_column("Step", style="cyan")
        table.add_column("Description")
        table.add_column("Group")
        table.add_column("Requires")
        for index, step in enumerate(definition.steps, 1):
            table.add_row(str(index), step.name, step.display_name, step.group or "",
                          ", ".join(step.requires))
        self.console.print(table)
        for name, flags in sorted(definition.profiles.items()):
            enabled = [step for step, on in flags.items() if on]
            self.console.print(f"[bold]{name}[/bold]: {', '.join(enabled)}")

    # Batches

    def print_batch_item(self, stage: str, item: BatchItem, index: int, total: int) -> None:
        status = item.status if stage == "preparation" else item.execution_status
        error = item.error if stage == "preparation" else item.execution_error
        if self.json_output:
            self.emit("batch_item", stage=stage, source_id=item.source_id, dest_id=item.dest_id,
                      status=status.value if status else None, error=error)
            return
        style = "green" if status == ItemStatus.SUCCESS else "red"
        line = f"[{index}/{total}] {item.source_id} [{style}]{status.value if status else '-'}[/{style}]"
        if error:
            line += f" [dim]{error}[/dim]"
        self.console.print(line)

    def print_batch_report(self, report: BatchReport) -> None:
        if self.json_output:
            self.emit(
                "batch_report",
                destination=report.destination,
                preparation=report.preparation.model_dump(by_alias=True, mode="json")
                if report.preparation else None,
                execution=report.execution.model_dump(by_alias=True, mode="json")
                if report.execution else None,
                failures=[vars(f) for f in report.failures],
            )
            return

        table = Table(title=f"Batch: {report.destination}")
        table.add_column("Stage", style="cyan")
        table.add_column("Total", justify="right")
        table.add_column("Succeeded", justify="right", style="green")
        table.add_column("Failed", justify="right", style="red")
        table.add_column("Duration", justify="right")
        for stage, summary in (("preparation", report.preparation), ("execution", report.execution)):
            if summary is not None:
                table.add_row(stage, str(summary.total), str(summary.succeeded),
                              str(summary.failed), f"{summary.duration:.1f}s")
        self.console.print(table)

        if report.failures:
            failures = Table(title="Failed items")
            failures.add_column("Source", style="cyan")
            failures.add_column("Stage")
            failures.add_column("Error", style="red")
            for failure in report.failures:
                failures.add_row(failure.source_id, failure.stage, failure.error)
            self.console.print(failures)


class ConsoleObserver(WorkflowObserver, BatchObserver):
    """Forwards orchestrator and batch notifications to a ConsoleManager."""

    def __init__(self, manager: ConsoleManager):
        self.manager = manager

    def on_step_start(self, step: StepDefinition) -> None:
        if self.manager.verbose:
            self.manager.print_step(step, StepStatus.PENDING, "starting")

    def on_step_skipped(self, step: StepDefinition) -> None:
        self.manager.print_step(step, StepStatus.SKIPPED, "already completed")

    def on_step_success(self, step: StepDefinition, result: StepResult) -> None:
        self.manager.print_step(step, StepStatus.COMPLETED, f"{result.duration or 0:.1f}s")

    def on_step_deferred(self, step: StepDefinition, result: StepResult) -> None:
        self.manager.print_step(step, StepStatus.DEFERRED, "will complete later")

    def on_step_failed(self, step: StepDefinition, error: StepFailedError) -> None:
        self.manager.print_step(step, StepStatus.FAILED, str(error.error))

    def on_step_unresolved(self, step: StepDefinition, result: StepResult) -> None:
        self.manager.print_step(step, StepStatus.UNRESOLVED, result.message)

    def on_step_blocked(self, step: StepDefinition, missing: List[str]) -> None:
        self.manager.print_step(step, StepStatus.BLOCKED, f"waiting for {', '.join(missing)}")

    def on_run_finished(self, result: WorkflowResult) -> None:
        self.manager.print_run_result(result)

    def on_run_failed(self, failure: StepFailedError) -> None:
        self.manager.print_failure(failure)

    def on_stage_start(self, stage: str, total: int) -> None:
        self.manager.print_message(f"Batch {stage}: {total} item(s)", style="bold")

    def on_item_finished(self, stage: str, item: BatchItem, index: int, total: int) -> None:
        self.manager.print_batch_item(stage, item, index, total)

    def on_stage_finished(self, stage: str, summary: StageSummary) -> None:
        self.manager.print_message(
            f"Batch {stage} finished: {summary.succeeded}/{summary.total} succeeded, "
            f"{summary.failed} failed ({summary.duration:.1f}s)",
            style="bold",
        )
