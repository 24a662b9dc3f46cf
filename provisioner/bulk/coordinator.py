"""Two-stage bulk coordination.

Preparation resolves every source item and records it in the batch manifest.
Execution runs the provisioning workflow for every successfully prepared item.
Failures are isolated per item in both stages: one bad item never stops the
pass, and the manifest always reflects every item that was attempted.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from ..errors import ValidationError
from ..orchestration.workflow_engine.steps import WorkflowResult, WorkflowStatus
from .manifest import BatchItem, BatchManifest, ItemStatus, ManifestStore, StageSummary

logger = logging.getLogger(__name__)

PREPARATION = "preparation"
EXECUTION = "execution"


@dataclass
class PreparedItem:
    """What preparing a source item yields."""

    dest_id: str
    description: str = ""
    size: int = 0


class BatchObserver:
    """Receives per-item progress of a batch pass. Hooks default to no-ops."""

    def on_stage_start(self, stage: str, total: int) -> None:
        pass

    def on_item_start(self, stage: str, item: BatchItem, index: int, total: int) -> None:
        pass

    def on_item_finished(self, stage: str, item: BatchItem, index: int, total: int) -> None:
        pass

    def on_stage_finished(self, stage: str, summary: StageSummary) -> None:
        pass


@dataclass
class ItemFailure:
    source_id: str
    stage: str
    error: str


@dataclass
class BatchReport:
    """Read-only view of a manifest for display."""

    destination: str
    preparation: Optional[StageSummary] = None
    execution: Optional[StageSummary] = None
    failures: List[ItemFailure] = field(default_factory=list)

    @classmethod
    def from_manifest(cls, manifest: BatchManifest) -> "BatchReport":
        failures = []
        for item in manifest.projects:
            if item.status == ItemStatus.FAILED:
                failures.append(ItemFailure(item.source_id, PREPARATION, item.error or ""))
            elif item.execution_status == ItemStatus.FAILED:
                failures.append(ItemFailure(item.source_id, EXECUTION, item.execution_error or ""))
        return cls(
            destination=manifest.destination,
            preparation=manifest.preparation_summary,
            execution=manifest.execution_summary,
            failures=failures,
        )


def describe_incomplete(result: WorkflowResult) -> str:
    pending = ", ".join(result.unresolved_steps) or "unknown"
    return f"workflow incomplete; unresolved step(s): {pending}"


class BulkBatchCoordinator:
    """Prepare and execute a batch of source items against one destination."""

    def __init__(
        self,
        manifest_store: ManifestStore,
        prepare_item: Callable[[str], PreparedItem],
        execute_item: Callable[[BatchItem], WorkflowResult],
        observer: Optional[BatchObserver] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the coordinator.

        Args:
            manifest_store: Where batch manifests are persisted
            prepare_item: Resolves a source id into a PreparedItem; raises on failure
            execute_item: Runs the provisioning workflow for a prepared item
            observer: Optional receiver of per-item progress
            clock: Monotonic clock used for durations
        """
        self.manifest_store = manifest_store
        self.prepare_item = prepare_item
        self.execute_item = execute_item
        self.observer = observer or BatchObserver()
        self._clock = clock

    def prepare(self, destination: str, source_ids: Iterable[str]) -> BatchManifest:
        """Run the preparation stage over every source item.

        The manifest's item list is rebuilt from ``source_ids``; any previous
        execution summary is dropped since it described a different list.

        Returns:
            The persisted manifest
        """
        source_ids = list(dict.fromkeys(source_ids))
        if not source_ids:
            raise ValidationError("No source items given for preparation")

        manifest = BatchManifest(
            destination=destination,
            projects=[BatchItem(source_id=source_id) for source_id in source_ids],
        )
        total = len(manifest.projects)
        logger.info(f"Preparing {total} item(s) for destination '{destination}'")
        self.observer.on_stage_start(PREPARATION, total)

        claimed: Dict[str, str] = {}
        stage_start = self._clock()
        for index, item in enumerate(manifest.projects, 1):
            self.observer.on_item_start(PREPARATION, item, index, total)
            start = self._clock()
            try:
                prepared = self.prepare_item(item.source_id)
            except Exception as e:
                item.mark_preparation_failed(str(e), duration=self._clock() - start)
                logger.warning(f"[{index}/{total}] Preparation of {item.source_id} failed: {e}")
            else:
                # One destination id per source item, or two items would provision the same target
                owner = claimed.setdefault(prepared.dest_id, item.source_id)
                if owner != item.source_id:
                    error = (
                        f"Destination id '{prepared.dest_id}' is already claimed by "
                        f"source item '{owner}'"
                    )
                    item.mark_preparation_failed(error, duration=self._clock() - start)
                    logger.warning(f"[{index}/{total}] Preparation of {item.source_id} failed: {error}")
                else:
                    item.mark_prepared(
                        prepared.dest_id,
                        description=prepared.description,
                        size=prepared.size,
                        duration=self._clock() - start,
                    )
                    logger.info(f"[{index}/{total}] Prepared {item.source_id} -> {item.dest_id}")
            self.observer.on_item_finished(PREPARATION, item, index, total)

        summary = manifest.summarize_preparation(self._clock() - stage_start)
        self.manifest_store.save(manifest)
        logger.info(
            f"Preparation finished: {summary.succeeded}/{summary.total} succeeded, "
            f"{summary.failed} failed"
        )
        self.observer.on_stage_finished(PREPARATION, summary)
        return manifest

    def execute(self, destination: str) -> BatchManifest:
        """Run the execution stage for every successfully prepared item.

        The manifest is persisted after each item so an interrupted pass
        still records the items it reached.

        Raises:
            ValidationError: No usable manifest exists for the destination
        """
        manifest = self.manifest_store.load(destination)
        if manifest is None:
            raise ValidationError(
                f"No batch manifest for '{destination}'; run the preparation stage first"
            )

        items = manifest.prepared_items()
        total = len(items)
        for item in items:
            item.begin_execution()
        logger.info(f"Executing {total} prepared item(s) for destination '{destination}'")
        self.observer.on_stage_start(EXECUTION, total)

        stage_start = self._clock()
        for index, item in enumerate(items, 1):
            self.observer.on_item_start(EXECUTION, item, index, total)
            start = self._clock()
            try:
                result = self.execute_item(item)
            except Exception as e:
                item.mark_execution_failed(str(e), duration=self._clock() - start)
                logger.warning(f"[{index}/{total}] Execution of {item.source_id} failed: {e}")
            else:
                duration = self._clock() - start
                if result.status == WorkflowStatus.COMPLETED:
                    item.mark_executed(duration=duration)
                    logger.info(f"[{index}/{total}] Executed {item.source_id} -> {item.dest_id}")
                else:
                    item.mark_execution_failed(describe_incomplete(result), duration=duration)
                    logger.warning(
                        f"[{index}/{total}] Execution of {item.source_id} did not complete"
                    )
            self.manifest_store.save(manifest)
            self.observer.on_item_finished(EXECUTION, item, index, total)

        summary = manifest.summarize_execution(items, self._clock() - stage_start)
        self.manifest_store.save(manifest)
        logger.info(
            f"Execution finished: {summary.succeeded}/{summary.total} succeeded, "
            f"{summary.failed} failed"
        )
        self.observer.on_stage_finished(EXECUTION, summary)
        return manifest

    def report(self, destination: str) -> BatchReport:
        manifest = self.manifest_store.load(destination)
        if manifest is None:
            raise ValidationError(f"No batch manifest for '{destination}'")
        return BatchReport.from_manifest(manifest)
