"""Batch manifest models and persistence.

One manifest per destination records every source item of a bulk run with
its preparation status, plus the latest execution status and the summaries of
both stages.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as ModelValidationError

from ..utils.paths import ensure_subpath, read_json, safe_write_json, sanitize_name

logger = logging.getLogger(__name__)


class ItemStatus(str, Enum):
    """Status of a batch item within one stage."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class InvalidTransition(ValueError):
    """A batch item status may only leave PENDING once per stage."""


def _settle(current: Optional[ItemStatus], new: ItemStatus, item: str) -> ItemStatus:
    if current != ItemStatus.PENDING:
        raise InvalidTransition(f"Item '{item}' cannot move from {current} to {new.value}")
    return new


class BatchItem(BaseModel):
    """One source-to-destination unit of a bulk operation."""

    model_config = ConfigDict(populate_by_name=True)

    source_id: str
    dest_id: str = ""
    description: str = ""
    size: int = 0
    status: ItemStatus = ItemStatus.PENDING
    error: Optional[str] = None
    duration: float = 0.0
    execution_status: Optional[ItemStatus] = None
    execution_error: Optional[str] = None
    execution_duration: Optional[float] = None

    def mark_prepared(self, dest_id: str, description: str = "", size: int = 0, duration: float = 0.0) -> None:
        self.status = _settle(self.status, ItemStatus.SUCCESS, self.source_id)
        self.dest_id = dest_id
        self.description = description
        self.size = size
        self.duration = duration

    def mark_preparation_failed(self, error: str, duration: float = 0.0) -> None:
        self.status = _settle(self.status, ItemStatus.FAILED, self.source_id)
        self.error = error
        self.duration = duration

    def begin_execution(self) -> None:
        """Give the item a fresh execution status for a new execution pass."""
        self.execution_status = ItemStatus.PENDING
        self.execution_error = None
        self.execution_duration = None

    def mark_executed(self, duration: float = 0.0) -> None:
        self.execution_status = _settle(self.execution_status, ItemStatus.SUCCESS, self.source_id)
        self.execution_duration = duration

    def mark_execution_failed(self, error: str, duration: float = 0.0) -> None:
        self.execution_status = _settle(self.execution_status, ItemStatus.FAILED, self.source_id)
        self.execution_error = error
        self.execution_duration = duration


class StageSummary(BaseModel):
    """Aggregate counters for one stage pass."""

    model_config = ConfigDict(populate_by_name=True)

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    total_size: Optional[int] = Field(default=None, alias="totalSize")
    duration: float = 0.0
    finished_at: Optional[datetime] = None


class BatchManifest(BaseModel):
    """Items and stage summaries for one destination."""

    model_config = ConfigDict(populate_by_name=True)

    destination: str
    projects: List[BatchItem] = Field(default_factory=list)
    preparation_summary: Optional[StageSummary] = None
    execution_summary: Optional[StageSummary] = None

    def prepared_items(self) -> List[BatchItem]:
        """Items whose preparation succeeded, in manifest order."""
        return [item for item in self.projects if item.status == ItemStatus.SUCCESS]

    def get_item(self, source_id: str) -> Optional[BatchItem]:
        for item in self.projects:
            if item.source_id == source_id:
                return item
        return None

    def summarize_preparation(self, duration: float) -> StageSummary:
        self.preparation_summary = StageSummary(
            total=len(self.projects),
            succeeded=sum(1 for i in self.projects if i.status == ItemStatus.SUCCESS),
            failed=sum(1 for i in self.projects if i.status == ItemStatus.FAILED),
            total_size=sum(i.size for i in self.projects if i.status == ItemStatus.SUCCESS),
            duration=duration,
            finished_at=datetime.now(timezone.utc),
        )
        return self.preparation_summary

    def summarize_execution(self, items: List[BatchItem], duration: float) -> StageSummary:
        self.execution_summary = StageSummary(
            total=len(items),
            succeeded=sum(1 for i in items if i.execution_status == ItemStatus.SUCCESS),
            failed=sum(1 for i in items if i.execution_status == ItemStatus.FAILED),
            duration=duration,
            finished_at=datetime.now(timezone.utc),
        )
        return self.execution_summary

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ManifestStore:
    """Batch manifests as JSON files, one per destination."""

    SUFFIX = ".batch.json"

    def __init__(self, root: Path):
        self.root = Path(root)

    def path_for(self, destination: str) -> Path:
        return ensure_subpath(self.root, f"{sanitize_name(destination)}{self.SUFFIX}")

    def exists(self, destination: str) -> bool:
        return self.path_for(destination).exists()

    def load(self, destination: str) -> Optional[BatchManifest]:
        """Load a manifest.

        Returns:
            The manifest, or None if missing or unreadable (a warning is logged)
        """
        path = self.path_for(destination)
        if not path.exists():
            return None
        try:
            return BatchManifest.model_validate(read_json(path))
        except (OSError, ValueError, ModelValidationError) as e:
            logger.warning(f"Batch manifest {path} is unreadable: {e}")
            return None

    def save(self, manifest: BatchManifest) -> bool:
        """Persist a manifest atomically.

        Returns:
            True if written; failures are logged
        """
        path = self.path_for(manifest.destination)
        try:
            safe_write_json(path, manifest.to_document())
            logger.debug(f"Saved batch manifest {path}")
            return True
        except OSError as e:
            logger.error(f"Failed to save batch manifest {path}: {e}")
            return False
