"""Bulk preparation and execution across many source items."""

from .coordinator import (
    BatchObserver,
    BatchReport,
    BulkBatchCoordinator,
    ItemFailure,
    PreparedItem,
)
from .manifest import BatchItem, BatchManifest, ItemStatus, ManifestStore, StageSummary

__all__ = [
    "BatchItem",
    "BatchManifest",
    "BatchObserver",
    "BatchReport",
    "BulkBatchCoordinator",
    "ItemFailure",
    "ItemStatus",
    "ManifestStore",
    "PreparedItem",
    "StageSummary",
]
