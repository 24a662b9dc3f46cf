"""Checkpoint persistence for resumable workflows.

A checkpoint is a small JSON document per workflow instance: one boolean per
step name plus ``completed``, ``lastUpdate`` and ``errors``. In memory the step
flags (StepFlags) and the run metadata (RunMetadata) are kept apart, so a Force
reset is an operation on StepFlags alone.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from ..utils.paths import ensure_subpath, read_json, safe_write_json, sanitize_name

logger = logging.getLogger(__name__)

# Top-level checkpoint keys that are not step flags.
RESERVED_STEP_NAMES = frozenset({"completed", "lastUpdate", "errors"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Ignoring unparseable timestamp {value!r}")
        return None


@dataclass
class ErrorRecord:
    """One failed step attempt."""

    step: str
    message: str
    timestamp: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, str]:
        return {"step": self.step, "error": self.message, "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorRecord":
        return cls(
            step=str(data.get("step", "")),
            message=str(data.get("error", data.get("message", ""))),
            timestamp=_parse_timestamp(data.get("timestamp")) or _now(),
        )


class StepFlags:
    """Completion flag per step name.

    Flags only move from False to True; the sole way back is reset(), which
    clears every flag at once.
    """

    def __init__(self, names: Iterable[str] = ()):
        self._flags: Dict[str, bool] = {name: False for name in names}

    def __contains__(self, name: str) -> bool:
        return name in self._flags

    def __iter__(self) -> Iterator[Tuple[str, bool]]:
        return iter(self._flags.items())

    def __len__(self) -> int:
        return len(self._flags)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, StepFlags) and self._flags == other._flags

    def __repr__(self) -> str:
        return f"StepFlags({self._flags!r})"

    def is_complete(self, name: str) -> bool:
        return self._flags.get(name, False)

    def mark_complete(self, name: str) -> None:
        self._flags[name] = True

    def merge(self, saved: Dict[str, bool]) -> None:
        """Union saved flags into these; a True flag is never turned False."""
        for name, value in saved.items():
            self._flags[name] = self._flags.get(name, False) or bool(value)

    def reset(self) -> None:
        for name in self._flags:
            self._flags[name] = False

    @property
    def completed_names(self) -> List[str]:
        return [name for name, done in self._flags.items() if done]

    def as_dict(self) -> Dict[str, bool]:
        return dict(self._flags)


@dataclass
class RunMetadata:
    """Non-flag checkpoint content."""

    completed: bool = False
    last_update: Optional[datetime] = None
    errors: List[ErrorRecord] = field(default_factory=list)

    def record_error(self, step: str, message: str) -> ErrorRecord:
        record = ErrorRecord(step=step, message=message)
        self.errors.append(record)
        return record


@dataclass
class CheckpointState:
    """In-memory checkpoint of one workflow instance."""

    instance_id: str
    flags: StepFlags = field(default_factory=StepFlags)
    metadata: RunMetadata = field(default_factory=RunMetadata)

    def is_complete(self, name: str) -> bool:
        return self.flags.is_complete(name)

    def mark_complete(self, name: str) -> None:
        self.flags.mark_complete(name)

    def record_error(self, step: str, message: str) -> ErrorRecord:
        return self.metadata.record_error(step, message)

    @property
    def errors(self) -> List[ErrorRecord]:
        return self.metadata.errors

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = self.flags.as_dict()
        data["completed"] = self.metadata.completed
        data["lastUpdate"] = (
            self.metadata.last_update.isoformat() if self.metadata.last_update else None
        )
        data["errors"] = [record.to_dict() for record in self.metadata.errors]
        return data

    @staticmethod
    def split_document(data: Dict[str, Any]) -> Tuple[Dict[str, bool], RunMetadata]:
        """Separate a checkpoint document into step flags and metadata.

        Raises:
            ValueError: If the document is not a JSON object
        """
        if not isinstance(data, dict):
            raise ValueError(f"Checkpoint must be a JSON object, got {type(data).__name__}")

        flags = {
            key: value
            for key, value in data.items()
            if key not in RESERVED_STEP_NAMES and isinstance(value, bool)
        }
        raw_errors = data.get("errors") or []
        metadata = RunMetadata(
            completed=bool(data.get("completed", False)),
            last_update=_parse_timestamp(data.get("lastUpdate")),
            errors=[ErrorRecord.from_dict(e) for e in raw_errors if isinstance(e, dict)],
        )
        return flags, metadata


class CheckpointStore(ABC):
    """Load, merge and persist workflow checkpoints.

    Only the orchestrating process writes checkpoints, one document per
    workflow instance.
    """

    def __init__(self):
        self._lock = Lock()

    @abstractmethod
    def _read(self, instance_id: str) -> Optional[Any]:
        """Return the raw saved document, or None if there is none.

        May raise on unreadable or corrupt storage.
        """

    @abstractmethod
    def _write(self, instance_id: str, document: Dict[str, Any]) -> None:
        """Persist a document, replacing any previous one atomically."""

    @abstractmethod
    def _delete(self, instance_id: str) -> bool:
        """Remove the saved document. Returns True if one existed."""

    @abstractmethod
    def exists(self, instance_id: str) -> bool:
        """Check whether a checkpoint is saved for the instance."""

    def path_for(self, instance_id: str) -> Optional[Path]:
        """Filesystem location of the checkpoint, if file-backed."""
        return None

    def _read_saved(self, instance_id: str) -> Optional[Tuple[Dict[str, bool], RunMetadata]]:
        try:
            document = self._read(instance_id)
            if document is None:
                return None
            return CheckpointState.split_document(document)
        except (OSError, ValueError) as e:
            logger.warning(
                f"Checkpoint for '{instance_id}' is unreadable or corrupt, starting fresh: {e}"
            )
            return None

    def load(
        self,
        instance_id: str,
        step_names: Iterable[str],
        resume: bool = False,
        force: bool = False,
    ) -> CheckpointState:
        """Build the starting checkpoint for a run.

        Args:
            instance_id: Workflow instance identifier
            step_names: Every step the workflow knows about
            resume: Merge saved progress into the fresh state
            force: Reset every step flag, keeping error and timestamp metadata

        Returns:
            CheckpointState; never raises for missing or corrupt saved data
        """
        state = CheckpointState(instance_id=instance_id, flags=StepFlags(step_names))
        if not (resume or force):
            return state

        saved = self._read_saved(instance_id)
        if saved is None:
            return state

        saved_flags, saved_metadata = saved
        state.metadata = saved_metadata
        if resume:
            state.flags.merge(saved_flags)
            logger.info(
                f"Resuming '{instance_id}' with {len(state.flags.completed_names)} completed step(s)"
            )

        if force:
            state.flags.merge({name: False for name in saved_flags})
            state.flags.reset()
            state.metadata.completed = False
            logger.info(f"Force requested for '{instance_id}': all step flags reset")

        return state

    def save(self, state: CheckpointState) -> bool:
        """Stamp and persist the checkpoint.

        Failures are logged and reported through the return value only.

        Returns:
            True if the checkpoint was written
        """
        with self._lock:
            state.metadata.last_update = _now()
            try:
                self._write(state.instance_id, state.to_dict())
                logger.debug(f"Saved checkpoint for '{state.instance_id}'")
                return True
            except (OSError, TypeError, ValueError) as e:
                logger.error(f"Failed to save checkpoint for '{state.instance_id}': {e}")
                return False

    def clear(self, instance_id: str) -> bool:
        """Delete the saved checkpoint.

        Returns:
            True if a checkpoint was deleted
        """
        with self._lock:
            try:
                deleted = self._delete(instance_id)
            except OSError as e:
                logger.error(f"Failed to delete checkpoint for '{instance_id}': {e}")
                return False
        if deleted:
            logger.info(f"Cleared checkpoint for '{instance_id}'")
        return deleted

    def peek(self, instance_id: str) -> Optional[CheckpointState]:
        """Load the saved checkpoint as-is, for inspection."""
        saved = self._read_saved(instance_id)
        if saved is None:
            return None
        flags, metadata = saved
        state = CheckpointState(instance_id=instance_id, metadata=metadata)
        state.flags.merge(flags)
        return state


class FileCheckpointStore(CheckpointStore):
    """Checkpoints as JSON files in one directory."""

    SUFFIX = ".checkpoint.json"

    def __init__(self, root: Path):
        """Initialize the store.

        Args:
            root: Directory holding checkpoint files; created on first save
        """
        super().__init__()
        self.root = Path(root)

    def path_for(self, instance_id: str) -> Path:
        return ensure_subpath(self.root, f"{sanitize_name(instance_id)}{self.SUFFIX}")

    def exists(self, instance_id: str) -> bool:
        return self.path_for(instance_id).exists()

    def _read(self, instance_id: str) -> Optional[Any]:
        path = self.path_for(instance_id)
        if not path.exists():
            return None
        return read_json(path)

    def _write(self, instance_id: str, document: Dict[str, Any]) -> None:
        safe_write_json(self.path_for(instance_id), document)

    def _delete(self, instance_id: str) -> bool:
        path = self.path_for(instance_id)
        if not path.exists():
            return False
        path.unlink()
        return True


class InMemoryCheckpointStore(CheckpointStore):
    """In-memory store for development/testing.

    Documents are kept serialized so loads behave like a file round trip.
    """

    def __init__(self):
        super().__init__()
        self._documents: Dict[str, str] = {}

    def exists(self, instance_id: str) -> bool:
        return instance_id in self._documents

    def _read(self, instance_id: str) -> Optional[Any]:
        raw = self._documents.get(instance_id)
        return json.loads(raw) if raw is not None else None

    def _write(self, instance_id: str, document: Dict[str, Any]) -> None:
        self._documents[instance_id] = json.dumps(document)

    def _delete(self, instance_id: str) -> bool:
        return self._documents.pop(instance_id, None) is not None

    def put_raw(self, instance_id: str, raw: str) -> None:
        """Store a raw document, e.g. to simulate a corrupt checkpoint."""
        self._documents[instance_id] = raw
