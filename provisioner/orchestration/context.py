"""Explicit run context shared by the step closures of one workflow instance."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class WorkflowContext:
    """State and capability handles for one workflow instance.

    The collaborator clients are built and authenticated once by the caller and
    shared read-only with every step, including steps running in parallel
    workers. Values produced by steps (project id, repository id, ...) are
    memoized through ``resolve`` so a resumed run can recover them with the
    collaborators' idempotent create-or-get calls instead of from the checkpoint.
    """

    instance_id: str
    clients: Any = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    work_dir: Optional[Path] = None
    _values: Dict[str, Any] = field(default_factory=dict, repr=False)
    _lock: Lock = field(default_factory=Lock, repr=False)
    _key_locks: Dict[str, Lock] = field(default_factory=dict, repr=False)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._values

    def resolve(self, key: str, factory: Callable[[], Any]) -> Any:
        """Return the stored value for key, computing and storing it if absent.

        ``factory`` runs under a lock private to ``key``: concurrent callers
        asking for the same key wait for one computation, while readers of
        other keys (and ``snapshot``) are never held up by a slow factory.
        """
        with self._lock:
            if key in self._values:
                return self._values[key]
            key_lock = self._key_locks.setdefault(key, Lock())

        with key_lock:
            with self._lock:
                if key in self._values:
                    return self._values[key]
            value = factory()
            with self._lock:
                value = self._values.setdefault(key, value)
            logger.debug(f"Resolved {key} for '{self.instance_id}'")
            return value

    def param(self, name: str, default: Any = None) -> Any:
        return self.parameters.get(name, default)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._values)
