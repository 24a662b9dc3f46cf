"""Global pytest fixtures and configuration.

This module provides shared fixtures for all tests including:
- A recording sleep so retry and polling code never really waits
- In-memory and file-backed checkpoint stores
- Step action recorders for building small workflows
- Fake collaborator clients for the provisioning workflow
- A clean configuration/environment per test
"""
from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from provisioner.config.base import BaseConfig
from provisioner.errors import ValidationError
from provisioner.orchestration.state_manager import FileCheckpointStore, InMemoryCheckpointStore
from provisioner.services.clients import (
    PROJECT_READY_STATE,
    ContentTransport,
    ProvisioningClient,
    ServiceClients,
    SourceClient,
    SourceItem,
)


class RecordingSleep:
    """Stand-in for time.sleep that records requested delays."""

    def __init__(self):
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)

    @property
    def total(self) -> float:
        return sum(self.calls)


class ActionRecorder:
    """Builds step actions that log their invocations."""

    def __init__(self):
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def action(self, name: str, raises: Optional[BaseException] = None, value: Any = None,
               wait: Optional[threading.Event] = None):
        def run():
            with self._lock:
                self.calls.append(name)
            if wait is not None:
                wait.wait(5)
            if raises is not None:
                raise raises
            return value if value is not None else f"{name}-id"

        return run

    def count(self, name: str) -> int:
        return self.calls.count(name)


class FakeProvisioningClient(ProvisioningClient):
    """In-memory destination that records every call.

    ``failures`` maps a method name to an exception raised on each call;
    ``ready_after`` is the number of get_project calls before the project
    reports the ready state.
    """

    def __init__(self, ready_after: int = 0):
        self.calls: List[tuple] = []
        self.failures: Dict[str, BaseException] = {}
        self.ready_after = ready_after
        self.resources: Dict[str, str] = {}
        self._checks = 0
        self._lock = threading.Lock()

    def _call(self, method: str, *args: Any) -> None:
        with self._lock:
            self.calls.append((method,) + args)
        error = self.failures.get(method)
        if error is not None:
            raise error

    def _ensure(self, key: str) -> str:
        with self._lock:
            return self.resources.setdefault(key, f"id-{len(self.resources) + 1}")

    def methods_called(self) -> List[str]:
        return [call[0] for call in self.calls]

    def ensure_project(self, name, description=""):
        self._call("ensure_project", name)
        return self._ensure(f"project:{name}")

    def get_project(self, project_id):
        self._call("get_project", project_id)
        self._checks += 1
        state = PROJECT_READY_STATE if self._checks > self.ready_after else "creating"
        return {"id": project_id, "state": state}

    def ensure_repository(self, project_id, name):
        self._call("ensure_repository", project_id, name)
        return self._ensure(f"repo:{name}")

    def set_default_branch(self, project_id, repository_id, branch):
        self._call("set_default_branch", repository_id, branch)

    def ensure_wiki(self, project_id, name):
        self._call("ensure_wiki", name)
        return self._ensure(f"wiki:{name}")

    def ensure_wiki_page(self, project_id, wiki_id, path, content):
        self._call("ensure_wiki_page", path)
        return self._ensure(f"page:{path}")

    def ensure_security_group(self, project_id, name):
        self._call("ensure_security_group", name)
        return self._ensure(f"group:{name}")

    def ensure_branch_policy(self, project_id, repository_id, branch, policy):
        self._call("ensure_branch_policy", policy)
        return self._ensure(f"policy:{policy}")

    def ensure_service_connection(self, project_id, name, settings):
        self._call("ensure_service_connection", name)
        return self._ensure(f"connection:{name}")


class FakeSourceClient(SourceClient):
    """Source items served from a dict; unknown ids raise ValidationError."""

    def __init__(self, items: Dict[str, SourceItem]):
        self.items = items
        self.downloads: List[str] = []
        self.failures: Dict[str, BaseException] = {}

    def get_item(self, source_id):
        if source_id in self.failures:
            raise self.failures[source_id]
        if source_id not in self.items:
            raise ValidationError(f"Source item '{source_id}' not found")
        return self.items[source_id]

    def download(self, source_id, target_dir):
        self.downloads.append(source_id)
        content = Path(target_dir) / "content"
        content.mkdir(parents=True, exist_ok=True)
        (content / "README.md").write_text(f"# {source_id}\n", encoding="utf-8")
        return content


class FakeTransport(ContentTransport):
    def __init__(self):
        self.pushes: List[tuple] = []

    def push(self, content_dir, project_id, repository_id):
        self.pushes.append((str(content_dir), project_id, repository_id))
        return ["main"]


def make_source_item(source_id: str, **overrides: Any) -> SourceItem:
    fields = {
        "source_id": source_id,
        "name": f"{source_id}-project",
        "description": f"{source_id} description",
        "size": 100,
        "wiki_pages": {"/Home": "# Home"},
    }
    fields.update(overrides)
    return SourceItem(**fields)


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Isolate configuration overlays and PROVISIONER_* variables per test."""
    BaseConfig.reset()
    for key in list(os.environ):
        if key.startswith("PROVISIONER_"):
            monkeypatch.delenv(key, raising=False)
    yield
    BaseConfig.reset()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def recorder() -> ActionRecorder:
    return ActionRecorder()


@pytest.fixture
def memory_store() -> InMemoryCheckpointStore:
    return InMemoryCheckpointStore()


@pytest.fixture
def file_store(tmp_path) -> FileCheckpointStore:
    return FileCheckpointStore(tmp_path / "checkpoints")


@pytest.fixture
def fake_clients() -> ServiceClients:
    """ServiceClients with sources 'alpha' through 'echo'."""
    items = {sid: make_source_item(sid) for sid in ("alpha", "bravo", "charlie", "delta", "echo")}
    return ServiceClients(
        provisioning=FakeProvisioningClient(),
        source=FakeSourceClient(items),
        transport=FakeTransport(),
    )
