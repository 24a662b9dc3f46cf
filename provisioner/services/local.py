"""Filesystem-backed collaborators.

The local destination keeps its projects, repositories and settings in one
JSON document; the local source reads items from a directory tree laid out as

    <source_root>/<source_id>/item.json     optional metadata
    <source_root>/<source_id>/content/      repository content
    <source_root>/<source_id>/wiki/*.md     wiki pages

Useful for dry runs and for exercising the workflow without a remote platform.
"""
from __future__ import annotations

import json
import logging
import shutil
import uuid
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Optional

from ..errors import ValidationError
from ..utils.paths import ensure_subpath, read_json, safe_write_json, sanitize_name
from .clients import (
    PROJECT_READY_STATE,
    ContentTransport,
    ProvisioningClient,
    ServiceClients,
    SourceClient,
    SourceItem,
)

logger = logging.getLogger(__name__)

REFS_FILE = "refs.json"


def _new_id() -> str:
    return uuid.uuid4().hex[:12]


class LocalProvisioningClient(ProvisioningClient):
    """Destination platform persisted to ``<root>/destination.json``."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.state_file = self.root / "destination.json"
        self._lock = RLock()
        self._state: Dict[str, Any] = {"projects": {}}
        if self.state_file.exists():
            self._state = read_json(self.state_file)

    def _save(self) -> None:
        safe_write_json(self.state_file, self._state)

    def _project(self, project_id: str) -> Dict[str, Any]:
        for project in self._state["projects"].values():
            if project["id"] == project_id:
                return project
        raise ValidationError(f"Unknown project id '{project_id}'")

    def _ensure(self, collection: Dict[str, Any], key: str, **fields: Any) -> str:
        with self._lock:
            if key not in collection:
                collection[key] = {"id": _new_id(), **fields}
                self._save()
            return collection[key]["id"]

    def ensure_project(self, name: str, description: str = "") -> str:
        with self._lock:
            projects = self._state["projects"]
            if name not in projects:
                projects[name] = {
                    "id": _new_id(),
                    "name": name,
                    "description": description,
                    "state": PROJECT_READY_STATE,
                    "repositories": {},
                    "wikis": {},
                    "groups": {},
                    "policies": {},
                    "connections": {},
                }
                self._save()
                logger.debug(f"Created local project {name}")
            return projects[name]["id"]

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            try:
                project = self._project(project_id)
            except ValidationError:
                return None
            return {"id": project["id"], "name": project["name"], "state": project["state"]}

    def ensure_repository(self, project_id: str, name: str) -> str:
        with self._lock:
            repos = self._project(project_id)["repositories"]
            return self._ensure(repos, name, name=name, default_branch=None, refs=[])

    def _repository(self, project_id: str, repository_id: str) -> Dict[str, Any]:
        for repo in self._project(project_id)["repositories"].values():
            if repo["id"] == repository_id:
                return repo
        raise ValidationError(f"Unknown repository id '{repository_id}'")

    def set_default_branch(self, project_id: str, repository_id: str, branch: str) -> None:
        with self._lock:
            repo = self._repository(project_id, repository_id)
            if branch not in repo["refs"]:
                raise ValidationError(f"Branch '{branch}' does not exist in repository {repo['name']}")
            if repo["default_branch"] != branch:
                repo["default_branch"] = branch
                self._save()

    def record_refs(self, project_id: str, repository_id: str, refs: List[str]) -> None:
        with self._lock:
            repo = self._repository(project_id, repository_id)
            repo["refs"] = sorted(set(repo["refs"]) | set(refs))
            self._save()

    def ensure_wiki(self, project_id: str, name: str) -> str:
        with self._lock:
            wikis = self._project(project_id)["wikis"]
            return self._ensure(wikis, name, name=name, pages={})

    def ensure_wiki_page(self, project_id: str, wiki_id: str, path: str, content: str) -> str:
        with self._lock:
            for wiki in self._project(project_id)["wikis"].values():
                if wiki["id"] == wiki_id:
                    return self._ensure(wiki["pages"], path, path=path, content=content)
            raise ValidationError(f"Unknown wiki id '{wiki_id}'")

    def ensure_security_group(self, project_id: str, name: str) -> str:
        with self._lock:
            groups = self._project(project_id)["groups"]
            return self._ensure(groups, name, name=name)

    def ensure_branch_policy(
        self, project_id: str, repository_id: str, branch: str, policy: str
    ) -> str:
        with self._lock:
            policies = self._project(project_id)["policies"]
            key = f"{repository_id}:{branch}:{policy}"
            return self._ensure(policies, key, repository=repository_id, branch=branch, policy=policy)

    def ensure_service_connection(
        self, project_id: str, name: str, settings: Dict[str, Any]
    ) -> str:
        with self._lock:
            connections = self._project(project_id)["connections"]
            return self._ensure(connections, name, name=name, settings=dict(settings))


class LocalSourceClient(SourceClient):
    """Source items read from a directory tree."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _item_dir(self, source_id: str) -> Path:
        try:
            item_dir = ensure_subpath(self.root, sanitize_name(source_id))
        except ValueError as e:
            raise ValidationError(str(e)) from e
        if not item_dir.is_dir():
            raise ValidationError(f"Source item '{source_id}' not found under {self.root}")
        return item_dir

    def get_item(self, source_id: str) -> SourceItem:
        item_dir = self._item_dir(source_id)
        meta: Dict[str, Any] = {}
        meta_file = item_dir / "item.json"
        if meta_file.exists():
            try:
                meta = read_json(meta_file)
            except (OSError, json.JSONDecodeError) as e:
                raise ValidationError(f"Unreadable metadata for '{source_id}': {e}") from e

        content_dir = item_dir / "content"
        size = sum(p.stat().st_size for p in content_dir.rglob("*") if p.is_file()) if content_dir.is_dir() else 0
        wiki_dir = item_dir / "wiki"
        pages = {
            f"/{page.stem}": page.read_text(encoding="utf-8")
            for page in sorted(wiki_dir.glob("*.md"))
        } if wiki_dir.is_dir() else {}

        return SourceItem(
            source_id=source_id,
            name=meta.get("name", source_id),
            description=meta.get("description", ""),
            size=size,
            default_branch=meta.get("default_branch", "main"),
            wiki_pages=pages,
        )

    def download(self, source_id: str, target_dir: Path) -> Path:
        source = self._item_dir(source_id) / "content"
        if not source.is_dir():
            raise ValidationError(f"Source item '{source_id}' has no content")
        item = self.get_item(source_id)
        target = Path(target_dir) / "content"
        if target.exists():
            shutil.rmtree(target)
        shutil.copytree(source, target)
        safe_write_json(Path(target_dir) / REFS_FILE, [item.default_branch])
        return target


class LocalTransport(ContentTransport):
    """Copies content into ``<root>/repos/<repository id>`` and records its branches."""

    def __init__(self, root: Path, destination: LocalProvisioningClient):
        self.root = Path(root)
        self.destination = destination

    def push(self, content_dir: Path, project_id: str, repository_id: str) -> List[str]:
        target = self.root / "repos" / repository_id
        shutil.copytree(content_dir, target, dirs_exist_ok=True)
        refs_file = Path(content_dir).parent / REFS_FILE
        refs = read_json(refs_file) if refs_file.exists() else ["main"]
        self.destination.record_refs(project_id, repository_id, refs)
        return refs


def create_local_clients(config: Any = None, root: Optional[Path] = None,
                         source_root: Optional[Path] = None) -> ServiceClients:
    """Clients factory for the local backend (``provisioner.services.local:create_local_clients``)."""
    root = Path(root or getattr(config, "work_dir", ".provisioner/work")) / "local"
    source_root = Path(source_root or getattr(config, "source_root", "sources"))
    destination = LocalProvisioningClient(root)
    return ServiceClients(
        provisioning=destination,
        source=LocalSourceClient(source_root),
        transport=LocalTransport(root, destination),
    )
