"""Collaborator contracts for provisioning workflows.

Every mutating call is an idempotent "ensure": it creates the target if it is
absent and returns the identifier of the existing target otherwise.
Implementations signal failures with the exception types from
``provisioner.errors``:

- TransientUnavailable when a resource is not yet visible or ready
- ValidationError for bad input or failed preconditions
- IdempotencyConflict when they can only report that the target already exists
"""
from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import ValidationError

logger = logging.getLogger(__name__)

PROJECT_READY_STATE = "wellFormed"


@dataclass
class SourceItem:
    """A source entity to be provisioned into a destination.

    Attributes:
        source_id: Identifier in the source system
        name: Name to use for the destination project and repository
        description: Free-text description
        size: Content size in bytes
        default_branch: Branch to set as default after the push
        wiki_pages: Wiki page path to markdown content
    """

    source_id: str
    name: str
    description: str = ""
    size: int = 0
    default_branch: str = "main"
    wiki_pages: Dict[str, str] = field(default_factory=dict)


class ProvisioningClient(ABC):
    """Destination platform API."""

    @abstractmethod
    def ensure_project(self, name: str, description: str = "") -> str:
        """Create the project if absent; return its id."""

    @abstractmethod
    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        """Return the project record (with a ``state`` key) or None if not visible yet."""

    @abstractmethod
    def ensure_repository(self, project_id: str, name: str) -> str:
        pass

    @abstractmethod
    def set_default_branch(self, project_id: str, repository_id: str, branch: str) -> None:
        pass

    @abstractmethod
    def ensure_wiki(self, project_id: str, name: str) -> str:
        pass

    @abstractmethod
    def ensure_wiki_page(self, project_id: str, wiki_id: str, path: str, content: str) -> str:
        pass

    @abstractmethod
    def ensure_security_group(self, project_id: str, name: str) -> str:
        pass

    @abstractmethod
    def ensure_branch_policy(
        self, project_id: str, repository_id: str, branch: str, policy: str
    ) -> str:
        pass

    @abstractmethod
    def ensure_service_connection(
        self, project_id: str, name: str, settings: Dict[str, Any]
    ) -> str:
        pass


class SourceClient(ABC):
    """Source system API."""

    @abstractmethod
    def get_item(self, source_id: str) -> SourceItem:
        """Look up a source item.

        Raises:
            ValidationError: If the item does not exist
        """

    @abstractmethod
    def download(self, source_id: str, target_dir: Path) -> Path:
        """Fetch the item's content into target_dir and return the content path."""


class ContentTransport(ABC):
    """Moves fetched content into a destination repository."""

    @abstractmethod
    def push(self, content_dir: Path, project_id: str, repository_id: str) -> List[str]:
        """Push content and return the refs now present in the destination."""


@dataclass
class ServiceClients:
    """Authenticated collaborator handles, built once and shared by every step."""

    provisioning: ProvisioningClient
    source: SourceClient
    transport: ContentTransport


def load_clients_factory(path: str) -> Callable[..., ServiceClients]:
    """Import a clients factory from a ``module:callable`` path.

    Raises:
        ValidationError: If the path is malformed or cannot be imported
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValidationError(f"Clients factory must look like 'module:callable', got '{path}'")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValidationError(f"Cannot import clients module '{module_name}': {e}") from e

    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValidationError(f"'{attr}' in module '{module_name}' is not callable")
    logger.debug(f"Loaded clients factory {path}")
    return factory


def build_clients(path: str, **options: Any) -> ServiceClients:
    """Create the shared ServiceClients from a factory path."""
    clients = load_clients_factory(path)(**options)
    if not isinstance(clients, ServiceClients):
        raise ValidationError(
            f"Clients factory '{path}' returned {type(clients).__name__}, expected ServiceClients"
        )
    return clients
