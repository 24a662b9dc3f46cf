"""Collaborator contracts and the standard provisioning workflow."""

from .clients import (
    ContentTransport,
    ProvisioningClient,
    ServiceClients,
    SourceClient,
    SourceItem,
    build_clients,
    load_clients_factory,
)
from .provisioning import ProvisioningService, build_provisioning_workflow

__all__ = [
    "ContentTransport",
    "ProvisioningClient",
    "ProvisioningService",
    "ServiceClients",
    "SourceClient",
    "SourceItem",
    "build_clients",
    "build_provisioning_workflow",
    "load_clients_factory",
]
