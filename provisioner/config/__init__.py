"""Configuration for the provisioner."""

from .base import BaseConfig, ConfigPriority, ConfigurationSchema
from .settings import DEFAULT_CLIENTS_FACTORY, ProvisionerConfig

__all__ = [
    "BaseConfig",
    "ConfigPriority",
    "ConfigurationSchema",
    "DEFAULT_CLIENTS_FACTORY",
    "ProvisionerConfig",
]
