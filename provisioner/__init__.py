"""Resumable, checkpointed provisioning of destination environments."""

__version__ = "1.0.0"
