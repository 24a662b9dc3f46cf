"""Provisioner settings resolved once from overlays and the environment."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Tuple

from ..orchestration.workflow_engine.core import OrchestratorSettings
from ..orchestration.workflow_engine.steps import ParallelFailurePolicy
from ..utils.retry import DEFAULT_READY_DELAYS
from .base import BaseConfig, ConfigurationSchema

logger = logging.getLogger(__name__)

DEFAULT_CLIENTS_FACTORY = "provisioner.services.local:create_local_clients"
LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ProvisionerConfig(BaseConfig):
    """Settings for checkpoints, batches, parallel execution and collaborators."""

    def __init__(self):
        """Initialize provisioner configuration."""
        super().__init__()

        # Paths
        self.checkpoint_dir = Path(
            self.get_value("PROVISIONER_CHECKPOINT_DIR", "./.provisioner/checkpoints")
        )
        self.manifest_dir = Path(self.get_value("PROVISIONER_MANIFEST_DIR", "./.provisioner/batches"))
        self.work_dir = Path(self.get_value("PROVISIONER_WORK_DIR", "./.provisioner/work"))
        self.source_root = Path(self.get_value("PROVISIONER_SOURCE_ROOT", "./sources"))
        self.log_dir = Path(self.get_value("PROVISIONER_LOG_DIR", "./.provisioner/logs"))

        # Logging
        self.log_level = str(self.get_value("PROVISIONER_LOG_LEVEL", "INFO")).upper()

        # Execution
        self.max_workers = int(self.get_value("PROVISIONER_MAX_WORKERS", 4))
        self.parallel_timeout = float(self.get_value("PROVISIONER_PARALLEL_TIMEOUT", 600))
        self.parallel_failure_policy = str(
            self.get_value("PROVISIONER_PARALLEL_FAILURE_POLICY", "isolate")
        ).lower()
        self.ready_delays: Tuple[float, ...] = tuple(
            float(d) for d in self.parse_list(
                self.get_value("PROVISIONER_READY_DELAYS", list(DEFAULT_READY_DELAYS))
            )
        )
        self.retain_completed_checkpoint = self.parse_bool(
            self.get_value("PROVISIONER_RETAIN_COMPLETED_CHECKPOINT", "false")
        )

        # Collaborators
        self.clients_factory = self.get_value("PROVISIONER_CLIENTS_FACTORY", DEFAULT_CLIENTS_FACTORY)

        self.validate()

    def get_schema(self) -> ConfigurationSchema:
        return ConfigurationSchema(
            name="ProvisionerConfig",
            required_fields={"checkpoint_dir", "manifest_dir", "clients_factory"},
            validators={
                "log_level": lambda x: x in LOG_LEVELS,
                "max_workers": lambda x: isinstance(x, int) and x >= 1,
                "parallel_timeout": lambda x: x > 0,
                "parallel_failure_policy": lambda x: x in {p.value for p in ParallelFailurePolicy},
                "ready_delays": lambda x: len(x) > 0 and all(d >= 0 for d in x),
                "clients_factory": lambda x: isinstance(x, str) and ":" in x,
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary.

        Returns:
            Configuration as dictionary
        """
        return {
            "checkpoint_dir": str(self.checkpoint_dir),
            "manifest_dir": str(self.manifest_dir),
            "work_dir": str(self.work_dir),
            "source_root": str(self.source_root),
            "log_dir": str(self.log_dir),
            "log_level": self.log_level,
            "max_workers": self.max_workers,
            "parallel_timeout": self.parallel_timeout,
            "parallel_failure_policy": self.parallel_failure_policy,
            "ready_delays": list(self.ready_delays),
            "retain_completed_checkpoint": self.retain_completed_checkpoint,
            "clients_factory": self.clients_factory,
        }

    def orchestrator_settings(self) -> OrchestratorSettings:
        """Immutable execution settings for the orchestrator."""
        return OrchestratorSettings(
            max_workers=self.max_workers,
            parallel_timeout=self.parallel_timeout,
            parallel_failure_policy=ParallelFailurePolicy(self.parallel_failure_policy),
            retain_completed_checkpoint=self.retain_completed_checkpoint,
        )
