"""Exception taxonomy for provisioning workflows.

Collaborators raise these to tell the orchestrator how a failure should be
handled:

- TransientUnavailable: the target is not visible/ready yet; retry or defer.
- ValidationError: bad input or unmet precondition; always fatal.
- IdempotencyConflict: the target is already in the desired state; success.
- UnknownFailure: anything else, wrapped with its original cause.
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .orchestration.workflow_engine.steps import WorkflowResult


class ProvisioningError(Exception):
    """Base class for all provisioning errors."""


class TransientUnavailable(ProvisioningError):
    """A remote resource is not yet visible or ready."""


class ValidationError(ProvisioningError):
    """Invalid input or failed precondition. Never retried."""


class WorkflowDefinitionError(ValidationError):
    """Malformed step graph or step selection."""


class IdempotencyConflict(ProvisioningError):
    """The target already exists in the desired state.

    Attributes:
        resource_id: Identifier of the existing resource, if known
    """

    def __init__(self, message: str = "", resource_id: Optional[str] = None) -> None:
        super().__init__(message or "Target already in desired state")
        self.resource_id = resource_id


class UnknownFailure(ProvisioningError):
    """Unclassified failure raised by a step action."""


class StepFailedError(ProvisioningError):
    """A step failed fatally and halted the workflow run.

    Attributes:
        step_name: Name of the failed step
        instance_id: Workflow instance (destination) identifier
        checkpoint_path: Where the preserved checkpoint lives, if file-backed
        result: Partial workflow result at the time of the halt
    """

    def __init__(
        self,
        step_name: str,
        error: BaseException,
        instance_id: str = "",
        checkpoint_path: Optional[Path] = None,
        result: Optional["WorkflowResult"] = None,
    ) -> None:
        self.step_name = step_name
        self.error = error
        self.instance_id = instance_id
        self.checkpoint_path = checkpoint_path
        self.result = result
        super().__init__(f"Step '{step_name}' failed: {error}")

    def recovery_guidance(self) -> str:
        """Describe the ways to recover from this failure."""
        location = str(self.checkpoint_path) if self.checkpoint_path else "<in-memory store>"
        target = self.instance_id or "<instance>"
        return "\n".join(
            [
                f"Step '{self.step_name}' failed: {self.error}",
                "Recovery options:",
                f"  1. Fix the cause and re-run with --resume to continue from '{self.step_name}'",
                f"  2. Inspect the checkpoint for '{target}' directly: {location}",
                "  3. Re-run with --force to discard saved progress and start over",
            ]
        )


def classify_exception(error: BaseException) -> ProvisioningError:
    """Map an arbitrary exception onto the taxonomy.

    Args:
        error: Exception raised by a step action

    Returns:
        The error itself when already classified, otherwise an UnknownFailure
        chained to it
    """
    if isinstance(error, ProvisioningError):
        return error
    wrapped = UnknownFailure(f"{type(error).__name__}: {error}")
    wrapped.__cause__ = error
    return wrapped
