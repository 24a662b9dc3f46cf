"""Resolve which steps of a workflow are enabled for a run.

Selection is either a named profile (a fixed enabled/disabled table declared
by the workflow) or an explicit include-list. Steps marked ``always_enabled``
(the terminal artifact step) are enabled whatever the selection says.
Resolution is pure: the same definition and selection always give the same
ordered list.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable, List, Optional, Tuple

from ..errors import WorkflowDefinitionError

if TYPE_CHECKING:
    from .workflow_engine.steps import WorkflowDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepSelection:
    """Which steps to enable: a profile name, an include-list, or neither (all)."""

    profile: Optional[str] = None
    only: Tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "only", tuple(self.only))
        if self.profile and self.only:
            raise WorkflowDefinitionError("Select steps by profile or by include-list, not both")

    @classmethod
    def from_options(cls, profile: Optional[str] = None, only: Optional[str | Iterable[str]] = None) -> "StepSelection":
        """Build a selection from CLI-style options (``only`` may be comma separated)."""
        if isinstance(only, str):
            names = tuple(part.strip() for part in only.split(",") if part.strip())
        else:
            names = tuple(only or ())
        return cls(profile=profile or None, only=names)

    @property
    def is_default(self) -> bool:
        return not self.profile and not self.only


def resolve_enabled_steps(
    definition: WorkflowDefinition, selection: Optional[StepSelection] = None
) -> List[str]:
    """Return the enabled step names in workflow order.

    Raises:
        WorkflowDefinitionError: Unknown profile or unknown step in the include-list
    """
    names = definition.step_names
    if selection is None or selection.is_default:
        return list(names)

    if selection.profile:
        if selection.profile not in definition.profiles:
            raise WorkflowDefinitionError(
                f"Unknown profile '{selection.profile}'. "
                f"Available: {', '.join(sorted(definition.profiles)) or 'none'}"
            )
        table = definition.profiles[selection.profile]
        wanted = {name for name in names if table.get(name, False)}
    else:
        unknown = [name for name in selection.only if name not in names]
        if unknown:
            raise WorkflowDefinitionError(f"Unknown step(s) in selection: {', '.join(unknown)}")
        wanted = set(selection.only)

    wanted.update(step.name for step in definition.steps if step.always_enabled)
    enabled = [name for name in names if name in wanted]
    logger.debug(f"Enabled steps for {definition.name}: {enabled}")
    return enabled
