"""
Workflow step models and data structures.

This module defines the data models for step definitions, step and workflow
results, and the validated workflow definition (ordered sequential steps
interspersed with parallel groups).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import networkx as nx
from pydantic import BaseModel, ConfigDict, Field, InstanceOf, field_validator, model_validator
from pydantic import ValidationError as ModelValidationError

from ...errors import WorkflowDefinitionError
from ...utils.retry import RetryPolicy
from ..state_manager import RESERVED_STEP_NAMES


class WorkflowStatus(Enum):
    """Workflow run status."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    INCOMPLETE = "incomplete"
    FAILED = "failed"


class StepStatus(Enum):
    """Outcome of a single step within one run."""

    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    DEFERRED = "deferred"
    BLOCKED = "blocked"
    UNRESOLVED = "unresolved"

    @property
    def is_done(self) -> bool:
        """True when the step's checkpoint flag is set after this outcome."""
        return self in {StepStatus.COMPLETED, StepStatus.SKIPPED}


class ParallelFailurePolicy(Enum):
    """What a failed parallel-group member does to the rest of the run."""

    ISOLATE = "isolate"
    ABORT = "abort"


@dataclass
class StepDefinition:
    """One named, idempotent unit of work.

    ``action`` takes no arguments; anything it needs is captured from the
    WorkflowContext it was built with.
    """

    name: str
    action: Callable[[], Any]
    label: Optional[str] = None
    success_message: Optional[str] = None
    group: Optional[str] = None
    requires: Tuple[str, ...] = ()
    retry_policy: Optional[RetryPolicy] = None
    deferrable: bool = False
    always_enabled: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        self.requires = tuple(self.requires)

    @property
    def is_parallel(self) -> bool:
        return self.group is not None

    @property
    def display_name(self) -> str:
        return self.label or self.name

    def __hash__(self):
        return hash(self.name)


@dataclass
class StepResult:
    """Result from running (or skipping) one step."""

    step_name: str
    status: StepStatus = StepStatus.PENDING
    result: Any = None
    error: Optional[BaseException] = None
    duration: Optional[float] = None
    attempts: int = 0
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status.is_done


@dataclass
class Stage:
    """A sequential step, or a contiguous run of steps sharing a parallel group."""

    steps: List[StepDefinition]
    group: Optional[str] = None

    @property
    def is_parallel(self) -> bool:
        return self.group is not None

    @property
    def names(self) -> List[str]:
        return [step.name for step in self.steps]


@dataclass
class WorkflowResult:
    """Final (or partial) result of one orchestrator run."""

    instance_id: str
    status: WorkflowStatus = WorkflowStatus.NOT_STARTED
    enabled_steps: List[str] = field(default_factory=list)
    step_results: Dict[str, StepResult] = field(default_factory=dict)
    failed_step: Optional[str] = None
    error: Optional[BaseException] = None
    duration: float = 0.0
    checkpoint_path: Optional[str] = None

    def _names_with(self, *statuses: StepStatus) -> List[str]:
        return [
            name for name in self.enabled_steps
            if name in self.step_results and self.step_results[name].status in statuses
        ]

    @property
    def executed_steps(self) -> List[str]:
        return self._names_with(StepStatus.COMPLETED)

    @property
    def skipped_steps(self) -> List[str]:
        return self._names_with(StepStatus.SKIPPED)

    @property
    def unresolved_steps(self) -> List[str]:
        """Enabled steps whose flag is still false after the run."""
        return [
            name for name in self.enabled_steps
            if name not in self.step_results or not self.step_results[name].succeeded
        ]

    @property
    def succeeded(self) -> bool:
        return self.status == WorkflowStatus.COMPLETED


class WorkflowDefinition(BaseModel):
    """Ordered step graph with validation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str = ""
    steps: List[InstanceOf[StepDefinition]]
    profiles: Dict[str, Dict[str, bool]] = Field(default_factory=dict)

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v):
        """Validate step names and parallel group layout."""
        if not v:
            raise ValueError("Workflow must have at least one step")

        names = set()
        closed_groups = set()
        previous_group = None
        for step in v:
            if not step.name:
                raise ValueError("Each step must have a name")
            if step.name in RESERVED_STEP_NAMES:
                raise ValueError(f"Step name '{step.name}' is reserved")
            if step.name in names:
                raise ValueError(f"Duplicate step name: {step.name}")
            names.add(step.name)

            if step.group != previous_group:
                if previous_group is not None:
                    closed_groups.add(previous_group)
                if step.group in closed_groups:
                    raise ValueError(f"Parallel group '{step.group}' is not contiguous")
                previous_group = step.group

        return v

    @model_validator(mode="after")
    def validate_graph(self):
        """Check profiles against step names and requirements against order."""
        known = set(self.step_names)
        for profile, table in self.profiles.items():
            unknown = set(table) - known
            if unknown:
                raise ValueError(f"Profile '{profile}' names unknown steps: {sorted(unknown)}")
        self.to_dag()
        return self

    @property
    def step_names(self) -> List[str]:
        return [step.name for step in self.steps]

    def get_step(self, name: str) -> StepDefinition:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    def stages(self, enabled: Optional[List[str]] = None) -> List[Stage]:
        """Split steps into sequential stages and parallel groups.

        Args:
            enabled: If given, only these steps are included (definition order kept)
        """
        selected = set(enabled) if enabled is not None else None
        stages: List[Stage] = []
        for step in self.steps:
            if selected is not None and step.name not in selected:
                continue
            if step.is_parallel and stages and stages[-1].group == step.group:
                stages[-1].steps.append(step)
            else:
                stages.append(Stage(steps=[step], group=step.group))
        return stages

    def to_dag(self) -> nx.DiGraph:
        """Convert the step requirements to a directed acyclic graph."""
        dag = nx.DiGraph()
        stage_index: Dict[str, int] = {}
        for index, stage in enumerate(self.stages()):
            for step in stage.steps:
                stage_index[step.name] = index
                dag.add_node(step.name, group=step.group)

        for step in self.steps:
            for dep in step.requires:
                if dep not in stage_index:
                    raise ValueError(f"Step '{step.name}' requires unknown step '{dep}'")
                if stage_index[dep] >= stage_index[step.name]:
                    raise ValueError(
                        f"Step '{step.name}' requires '{dep}', which does not run before it"
                    )
                dag.add_edge(dep, step.name)

        if not nx.is_directed_acyclic_graph(dag):
            raise ValueError("Workflow contains cycles")

        return dag


def define_workflow(
    name: str,
    steps: List[StepDefinition],
    profiles: Optional[Dict[str, Dict[str, bool]]] = None,
    description: str = "",
) -> WorkflowDefinition:
    """Build a validated WorkflowDefinition.

    Raises:
        WorkflowDefinitionError: If the step graph or profiles are malformed
    """
    try:
        return WorkflowDefinition(
            name=name, description=description, steps=steps, profiles=profiles or {}
        )
    except ModelValidationError as e:
        messages = "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())
        raise WorkflowDefinitionError(f"Invalid workflow '{name}': {messages}") from e
