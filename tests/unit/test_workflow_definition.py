"""Tests for WorkflowDefinition validation and stage layout."""

import pytest

from provisioner.errors import WorkflowDefinitionError
from provisioner.orchestration.workflow_engine.steps import (
    StepDefinition,
    StepResult,
    StepStatus,
    WorkflowResult,
    define_workflow,
)


def noop():
    return None


def step(name, **kwargs):
    return StepDefinition(name, noop, **kwargs)


class TestDefineWorkflow:
    """Tests for graph validation."""

    def test_valid_workflow(self):
        definition = define_workflow(
            "demo",
            [step("A"), step("B", group="g"), step("C", group="g"), step("D", requires=("B", "C"))],
        )
        assert definition.step_names == ["A", "B", "C", "D"]
        assert definition.get_step("D").requires == ("B", "C")

    def test_empty_workflow_rejected(self):
        with pytest.raises(WorkflowDefinitionError, match="at least one step"):
            define_workflow("demo", [])

    def test_duplicate_names_rejected(self):
        with pytest.raises(WorkflowDefinitionError, match="Duplicate step name"):
            define_workflow("demo", [step("A"), step("A")])

    @pytest.mark.parametrize("name", ["completed", "lastUpdate", "errors"])
    def test_reserved_names_rejected(self, name):
        with pytest.raises(WorkflowDefinitionError, match="reserved"):
            define_workflow("demo", [step(name)])

    def test_non_contiguous_group_rejected(self):
        with pytest.raises(WorkflowDefinitionError, match="not contiguous"):
            define_workflow("demo", [step("A", group="g"), step("B"), step("C", group="g")])

    def test_requirement_must_run_earlier(self):
        with pytest.raises(WorkflowDefinitionError, match="does not run before"):
            define_workflow("demo", [step("A", requires=("B",)), step("B")])

    def test_requirement_within_same_group_rejected(self):
        with pytest.raises(WorkflowDefinitionError):
            define_workflow("demo", [step("A", group="g"), step("B", group="g", requires=("A",))])

    def test_unknown_requirement_rejected(self):
        with pytest.raises(WorkflowDefinitionError, match="unknown step"):
            define_workflow("demo", [step("A", requires=("missing",))])

    def test_profile_with_unknown_step_rejected(self):
        with pytest.raises(WorkflowDefinitionError, match="unknown steps"):
            define_workflow("demo", [step("A")], profiles={"p": {"nope": True}})

    def test_error_is_a_value_error_cause(self):
        with pytest.raises(WorkflowDefinitionError) as exc_info:
            define_workflow("demo", [step("A"), step("A")])
        assert isinstance(exc_info.value.__cause__, ValueError)


class TestStages:
    """Tests for splitting steps into stages."""

    def test_groups_become_single_stage(self):
        definition = define_workflow(
            "demo", [step("A"), step("B", group="g"), step("C", group="g"), step("D")]
        )
        stages = definition.stages()
        assert [s.names for s in stages] == [["A"], ["B", "C"], ["D"]]
        assert [s.is_parallel for s in stages] == [False, True, False]

    def test_stages_filter_enabled_steps(self):
        definition = define_workflow(
            "demo", [step("A"), step("B", group="g"), step("C", group="g"), step("D")]
        )
        stages = definition.stages(["A", "C"])
        assert [s.names for s in stages] == [["A"], ["C"]]

    def test_to_dag_edges(self):
        definition = define_workflow(
            "demo", [step("A"), step("B", group="g"), step("C", group="g"), step("D", requires=("B", "C"))]
        )
        dag = definition.to_dag()
        assert set(dag.predecessors("D")) == {"B", "C"}
        assert dag.nodes["B"]["group"] == "g"


class TestWorkflowResult:
    """Tests for WorkflowResult helpers."""

    def test_step_lists(self):
        result = WorkflowResult(
            instance_id="x",
            enabled_steps=["A", "B", "C", "D"],
            step_results={
                "A": StepResult("A", StepStatus.SKIPPED),
                "B": StepResult("B", StepStatus.COMPLETED),
                "C": StepResult("C", StepStatus.DEFERRED),
            },
        )
        assert result.skipped_steps == ["A"]
        assert result.executed_steps == ["B"]
        assert result.unresolved_steps == ["C", "D"]
