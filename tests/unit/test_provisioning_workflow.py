"""Tests for the standard provisioning workflow and ProvisioningService."""

import json
import threading
from dataclasses import replace

import pytest

from provisioner.bulk.manifest import ItemStatus, ManifestStore
from provisioner.errors import StepFailedError, TransientUnavailable, ValidationError
from provisioner.orchestration.context import WorkflowContext
from provisioner.orchestration.selection import StepSelection
from provisioner.orchestration.workflow_engine.core import OrchestratorSettings
from provisioner.orchestration.workflow_engine.steps import (
    ParallelFailurePolicy,
    StepStatus,
    WorkflowStatus,
)
from provisioner.services.provisioning import (
    PROFILES,
    PROJECT_SETUP_GROUP,
    ProvisioningService,
    build_provisioning_workflow,
    render_markdown_report,
)
from provisioner.utils.retry import RetryExhaustedError

ALL_STEPS = [
    "validate_source",
    "ensure_project",
    "await_project_ready",
    "ensure_repository",
    "fetch_source_content",
    "push_content",
    "set_default_branch",
    "ensure_wiki",
    "ensure_security_groups",
    "ensure_branch_policies",
    "ensure_service_connections",
    "publish_wiki_pages",
    "produce_report",
]


@pytest.fixture
def work_dir(tmp_path):
    return tmp_path / "work"


@pytest.fixture
def service(fake_clients, memory_store, work_dir, recording_sleep):
    return ProvisioningService(
        fake_clients,
        memory_store,
        manifest_store=ManifestStore(work_dir.parent / "batches"),
        work_dir=work_dir,
        ready_delays=(0,),
        sleep=recording_sleep,
    )


class TestWorkflowDefinition:
    """Tests for the shape of the provisioning workflow."""

    def test_steps_and_group(self):
        definition = build_provisioning_workflow(WorkflowContext("contoso"))

        assert definition.step_names == ALL_STEPS
        groups = [stage for stage in definition.stages() if stage.is_parallel]
        assert len(groups) == 1
        assert groups[0].group == PROJECT_SETUP_GROUP
        assert groups[0].names == [
            "ensure_wiki",
            "ensure_security_groups",
            "ensure_branch_policies",
            "ensure_service_connections",
        ]

    def test_profiles_declared(self):
        definition = build_provisioning_workflow(WorkflowContext("contoso"))
        assert set(definition.profiles) == {"full", *PROFILES}
        assert all(definition.profiles["full"].values())

    def test_actions_require_service_clients(self):
        definition = build_provisioning_workflow(WorkflowContext("contoso", clients=object()))
        with pytest.raises(ValidationError, match="ServiceClients"):
            definition.get_step("validate_source").action()


class TestProvision:
    """End-to-end runs against fake collaborators."""

    def test_full_run(self, service, fake_clients, memory_store, work_dir):
        result = service.provision("contoso-alpha", "alpha")

        assert result.status == WorkflowStatus.COMPLETED
        assert result.executed_steps == ALL_STEPS
        assert not memory_store.exists("contoso-alpha")

        provisioning = fake_clients.provisioning
        assert provisioning.methods_called().count("ensure_project") == 1
        assert ("set_default_branch", "id-2", "main") in provisioning.calls
        assert len(fake_clients.transport.pushes) == 1

        report = json.loads((work_dir / "reports" / "contoso-alpha.report.json").read_text())
        assert report["source_id"] == "alpha"
        assert report["resources"]["project_id"] == "id-1"
        assert report["resources"]["refs"] == ["main"]
        assert report["source"]["name"] == "alpha-project"

    def test_minimal_profile(self, service, fake_clients):
        result = service.provision("contoso-alpha", "alpha", selection=StepSelection(profile="minimal"))

        assert result.executed_steps == [
            "validate_source",
            "ensure_project",
            "await_project_ready",
            "produce_report",
        ]
        assert fake_clients.transport.pushes == []

    def test_markdown_report(self, service, work_dir):
        service.provision("contoso-alpha", "alpha", report_format="markdown")

        text = (work_dir / "reports" / "contoso-alpha.report.md").read_text()
        assert text.startswith("# Provisioning report: contoso-alpha")
        assert "**project_id**: id-1" in text

    def test_unknown_source_fails_first_step(self, service, memory_store):
        with pytest.raises(StepFailedError) as exc_info:
            service.provision("contoso-zulu", "zulu")

        assert exc_info.value.step_name == "validate_source"
        state = memory_store.peek("contoso-zulu")
        assert state.errors[0].step == "validate_source"

    def test_transient_errors_retried_then_fatal(self, service, fake_clients, recording_sleep):
        fake_clients.provisioning.failures["ensure_repository"] = TransientUnavailable("throttled")

        with pytest.raises(StepFailedError) as exc_info:
            service.provision("contoso-alpha", "alpha")

        assert exc_info.value.step_name == "ensure_repository"
        assert isinstance(exc_info.value.error, RetryExhaustedError)
        assert fake_clients.provisioning.methods_called().count("ensure_repository") == 3
        assert recording_sleep.calls == [2, 4]


class TestReadinessDeferral:
    """await_project_ready defers instead of failing the run."""

    def test_deferred_then_completed_on_resume(self, fake_clients, memory_store, work_dir, recording_sleep):
        fake_clients.provisioning.ready_after = 100
        service = ProvisioningService(
            fake_clients, memory_store, work_dir=work_dir, sleep=recording_sleep
        )

        first = service.provision("contoso-alpha", "alpha")

        assert first.status == WorkflowStatus.INCOMPLETE
        assert first.step_results["await_project_ready"].status == StepStatus.DEFERRED
        assert first.unresolved_steps == ["await_project_ready"]
        assert recording_sleep.calls == [2, 4, 8, 16, 32]
        state = memory_store.peek("contoso-alpha")
        assert state.is_complete("ensure_project")
        assert not state.is_complete("await_project_ready")

        fake_clients.provisioning.ready_after = 0
        second = service.provision("contoso-alpha", "alpha", resume=True)

        assert second.status == WorkflowStatus.COMPLETED
        assert second.executed_steps == ["await_project_ready"]
        assert second.skipped_steps[-1] == "produce_report"


class TestGroupIsolation:
    """A failed group member blocks only its dependents."""

    def test_wiki_failure_blocks_pages(self, service, fake_clients, memory_store):
        fake_clients.provisioning.failures["ensure_wiki"] = ValidationError("wikis disabled")

        result = service.provision("contoso-alpha", "alpha")

        assert result.status == WorkflowStatus.INCOMPLETE
        assert result.step_results["ensure_wiki"].status == StepStatus.FAILED
        assert result.step_results["publish_wiki_pages"].status == StepStatus.BLOCKED
        for sibling in ("ensure_security_groups", "ensure_branch_policies", "ensure_service_connections"):
            assert result.step_results[sibling].status == StepStatus.COMPLETED
        assert result.step_results["produce_report"].status == StepStatus.COMPLETED

        state = memory_store.peek("contoso-alpha")
        assert [record.step for record in state.errors] == ["ensure_wiki"]

        del fake_clients.provisioning.failures["ensure_wiki"]
        resumed = service.provision("contoso-alpha", "alpha", resume=True)

        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.executed_steps == ["ensure_wiki", "publish_wiki_pages"]

    def test_hung_wiki_does_not_hold_up_siblings(self, fake_clients, memory_store, work_dir):
        provisioning = fake_clients.provisioning
        release = threading.Event()
        original = provisioning.ensure_wiki

        def hung_ensure_wiki(project_id, name):
            release.wait(10)
            return original(project_id, name)

        provisioning.ensure_wiki = hung_ensure_wiki
        service = ProvisioningService(
            fake_clients,
            memory_store,
            settings=OrchestratorSettings(parallel_timeout=0.5),
            work_dir=work_dir,
            ready_delays=(0,),
        )
        outcome = {}
        runner = threading.Thread(
            target=lambda: outcome.setdefault("result", service.provision("contoso-alpha", "alpha"))
        )
        try:
            runner.start()
            runner.join(5)
            assert not runner.is_alive()
        finally:
            release.set()

        result = outcome["result"]
        assert result.status == WorkflowStatus.INCOMPLETE
        assert result.step_results["ensure_wiki"].status == StepStatus.UNRESOLVED
        for sibling in ("ensure_security_groups", "ensure_branch_policies", "ensure_service_connections"):
            assert result.step_results[sibling].status == StepStatus.COMPLETED
        assert result.step_results["publish_wiki_pages"].status == StepStatus.BLOCKED
        assert result.step_results["produce_report"].status == StepStatus.COMPLETED
        assert not memory_store.peek("contoso-alpha").is_complete("ensure_wiki")

    def test_abort_policy_halts_run(self, fake_clients, memory_store, work_dir):
        settings = OrchestratorSettings(parallel_failure_policy=ParallelFailurePolicy.ABORT)
        service = ProvisioningService(
            fake_clients, memory_store, settings=settings, work_dir=work_dir, ready_delays=(0,)
        )
        fake_clients.provisioning.failures["ensure_security_group"] = ValidationError("denied")

        with pytest.raises(StepFailedError) as exc_info:
            service.provision("contoso-alpha", "alpha")

        assert exc_info.value.step_name == "ensure_security_groups"
        assert "ensure_wiki_page" not in fake_clients.provisioning.methods_called()


class TestResume:
    """Resumed runs re-resolve ids instead of reading them from the checkpoint."""

    def test_resume_after_failure(self, service, fake_clients, memory_store):
        provisioning = fake_clients.provisioning
        provisioning.failures["set_default_branch"] = ValidationError("branch locked")

        with pytest.raises(StepFailedError):
            service.provision("contoso-alpha", "alpha")

        del provisioning.failures["set_default_branch"]
        provisioning.calls.clear()

        result = service.provision("contoso-alpha", "alpha", resume=True)

        assert result.status == WorkflowStatus.COMPLETED
        assert result.skipped_steps == ALL_STEPS[:6]
        assert "ensure_project" in provisioning.methods_called()
        assert ("set_default_branch", "id-2", "main") in provisioning.calls
        assert len(fake_clients.transport.pushes) == 1
        assert fake_clients.source.downloads == ["alpha"]


class TestBatch:
    """Batch preparation and execution through the service."""

    def test_prepare_and_execute(self, service, fake_clients, memory_store):
        fake_clients.source.failures["charlie"] = ValidationError("archived")
        sources = ["alpha", "bravo", "charlie", "delta", "echo"]

        prepared = service.prepare_batch("contoso", sources)

        summary = prepared.preparation_summary
        assert (summary.total, summary.succeeded, summary.failed) == (5, 4, 1)
        assert summary.total_size == 400
        assert prepared.get_item("alpha").dest_id == "alpha-project"

        executed = service.execute_batch("contoso")

        assert executed.execution_summary.succeeded == 4
        assert executed.get_item("charlie").execution_status is None
        assert executed.get_item("echo").execution_status == ItemStatus.SUCCESS
        assert len(fake_clients.transport.pushes) == 4
        assert not memory_store.exists("contoso-alpha-project")

    def test_same_name_sources_never_share_a_project(self, service, fake_clients):
        items = fake_clients.source.items
        items["bravo"] = replace(items["alpha"], source_id="bravo")

        prepared = service.prepare_batch("contoso", ["alpha", "bravo"])

        assert prepared.get_item("alpha").status == ItemStatus.SUCCESS
        assert prepared.get_item("bravo").status == ItemStatus.FAILED

        executed = service.execute_batch("contoso")

        assert executed.execution_summary.total == 1
        assert len(fake_clients.transport.pushes) == 1

    def test_batch_requires_manifest_store(self, fake_clients, memory_store):
        service = ProvisioningService(fake_clients, memory_store)
        with pytest.raises(ValidationError):
            service.prepare_batch("contoso", ["alpha"])


def test_render_markdown_report_without_resources():
    text = render_markdown_report(
        {"instance_id": "x", "generated_at": "2024-01-01T00:00:00+00:00", "resources": {}}
    )
    assert "_No resources resolved in this run._" in text
    assert "- Source: n/a" in text
