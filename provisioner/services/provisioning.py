"""Standard single-entity provisioning workflow.

Builds the step graph that sets up one destination project from one source
item, and the service that runs it for single instances and batches.
"""
from __future__ import annotations

import logging
import time
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..bulk.coordinator import BatchObserver, BulkBatchCoordinator, PreparedItem
from ..bulk.manifest import BatchItem, BatchManifest, ManifestStore
from ..errors import TransientUnavailable, ValidationError
from ..orchestration.context import WorkflowContext
from ..orchestration.selection import StepSelection
from ..orchestration.state_manager import CheckpointStore
from ..orchestration.workflow_engine.core import OrchestratorSettings, WorkflowOrchestrator
from ..orchestration.workflow_engine.executors import WorkflowObserver
from ..orchestration.workflow_engine.steps import (
    StepDefinition,
    WorkflowDefinition,
    WorkflowResult,
    define_workflow,
)
from ..utils.paths import safe_write_json, sanitize_name
from ..utils.retry import DEFAULT_READY_DELAYS, RetryPolicy, RetryWaiter
from .clients import PROJECT_READY_STATE, ServiceClients, SourceItem

logger = logging.getLogger(__name__)

WORKFLOW_NAME = "provision-project"
PROJECT_SETUP_GROUP = "project_setup"

DEFAULT_SECURITY_GROUPS = ("Project Administrators", "Contributors", "Readers")
DEFAULT_BRANCH_POLICIES = ("minimum-reviewers", "comment-resolution")
TRANSIENT_RETRY = RetryPolicy.from_sequence((2, 4, 8))

_BASE_STEPS = ["validate_source", "ensure_project", "await_project_ready"]
_REPOSITORY_STEPS = [
    "ensure_repository",
    "fetch_source_content",
    "push_content",
    "set_default_branch",
    "ensure_branch_policies",
]

PROFILES: Dict[str, List[str]] = {
    "minimal": _BASE_STEPS,
    "repository": _BASE_STEPS + _REPOSITORY_STEPS,
    "documentation": _BASE_STEPS + ["ensure_wiki", "publish_wiki_pages"],
}


class ProvisioningSteps:
    """Step actions for one instance, bound to its WorkflowContext.

    Values produced by earlier steps are recovered through the context, so a
    resumed run that skips those steps calls the idempotent ensure operation
    again instead of reading ids from the checkpoint.

    Parameters read from ``context.parameters``: ``source_id`` (required),
    ``project_name``, ``description``, ``default_branch``, ``security_groups``,
    ``branch_policies``, ``service_connections``, ``wiki_name`` and
    ``report_format`` (``json`` or ``markdown``).
    """

    def __init__(
        self,
        context: WorkflowContext,
        ready_delays: Sequence[float] = DEFAULT_READY_DELAYS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.context = context
        self.ready_delays = tuple(ready_delays)
        self.waiter = RetryWaiter(sleep=sleep)

    @property
    def clients(self) -> ServiceClients:
        clients = self.context.clients
        if not isinstance(clients, ServiceClients):
            raise ValidationError("WorkflowContext.clients must be a ServiceClients instance")
        return clients

    @property
    def work_dir(self) -> Path:
        base = self.context.work_dir or Path(".provisioner/work")
        return Path(base) / sanitize_name(self.context.instance_id)

    def _source_id(self) -> str:
        source_id = self.context.param("source_id")
        if not source_id:
            raise ValidationError(f"No source_id given for '{self.context.instance_id}'")
        return source_id

    def _source_item(self) -> SourceItem:
        return self.context.resolve(
            "source_item", lambda: self.clients.source.get_item(self._source_id())
        )

    def _project_name(self) -> str:
        return self.context.param("project_name") or self._source_item().name

    def _project_id(self) -> str:
        return self.context.resolve(
            "project_id",
            lambda: self.clients.provisioning.ensure_project(
                self._project_name(),
                self.context.param("description") or self._source_item().description,
            ),
        )

    def _repository_id(self) -> str:
        return self.context.resolve(
            "repository_id",
            lambda: self.clients.provisioning.ensure_repository(
                self._project_id(), self._project_name()
            ),
        )

    def _wiki_id(self) -> str:
        name = self.context.param("wiki_name") or f"{self._project_name()}.wiki"
        return self.context.resolve(
            "wiki_id", lambda: self.clients.provisioning.ensure_wiki(self._project_id(), name)
        )

    def _content_dir(self) -> Path:
        return self.context.resolve(
            "content_dir",
            lambda: self.clients.source.download(self._source_id(), self.work_dir),
        )

    def _default_branch(self) -> str:
        return self.context.param("default_branch") or self._source_item().default_branch

    # Step actions

    def validate_source(self) -> str:
        item = self._source_item()
        if not item.name:
            raise ValidationError(f"Source item '{item.source_id}' has no name")
        return item.source_id

    def ensure_project(self) -> str:
        return self._project_id()

    def await_project_ready(self) -> Dict[str, Any]:
        project_id = self._project_id()

        def ready() -> Optional[Dict[str, Any]]:
            project = self.clients.provisioning.get_project(project_id)
            if project and project.get("state") == PROJECT_READY_STATE:
                return project
            return None

        project = self.waiter.wait_for(
            ready, delays=self.ready_delays, description=f"project {project_id} ready"
        )
        if project is None:
            raise TransientUnavailable(f"Project {project_id} is not ready yet")
        return project

    def ensure_repository(self) -> str:
        return self._repository_id()

    def fetch_source_content(self) -> str:
        self.context.set(
            "content_dir", self.clients.source.download(self._source_id(), self.work_dir)
        )
        return str(self.context.get("content_dir"))

    def push_content(self) -> List[str]:
        refs = self.clients.transport.push(
            self._content_dir(), self._project_id(), self._repository_id()
        )
        self.context.set("refs", list(refs))
        return refs

    def set_default_branch(self) -> str:
        branch = self._default_branch()
        self.clients.provisioning.set_default_branch(
            self._project_id(), self._repository_id(), branch
        )
        return branch

    def ensure_wiki(self) -> str:
        return self._wiki_id()

    def ensure_security_groups(self) -> Dict[str, str]:
        names = self.context.param("security_groups", DEFAULT_SECURITY_GROUPS)
        project_id = self._project_id()
        return {
            name: self.clients.provisioning.ensure_security_group(project_id, name)
            for name in names
        }

    def ensure_branch_policies(self) -> Dict[str, str]:
        policies = self.context.param("branch_policies", DEFAULT_BRANCH_POLICIES)
        project_id = self._project_id()
        repository_id = self._repository_id()
        branch = self._default_branch()
        return {
            policy: self.clients.provisioning.ensure_branch_policy(
                project_id, repository_id, branch, policy
            )
            for policy in policies
        }

    def ensure_service_connections(self) -> Dict[str, str]:
        connections = self.context.param("service_connections") or {}
        project_id = self._project_id()
        return {
            name: self.clients.provisioning.ensure_service_connection(project_id, name, settings)
            for name, settings in connections.items()
        }

    def publish_wiki_pages(self) -> List[str]:
        pages = self._source_item().wiki_pages
        project_id = self._project_id()
        wiki_id = self._wiki_id()
        published = [
            self.clients.provisioning.ensure_wiki_page(project_id, wiki_id, path, content)
            for path, content in sorted(pages.items())
        ]
        if not pages:
            logger.info(f"No wiki pages to publish for '{self.context.instance_id}'")
        return published

    def produce_report(self) -> str:
        """Write a summary of the provisioned resources known to this run."""
        values = self.context.snapshot()
        report = {
            "instance_id": self.context.instance_id,
            "source_id": self.context.param("source_id"),
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "resources": {
                key: values[key]
                for key in ("project_id", "repository_id", "wiki_id", "refs")
                if key in values
            },
        }
        if "source_item" in values:
            item = asdict(values["source_item"])
            item.pop("wiki_pages", None)
            report["source"] = item

        reports_dir = self.work_dir.parent / "reports"
        stem = sanitize_name(self.context.instance_id)
        if self.context.param("report_format", "json") == "markdown":
            path = reports_dir / f"{stem}.report.md"
            reports_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(render_markdown_report(report), encoding="utf-8")
        else:
            path = reports_dir / f"{stem}.report.json"
            safe_write_json(path, report)
        return str(path)


def render_markdown_report(report: Dict[str, Any]) -> str:
    lines = [
        f"# Provisioning report: {report['instance_id']}",
        "",
        f"- Source: {report.get('source_id') or 'n/a'}",
        f"- Generated: {report['generated_at']}",
        "",
        "## Resources",
        "",
    ]
    resources = report.get("resources") or {}
    if not resources:
        lines.append("_No resources resolved in this run._")
    for key, value in resources.items():
        lines.append(f"- **{key}**: {value}")
    return "\n".join(lines) + "\n"


def build_provisioning_workflow(
    context: WorkflowContext,
    ready_delays: Sequence[float] = DEFAULT_READY_DELAYS,
    sleep: Callable[[float], None] = time.sleep,
) -> WorkflowDefinition:
    """Create the provisioning workflow for one instance.

    Args:
        context: Run context carrying the shared clients and parameters
        ready_delays: Poll delays while waiting for the project to become ready
        sleep: Sleep function used by the readiness poll

    Returns:
        Workflow definition with the ``full``, ``minimal``, ``repository``
        and ``documentation`` profiles
    """
    actions = ProvisioningSteps(context, ready_delays=ready_delays, sleep=sleep)
    steps = [
        StepDefinition(
            "validate_source", actions.validate_source,
            label="Validate source item", success_message="Source item validated",
        ),
        StepDefinition(
            "ensure_project", actions.ensure_project,
            label="Ensure destination project", success_message="Project ready for setup",
            retry_policy=TRANSIENT_RETRY,
        ),
        StepDefinition(
            "await_project_ready", actions.await_project_ready,
            label="Wait for project provisioning", success_message="Project is well formed",
            deferrable=True,
        ),
        StepDefinition(
            "ensure_repository", actions.ensure_repository,
            label="Ensure repository", success_message="Repository ready",
            retry_policy=TRANSIENT_RETRY,
        ),
        StepDefinition(
            "fetch_source_content", actions.fetch_source_content,
            label="Fetch source content", success_message="Source content fetched",
            retry_policy=TRANSIENT_RETRY,
        ),
        StepDefinition(
            "push_content", actions.push_content,
            label="Push content", success_message="Content pushed",
            retry_policy=TRANSIENT_RETRY,
        ),
        StepDefinition(
            "set_default_branch", actions.set_default_branch,
            label="Set default branch", success_message="Default branch set",
            requires=("push_content",),
        ),
        StepDefinition(
            "ensure_wiki", actions.ensure_wiki,
            label="Ensure wiki", success_message="Wiki ready", group=PROJECT_SETUP_GROUP,
        ),
        StepDefinition(
            "ensure_security_groups", actions.ensure_security_groups,
            label="Ensure security groups", success_message="Security groups configured",
            group=PROJECT_SETUP_GROUP,
        ),
        StepDefinition(
            "ensure_branch_policies", actions.ensure_branch_policies,
            label="Ensure branch policies", success_message="Branch policies configured",
            group=PROJECT_SETUP_GROUP, requires=("ensure_repository",),
        ),
        StepDefinition(
            "ensure_service_connections", actions.ensure_service_connections,
            label="Ensure service connections", success_message="Service connections configured",
            group=PROJECT_SETUP_GROUP,
        ),
        StepDefinition(
            "publish_wiki_pages", actions.publish_wiki_pages,
            label="Publish wiki pages", success_message="Wiki pages published",
            requires=("ensure_wiki",),
        ),
        StepDefinition(
            "produce_report", actions.produce_report,
            label="Write provisioning report", success_message="Report written",
            always_enabled=True,
        ),
    ]
    names = [step.name for step in steps]
    profiles = {"full": {name: True for name in names}}
    for profile, enabled in PROFILES.items():
        profiles[profile] = {name: name in enabled for name in names}

    return define_workflow(
        WORKFLOW_NAME,
        steps,
        profiles=profiles,
        description="Provision a destination project from a source item",
    )


class ProvisioningService:
    """Runs the provisioning workflow for single instances and batches."""

    def __init__(
        self,
        clients: ServiceClients,
        store: CheckpointStore,
        manifest_store: Optional[ManifestStore] = None,
        settings: Optional[OrchestratorSettings] = None,
        observer: Optional[WorkflowObserver] = None,
        work_dir: Optional[Path] = None,
        ready_delays: Sequence[float] = DEFAULT_READY_DELAYS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.clients = clients
        self.store = store
        self.manifest_store = manifest_store
        self.work_dir = work_dir
        self.ready_delays = tuple(ready_delays)
        self._sleep = sleep
        self.orchestrator = WorkflowOrchestrator(
            store, settings=settings, observer=observer, sleep=sleep
        )

    def context_for(self, instance_id: str, **parameters: Any) -> WorkflowContext:
        return WorkflowContext(
            instance_id=instance_id,
            clients=self.clients,
            parameters=parameters,
            work_dir=self.work_dir,
        )

    def workflow_for(self, context: WorkflowContext) -> WorkflowDefinition:
        return build_provisioning_workflow(context, ready_delays=self.ready_delays, sleep=self._sleep)

    def provision(
        self,
        instance_id: str,
        source_id: str,
        resume: bool = False,
        force: bool = False,
        selection: Optional[StepSelection] = None,
        **parameters: Any,
    ) -> WorkflowResult:
        """Provision one destination instance from one source item.

        Raises:
            StepFailedError: A step failed fatally; the checkpoint is kept
        """
        context = self.context_for(instance_id, source_id=source_id, **parameters)
        definition = self.workflow_for(context)
        return self.orchestrator.run(
            definition, instance_id, resume=resume, force=force, selection=selection
        )

    def prepare_item(self, source_id: str) -> PreparedItem:
        """Resolve one source item for a batch (no destination changes)."""
        item = self.clients.source.get_item(source_id)
        return PreparedItem(dest_id=item.name, description=item.description, size=item.size)

    def batch_instance_id(self, destination: str, item: BatchItem) -> str:
        return f"{destination}-{item.dest_id}"

    def coordinator(
        self,
        destination: str,
        selection: Optional[StepSelection] = None,
        observer: Optional[BatchObserver] = None,
        **parameters: Any,
    ) -> BulkBatchCoordinator:
        """Build a batch coordinator whose items resume their own checkpoints."""
        if self.manifest_store is None:
            raise ValidationError("A manifest store is required for batch operations")

        def execute_item(item: BatchItem) -> WorkflowResult:
            return self.provision(
                self.batch_instance_id(destination, item),
                item.source_id,
                resume=True,
                selection=selection,
                project_name=item.dest_id,
                **parameters,
            )

        return BulkBatchCoordinator(
            self.manifest_store, self.prepare_item, execute_item, observer=observer
        )

    def prepare_batch(
        self,
        destination: str,
        source_ids: Sequence[str],
        observer: Optional[BatchObserver] = None,
    ) -> BatchManifest:
        return self.coordinator(destination, observer=observer).prepare(destination, source_ids)

    def execute_batch(
        self,
        destination: str,
        selection: Optional[StepSelection] = None,
        observer: Optional[BatchObserver] = None,
        **parameters: Any,
    ) -> BatchManifest:
        coordinator = self.coordinator(
            destination, selection=selection, observer=observer, **parameters
        )
        return coordinator.execute(destination)
