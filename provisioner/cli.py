"""Command line interface for resumable provisioning.

Commands:
    provision      Provision one destination instance from a source item
    bulk-prepare   Resolve many source items into a batch manifest
    bulk-execute   Provision every prepared item of a batch
    status         Show a checkpoint or a batch manifest
    reset          Discard a checkpoint
    steps          List workflow steps and profiles

Exit codes: 0 when everything completed, 2 when a run (or batch) finished
with unresolved steps or failed items, 1 on a fatal error.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import ConfigPriority, ProvisionerConfig
from .errors import ProvisioningError, StepFailedError
from .bulk.coordinator import BatchReport
from .bulk.manifest import ManifestStore
from .orchestration.context import WorkflowContext
from .orchestration.selection import StepSelection
from .orchestration.state_manager import FileCheckpointStore
from .orchestration.workflow_engine.steps import WorkflowStatus
from .services.clients import build_clients
from .services.provisioning import ProvisioningService, build_provisioning_workflow
from .ui.console import ConsoleManager, ConsoleObserver
from .utils.logging_factory import LoggingFactory

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INCOMPLETE = 2


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="provisioner",
        description="Resumable, checkpointed provisioning of destination projects",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  # Provision one project, then finish it after an interruption
  provisioner provision contoso-web --source web-app
  provisioner provision contoso-web --source web-app --resume

  # Only set up documentation
  provisioner provision contoso-web --source web-app --profile documentation

  # Bulk: resolve sources, then provision everything that resolved
  provisioner bulk-prepare contoso api web docs
  provisioner bulk-execute contoso
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--json-output",
        action="store_true",
        help="Emit machine-readable JSON events on stdout",
    )
    parser.add_argument("--config", type=Path, help="JSON settings file")
    parser.add_argument("--checkpoint-dir", type=Path, help="Directory for checkpoint files")
    parser.add_argument("--manifest-dir", type=Path, help="Directory for batch manifests")
    parser.add_argument(
        "--clients",
        metavar="MODULE:FACTORY",
        help="Import path of the collaborator clients factory",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

    provision_parser = subparsers.add_parser(
        "provision", help="Provision one destination instance from a source item"
    )
    provision_parser.add_argument("instance", help="Destination instance (project) name")
    provision_parser.add_argument(
        "--source", help="Source item id (defaults to the instance name)"
    )
    _add_run_options(provision_parser)
    _add_selection_options(provision_parser)
    provision_parser.add_argument(
        "--no-transcript", action="store_true", help="Do not write a per-run log file"
    )

    prepare_parser = subparsers.add_parser(
        "bulk-prepare", help="Resolve source items into a batch manifest"
    )
    prepare_parser.add_argument("destination", help="Destination name for the batch")
    prepare_parser.add_argument("sources", nargs="*", help="Source item ids")
    prepare_parser.add_argument(
        "--from-file", type=Path, help="Read source item ids from a file, one per line"
    )

    execute_parser = subparsers.add_parser(
        "bulk-execute", help="Provision every prepared item of a batch"
    )
    execute_parser.add_argument("destination", help="Destination name for the batch")
    _add_selection_options(execute_parser)
    execute_parser.add_argument(
        "--report-format", choices=["json", "markdown"], default="json",
        help="Format of the per-item provisioning report",
    )

    status_parser = subparsers.add_parser("status", help="Show a checkpoint or batch manifest")
    status_parser.add_argument("name", help="Instance name (or destination with --batch)")
    status_parser.add_argument("--batch", action="store_true", help="Show a batch manifest")

    reset_parser = subparsers.add_parser("reset", help="Discard the checkpoint of an instance")
    reset_parser.add_argument("instance", help="Instance name")

    subparsers.add_parser("steps", help="List workflow steps and profiles")

    return parser


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--resume", action="store_true", help="Continue from the saved checkpoint"
    )
    mode.add_argument(
        "--force", action="store_true", help="Discard saved progress and run every step"
    )
    parser.add_argument(
        "--report-format", choices=["json", "markdown"], default="json",
        help="Format of the provisioning report",
    )


def _add_selection_options(parser: argparse.ArgumentParser) -> None:
    selection = parser.add_mutually_exclusive_group()
    selection.add_argument("--profile", help="Run only the steps of a named profile")
    selection.add_argument(
        "--only", metavar="STEP[,STEP...]", help="Run only the listed steps"
    )


def load_config(args: argparse.Namespace) -> ProvisionerConfig:
    """Resolve configuration with CLI options as the highest overlay."""
    if args.config:
        ProvisionerConfig.load_file(args.config)
    ProvisionerConfig.set_overlay(
        ConfigPriority.CLI,
        {
            "PROVISIONER_CHECKPOINT_DIR": args.checkpoint_dir,
            "PROVISIONER_MANIFEST_DIR": args.manifest_dir,
            "PROVISIONER_CLIENTS_FACTORY": args.clients,
        },
    )
    return ProvisionerConfig()


def build_service(config: ProvisionerConfig, console: ConsoleManager) -> ProvisioningService:
    """Create the clients once and wire them into the service."""
    clients = build_clients(config.clients_factory, config=config)
    return ProvisioningService(
        clients,
        FileCheckpointStore(config.checkpoint_dir),
        manifest_store=ManifestStore(config.manifest_dir),
        settings=config.orchestrator_settings(),
        observer=ConsoleObserver(console),
        work_dir=config.work_dir,
        ready_delays=config.ready_delays,
    )


def _exit_code(status: WorkflowStatus) -> int:
    if status == WorkflowStatus.COMPLETED:
        return EXIT_OK
    if status == WorkflowStatus.INCOMPLETE:
        return EXIT_INCOMPLETE
    return EXIT_FAILED


def provision_command(
    args: argparse.Namespace, config: ProvisionerConfig, console: ConsoleManager
) -> int:
    """Handle the provision subcommand.

    Returns:
        Exit code (0 completed, 2 incomplete, 1 failed)
    """
    service = build_service(config, console)
    selection = StepSelection.from_options(args.profile, args.only)

    def run() -> int:
        result = service.provision(
            args.instance,
            args.source or args.instance,
            resume=args.resume,
            force=args.force,
            selection=selection,
            report_format=args.report_format,
        )
        return _exit_code(result.status)

    try:
        if args.no_transcript:
            return run()
        with LoggingFactory.transcript(args.instance, config.log_dir) as path:
            logger.info(f"Transcript: {path}")
            return run()
    except StepFailedError:
        # Guidance was already rendered by the observer
        return EXIT_FAILED


def _read_sources(args: argparse.Namespace) -> List[str]:
    sources = list(args.sources)
    if args.from_file:
        lines = args.from_file.read_text(encoding="utf-8").splitlines()
        sources.extend(line.strip() for line in lines if line.strip() and not line.startswith("#"))
    return sources


def _batch_exit_code(report: BatchReport) -> int:
    return EXIT_INCOMPLETE if report.failures else EXIT_OK


def bulk_prepare_command(
    args: argparse.Namespace, config: ProvisionerConfig, console: ConsoleManager
) -> int:
    service = build_service(config, console)
    manifest = service.prepare_batch(
        args.destination, _read_sources(args), observer=ConsoleObserver(console)
    )
    report = BatchReport.from_manifest(manifest)
    console.print_batch_report(report)
    return _batch_exit_code(report)


def bulk_execute_command(
    args: argparse.Namespace, config: ProvisionerConfig, console: ConsoleManager
) -> int:
    service = build_service(config, console)
    manifest = service.execute_batch(
        args.destination,
        selection=StepSelection.from_options(args.profile, args.only),
        observer=ConsoleObserver(console),
        report_format=args.report_format,
    )
    report = BatchReport.from_manifest(manifest)
    console.print_batch_report(report)
    return _batch_exit_code(report)


def status_command(
    args: argparse.Namespace, config: ProvisionerConfig, console: ConsoleManager
) -> int:
    if args.batch:
        manifest = ManifestStore(config.manifest_dir).load(args.name)
        if manifest is None:
            console.print_message(f"No batch manifest for '{args.name}'", style="yellow")
            return EXIT_FAILED
        console.print_batch_report(BatchReport.from_manifest(manifest))
        return EXIT_OK

    store = FileCheckpointStore(config.checkpoint_dir)
    state = store.peek(args.name)
    console.print_checkpoint(args.name, state, store.path_for(args.name))
    return EXIT_OK if state is not None else EXIT_FAILED


def reset_command(
    args: argparse.Namespace, config: ProvisionerConfig, console: ConsoleManager
) -> int:
    store = FileCheckpointStore(config.checkpoint_dir)
    if store.clear(args.instance):
        console.print_message(f"Checkpoint for '{args.instance}' removed", style="green")
    else:
        console.print_message(f"No checkpoint for '{args.instance}'", style="yellow")
    return EXIT_OK


def steps_command(
    args: argparse.Namespace, config: ProvisionerConfig, console: ConsoleManager
) -> int:
    definition = build_provisioning_workflow(WorkflowContext(instance_id="<instance>"))
    console.print_steps(definition)
    return EXIT_OK


COMMANDS = {
    "provision": provision_command,
    "bulk-prepare": bulk_prepare_command,
    "bulk-execute": bulk_execute_command,
    "status": status_command,
    "reset": reset_command,
    "steps": steps_command,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    console = ConsoleManager(verbose=args.verbose, json_output=args.json_output)
    try:
        config = load_config(args)
    except (OSError, ValueError) as e:
        console.print_error(f"Invalid configuration: {e}")
        return EXIT_FAILED

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level)
    LoggingFactory.initialize(log_dir=config.log_dir, level=level, console=False)
    if args.verbose:
        LoggingFactory.configure_verbose(True)
    console.setup_logging(logging.getLogger("provisioner"))

    try:
        return COMMANDS[args.command](args, config, console)
    except (ProvisioningError, OSError) as e:
        logger.error(f"{args.command} failed: {e}")
        console.print_error(str(e))
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.error("Operation cancelled by user")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
