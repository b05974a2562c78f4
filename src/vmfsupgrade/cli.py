"""CLI entry point for vmfs-upgrade."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from vmfsupgrade import __version__
from vmfsupgrade.config import AppConfig

console = Console()

DEFAULT_WORK_DIR = "/var/lib/vmfs-upgrade"


def load_config(config_path: str | None) -> AppConfig:
    """Load configuration from file or environment."""
    try:
        if config_path:
            return AppConfig.from_yaml(config_path)
        return AppConfig.from_env_and_args()
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        console.print("Provide a --config file or set VCENTER_HOST, VCENTER_USERNAME and VCENTER_PASSWORD.")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="vmfs-upgrade")
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
              help="Console log level")
def main(log_level: str):
    """In-place VMFS-5 to VMFS-6 datastore upgrade.

    Evacuates a datastore onto a temporary datastore, recreates it at the
    new VMFS version on the same LUNs and moves everything back. Every step
    is checkpointed so an interrupted run can be resumed or rolled back.
    """
    from vmfsupgrade.utils.logging import set_log_level

    set_log_level(log_level)


@main.command()
@click.option("--datastore", required=True, help="Datastore to upgrade")
@click.option("--temp-datastore", required=True, help="Empty VMFS-5 datastore used as temporary home")
@click.option("--resume", is_flag=True, default=False, help="Continue from the last checkpoint")
@click.option("--rollback", is_flag=True, default=False, help="Undo the workflow from the last checkpoint")
@click.option("--force", is_flag=True, default=False, help="Do not ask before relocating replicated VMs")
@click.option("--batch-size", type=click.IntRange(1, 32), help="Concurrent Storage vMotions per batch")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
def run(datastore: str, temp_datastore: str, resume: bool, rollback: bool, force: bool,
        batch_size: int | None, config_path: str | None):
    """Upgrade a datastore, or resume/roll back an earlier run."""
    if resume and rollback:
        raise click.UsageError("--resume and --rollback are mutually exclusive")

    config = load_config(config_path)

    from vmfsupgrade.pipeline.upgrade import UpgradePipeline

    try:
        with console.status("[bold green]Connecting to vCenter..."):
            pipeline = UpgradePipeline.from_config(
                config, datastore, temp_datastore,
                force=force,
                confirm=lambda question: click.confirm(question, default=False),
                batch_size=batch_size,
            )
    except ConnectionError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    try:
        result = pipeline.run(resume=resume, rollback=rollback)
    finally:
        pipeline.close()

    if result.success:
        verb = "rolled back" if result.mode.value == "rollback" else "upgraded"
        console.print(f"\n[bold green]✅ Datastore '{datastore}' {verb}[/bold green]")
        console.print(f"  Duration: {result.duration}")
        if result.archive:
            console.print(f"  Workflow archived to {result.archive}")
    else:
        where = f" at stage '{result.failed_stage}'" if result.failed_stage else ""
        console.print(f"\n[bold red]❌ Upgrade of '{datastore}' failed{where}[/bold red]")
        console.print(f"  {result.category or 'Error'}: {result.error}")
        if result.checkpoint is not None:
            console.print(f"  Checkpoint: {result.checkpoint}")
        if result.hint:
            console.print(f"  {result.hint}")
        sys.exit(1)


@main.command()
@click.option("--datastore", required=True, help="Datastore being upgraded")
@click.option("--server", envvar="VCENTER_HOST", required=True, help="vCenter the workflow runs against")
@click.option("--work-dir", envvar="VMFS_UPGRADE_WORK_DIR", default=DEFAULT_WORK_DIR,
              type=click.Path(file_okay=False), help="Workflow state root")
def status(datastore: str, server: str, work_dir: str):
    """Show the checkpoint and captured state of a workflow."""
    from vmfsupgrade.pipeline.artifacts import ArtifactStore
    from vmfsupgrade.pipeline.state import WorkflowStateStore, list_workflows
    from vmfsupgrade.pipeline.upgrade import STAGES, stage_statuses

    store = WorkflowStateStore(Path(work_dir), server, datastore)
    if not store.exists():
        console.print(f"[red]No workflow for '{datastore}' on {server}[/red]")
        known = list_workflows(work_dir)
        if known:
            console.print(f"[dim]Known workflows: {', '.join(known)}[/dim]")
        sys.exit(1)

    checkpoint = store.read_checkpoint()
    console.print(f"\n[bold]Workflow: {store.key}[/bold]")
    if checkpoint is None:
        console.print("  [red]Checkpoint: missing or corrupt[/red]")
    else:
        console.print(f"  Checkpoint: {checkpoint}/{len(STAGES)}")

    table = Table(title=f"Stages — {datastore}")
    table.add_column("#", justify="right")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    styles = {"done": "green", "next": "yellow", "pending": "dim"}
    for stage, state in stage_statuses(checkpoint):
        table.add_row(str(stage.number), stage.description, f"[{styles[state]}]{state}[/{styles[state]}]")
    console.print(table)

    artifacts = ArtifactStore(store.path).present()
    console.print(f"  Artifacts: {', '.join(artifacts) if artifacts else 'none'}")


@main.command()
@click.option("--datastore", help="Show where a resume of this datastore's workflow would re-enter")
@click.option("--server", envvar="VCENTER_HOST", help="vCenter the workflow runs against")
@click.option("--work-dir", envvar="VMFS_UPGRADE_WORK_DIR", default=DEFAULT_WORK_DIR,
              type=click.Path(file_okay=False), help="Workflow state root")
def plan(datastore: str | None, server: str | None, work_dir: str):
    """List the workflow stages and what rollback reverses."""
    from vmfsupgrade.pipeline.state import WorkflowStateStore
    from vmfsupgrade.pipeline.upgrade import ROLLBACK_ORDER, STAGES, stage_statuses

    if datastore and not server:
        raise click.UsageError("--datastore needs --server (or VCENTER_HOST)")

    checkpoint = None
    if datastore:
        store = WorkflowStateStore(Path(work_dir), server, datastore)
        checkpoint = store.read_checkpoint() if store.exists() else None
        if checkpoint is None:
            console.print(f"[dim]No checkpoint for '{datastore}' on {server}; a fresh run starts at stage 1[/dim]")

    table = Table(title="VMFS upgrade workflow")
    table.add_column("#", justify="right")
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Description")
    table.add_column("Rollback", justify="center")
    if checkpoint is not None:
        table.add_column("Status")
    styles = {"done": "green", "next": "yellow", "pending": "dim"}
    for stage, state in stage_statuses(checkpoint):
        row = [str(stage.number), stage.name, stage.description, "↺" if stage.number in ROLLBACK_ORDER else ""]
        if checkpoint is not None:
            row.append(f"[{styles[state]}]{state}[/{styles[state]}]")
        table.add_row(*row)
    console.print(table)
    console.print(f"[dim]Rollback order: {' → '.join(map(str, ROLLBACK_ORDER))}[/dim]")
    if checkpoint is not None and checkpoint < len(STAGES):
        console.print(f"Checkpoint {checkpoint}: --resume re-enters at stage {checkpoint + 1} "
                      f"({STAGES[checkpoint].name})")


if __name__ == "__main__":
    main()
