"""Checkpointed VMFS upgrade workflow — drives all 21 stages.

The workflow evacuates a VMFS-5 datastore onto a temporary datastore,
recreates it as VMFS-6 on the same LUNs and moves everything back. Every
stage commits by writing its number to the checkpoint file, so an
interrupted run resumes at ``checkpoint + 1`` and a failed one can be
rolled back from wherever it stopped.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union

from vmfsupgrade.config import AppConfig, UpgradeSettings
from vmfsupgrade.errors import (
    ArtifactMissingError,
    DataIntegrityError,
    InvalidModeError,
    IrrecoverableStateError,
    LookupFailed,
    PreconditionError,
    WorkflowLockedError,
)
from vmfsupgrade.pipeline.artifacts import (
    ArtifactStore,
    DrsSnapshot,
    HostLunSnapshot,
    IoControlSnapshot,
    PrecheckMarker,
    RollbackProgress,
    SdrsSnapshot,
    TagSnapshot,
    TemplateSnapshot,
    WorkflowIdentity,
)
from vmfsupgrade.pipeline.orphans import SWAP_PATTERNS
from vmfsupgrade.pipeline.state import MAX_CHECKPOINT, WorkflowStateStore
from vmfsupgrade.pipeline.validator import UpgradeValidator, ValidationReport
from vmfsupgrade.utils.logging import WorkflowLogger, get_workflow_logger

MANUAL = "manual"

RESUME_HINT = "Fix the cause and re-run with --resume to continue from the last checkpoint."
ROLLBACK_HINT = "Fix the cause and re-run with --rollback to continue the rollback."
PRECHECK_HINT = "Correct the condition above and re-run; nothing has been modified by this stage."
MANUAL_HINT = "Workflow state cannot be trusted; manual intervention is required."
MOVE_FILES_HINT = "Move or consolidate the listed files manually, then re-run with --resume."


# ─── Stage outcomes ──────────────────────────────────────────────────

@dataclass
class Success:
    message: str = ""


@dataclass
class PreconditionFailure:
    reason: str
    hint: str = PRECHECK_HINT


@dataclass
class Fatal:
    error: str
    category: str = "Error"
    hint: str = RESUME_HINT


StageOutcome = Union[Success, PreconditionFailure, Fatal]


def outcome_of(error: Exception, retry_hint: str = RESUME_HINT) -> StageOutcome:
    """Map an exception raised during a run onto the outcome the operator sees."""
    if isinstance(error, PreconditionError):
        return PreconditionFailure(error.reason, error.hint or PRECHECK_HINT)
    if isinstance(error, DataIntegrityError):
        files = "".join(f"\n    {f}" for f in error.files[:20])
        return Fatal(f"{error}{files}", error.category, MOVE_FILES_HINT)
    if isinstance(error, (ArtifactMissingError, IrrecoverableStateError)):
        return Fatal(str(error), error.category, MANUAL_HINT)
    return Fatal(str(error), getattr(error, "category", type(error).__name__), retry_hint)


class Mode(str, Enum):
    FRESH = "fresh"
    RESUME = "resume"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class Stage:
    number: int
    name: str
    description: str


STAGES: tuple[Stage, ...] = (
    Stage(1, "validate_temp_empty", "Validate temporary datastore is empty"),
    Stage(2, "validate_hosts", "Validate hosts and source VM configuration"),
    Stage(3, "validate_temp_version", "Validate temporary datastore VMFS version"),
    Stage(4, "validate_temp_capacity", "Validate temporary datastore capacity"),
    Stage(5, "validate_source_version", "Validate source datastore VMFS version"),
    Stage(6, "set_drs_manual", "Set cluster DRS automation to manual"),
    Stage(7, "disable_sioc", "Disable Storage I/O Control"),
    Stage(8, "disable_sdrs", "Disable Storage DRS load balancing"),
    Stage(9, "evacuate_vms", "Migrate VMs to temporary datastore"),
    Stage(10, "capture_tags", "Capture datastore tags"),
    Stage(11, "evacuate_orphans", "Unregister templates and copy orphaned data"),
    Stage(12, "unmount_source", "Unmount source datastore from all hosts"),
    Stage(13, "delete_source", "Delete source datastore"),
    Stage(14, "create_target", "Recreate datastore at target VMFS version"),
    Stage(15, "restore_pod_membership", "Move datastore back into its datastore cluster"),
    Stage(16, "return_vms", "Migrate VMs back to upgraded datastore"),
    Stage(17, "restore_tags", "Re-attach datastore tags"),
    Stage(18, "return_orphans", "Copy orphaned data back and re-register templates"),
    Stage(19, "restore_sdrs", "Restore Storage DRS settings"),
    Stage(20, "restore_sioc", "Restore Storage I/O Control settings"),
    Stage(21, "restore_drs", "Restore cluster DRS automation"),
)
STAGES_BY_NUMBER = {s.number: s for s in STAGES}

# Rollback reverses these stages, in this order, when they were reached.
ROLLBACK_ORDER = (9, 11, 8, 7, 6)
FIRST_MUTATING_STAGE = 6


@dataclass
class UpgradeResult:
    """Result of one workflow invocation."""
    success: bool
    mode: Mode
    datastore: str
    checkpoint: Optional[int] = None
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    category: Optional[str] = None
    hint: str = ""
    duration: str = ""
    completed_stages: list[str] = field(default_factory=list)
    archive: Optional[str] = None


class UpgradePipeline:
    """Drives the VMFS upgrade of one datastore through all checkpointed stages.

    Three entry modes:

    - fresh    — no checkpoint may exist; runs stages 1..21
    - resume   — re-enters at checkpoint + 1 using the persisted artifacts
    - rollback — reverses stages 9, 11, 8, 7, 6 (those that were reached)

    Every stage returns a :class:`StageOutcome`; the stage runner alone
    decides whether to commit the checkpoint and whether to go on. Stages
    never exit the process and never write the checkpoint themselves.

    Collaborators are duck-typed so tests can drive the whole state machine
    against in-memory fakes.
    """

    def __init__(
        self,
        settings: UpgradeSettings,
        server: str,
        datastore: str,
        temp_datastore: str,
        inventory,
        relocator,
        copier,
        volumes,
        tagging,
        force: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
        batch_size: Optional[int] = None,
        log: Optional[WorkflowLogger] = None,
    ):
        self.settings = settings
        self.server = server
        self.datastore = datastore
        self.temp_datastore = temp_datastore
        self.inventory = inventory
        self.relocator = relocator
        self.copier = copier
        self.volumes = volumes
        self.tagging = tagging
        self.force = force
        self.batch_size = batch_size or settings.batch_size
        self.state = WorkflowStateStore(settings.work_dir, server, datastore)
        self.artifacts = ArtifactStore(self.state.path)
        self.log = log or get_workflow_logger(self.state.key)
        self.validator = UpgradeValidator(
            inventory,
            source_version=settings.source_vmfs_version,
            min_host_version=settings.min_host_version,
            confirm=confirm,
        )
        self._started = 0.0

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        datastore: str,
        temp_datastore: str,
        force: bool = False,
        confirm: Optional[Callable[[str], bool]] = None,
        batch_size: Optional[int] = None,
    ) -> "UpgradePipeline":
        """Connect to vCenter and wire the real collaborators."""
        from vmfsupgrade.pipeline.orphans import OrphanCopier
        from vmfsupgrade.pipeline.relocation import BatchRelocationDriver, RelocationTracker
        from vmfsupgrade.vmware.client import VSphereClient
        from vmfsupgrade.vmware.footprint import FootprintEstimator
        from vmfsupgrade.vmware.inventory import DatastoreInventory
        from vmfsupgrade.vmware.tagging import TaggingClient
        from vmfsupgrade.vmware.volume import VolumeLifecycle

        vc = config.vcenter
        settings = config.upgrade
        client = VSphereClient()
        client.connect(vc.server, vc.username, vc.secret(), port=vc.port, insecure=vc.insecure)

        inventory = DatastoreInventory(client)
        tracker = RelocationTracker(
            client, inventory,
            poll_interval=settings.poll_interval_seconds,
            deadline_seconds=settings.relocation_deadline_seconds,
        )
        relocator = BatchRelocationDriver(
            tracker, FootprintEstimator(client, inventory), inventory, buffer_gb=settings.space_buffer_gb,
        )
        pipeline = cls(
            settings, vc.server, datastore, temp_datastore,
            inventory=inventory,
            relocator=relocator,
            copier=OrphanCopier(client, inventory),
            volumes=VolumeLifecycle(client, inventory),
            tagging=TaggingClient(vc.server, vc.username, vc.secret(), insecure=vc.insecure),
            force=force,
            confirm=confirm,
            batch_size=batch_size,
        )
        pipeline._client = client
        return pipeline

    def close(self) -> None:
        self.log.detach_file()
        if hasattr(self.tagging, "close"):
            self.tagging.close()
        client = getattr(self, "_client", None)
        if client is not None:
            client.disconnect()

    # ─── Entry point ─────────────────────────────────────────────────

    def run(self, resume: bool = False, rollback: bool = False) -> UpgradeResult:
        """Execute the workflow in the requested mode.

        Raises:
            InvalidModeError: If both ``resume`` and ``rollback`` are set
        """
        if resume and rollback:
            raise InvalidModeError("--resume and --rollback are mutually exclusive")
        mode = Mode.ROLLBACK if rollback else Mode.RESUME if resume else Mode.FRESH
        self._started = time.time()

        if mode != Mode.FRESH:
            checkpoint = self.state.read_checkpoint() if self.state.exists() else None
            if checkpoint is None:
                return self._guarded(mode, lambda: self._missing_checkpoint(mode))
            if mode == Mode.ROLLBACK and checkpoint < FIRST_MUTATING_STAGE - 1:
                self.log.info(f"Checkpoint {checkpoint}: nothing was modified, no rollback needed")
                return self._result(True, mode, checkpoint)

        try:
            with self.state.lock():
                self.log.attach_file(self.state.log_path)
                try:
                    if mode == Mode.FRESH:
                        return self._guarded(mode, self._start_fresh)
                    if mode == Mode.RESUME:
                        return self._guarded(mode, self._resume)
                    return self._guarded(mode, self._rollback)
                finally:
                    self.log.detach_file()
        except WorkflowLockedError as e:
            self.log.error(str(e))
            return self._result(False, mode, None, error=str(e), category=e.category,
                                hint="Wait for the other run to finish; concurrent runs are not supported.")

    def _guarded(self, mode: Mode, body: Callable[[], UpgradeResult]) -> UpgradeResult:
        """Run a mode body so that failures outside any stage still end in a result."""
        try:
            return body()
        except Exception as e:
            checkpoint = self.state.read_checkpoint()
            if mode == Mode.ROLLBACK:
                retry_hint = ROLLBACK_HINT
            elif checkpoint is None:
                retry_hint = PRECHECK_HINT
            else:
                retry_hint = RESUME_HINT
            outcome = outcome_of(e, retry_hint)
            if isinstance(outcome, PreconditionFailure):
                error, category, hint = outcome.reason, "PreconditionFailed", outcome.hint
            else:
                error, category, hint = outcome.error, outcome.category, outcome.hint
            self.log.error(f"[red]✗ {category}: {error}[/red]")
            self.log.error(hint)
            return self._result(False, mode, checkpoint, error=error, category=category, hint=hint)

    def _start_fresh(self) -> UpgradeResult:
        self.log.set_phase("init")
        if self.state.has_checkpoint():
            checkpoint = self.state.read_checkpoint()
            reason = (f"A workflow for {self.datastore} already exists at checkpoint "
                      f"{checkpoint if checkpoint is not None else '(corrupt)'}")
            self.log.error(reason)
            return self._result(False, Mode.FRESH, checkpoint, error=reason, category="PreconditionFailed",
                                hint="Use --resume to continue it or --rollback to undo it.")

        source = self.inventory.find_datastore(self.datastore)
        if source is None:
            if self.artifacts.exists(WorkflowIdentity):
                return self._orphaned(Mode.FRESH)
            reason = f"Datastore {self.datastore} not found"
            self.log.error(reason)
            return self._result(False, Mode.FRESH, None, error=reason, category="LookupFailed", hint=PRECHECK_HINT)
        if self.artifacts.exists(WorkflowIdentity) and self._at_target_version(source):
            return self._orphaned(Mode.FRESH)

        stale = self.artifacts.present()
        if stale:
            self.log.warning(f"Discarding artifacts of a run without checkpoint: {', '.join(stale)}")
            self.artifacts.clear()

        version = self.inventory.vmfs_major_version(source)
        identity = WorkflowIdentity(
            server=self.server,
            datastore=self.datastore,
            temp_datastore=self.temp_datastore,
            moref=getattr(source, "_moId", ""),
            vmfs_uuid=self.inventory.vmfs_uuid(source) if version is not None else "",
            capacity_bytes=self.inventory.capacity_bytes(source),
            vmfs_major_version=version,
            datacenter=self._datacenter_name(source),
        )
        self.artifacts.save(identity, overwrite=True)
        self.state.write_checkpoint(0)
        self.log.info(f"[bold]Starting VMFS{self.settings.target_vmfs_version} upgrade[/bold] of "
                      f"{self.datastore} via {self.temp_datastore} (batch size {self.batch_size})")
        return self._forward(Mode.FRESH, 1)

    def _resume(self) -> UpgradeResult:
        self.log.set_phase("resume")
        checkpoint = self.state.read_checkpoint()
        if self.artifacts.exists(RollbackProgress):
            reason = f"A rollback of {self.datastore} is in progress at checkpoint {checkpoint}"
            self.log.error(reason)
            return self._result(False, Mode.RESUME, checkpoint, error=reason, category="PreconditionFailed",
                                hint="Finish it with --rollback.")
        try:
            identity = self.artifacts.load(WorkflowIdentity)
        except ArtifactMissingError as e:
            self.log.error(f"{e.category}: {e}")
            return self._result(False, Mode.RESUME, checkpoint, error=str(e), category=e.category, hint=MANUAL_HINT)
        if identity.temp_datastore != self.temp_datastore:
            reason = (f"Workflow was started with temporary datastore {identity.temp_datastore}, "
                      f"not {self.temp_datastore}")
            self.log.error(reason)
            return self._result(False, Mode.RESUME, checkpoint, error=reason, category="PreconditionFailed",
                                hint=f"Re-run with --temp-datastore {identity.temp_datastore}.")

        self.log.info(f"Resuming upgrade of {self.datastore} after checkpoint {checkpoint}")
        return self._forward(Mode.RESUME, checkpoint + 1)

    # ─── Forward execution ───────────────────────────────────────────

    def _forward(self, mode: Mode, start: int) -> UpgradeResult:
        completed: list[str] = []
        for stage in STAGES[start - 1:]:
            outcome = self._run_stage(stage, getattr(self, f"_stage_{stage.name}"))
            if not isinstance(outcome, Success):
                return self._failed(mode, stage, outcome, completed, stage.number - 1)
            self.state.write_checkpoint(stage.number)
            completed.append(stage.name)

        self.log.set_phase("complete")
        self.log.success(f"[bold green]Datastore {self.datastore} upgraded to "
                         f"VMFS{self.settings.target_vmfs_version} in {self._elapsed()}[/bold green]")
        archive = self._archive()
        return self._result(True, mode, MAX_CHECKPOINT, completed=completed, archive=archive)

    def _run_stage(self, stage: Stage, handler: Callable[[], StageOutcome], reverting: bool = False) -> StageOutcome:
        """Run one stage handler and turn anything it raises into an outcome."""
        verb = "Reverting" if reverting else "Stage"
        self.log.set_phase(f"{'revert-' if reverting else ''}{stage.number:02d}-{stage.name}")
        self.log.info(f"[cyan]▶ {verb} {stage.number}/{MAX_CHECKPOINT}: {stage.description}[/cyan]")
        try:
            outcome = handler()
        except Exception as e:
            outcome = outcome_of(e, ROLLBACK_HINT if reverting else RESUME_HINT)

        if isinstance(outcome, Success):
            self.log.success(f"[green]✓ {stage.description}[/green]"
                             + (f" — {outcome.message}" if outcome.message else ""))
        elif isinstance(outcome, PreconditionFailure):
            self.log.error(f"[red]✗ Precondition failed: {outcome.reason}[/red]")
            self.log.error(outcome.hint)
        else:
            if reverting and outcome.hint == RESUME_HINT:
                outcome.hint = ROLLBACK_HINT
            self.log.error(f"[red]✗ {outcome.category}: {outcome.error}[/red]")
            self.log.error(outcome.hint)
        return outcome

    def _failed(self, mode: Mode, stage: Stage, outcome: StageOutcome, completed: list[str],
                checkpoint: Optional[int]) -> UpgradeResult:
        if isinstance(outcome, PreconditionFailure):
            error, category, hint = outcome.reason, "PreconditionFailed", outcome.hint
        else:
            error, category, hint = outcome.error, outcome.category, outcome.hint
        return self._result(False, mode, checkpoint, failed_stage=stage.name, error=error,
                            category=category, hint=hint, completed=completed)

    # ─── Rollback ────────────────────────────────────────────────────

    def _rollback(self) -> UpgradeResult:
        self.log.set_phase("rollback")
        checkpoint = self.state.read_checkpoint()
        if self.artifacts.exists(RollbackProgress):
            progress = self.artifacts.load(RollbackProgress)
        else:
            progress = RollbackProgress(from_checkpoint=checkpoint)
            self.artifacts.save(progress)

        plan = [n for n in ROLLBACK_ORDER if n <= progress.from_checkpoint and n not in progress.reverted]
        self.log.info(f"Rolling back {self.datastore} from checkpoint {progress.from_checkpoint}: "
                      f"reverting stages {', '.join(map(str, plan)) or 'none'}")

        completed: list[str] = []
        for number in plan:
            stage = STAGES_BY_NUMBER[number]
            outcome = self._run_stage(stage, getattr(self, f"_revert_{stage.name}"), reverting=True)
            if not isinstance(outcome, Success):
                return self._failed(Mode.ROLLBACK, stage, outcome, completed, checkpoint)
            progress.reverted.append(number)
            self.artifacts.save(progress, overwrite=True)
            checkpoint = min(checkpoint, min(progress.reverted) - 1)
            self.state.write_checkpoint(checkpoint)
            completed.append(stage.name)

        self.log.set_phase("rollback")
        self.log.success(f"[bold green]Rollback of {self.datastore} complete in {self._elapsed()}[/bold green]")
        archive = self._archive()
        return self._result(True, Mode.ROLLBACK, checkpoint, completed=completed, archive=archive)

    # ─── Lost state ──────────────────────────────────────────────────

    def _at_target_version(self, ds) -> bool:
        return self.inventory.vmfs_major_version(ds) == self.settings.target_vmfs_version

    def _missing_checkpoint(self, mode: Mode) -> UpgradeResult:
        source = self.inventory.find_datastore(self.datastore)
        if (source is not None and self._at_target_version(source)) or \
                (source is None and self.artifacts.exists(WorkflowIdentity)):
            return self._orphaned(mode)
        reason = f"No checkpoint found for {self.datastore} on {self.server}; nothing to {mode.value}"
        self.log.error(reason)
        return self._result(False, mode, None, error=reason, category="PreconditionFailed",
                            hint="Start a fresh run without --resume/--rollback.")

    def _orphaned(self, mode: Mode) -> UpgradeResult:
        error = IrrecoverableStateError(
            f"Checkpoint for {self.datastore} is missing or corrupt but the datastore has already been "
            f"recreated or removed; the remaining stages cannot be run safely"
        )
        self.log.error(f"{error.category}: {error}")
        self.log.error(MANUAL_HINT)
        return self._result(False, mode, None, error=str(error), category=error.category, hint=MANUAL_HINT)

    # ─── Helpers ─────────────────────────────────────────────────────

    def _elapsed(self) -> str:
        return f"{time.time() - self._started:.0f}s"

    def _result(self, success: bool, mode: Mode, checkpoint: Optional[int], failed_stage: Optional[str] = None,
                error: Optional[str] = None, category: Optional[str] = None, hint: str = "",
                completed: Optional[list[str]] = None, archive: Optional[str] = None) -> UpgradeResult:
        return UpgradeResult(
            success=success,
            mode=mode,
            datastore=self.datastore,
            checkpoint=checkpoint,
            failed_stage=failed_stage,
            error=error,
            category=category,
            hint=hint,
            duration=self._elapsed(),
            completed_stages=list(completed or []),
            archive=archive,
        )

    def _archive(self) -> str:
        self.log.detach_file()
        return str(self.state.archive())

    def _datacenter_name(self, ds) -> str:
        try:
            return self.inventory.datacenter_of(ds).name
        except LookupFailed:
            return ""

    def _source(self):
        return self.inventory.get_datastore(self.datastore)

    def _temp(self):
        return self.inventory.get_datastore(self.temp_datastore)

    def _report_outcome(self, report: ValidationReport) -> StageOutcome:
        for check in report.checks:
            icon = "✓" if check.passed else "✗" if check.blocking else "!"
            self.log.info(f"  {icon} {check.name}: {check.message}")
        if not report.passed:
            return PreconditionFailure(report.summary())
        return Success()

    def _relocate(self, names: list[str], source: str, dest: str) -> StageOutcome:
        if not names:
            return Success(f"no VMs on {source}")
        self.log.info(f"Migrating {len(names)} VM(s) from {source} to {dest}")
        outcomes = self.relocator.relocate_all(names, source, dest, self.batch_size)
        failed = [o for o in outcomes if not o.succeeded]
        attempted = {o.vm_name for o in outcomes}
        missing = [n for n in names if n not in attempted]
        if failed or missing:
            details = [f"{o.vm_name}: {o.state.value if o.state else 'Unknown'} {o.cause}".rstrip() for o in failed]
            if missing and not failed:
                details.append(f"not attempted: {', '.join(missing)}")
            return Fatal("; ".join(details), "RelocationFailed", RESUME_HINT)
        return Success(f"{len(outcomes)} VM(s) moved to {dest}")

    # ─── Stages 1–5: preconditions ───────────────────────────────────

    def _stage_validate_temp_empty(self) -> StageOutcome:
        return self._report_outcome(self.validator.temp_is_empty(self._temp()))

    def _stage_validate_hosts(self) -> StageOutcome:
        source = self._source()
        report = self.validator.hosts_match(source, self._temp(), self.inventory.vcenter_version())
        if report.passed:
            report.checks.extend(self.validator.source_configuration(source, force=self.force).checks)
        return self._report_outcome(report)

    def _stage_validate_temp_version(self) -> StageOutcome:
        return self._report_outcome(self.validator.temp_version(self._temp()))

    def _stage_validate_temp_capacity(self) -> StageOutcome:
        return self._report_outcome(self.validator.temp_capacity(self._source(), self._temp()))

    def _stage_validate_source_version(self) -> StageOutcome:
        outcome = self._report_outcome(self.validator.source_version(self._source()))
        if isinstance(outcome, Success):
            self.artifacts.save(PrecheckMarker())
        return outcome

    # ─── Stages 6–8: quiesce automation ──────────────────────────────

    def _stage_set_drs_manual(self) -> StageOutcome:
        clusters = self.inventory.clusters_of(self.inventory.mounted_hosts(self._source()))
        self.artifacts.save(DrsSnapshot(clusters={c.name: self.inventory.drs_behavior(c) for c in clusters}))
        for cluster in clusters:
            if self.inventory.drs_behavior(cluster) != MANUAL:
                self.log.info(f"Cluster {cluster.name}: DRS → {MANUAL}")
                self.inventory.set_drs_behavior(cluster, MANUAL)
        return Success(f"{len(clusters)} cluster(s)")

    def _stage_disable_sioc(self) -> StageOutcome:
        source, temp = self._source(), self._temp()
        self.artifacts.save(IoControlSnapshot(
            source_enabled=self.inventory.sioc_enabled(source),
            temp_enabled=self.inventory.sioc_enabled(temp),
        ))
        for ds in (source, temp):
            if self.inventory.sioc_enabled(ds):
                self.log.info(f"Datastore {ds.name}: SIOC → disabled")
                self.inventory.set_sioc(ds, False)
        return Success()

    def _stage_disable_sdrs(self) -> StageOutcome:
        pod = self.inventory.pod_of(self._source())
        if pod is None:
            self.artifacts.save(SdrsSnapshot())
            return Success(f"{self.datastore} is not in a datastore cluster")
        behavior, io_balance = self.inventory.sdrs_config(pod)
        self.artifacts.save(SdrsSnapshot(pod=pod.name, default_vm_behavior=behavior,
                                         io_load_balance_enabled=io_balance))
        self.log.info(f"Datastore cluster {pod.name}: SDRS → {MANUAL}, I/O load balancing off")
        self.inventory.set_sdrs_config(pod, MANUAL, False)
        return Success()

    # ─── Stages 9–11: evacuate ───────────────────────────────────────

    def _stage_evacuate_vms(self) -> StageOutcome:
        names = self.inventory.vm_names_on(self._source())
        outcome = self._relocate(names, self.datastore, self.temp_datastore)
        if not isinstance(outcome, Success):
            return outcome

        source = self._source()
        swaps = self.copier.find_blockers(source, SWAP_PATTERNS)
        if swaps:
            raise DataIntegrityError(f"{len(swaps)} active swap file(s) remain on {self.datastore}", swaps)
        remaining = self.inventory.vm_names_on(source)
        if remaining:
            return Fatal(f"VMs still on {self.datastore}: {', '.join(remaining)}", "RelocationFailed")
        return outcome

    def _stage_capture_tags(self) -> StageOutcome:
        tags = self.tagging.list_attached(self._source())
        self.artifacts.save(TagSnapshot(tags=tags))
        return Success(f"{len(tags)} tag(s)")

    def _stage_evacuate_orphans(self) -> StageOutcome:
        source = self._source()
        blockers = self.copier.find_blockers(source)
        if blockers:
            raise DataIntegrityError(
                f"{len(blockers)} swap or snapshot delta file(s) on {self.datastore} cannot be copied", blockers,
            )

        templates = self.inventory.templates_on(source)
        self.artifacts.save(TemplateSnapshot.from_records(
            [self.inventory.template_record(t) for t in templates]
        ))
        for template in templates:
            self.log.info(f"Unregistering template {template.name}")
            self.inventory.unregister(template)

        orphans = self.copier.find_orphans(source)
        self.log.info(f"{len(orphans)} orphaned file(s) on {self.datastore}")
        if not self.copier.copy(self.datastore, self.temp_datastore):
            return Fatal(f"Copy of orphaned data from {self.datastore} to {self.temp_datastore} failed",
                         "OrphanCopyFailed")
        return Success(f"{len(templates)} template(s) unregistered")

    # ─── Stages 12–15: recreate ──────────────────────────────────────

    def _stage_unmount_source(self) -> StageOutcome:
        source = self._source()
        self.artifacts.save(HostLunSnapshot(
            hosts=[h.name for h in self.inventory.mounted_hosts(source)],
            luns=self.inventory.lun_names(source),
        ))
        registered = self.inventory.vm_names_on(source) + [t.name for t in self.inventory.templates_on(source)]
        if registered:
            raise PreconditionError(f"{self.datastore} still has registered VMs: {', '.join(registered)}",
                                    "Migrate or unregister them, then re-run with --resume.")
        self.volumes.unmount(source)
        return Success()

    def _stage_delete_source(self) -> StageOutcome:
        source = self.inventory.find_datastore(self.datastore)
        if source is None:
            return Success(f"{self.datastore} already deleted")
        self.volumes.delete(source)
        return Success()

    def _stage_create_target(self) -> StageOutcome:
        hostlun = self.artifacts.load(HostLunSnapshot)
        existing = self.inventory.find_datastore(self.datastore)
        if existing is not None and self._at_target_version(existing):
            return Success(f"{self.datastore} already exists as VMFS{self.settings.target_vmfs_version}")
        hosts = [self.inventory.get_host(name) for name in hostlun.hosts]
        self.volumes.create(self.datastore, hostlun.luns, hosts, self.settings.target_vmfs_version)
        return Success(f"VMFS{self.settings.target_vmfs_version} on {', '.join(hostlun.luns)}")

    def _stage_restore_pod_membership(self) -> StageOutcome:
        sdrs = self.artifacts.load(SdrsSnapshot)
        if sdrs.pod is None:
            return Success("no datastore cluster to rejoin")
        source = self._source()
        current = self.inventory.pod_of(source)
        if current is not None and current.name == sdrs.pod:
            return Success(f"already in {sdrs.pod}")
        self.inventory.move_into_pod(self.inventory.get_pod(sdrs.pod), source)
        return Success(f"moved into {sdrs.pod}")

    # ─── Stages 16–18: return ────────────────────────────────────────

    def _stage_return_vms(self) -> StageOutcome:
        names = self.inventory.vm_names_on(self._temp())
        return self._relocate(names, self.temp_datastore, self.datastore)

    def _stage_restore_tags(self) -> StageOutcome:
        snapshot = self.artifacts.load(TagSnapshot)
        source = self._source()
        attached = {t.tag_id for t in self.tagging.list_attached(source)}
        missing = [t for t in snapshot.tags if t.tag_id not in attached]
        for tag in missing:
            self.tagging.attach(tag, source)
        return Success(f"{len(missing)} tag(s) re-attached")

    def _return_orphans(self, dest_name: str) -> StageOutcome:
        snapshot = self.artifacts.load(TemplateSnapshot)
        if not self.copier.copy(self.temp_datastore, dest_name):
            return Fatal(f"Copy of orphaned data from {self.temp_datastore} to {dest_name} failed",
                         "OrphanCopyFailed")
        dest = self.inventory.get_datastore(dest_name)
        registered = 0
        for record in snapshot.records():
            if self.inventory.is_registered(record.path):
                continue
            self.log.info(f"Registering template {record.name} ({record.path})")
            self.inventory.register_template(record, dest)
            registered += 1
        return Success(f"{registered} template(s) registered")

    def _stage_return_orphans(self) -> StageOutcome:
        return self._return_orphans(self.datastore)

    # ─── Stages 19–21: restore automation ────────────────────────────

    def _stage_restore_sdrs(self) -> StageOutcome:
        sdrs = self.artifacts.load(SdrsSnapshot)
        if sdrs.pod is None:
            return Success("nothing to restore")
        pod = self.inventory.get_pod(sdrs.pod)
        self.inventory.set_sdrs_config(pod, sdrs.default_vm_behavior, sdrs.io_load_balance_enabled)
        return Success(f"{sdrs.pod}: {sdrs.default_vm_behavior}")

    def _stage_restore_sioc(self) -> StageOutcome:
        io = self.artifacts.load(IoControlSnapshot)
        for ds, enabled in ((self._source(), io.source_enabled), (self._temp(), io.temp_enabled)):
            if self.inventory.sioc_enabled(ds) != enabled:
                self.inventory.set_sioc(ds, enabled)
        return Success()

    def _stage_restore_drs(self) -> StageOutcome:
        drs = self.artifacts.load(DrsSnapshot)
        for name, behavior in drs.clusters.items():
            self.inventory.set_drs_behavior(self.inventory.get_cluster(name), behavior)
        return Success(f"{len(drs.clusters)} cluster(s)")

    # ─── Rollback handlers ───────────────────────────────────────────

    def _revert_evacuate_vms(self) -> StageOutcome:
        names = self.inventory.vm_names_on(self._temp())
        return self._relocate(names, self.temp_datastore, self.datastore)

    def _revert_evacuate_orphans(self) -> StageOutcome:
        return self._return_orphans(self.datastore)

    def _revert_disable_sdrs(self) -> StageOutcome:
        return self._stage_restore_sdrs()

    def _revert_disable_sioc(self) -> StageOutcome:
        return self._stage_restore_sioc()

    def _revert_set_drs_manual(self) -> StageOutcome:
        return self._stage_restore_drs()


def stage_statuses(checkpoint: Optional[int]) -> list[tuple[Stage, str]]:
    """(stage, done|next|pending) for every stage given a persisted checkpoint."""
    rows = []
    for stage in STAGES:
        if checkpoint is not None and stage.number <= checkpoint:
            status = "done"
        elif checkpoint is not None and stage.number == checkpoint + 1:
            status = "next"
        else:
            status = "pending"
        rows.append((stage, status))
    return rows
