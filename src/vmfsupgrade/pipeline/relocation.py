"""Storage vMotion of VMs between two datastores, in capacity-checked batches.

:class:`RelocationTracker` submits one ``RelocateVM_Task`` per VM and polls
the whole outstanding set until every task is terminal.
:class:`BatchRelocationDriver` feeds it fixed-size batches, checking that
the destination can absorb each batch before dispatching it.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from pyVmomi import vim

from vmfsupgrade.utils.logging import get_logger
from vmfsupgrade.vmware.client import TASK_ERROR, TASK_SUCCESS, task_error_message
from vmfsupgrade.vmware.inventory import GIB, datastore_of_path

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL = 15
DEFAULT_SPACE_BUFFER_GB = 5


class RelocationState(str, Enum):
    SUCCESS = "Success"
    ERROR = "Error"
    SUBMISSION_FAILED = "SubmissionFailed"
    TIMED_OUT = "TimedOut"
    INSUFFICIENT_SPACE = "InsufficientDatastoreSpace"


@dataclass
class RelocationOutcome:
    """One VM's relocation attempt.

    ``state`` stays None while the task is in flight and is set exactly once
    when the tracker observes a terminal state.
    """
    vm_name: str
    task_id: str = ""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    state: Optional[RelocationState] = None
    cause: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state == RelocationState.SUCCESS

    def finish(self, state: RelocationState, cause: str = "") -> "RelocationOutcome":
        if self.state is not None:
            raise RuntimeError(f"Relocation of '{self.vm_name}' already finished as {self.state.value}")
        self.state = state
        self.cause = cause
        self.end_time = datetime.now()
        return self


def build_relocate_spec(vm, source_ds, dest_ds, source_name: str) -> vim.vm.RelocateSpec:
    """RelocateSpec that moves only what lives on the source datastore.

    The config files move iff the VM's vmx is on the source. Each disk gets
    its own locator: disks backed by the source go to ``dest_ds``, any other
    disk keeps its current backing datastore so it is not dragged along.
    """
    spec = vim.vm.RelocateSpec()
    if datastore_of_path(vm.config.files.vmPathName) == source_name:
        spec.datastore = dest_ds

    locators = []
    for device in vm.config.hardware.device:
        if not isinstance(device, vim.vm.device.VirtualDisk):
            continue
        current = device.backing.datastore
        target = dest_ds if current == source_ds else current
        locators.append(vim.vm.RelocateSpec.DiskLocator(diskId=device.key, datastore=target))
    spec.disk = locators
    return spec


class RelocationTracker:
    """Submits relocations without waiting on each, then polls them all to completion."""

    def __init__(
        self,
        client,
        inventory,
        poll_interval: int = DEFAULT_POLL_INTERVAL,
        deadline_seconds: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.inventory = inventory
        self.poll_interval = poll_interval
        self.deadline_seconds = deadline_seconds
        self._sleep = sleep
        self._clock = clock

    def relocate(self, vm_names: list[str], source_name: str, dest_name: str) -> list[RelocationOutcome]:
        """Relocate ``vm_names`` from ``source_name`` to ``dest_name``.

        A VM whose submission raises gets a ``SubmissionFailed`` record and
        no further VMs are submitted; tasks already in flight are still
        waited on so the caller sees their real outcome.
        """
        source_ds = self.inventory.get_datastore(source_name)
        dest_ds = self.inventory.get_datastore(dest_name)

        outcomes: list[RelocationOutcome] = []
        tracked: dict[str, tuple[object, RelocationOutcome, float]] = {}

        for name in vm_names:
            record = RelocationOutcome(vm_name=name, start_time=datetime.now())
            try:
                vm = self.inventory.get_vm(name)
                spec = build_relocate_spec(vm, source_ds, dest_ds, source_name)
                task = vm.RelocateVM_Task(spec)
            except Exception as e:
                logger.error(f"Failed to submit relocation of '{name}': {type(e).__name__}: {e}")
                outcomes.append(record.finish(RelocationState.SUBMISSION_FAILED, str(e)))
                break
            record.task_id = task.info.key
            tracked[record.task_id] = (task, record, self._clock())
            logger.info(f"Relocating '{name}' {source_name} → {dest_name} (task {record.task_id})")

        while tracked:
            for task_id in list(tracked):
                task, record, submitted = tracked[task_id]
                state = self.client.task_state(task)
                if state == TASK_SUCCESS:
                    logger.info(f"[green]✓ '{record.vm_name}' relocated to {dest_name}[/green]")
                    record.finish(RelocationState.SUCCESS)
                elif state == TASK_ERROR:
                    cause = task_error_message(task)
                    logger.error(f"[red]✗ Relocation of '{record.vm_name}' failed: {cause}[/red]")
                    record.finish(RelocationState.ERROR, cause)
                elif self.deadline_seconds is not None and self._clock() - submitted > self.deadline_seconds:
                    logger.error(f"Relocation of '{record.vm_name}' exceeded {self.deadline_seconds}s")
                    record.finish(RelocationState.TIMED_OUT, f"no terminal state after {self.deadline_seconds}s")
                else:
                    continue
                del tracked[task_id]
                outcomes.append(record)
            if tracked:
                self._sleep(self.poll_interval)

        return outcomes


def batches(items: list, size: int) -> list[list]:
    """Split ``items`` front to back into consecutive lists of at most ``size``."""
    if size < 1:
        raise ValueError(f"batch size must be at least 1, got {size}")
    remaining = list(items)
    result = []
    while remaining:
        result.append(remaining[:size])
        remaining = remaining[size:]
    return result


def has_room(free_gib: float, footprint_bytes: int, buffer_gb: int = DEFAULT_SPACE_BUFFER_GB) -> bool:
    """True iff the destination's free space strictly exceeds the batch plus buffer."""
    return free_gib > round(footprint_bytes / GIB) + buffer_gb


class BatchRelocationDriver:
    """Moves a VM list in batches, never overcommitting the destination."""

    def __init__(self, tracker: RelocationTracker, estimator, inventory,
                 buffer_gb: int = DEFAULT_SPACE_BUFFER_GB):
        self.tracker = tracker
        self.estimator = estimator
        self.inventory = inventory
        self.buffer_gb = buffer_gb

    def relocate_all(
        self,
        vm_names: list[str],
        source_name: str,
        dest_name: str,
        batch_size: int,
    ) -> list[RelocationOutcome]:
        """Relocate every VM, stopping at the first batch that fails or does not fit.

        Returns every outcome gathered so far; a capacity stop appends a
        single ``InsufficientDatastoreSpace`` record.
        """
        outcomes: list[RelocationOutcome] = []
        groups = batches(vm_names, batch_size)

        for index, batch in enumerate(groups, 1):
            footprint = sum(self.estimator.footprint(self.inventory.get_vm(name)) for name in batch)
            dest_ds = self.inventory.get_datastore(dest_name)
            free = self.inventory.free_gib(dest_ds)
            needed = round(footprint / GIB) + self.buffer_gb

            if not has_room(free, footprint, self.buffer_gb):
                cause = (f"Datastore {dest_name} has {free:.1f} GiB free, "
                         f"batch {index}/{len(groups)} needs more than {needed} GiB")
                logger.error(cause)
                outcomes.append(
                    RelocationOutcome(vm_name=", ".join(batch), start_time=datetime.now())
                    .finish(RelocationState.INSUFFICIENT_SPACE, cause)
                )
                return outcomes

            logger.info(f"Batch {index}/{len(groups)}: {', '.join(batch)} "
                        f"({footprint / GIB:.1f} GiB, {free:.1f} GiB free)")
            results = self.tracker.relocate(batch, source_name, dest_name)
            outcomes.extend(results)

            failed = [r for r in results if not r.succeeded]
            if failed or len(results) < len(batch):
                logger.error(f"Batch {index} did not complete: "
                             f"{', '.join(r.vm_name for r in failed) or 'missing outcomes'}")
                return outcomes

        return outcomes
