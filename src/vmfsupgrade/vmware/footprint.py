"""On-disk footprint of a VM, measured by browsing its datastore folders."""

from __future__ import annotations

import posixpath

from pyVmomi import vim

from vmfsupgrade.errors import LookupFailed
from vmfsupgrade.utils.logging import get_logger
from vmfsupgrade.vmware.inventory import datastore_of_path

logger = get_logger(__name__)


def _file_directory(path: str) -> str:
    """``"[ds] vm/disk.vmdk"`` -> ``"[ds] vm"``."""
    ds_name = datastore_of_path(path)
    relative = path[path.index("]") + 1:].strip()
    folder = posixpath.dirname(relative)
    return f"[{ds_name}] {folder}" if folder else f"[{ds_name}]"


def _normalize_directory(path: str) -> str:
    """``"[ds] vm/"`` -> ``"[ds] vm"``."""
    ds_name = datastore_of_path(path)
    relative = path[path.index("]") + 1:].strip().rstrip("/")
    return f"[{ds_name}] {relative}" if relative else f"[{ds_name}]"


def vm_directories(vm) -> list[str]:
    """Unique datastore folders holding a VM's config, snapshots, suspend, logs and disks.

    Order follows first appearance so the result is stable for a given VM.
    """
    files = vm.config.files
    dirs = [_file_directory(files.vmPathName)]
    for folder in (files.snapshotDirectory, files.suspendDirectory, files.logDirectory):
        if folder:
            dirs.append(_normalize_directory(folder))
    for device in vm.config.hardware.device:
        if isinstance(device, vim.vm.device.VirtualDisk) and getattr(device.backing, "fileName", None):
            dirs.append(_file_directory(device.backing.fileName))
    return list(dict.fromkeys(dirs))


class FootprintEstimator:
    """Sums the size of every file in a VM's folders.

    Each folder is searched recursively through the owning datastore's
    browser. A failed search fails the whole estimate; a partial sum would
    under-report and let a batch through that does not fit.
    """

    def __init__(self, client, inventory=None):
        self.client = client
        self.inventory = inventory

    def _owning_datastore(self, vm, ds_name: str):
        for ds in vm.datastore or []:
            if ds.name == ds_name:
                return ds
        if self.inventory is not None:
            ds = self.inventory.find_datastore(ds_name)
            if ds is not None:
                return ds
        raise LookupFailed(f"Datastore '{ds_name}' of VM '{vm.name}' could not be resolved")

    def _directory_size(self, vm, folder: str) -> int:
        ds = self._owning_datastore(vm, datastore_of_path(folder))
        spec = vim.host.DatastoreBrowser.SearchSpec(
            details=vim.host.DatastoreBrowser.FileInfo.Details(fileSize=True),
            matchPattern=["*"],
        )
        try:
            task = ds.browser.SearchDatastoreSubFolders_Task(folder, spec)
            results = self.client.wait_for_task(task)
        except Exception as e:
            raise LookupFailed(f"Search of {folder} for VM '{vm.name}' failed: {e}") from e
        return sum(f.fileSize or 0 for result in results or [] for f in result.file or [])

    def footprint(self, vm) -> int:
        """Total bytes used by ``vm`` across all of its folders."""
        total = sum(self._directory_size(vm, folder) for folder in vm_directories(vm))
        logger.debug(f"VM '{vm.name}' footprint: {total / 1024 ** 3:.2f} GiB")
        return total
