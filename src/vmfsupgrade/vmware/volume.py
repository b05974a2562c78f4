"""VMFS volume lifecycle: unmount, delete, create and extend."""

from __future__ import annotations

from pyVmomi import vim

from vmfsupgrade.errors import VolumeOperationError
from vmfsupgrade.utils.logging import get_logger

logger = get_logger(__name__)


class VolumeLifecycle:
    """Unmount, delete and recreate a VMFS datastore.

    Host-level primitives are issued through each host's storage system and
    datastore system managers.
    """

    def __init__(self, client, inventory):
        self.client = client
        self.inventory = inventory

    def unmount(self, ds) -> None:
        """Unmount ``ds`` from every host that still has it mounted."""
        uuid = self.inventory.vmfs_uuid(ds)
        for host, mounted in self.inventory.host_mounts(ds):
            if not mounted:
                logger.info(f"Datastore {ds.name} already unmounted from {host.name}, skipping")
                continue
            logger.info(f"Unmounting datastore {ds.name} from {host.name}")
            try:
                host.configManager.storageSystem.UnmountVmfsVolume(vmfsUuid=uuid)
            except vim.fault.VimFault as e:
                raise VolumeOperationError(f"Unmount of {ds.name} from {host.name} failed: {e.msg}") from e

    def delete(self, ds) -> None:
        """Remove ``ds``. Deletion is volume-wide, so it is issued on one host only."""
        mounts = self.inventory.host_mounts(ds)
        if not mounts:
            raise VolumeOperationError(f"Datastore {ds.name} has no attached host to delete it from")
        host = mounts[0][0]
        logger.info(f"Deleting datastore {ds.name} via host {host.name}")
        try:
            host.configManager.datastoreSystem.RemoveDatastore(ds)
        except vim.fault.VimFault as e:
            raise VolumeOperationError(f"Delete of {ds.name} failed: {e.msg}") from e

    @staticmethod
    def _device_path(ds_system, lun: str, datastore=None) -> str:
        candidates = ds_system.QueryAvailableDisksForVmfs(datastore=datastore) or []
        for disk in candidates:
            if disk.canonicalName == lun:
                return disk.devicePath
        raise VolumeOperationError(f"LUN {lun} is not available for VMFS on this host")

    def create(self, name: str, luns: list[str], hosts: list, version: int):
        """Create VMFS ``version`` named ``name`` on ``luns`` and check every host sees it.

        The head extent is formatted from the first host; any further LUN is
        added as an extent unless the new volume already spans it.
        """
        if not luns:
            raise VolumeOperationError(f"No LUNs recorded for datastore {name}")
        if not hosts:
            raise VolumeOperationError(f"No hosts recorded for datastore {name}")

        head_host = hosts[0]
        ds_system = head_host.configManager.datastoreSystem

        logger.info(f"Creating VMFS{version} datastore {name} on {luns[0]} via {head_host.name}")
        try:
            device = self._device_path(ds_system, luns[0])
            options = ds_system.QueryVmfsDatastoreCreateOptions(devicePath=device, vmfsMajorVersion=version)
            if not options:
                raise VolumeOperationError(f"No VMFS{version} create options for {luns[0]}")
            spec = options[0].spec
            spec.vmfs.volumeName = name
            ds = ds_system.CreateVmfsDatastore(spec)
        except vim.fault.VimFault as e:
            raise VolumeOperationError(f"Create of {name} on {luns[0]} failed: {e.msg}") from e

        for lun in luns[1:]:
            if lun in self.inventory.lun_names(ds):
                continue
            logger.info(f"Expanding datastore {name} onto {lun}")
            try:
                device = self._device_path(ds_system, lun, datastore=ds)
                options = ds_system.QueryVmfsDatastoreExtendOptions(datastore=ds, devicePath=device)
                if not options:
                    raise VolumeOperationError(f"No extend options for {lun}")
                ds = ds_system.ExtendVmfsDatastore(datastore=ds, spec=options[0].spec)
            except vim.fault.VimFault as e:
                raise VolumeOperationError(f"Extend of {name} onto {lun} failed: {e.msg}") from e

        self.verify_visible(name, hosts)
        return ds

    def verify_visible(self, name: str, hosts: list) -> None:
        missing = []
        for host in hosts:
            host.configManager.storageSystem.RescanVmfs()
            if not any(ds.name == name for ds in host.datastore):
                missing.append(host.name)
        if missing:
            raise VolumeOperationError(f"Datastore {name} not visible from: {', '.join(missing)}")
        logger.info(f"Datastore {name} visible from all {len(hosts)} host(s)")
