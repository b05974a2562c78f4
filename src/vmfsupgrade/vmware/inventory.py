"""Inventory resolution and property access for datastores, hosts and clusters.

Everything the workflow reads from or writes to vCenter, other than VM
relocation, datastore file copies and VMFS volume primitives, goes through
:class:`DatastoreInventory`. Objects are resolved fresh on every call; the
datastore being upgraded is destroyed and recreated mid-workflow, so a
cached moref would go stale.
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from typing import Optional

from pyVmomi import vim

from vmfsupgrade.errors import LookupFailed
from vmfsupgrade.utils.logging import get_logger
from vmfsupgrade.vmware.client import VSphereClient

logger = get_logger(__name__)

GIB = 1024 ** 3

# VMFS bookkeeping entries at the datastore root; not user data.
SYSTEM_ENTRIES = (".sdd.sf", ".vSphere-HA", ".locker", ".dvsData", ".naa.*", ".fbb.sf",
                  ".fdc.sf", ".pb2.sf", ".pbc.sf", ".sbc.sf", ".vh.sf", ".jbc.sf")


def is_system_entry(name: str) -> bool:
    return any(fnmatch.fnmatch(name, pattern) for pattern in SYSTEM_ENTRIES)


def datastore_of_path(path: str) -> str:
    """``"[ds1] vm/vm.vmx"`` -> ``"ds1"``."""
    if not path.startswith("["):
        return ""
    return path[1:path.index("]")]


def join_path(folder: str, name: str) -> str:
    """``("[ds1] vm/", "vm.vmx")`` -> ``"[ds1] vm/vm.vmx"``; root folders join with a space."""
    folder = folder.rstrip("/")
    if folder.endswith("]"):
        return f"{folder} {name}"
    return f"{folder}/{name}"


@dataclass
class VMFlags:
    """Configuration traits of a VM that block an in-place datastore upgrade."""
    name: str
    fault_tolerant: bool = False
    vadp_locked: bool = False
    shared_bus: bool = False
    replicated: bool = False


@dataclass
class TemplateRecord:
    """Where a template lives and which host it was registered on."""
    path: str
    name: str
    host: str


class DatastoreInventory:
    """Resolves and reads/writes the vCenter objects the upgrade touches."""

    def __init__(self, client: VSphereClient):
        self.client = client

    # ─── Resolution ──────────────────────────────────────────────────

    def find_datastore(self, name: str) -> Optional[vim.Datastore]:
        return self.client.find_by_name(vim.Datastore, name)

    def get_datastore(self, name: str) -> vim.Datastore:
        return self.client.get_by_name(vim.Datastore, name)

    def get_vm(self, name: str) -> vim.VirtualMachine:
        return self.client.get_by_name(vim.VirtualMachine, name)

    def get_host(self, name: str) -> vim.HostSystem:
        return self.client.get_by_name(vim.HostSystem, name)

    def get_pod(self, name: str) -> vim.StoragePod:
        return self.client.get_by_name(vim.StoragePod, name)

    def datacenter_of(self, obj) -> vim.Datacenter:
        parent = obj.parent
        while parent is not None:
            if isinstance(parent, vim.Datacenter):
                return parent
            parent = getattr(parent, "parent", None)
        raise LookupFailed(f"No datacenter above '{obj.name}'")

    # ─── Datastore properties ────────────────────────────────────────

    def vmfs_major_version(self, ds: vim.Datastore) -> Optional[int]:
        """VMFS major version, or None for NFS/vSAN/vVol datastores."""
        if ds.summary.type != "VMFS":
            return None
        return ds.info.vmfs.majorVersion

    def vmfs_uuid(self, ds: vim.Datastore) -> str:
        return ds.info.vmfs.uuid

    def capacity_bytes(self, ds: vim.Datastore) -> int:
        return ds.summary.capacity

    def free_gib(self, ds: vim.Datastore) -> float:
        ds.RefreshDatastore()
        return ds.summary.freeSpace / GIB

    def host_mounts(self, ds: vim.Datastore) -> list[tuple[vim.HostSystem, bool]]:
        """(host, mounted) for every host attached to the datastore."""
        return [(m.key, bool(m.mountInfo.mounted)) for m in ds.host]

    def mounted_hosts(self, ds: vim.Datastore) -> list[vim.HostSystem]:
        return [host for host, mounted in self.host_mounts(ds) if mounted]

    def lun_names(self, ds: vim.Datastore) -> list[str]:
        """Canonical names (naa.*) of the datastore's extents, head extent first."""
        return [extent.diskName for extent in ds.info.vmfs.extent]

    def vms_on(self, ds: vim.Datastore) -> list[vim.VirtualMachine]:
        return [vm for vm in ds.vm if not (vm.config and vm.config.template)]

    def vm_names_on(self, ds: vim.Datastore) -> list[str]:
        return [vm.name for vm in self.vms_on(ds)]

    def templates_on(self, ds: vim.Datastore) -> list[vim.VirtualMachine]:
        return [vm for vm in ds.vm if vm.config and vm.config.template]

    def root_items(self, ds: vim.Datastore) -> list[str]:
        """Names of the top-level files and folders of a datastore, system entries excluded."""
        spec = vim.host.DatastoreBrowser.SearchSpec(matchPattern=["*"])
        result = self.client.wait_for_task(ds.browser.SearchDatastore_Task(f"[{ds.name}]", spec))
        return [f.path for f in (result.file or []) if not is_system_entry(f.path)]

    def search_files(self, ds: vim.Datastore, patterns: list[str]) -> list[str]:
        """Datastore paths of every file below the root matching any of ``patterns``."""
        spec = vim.host.DatastoreBrowser.SearchSpec(matchPattern=list(patterns))
        task = ds.browser.SearchDatastoreSubFolders_Task(f"[{ds.name}]", spec)
        try:
            results = self.client.wait_for_task(task)
        except Exception as e:
            raise LookupFailed(f"Search of datastore '{ds.name}' failed: {e}") from e
        found = []
        for result in results or []:
            for f in result.file or []:
                found.append(join_path(result.folderPath, f.path))
        return found

    def fcds_on(self, ds: vim.Datastore) -> list[str]:
        """IDs of First Class Disks stored on the datastore."""
        manager = self.client.content.vStorageObjectManager
        return [oid.id for oid in manager.ListVStorageObject(ds) or []]

    # ─── Hosts and VMs ───────────────────────────────────────────────

    def vcenter_version(self) -> str:
        return self.client.version

    def host_version(self, host: vim.HostSystem) -> str:
        return host.config.product.version

    def vm_flags(self, vm: vim.VirtualMachine) -> VMFlags:
        config = vm.config
        flags = VMFlags(name=vm.name)
        flags.fault_tolerant = str(vm.runtime.faultToleranceState) not in ("notConfigured", "None")
        flags.vadp_locked = any(
            getattr(m, "method", m) == "RelocateVM_Task" for m in (vm.disabledMethod or [])
        )
        if config and config.hardware:
            flags.shared_bus = any(
                isinstance(dev, vim.vm.device.VirtualSCSIController) and dev.sharedBus != "noSharing"
                for dev in config.hardware.device
            )
        if config and config.extraConfig:
            flags.replicated = any(opt.key.startswith("hbr_filter.") for opt in config.extraConfig)
        return flags

    # ─── DRS ─────────────────────────────────────────────────────────

    def clusters_of(self, hosts: list[vim.HostSystem]) -> list[vim.ClusterComputeResource]:
        clusters: dict[str, vim.ClusterComputeResource] = {}
        for host in hosts:
            parent = host.parent
            if isinstance(parent, vim.ClusterComputeResource):
                clusters.setdefault(parent.name, parent)
        return list(clusters.values())

    def get_cluster(self, name: str) -> vim.ClusterComputeResource:
        return self.client.get_by_name(vim.ClusterComputeResource, name)

    def drs_behavior(self, cluster: vim.ClusterComputeResource) -> str:
        return str(cluster.configurationEx.drsConfig.defaultVmBehavior)

    def set_drs_behavior(self, cluster: vim.ClusterComputeResource, behavior: str) -> None:
        spec = vim.cluster.ConfigSpecEx(drsConfig=vim.cluster.DrsConfigInfo(defaultVmBehavior=behavior))
        self.client.wait_for_task(cluster.ReconfigureComputeResource_Task(spec, True))

    # ─── Storage I/O control ─────────────────────────────────────────

    def sioc_enabled(self, ds: vim.Datastore) -> bool:
        return bool(ds.iormConfiguration and ds.iormConfiguration.enabled)

    def set_sioc(self, ds: vim.Datastore, enabled: bool) -> None:
        spec = vim.StorageResourceManager.IORMConfigSpec(enabled=enabled)
        manager = self.client.content.storageResourceManager
        self.client.wait_for_task(manager.ConfigureDatastoreIORM_Task(ds, spec))

    # ─── Storage DRS ─────────────────────────────────────────────────

    def pod_of(self, ds: vim.Datastore) -> Optional[vim.StoragePod]:
        return ds.parent if isinstance(ds.parent, vim.StoragePod) else None

    def sdrs_config(self, pod: vim.StoragePod) -> tuple[str, bool]:
        """(defaultVmBehavior, ioLoadBalanceEnabled) of a datastore cluster."""
        config = pod.podStorageDrsEntry.storageDrsConfig.podConfig
        return str(config.defaultVmBehavior), bool(config.ioLoadBalanceEnabled)

    def set_sdrs_config(self, pod: vim.StoragePod, behavior: str, io_load_balance: bool) -> None:
        spec = vim.storageDrs.ConfigSpec(
            podConfigSpec=vim.storageDrs.PodConfigSpec(
                defaultVmBehavior=behavior,
                ioLoadBalanceEnabled=io_load_balance,
            )
        )
        manager = self.client.content.storageResourceManager
        self.client.wait_for_task(manager.ConfigureStorageDrsForPod_Task(pod, spec, True))

    def move_into_pod(self, pod: vim.StoragePod, ds: vim.Datastore) -> None:
        self.client.wait_for_task(pod.MoveIntoFolder_Task([ds]))

    # ─── Templates ───────────────────────────────────────────────────

    def template_record(self, vm: vim.VirtualMachine) -> TemplateRecord:
        host = vm.runtime.host
        return TemplateRecord(
            path=vm.config.files.vmPathName,
            name=vm.name,
            host=host.name if host else "",
        )

    def unregister(self, vm: vim.VirtualMachine) -> None:
        vm.UnregisterVM()

    def is_registered(self, path: str) -> bool:
        ds_name = datastore_of_path(path)
        ds = self.find_datastore(ds_name)
        if ds is None:
            return False
        return any(vm.config and vm.config.files.vmPathName == path for vm in ds.vm)

    def register_template(self, record: TemplateRecord, ds: vim.Datastore) -> None:
        dc = self.datacenter_of(ds)
        host = self.get_host(record.host) if record.host else None
        task = dc.vmFolder.RegisterVM_Task(path=record.path, name=record.name,
                                           asTemplate=True, pool=None, host=host)
        self.client.wait_for_task(task)
