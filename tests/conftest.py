"""In-memory vCenter fakes shared by the test modules.

The fakes model just enough of a vCenter inventory for the workflow engine
to run all 21 stages: datastores with VMs, templates, root items and tags,
hosts grouped in clusters, and a datastore cluster.
"""

import fnmatch
from datetime import datetime

import pytest

from vmfsupgrade.config import UpgradeSettings
from vmfsupgrade.errors import LookupFailed
from vmfsupgrade.pipeline.orphans import BLOCKER_PATTERNS
from vmfsupgrade.pipeline.relocation import RelocationOutcome, RelocationState
from vmfsupgrade.vmware.inventory import GIB, TemplateRecord, VMFlags
from vmfsupgrade.vmware.tagging import TagAssignment


# ═══════════════════════════════════════════════════════════════════
#  Inventory objects
# ═══════════════════════════════════════════════════════════════════

class FakeCluster:
    def __init__(self, name, behavior="fullyAutomated"):
        self.name = name
        self.behavior = behavior


class FakeHost:
    def __init__(self, name, version="7.0.3", cluster=None):
        self.name = name
        self.version = version
        self.cluster = cluster


class FakePod:
    def __init__(self, name, behavior="automated", io_load_balance=True):
        self.name = name
        self.behavior = behavior
        self.io_load_balance = io_load_balance


class FakeVM:
    def __init__(self, name, template=False, replicated=False, fault_tolerant=False, host="esx-01"):
        self.name = name
        self.template = template
        self.replicated = replicated
        self.fault_tolerant = fault_tolerant
        self.host = host
        self.path = ""


class FakeDatastore:
    def __init__(self, name, version=5, capacity_gib=1000, free_gib=900, hosts=(), luns=("naa.1",),
                 vms=(), items=(), pod=None, sioc=False, tags=(), blockers=()):
        self.name = name
        self._moId = f"datastore-{name}"
        self.version = version
        self.capacity = capacity_gib * GIB
        self.free = free_gib
        self.hosts = {h.name: True for h in hosts}
        self.luns = list(luns)
        self.vms = []
        for vm in vms:
            self.add_vm(vm)
        self.items = list(items)
        self.pod = pod
        self.sioc = sioc
        self.tags = list(tags)
        self.blockers = list(blockers)
        self.fcds = []

    def add_vm(self, vm):
        vm.path = vm.path or f"[{self.name}] {vm.name}/{vm.name}.{'vmtx' if vm.template else 'vmx'}"
        self.vms.append(vm)


class FakeInventory:
    """DatastoreInventory over plain Python objects."""

    def __init__(self, datastores=(), hosts=(), pods=(), vcenter_version="7.0.3"):
        self.datastores = {ds.name: ds for ds in datastores}
        self.hosts = {h.name: h for h in hosts}
        self.pods = {p.name: p for p in pods}
        self._vcenter_version = vcenter_version
        self.calls = []

    # resolution
    def find_datastore(self, name):
        return self.datastores.get(name)

    def get_datastore(self, name):
        ds = self.find_datastore(name)
        if ds is None:
            raise LookupFailed(f"Datastore '{name}' not found in vCenter")
        return ds

    def get_vm(self, name):
        for ds in self.datastores.values():
            for vm in ds.vms:
                if vm.name == name:
                    return vm
        raise LookupFailed(f"VirtualMachine '{name}' not found in vCenter")

    def get_host(self, name):
        if name not in self.hosts:
            raise LookupFailed(f"HostSystem '{name}' not found in vCenter")
        return self.hosts[name]

    def get_pod(self, name):
        if name not in self.pods:
            raise LookupFailed(f"StoragePod '{name}' not found in vCenter")
        return self.pods[name]

    def get_cluster(self, name):
        for host in self.hosts.values():
            if host.cluster is not None and host.cluster.name == name:
                return host.cluster
        raise LookupFailed(f"ClusterComputeResource '{name}' not found in vCenter")

    def datacenter_of(self, obj):
        return type("Datacenter", (), {"name": "DC1"})()

    # datastore properties
    def vmfs_major_version(self, ds):
        return ds.version

    def vmfs_uuid(self, ds):
        return f"uuid-{ds.name}"

    def capacity_bytes(self, ds):
        return ds.capacity

    def free_gib(self, ds):
        return ds.free

    def host_mounts(self, ds):
        return [(self.hosts[name], mounted) for name, mounted in ds.hosts.items()]

    def mounted_hosts(self, ds):
        return [host for host, mounted in self.host_mounts(ds) if mounted]

    def lun_names(self, ds):
        return list(ds.luns)

    def vms_on(self, ds):
        return [vm for vm in ds.vms if not vm.template]

    def vm_names_on(self, ds):
        return [vm.name for vm in self.vms_on(ds)]

    def templates_on(self, ds):
        return [vm for vm in ds.vms if vm.template]

    def root_items(self, ds):
        return list(ds.items)

    def fcds_on(self, ds):
        return list(ds.fcds)

    # hosts and VMs
    def vcenter_version(self):
        return self._vcenter_version

    def host_version(self, host):
        return host.version

    def vm_flags(self, vm):
        return VMFlags(name=vm.name, fault_tolerant=vm.fault_tolerant, replicated=vm.replicated)

    # DRS
    def clusters_of(self, hosts):
        clusters = {}
        for host in hosts:
            if host.cluster is not None:
                clusters.setdefault(host.cluster.name, host.cluster)
        return list(clusters.values())

    def drs_behavior(self, cluster):
        return cluster.behavior

    def set_drs_behavior(self, cluster, behavior):
        self.calls.append(("drs", cluster.name, behavior))
        cluster.behavior = behavior

    # SIOC
    def sioc_enabled(self, ds):
        return ds.sioc

    def set_sioc(self, ds, enabled):
        self.calls.append(("sioc", ds.name, enabled))
        ds.sioc = enabled

    # SDRS
    def pod_of(self, ds):
        return ds.pod

    def sdrs_config(self, pod):
        return pod.behavior, pod.io_load_balance

    def set_sdrs_config(self, pod, behavior, io_load_balance):
        self.calls.append(("sdrs", pod.name, behavior, io_load_balance))
        pod.behavior = behavior
        pod.io_load_balance = io_load_balance

    def move_into_pod(self, pod, ds):
        self.calls.append(("pod", pod.name, ds.name))
        ds.pod = pod

    # templates
    def template_record(self, vm):
        return TemplateRecord(path=vm.path, name=vm.name, host=vm.host)

    def unregister(self, vm):
        for ds in self.datastores.values():
            if vm in ds.vms:
                ds.vms.remove(vm)

    def is_registered(self, path):
        return any(vm.path == path for ds in self.datastores.values() for vm in ds.vms)

    def register_template(self, record, ds):
        self.calls.append(("register", record.name, ds.name))
        vm = FakeVM(record.name, template=True, host=record.host)
        vm.path = record.path
        ds.add_vm(vm)


# ═══════════════════════════════════════════════════════════════════
#  Workflow collaborators
# ═══════════════════════════════════════════════════════════════════

class FakeRelocator:
    """BatchRelocationDriver stand-in that moves VMs between fake datastores."""

    def __init__(self, inventory):
        self.inventory = inventory
        self.calls = []
        self.fail = set()
        self.interrupt_on = None

    def relocate_all(self, vm_names, source_name, dest_name, batch_size):
        self.calls.append((list(vm_names), source_name, dest_name))
        if self.interrupt_on == (source_name, dest_name):
            self.interrupt_on = None
            raise KeyboardInterrupt
        source = self.inventory.get_datastore(source_name)
        dest = self.inventory.get_datastore(dest_name)
        outcomes = []
        for name in vm_names:
            outcome = RelocationOutcome(vm_name=name, task_id=f"task-{name}", start_time=datetime.now())
            if name in self.fail:
                outcomes.append(outcome.finish(RelocationState.ERROR, "disk write failed"))
                return outcomes
            vm = self.inventory.get_vm(name)
            source.vms.remove(vm)
            dest.vms.append(vm)
            outcomes.append(outcome.finish(RelocationState.SUCCESS))
        return outcomes


class FakeCopier:
    def __init__(self, inventory):
        self.inventory = inventory
        self.calls = []
        self.fail = False

    def find_orphans(self, ds):
        return [f"[{ds.name}] {item}" for item in ds.items]

    def find_blockers(self, ds, patterns=None):
        patterns = patterns or BLOCKER_PATTERNS
        return [f for f in ds.blockers if any(fnmatch.fnmatch(f, p) for p in patterns)]

    def copy(self, source_name, dest_name):
        self.calls.append((source_name, dest_name))
        if self.fail:
            return False
        source = self.inventory.get_datastore(source_name)
        dest = self.inventory.get_datastore(dest_name)
        for item in source.items:
            if item not in dest.items:
                dest.items.append(item)
        return True


class FakeVolumes:
    def __init__(self, inventory):
        self.inventory = inventory
        self.calls = []
        self.unmount_error = None

    def unmount(self, ds):
        self.calls.append(("unmount", ds.name))
        if self.unmount_error is not None:
            raise self.unmount_error
        for name in ds.hosts:
            ds.hosts[name] = False

    def delete(self, ds):
        self.calls.append(("delete", ds.name))
        del self.inventory.datastores[ds.name]

    def create(self, name, luns, hosts, version):
        self.calls.append(("create", name, tuple(luns), tuple(h.name for h in hosts), version))
        ds = FakeDatastore(name, version=version, hosts=hosts, luns=luns)
        self.inventory.datastores[name] = ds
        return ds


class FakeTagging:
    def __init__(self):
        self.attached = []

    def list_attached(self, datastore):
        return list(datastore.tags)

    def attach(self, tag, datastore):
        self.attached.append((tag.tag_id, datastore.name))
        datastore.tags.append(tag)


# ═══════════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════════

class Environment:
    """A source datastore in a pod and a cluster, plus an empty temporary datastore."""

    def __init__(self, work_dir):
        self.cluster = FakeCluster("cl-prod", "fullyAutomated")
        self.hosts = [FakeHost("esx-01", cluster=self.cluster), FakeHost("esx-02", cluster=self.cluster)]
        self.pod = FakePod("pod-gold", "automated", True)
        self.tags = [TagAssignment(tag_id="urn:tag:1", name="gold", category="tier")]
        self.source = FakeDatastore(
            "ds-prod", version=5, capacity_gib=1000, hosts=self.hosts, luns=["naa.600a", "naa.600b"],
            vms=[FakeVM("vm-1"), FakeVM("vm-2"), FakeVM("vm-3"), FakeVM("tpl-linux", template=True)],
            items=["vm-1", "vm-2", "vm-3", "tpl-linux", "iso"], pod=self.pod, sioc=True, tags=self.tags,
        )
        self.temp = FakeDatastore("ds-temp", version=5, capacity_gib=2000, hosts=self.hosts, luns=["naa.700a"])
        self.inventory = FakeInventory([self.source, self.temp], self.hosts, [self.pod])
        self.relocator = FakeRelocator(self.inventory)
        self.copier = FakeCopier(self.inventory)
        self.volumes = FakeVolumes(self.inventory)
        self.tagging = FakeTagging()
        self.settings = UpgradeSettings(work_dir=work_dir, poll_interval_seconds=1)

    def pipeline(self, force=False, confirm=None):
        from vmfsupgrade.pipeline.upgrade import UpgradePipeline
        return UpgradePipeline(
            self.settings, "vc.example.com", "ds-prod", "ds-temp",
            inventory=self.inventory,
            relocator=self.relocator,
            copier=self.copier,
            volumes=self.volumes,
            tagging=self.tagging,
            force=force,
            confirm=confirm,
        )

    @property
    def current_source(self):
        return self.inventory.datastores["ds-prod"]


@pytest.fixture
def env(tmp_path):
    return Environment(tmp_path / "work")
