"""Copy of data that no registered VM or template owns.

After every VM has been moved off a datastore whatever is left on it
(ISOs, unregistered VM folders, template folders once their templates are
unregistered) must travel with the datastore. The copier mounts both
datastores as drive roots and copies the source root item by item.
"""

from __future__ import annotations

from vmfsupgrade.utils.logging import get_logger
from vmfsupgrade.vmware.footprint import vm_directories
from vmfsupgrade.vmware.inventory import is_system_entry

logger = get_logger(__name__)

SWAP_PATTERNS = ["*.vswp"]
SNAPSHOT_PATTERNS = ["*-delta.vmdk", "*-sesparse.vmdk"]
BLOCKER_PATTERNS = SWAP_PATTERNS + SNAPSHOT_PATTERNS


class DatastoreDrive:
    """A datastore mounted as an addressable ``[name]`` root for file operations."""

    def __init__(self, inventory, name: str):
        self.inventory = inventory
        self.name = name
        self.datastore = None
        self.datacenter = None

    @property
    def root(self) -> str:
        return f"[{self.name}]"

    def path(self, item: str) -> str:
        return f"{self.root} {item}"

    def items(self) -> list[str]:
        return self.inventory.root_items(self.datastore)

    def __enter__(self) -> "DatastoreDrive":
        self.datastore = self.inventory.get_datastore(self.name)
        self.datacenter = self.inventory.datacenter_of(self.datastore)
        logger.debug(f"Mounted drive {self.root}")
        return self

    def __exit__(self, *exc) -> None:
        self.datastore = None
        self.datacenter = None
        logger.debug(f"Unmounted drive {self.root}")


class OrphanCopier:
    """Discovers and bulk-copies orphaned files between two datastores."""

    def __init__(self, client, inventory):
        self.client = client
        self.inventory = inventory

    def find_orphans(self, ds) -> list[str]:
        """Files on ``ds`` outside every registered VM and template folder."""
        owned = set()
        for vm in self.inventory.vms_on(ds) + self.inventory.templates_on(ds):
            owned.update(vm_directories(vm))
        orphans = []
        for path in self.inventory.search_files(ds, ["*"]):
            folder, _, leaf = path.rpartition("/")
            top = path[path.index("]") + 1:].strip().split("/", 1)[0]
            if is_system_entry(top) or is_system_entry(leaf):
                continue
            if any(folder == d or folder.startswith(d + "/") for d in owned):
                continue
            orphans.append(path)
        return orphans

    def find_blockers(self, ds, patterns: list[str] | None = None) -> list[str]:
        """Swap and snapshot-delta files, which can neither be relocated nor copied."""
        return self.inventory.search_files(ds, patterns or BLOCKER_PATTERNS)

    def copy(self, source_name: str, dest_name: str) -> bool:
        """Copy every item at the root of ``source_name`` into ``dest_name``.

        Both drives are unmounted whether or not the copy succeeds; a failure
        is logged and reported as False.
        """
        file_manager = self.client.content.fileManager
        try:
            with DatastoreDrive(self.inventory, source_name) as src, \
                    DatastoreDrive(self.inventory, dest_name) as dst:
                items = src.items()
                logger.info(f"Copying {len(items)} item(s) from {src.root} to {dst.root}")
                for item in items:
                    logger.info(f"  {src.path(item)} → {dst.path(item)}")
                    task = file_manager.CopyDatastoreFile_Task(
                        sourceName=src.path(item),
                        sourceDatacenter=src.datacenter,
                        destinationName=dst.path(item),
                        destinationDatacenter=dst.datacenter,
                        force=True,
                    )
                    self.client.wait_for_task(task)
        except Exception as e:
            logger.error(f"Copy {source_name} → {dest_name} failed: {type(e).__name__}: {e}")
            return False
        return True
