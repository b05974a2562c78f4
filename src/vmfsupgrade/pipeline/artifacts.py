"""Typed snapshots of pre-migration state, one model per captured property.

Every artifact records the "before" value of something a stage is about to
change, so resume and rollback never have to re-derive it from a system
that has already been modified. Artifacts are addressed by the stage that
captures them and stored as ``NN-<kind>.json`` in the workflow directory.
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import ClassVar, Optional, Type, TypeVar

from pydantic import BaseModel, Field

from vmfsupgrade.errors import ArtifactMissingError
from vmfsupgrade.utils.logging import get_logger
from vmfsupgrade.vmware.inventory import TemplateRecord
from vmfsupgrade.vmware.tagging import TagAssignment

logger = get_logger(__name__)


class Artifact(BaseModel):
    stage: ClassVar[int]
    kind: ClassVar[str]

    @classmethod
    def filename(cls) -> str:
        return f"{cls.stage:02d}-{cls.kind}.json"


class WorkflowIdentity(Artifact):
    """The source datastore as it was when the workflow started."""
    stage: ClassVar[int] = 0
    kind: ClassVar[str] = "identity"

    server: str
    datastore: str
    temp_datastore: str
    moref: str = ""
    vmfs_uuid: str = ""
    capacity_bytes: int = 0
    vmfs_major_version: Optional[int] = None
    datacenter: str = ""
    started_at: datetime = Field(default_factory=datetime.now)


class RollbackProgress(Artifact):
    """Which reversal steps a rollback started at ``from_checkpoint`` has finished."""
    stage: ClassVar[int] = 0
    kind: ClassVar[str] = "rollback"

    from_checkpoint: int
    reverted: list[int] = Field(default_factory=list)


class PrecheckMarker(Artifact):
    stage: ClassVar[int] = 5
    kind: ClassVar[str] = "precheck"

    completed_at: datetime = Field(default_factory=datetime.now)


class DrsSnapshot(Artifact):
    """Cluster name -> DRS default VM behavior before it was forced to manual."""
    stage: ClassVar[int] = 6
    kind: ClassVar[str] = "drs"

    clusters: dict[str, str] = Field(default_factory=dict)


class IoControlSnapshot(Artifact):
    stage: ClassVar[int] = 7
    kind: ClassVar[str] = "iocontrol"

    source_enabled: bool
    temp_enabled: bool


class SdrsSnapshot(Artifact):
    """Datastore cluster membership and load-balancing settings; pod is None outside a cluster."""
    stage: ClassVar[int] = 8
    kind: ClassVar[str] = "sdrs"

    pod: Optional[str] = None
    default_vm_behavior: str = ""
    io_load_balance_enabled: bool = False


class TagSnapshot(Artifact):
    stage: ClassVar[int] = 10
    kind: ClassVar[str] = "tags"

    tags: list[TagAssignment] = Field(default_factory=list)


class TemplateEntry(BaseModel):
    name: str
    host: str = ""


class TemplateSnapshot(Artifact):
    """Template vmx path -> name and registering host."""
    stage: ClassVar[int] = 11
    kind: ClassVar[str] = "templates"

    templates: dict[str, TemplateEntry] = Field(default_factory=dict)

    @classmethod
    def from_records(cls, records: list[TemplateRecord]) -> "TemplateSnapshot":
        return cls(templates={r.path: TemplateEntry(name=r.name, host=r.host) for r in records})

    def records(self) -> list[TemplateRecord]:
        return [TemplateRecord(path=p, name=e.name, host=e.host) for p, e in self.templates.items()]


class HostLunSnapshot(Artifact):
    stage: ClassVar[int] = 12
    kind: ClassVar[str] = "hostlun"

    hosts: list[str]
    luns: list[str]


A = TypeVar("A", bound=Artifact)


class ArtifactStore:
    """Reads and writes artifacts in one workflow directory."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def _path(self, cls: Type[Artifact]) -> Path:
        return self.directory / cls.filename()

    def exists(self, cls: Type[Artifact]) -> bool:
        return self._path(cls).exists()

    def save(self, artifact: Artifact, overwrite: bool = False) -> bool:
        """Write ``artifact`` unless one of its kind is already stored.

        Returns True when written. A replayed stage must not replace the
        original "before" state with an already-modified one, hence the
        default of keeping the first copy.
        """
        path = self._path(type(artifact))
        if path.exists() and not overwrite:
            logger.debug(f"Artifact {path.name} already captured, keeping original")
            return False
        self.directory.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(artifact.model_dump_json(indent=2))
        tmp.replace(path)
        return True

    def load(self, cls: Type[A]) -> A:
        """Load an artifact.

        Raises:
            ArtifactMissingError: If it was never written or cannot be parsed
        """
        path = self._path(cls)
        if not path.exists():
            raise ArtifactMissingError(cls.stage, cls.kind)
        try:
            return cls.model_validate(json.loads(path.read_text()))
        except ValueError as e:
            logger.error(f"Artifact {path.name} is unreadable: {e}")
            raise ArtifactMissingError(cls.stage, cls.kind) from e

    def present(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.name for p in self.directory.glob("[0-9][0-9]-*.json"))

    def clear(self) -> None:
        """Remove every stored artifact, e.g. leftovers of a run that never wrote a checkpoint."""
        for name in self.present():
            (self.directory / name).unlink()
