"""Exception hierarchy for vmfs-upgrade.

Stage code raises these; the stage runner in ``pipeline.upgrade`` maps them
onto stage outcomes so that no exception ever escapes a workflow run.
"""

from __future__ import annotations


class UpgradeError(Exception):
    """Base class for all vmfs-upgrade errors."""

    #: Short category name shown in operator-facing log lines.
    category = "UpgradeError"


class LookupFailed(UpgradeError):
    """An inventory object or datastore search could not be resolved."""

    category = "LookupFailed"


class PreconditionError(UpgradeError):
    """The environment is not in a state the workflow can start from.

    Nothing has been mutated; the operator fixes the condition and re-runs.
    """

    category = "PreconditionFailed"

    def __init__(self, reason: str, hint: str = ""):
        super().__init__(reason)
        self.reason = reason
        self.hint = hint


class DataIntegrityError(UpgradeError):
    """Files that cannot be migrated or copied (swap, snapshot delta) were found."""

    category = "DataIntegrity"

    def __init__(self, message: str, files: list[str] | None = None):
        super().__init__(message)
        self.files = list(files or [])


class IrrecoverableStateError(UpgradeError):
    """Workflow state is lost while the volume was already modified."""

    category = "IrrecoverableState"


class ArtifactMissingError(UpgradeError):
    """A stage artifact expected on disk for the current checkpoint is absent."""

    category = "ArtifactMissing"

    def __init__(self, stage: int, kind: str):
        super().__init__(f"Artifact '{kind}' for stage {stage} is missing from the workflow directory")
        self.stage = stage
        self.kind = kind


class InvalidModeError(UpgradeError):
    """Mutually exclusive run modes were requested together."""

    category = "InvalidMode"


class WorkflowLockedError(UpgradeError):
    """Another process holds the workflow lock for this (server, datastore)."""

    category = "WorkflowLocked"


class VolumeOperationError(UpgradeError):
    """Unmount, delete, create or extend of a VMFS volume failed."""

    category = "VolumeOperation"


class TaskFailedError(UpgradeError):
    """A vSphere task finished in the error state."""

    category = "TaskFailed"
