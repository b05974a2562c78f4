"""Workflow state persistence for resume/rollback support.

Each workflow, keyed by (vCenter server, source datastore), owns a
directory under the work dir::

    {work_dir}/{server}_{datastore}/
        checkpoint          last completed stage, plain integer
        .lock               advisory lock held for the duration of a run
        upgrade.log         append-only workflow log
        NN-<kind>.json      stage artifacts (see artifacts.py)

On terminal completion or finished rollback the directory is archived as
``{work_dir}/archive/{key}-{timestamp}.tar.gz`` and removed.
"""

from __future__ import annotations

import fcntl
import os
import re
import shutil
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

from vmfsupgrade.errors import WorkflowLockedError
from vmfsupgrade.utils.logging import get_logger

logger = get_logger(__name__)

MAX_CHECKPOINT = 21
CHECKPOINT_FILE = "checkpoint"
LOCK_FILE = ".lock"
LOG_FILE = "upgrade.log"


def workflow_key(server: str, datastore: str) -> str:
    """Filesystem-safe key for a (server, datastore) pair."""
    return re.sub(r"[^A-Za-z0-9._-]", "_", f"{server}_{datastore}")


class WorkflowStateStore:
    """Checkpoint file, lock and lifecycle of one workflow directory."""

    def __init__(self, work_dir: Path | str, server: str, datastore: str):
        self.work_dir = Path(work_dir)
        self.server = server
        self.datastore = datastore
        self.key = workflow_key(server, datastore)
        self.path = self.work_dir / self.key

    @property
    def checkpoint_path(self) -> Path:
        return self.path / CHECKPOINT_FILE

    @property
    def log_path(self) -> Path:
        return self.path / LOG_FILE

    def exists(self) -> bool:
        return self.path.is_dir()

    def ensure(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)

    # ─── Checkpoint ──────────────────────────────────────────────────

    def has_checkpoint(self) -> bool:
        return self.checkpoint_path.exists()

    def read_checkpoint(self) -> Optional[int]:
        """Stored checkpoint, or None when the file is missing or corrupt."""
        if not self.checkpoint_path.exists():
            return None
        raw = self.checkpoint_path.read_text().strip()
        try:
            value = int(raw)
        except ValueError:
            logger.error(f"Checkpoint file {self.checkpoint_path} is corrupt: {raw[:40]!r}")
            return None
        if not 0 <= value <= MAX_CHECKPOINT:
            logger.error(f"Checkpoint file {self.checkpoint_path} is out of range: {value}")
            return None
        return value

    def write_checkpoint(self, value: int) -> None:
        """Persist ``value``. The rename makes the write all-or-nothing."""
        if not 0 <= value <= MAX_CHECKPOINT:
            raise ValueError(f"checkpoint {value} outside 0..{MAX_CHECKPOINT}")
        self.ensure()
        tmp = self.checkpoint_path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            f.write(f"{value}\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.checkpoint_path)

    def delete_checkpoint(self) -> None:
        if self.checkpoint_path.exists():
            self.checkpoint_path.unlink()

    # ─── Mutual exclusion ────────────────────────────────────────────

    @contextmanager
    def lock(self):
        """Hold an exclusive advisory lock on the workflow for the enclosed block.

        Raises:
            WorkflowLockedError: If another process already holds it
        """
        self.ensure()
        lockfile = open(self.path / LOCK_FILE, "w")
        try:
            fcntl.lockf(lockfile, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            lockfile.close()
            raise WorkflowLockedError(
                f"Workflow {self.key} is already running in another process"
            ) from e
        try:
            yield
        finally:
            if not lockfile.closed:
                fcntl.lockf(lockfile, fcntl.LOCK_UN)
                lockfile.close()

    # ─── Terminal cleanup ────────────────────────────────────────────

    def archive(self) -> Path:
        """Compress the workflow directory into the archive folder and remove it."""
        archive_dir = self.work_dir / "archive"
        archive_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        base = archive_dir / f"{self.key}-{stamp}"
        archive = shutil.make_archive(str(base), "gztar", root_dir=self.work_dir, base_dir=self.key)
        self.delete_checkpoint()
        shutil.rmtree(self.path, ignore_errors=True)
        logger.info(f"Workflow {self.key} archived to {archive}")
        return Path(archive)


def list_workflows(work_dir: Path | str) -> list[str]:
    """Keys of every workflow directory under ``work_dir``."""
    root = Path(work_dir)
    if not root.is_dir():
        return []
    return sorted(p.name for p in root.iterdir() if p.is_dir() and p.name != "archive")
