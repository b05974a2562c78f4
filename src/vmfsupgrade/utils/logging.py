"""Structured logging for vmfs-upgrade.

Module loggers go to a rich console handler. A workflow run additionally
gets a :class:`WorkflowLogger`: an explicit logger value held by the engine
that tags every record with the workflow phase and appends it to the
workflow's log file.
"""

from __future__ import annotations

import logging
from pathlib import Path

from rich.logging import RichHandler

PACKAGE = "vmfsupgrade"

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

FILE_FORMAT = "%(asctime)s [%(levelname)s] [%(phase)s] %(message)s"


class _PhaseDefault(logging.Filter):
    """Fill in ``phase`` for records that did not come through a WorkflowLogger."""

    def __init__(self, current=None):
        super().__init__()
        self.current = current

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "phase"):
            record.phase = self.current() if self.current else "-"
        return True


def get_logger(name: str, fmt: str = "%(message)s") -> logging.Logger:
    """Get a configured logger instance."""
    logger = logging.getLogger(name)

    if not logger.handlers:
        handler = RichHandler(
            show_time=True,
            show_path=False,
            markup=True,
            rich_tracebacks=True,
        )
        handler.setLevel(logging.DEBUG)
        formatter = logging.Formatter(fmt)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    # Levels live on the package logger so set_log_level reaches every module.
    package = logging.getLogger(PACKAGE)
    if package.level == logging.NOTSET:
        package.setLevel(logging.INFO)
    if logger is not package and not name.startswith(f"{PACKAGE}."):
        logger.setLevel(logging.INFO)

    return logger


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG, INFO, WARNING, ERROR)."""
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.getLogger(PACKAGE).setLevel(numeric)


class WorkflowLogger(logging.LoggerAdapter):
    """Leveled, phase-tagged logger for one workflow run.

    ``phase`` travels as a record attribute rather than being formatted into
    the message, so each handler decides how to render it.
    """

    def __init__(self, logger: logging.Logger, phase: str = "init"):
        super().__init__(logger, {"phase": phase})
        self._file_handler: logging.FileHandler | None = None

    @property
    def phase(self) -> str:
        return self.extra["phase"]

    def set_phase(self, phase: str) -> None:
        self.extra = {"phase": phase}

    def process(self, msg, kwargs):
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def success(self, msg, *args, **kwargs) -> None:
        self.log(SUCCESS, msg, *args, **kwargs)

    def attach_file(self, path: Path) -> None:
        """Start appending records to ``path``.

        The handler sits on the package logger, so records from the
        relocation, orphan and volume modules land in the same file.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handler.addFilter(_PhaseDefault(lambda: self.phase))
        handler.setLevel(logging.DEBUG)
        logging.getLogger(PACKAGE).addHandler(handler)
        self._file_handler = handler

    def detach_file(self) -> None:
        """Flush and close the file handler (needed before archiving its directory)."""
        if self._file_handler is None:
            return
        logging.getLogger(PACKAGE).removeHandler(self._file_handler)
        self._file_handler.close()
        self._file_handler = None


def get_workflow_logger(key: str, log_file: Path | None = None) -> WorkflowLogger:
    """Build the WorkflowLogger for the workflow identified by ``key``."""
    base = get_logger(f"vmfsupgrade.workflow.{key}", fmt="[dim]%(phase)s[/dim] %(message)s")
    wf = WorkflowLogger(base)
    if log_file is not None:
        wf.attach_file(log_file)
    return wf
