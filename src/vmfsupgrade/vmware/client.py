"""VMware vCenter client connection, object resolution and task tracking."""

from __future__ import annotations

import atexit
import ssl
import time
from typing import Optional

from pyVim.connect import Disconnect, SmartConnect
from pyVmomi import vim

from vmfsupgrade.errors import LookupFailed, TaskFailedError
from vmfsupgrade.utils.logging import get_logger

logger = get_logger(__name__)

TASK_QUEUED = vim.TaskInfo.State.queued
TASK_RUNNING = vim.TaskInfo.State.running
TASK_SUCCESS = vim.TaskInfo.State.success
TASK_ERROR = vim.TaskInfo.State.error


def task_error_message(task) -> str:
    """Best-effort message for a task in the error state."""
    error = getattr(task.info, "error", None)
    if error is None:
        return "unknown error"
    return getattr(error, "msg", None) or str(error)


class VSphereClient:
    """Manages the connection to a vCenter instance.

    Uses pyvmomi to connect via the vSphere API. Besides the session it
    offers the two primitives every other module builds on: resolving
    managed objects by name and waiting on tasks.
    """

    def __init__(self):
        self._si: Optional[vim.ServiceInstance] = None
        self._content: Optional[vim.ServiceInstanceContent] = None
        self._host: str = ""

    @property
    def host(self) -> str:
        return self._host

    @property
    def service_instance(self) -> vim.ServiceInstance:
        if self._si is None:
            raise ConnectionError("Not connected to vCenter. Call connect() first.")
        return self._si

    @property
    def content(self) -> vim.ServiceInstanceContent:
        if self._content is None:
            raise ConnectionError("Not connected to vCenter. Call connect() first.")
        return self._content

    def connect(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 443,
        insecure: bool = False,
    ) -> vim.ServiceInstance:
        """Connect to vCenter.

        A single attempt: re-running the workflow is the retry mechanism.

        Raises:
            ConnectionError: If the login fails
        """
        self._host = host
        ssl_context = None
        if insecure:
            ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE

        logger.info(f"Connecting to vCenter {host}")
        try:
            self._si = SmartConnect(
                host=host,
                user=username,
                pwd=password,
                port=port,
                sslContext=ssl_context,
            )
        except Exception as e:
            raise ConnectionError(f"Failed to connect to vCenter {host}: {e}") from e

        self._content = self._si.RetrieveContent()
        atexit.register(Disconnect, self._si)
        logger.info(f"Connected to vCenter: {host} "
                    f"(API version: {self._content.about.apiVersion}, "
                    f"Build: {self._content.about.build})")
        return self._si

    def disconnect(self):
        """Gracefully disconnect from vCenter."""
        if self._si:
            try:
                Disconnect(self._si)
                logger.info(f"Disconnected from vCenter: {self._host}")
            except Exception as e:
                logger.warning(f"Error during disconnect: {e}")
            finally:
                self._si = None
                self._content = None

    @property
    def version(self) -> str:
        """vCenter product version, e.g. ``7.0.3``."""
        return self.content.about.version

    def get_container_view(self, obj_type: list, recursive: bool = True):
        """Create a container view for efficient object retrieval."""
        return self.content.viewManager.CreateContainerView(
            self.content.rootFolder, obj_type, recursive
        )

    def list_objects(self, obj_type) -> list:
        """All managed objects of ``obj_type`` in the inventory."""
        view = self.get_container_view([obj_type])
        try:
            return list(view.view)
        finally:
            view.Destroy()

    def find_by_name(self, obj_type, name: str):
        """Resolve a managed object by name, or None."""
        for obj in self.list_objects(obj_type):
            if obj.name == name:
                return obj
        return None

    def get_by_name(self, obj_type, name: str):
        """Resolve a managed object by name.

        Raises:
            LookupFailed: If no object of that type carries the name
        """
        obj = self.find_by_name(obj_type, name)
        if obj is None:
            raise LookupFailed(f"{obj_type.__name__.split('.')[-1]} '{name}' not found in vCenter")
        return obj

    def task_state(self, task) -> str:
        """Report ``queued``, ``running``, ``success`` or ``error`` for a task."""
        return task.info.state

    def wait_for_task(self, task, timeout: int | None = None, interval: float = 2):
        """Wait for a vSphere task to complete and return its result.

        Args:
            task: vSphere Task object
            timeout: Maximum wait time in seconds (None waits forever)
            interval: Seconds between polls

        Raises:
            TaskFailedError: If the task ends in the error state
            TimeoutError: If the task outlives ``timeout``
        """
        start = time.time()
        while task.info.state in (TASK_RUNNING, TASK_QUEUED):
            if timeout is not None and time.time() - start > timeout:
                raise TimeoutError(f"Task timed out after {timeout}s: {task.info.descriptionId}")
            time.sleep(interval)

        if task.info.state == TASK_ERROR:
            raise TaskFailedError(f"Task failed: {task_error_message(task)}")
        return task.info.result

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.disconnect()
