"""Best-effort quiescing of processes and the service that hold configuration open."""

import sys
import time
from typing import Callable, Optional

import psutil

from pdcsetup.constants import (
    APPLICATION_PROCESS_NAME,
    MANAGER_PROCESS_NAME,
    SERVICE_NAME,
    SERVICE_POLL_INTERVAL_SECONDS,
    SERVICE_STOP_TIMEOUT_SECONDS,
)
from pdcsetup.errors import PreemptionFailure

RUNNING = "running"
STOPPED = "stopped"


class WindowsServiceController:
    """Queries services through psutil and stops them with ``sc``."""

    def __init__(self, run_cmd: Callable, psutil_module=psutil):
        self.run_cmd = run_cmd
        self.psutil = psutil_module

    def status(self, name: str) -> Optional[str]:
        try:
            service = self.psutil.win_service_get(name)
            if service.name() != name:
                return None
            return service.status()
        except self.psutil.NoSuchProcess:
            return None

    def stop(self, name: str):
        self.run_cmd(["sc", "stop", name], check=True, capture_output=True)


class SystemdServiceController:
    """Queries and stops units through ``systemctl``."""

    ACTIVE_STATES = {
        "active": RUNNING,
        "reloading": RUNNING,
        "inactive": STOPPED,
        "failed": STOPPED,
        "deactivating": "stop_pending",
        "activating": "start_pending",
    }

    def __init__(self, run_cmd: Callable):
        self.run_cmd = run_cmd

    def status(self, name: str) -> Optional[str]:
        result = self.run_cmd(
            ["systemctl", "show", "--property=LoadState,ActiveState", f"{name}.service"],
            check=False,
            capture_output=True,
        )
        if result.returncode != 0:
            return None

        properties = {}
        for line in (result.stdout or "").splitlines():
            key, _, value = line.partition("=")
            properties[key.strip()] = value.strip()

        if properties.get("LoadState") in (None, "", "not-found"):
            return None
        active_state = properties.get("ActiveState", "")
        return self.ACTIVE_STATES.get(active_state, active_state)

    def stop(self, name: str):
        self.run_cmd(
            ["systemctl", "stop", "--no-block", f"{name}.service"],
            check=True,
            capture_output=True,
        )


def default_service_controller(run_cmd: Callable):
    if sys.platform == "win32":
        return WindowsServiceController(run_cmd)
    return SystemdServiceController(run_cmd)


class PreemptionService:
    """Stops the manager, the service and stand-alone application instances.

    Every step is attempted regardless of the others and no failure ever
    leaves ``quiesce``; problems become status lines.
    """

    def __init__(
        self,
        reporter,
        logger,
        service_controller,
        psutil_module=psutil,
        manager_process_name: str = MANAGER_PROCESS_NAME,
        application_process_name: str = APPLICATION_PROCESS_NAME,
        service_name: str = SERVICE_NAME,
        stop_timeout: float = SERVICE_STOP_TIMEOUT_SECONDS,
        poll_interval: float = SERVICE_POLL_INTERVAL_SECONDS,
    ):
        self.reporter = reporter
        self.logger = logger
        self.service_controller = service_controller
        self.psutil = psutil_module
        self.manager_process_name = manager_process_name
        self.application_process_name = application_process_name
        self.service_name = service_name
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval

    def quiesce(self) -> bool:
        self._terminate_step(self.manager_process_name, "openPDC Manager")

        restart_required = False
        try:
            restart_required = self.stop_service()
        except Exception as exc:
            self._report_failure(f"Failed to stop the {self.service_name} service: {exc}")

        # Catches stand-alone and debug instances the service stop did not cover.
        self._terminate_step(self.application_process_name, "openPDC")
        return restart_required

    def _terminate_step(self, process_name: str, label: str):
        try:
            self.terminate_processes(process_name, label)
        except Exception as exc:
            self._report_failure(f"Failed to terminate running instances of the {label}: {exc}")

    def _report_failure(self, message: str):
        self.logger.warning(message)
        self.reporter.status(f"{message}\nModifications continuing anyway...")
        self.reporter.status()

    def find_processes(self, process_name: str):
        target = process_name.lower()
        matches = []
        for process in self.psutil.process_iter(attrs=["pid", "name"]):
            name = (process.info.get("name") or "").lower()
            if name.endswith(".exe"):
                name = name[: -len(".exe")]
            if name == target:
                matches.append(process)
        return matches

    def terminate_processes(self, process_name: str, label: str) -> int:
        instances = self.find_processes(process_name)
        if not instances:
            return 0

        self.reporter.status(f"Attempting to stop running instances of the {label}...")
        total = 0
        for process in instances:
            try:
                process.kill()
            except self.psutil.NoSuchProcess:
                continue
            except self.psutil.Error as exc:
                raise PreemptionFailure(f"could not kill process {process.pid}: {exc}") from exc
            total += 1

        if total:
            plural = "s" if total > 1 else ""
            self.reporter.status(f"Stopped {total} {label} instance{plural}.")
        self.reporter.status()
        return total

    def stop_service(self) -> bool:
        status = self.service_controller.status(self.service_name)
        if status is None:
            self.logger.debug("Service %s is not installed.", self.service_name)
            return False
        if status != RUNNING:
            self.logger.debug("Service %s is %s; nothing to stop.", self.service_name, status)
            return False

        self.reporter.status(f"Attempting to stop the {self.service_name} service...")
        self.service_controller.stop(self.service_name)

        stopped = self._wait_for_stopped()
        if stopped:
            self.reporter.status(f"Successfully stopped {self.service_name} service.")
        else:
            self.logger.warning(
                "Service %s did not stop within %.0f seconds.",
                self.service_name,
                self.stop_timeout,
            )
            self.reporter.status(
                f"Failed to stop {self.service_name} service after trying for "
                f"{self.stop_timeout:.0f} seconds.\nModifications continuing anyway..."
            )
        self.reporter.status()
        return stopped

    def _wait_for_stopped(self) -> bool:
        deadline = time.monotonic() + self.stop_timeout
        while True:
            if self.service_controller.status(self.service_name) == STOPPED:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)
