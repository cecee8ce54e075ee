import logging
import subprocess
import time
from typing import Callable, Protocol

import psutil

from timekeeper.config import get_settings
from timekeeper.models.service import RunState, ServiceHealth, StartupMode

logger = logging.getLogger(__name__)

# psutil status/start_type strings -> domain enums
_RUN_STATES = {
    "running": RunState.RUNNING,
    "stopped": RunState.STOPPED,
    "start_pending": RunState.START_PENDING,
    "stop_pending": RunState.STOP_PENDING,
}
_STARTUP_MODES = {
    "automatic": StartupMode.AUTOMATIC,
    "manual": StartupMode.MANUAL,
    "disabled": StartupMode.DISABLED,
}
# sc.exe "start=" argument per startup mode
_SC_START_TYPES = {
    StartupMode.AUTOMATIC: "auto",
    StartupMode.MANUAL: "demand",
    StartupMode.DISABLED: "disabled",
}

DEFAULT_WAIT_INTERVAL_SECONDS = 1.0


class ServiceControlError(RuntimeError):
    """Raised when the service manager rejects a request or a wait times out."""


class ServiceManager(Protocol):
    """Operating system service manager, scoped to one named service."""

    name: str

    def exists(self) -> bool: ...

    def query(self) -> ServiceHealth: ...

    def set_startup_mode(self, mode: StartupMode) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def wait_for_state(
        self,
        state: RunState,
        timeout: float,
        interval: float = DEFAULT_WAIT_INTERVAL_SECONDS,
    ) -> None: ...


def wait_for_state(
    query: Callable[[], ServiceHealth],
    state: RunState,
    timeout: float,
    interval: float = DEFAULT_WAIT_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> None:
    """
    Poll `query` every `interval` seconds until the service reaches `state`.

    Raises ServiceControlError if the state is not reached within `timeout`.
    """
    deadline = clock() + timeout
    while True:
        health = query()
        if health.run_state == state:
            return
        if clock() >= deadline:
            raise ServiceControlError(
                f"service {health.name} did not reach {state.value} within "
                f"{timeout:g}s (last state: {health.run_state.value})"
            )
        sleep(interval)


class WindowsServiceManager:
    """
    ServiceManager for the Windows service control manager.

    State is read through psutil; changes go through sc.exe.
    """

    def __init__(self, name: str = "W32Time", sc_path: str = "sc") -> None:
        self.name = name
        self.sc_path = sc_path

    def _service(self):
        if not psutil.WINDOWS:
            raise ServiceControlError("the Windows service manager is not available on this host")
        return psutil.win_service_get(self.name)

    def exists(self) -> bool:
        try:
            self._service()
        except psutil.NoSuchProcess:
            return False
        return True

    def query(self) -> ServiceHealth:
        try:
            service = self._service()
            status = service.status()
            start_type = service.start_type()
        except psutil.NoSuchProcess:
            return ServiceHealth(
                name=self.name,
                exists=False,
                run_state=RunState.UNKNOWN,
                startup_mode=StartupMode.UNKNOWN,
            )
        except (psutil.AccessDenied, OSError) as exc:
            raise ServiceControlError(f"cannot query service {self.name}: {exc}") from exc

        return ServiceHealth(
            name=self.name,
            exists=True,
            run_state=_RUN_STATES.get(status, RunState.UNKNOWN),
            startup_mode=_STARTUP_MODES.get(start_type, StartupMode.UNKNOWN),
        )

    def _sc(self, *args: str) -> None:
        command = [self.sc_path, *args]
        try:
            result = subprocess.run(
                command,
                check=False,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise ServiceControlError(f"{self.sc_path} binary not found on host system") from exc

        if result.returncode != 0:
            raise ServiceControlError(
                f"{' '.join(command)} failed with return code {result.returncode}: "
                f"{(result.stdout or result.stderr or '').strip()}"
            )

    def set_startup_mode(self, mode: StartupMode) -> None:
        if mode not in _SC_START_TYPES:
            raise ValueError(f"cannot set startup mode {mode.value}")
        self._sc("config", self.name, "start=", _SC_START_TYPES[mode])

    def start(self) -> None:
        self._sc("start", self.name)

    def stop(self) -> None:
        self._sc("stop", self.name)

    def wait_for_state(
        self,
        state: RunState,
        timeout: float,
        interval: float = DEFAULT_WAIT_INTERVAL_SECONDS,
    ) -> None:
        wait_for_state(self.query, state, timeout, interval)


def get_service_manager() -> ServiceManager:
    settings = get_settings()
    return WindowsServiceManager(settings.service_name, settings.sc_path)
