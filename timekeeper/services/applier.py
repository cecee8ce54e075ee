import logging
from enum import Enum
from typing import Callable, List, Optional, Sequence

from pydantic import BaseModel, Field

from timekeeper.models.configuration import (
    MAX_POLL_INTERVAL_SECONDS,
    MIN_POLL_INTERVAL_SECONDS,
    NtpServer,
    SyncType,
)
from timekeeper.models.service import RunState, StartupMode
from timekeeper.services import ntp_settings
from timekeeper.services.ntp_settings import ServerType
from timekeeper.services.regions import Region, RegionResolution, resolve_region
from timekeeper.services.service_manager import DEFAULT_WAIT_INTERVAL_SECONDS, ServiceManager
from timekeeper.services.settings_store import SettingsStore
from timekeeper.services.time_service import TimeService

logger = logging.getLogger(__name__)


class ApplyStep(str, Enum):
    REGISTER = "register_service"
    ENSURE_PATHS = "ensure_paths"
    WRITE_SETTINGS = "write_settings"
    STARTUP_MODE = "set_startup_automatic"
    STOP_SERVICE = "stop_service"
    RELOAD = "reload_configuration"
    RESYNC = "resync"


class ConfigurationApplyError(RuntimeError):
    """A mandatory apply step failed; later steps were not run."""

    def __init__(self, step: ApplyStep, message: str) -> None:
        super().__init__(f"{step.value} failed: {message}")
        self.step = step


class ChangeSet(BaseModel):
    """The settings an apply run is about to write."""

    servers: List[NtpServer] = Field(..., min_length=1)
    poll_interval_seconds: int = Field(
        ...,
        ge=MIN_POLL_INTERVAL_SECONDS,
        le=MAX_POLL_INTERVAL_SECONDS,
        description="SpecialPollInterval to write, in seconds",
    )
    sync_type: SyncType = SyncType.NTP
    server_type: Optional[ServerType] = Field(
        None,
        description="Server type used to pick the default poll interval, if any",
    )
    region: Optional[RegionResolution] = None

    def describe(self) -> str:
        lines = [
            "Servers: " + ", ".join(server.render() for server in self.servers),
            f"Poll interval: {self.poll_interval_seconds}s",
            f"Sync type: {self.sync_type.value}",
        ]
        if self.region is not None:
            region_line = f"Region: {self.region.region.value}"
            if self.region.fallback:
                region_line += f" (fallback, timezone {self.region.timezone!r} not recognised)"
            lines.append(region_line)
        return "\n".join(lines)


class ApplyResult(BaseModel):
    change_set: ChangeSet
    applied: bool = False
    cancelled: bool = False
    completed_steps: List[ApplyStep] = Field(default_factory=list)
    resync_succeeded: Optional[bool] = None


def build_change_set(
    store: SettingsStore,
    servers: Optional[Sequence[str]] = None,
    region: Optional[Region] = None,
    poll_interval: Optional[int] = None,
    server_type: Optional[ServerType] = None,
    timezone: Optional[str] = None,
) -> ChangeSet:
    """
    Validate the requested change and fill in derived values.

    Explicit servers win over a region; with neither, the region is Auto.
    Without a poll interval the default for the (detected) server type is
    used. Raises ValueError before anything is written.
    """
    resolution: Optional[RegionResolution] = None
    if servers:
        entries = [entry.strip() for entry in servers]
        if any(not entry for entry in entries):
            raise ValueError("server names must not be empty")
        parsed = [
            NtpServer.parse(entry) if "," in entry else NtpServer(host=entry)
            for entry in entries
        ]
    else:
        resolution = resolve_region(region or Region.AUTO, timezone)
        parsed = resolution.servers

    if poll_interval is None:
        if server_type is None:
            server_type = ntp_settings.detect_server_type(store)
        poll_interval = ntp_settings.default_poll_interval(server_type)
    ntp_settings.validate_poll_interval(poll_interval)

    return ChangeSet(
        servers=parsed,
        poll_interval_seconds=poll_interval,
        server_type=server_type,
        region=resolution,
    )


class ConfigurationApplier:
    """Writes time settings and restarts the time service against them."""

    def __init__(
        self,
        time_service: TimeService,
        service_manager: ServiceManager,
        store: SettingsStore,
        stop_timeout: float = 30.0,
        wait_interval: float = DEFAULT_WAIT_INTERVAL_SECONDS,
    ) -> None:
        self.time_service = time_service
        self.service_manager = service_manager
        self.store = store
        self.stop_timeout = stop_timeout
        self.wait_interval = wait_interval

    def apply(
        self,
        change_set: ChangeSet,
        assume_yes: bool = False,
        confirm: Optional[Callable[[ChangeSet], bool]] = None,
    ) -> ApplyResult:
        """
        Apply `change_set`.

        Unless `assume_yes` is set, `confirm` is shown the change set and must
        return True; anything else cancels without touching the host.
        Raises ValueError for an invalid change set before anything is
        touched, and ConfigurationApplyError if a mandatory step fails.
        """
        # model_construct() and later assignment skip field validation
        ntp_settings.validate_poll_interval(change_set.poll_interval_seconds)
        if not change_set.servers:
            raise ValueError("at least one time server is required")
        result = ApplyResult(change_set=change_set)

        if not assume_yes:
            if confirm is None or not confirm(change_set):
                logger.info("Configuration change declined; nothing was modified")
                result.cancelled = True
                return result

        steps = [
            (ApplyStep.REGISTER, self._ensure_registered),
            (ApplyStep.ENSURE_PATHS, lambda: ntp_settings.ensure_paths(self.store)),
            (ApplyStep.WRITE_SETTINGS, lambda: self._write(change_set)),
            (
                ApplyStep.STARTUP_MODE,
                lambda: self.service_manager.set_startup_mode(StartupMode.AUTOMATIC),
            ),
            (ApplyStep.STOP_SERVICE, self._stop_service),
            (ApplyStep.RELOAD, self._start_and_reload),
        ]
        for step, action in steps:
            logger.info("Step %s", step.value)
            try:
                action()
            except Exception as exc:
                logger.error("Step %s failed: %s", step.value, exc)
                self._recover()
                raise ConfigurationApplyError(step, str(exc)) from exc
            result.completed_steps.append(step)

        result.resync_succeeded = self.time_service.resync()
        if result.resync_succeeded:
            result.completed_steps.append(ApplyStep.RESYNC)
        else:
            logger.warning("Resync did not complete yet; the service will retry on its own")

        result.applied = True
        return result

    def _ensure_registered(self) -> None:
        if self.service_manager.exists():
            return
        logger.info("Registering time service %s", self.service_manager.name)
        self.time_service.register()

    def _write(self, change_set: ChangeSet) -> None:
        ntp_settings.write_configuration(
            self.store,
            change_set.servers,
            change_set.poll_interval_seconds,
            change_set.sync_type,
        )

    def _stop_service(self) -> None:
        health = self.service_manager.query()
        if health.run_state == RunState.STOPPED:
            return
        self.service_manager.stop()
        self.service_manager.wait_for_state(RunState.STOPPED, self.stop_timeout, self.wait_interval)

    def _start_and_reload(self) -> None:
        # w32tm /config /update needs a running service
        self.service_manager.start()
        self.service_manager.wait_for_state(RunState.RUNNING, self.stop_timeout, self.wait_interval)
        self.time_service.reload()

    def _recover(self) -> None:
        """Try to leave the service running after a failed apply."""
        try:
            health = self.service_manager.query()
            if health.exists and health.run_state == RunState.STOPPED:
                logger.info("Restarting %s after failure", health.name)
                self.service_manager.start()
        except Exception as exc:
            logger.warning("Could not restart the time service: %s", exc)
