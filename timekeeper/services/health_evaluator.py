import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from timekeeper.config import get_settings
from timekeeper.models.configuration import NtpConfiguration, SyncType
from timekeeper.models.health import (
    CheckResult,
    HealthVerdict,
    RepairOutcome,
    Severity,
    SyncThresholds,
)
from timekeeper.models.service import RunState, ServiceHealth, StartupMode
from timekeeper.models.status import PeerReport, SyncStatus
from timekeeper.services import ntp_settings
from timekeeper.services.service_manager import (
    DEFAULT_WAIT_INTERVAL_SECONDS,
    ServiceControlError,
    ServiceManager,
    get_service_manager,
)
from timekeeper.services.settings_store import SettingsStore, get_settings_store
from timekeeper.services.status_parser import parse_peers, parse_status
from timekeeper.services.time_service import TimeService, TimeServiceError, get_time_service

logger = logging.getLogger(__name__)

# Effective poll interval at or below 2^6 = 64s while the configured interval
# is at least 300s means the service fell back to its built-in default.
DRIFT_MAX_EFFECTIVE_EXPONENT = 6
DRIFT_MIN_CONFIGURED_SECONDS = 300

DRIFT_REMEDIATION = (
    "The time service is polling at its built-in default instead of the "
    "configured SpecialPollInterval. Re-register it: run "
    "`timekeeper health --repair`, or stop W32Time, run `w32tm /unregister` "
    "and `w32tm /register`, then re-apply the configuration."
)


def check_service(health: Optional[ServiceHealth], error: Optional[str] = None) -> CheckResult:
    """Running and Automatic is OK, anything else is Critical."""
    if health is None:
        return CheckResult(
            name="Service",
            status=Severity.CRITICAL,
            message=f"Cannot query the time service: {error}",
            details={"error": error},
        )

    details = {
        "name": health.name,
        "exists": health.exists,
        "run_state": health.run_state.value,
        "startup_mode": health.startup_mode.value,
    }
    if health.is_healthy:
        return CheckResult(
            name="Service",
            status=Severity.OK,
            message=f"{health.name} is running (startup: Automatic)",
            details=details,
        )
    if not health.exists:
        message = f"{health.name} is not registered with the service manager"
    else:
        message = (
            f"{health.name} is {health.run_state.value} "
            f"(startup: {health.startup_mode.value})"
        )
    return CheckResult(
        name="Service",
        status=Severity.CRITICAL,
        message=message,
        details=details,
        remediation="Run `timekeeper apply` to register, enable and start the service.",
    )


def check_time_sync(status: SyncStatus, thresholds: SyncThresholds, now: datetime) -> CheckResult:
    """
    Classify synchronization recency.

    Query failure and local-clock sources are Critical, never synchronized is
    Warning, otherwise the age of the last sync is compared against the
    thresholds. The poll interval is reported but never changes severity.
    """
    details = {
        "stratum": status.stratum,
        "source": status.source,
        "reference_id": status.reference_id,
        "leap_indicator": status.leap_indicator,
        "last_successful_sync": (
            status.last_successful_sync.isoformat() if status.last_successful_sync else None
        ),
        "poll_interval_seconds": status.poll_interval_seconds,
        "phase_offset": status.phase_offset,
    }

    if not status.is_healthy:
        details["error"] = status.error
        return CheckResult(
            name="TimeSync",
            status=Severity.CRITICAL,
            message=f"Cannot query time service status: {status.error}",
            details=details,
        )

    if status.is_local_clock:
        return CheckResult(
            name="TimeSync",
            status=Severity.CRITICAL,
            message=f"Not synchronized, using local clock ({status.source or 'stratum 0'})",
            details=details,
        )

    if status.never_synced:
        return CheckResult(
            name="TimeSync",
            status=Severity.WARNING,
            message="Never synchronized, awaiting initial sync",
            details=details,
        )

    hours = status.hours_since_sync(now)
    if hours is None:
        return CheckResult(
            name="TimeSync",
            status=Severity.WARNING,
            message="Time of the last sync could not be determined",
            details=details,
        )

    details["hours_since_sync"] = round(hours, 3)
    if hours <= thresholds.max_hours_since_sync:
        severity = Severity.OK
        message = f"Last sync {hours:.1f}h ago from {status.source}"
    elif hours <= thresholds.alert_threshold_hours:
        severity = Severity.WARNING
        message = (
            f"Last sync {hours:.1f}h ago exceeds {thresholds.max_hours_since_sync:g}h"
        )
    else:
        severity = Severity.CRITICAL
        message = (
            f"Last sync {hours:.1f}h ago exceeds alert threshold "
            f"{thresholds.alert_threshold_hours:g}h"
        )
    return CheckResult(name="TimeSync", status=severity, message=message, details=details)


def detect_poll_interval_drift(configuration: NtpConfiguration, status: SyncStatus) -> bool:
    """True if the service runs at <=64s although >=300s is configured."""
    if not configuration.readable or not status.is_healthy:
        return False
    exponent = status.poll_interval_exponent
    configured = configuration.configured_poll_interval_seconds
    if exponent is None or configured is None:
        return False
    return exponent <= DRIFT_MAX_EFFECTIVE_EXPONENT and configured >= DRIFT_MIN_CONFIGURED_SECONDS


def check_configuration(
    configuration: NtpConfiguration,
    status: SyncStatus,
    repair: Optional[Callable[[NtpConfiguration], RepairOutcome]] = None,
) -> CheckResult:
    """
    Unreadable configuration and poll-interval drift are Warnings.

    When drift is found and `repair` is given, it is invoked and its outcome
    is recorded; the outcome never changes the severity.
    """
    if not configuration.readable:
        return CheckResult(
            name="Configuration",
            status=Severity.WARNING,
            message=f"Configuration unreadable: {configuration.error}",
            details={"error": configuration.error},
        )

    details = {
        "servers": [server.render() for server in configuration.servers],
        "sync_type": configuration.sync_type.value if configuration.sync_type else None,
        "configured_poll_interval_seconds": configuration.configured_poll_interval_seconds,
        "effective_poll_interval_seconds": status.poll_interval_seconds,
        "provider_enabled": configuration.provider_enabled,
        "poll_interval_drift": False,
    }

    if not detect_poll_interval_drift(configuration, status):
        return CheckResult(
            name="Configuration",
            status=Severity.OK,
            message=f"{len(configuration.servers)} server(s) configured",
            details=details,
        )

    details["poll_interval_drift"] = True
    message = (
        f"Effective poll interval {status.poll_interval_seconds}s ignores configured "
        f"{configuration.configured_poll_interval_seconds}s"
    )
    if repair is not None:
        outcome = repair(configuration)
        details["repair"] = outcome.model_dump()
        if outcome.succeeded:
            message += "; service re-registered"
        else:
            message += f"; repair failed: {outcome.error}"
    return CheckResult(
        name="Configuration",
        status=Severity.WARNING,
        message=message,
        details=details,
        remediation=DRIFT_REMEDIATION,
    )


def check_peers(report: PeerReport) -> CheckResult:
    """Peer detail is informational; only a failed query is a Warning."""
    details = {
        "count": report.count,
        "peers": [peer.model_dump() for peer in report.peers],
    }
    if not report.query_succeeded:
        details["error"] = report.error
        return CheckResult(
            name="Peers",
            status=Severity.WARNING,
            message=f"Cannot query peers: {report.error}",
            details=details,
        )
    return CheckResult(
        name="Peers",
        status=Severity.OK,
        message=f"{report.count} peer(s) reported",
        details=details,
    )


def aggregate(checks: List[CheckResult], timestamp: datetime) -> HealthVerdict:
    """Build the verdict; overall status is the worst of the checks that ran."""
    overall = Severity.OK
    for check in checks:
        overall = overall.escalate(check.status)
    return HealthVerdict(
        timestamp=timestamp,
        overall_status=overall,
        checks={check.name: check for check in checks},
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthEvaluator:
    """Queries the host and classifies time synchronization health."""

    def __init__(
        self,
        time_service: TimeService,
        service_manager: ServiceManager,
        store: SettingsStore,
        thresholds: Optional[SyncThresholds] = None,
        clock: Callable[[], datetime] = _utcnow,
        stop_timeout: float = 30.0,
        wait_interval: float = DEFAULT_WAIT_INTERVAL_SECONDS,
    ) -> None:
        self.time_service = time_service
        self.service_manager = service_manager
        self.store = store
        self.thresholds = thresholds or SyncThresholds()
        self.clock = clock
        self.stop_timeout = stop_timeout
        self.wait_interval = wait_interval

    def query_service(self) -> CheckResult:
        try:
            health = self.service_manager.query()
        except ServiceControlError as exc:
            return check_service(None, str(exc))
        return check_service(health)

    def query_status(self) -> SyncStatus:
        try:
            return parse_status(self.time_service.query())
        except (TimeServiceError, ValueError) as exc:
            logger.error("Status query failed: %s", exc)
            return SyncStatus.failed(str(exc))

    def query_peers(self) -> PeerReport:
        try:
            return parse_peers(self.time_service.query_peers())
        except (TimeServiceError, ValueError) as exc:
            logger.warning("Peer query failed: %s", exc)
            return PeerReport(query_succeeded=False, error=str(exc))

    def read_configuration(self) -> NtpConfiguration:
        return ntp_settings.read_configuration(self.store)

    def evaluate(self, include_peers: bool = False, repair: bool = False) -> HealthVerdict:
        """
        Run Service, TimeSync, Configuration and (optionally) Peers checks.

        A failing probe only degrades its own check; all checks always run.
        """
        now = self.clock()
        status = self.query_status()

        checks = [
            self.query_service(),
            check_time_sync(status, self.thresholds, now),
            check_configuration(
                self.read_configuration(),
                status,
                repair=self.repair if repair else None,
            ),
        ]
        if include_peers:
            checks.append(check_peers(self.query_peers()))

        verdict = aggregate(checks, now)
        logger.info("Time sync health: %s", verdict.overall_status.value)
        return verdict

    def repair(self, configuration: NtpConfiguration) -> RepairOutcome:
        """
        Re-register the time service and restore `configuration`.

        Unregistering drops the service's settings, so the snapshot taken
        before is written back once the service is registered again.
        """
        outcome = RepairOutcome(attempted=True)
        manager = self.service_manager

        def _step(name: str, action: Callable[[], None]) -> None:
            logger.info("Repair step %s", name)
            action()
            outcome.steps.append(name)

        try:
            health = manager.query()
            if health.exists and health.run_state != RunState.STOPPED:
                _step("stop_service", manager.stop)
                _step(
                    "wait_stopped",
                    lambda: manager.wait_for_state(
                        RunState.STOPPED, self.stop_timeout, self.wait_interval
                    ),
                )
            _step("unregister", self.time_service.unregister)
            _step("register", self.time_service.register)
            _step("ensure_paths", lambda: ntp_settings.ensure_paths(self.store))
            _step(
                "restore_configuration",
                lambda: ntp_settings.write_configuration(
                    self.store,
                    configuration.servers,
                    configuration.configured_poll_interval_seconds,
                    configuration.sync_type or SyncType.NTP,
                ),
            )
            _step("set_startup_automatic", lambda: manager.set_startup_mode(StartupMode.AUTOMATIC))
            _step("start_service", manager.start)
            _step(
                "wait_running",
                lambda: manager.wait_for_state(
                    RunState.RUNNING, self.stop_timeout, self.wait_interval
                ),
            )
            _step("reload_configuration", self.time_service.reload)
        except Exception as exc:
            outcome.error = str(exc)
            logger.warning("Repair failed after %s: %s", outcome.steps, exc)
            self._recover()
            return outcome

        if self.time_service.resync(rediscover=True):
            outcome.steps.append("resync_rediscover")
        else:
            logger.warning("Rediscovery resync did not complete yet")
        outcome.succeeded = True
        return outcome

    def _recover(self) -> None:
        try:
            if not self.service_manager.exists():
                self.time_service.register()
            if self.service_manager.query().run_state == RunState.STOPPED:
                self.service_manager.start()
        except Exception as exc:
            logger.warning("Could not bring the time service back: %s", exc)


def build_evaluator(thresholds: Optional[SyncThresholds] = None) -> HealthEvaluator:
    settings = get_settings()
    if thresholds is None:
        thresholds = SyncThresholds(
            max_hours_since_sync=settings.max_hours_since_sync,
            alert_threshold_hours=settings.alert_threshold_hours,
        )
    return HealthEvaluator(
        time_service=get_time_service(),
        service_manager=get_service_manager(),
        store=get_settings_store(),
        thresholds=thresholds,
        stop_timeout=settings.stop_timeout_seconds,
    )


def evaluate_host_health(
    include_peers: bool = False,
    repair: bool = False,
    thresholds: Optional[SyncThresholds] = None,
) -> HealthVerdict:
    """Evaluate the local host with adapters built from Settings."""
    return build_evaluator(thresholds).evaluate(include_peers=include_peers, repair=repair)
