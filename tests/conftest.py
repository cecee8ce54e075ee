from datetime import datetime, timedelta, timezone

import pytest

from timekeeper.config import get_settings
from timekeeper.models.service import RunState, ServiceHealth, StartupMode
from timekeeper.services.service_manager import ServiceControlError, wait_for_state
from timekeeper.services.settings_store import InMemorySettingsStore
from timekeeper.services.time_service import TimeServiceError

NOW = datetime(2025, 9, 11, 16, 0, 0, tzinfo=timezone.utc)

SYNCED_STATUS = """\
Leap Indicator: 0(no warning)
Stratum: 4 (secondary reference - syncd by (S)NTP)
Precision: -23 (119.209ns per tick)
Root Delay: 0.0154902s
Root Dispersion: 7.7773722s
ReferenceId: 0x14653909 (source IP:  20.101.57.9)
Last Successful Sync Time: 9/11/2025 2:32:05 PM
Source: time.windows.com,0x9
Poll Interval: 10 (1024s)

Phase Offset: -0.0038147s
ClockRate: 0.0156250s
State Machine: 1 (Hold)
Time since Last Good Sync Time: 2820.1997480s
"""

LOCAL_CLOCK_STATUS = """\
Leap Indicator: 3(not synchronized)
Stratum: 0 (unspecified)
Precision: -23 (119.209ns per tick)
Root Delay: 0.0000000s
Root Dispersion: 0.0000000s
ReferenceId: 0x00000000 (unspecified)
Last Successful Sync Time: unspecified
Source: Local CMOS Clock
Poll Interval: 10 (1024s)
"""

PEERS_TEXT = """\
#Peers: 2

Peer: 0.europe.pool.ntp.org,0x9
State: Active
Time Remaining: 1.6s
Mode: 3 (Client)
Stratum: 2 (secondary reference - syncd by (S)NTP)
PeerPoll Interval: 10 (1024s)
HostPoll Interval: 10 (1024s)
Last Successful Sync Time: 9/11/2025 2:32:05 PM

Peer: 1.europe.pool.ntp.org,0x9
State: Pending
Time Remaining: 900.0s
Mode: 0 (reserved)
Stratum: 0 (unspecified)
Type: Manual (NTP.NtpServer)
"""


def synced_status_text(hours_ago: float, now: datetime = NOW, exponent: int = 10) -> str:
    """w32tm status text with a last sync `hours_ago` before `now`, in local time."""
    last_sync = (now - timedelta(hours=hours_ago)).astimezone().replace(tzinfo=None)
    return (
        "Leap Indicator: 0(no warning)\n"
        "Stratum: 2 (secondary reference - syncd by (S)NTP)\n"
        "ReferenceId: 0x0A000001 (source IP:  10.0.0.1)\n"
        f"Last Successful Sync Time: {last_sync.strftime('%m/%d/%Y %I:%M:%S %p')}\n"
        "Source: pool.example.org\n"
        f"Poll Interval: {exponent} ({2 ** exponent}s)\n"
    )


class FakeServiceManager:
    """In-memory ServiceManager; wait_for_state uses a simulated clock."""

    def __init__(
        self,
        name="W32Time",
        run_state=RunState.RUNNING,
        startup_mode=StartupMode.AUTOMATIC,
        exists=True,
        fail_on=(),
        stop_hangs=False,
    ):
        self.name = name
        self.run_state = run_state
        self.startup_mode = startup_mode
        self.is_registered = exists
        self.fail_on = set(fail_on)
        self.stop_hangs = stop_hangs
        self.calls = []
        self._elapsed = 0.0

    def _record(self, call):
        self.calls.append(call)
        if call in self.fail_on:
            raise ServiceControlError(f"{call} refused")

    def exists(self):
        return self.is_registered

    def query(self):
        self._record("query")
        return ServiceHealth(
            name=self.name,
            exists=self.is_registered,
            run_state=self.run_state if self.is_registered else RunState.UNKNOWN,
            startup_mode=self.startup_mode if self.is_registered else StartupMode.UNKNOWN,
        )

    def set_startup_mode(self, mode):
        self._record("set_startup_mode")
        self.startup_mode = mode

    def start(self):
        self._record("start")
        self.run_state = RunState.RUNNING

    def stop(self):
        self._record("stop")
        self.run_state = RunState.STOP_PENDING if self.stop_hangs else RunState.STOPPED

    def _sleep(self, seconds):
        self._elapsed += seconds

    def _clock(self):
        return self._elapsed

    def wait_for_state(self, state, timeout, interval=1.0):
        self._record("wait_for_state")
        wait_for_state(self.query, state, timeout, interval, sleep=self._sleep, clock=self._clock)


class FakeTimeService:
    """TimeService returning canned w32tm text and recording control calls."""

    def __init__(
        self,
        status_text=SYNCED_STATUS,
        peers_text=PEERS_TEXT,
        resync_ok=True,
        fail_on=(),
        service_manager=None,
    ):
        self.status_text = status_text
        self.peers_text = peers_text
        self.resync_ok = resync_ok
        self.fail_on = set(fail_on)
        self.service_manager = service_manager
        self.calls = []

    def _record(self, call):
        self.calls.append(call)
        if call in self.fail_on:
            raise TimeServiceError(f"w32tm {call} failed with return code 1")

    def query(self):
        self._record("query")
        return self.status_text

    def query_peers(self):
        self._record("query_peers")
        return self.peers_text

    def reload(self):
        self._record("reload")

    def resync(self, rediscover=False):
        self.calls.append("resync_rediscover" if rediscover else "resync")
        return self.resync_ok

    def register(self):
        self._record("register")
        if self.service_manager is not None:
            self.service_manager.is_registered = True

    def unregister(self):
        self._record("unregister")
        if self.service_manager is not None:
            self.service_manager.is_registered = False


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def store():
    return InMemorySettingsStore()


@pytest.fixture
def service_manager():
    return FakeServiceManager()


@pytest.fixture
def time_service(service_manager):
    return FakeTimeService(service_manager=service_manager)
