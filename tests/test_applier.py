import pytest
from pydantic import ValidationError

from conftest import FakeServiceManager, FakeTimeService
from timekeeper.models.configuration import NtpServer, SyncType
from timekeeper.models.service import RunState, StartupMode
from timekeeper.services import settings_store as keys
from timekeeper.services.applier import (
    ApplyStep,
    ChangeSet,
    ConfigurationApplier,
    ConfigurationApplyError,
    build_change_set,
)
from timekeeper.services.ntp_settings import ServerType
from timekeeper.services.regions import Region


def _change_set(poll_interval=900):
    return ChangeSet(
        servers=[NtpServer(host="time.example.org"), NtpServer(host="10.0.0.1", flags=0x8)],
        poll_interval_seconds=poll_interval,
    )


def _applier(time_service, service_manager, store):
    return ConfigurationApplier(time_service, service_manager, store, stop_timeout=30.0)


@pytest.mark.parametrize("poll_interval", [64, 300, 900, 3600, 86400])
def test_poll_interval_is_written_verbatim(store, service_manager, time_service, poll_interval):
    result = _applier(time_service, service_manager, store).apply(
        _change_set(poll_interval), assume_yes=True
    )

    assert result.applied is True
    assert store.get_value(keys.NTP_CLIENT_PATH, keys.SPECIAL_POLL_INTERVAL) == poll_interval


def test_all_settings_are_written(store, service_manager, time_service):
    _applier(time_service, service_manager, store).apply(_change_set(), assume_yes=True)

    assert store.get_value(keys.PARAMETERS_PATH, keys.NTP_SERVER) == "time.example.org,0x9 10.0.0.1,0x8"
    assert store.get_value(keys.PARAMETERS_PATH, keys.SYNC_TYPE) == "NTP"
    assert store.get_value(keys.NTP_CLIENT_PATH, keys.PROVIDER_ENABLED) == 1
    assert store.get_value(keys.CONFIG_PATH, keys.MAX_POS_PHASE_CORRECTION) == 3600
    assert store.get_value(keys.CONFIG_PATH, keys.MAX_NEG_PHASE_CORRECTION) == 3600
    assert store.get_value(keys.CONFIG_PATH, keys.UPDATE_INTERVAL) == 100


def test_steps_run_in_order(store, time_service):
    service_manager = FakeServiceManager(exists=False, startup_mode=StartupMode.MANUAL)
    time_service.service_manager = service_manager

    result = _applier(time_service, service_manager, store).apply(_change_set(), assume_yes=True)

    assert result.completed_steps == list(ApplyStep)
    assert time_service.calls == ["register", "reload", "resync"]
    assert service_manager.startup_mode == StartupMode.AUTOMATIC
    assert service_manager.run_state == RunState.RUNNING
    assert service_manager.calls.index("stop") < service_manager.calls.index("start")


@pytest.mark.parametrize("poll_interval", [0, 63, 86401, -5])
def test_out_of_range_poll_interval_is_rejected_before_mutation(store, poll_interval):
    with pytest.raises(ValueError):
        build_change_set(store, servers=["time.example.org"], poll_interval=poll_interval)

    assert store.values == {}
    assert store.paths == set()


@pytest.mark.parametrize("poll_interval", [10, 86401])
def test_change_set_rejects_out_of_range_poll_interval(poll_interval):
    with pytest.raises(ValidationError):
        _change_set(poll_interval)


def test_apply_rejects_unvalidated_change_set_before_mutation(store, time_service):
    service_manager = FakeServiceManager(exists=False)
    time_service.service_manager = service_manager
    change_set = ChangeSet.model_construct(
        servers=[NtpServer(host="time.example.org")],
        poll_interval_seconds=10,
        sync_type=SyncType.NTP,
        server_type=None,
        region=None,
    )

    with pytest.raises(ValueError):
        _applier(time_service, service_manager, store).apply(change_set, assume_yes=True)

    assert time_service.calls == []
    assert service_manager.calls == []
    assert store.paths == set()
    assert store.values == {}


def test_empty_server_name_is_rejected(store):
    with pytest.raises(ValueError):
        build_change_set(store, servers=["time.example.org", "  "], poll_interval=900)


def test_default_poll_interval_by_server_type(store):
    server = build_change_set(store, servers=["a"], server_type=ServerType.SERVER)
    workstation = build_change_set(store, servers=["a"], server_type=ServerType.WORKSTATION)

    assert server.poll_interval_seconds == 300
    assert workstation.poll_interval_seconds == 900


def test_server_type_is_detected_from_product_type(store):
    store.ensure_path(keys.PRODUCT_OPTIONS_PATH)
    store.set_string(keys.PRODUCT_OPTIONS_PATH, keys.PRODUCT_TYPE, "ServerNT")

    change_set = build_change_set(store, servers=["a"])

    assert change_set.server_type == ServerType.SERVER
    assert change_set.poll_interval_seconds == 300


def test_explicit_servers_keep_given_flags(store):
    change_set = build_change_set(store, servers=["a.example.org", "b.example.org,0x1"], poll_interval=64)
    assert [s.render() for s in change_set.servers] == ["a.example.org,0x9", "b.example.org,0x1"]
    assert change_set.region is None


def test_region_servers(store):
    change_set = build_change_set(store, region=Region.EUROPE, poll_interval=900)
    assert change_set.region.region == Region.EUROPE
    assert [s.host for s in change_set.servers] == [
        "0.europe.pool.ntp.org",
        "1.europe.pool.ntp.org",
        "2.europe.pool.ntp.org",
        "3.europe.pool.ntp.org",
    ]


def test_declining_confirmation_changes_nothing(store, service_manager, time_service):
    shown = []

    def decline(change_set):
        shown.append(change_set)
        return False

    result = _applier(time_service, service_manager, store).apply(_change_set(), confirm=decline)

    assert result.cancelled is True
    assert result.applied is False
    assert len(shown) == 1
    assert store.values == {}
    assert time_service.calls == []
    assert service_manager.calls == []


def test_missing_confirmation_callback_cancels(store, service_manager, time_service):
    result = _applier(time_service, service_manager, store).apply(_change_set())
    assert result.cancelled is True
    assert store.values == {}


def test_confirmed_change_is_applied(store, service_manager, time_service):
    result = _applier(time_service, service_manager, store).apply(
        _change_set(), confirm=lambda change_set: True
    )
    assert result.applied is True


def test_stop_timeout_is_fatal(store, time_service):
    service_manager = FakeServiceManager(stop_hangs=True)

    with pytest.raises(ConfigurationApplyError) as excinfo:
        _applier(time_service, service_manager, store).apply(_change_set(), assume_yes=True)

    assert excinfo.value.step == ApplyStep.STOP_SERVICE
    assert "did not reach Stopped" in str(excinfo.value)
    assert "reload" not in time_service.calls
    assert "resync" not in time_service.calls


def test_failed_reload_aborts_before_resync(store, service_manager):
    time_service = FakeTimeService(fail_on={"reload"})

    with pytest.raises(ConfigurationApplyError) as excinfo:
        _applier(time_service, service_manager, store).apply(_change_set(), assume_yes=True)

    assert excinfo.value.step == ApplyStep.RELOAD
    assert service_manager.run_state == RunState.RUNNING
    assert "resync" not in time_service.calls


def test_failed_startup_mode_aborts_remaining_steps(store, time_service):
    service_manager = FakeServiceManager(fail_on={"set_startup_mode"})

    with pytest.raises(ConfigurationApplyError) as excinfo:
        _applier(time_service, service_manager, store).apply(_change_set(), assume_yes=True)

    assert excinfo.value.step == ApplyStep.STARTUP_MODE
    assert "stop" not in service_manager.calls


def test_failure_after_stop_restarts_the_service(store, time_service):
    service_manager = FakeServiceManager(fail_on={"wait_for_state"})

    with pytest.raises(ConfigurationApplyError) as excinfo:
        _applier(time_service, service_manager, store).apply(_change_set(), assume_yes=True)

    assert excinfo.value.step == ApplyStep.STOP_SERVICE
    assert service_manager.calls[-1] == "start"
    assert service_manager.run_state == RunState.RUNNING


def test_resync_failure_is_not_fatal(store, service_manager):
    time_service = FakeTimeService(resync_ok=False)

    result = _applier(time_service, service_manager, store).apply(_change_set(), assume_yes=True)

    assert result.applied is True
    assert result.resync_succeeded is False
    assert ApplyStep.RESYNC not in result.completed_steps


def test_applying_twice_is_idempotent(store, service_manager, time_service):
    applier = _applier(time_service, service_manager, store)

    applier.apply(_change_set(), assume_yes=True)
    first_values = dict(store.values)
    first_health = service_manager.query()

    applier.apply(_change_set(), assume_yes=True)

    assert store.values == first_values
    assert service_manager.query() == first_health
