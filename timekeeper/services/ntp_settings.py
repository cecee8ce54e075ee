import logging
from enum import Enum
from typing import List, Optional

from timekeeper.models.configuration import (
    MAX_POLL_INTERVAL_SECONDS,
    MIN_POLL_INTERVAL_SECONDS,
    NtpConfiguration,
    NtpServer,
    SyncType,
    parse_server_list,
    render_server_list,
)
from timekeeper.services import settings_store as keys
from timekeeper.services.settings_store import (
    SettingNotFoundError,
    SettingsStore,
    SettingsStoreError,
)

logger = logging.getLogger(__name__)

# Fixed phase correction bounds written with every configuration
MAX_PHASE_CORRECTION_SECONDS = 3600
UPDATE_INTERVAL = 100


class ServerType(str, Enum):
    SERVER = "Server"
    WORKSTATION = "Workstation"


DEFAULT_POLL_INTERVALS = {
    ServerType.SERVER: 300,
    ServerType.WORKSTATION: 900,
}


def validate_poll_interval(seconds: int) -> int:
    """Return `seconds` if it lies in [64, 86400], raise ValueError otherwise."""
    if isinstance(seconds, bool) or not isinstance(seconds, int):
        raise ValueError(f"poll interval must be an integer, got {seconds!r}")
    if not MIN_POLL_INTERVAL_SECONDS <= seconds <= MAX_POLL_INTERVAL_SECONDS:
        raise ValueError(
            f"poll interval {seconds}s is outside "
            f"[{MIN_POLL_INTERVAL_SECONDS}, {MAX_POLL_INTERVAL_SECONDS}]"
        )
    return seconds


def detect_server_type(store: SettingsStore) -> ServerType:
    """Read ProductType: WinNT is a workstation, LanmanNT/ServerNT are servers."""
    try:
        product_type = str(store.get_value(keys.PRODUCT_OPTIONS_PATH, keys.PRODUCT_TYPE))
    except (SettingNotFoundError, SettingsStoreError) as exc:
        logger.warning("Cannot read ProductType (%s); assuming Workstation", exc)
        return ServerType.WORKSTATION
    if product_type.strip().lower() == "winnt":
        return ServerType.WORKSTATION
    return ServerType.SERVER


def default_poll_interval(server_type: ServerType) -> int:
    return DEFAULT_POLL_INTERVALS[server_type]


def ensure_paths(store: SettingsStore) -> None:
    for path in keys.REQUIRED_PATHS:
        if not store.path_exists(path):
            logger.info("Creating missing settings path %s", path)
            store.ensure_path(path)


def write_configuration(
    store: SettingsStore,
    servers: List[NtpServer],
    poll_interval_seconds: int,
    sync_type: SyncType = SyncType.NTP,
) -> None:
    """
    Write servers, sync type, poll interval, provider flag and phase limits.

    Every key is written on its own; a failing write raises and leaves the
    keys written before it in place.
    """
    validate_poll_interval(poll_interval_seconds)
    if not servers:
        raise ValueError("at least one time server is required")

    store.set_string(keys.PARAMETERS_PATH, keys.NTP_SERVER, render_server_list(servers))
    store.set_string(keys.PARAMETERS_PATH, keys.SYNC_TYPE, sync_type.value)
    store.set_dword(keys.NTP_CLIENT_PATH, keys.SPECIAL_POLL_INTERVAL, poll_interval_seconds)
    store.set_dword(keys.NTP_CLIENT_PATH, keys.PROVIDER_ENABLED, 1)
    store.set_dword(keys.CONFIG_PATH, keys.MAX_POS_PHASE_CORRECTION, MAX_PHASE_CORRECTION_SECONDS)
    store.set_dword(keys.CONFIG_PATH, keys.MAX_NEG_PHASE_CORRECTION, MAX_PHASE_CORRECTION_SECONDS)
    store.set_dword(keys.CONFIG_PATH, keys.UPDATE_INTERVAL, UPDATE_INTERVAL)


def _optional_value(store: SettingsStore, path: str, name: str):
    try:
        return store.get_value(path, name)
    except SettingNotFoundError:
        return None


def read_configuration(store: SettingsStore) -> NtpConfiguration:
    """
    Snapshot the persisted time settings.

    An unreadable server list yields readable=False; the remaining values
    are optional and left unset when absent or malformed.
    """
    try:
        raw_servers = store.get_value(keys.PARAMETERS_PATH, keys.NTP_SERVER)
    except (SettingNotFoundError, SettingsStoreError) as exc:
        return NtpConfiguration(readable=False, error=f"cannot read NtpServer: {exc}")

    sync_type: Optional[SyncType] = None
    poll_interval: Optional[int] = None
    provider_enabled: Optional[bool] = None
    try:
        raw_type = _optional_value(store, keys.PARAMETERS_PATH, keys.SYNC_TYPE)
        raw_poll = _optional_value(store, keys.NTP_CLIENT_PATH, keys.SPECIAL_POLL_INTERVAL)
        raw_enabled = _optional_value(store, keys.NTP_CLIENT_PATH, keys.PROVIDER_ENABLED)
    except SettingsStoreError as exc:
        logger.warning("Partial configuration read: %s", exc)
        raw_type = raw_poll = raw_enabled = None

    if raw_type is not None:
        try:
            sync_type = SyncType(str(raw_type))
        except ValueError:
            logger.warning("Unknown sync type %r", raw_type)
    if isinstance(raw_poll, int) and raw_poll > 0:
        poll_interval = raw_poll
    if isinstance(raw_enabled, int):
        provider_enabled = bool(raw_enabled)

    return NtpConfiguration(
        servers=parse_server_list(str(raw_servers)),
        sync_type=sync_type,
        configured_poll_interval_seconds=poll_interval,
        provider_enabled=provider_enabled,
        readable=True,
    )
