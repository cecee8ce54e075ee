from typing import Dict, Protocol, Tuple, Union

SettingValue = Union[str, int]

# W32Time layout under HKEY_LOCAL_MACHINE
W32TIME_ROOT = r"SYSTEM\CurrentControlSet\Services\W32Time"
PARAMETERS_PATH = W32TIME_ROOT + r"\Parameters"
CONFIG_PATH = W32TIME_ROOT + r"\Config"
NTP_CLIENT_PATH = W32TIME_ROOT + r"\TimeProviders\NtpClient"
PRODUCT_OPTIONS_PATH = r"SYSTEM\CurrentControlSet\Control\ProductOptions"

NTP_SERVER = "NtpServer"
SYNC_TYPE = "Type"
MAX_POS_PHASE_CORRECTION = "MaxPosPhaseCorrection"
MAX_NEG_PHASE_CORRECTION = "MaxNegPhaseCorrection"
UPDATE_INTERVAL = "UpdateInterval"
PROVIDER_ENABLED = "Enabled"
SPECIAL_POLL_INTERVAL = "SpecialPollInterval"
PRODUCT_TYPE = "ProductType"

REQUIRED_PATHS = (PARAMETERS_PATH, CONFIG_PATH, NTP_CLIENT_PATH)


class SettingNotFoundError(KeyError):
    """The requested key or value does not exist in the store."""


class SettingsStoreError(RuntimeError):
    """Reading or writing the store failed for a reason other than absence."""


class SettingsStore(Protocol):
    """Hierarchical key/value store addressed by path and value name."""

    def path_exists(self, path: str) -> bool: ...

    def ensure_path(self, path: str) -> None: ...

    def get_value(self, path: str, name: str) -> SettingValue: ...

    def set_string(self, path: str, name: str, value: str) -> None: ...

    def set_dword(self, path: str, name: str, value: int) -> None: ...


class InMemorySettingsStore:
    """Dictionary backed store, used in tests and dry runs."""

    def __init__(self) -> None:
        self.paths = set()
        self.values: Dict[Tuple[str, str], SettingValue] = {}

    def path_exists(self, path: str) -> bool:
        return path.lower() in self.paths

    def ensure_path(self, path: str) -> None:
        parts = path.split("\\")
        for i in range(1, len(parts) + 1):
            self.paths.add("\\".join(parts[:i]).lower())

    def get_value(self, path: str, name: str) -> SettingValue:
        try:
            return self.values[(path.lower(), name.lower())]
        except KeyError:
            raise SettingNotFoundError(f"{path}\\{name}") from None

    def _set(self, path: str, name: str, value: SettingValue) -> None:
        if not self.path_exists(path):
            raise SettingNotFoundError(path)
        self.values[(path.lower(), name.lower())] = value

    def set_string(self, path: str, name: str, value: str) -> None:
        self._set(path, name, str(value))

    def set_dword(self, path: str, name: str, value: int) -> None:
        if not 0 <= int(value) <= 0xFFFFFFFF:
            raise SettingsStoreError(f"{value} does not fit into a DWORD")
        self._set(path, name, int(value))


class RegistrySettingsStore:
    """SettingsStore backed by HKEY_LOCAL_MACHINE via winreg."""

    @property
    def _winreg(self):
        try:
            import winreg
        except ImportError as exc:
            raise SettingsStoreError("the Windows registry is not available on this host") from exc
        return winreg

    @property
    def _root(self) -> int:
        return self._winreg.HKEY_LOCAL_MACHINE

    def path_exists(self, path: str) -> bool:
        try:
            key = self._winreg.OpenKey(self._root, path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise SettingsStoreError(f"cannot open HKLM\\{path}: {exc}") from exc
        key.Close()
        return True

    def ensure_path(self, path: str) -> None:
        try:
            key = self._winreg.CreateKeyEx(self._root, path, 0, self._winreg.KEY_WRITE)
        except OSError as exc:
            raise SettingsStoreError(f"cannot create HKLM\\{path}: {exc}") from exc
        key.Close()

    def get_value(self, path: str, name: str) -> SettingValue:
        try:
            with self._winreg.OpenKey(self._root, path) as key:
                value, _ = self._winreg.QueryValueEx(key, name)
        except FileNotFoundError:
            raise SettingNotFoundError(f"HKLM\\{path}\\{name}") from None
        except OSError as exc:
            raise SettingsStoreError(f"cannot read HKLM\\{path}\\{name}: {exc}") from exc
        return value

    def _set(self, path: str, name: str, value_type: int, value: SettingValue) -> None:
        try:
            with self._winreg.OpenKey(self._root, path, 0, self._winreg.KEY_SET_VALUE) as key:
                self._winreg.SetValueEx(key, name, 0, value_type, value)
        except FileNotFoundError:
            raise SettingNotFoundError(f"HKLM\\{path}") from None
        except OSError as exc:
            raise SettingsStoreError(f"cannot write HKLM\\{path}\\{name}: {exc}") from exc

    def set_string(self, path: str, name: str, value: str) -> None:
        self._set(path, name, self._winreg.REG_SZ, str(value))

    def set_dword(self, path: str, name: str, value: int) -> None:
        self._set(path, name, self._winreg.REG_DWORD, int(value))


def get_settings_store() -> SettingsStore:
    return RegistrySettingsStore()
