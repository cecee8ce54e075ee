from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

MIN_POLL_INTERVAL_SECONDS = 64
MAX_POLL_INTERVAL_SECONDS = 86400

# NtpServer flag bits
FLAG_SPECIAL_INTERVAL = 0x1
FLAG_USE_AS_FALLBACK_ONLY = 0x2
FLAG_SYMMETRIC_ACTIVE = 0x4
FLAG_CLIENT = 0x8
DEFAULT_SERVER_FLAGS = FLAG_SPECIAL_INTERVAL | FLAG_CLIENT


class SyncType(str, Enum):
    """Value of the W32Time `Type` parameter."""

    NTP = "NTP"
    NT5DS = "NT5DS"
    NO_SYNC = "NoSync"
    ALL_SYNC = "AllSync"


class NtpServer(BaseModel):
    """A single entry of the NtpServer parameter, e.g. `pool.ntp.org,0x9`."""

    host: str = Field(..., min_length=1, description="Hostname or IP address")
    flags: int = Field(
        DEFAULT_SERVER_FLAGS,
        ge=0,
        description="Mode flags bitmask (0x1 SpecialInterval, 0x8 Client, ...)",
    )

    @classmethod
    def parse(cls, entry: str) -> "NtpServer":
        host, _, raw_flags = entry.strip().partition(",")
        flags = 0
        if raw_flags.strip():
            try:
                flags = int(raw_flags.strip(), 0)
            except ValueError:
                flags = 0
        return cls(host=host.strip(), flags=flags)

    def render(self) -> str:
        if not self.flags:
            return self.host
        return f"{self.host},{self.flags:#x}"


def parse_server_list(raw: str) -> List[NtpServer]:
    """Split the space separated NtpServer value into server descriptors."""
    return [NtpServer.parse(item) for item in raw.split() if item.strip()]


def render_server_list(servers: List[NtpServer]) -> str:
    return " ".join(server.render() for server in servers)


class NtpConfiguration(BaseModel):
    """Snapshot of the persisted W32Time settings."""

    servers: List[NtpServer] = Field(default_factory=list)
    sync_type: Optional[SyncType] = Field(None, description="Configured sync type")
    configured_poll_interval_seconds: Optional[int] = Field(
        None,
        gt=0,
        description="SpecialPollInterval of the NtpClient provider",
    )
    provider_enabled: Optional[bool] = Field(
        None,
        description="True if the NtpClient time provider is enabled",
    )
    readable: bool = Field(True, description="False if the server list could not be read")
    error: Optional[str] = Field(None, description="Read error, if any")
