from typing import Optional
from pydantic import BaseModel, Field
import os
from functools import lru_cache


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


class Settings(BaseModel):
    # Command surfaces of the Windows Time service and service control manager
    w32tm_path: str = Field(
        default="w32tm",
        description="Path or name of the w32tm executable",
    )
    sc_path: str = Field(
        default="sc",
        description="Path or name of the sc (service control) executable",
    )
    service_name: str = Field(
        default="W32Time",
        description="Name of the time service as known to the service manager",
    )

    # Health thresholds
    max_hours_since_sync: float = Field(
        default=2.0,
        gt=0,
        description="Last sync younger than this is OK",
    )
    alert_threshold_hours: float = Field(
        default=24.0,
        gt=0,
        le=168,
        description="Last sync older than this is critical",
    )
    report_path: Optional[str] = Field(
        default=None,
        description="Default destination of the JSON health export",
    )

    # Configuration applier
    timezone: Optional[str] = Field(
        default=None,
        description="Timezone used for region auto-selection instead of the host timezone",
    )
    stop_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How long to wait for the service to stop",
    )

    log_level: str = Field(default="INFO", description="Root log level for the CLI")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            w32tm_path=os.getenv("TIMEKEEPER_W32TM_PATH", "w32tm"),
            sc_path=os.getenv("TIMEKEEPER_SC_PATH", "sc"),
            service_name=os.getenv("TIMEKEEPER_SERVICE_NAME", "W32Time"),
            max_hours_since_sync=_env_float("TIMEKEEPER_MAX_HOURS_SINCE_SYNC", 2.0),
            alert_threshold_hours=_env_float("TIMEKEEPER_ALERT_THRESHOLD_HOURS", 24.0),
            report_path=os.getenv("TIMEKEEPER_REPORT_PATH") or None,
            timezone=os.getenv("TIMEKEEPER_TIMEZONE") or None,
            stop_timeout_seconds=_env_float("TIMEKEEPER_STOP_TIMEOUT_SECONDS", 30.0),
            log_level=os.getenv("TIMEKEEPER_LOG_LEVEL", "INFO").upper(),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
