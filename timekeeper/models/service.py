from enum import Enum

from pydantic import BaseModel, Field


class RunState(str, Enum):
    STOPPED = "Stopped"
    RUNNING = "Running"
    START_PENDING = "StartPending"
    STOP_PENDING = "StopPending"
    UNKNOWN = "Unknown"


class StartupMode(str, Enum):
    AUTOMATIC = "Automatic"
    MANUAL = "Manual"
    DISABLED = "Disabled"
    UNKNOWN = "Unknown"


class ServiceHealth(BaseModel):
    """Service-manager view of the time service."""

    name: str = Field(..., description="Service name, e.g. W32Time")
    exists: bool = Field(True, description="False if the service is not registered")
    run_state: RunState = Field(RunState.UNKNOWN)
    startup_mode: StartupMode = Field(StartupMode.UNKNOWN)

    @property
    def is_healthy(self) -> bool:
        return (
            self.run_state == RunState.RUNNING
            and self.startup_mode == StartupMode.AUTOMATIC
        )
