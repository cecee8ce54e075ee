from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class Severity(str, Enum):
    """Health severity, ordered OK < Warning < Critical."""

    OK = "OK"
    WARNING = "Warning"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def exit_code(self) -> int:
        return self.rank

    def escalate(self, other: "Severity") -> "Severity":
        """Return the more severe of self and other."""
        return other if other.rank > self.rank else self


_SEVERITY_RANK = {Severity.OK: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


class SyncThresholds(BaseModel):
    """Age limits (in hours) for the last successful sync."""

    max_hours_since_sync: float = Field(
        2.0,
        description="Up to this age the sync is considered fresh",
    )
    alert_threshold_hours: float = Field(
        24.0,
        description="Up to this age a stale sync is a warning, above it critical",
    )

    @model_validator(mode="after")
    def _check_order(self) -> "SyncThresholds":
        if not 0 < self.max_hours_since_sync < self.alert_threshold_hours <= 168:
            raise ValueError(
                "thresholds must satisfy 0 < max_hours_since_sync "
                "< alert_threshold_hours <= 168"
            )
        return self


class RepairOutcome(BaseModel):
    """What happened when the time service was re-registered."""

    attempted: bool = False
    succeeded: bool = False
    steps: List[str] = Field(default_factory=list, description="Completed repair steps")
    error: Optional[str] = None


class CheckResult(BaseModel):
    name: str = Field(..., description="Check name: Service, TimeSync, Configuration, Peers")
    status: Severity
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    remediation: Optional[str] = None


class HealthVerdict(BaseModel):
    """Aggregate result of one health evaluation."""

    timestamp: datetime
    overall_status: Severity = Severity.OK
    checks: Dict[str, CheckResult] = Field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return self.overall_status.exit_code
