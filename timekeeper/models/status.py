from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

# Source strings w32tm reports when no external reference is in use
LOCAL_CLOCK_SOURCES = ("Local CMOS Clock", "Free-running System Clock")


class SyncStatus(BaseModel):
    """Snapshot of `w32tm /query /status` taken at check time."""

    model_config = {"frozen": True}

    leap_indicator: Optional[int] = Field(None, description="Leap indicator (0-3)")
    stratum: Optional[int] = Field(
        None,
        ge=0,
        description="0 unsynchronized/local, 1 primary reference, 2+ secondary",
    )
    precision: Optional[int] = Field(None, description="Clock precision as log2 seconds")
    root_delay: Optional[float] = Field(None, description="Root delay in seconds")
    root_dispersion: Optional[float] = Field(None, description="Root dispersion in seconds")
    reference_id: Optional[str] = Field(None, description="Reference id, usually hex")
    source: Optional[str] = Field(None, description="Current sync source")
    last_successful_sync: Optional[datetime] = Field(
        None,
        description="Time of the last successful sync, if reported and parseable",
    )
    never_synced: bool = Field(
        False,
        description="True if the service reported the 'unspecified' sync time sentinel",
    )
    poll_interval_exponent: Optional[int] = Field(
        None,
        ge=0,
        le=17,
        description="log2 of the effective poll interval in seconds",
    )
    phase_offset: Optional[float] = Field(None, description="Phase offset in seconds")
    seconds_since_last_good_sync: Optional[float] = Field(
        None,
        ge=0.0,
        description="Seconds since the service last accepted time data",
    )
    query_succeeded: bool = Field(
        True,
        description="False if the status query itself failed",
    )
    error: Optional[str] = Field(None, description="Error message if the query failed")

    @property
    def is_healthy(self) -> bool:
        return self.query_succeeded

    @property
    def is_local_clock(self) -> bool:
        """True if the service is not synchronized to an external source."""
        if self.stratum == 0:
            return True
        source = (self.source or "").strip()
        return any(source.lower() == s.lower() for s in LOCAL_CLOCK_SOURCES)

    @property
    def poll_interval_seconds(self) -> Optional[int]:
        if self.poll_interval_exponent is None:
            return None
        return 2 ** self.poll_interval_exponent

    def hours_since_sync(self, now: datetime) -> Optional[float]:
        """
        Fractional wall-clock hours between the last successful sync and now.

        Falls back to the service's own "time since last good sync" counter
        when the timestamp could not be read or lies in the future. None if
        neither gives a usable age.
        """
        if self.last_successful_sync is not None:
            hours = (now - self.last_successful_sync).total_seconds() / 3600.0
            if hours >= 0:
                return hours
        if self.seconds_since_last_good_sync is not None:
            return self.seconds_since_last_good_sync / 3600.0
        return None

    @classmethod
    def failed(cls, error: str) -> "SyncStatus":
        return cls(query_succeeded=False, error=error)


class PeerRecord(BaseModel):
    """One entry of `w32tm /query /peers`."""

    name: str = Field(..., description="Peer name as configured, e.g. time.windows.com,0x9")
    state: Optional[str] = Field(None, description="Free-form peer state, e.g. Active, Pending")
    stratum: Optional[int] = Field(None, ge=0, description="Peer stratum, if reported")
    peer_type: Optional[str] = Field(None, description="Peer type, e.g. Manual (NTP.NtpServer)")
    last_sync: Optional[str] = Field(None, description="Last successful sync time as reported")


class PeerReport(BaseModel):
    """Result of a peer query."""

    peers: List[PeerRecord] = Field(default_factory=list)
    count: int = Field(0, ge=0, description="Number of parsed peer blocks")
    query_succeeded: bool = Field(True, description="False if the peer query failed")
    error: Optional[str] = Field(None, description="Error message if the query failed")
