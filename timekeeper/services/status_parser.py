import re
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from timekeeper.models.status import PeerRecord, PeerReport, SyncStatus

NEVER_SYNCED_SENTINEL = "unspecified"

# Leading signed integer, e.g. "4 (secondary reference - syncd by (S)NTP)"
_INT_PATTERN = re.compile(r"^\s*([-+]?\d+)")
# Seconds value, e.g. "0.0154902s"
_SECONDS_PATTERN = re.compile(r"^\s*([-+]?\d+(?:[.,]\d+)?)\s*s\b")
# Poll interval, e.g. "10 (1024s)"
_POLL_PATTERN = re.compile(r"^\s*(\d+)\s*\((\d+)s\)")

# w32tm prints timestamps in the host's locale. The 12-hour clock is only
# used month-first (en-US); 24-hour slash dates can be either way round.
_TIMESTAMP_FORMATS = (
    "%m/%d/%Y %I:%M:%S %p",
    "%d.%m.%Y %H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%Y/%m/%d %H:%M:%S",
)
_SLASH_24H_FORMATS = ("%m/%d/%Y %H:%M:%S", "%d/%m/%Y %H:%M:%S")


def _split_line(line: str) -> Optional[Tuple[str, str]]:
    # Split on ":" not ": ", some locales drop the space
    if ":" not in line:
        return None
    label, value = line.split(":", 1)
    return label.strip(), value.strip()


def _parse_int(value: str) -> Optional[int]:
    match = _INT_PATTERN.match(value)
    return int(match.group(1)) if match else None


def _parse_seconds(value: str) -> Optional[float]:
    match = _SECONDS_PATTERN.match(value)
    if not match:
        return None
    return float(match.group(1).replace(",", "."))


def _parse_reference_id(value: str) -> Optional[str]:
    head = value.split("(", 1)[0].strip()
    return head or None


def _parse_poll_exponent(value: str) -> Optional[int]:
    match = _POLL_PATTERN.match(value)
    if match:
        exponent = int(match.group(1))
    else:
        exponent = _parse_int(value)
    if exponent is None or not 0 <= exponent <= 17:
        return None
    return exponent


def parse_timestamp(value: str) -> Optional[datetime]:
    """
    Parse a w32tm timestamp into an aware datetime.

    Naive values are interpreted as host-local time, which is what w32tm
    prints. Returns None for the 'unspecified' sentinel, unknown formats and
    24-hour slash dates whose day and month could be swapped.
    """
    text = value.strip()
    if not text or text.lower() == NEVER_SYNCED_SENTINEL:
        return None
    for fmt in _TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed.astimezone()

    candidates = set()
    for fmt in _SLASH_24H_FORMATS:
        try:
            candidates.add(datetime.strptime(text, fmt))
        except ValueError:
            continue
    if len(candidates) != 1:
        return None
    return candidates.pop().astimezone()


def _last_sync_fields(value: str) -> Dict[str, object]:
    if value.strip().lower() == NEVER_SYNCED_SENTINEL:
        return {"never_synced": True}
    parsed = parse_timestamp(value)
    if parsed is None:
        return {}
    return {"last_successful_sync": parsed}


# label -> rule returning the fields it contributes (empty dict = field absent)
_STATUS_RULES: Dict[str, Callable[[str], Dict[str, object]]] = {
    "leap indicator": lambda v: {"leap_indicator": _parse_int(v)},
    "stratum": lambda v: {"stratum": _parse_int(v)},
    "precision": lambda v: {"precision": _parse_int(v)},
    "root delay": lambda v: {"root_delay": _parse_seconds(v)},
    "root dispersion": lambda v: {"root_dispersion": _parse_seconds(v)},
    "referenceid": lambda v: {"reference_id": _parse_reference_id(v)},
    "last successful sync time": _last_sync_fields,
    "source": lambda v: {"source": v or None},
    "poll interval": lambda v: {"poll_interval_exponent": _parse_poll_exponent(v)},
    "phase offset": lambda v: {"phase_offset": _parse_seconds(v)},
    "time since last good sync time": lambda v: {
        "seconds_since_last_good_sync": _parse_seconds(v)
    },
}


def parse_status(text: str) -> SyncStatus:
    """
    Turn `w32tm /query /status` output into a SyncStatus.

    Every labelled line is matched against one rule; a rule that does not
    match leaves its field unset. Unknown labels and wrapped lines are
    ignored. A report with no "Last Successful Sync Time" line at all is
    treated as never synchronized.
    """
    fields: Dict[str, object] = {}
    saw_last_sync = False

    for line in text.splitlines():
        parts = _split_line(line)
        if parts is None:
            continue
        label, value = parts
        rule = _STATUS_RULES.get(label.lower())
        if rule is None:
            continue
        if label.lower() == "last successful sync time":
            saw_last_sync = True
        for key, parsed in rule(value).items():
            if parsed is not None:
                fields[key] = parsed

    if not saw_last_sync:
        fields["never_synced"] = True

    for key in ("stratum", "seconds_since_last_good_sync"):
        value = fields.get(key)
        if isinstance(value, (int, float)) and value < 0:
            del fields[key]

    return SyncStatus(**fields)


def parse_peers(text: str) -> PeerReport:
    """
    Turn `w32tm /query /peers` output into a PeerReport.

    Each "Peer:" line opens a new record; State, Stratum, Type and
    Last Successful Sync Time lines fill in the current record.
    """
    peers: List[PeerRecord] = []
    current: Optional[Dict[str, object]] = None

    def _flush() -> None:
        if current is not None and current.get("name"):
            peers.append(PeerRecord(**current))

    for line in text.splitlines():
        parts = _split_line(line)
        if parts is None:
            continue
        label, value = parts
        key = label.lower()

        if key == "peer":
            _flush()
            current = {"name": value}
            continue
        if current is None:
            continue

        if key == "state":
            current["state"] = value or None
        elif key == "stratum":
            stratum = _parse_int(value)
            if stratum is not None and stratum >= 0:
                current["stratum"] = stratum
        elif key == "type":
            current["peer_type"] = value or None
        elif key == "last successful sync time":
            current["last_sync"] = value or None

    _flush()
    return PeerReport(peers=peers, count=len(peers), query_succeeded=True)
