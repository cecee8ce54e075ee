import logging
import re
import subprocess
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from timekeeper.config import get_settings
from timekeeper.models.configuration import NtpServer

logger = logging.getLogger(__name__)


class Region(str, Enum):
    NORTH_AMERICA = "NorthAmerica"
    EUROPE = "Europe"
    ASIA = "Asia"
    OCEANIA = "Oceania"
    SOUTH_AMERICA = "SouthAmerica"
    AFRICA = "Africa"
    AUTO = "Auto"


_POOL_ZONES: Dict[Region, str] = {
    Region.NORTH_AMERICA: "north-america",
    Region.EUROPE: "europe",
    Region.ASIA: "asia",
    Region.OCEANIA: "oceania",
    Region.SOUTH_AMERICA: "south-america",
    Region.AFRICA: "africa",
}

FALLBACK_REGION = Region.NORTH_AMERICA

# Checked in order; the more specific South American patterns come before
# the generic "Pacific"/"America/" ones. Matches Windows ids and IANA names.
_TIMEZONE_PATTERNS: List[Tuple[Region, re.Pattern]] = [
    (
        Region.SOUTH_AMERICA,
        re.compile(
            r"SA (Pacific|Eastern|Western) Standard Time|Pacific SA|E\. South America|"
            r"Argentina|Venezuela|Paraguay|Montevideo|Magallanes|Bahia|Tocantins|"
            r"America/(Sao_Paulo|Argentina|Buenos_Aires|Santiago|Lima|Bogota|Caracas|"
            r"Montevideo|Asuncion|La_Paz|Guayaquil|Punta_Arenas|Fortaleza|Recife|"
            r"Manaus|Belem|Bahia|Cayenne|Paramaribo|Guyana)",
            re.IGNORECASE,
        ),
    ),
    (
        Region.OCEANIA,
        re.compile(
            r"AUS (Central|Eastern)|Aus Central|Cen\. Australia|E\. Australia|W\. Australia|"
            r"Tasmania|New Zealand|Fiji|Tonga|Samoa|Chatham|Norfolk|Lord Howe|"
            r"West Pacific|Central Pacific|Australia/|Pacific/(Auckland|Fiji|Guam|"
            r"Port_Moresby|Noumea|Tongatapu|Apia|Chatham|Norfolk|Efate|Guadalcanal)",
            re.IGNORECASE,
        ),
    ),
    (
        Region.AFRICA,
        re.compile(
            r"South Africa|Egypt|Morocco|W\. Central Africa|E\. Africa|Namibia|"
            r"Libya|Sudan|Sao Tome|Africa/",
            re.IGNORECASE,
        ),
    ),
    (
        Region.EUROPE,
        re.compile(
            r"GMT Standard Time|Greenwich|W\. Europe|Central Europe|"
            r"E\. Europe|Romance|\bFLE\b|\bGTB\b|Russian|Kaliningrad|Turkey|Belarus|Astrakhan|"
            r"Volgograd|Saratov|Europe/|Atlantic/(Reykjavik|Faroe|Madeira|Canary)",
            re.IGNORECASE,
        ),
    ),
    (
        Region.ASIA,
        re.compile(
            r"China|Tokyo|Korea|\bIndia\b|Singapore|Taipei|SE Asia|N\. Central Asia|"
            r"Central Asia|\bArab|Iran|Israel|Jordan|Syria|Middle East|"
            r"Pakistan|Nepal|Bangladesh|Myanmar|Sri Lanka|Afghanistan|West Asia|"
            r"North Asia|Yakutsk|Vladivostok|Ekaterinburg|Omsk|Magadan|Ulaanbaatar|"
            r"Georgian|Azerbaijan|Caucasus|Asia/",
            re.IGNORECASE,
        ),
    ),
    (
        Region.NORTH_AMERICA,
        re.compile(
            r"Pacific Standard Time|Mountain|Central Standard Time|Central America|"
            r"Eastern Standard Time|Atlantic Standard Time|Alaskan|Hawaiian|Aleutian|"
            r"Newfoundland|Canada|Mexico|US Eastern|US Mountain|Cuba|Haiti|Greenland|"
            r"America/|US/|Canada/|Pacific/Honolulu",
            re.IGNORECASE,
        ),
    ),
]


class RegionResolution(BaseModel):
    """Outcome of mapping a requested region to a concrete server pool."""

    requested: Region
    region: Region
    timezone: Optional[str] = Field(None, description="Timezone used for Auto resolution")
    fallback: bool = Field(
        False,
        description="True if the timezone was not recognised and the default region was used",
    )
    servers: List[NtpServer] = Field(default_factory=list)


def servers_for_region(region: Region) -> List[NtpServer]:
    """Return the four continental pool.ntp.org hosts for a region."""
    if region == Region.AUTO:
        raise ValueError("Auto must be resolved to a concrete region first")
    zone = _POOL_ZONES[region]
    return [NtpServer(host=f"{i}.{zone}.pool.ntp.org") for i in range(4)]


def region_for_timezone(timezone: Optional[str]) -> Tuple[Region, bool]:
    """
    Map a timezone name to a region.

    Returns (region, fallback); fallback is True when nothing matched and
    FALLBACK_REGION was returned instead.
    """
    name = (timezone or "").strip()
    if name:
        for region, pattern in _TIMEZONE_PATTERNS:
            if pattern.search(name):
                return region, False
    return FALLBACK_REGION, True


def detect_timezone() -> Optional[str]:
    """
    Determine the host timezone name.

    Prefers the TIMEKEEPER_TIMEZONE setting, then `tzutil /g` (the Windows
    timezone id), then the local tz name reported by the C library.
    """
    configured = get_settings().timezone
    if configured:
        return configured
    try:
        result = subprocess.run(
            ["tzutil", "/g"],
            check=True,
            capture_output=True,
            text=True,
        )
    except (FileNotFoundError, subprocess.CalledProcessError) as exc:
        logger.debug("tzutil unavailable (%s); using the local tz name", exc)
    else:
        name = result.stdout.strip()
        if name:
            return name
    return datetime.now().astimezone().tzname()


def resolve_region(region: Region, timezone: Optional[str] = None) -> RegionResolution:
    """Resolve `region` (possibly Auto) to a region and its server list."""
    if region != Region.AUTO:
        return RegionResolution(
            requested=region,
            region=region,
            servers=servers_for_region(region),
        )

    if timezone is None:
        timezone = detect_timezone()
    resolved, fallback = region_for_timezone(timezone)
    if fallback:
        logger.warning(
            "Timezone %r does not map to a known region; falling back to %s",
            timezone,
            resolved.value,
        )
    else:
        logger.info("Timezone %r maps to region %s", timezone, resolved.value)

    return RegionResolution(
        requested=region,
        region=resolved,
        timezone=timezone,
        fallback=fallback,
        servers=servers_for_region(resolved),
    )
