from fastapi import APIRouter, HTTPException

from timekeeper.models.configuration import NtpConfiguration
from timekeeper.models.status import PeerReport, SyncStatus
from timekeeper.services import ntp_settings, settings_store, status_parser, time_service

router = APIRouter()


@router.get("/status", response_model=SyncStatus, summary="Time service status")
async def sync_status() -> SyncStatus:
    """
    Return the parsed output of `w32tm /query /status`.

    If w32tm is missing or the query fails, a HTTP 503 Service Unavailable
    is returned with the error message as detail.
    """
    try:
        text = time_service.get_time_service().query()
    except time_service.TimeServiceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return status_parser.parse_status(text)


@router.get("/peers", response_model=PeerReport, summary="Time service peers")
async def sync_peers() -> PeerReport:
    try:
        text = time_service.get_time_service().query_peers()
    except time_service.TimeServiceError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return status_parser.parse_peers(text)


@router.get(
    "/configuration",
    response_model=NtpConfiguration,
    summary="Persisted time settings",
)
async def sync_configuration() -> NtpConfiguration:
    """Return the time settings as stored; readable=false if they cannot be read."""
    return ntp_settings.read_configuration(settings_store.get_settings_store())
