from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from timekeeper.models.health import HealthVerdict
from timekeeper.services import health_evaluator

router = APIRouter()


@router.get("/ntp", response_model=HealthVerdict, summary="Time sync health")
async def ntp_health(peers: bool = False) -> HealthVerdict:
    """
    Evaluate time synchronization health of the host.

    Runs the Service, TimeSync and Configuration checks, plus the Peers check
    when `peers=true`. This endpoint only reads; it never triggers a repair.

    If the configured thresholds are inconsistent (e.g. TIMEKEEPER_*
    environment variables), a HTTP 503 Service Unavailable is returned.
    """
    try:
        return health_evaluator.evaluate_host_health(include_peers=peers)
    except ValidationError as exc:
        raise HTTPException(
            status_code=503,
            detail=f"Invalid health thresholds: {exc}",
        ) from exc
