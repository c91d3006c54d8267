"""FastAPI router exposing the realtime connection status.

Endpoints:
    - GET  /realtime/status: connection state, indicator and reconnect counters
    - POST /realtime/reconnect: explicit retry after reconnection gave up

The LiveSyncClient instance lives on ``app.state.livesync`` (set in the
lifespan in main.py).
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from livesync.errors import RealtimeError

from .client import LiveSyncClient
from .schemas import RealtimeStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


def get_livesync(request: Request) -> LiveSyncClient:
    client = getattr(request.app.state, "livesync", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Realtime client not initialized",
        )
    return client


@router.get("/status", response_model=RealtimeStatus)
async def realtime_status(client: LiveSyncClient = Depends(get_livesync)) -> RealtimeStatus:
    return RealtimeStatus.model_validate(client.status())


@router.post("/reconnect", response_model=RealtimeStatus)
async def realtime_reconnect(client: LiveSyncClient = Depends(get_livesync)) -> RealtimeStatus:
    """Retry the connection now, restarting the backoff budget.

    Returns 503 with the failure reason if the attempt does not succeed.
    """
    try:
        await client.reconnect()
    except RealtimeError as exc:
        logger.warning(f"[Realtime] Manual reconnect failed: {exc}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=exc.message,
        ) from exc
    return RealtimeStatus.model_validate(client.status())
