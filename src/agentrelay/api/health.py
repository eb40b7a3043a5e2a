from fastapi import APIRouter, Request

from agentrelay.config import get_settings

router = APIRouter()


@router.get("")
async def health(request: Request) -> dict[str, object]:
    """Liveness plus a summary of the relayed session."""
    hub = request.app.state.hub
    return {
        "status": "ok",
        "version": get_settings().app_version,
        "session": hub.session.phase.value,
        "clients": len(hub.clients),
        "state": hub.state.value,
    }
