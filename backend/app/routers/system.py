from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Request

router = APIRouter(tags=["system"])


@router.get("/health")
async def health(request: Request):
    settings = request.app.state.settings
    upstream = getattr(request.app.state, "upstream", None)
    poller = getattr(request.app.state, "poller", None)
    ws_manager = getattr(request.app.state, "ws_manager", None)

    upstream_info = {"enabled": upstream is not None}
    if upstream is not None:
        reconnect = upstream.reconnect_state
        upstream_info.update(
            {
                "url": upstream.url,
                "state": upstream.state.value,
                "connected": upstream.is_connected,
                "pending_messages": upstream.pending_count,
                "reconnect_attempt": reconnect.attempt,
                "reconnect_scheduled_at": reconnect.scheduled_at.isoformat() if reconnect.scheduled_at else None,
            }
        )

    alerts_info = {"enabled": poller is not None}
    if poller is not None:
        alerts_info.update(poller.get_cache_stats().model_dump(mode="json"))

    degraded = upstream is not None and not upstream.is_connected
    return {
        "ok": True,
        "status": "degraded" if degraded else "ok",
        "app": settings.app_name,
        "environment": settings.environment,
        "upstream": upstream_info,
        "alerts": alerts_info,
        "browser_clients": ws_manager.connection_count if ws_manager is not None else 0,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
