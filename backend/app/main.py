from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, get_settings
from app.routers import notifications, system
from app.services.alerts_api import AlertsApi
from app.services.connection_manager import ConnectionManager
from app.services.notification_poller import NotificationPoller
from app.services.notification_store import NotificationStore
from app.services.notifications import AlertNotifier
from app.services.upstream_relay import bind_upstream
from app.ws_manager import CHANNELS, GLOBAL_CHANNEL, NOTIFICATIONS_CHANNEL, SYSTEM_CHANNEL, WSManager

logger = logging.getLogger(__name__)

# Avoid noisy WinError 10054 callback traces from Proactor transport shutdown
# when local clients disconnect abruptly after successful responses.
if sys.platform.startswith("win"):
    try:
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
    except Exception:
        pass


def _configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logging.getLogger("app").setLevel(level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    _configure_logging(settings)

    ws_manager = WSManager()
    store = NotificationStore(max_items=settings.notification_history_limit)
    notifier = AlertNotifier(store, ws_manager)
    alerts_api = AlertsApi.from_settings(settings)
    poller = NotificationPoller.from_settings(settings, alerts_api, notifier.notify_alert_triggered)
    upstream: ConnectionManager | None = None
    if settings.upstream_ws_enabled:
        upstream = ConnectionManager(
            settings.upstream_ws_url,
            reconnect_base_delay=settings.ws_reconnect_base_delay_seconds,
            max_reconnect_attempts=settings.ws_max_reconnect_attempts,
            open_timeout=settings.ws_open_timeout_seconds,
        )
        bind_upstream(upstream, ws_manager, poller)

    app.state.settings = settings
    app.state.ws_manager = ws_manager
    app.state.notification_store = store
    app.state.notifier = notifier
    app.state.alerts_api = alerts_api
    app.state.poller = poller if settings.alert_polling_enabled else None
    app.state.upstream = upstream

    if upstream is not None:
        try:
            if not await upstream.connect():
                logger.warning("Upstream realtime server unavailable at startup; reconnecting in background")
        except Exception:
            logger.exception("Failed to connect to upstream realtime server")

    if settings.alert_polling_enabled:
        try:
            await poller.start()
        except Exception:
            logger.exception("Failed to start alert poller")

    try:
        yield
    finally:
        try:
            await poller.stop()
        except Exception:
            logger.exception("Failed to stop alert poller")

        if upstream is not None:
            try:
                await upstream.disconnect()
            except Exception:
                logger.exception("Failed to disconnect from upstream realtime server")

        try:
            await alerts_api.aclose()
        except Exception:
            logger.exception("Failed to close alerts API client")


settings = get_settings()
app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.frontend_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(system.router)
app.include_router(notifications.router)


def _parse_client_frame(raw: str) -> str:
    text = raw.strip()
    if text.lower() in {"ping", "heartbeat"}:
        return "ping"
    try:
        frame = json.loads(text)
    except ValueError:
        return ""
    if isinstance(frame, dict) and isinstance(frame.get("type"), str):
        return frame["type"]
    return ""


@app.websocket("/ws/stream")
async def websocket_stream(websocket: WebSocket):
    channels_param = websocket.query_params.get("channels", "notifications,market,system")
    requested_channels = {channel.strip() for channel in channels_param.split(",") if channel.strip()}
    channels = {channel for channel in requested_channels if channel in CHANNELS} or {GLOBAL_CHANNEL}

    manager: WSManager = websocket.app.state.ws_manager
    store: NotificationStore = websocket.app.state.notification_store
    await manager.connect(websocket, channels=channels)

    try:
        await websocket.send_json(
            {
                "type": "socket_join",
                "channel": SYSTEM_CHANNEL,
                "data": {"channels": sorted(channels)},
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        )
        if NOTIFICATIONS_CHANNEL in channels or GLOBAL_CHANNEL in channels:
            await websocket.send_json(
                {
                    "type": "notification_stats",
                    "channel": NOTIFICATIONS_CHANNEL,
                    "data": store.stats().model_dump(),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            )

        while True:
            raw = await websocket.receive_text()
            message_type = _parse_client_frame(raw)
            if message_type == "ping":
                await websocket.send_json({"type": "pong", "timestamp": datetime.now(timezone.utc).isoformat()})
            elif message_type == "mark_all_read":
                store.mark_all_as_read()
                await websocket.send_json({"type": "notification_stats", "data": store.stats().model_dump()})
            else:
                logger.debug("Ignoring browser frame: %.200s", raw)
    except WebSocketDisconnect:
        await manager.disconnect(websocket)
    except Exception:
        logger.exception("Unhandled websocket stream error")
        await manager.disconnect(websocket)


@app.get("/")
async def root():
    return {"app": settings.app_name, "status": "running"}
