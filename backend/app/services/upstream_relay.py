from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List

from app.schemas import AlertTriggeredMessage, MarketUpdate, MessageType, Ping, PortfolioUpdate
from app.services.connection_manager import ConnectionManager
from app.services.notification_poller import NotificationPoller
from app.ws_manager import MARKET_CHANNEL, SYSTEM_CHANNEL, WSManager

logger = logging.getLogger(__name__)


def bind_upstream(
    connection: ConnectionManager,
    ws_manager: WSManager,
    poller: NotificationPoller | None = None,
) -> List[Callable[[], None]]:
    """Wire upstream messages into the browser fan-out.

    Returns the unsubscribe callbacks so the caller can unwind the wiring.
    """

    async def on_market_update(update: MarketUpdate) -> None:
        await ws_manager.send_event(MessageType.MARKET_UPDATE.value, update.model_dump(mode="json"), channel=MARKET_CHANNEL)

    async def on_portfolio_update(update: PortfolioUpdate) -> None:
        await ws_manager.send_event(
            MessageType.PORTFOLIO_UPDATE.value, update.model_dump(mode="json"), channel=MARKET_CHANNEL
        )

    async def on_alert_triggered(message: AlertTriggeredMessage) -> None:
        if poller is None:
            return
        logger.info("Upstream reported trigger for alert %s; refreshing", message.alert_id)
        await poller.force_refresh()

    def on_ping(_: Ping) -> None:
        connection.send(MessageType.PONG, {"timestamp": datetime.now(timezone.utc).isoformat()})

    async def on_connection_change(connected: bool) -> None:
        await ws_manager.send_event(
            "upstream_status",
            {"connected": connected, "state": connection.state.value},
            channel=SYSTEM_CHANNEL,
        )

    return [
        connection.on(MessageType.MARKET_UPDATE, on_market_update),
        connection.on(MessageType.PORTFOLIO_UPDATE, on_portfolio_update),
        connection.on(MessageType.ALERT_TRIGGERED, on_alert_triggered),
        connection.on(MessageType.PING, on_ping),
        connection.on_connection_change(on_connection_change),
    ]
