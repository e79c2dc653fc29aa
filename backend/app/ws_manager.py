from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global"
NOTIFICATIONS_CHANNEL = "notifications"
MARKET_CHANNEL = "market"
SYSTEM_CHANNEL = "system"
CHANNELS = frozenset({GLOBAL_CHANNEL, NOTIFICATIONS_CHANNEL, MARKET_CHANNEL, SYSTEM_CHANNEL})


class WSManager:
    """Browser-facing fan-out: sockets grouped by channel, plus a global tap."""

    def __init__(self) -> None:
        self._connections: Set[WebSocket] = set()
        self._channel_connections: Dict[str, Set[WebSocket]] = defaultdict(set)
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def channel_counts(self) -> Dict[str, int]:
        return {channel: len(sockets) for channel, sockets in self._channel_connections.items() if sockets}

    async def connect(self, websocket: WebSocket, channels: set[str] | None = None) -> None:
        await websocket.accept()
        async with self._lock:
            self._connections.add(websocket)
            for channel in channels or {GLOBAL_CHANNEL}:
                self._channel_connections[channel].add(websocket)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._connections.discard(websocket)
            for subscribers in self._channel_connections.values():
                subscribers.discard(websocket)

    async def broadcast(self, event: Dict[str, Any], channel: str = GLOBAL_CHANNEL) -> int:
        payload = json.dumps(event, default=str)
        async with self._lock:
            targets = list(
                self._channel_connections.get(channel, set()) | self._channel_connections.get(GLOBAL_CHANNEL, set())
            )

        stale: list[WebSocket] = []
        for socket in targets:
            try:
                await socket.send_text(payload)
            except Exception:
                stale.append(socket)

        for socket in stale:
            await self.disconnect(socket)
        if stale:
            logger.info("Dropped %d stale browser sockets on %s", len(stale), channel)
        return len(targets) - len(stale)

    async def send_event(self, message_type: str, data: Any, channel: str = GLOBAL_CHANNEL) -> int:
        return await self.broadcast(
            {
                "type": message_type,
                "channel": channel,
                "data": data,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            channel=channel,
        )
