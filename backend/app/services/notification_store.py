from __future__ import annotations

from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List
from uuid import uuid4

from app.schemas import (
    Notification,
    NotificationFilters,
    NotificationPriority,
    NotificationStats,
    NotificationType,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class NotificationStore:
    """In-memory notification feed, newest first, capped at ``max_items``."""

    def __init__(self, max_items: int = 200, clock: Callable[[], datetime] | None = None) -> None:
        self._items: Deque[Notification] = deque(maxlen=max(1, max_items))
        self._clock = clock or _utc_now

    def __len__(self) -> int:
        return len(self._items)

    def create(
        self,
        *,
        type: NotificationType,
        priority: NotificationPriority,
        title: str,
        message: str,
        alert_id: str | None = None,
        portfolio_id: str | None = None,
        data: Dict[str, Any] | None = None,
        action_url: str | None = None,
        action_label: str | None = None,
    ) -> Notification:
        notification = Notification(
            id=str(uuid4()),
            type=type,
            priority=priority,
            title=title,
            message=message,
            timestamp=self._clock(),
            is_read=False,
            alert_id=alert_id,
            portfolio_id=portfolio_id,
            data=data or {},
            action_url=action_url,
            action_label=action_label,
        )
        self._items.appendleft(notification)
        return notification

    def get(self, notification_id: str) -> Notification | None:
        for item in self._items:
            if item.id == notification_id:
                return item
        return None

    def mark_as_read(self, notification_id: str) -> bool:
        item = self.get(notification_id)
        if item is None:
            return False
        item.is_read = True
        return True

    def mark_all_as_read(self) -> int:
        changed = 0
        for item in self._items:
            if not item.is_read:
                item.is_read = True
                changed += 1
        return changed

    def delete(self, notification_id: str) -> bool:
        item = self.get(notification_id)
        if item is None:
            return False
        self._items.remove(item)
        return True

    def clear_all(self) -> int:
        removed = len(self._items)
        self._items.clear()
        return removed

    def list(self, filters: NotificationFilters | None = None) -> List[Notification]:
        if filters is None:
            return list(self._items)
        date_from = _as_utc(filters.date_from) if filters.date_from else None
        date_to = _as_utc(filters.date_to) if filters.date_to else None

        out: List[Notification] = []
        for item in self._items:
            if filters.type is not None and item.type != filters.type:
                continue
            if filters.priority is not None and item.priority != filters.priority:
                continue
            if filters.is_read is not None and item.is_read != filters.is_read:
                continue
            stamp = _as_utc(item.timestamp)
            if date_from is not None and stamp < date_from:
                continue
            if date_to is not None and stamp > date_to:
                continue
            out.append(item)
        return out

    def unread(self) -> List[Notification]:
        return [item for item in self._items if not item.is_read]

    def stats(self) -> NotificationStats:
        by_type: Dict[str, int] = {}
        by_priority: Dict[str, int] = {}
        for item in self._items:
            by_type[item.type.value] = by_type.get(item.type.value, 0) + 1
            by_priority[item.priority.value] = by_priority.get(item.priority.value, 0) + 1
        return NotificationStats(
            total=len(self._items),
            unread=sum(1 for item in self._items if not item.is_read),
            by_type=by_type,
            by_priority=by_priority,
        )
