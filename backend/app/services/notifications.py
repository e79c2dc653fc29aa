from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict

from app.schemas import (
    AlertHistory,
    AlertRule,
    ConditionType,
    Notification,
    NotificationPriority,
    NotificationType,
)
from app.services.notification_store import NotificationStore
from app.ws_manager import NOTIFICATIONS_CHANNEL, WSManager

logger = logging.getLogger(__name__)

_DRIFT_TYPES = {ConditionType.DRIFT, ConditionType.SECTOR_DRIFT, ConditionType.ASSET_CLASS_DRIFT}


@dataclass(frozen=True)
class Toast:
    level: str
    duration_ms: int


_TOASTS = {
    NotificationPriority.URGENT: Toast("error", 10_000),
    NotificationPriority.HIGH: Toast("warning", 8_000),
}
_DEFAULT_TOAST = Toast("info", 6_000)
_RESOLVED_TOAST = Toast("success", 4_000)


def _threshold(config: Dict[str, Any], key: str) -> float:
    try:
        return float(config.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


def _config_value(config: Dict[str, Any], *keys: str, default: str = "N/A") -> str:
    for key in keys:
        value = config.get(key)
        if value not in (None, ""):
            return str(value)
    return default


def alert_action_url(rule: AlertRule) -> str:
    return f"/dashboard/alerts/{rule.id}"


def notification_type_for_alert(rule: AlertRule) -> NotificationType:
    if rule.condition_type in _DRIFT_TYPES:
        return NotificationType.PORTFOLIO_DRIFT
    if rule.condition_type is ConditionType.PRICE_MOVEMENT:
        return NotificationType.PRICE_MOVEMENT
    return NotificationType.ALERT_TRIGGERED


def priority_for_alert(rule: AlertRule) -> NotificationPriority:
    config = rule.condition_config
    if rule.condition_type is ConditionType.PRICE_MOVEMENT:
        threshold = _threshold(config, "threshold_pct")
        if threshold >= 10:
            return NotificationPriority.URGENT
        if threshold >= 5:
            return NotificationPriority.HIGH
    if rule.condition_type in _DRIFT_TYPES:
        threshold = _threshold(config, "thresholdPercent")
        if threshold >= 20:
            return NotificationPriority.URGENT
        if threshold >= 10:
            return NotificationPriority.HIGH
    return NotificationPriority.NORMAL


def alert_message(rule: AlertRule) -> str:
    config = rule.condition_config
    kind = rule.condition_type
    if kind is ConditionType.PRICE_MOVEMENT:
        symbol = _config_value(config, "symbol", default="selected asset")
        return f"Price movement of {_config_value(config, 'threshold_pct')}% detected for {symbol}."
    if kind is ConditionType.DRIFT:
        return f"Portfolio drift of {_config_value(config, 'thresholdPercent')}% detected from target allocation."
    if kind is ConditionType.SECTOR_DRIFT:
        sector = _config_value(config, "sectorName", "sectorId", default="selected sector")
        return f"Sector drift of {_config_value(config, 'thresholdPercent')}% detected in {sector}."
    if kind is ConditionType.ASSET_CLASS_DRIFT:
        asset_class = _config_value(config, "assetClassName", "assetClassId", default="selected asset class")
        return f"Asset class drift of {_config_value(config, 'thresholdPercent')}% detected in {asset_class}."
    if kind is ConditionType.CASH_IDLE:
        return f"Idle cash of ${_config_value(config, 'threshold_amount')} detected in your portfolio."
    if kind is ConditionType.DIVIDEND:
        return f"Dividend payment received for {_config_value(config, 'symbol', default='selected asset')}."
    return "Alert condition has been met."


def short_alert_message(rule: AlertRule) -> str:
    config = rule.condition_config
    kind = rule.condition_type
    if kind is ConditionType.PRICE_MOVEMENT:
        return f"{_config_value(config, 'threshold_pct')}% price movement"
    if kind is ConditionType.DRIFT:
        return f"{_config_value(config, 'thresholdPercent')}% portfolio drift"
    if kind is ConditionType.SECTOR_DRIFT:
        return f"{_config_value(config, 'thresholdPercent')}% sector drift"
    if kind is ConditionType.ASSET_CLASS_DRIFT:
        return f"{_config_value(config, 'thresholdPercent')}% asset class drift"
    if kind is ConditionType.CASH_IDLE:
        return f"${_config_value(config, 'threshold_amount')} idle cash"
    if kind is ConditionType.DIVIDEND:
        return "Dividend received"
    return "Alert triggered"


class AlertNotifier:
    """Turns alert triggers into stored notifications and live toasts."""

    def __init__(self, store: NotificationStore, ws_manager: WSManager | None = None) -> None:
        self.store = store
        self.ws_manager = ws_manager

    async def notify_alert_triggered(self, rule: AlertRule, history: AlertHistory | None = None) -> Notification:
        priority = priority_for_alert(rule)
        notification = self.store.create(
            type=notification_type_for_alert(rule),
            priority=priority,
            title=f"Alert Triggered: {rule.name}",
            message=alert_message(rule),
            alert_id=rule.id,
            portfolio_id=rule.portfolio_id,
            action_url=alert_action_url(rule),
            action_label="View Alert Details",
            data={
                "alert_type": rule.condition_type.value,
                "alert_config": rule.condition_config,
                "history_id": history.id if history else None,
            },
        )
        logger.info("Alert %s (%s) triggered; notification %s", rule.id, rule.name, notification.id)
        await self._push(
            notification,
            _TOASTS.get(priority, _DEFAULT_TOAST),
            f"{rule.name}: {short_alert_message(rule)}",
        )
        return notification

    async def notify_alert_resolved(self, rule: AlertRule) -> Notification:
        notification = self.store.create(
            type=NotificationType.ALERT_RESOLVED,
            priority=NotificationPriority.NORMAL,
            title=f"Alert Resolved: {rule.name}",
            message="The alert condition is no longer met.",
            alert_id=rule.id,
            portfolio_id=rule.portfolio_id,
            action_url=alert_action_url(rule),
            action_label="View Alert",
            data={"alert_type": rule.condition_type.value},
        )
        await self._push(notification, _RESOLVED_TOAST, f"Alert resolved: {rule.name}")
        return notification

    async def notify_system(
        self,
        title: str,
        message: str,
        type: NotificationType = NotificationType.SYSTEM,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        action_url: str | None = None,
        action_label: str | None = None,
    ) -> Notification:
        notification = self.store.create(
            type=type,
            priority=priority,
            title=title,
            message=message,
            action_url=action_url,
            action_label=action_label,
        )
        await self._push(notification, None, None)
        return notification

    async def _push(self, notification: Notification, toast: Toast | None, toast_message: str | None) -> None:
        if self.ws_manager is None:
            return
        data: Dict[str, Any] = {
            "notification": notification.model_dump(mode="json"),
            "stats": self.store.stats().model_dump(),
        }
        if toast is not None:
            data["toast"] = {
                "level": toast.level,
                "message": toast_message,
                "duration_ms": toast.duration_ms,
                "action": {"label": "View", "url": notification.action_url} if notification.action_url else None,
            }
        await self.ws_manager.send_event("notification", data, channel=NOTIFICATIONS_CHANNEL)
