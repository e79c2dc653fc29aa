from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, Field


class ConditionType(str, Enum):
    DRIFT = "drift"
    SECTOR_DRIFT = "sector_drift"
    ASSET_CLASS_DRIFT = "asset_class_drift"
    PRICE_MOVEMENT = "price_movement"
    CASH_IDLE = "cash_idle"
    DIVIDEND = "dividend"
    CUSTOM = "custom"


class AlertStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    TRIGGERED = "triggered"


class AlertFrequency(str, Enum):
    IMMEDIATE = "immediate"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class ActionType(str, Enum):
    NOTIFICATION = "notification"
    EMAIL = "email"
    WEBHOOK = "webhook"


def _coerce_enum(enum_cls: Type[Enum], value: Any, default: Enum) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        return default


class AlertRule(BaseModel):
    id: str
    user_id: Optional[str] = None
    name: str = ""
    is_active: bool = True
    status: AlertStatus = AlertStatus.ACTIVE
    frequency: AlertFrequency = AlertFrequency.IMMEDIATE
    condition_type: ConditionType = ConditionType.CUSTOM
    condition_config: Dict[str, Any] = Field(default_factory=dict)
    action_type: ActionType = ActionType.NOTIFICATION
    action_config: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_triggered: Optional[datetime] = None
    last_checked: Optional[datetime] = None
    portfolio_id: Optional[str] = None
    account_id: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "AlertRule":
        """Build a rule from the backend's response shape.

        Unknown enum values fall back to safe defaults instead of failing:
        condition type becomes ``custom``, status is derived from ``is_active``,
        action type becomes ``notification`` and frequency ``immediate``.
        """
        is_active = bool(payload.get("is_active", True))
        fallback_status = AlertStatus.ACTIVE if is_active else AlertStatus.PAUSED
        portfolio = payload.get("portfolio")
        account = payload.get("account")
        user = payload.get("user", payload.get("user_id"))
        return cls(
            id=str(payload.get("id")),
            user_id=str(user) if user is not None else None,
            name=str(payload.get("name") or ""),
            is_active=is_active,
            status=_coerce_enum(AlertStatus, payload.get("status"), fallback_status),
            frequency=_coerce_enum(AlertFrequency, payload.get("frequency"), AlertFrequency.IMMEDIATE),
            condition_type=_coerce_enum(ConditionType, payload.get("condition_type"), ConditionType.CUSTOM),
            condition_config=payload.get("condition_config") or {},
            action_type=_coerce_enum(ActionType, payload.get("action_type"), ActionType.NOTIFICATION),
            action_config=payload.get("action_config") or {},
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
            last_triggered=payload.get("last_triggered") or None,
            last_checked=payload.get("last_checked") or None,
            portfolio_id=str(portfolio) if portfolio is not None else None,
            account_id=str(account) if account is not None else None,
        )


class AlertRuleInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    is_active: bool = True
    status: AlertStatus = AlertStatus.ACTIVE
    frequency: AlertFrequency = AlertFrequency.IMMEDIATE
    condition_type: ConditionType
    condition_config: Dict[str, Any] = Field(default_factory=dict)
    action_type: ActionType = ActionType.NOTIFICATION
    action_config: Dict[str, Any] = Field(default_factory=dict)
    portfolio_id: Optional[str] = None
    account_id: Optional[str] = None


class AlertRulePatch(BaseModel):
    name: Optional[str] = None
    is_active: Optional[bool] = None
    status: Optional[AlertStatus] = None
    frequency: Optional[AlertFrequency] = None
    condition_type: Optional[ConditionType] = None
    condition_config: Optional[Dict[str, Any]] = None
    action_type: Optional[ActionType] = None
    action_config: Optional[Dict[str, Any]] = None
    portfolio_id: Optional[str] = None
    account_id: Optional[str] = None


class AlertHistory(BaseModel):
    id: str
    alert_rule_id: str
    triggered_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    was_triggered: bool = True
    context_data: Dict[str, Any] = Field(default_factory=dict)
    action_results: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "AlertHistory":
        return cls(
            id=str(payload.get("id")),
            alert_rule_id=str(payload.get("alert_rule")),
            triggered_at=payload.get("triggered_at") or None,
            resolved_at=payload.get("resolved_at") or None,
            was_triggered=bool(payload.get("was_triggered", True)),
            context_data=payload.get("context_data") or {},
            action_results=payload.get("action_results") or {},
        )


class NotificationType(str, Enum):
    ALERT_TRIGGERED = "alert_triggered"
    ALERT_RESOLVED = "alert_resolved"
    PORTFOLIO_DRIFT = "portfolio_drift"
    PRICE_MOVEMENT = "price_movement"
    SYSTEM = "system"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    INFO = "info"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class Notification(BaseModel):
    id: str
    type: NotificationType
    priority: NotificationPriority
    title: str
    message: str
    timestamp: datetime
    is_read: bool = False
    alert_id: Optional[str] = None
    portfolio_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)
    action_url: Optional[str] = None
    action_label: Optional[str] = None


class NotificationStats(BaseModel):
    total: int = 0
    unread: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_priority: Dict[str, int] = Field(default_factory=dict)


class NotificationFilters(BaseModel):
    type: Optional[NotificationType] = None
    priority: Optional[NotificationPriority] = None
    is_read: Optional[bool] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None


# Realtime wire messages. Every frame is {"type": <MessageType>, "data": <payload>}.


class MessageType(str, Enum):
    MARKET_UPDATE = "market_update"
    PORTFOLIO_UPDATE = "portfolio_update"
    ALERT_TRIGGERED = "alert_triggered"
    PING = "ping"
    PONG = "pong"


class MarketUpdate(BaseModel):
    symbol: str
    price: float
    change_percent: Optional[float] = None
    volume: Optional[int] = None
    timestamp: Optional[datetime] = None


class PortfolioUpdate(BaseModel):
    portfolio_id: str
    total_value: Optional[float] = None
    change_percent: Optional[float] = None
    timestamp: Optional[datetime] = None


class AlertTriggeredMessage(BaseModel):
    alert_id: str
    triggered_at: Optional[datetime] = None


class Ping(BaseModel):
    timestamp: Optional[datetime] = None


class Pong(BaseModel):
    timestamp: Optional[datetime] = None


MESSAGE_MODELS: Dict[str, Type[BaseModel]] = {
    MessageType.MARKET_UPDATE.value: MarketUpdate,
    MessageType.PORTFOLIO_UPDATE.value: PortfolioUpdate,
    MessageType.ALERT_TRIGGERED.value: AlertTriggeredMessage,
    MessageType.PING.value: Ping,
    MessageType.PONG.value: Pong,
}


class CacheStats(BaseModel):
    cached_rules: int
    last_full_check: Optional[datetime] = None
    cache_age_seconds: Optional[float] = None
    check_in_progress: bool = False
