from __future__ import annotations

import logging
from typing import Any, Dict, List

import httpx
from pydantic import ValidationError

from app.config import Settings
from app.schemas import AlertHistory, AlertRule, AlertRuleInput, AlertRulePatch, AlertStatus

logger = logging.getLogger(__name__)

RULES_ENDPOINT = "/alerts/rules/"
HISTORY_ENDPOINT = "/alerts/history/"
STATS_ENDPOINT = "/alerts/stat/"
DRIFT_ENDPOINT = "/portfolio/drift/"


def rule_detail_endpoint(rule_id: str) -> str:
    return f"/alerts/rules/{rule_id}/"


def history_detail_endpoint(history_id: str) -> str:
    return f"/alerts/history/{history_id}/"


class AlertsApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _portfolio_ref(value: str | None) -> Any:
    if value is None or not str(value).strip():
        return 1
    raw = str(value).strip()
    return int(raw) if raw.isdigit() else raw


class AlertsApi:
    """Async client for the alerts backend (rules, history, stats, drift)."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = token
        self._timeout = timeout
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertsApi":
        return cls(
            settings.api_base_url,
            token=settings.api_auth_token,
            timeout=settings.api_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        json: Dict[str, Any] | None = None,
        params: Dict[str, Any] | None = None,
    ) -> Any:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            response = await self._client.request(method, endpoint, json=json, params=params, headers=headers)
        except httpx.TimeoutException as exc:
            raise AlertsApiError(f"Request timeout after {int(self._timeout * 1000)}ms") from exc
        except httpx.HTTPError as exc:
            raise AlertsApiError(f"{method} {endpoint} failed: {type(exc).__name__}: {exc}") from exc

        if response.status_code == 204:
            return {}

        try:
            data = response.json()
        except ValueError as exc:
            if response.is_error:
                detail = response.text or response.reason_phrase
                raise AlertsApiError(
                    f"HTTP error {response.status_code}: {detail}",
                    status_code=response.status_code,
                ) from exc
            raise AlertsApiError(
                f"Failed to parse JSON response from {endpoint}",
                status_code=response.status_code,
            ) from exc

        if response.is_error:
            message = None
            if isinstance(data, dict):
                message = data.get("error") or data.get("message") or data.get("detail")
            raise AlertsApiError(
                str(message or f"API error: {response.status_code}"),
                status_code=response.status_code,
            )
        return data

    async def get_alert_rules(self) -> List[AlertRule]:
        data = await self._request("GET", RULES_ENDPOINT)
        if not isinstance(data, list):
            logger.warning("Unexpected alert rules payload type: %s", type(data).__name__)
            return []
        rules: List[AlertRule] = []
        for item in data:
            if not isinstance(item, dict):
                continue
            try:
                rules.append(AlertRule.from_api(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed alert rule %s: %s", item.get("id"), exc)
        return rules

    async def get_alert_rule(self, rule_id: str) -> AlertRule:
        data = await self._request("GET", rule_detail_endpoint(rule_id))
        if not isinstance(data, dict):
            raise AlertsApiError(f"Unexpected payload for alert rule {rule_id}")
        return AlertRule.from_api(data)

    async def create_alert_rule(self, alert_rule: AlertRuleInput) -> AlertRule:
        body = {
            "name": alert_rule.name,
            "is_active": alert_rule.is_active,
            "status": alert_rule.status.value,
            "frequency": alert_rule.frequency.value,
            "condition_type": alert_rule.condition_type.value,
            "condition_config": alert_rule.condition_config,
            "action_type": alert_rule.action_type.value,
            "action_config": alert_rule.action_config,
            "portfolio": _portfolio_ref(alert_rule.portfolio_id),
            "account": alert_rule.account_id,
        }
        data = await self._request("POST", RULES_ENDPOINT, json=body)
        return AlertRule.from_api(data)

    async def update_alert_rule(self, rule_id: str, patch: AlertRulePatch) -> AlertRule:
        body: Dict[str, Any] = {}
        if patch.name is not None:
            body["name"] = patch.name

        # is_active and status always travel together.
        if patch.is_active is not None:
            body["is_active"] = patch.is_active
            if patch.status is None:
                body["status"] = (AlertStatus.ACTIVE if patch.is_active else AlertStatus.PAUSED).value
        if patch.status is not None:
            body["status"] = patch.status.value
            if patch.is_active is None:
                body["is_active"] = patch.status is AlertStatus.ACTIVE

        if patch.frequency is not None:
            body["frequency"] = patch.frequency.value
        if patch.condition_type is not None:
            body["condition_type"] = patch.condition_type.value
        if patch.condition_config is not None:
            body["condition_config"] = patch.condition_config
        if patch.action_type is not None:
            body["action_type"] = patch.action_type.value
        if patch.action_config is not None:
            body["action_config"] = patch.action_config
        if patch.portfolio_id is not None:
            body["portfolio"] = patch.portfolio_id
        if patch.account_id is not None:
            body["account"] = patch.account_id

        logger.debug("Updating alert rule %s with %s", rule_id, body)
        data = await self._request("PATCH", rule_detail_endpoint(rule_id), json=body)
        return AlertRule.from_api(data)

    async def delete_alert_rule(self, rule_id: str) -> None:
        await self._request("DELETE", rule_detail_endpoint(rule_id))

    async def get_alert_history(self, alert_rule_id: str | None = None) -> List[AlertHistory]:
        params = {"alert_rule": alert_rule_id} if alert_rule_id else None
        data = await self._request("GET", HISTORY_ENDPOINT, params=params)
        if not isinstance(data, list):
            return []
        return [AlertHistory.from_api(item) for item in data if isinstance(item, dict)]

    async def get_alert_stats(self) -> Dict[str, Any]:
        data = await self._request("GET", STATS_ENDPOINT)
        return data if isinstance(data, dict) else {}

    async def get_portfolio_drift(self) -> Dict[str, Any]:
        data = await self._request("GET", DRIFT_ENDPOINT)
        return data if isinstance(data, dict) else {}

    async def resolve_alert_history(self, history_id: str) -> AlertHistory:
        data = await self._request("POST", f"{history_detail_endpoint(history_id)}resolve/")
        return AlertHistory.from_api(data)
