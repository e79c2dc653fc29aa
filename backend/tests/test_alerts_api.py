from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from app.schemas import (
    ActionType,
    AlertRuleInput,
    AlertRulePatch,
    AlertStatus,
    ConditionType,
)
from app.services.alerts_api import AlertsApi, AlertsApiError

RULE_PAYLOAD = {
    "id": 7,
    "user": 3,
    "name": "Equity drift",
    "is_active": True,
    "status": "active",
    "frequency": "daily",
    "condition_type": "drift",
    "condition_config": {"thresholdPercent": 12},
    "action_type": "notification",
    "action_config": {},
    "created_at": "2024-01-01T09:00:00Z",
    "updated_at": "2024-01-01T09:30:00Z",
    "last_triggered": "2024-01-01T10:00:00Z",
    "portfolio": 1,
}


def _api(handler, token: str = "secret-token") -> AlertsApi:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://backend.test/api")
    return AlertsApi("http://backend.test/api", token=token, client=client)


def test_get_alert_rules_maps_backend_shape_and_sends_auth():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[RULE_PAYLOAD, {**RULE_PAYLOAD, "id": 8, "condition_type": "mystery", "is_active": False, "status": "?"}])

    async def scenario():
        api = _api(handler)
        try:
            return await api.get_alert_rules()
        finally:
            await api.aclose()

    rules = asyncio.run(scenario())

    assert seen[0].url.path == "/api/alerts/rules/"
    assert seen[0].headers["Authorization"] == "Bearer secret-token"
    assert [rule.id for rule in rules] == ["7", "8"]
    assert rules[0].user_id == "3"
    assert rules[0].portfolio_id == "1"
    assert rules[0].condition_type is ConditionType.DRIFT
    assert rules[0].last_triggered == datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert rules[1].condition_type is ConditionType.CUSTOM
    assert rules[1].status is AlertStatus.PAUSED


def test_get_alert_rules_tolerates_non_list_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"results": []})

    async def scenario():
        api = _api(handler)
        try:
            return await api.get_alert_rules()
        finally:
            await api.aclose()

    assert asyncio.run(scenario()) == []


def test_request_without_token_omits_authorization():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=RULE_PAYLOAD)

    async def scenario():
        api = _api(handler, token="")
        try:
            return await api.get_alert_rule("7")
        finally:
            await api.aclose()

    rule = asyncio.run(scenario())
    assert rule.name == "Equity drift"
    assert seen[0].url.path == "/api/alerts/rules/7/"
    assert "Authorization" not in seen[0].headers


def test_error_body_message_is_surfaced():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"detail": "Not found."})

    async def scenario():
        api = _api(handler)
        try:
            await api.get_alert_rule("missing")
        finally:
            await api.aclose()

    with pytest.raises(AlertsApiError) as excinfo:
        asyncio.run(scenario())
    assert str(excinfo.value) == "Not found."
    assert excinfo.value.status_code == 404


def test_non_json_error_reports_status_and_text():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    async def scenario():
        api = _api(handler)
        try:
            await api.get_alert_rules()
        finally:
            await api.aclose()

    with pytest.raises(AlertsApiError) as excinfo:
        asyncio.run(scenario())
    assert str(excinfo.value) == "HTTP error 502: Bad Gateway"
    assert excinfo.value.status_code == 502


def test_json_error_without_message_uses_status():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"ok": False})

    async def scenario():
        api = _api(handler)
        try:
            await api.get_alert_stats()
        finally:
            await api.aclose()

    with pytest.raises(AlertsApiError, match="API error: 500"):
        asyncio.run(scenario())


def test_timeout_is_reported_in_milliseconds():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async def scenario():
        api = _api(handler)
        try:
            await api.get_alert_rules()
        finally:
            await api.aclose()

    with pytest.raises(AlertsApiError, match="Request timeout after 10000ms"):
        asyncio.run(scenario())


def test_create_alert_rule_posts_backend_field_names():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(201, json={**RULE_PAYLOAD, "id": 9, "name": "Price jump"})

    async def scenario():
        api = _api(handler)
        try:
            return await api.create_alert_rule(
                AlertRuleInput(
                    name="Price jump",
                    condition_type=ConditionType.PRICE_MOVEMENT,
                    condition_config={"symbol": "VTI", "threshold_pct": 5},
                )
            )
        finally:
            await api.aclose()

    rule = asyncio.run(scenario())
    assert rule.id == "9"
    assert bodies[0]["condition_type"] == "price_movement"
    assert bodies[0]["action_type"] == ActionType.NOTIFICATION.value
    assert bodies[0]["portfolio"] == 1
    assert bodies[0]["account"] is None


def test_update_alert_rule_keeps_active_flag_and_status_consistent():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "PATCH"
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=RULE_PAYLOAD)

    async def scenario():
        api = _api(handler)
        try:
            await api.update_alert_rule("7", AlertRulePatch(is_active=False))
            await api.update_alert_rule("7", AlertRulePatch(status=AlertStatus.ACTIVE, name="Renamed"))
        finally:
            await api.aclose()

    asyncio.run(scenario())
    assert bodies[0] == {"is_active": False, "status": "paused"}
    assert bodies[1] == {"name": "Renamed", "status": "active", "is_active": True}


def test_delete_and_history_endpoints():
    seen: list[tuple[str, str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, request.url.query.decode()))
        if request.method == "DELETE":
            return httpx.Response(204)
        if request.url.path.endswith("/resolve/"):
            return httpx.Response(200, json={"id": 4, "alert_rule": 7, "resolved_at": "2024-01-01T11:00:00Z"})
        return httpx.Response(200, json=[{"id": 4, "alert_rule": 7, "triggered_at": "2024-01-01T10:00:00Z"}])

    async def scenario():
        api = _api(handler)
        try:
            await api.delete_alert_rule("7")
            history = await api.get_alert_history("7")
            resolved = await api.resolve_alert_history("4")
            return history, resolved
        finally:
            await api.aclose()

    history, resolved = asyncio.run(scenario())
    assert seen[0] == ("DELETE", "/api/alerts/rules/7/", "")
    assert seen[1] == ("GET", "/api/alerts/history/", "alert_rule=7")
    assert seen[2] == ("POST", "/api/alerts/history/4/resolve/", "")
    assert history[0].alert_rule_id == "7"
    assert resolved.resolved_at is not None


def test_malformed_rule_is_skipped_without_dropping_the_rest():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json=[
                {**RULE_PAYLOAD, "id": 10, "last_triggered": "not-a-timestamp"},
                RULE_PAYLOAD,
                {**RULE_PAYLOAD, "id": 11, "last_checked": "yesterday-ish"},
            ],
        )

    async def scenario():
        api = _api(handler)
        try:
            return await api.get_alert_rules()
        finally:
            await api.aclose()

    rules = asyncio.run(scenario())
    assert [rule.id for rule in rules] == ["7"]


def test_stats_and_drift_endpoints():
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        if request.url.path.endswith("/portfolio/drift/"):
            return httpx.Response(200, json={"max_drift": 6.5, "positions": [{"symbol": "VTI", "drift": 6.5}]})
        return httpx.Response(200, json={"total": 4, "active": 3})

    async def scenario():
        api = _api(handler)
        try:
            return await api.get_alert_stats(), await api.get_portfolio_drift()
        finally:
            await api.aclose()

    stats, drift = asyncio.run(scenario())
    assert seen == ["/api/alerts/stat/", "/api/portfolio/drift/"]
    assert stats == {"total": 4, "active": 3}
    assert drift["max_drift"] == 6.5


def test_drift_payload_that_is_not_an_object_is_empty():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[1, 2, 3])

    async def scenario():
        api = _api(handler)
        try:
            return await api.get_portfolio_drift()
        finally:
            await api.aclose()

    assert asyncio.run(scenario()) == {}
