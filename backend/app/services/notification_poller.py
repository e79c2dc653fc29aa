"""Alert trigger polling with a de-duplicating rule cache.

A cycle is either a full check (re-fetch every rule; run at most once per
``full_check_interval``) or an incremental check (re-fetch only cached rules
older than ``cache_ttl``). A notification is emitted at most once per
``(rule id, last_triggered)`` pair.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Protocol

from app.config import Settings
from app.schemas import AlertRule, CacheStats

logger = logging.getLogger(__name__)

AlertSink = Callable[[AlertRule], Awaitable[Any]]


class AlertSource(Protocol):
    async def get_alert_rules(self) -> List[AlertRule]: ...

    async def get_alert_rule(self, rule_id: str) -> AlertRule: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


@dataclass
class CachedAlertRule:
    rule: AlertRule
    last_checked_at: datetime
    last_triggered_at: datetime | None = None


class NotificationPoller:
    def __init__(
        self,
        alerts_api: AlertSource,
        emit: AlertSink,
        *,
        full_check_interval: timedelta = timedelta(seconds=120),
        cache_ttl: timedelta = timedelta(seconds=30),
        recent_window: timedelta = timedelta(hours=1),
        poll_interval_seconds: float = 30,
        fetch_timeout_seconds: float | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._alerts_api = alerts_api
        self._emit = emit
        self.full_check_interval = full_check_interval
        self.cache_ttl = cache_ttl
        self.recent_window = recent_window
        self.poll_interval_seconds = poll_interval_seconds
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self._clock = clock or _utc_now

        self._cache: Dict[str, CachedAlertRule] = {}
        self._last_full_check: datetime | None = None
        self._in_progress = False
        self._refresh_requested = False
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: Settings, alerts_api: AlertSource, emit: AlertSink) -> "NotificationPoller":
        return cls(
            alerts_api,
            emit,
            full_check_interval=timedelta(seconds=settings.alert_full_check_interval_seconds),
            cache_ttl=timedelta(seconds=settings.alert_cache_ttl_seconds),
            recent_window=timedelta(seconds=settings.alert_recent_window_seconds),
            poll_interval_seconds=settings.alert_poll_interval_seconds,
            fetch_timeout_seconds=settings.alert_fetch_timeout_seconds or None,
        )

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    @property
    def last_full_check(self) -> datetime | None:
        return self._last_full_check

    @property
    def check_in_progress(self) -> bool:
        return self._in_progress

    def cached_rule(self, rule_id: str) -> CachedAlertRule | None:
        return self._cache.get(rule_id)

    async def check_for_new_alerts(self) -> bool:
        """Run one polling cycle. Returns ``False`` if a cycle was already running."""
        if self._in_progress:
            logger.debug("Alert check already in progress; skipping overlapping call")
            return False

        self._in_progress = True
        try:
            now = self._clock()
            if self._full_check_due(now):
                await self._full_check(now)
            else:
                await self._incremental_check(now)
        finally:
            self._in_progress = False
        return True

    async def force_refresh(self) -> bool:
        logger.info("Forcing a full alert check")
        self._refresh_requested = True
        return await self.check_for_new_alerts()

    def get_cache_stats(self) -> CacheStats:
        age = None
        if self._last_full_check is not None:
            age = (self._clock() - self._last_full_check).total_seconds()
        return CacheStats(
            cached_rules=len(self._cache),
            last_full_check=self._last_full_check,
            cache_age_seconds=age,
            check_in_progress=self._in_progress,
        )

    def _full_check_due(self, now: datetime) -> bool:
        if self._refresh_requested or self._last_full_check is None:
            return True
        return now - self._last_full_check > self.full_check_interval

    async def _full_check(self, now: datetime) -> None:
        # A refresh requested while this check is running stays pending for the next cycle.
        forced = self._refresh_requested
        self._refresh_requested = False
        try:
            rules = await self._fetch(self._alerts_api.get_alert_rules())
        except Exception:
            self._refresh_requested = self._refresh_requested or forced
            logger.exception("Full alert check failed; retrying on the next cycle")
            return

        logger.debug("Full alert check: %d rules, recent since %s", len(rules), now - self.recent_window)
        seen: set[str] = set()
        for rule in rules:
            seen.add(rule.id)
            await self._observe(rule.id, rule, now)

        vanished = [rule_id for rule_id in self._cache if rule_id not in seen]
        for rule_id in vanished:
            del self._cache[rule_id]
        if vanished:
            logger.info("Evicted %d alert rules no longer present upstream", len(vanished))
        self._last_full_check = now

    async def _incremental_check(self, now: datetime) -> None:
        for rule_id, cached in list(self._cache.items()):
            if now - cached.last_checked_at <= self.cache_ttl:
                continue
            try:
                rule = await self._fetch(self._alerts_api.get_alert_rule(rule_id))
            except Exception as exc:
                logger.warning("Failed to refresh alert rule %s: %s", rule_id, exc)
                continue
            await self._observe(rule_id, rule, now)

    async def _observe(self, rule_id: str, rule: AlertRule, now: datetime) -> None:
        cached = self._cache.get(rule_id)
        triggered_at = _as_utc(rule.last_triggered)
        is_recent = triggered_at is not None and triggered_at > now - self.recent_window

        if is_recent and (cached is None or cached.last_triggered_at != triggered_at):
            try:
                await self._emit(rule)
            except Exception:
                logger.exception("Failed to emit notification for alert rule %s", rule_id)
        elif is_recent:
            logger.debug("Skipping already processed trigger for %s", rule_id)

        self._cache[rule_id] = CachedAlertRule(
            rule=rule.model_copy(deep=True),
            last_checked_at=now,
            last_triggered_at=triggered_at,
        )

    async def _fetch(self, awaitable: Awaitable[Any]) -> Any:
        if self.fetch_timeout_seconds:
            return await asyncio.wait_for(awaitable, timeout=self.fetch_timeout_seconds)
        return await awaitable

    async def run_forever(self) -> None:
        while True:
            try:
                await self.check_for_new_alerts()
            except Exception:
                logger.exception("Alert notification check failed")
            await asyncio.sleep(max(1, self.poll_interval_seconds))

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self.run_forever(), name="alert-poller")

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._task.done():
            self._task = None
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        finally:
            self._task = None
