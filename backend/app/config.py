from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import List
from urllib.parse import urlparse


def _load_dotenv(path: str = ".env") -> None:
    candidates = [Path(path)]
    resolved = Path(__file__).resolve()
    for parent in resolved.parents:
        candidates.append(parent / ".env")
    seen: set[Path] = set()
    for env_path in candidates:
        if env_path in seen or not env_path.exists():
            continue
        seen.add(env_path)
        for raw in env_path.read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip('"').strip("'")
            os.environ.setdefault(key, value)


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, list):
            return [str(item) for item in parsed]
    except json.JSONDecodeError:
        pass
    return [token.strip() for token in raw.split(",") if token.strip()] or default


@dataclass
class Settings:
    app_name: str = "AlphaOptimize Realtime"
    environment: str = "development"
    log_level: str = "INFO"

    frontend_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])

    api_base_url: str = "http://localhost:8000/api"
    api_auth_token: str = ""
    api_timeout_seconds: float = 10.0

    upstream_ws_url: str = "ws://localhost:8001"
    upstream_ws_enabled: bool = True
    ws_reconnect_base_delay_seconds: float = 1.0
    ws_max_reconnect_attempts: int = 5
    ws_open_timeout_seconds: float = 20.0

    alert_polling_enabled: bool = True
    alert_poll_interval_seconds: int = 30
    alert_full_check_interval_seconds: int = 120
    alert_cache_ttl_seconds: int = 30
    alert_recent_window_seconds: int = 3600
    alert_fetch_timeout_seconds: float = 15.0

    notification_history_limit: int = 200


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def _is_ws_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in {"ws", "wss"} and bool(parsed.netloc)


def _validate_settings(settings: Settings) -> None:
    if settings.environment.lower() == "production" and not settings.api_auth_token.strip():
        raise RuntimeError("Missing required production environment variables: API_AUTH_TOKEN")

    invalid_origins = [origin for origin in settings.frontend_origins if not _is_http_url(origin)]
    if invalid_origins:
        raise RuntimeError(f"Invalid FRONTEND_ORIGINS entries: {', '.join(invalid_origins)}")

    if not _is_http_url(settings.api_base_url):
        raise RuntimeError(f"Invalid API_BASE_URL: {settings.api_base_url}")

    if settings.upstream_ws_enabled and not _is_ws_url(settings.upstream_ws_url):
        raise RuntimeError(f"Invalid UPSTREAM_WS_URL: {settings.upstream_ws_url}")

    if settings.ws_max_reconnect_attempts < 0:
        raise RuntimeError("WS_MAX_RECONNECT_ATTEMPTS must not be negative")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    _load_dotenv()
    settings = Settings(
        app_name=_env("APP_NAME", "AlphaOptimize Realtime"),
        environment=_env("ENVIRONMENT", "development"),
        log_level=_env("LOG_LEVEL", "INFO"),
        frontend_origins=_env_list("FRONTEND_ORIGINS", ["http://localhost:3000"]),
        api_base_url=_env("API_BASE_URL", "http://localhost:8000/api").rstrip("/"),
        api_auth_token=_env("API_AUTH_TOKEN"),
        api_timeout_seconds=_env_float("API_TIMEOUT_SECONDS", 10.0),
        upstream_ws_url=_env("UPSTREAM_WS_URL") or _env("NEXT_PUBLIC_WS_URL", "ws://localhost:8001"),
        upstream_ws_enabled=_env_bool("UPSTREAM_WS_ENABLED", True),
        ws_reconnect_base_delay_seconds=_env_float("WS_RECONNECT_BASE_DELAY_SECONDS", 1.0),
        ws_max_reconnect_attempts=_env_int("WS_MAX_RECONNECT_ATTEMPTS", 5),
        ws_open_timeout_seconds=_env_float("WS_OPEN_TIMEOUT_SECONDS", 20.0),
        alert_polling_enabled=_env_bool("ALERT_POLLING_ENABLED", True),
        alert_poll_interval_seconds=_env_int("ALERT_POLL_INTERVAL_SECONDS", 30),
        alert_full_check_interval_seconds=_env_int("ALERT_FULL_CHECK_INTERVAL_SECONDS", 120),
        alert_cache_ttl_seconds=_env_int("ALERT_CACHE_TTL_SECONDS", 30),
        alert_recent_window_seconds=_env_int("ALERT_RECENT_WINDOW_SECONDS", 3600),
        alert_fetch_timeout_seconds=_env_float("ALERT_FETCH_TIMEOUT_SECONDS", 15.0),
        notification_history_limit=_env_int("NOTIFICATION_HISTORY_LIMIT", 200),
    )
    _validate_settings(settings)
    return settings
