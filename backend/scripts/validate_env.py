from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app.config import get_settings


def main() -> int:
    try:
        settings = get_settings()
    except RuntimeError as exc:
        print(f"Invalid configuration: {exc}")
        return 1

    required = {
        "API_BASE_URL": settings.api_base_url,
    }
    if settings.upstream_ws_enabled:
        required["UPSTREAM_WS_URL"] = settings.upstream_ws_url
    if settings.environment.lower() == "production":
        required["API_AUTH_TOKEN"] = settings.api_auth_token

    optional = {
        "API_AUTH_TOKEN": settings.api_auth_token,
        "FRONTEND_ORIGINS": ",".join(settings.frontend_origins),
    }
    tuning = {
        "WS_RECONNECT_BASE_DELAY_SECONDS": settings.ws_reconnect_base_delay_seconds,
        "WS_MAX_RECONNECT_ATTEMPTS": settings.ws_max_reconnect_attempts,
        "ALERT_POLL_INTERVAL_SECONDS": settings.alert_poll_interval_seconds,
        "ALERT_FULL_CHECK_INTERVAL_SECONDS": settings.alert_full_check_interval_seconds,
        "ALERT_CACHE_TTL_SECONDS": settings.alert_cache_ttl_seconds,
        "ALERT_RECENT_WINDOW_SECONDS": settings.alert_recent_window_seconds,
    }

    missing_required = [name for name, value in required.items() if not str(value or "").strip()]

    print("Environment check")
    print("=================")
    for name, value in required.items():
        print(f"[{'ok' if value else 'missing'}] {name} (required)")
    for name, value in optional.items():
        if name in required:
            continue
        print(f"[{'ok' if value else 'missing'}] {name} (optional)")
    for name, value in tuning.items():
        print(f"[set] {name}={value}")

    if missing_required:
        print("\nMissing required environment variables:")
        for item in missing_required:
            print(f"- {item}")
        return 1

    print("\nAll required environment variables are present.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
