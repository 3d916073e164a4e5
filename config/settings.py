from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    ws_url: str = os.getenv("TELEMETRY_WS_URL", "ws://127.0.0.1:8000/ws")
    api_base: str = os.getenv("TELEMETRY_API_BASE", "http://127.0.0.1:8000")

    # token set once per session, passed through to the channel and history endpoint
    api_key: str = os.getenv("API_KEY", "telemetry-dev-key")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    channel_initial_backoff: float = float(os.getenv("CHANNEL_INITIAL_BACKOFF_SECONDS", "1.0"))
    channel_max_backoff: float = float(os.getenv("CHANNEL_MAX_BACKOFF_SECONDS", "30.0"))
    channel_open_timeout: float = float(os.getenv("CHANNEL_OPEN_TIMEOUT_SECONDS", "10.0"))

    query_max_attempts: int = int(os.getenv("QUERY_MAX_ATTEMPTS", "3"))
    query_backoff: float = float(os.getenv("QUERY_BACKOFF_SECONDS", "0.5"))
    query_timeout: float = float(os.getenv("QUERY_TIMEOUT_SECONDS", "5.0"))
    query_row_limit: int = int(os.getenv("QUERY_ROW_LIMIT", "1000"))

    series_max_points: int = int(os.getenv("SERIES_MAX_POINTS", "1000"))
    series_retention_seconds: float = float(os.getenv("SERIES_RETENTION_SECONDS", str(4 * 60 * 60)))

    alert_history_size: int = int(os.getenv("ALERT_HISTORY_SIZE", "50"))

    freshness_aging_seconds: float = float(os.getenv("FRESHNESS_AGING_SECONDS", "5"))
    freshness_stale_seconds: float = float(os.getenv("FRESHNESS_STALE_SECONDS", "10"))

    simulator_host: str = os.getenv("SIMULATOR_HOST", "127.0.0.1")
    simulator_port: int = int(os.getenv("SIMULATOR_PORT", "8000"))


settings = Settings()
