"""
Queue worker configuration.

Single source of truth for worker-level tunables, read once at startup.
Invalid values fall back to the defaults instead of crashing the worker.
"""
from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class WorkerConfig:
    """Immutable worker configuration loaded once at startup."""

    # --- Polling / sleep ---
    poll_interval_seconds: float = 2.0
    error_sleep_seconds: float = 5.0

    # --- Queue ---
    max_concurrent: int = 10
    stale_timeout_minutes: float = 30.0
    cleanup_interval_seconds: float = 3600.0
    cleanup_days_old: int = 7

    # --- Webhook outbox ---
    webhooks_enabled: bool = True
    webhook_drain_interval_seconds: float = 5.0
    webhook_drain_batch: int = 50

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - [WORKER] - %(levelname)s - %(message)s"


def load_worker_config() -> WorkerConfig:
    """Build WorkerConfig from environment variables (with defaults)."""
    def _float(key: str, default: float) -> float:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return float(raw)
        except (TypeError, ValueError):
            return default

    def _int(key: str, default: int) -> int:
        raw = os.getenv(key)
        if raw is None:
            return default
        try:
            return int(raw)
        except (TypeError, ValueError):
            return default

    def _bool(key: str, default: bool) -> bool:
        raw = os.getenv(key)
        if raw is None:
            return default
        return raw.strip().lower() in ("1", "true", "yes")

    return WorkerConfig(
        poll_interval_seconds=_float("WORKER_POLL_INTERVAL", 2.0),
        error_sleep_seconds=_float("WORKER_ERROR_SLEEP", 5.0),
        max_concurrent=max(1, _int("QUEUE_MAX_CONCURRENT", 10)),
        stale_timeout_minutes=_float("QUEUE_STALE_TIMEOUT_MINUTES", 30.0),
        cleanup_interval_seconds=_float("QUEUE_CLEANUP_INTERVAL", 3600.0),
        cleanup_days_old=_int("QUEUE_CLEANUP_DAYS_OLD", 7),
        webhooks_enabled=_bool("WEBHOOKS_ENABLED", True),
        webhook_drain_interval_seconds=_float("WEBHOOK_DRAIN_INTERVAL", 5.0),
        webhook_drain_batch=_int("WEBHOOK_DRAIN_BATCH", 50),
        log_level=os.getenv("WORKER_LOG_LEVEL", "INFO"),
        log_format=os.getenv(
            "WORKER_LOG_FORMAT",
            "%(asctime)s - [WORKER] - %(levelname)s - %(message)s",
        ),
    )
