"""App settings, loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///linkvault.db")

    # Short links are stored as {PUBLIC_BASE_URL}/l/{code}
    PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "https://linkvault.pro").rstrip("/")
    SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "lv_sid")

    # Admin API key (rotation config, reports, health checks)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # Conversion webhook signing secret (empty = signature not required)
    CONVERSION_WEBHOOK_SECRET = os.getenv("CONVERSION_WEBHOOK_SECRET", "")

    # Attribution + funnel modelling
    ATTRIBUTION_WINDOW_HOURS = int(os.getenv("ATTRIBUTION_WINDOW_HOURS", "24"))
    ADD_TO_CART_RATIO = float(os.getenv("ADD_TO_CART_RATIO", "0.3"))

    # Background click/view tracking
    TRACKING_WORKERS = int(os.getenv("TRACKING_WORKERS", "4"))
    TRACKING_QUEUE_SIZE = int(os.getenv("TRACKING_QUEUE_SIZE", "10000"))
    TRACKING_MAX_RETRIES = int(os.getenv("TRACKING_MAX_RETRIES", "3"))
    TRACKING_BACKOFF_SECONDS = float(os.getenv("TRACKING_BACKOFF_SECONDS", "0.5"))

    # Outbound link health checks
    HEALTH_CHECK_TIMEOUT_SECONDS = float(os.getenv("HEALTH_CHECK_TIMEOUT_SECONDS", "10"))
    HEALTH_CHECK_BATCH_SIZE = int(os.getenv("HEALTH_CHECK_BATCH_SIZE", "50"))
    HEALTH_CHECK_CONCURRENCY = int(os.getenv("HEALTH_CHECK_CONCURRENCY", "10"))
    HEALTH_CHECK_INTERVAL_HOURS = float(os.getenv("HEALTH_CHECK_INTERVAL_HOURS", "0"))

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
