import logging
import os
import sys

# Backend database (managed Postgres in production).
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./feelitbuy.db")

# Hosted auth provider.
AUTH_URL = os.getenv("AUTH_URL", "http://localhost:9999/auth/v1").rstrip("/")
AUTH_API_KEY = os.getenv("AUTH_API_KEY", "")
AUTH_TIMEOUT_SECONDS = float(os.getenv("AUTH_TIMEOUT_SECONDS", "5"))

# Realtime change feed.
RABBITMQ_HOST = os.getenv("RABBITMQ_HOST", "rabbitmq")
RABBITMQ_CONNECT_RETRIES = int(os.getenv("RABBITMQ_CONNECT_RETRIES", "5"))
EVENTS_EXCHANGE = os.getenv("EVENTS_EXCHANGE", "events")
REALTIME_ENABLED = os.getenv("REALTIME_ENABLED", "1").strip() in {"1", "true", "True", "YES", "yes"}

SALES_TREND_DAYS = int(os.getenv("SALES_TREND_DAYS", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def setup_logging():
    """Configures the root logger once per process."""
    root = logging.getLogger()
    root.setLevel(LOG_LEVEL)
    if any(getattr(h, "_storefront", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - [%(levelname)-7s] - %(message)s"
    ))
    handler._storefront = True
    root.addHandler(handler)
