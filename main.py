import os
import logging
import configparser
from pathlib import Path
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from send_scheduler.core import AsyncSendCore
from send_scheduler.api import create_app

# Configure logging level from environment
log_level = os.getenv("SND_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    force=True  # Force reconfiguration to avoid duplicate handlers
)


def load_settings() -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with SND_):
      SND_CONFIG - Path to config.ini file (default: config.ini)
      SND_LOG_LEVEL - Logging level (default: INFO)
      SND_DB_PATH - Database path (default: /data/send_scheduler.db)
      SND_HOST - Server host (default: 0.0.0.0)
      SND_PORT - Server port (default: 8000)
      SND_API_TOKEN - Administrator API token
      SND_SCHEDULER_ACTIVE - Dispatch due items from startup (default: True)
      SND_TIMEZONE - Timezone for naive operator datetimes (default: Europe/Rome)
      SND_TICK_INTERVAL - Seconds between dispatch ticks (default: 60)
      SND_BATCH_SIZE - Due items selected per tick (default: 50)
      SND_DISPATCH_CONCURRENCY - Parallel deliveries within a tick (default: 5)
      SND_DELIVERY_TIMEOUT - Transport timeout in seconds (default: 30)
      SND_MAX_ATTEMPTS - Attempts before an item is marked failed (default: 5)
      SND_RETRY_DELAYS - Comma separated backoff table in seconds
      SND_GATEWAY_URL - Messaging gateway base URL
      SND_GATEWAY_TOKEN - Messaging gateway bearer token
      SND_ITEM_RETENTION_DAYS - Purge terminal items older than this (0 disables)
      SND_LOG_RETENTION_DAYS - Purge execution log entries older than this (0 disables)
      SND_TEST_MODE - Enable test mode (default: False)
      SND_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [scheduler] active, timezone
      [dispatch] tick_interval_seconds, batch_size, concurrency, delivery_timeout_seconds,
                 max_attempts, retry_delays, test_mode
      [gateway] url, token
      [retention] item_days, log_days
      [logging] delivery_activity
    """
    config_path = Path(os.getenv("SND_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        return float(value)

    def get_int_list(section: str, option: str, fallback: str | None = None) -> list[int] | None:
        value = get(section, option, fallback)
        if not value:
            return None
        return [int(part) for part in value.split(",") if part.strip()]

    settings = {
        "db_path": get("storage", "db_path", os.getenv("SND_DB_PATH", "/data/send_scheduler.db")),
        "http_host": get("server", "host", os.getenv("SND_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("SND_PORT", "8000")),
        "api_token": get("server", "api_token", os.getenv("SND_API_TOKEN")),
        "scheduler_active": get_bool("scheduler", "active", os.getenv("SND_SCHEDULER_ACTIVE"), True),
        "timezone": get("scheduler", "timezone", os.getenv("SND_TIMEZONE", "Europe/Rome")),
        "tick_interval": get_float("dispatch", "tick_interval_seconds", os.getenv("SND_TICK_INTERVAL"), 60.0),
        "batch_size": get_int("dispatch", "batch_size", os.getenv("SND_BATCH_SIZE"), default=50),
        "dispatch_concurrency": get_int("dispatch", "concurrency", os.getenv("SND_DISPATCH_CONCURRENCY"), default=5),
        "delivery_timeout": get_float(
            "dispatch", "delivery_timeout_seconds", os.getenv("SND_DELIVERY_TIMEOUT"), 30.0
        ),
        "max_attempts": get_int("dispatch", "max_attempts", os.getenv("SND_MAX_ATTEMPTS"), default=5),
        "retry_delays": get_int_list("dispatch", "retry_delays", os.getenv("SND_RETRY_DELAYS")),
        "test_mode": get_bool("dispatch", "test_mode", os.getenv("SND_TEST_MODE"), False),
        "gateway_url": get("gateway", "url", os.getenv("SND_GATEWAY_URL")),
        "gateway_token": get("gateway", "token", os.getenv("SND_GATEWAY_TOKEN")),
        "item_retention_days": get_int("retention", "item_days", os.getenv("SND_ITEM_RETENTION_DAYS"), default=0),
        "log_retention_days": get_int("retention", "log_days", os.getenv("SND_LOG_RETENTION_DAYS"), default=0),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("SND_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    for key in ("api_token", "gateway_token"):
        token = settings.get(key)
        if isinstance(token, str):
            token = token.strip() or None
        settings[key] = token
    return settings


def build_service(settings: dict[str, object]) -> AsyncSendCore:
    """Create the scheduler core from loaded settings without starting it."""
    return AsyncSendCore(
        db_path=settings["db_path"],
        start_active=bool(settings.get("scheduler_active")),
        timezone=str(settings.get("timezone") or "Europe/Rome"),
        tick_interval=float(settings["tick_interval"]),
        batch_size=int(settings["batch_size"]),
        dispatch_concurrency=int(settings["dispatch_concurrency"]),
        delivery_timeout=float(settings["delivery_timeout"]),
        max_attempts=int(settings["max_attempts"]),
        retry_delays=settings.get("retry_delays"),
        gateway_url=settings.get("gateway_url"),
        gateway_token=settings.get("gateway_token"),
        item_retention_days=int(settings.get("item_retention_days") or 0),
        log_retention_days=int(settings.get("log_retention_days") or 0),
        test_mode=bool(settings.get("test_mode")),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )


def main() -> None:
    settings = load_settings()
    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = build_service(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))


if __name__ == "__main__":
    main()
