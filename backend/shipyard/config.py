from pydantic import BaseModel
from functools import lru_cache
import os


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


class Settings(BaseModel):
    app_name: str = "Shipyard"
    database_url: str = "sqlite+aiosqlite:///./shipyard.db"
    cors_origins: list[str] = ["http://localhost:5173"]
    sql_echo: bool = False
    log_level: str = "INFO"

    # Execution
    command_timeout_seconds: float = 300  # Per-command timeout (5 minutes)
    log_flush_interval: float = 0.25  # Max seconds between log writes while a command streams

    # Live log feed
    log_poll_interval: float = 0.5
    log_heartbeat_interval: float = 15

    # Approvals and housekeeping
    approval_window_minutes: int = 30
    maintenance_interval_seconds: float = 60

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    cors = os.getenv("SHIPYARD_CORS_ORIGINS")
    return Settings(
        database_url=os.getenv("SHIPYARD_DATABASE_URL", "sqlite+aiosqlite:///./shipyard.db"),
        cors_origins=cors.split(",") if cors else ["http://localhost:5173"],
        sql_echo=os.getenv("SHIPYARD_SQL_ECHO", "").lower() in ("1", "true", "yes"),
        log_level=os.getenv("SHIPYARD_LOG_LEVEL", "INFO"),
        command_timeout_seconds=_env_float("SHIPYARD_COMMAND_TIMEOUT", 300),
        log_flush_interval=_env_float("SHIPYARD_LOG_FLUSH_INTERVAL", 0.25),
        log_poll_interval=_env_float("SHIPYARD_LOG_POLL_INTERVAL", 0.5),
        log_heartbeat_interval=_env_float("SHIPYARD_LOG_HEARTBEAT_INTERVAL", 15),
        approval_window_minutes=int(os.getenv("SHIPYARD_APPROVAL_WINDOW_MINUTES", "30")),
        maintenance_interval_seconds=_env_float("SHIPYARD_MAINTENANCE_INTERVAL", 60),
    )
