import os
from dataclasses import dataclass, field
from typing import Optional, Tuple


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _get_origins(raw: Optional[str]) -> Tuple[str, ...]:
    if not raw:
        return ("*",)
    return tuple(o.strip() for o in raw.split(",") if o.strip()) or ("*",)


@dataclass(frozen=True)
class Settings:
    project_id: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 3000
    message_source: str = "pubsub-proxy"
    rate_limit_max: int = 100
    rate_limit_window_seconds: int = 15 * 60
    max_body_bytes: int = 10 * 1024 * 1024
    cors_origins: Tuple[str, ...] = field(default_factory=lambda: ("*",))
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Read process configuration from the environment (once, at startup)."""
    project_id = (
        os.getenv("PROJECT_ID")
        or os.getenv("GOOGLE_CLOUD_PROJECT_ID")
        or os.getenv("GOOGLE_CLOUD_PROJECT")
    )
    return Settings(
        project_id=project_id,
        host=os.getenv("HOST", "0.0.0.0"),
        port=_get_int("PORT", 3000),
        message_source=os.getenv("MESSAGE_SOURCE", "pubsub-proxy"),
        rate_limit_max=_get_int("RATE_LIMIT_MAX", 100),
        rate_limit_window_seconds=_get_int("RATE_LIMIT_WINDOW_SECONDS", 15 * 60),
        max_body_bytes=_get_int("MAX_BODY_BYTES", 10 * 1024 * 1024),
        cors_origins=_get_origins(os.getenv("CORS_ORIGINS")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
