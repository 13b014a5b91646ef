from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from .constants import (
    AUTH_MODE,
    DEFAULT_OAUTH_PROVIDER,
    DEFAULT_TAPKIT_API_URL,
    LOGGER,
    SESSION_TTL_SECONDS,
    UPSTREAM_TIMEOUT_SECONDS,
)

REQUIRED_ENV = (
    "OAUTH_SIGNING_SECRET",
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "MCP_SERVER_URL",
)
LOCAL_HOSTS = {"localhost", "127.0.0.1"}


def is_truthy(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv_env(key: str) -> set[str]:
    raw = os.getenv(key, "")
    return {item.strip() for item in raw.split(",") if item.strip()}


def _get_env_str(key: str, default: str = "") -> str:
    return os.getenv(key, "").strip() or default


def get_env_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be an integer value.")
    if value <= 0:
        raise RuntimeError(f"{key} must be greater than zero.")
    return value


def get_env_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise RuntimeError(f"{key} must be a number.")
    if value <= 0:
        raise RuntimeError(f"{key} must be greater than zero.")
    return value


def load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if env_path.exists():
        load_dotenv(env_path, override=True)


def _is_allowed_public_url(url: str) -> bool:
    parsed = urlparse(url)
    if not parsed.netloc:
        return False
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and parsed.hostname in LOCAL_HOSTS


def validate_env() -> None:
    missing = [key for key in REQUIRED_ENV if not _get_env_str(key)]
    if missing:
        raise RuntimeError(
            f"Missing required environment variables for {AUTH_MODE}: {', '.join(missing)}"
        )

    if not _is_allowed_public_url(_get_env_str("MCP_SERVER_URL")):
        raise RuntimeError(
            "MCP_SERVER_URL must be a valid public HTTPS URL (for example: "
            "https://mcp.tapkit.ai). Plain http is only accepted for localhost."
        )

    supabase_url = urlparse(_get_env_str("SUPABASE_URL"))
    if supabase_url.scheme not in {"http", "https"} or not supabase_url.netloc:
        raise RuntimeError("SUPABASE_URL must be an absolute http(s) URL.")


@dataclass(frozen=True)
class ServerSettings:
    public_url: str
    supabase_url: str
    supabase_anon_key: str
    signing_secret: str
    oauth_provider: str = DEFAULT_OAUTH_PROVIDER
    tapkit_api_url: str = DEFAULT_TAPKIT_API_URL
    upstream_timeout: float = UPSTREAM_TIMEOUT_SECONDS
    session_ttl: int = SESSION_TTL_SECONDS
    cors_origins: set[str] = field(default_factory=set)

    @classmethod
    def from_env(cls) -> "ServerSettings":
        validate_env()
        return cls(
            public_url=_get_env_str("MCP_SERVER_URL").rstrip("/"),
            supabase_url=_get_env_str("SUPABASE_URL").rstrip("/"),
            supabase_anon_key=_get_env_str("SUPABASE_ANON_KEY"),
            signing_secret=_get_env_str("OAUTH_SIGNING_SECRET"),
            oauth_provider=_get_env_str("SUPABASE_OAUTH_PROVIDER", DEFAULT_OAUTH_PROVIDER),
            tapkit_api_url=_get_env_str("TAPKIT_API_URL", DEFAULT_TAPKIT_API_URL).rstrip("/"),
            upstream_timeout=get_env_float("TAPKIT_UPSTREAM_TIMEOUT", UPSTREAM_TIMEOUT_SECONDS),
            session_ttl=get_env_int("TAPKIT_SESSION_TTL", SESSION_TTL_SECONDS),
            cors_origins=parse_csv_env("TAPKIT_CORS_ORIGINS"),
        )


def setup_logging() -> bool:
    debug_enabled = is_truthy(os.getenv("TAPKIT_DEBUG", "1"))
    if debug_enabled:
        logging.basicConfig(level=logging.INFO)
        LOGGER.setLevel(logging.INFO)
        logging.getLogger("httpx").setLevel(logging.WARNING)
    return debug_enabled
