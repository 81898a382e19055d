"""
Centralized configuration with environment variable overrides.

Portal, Telegram, Google OAuth and storage settings all live here.
Nothing is hardcoded in the client, adapter or conversation logic.
"""

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

from callbridge.logging_context import ChatIdFilter

load_dotenv()

logger = logging.getLogger(__name__)

VALID_STORE_BACKENDS = ("supabase", "memory")


def _safe_int(env_var: str, default: str) -> int:
    """Parse an integer from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return int(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid integer for {env_var}: {raw!r}"
        ) from None


def _safe_float(env_var: str, default: str) -> float:
    """Parse a float from an env var with a clear error on bad values."""
    raw = os.getenv(env_var, default)
    try:
        return float(raw)
    except (ValueError, TypeError):
        raise ValueError(
            f"Invalid float for {env_var}: {raw!r}"
        ) from None


@dataclass(frozen=True)
class PortalConfig:
    """Call-center portal connection settings."""

    base_url: str = os.getenv("PORTAL_BASE_URL", "https://my.flyfonetalk.com")
    timeout_sec: float = _safe_float("PORTAL_TIMEOUT", "60.0")


@dataclass(frozen=True)
class TelegramConfig:
    """Chat front end settings."""

    bot_token: str = os.getenv("BOT_TOKEN", "")


@dataclass(frozen=True)
class GoogleConfig:
    """OAuth client and target range for the spreadsheet adapter."""

    client_id: str = os.getenv("GOOGLE_CLIENT_ID", "")
    client_secret: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
    redirect_uri: str = os.getenv("BOT_REDIRECT_URI", "http://localhost:6565/oauth2callback")
    sheet_name: str = os.getenv("SHEET_NAME", "Sheet1")


@dataclass(frozen=True)
class StoreConfig:
    """External key-value store settings."""

    backend: str = os.getenv("STORE_BACKEND", "supabase")
    supabase_url: str = os.getenv("SUPABASE_URL", "")
    supabase_key: str = os.getenv("SUPABASE_KEY", "")
    table: str = os.getenv("SUPABASE_TABLE", "chat_state")


@dataclass(frozen=True)
class FlowConfig:
    """Conversation workflow limits."""

    max_login_attempts: int = _safe_int("MAX_LOGIN_ATTEMPTS", "5")
    date_picker_days: int = _safe_int("DATE_PICKER_DAYS", "7")


@dataclass(frozen=True)
class AppConfig:
    """Root configuration aggregating all sub-configs."""

    portal: PortalConfig = field(default_factory=PortalConfig)
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    flow: FlowConfig = field(default_factory=FlowConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    port: int = _safe_int("PORT", "6565")


def _validate_config(config: AppConfig) -> None:
    """Validate configuration values are within acceptable ranges."""
    if not config.portal.base_url.startswith(("http://", "https://")):
        raise ValueError(
            f"PORTAL_BASE_URL must be an http(s) URL, got {config.portal.base_url!r}"
        )
    if config.portal.timeout_sec <= 0:
        raise ValueError(
            f"PORTAL_TIMEOUT must be > 0, got {config.portal.timeout_sec}"
        )
    if config.store.backend not in VALID_STORE_BACKENDS:
        raise ValueError(
            f"STORE_BACKEND must be one of {VALID_STORE_BACKENDS}, got {config.store.backend!r}"
        )
    if config.flow.max_login_attempts < 1:
        raise ValueError(
            f"MAX_LOGIN_ATTEMPTS must be >= 1, got {config.flow.max_login_attempts}"
        )
    if not 1 <= config.flow.date_picker_days <= 31:
        raise ValueError(
            f"DATE_PICKER_DAYS must be between 1 and 31, got {config.flow.date_picker_days}"
        )
    if not 1 <= config.port <= 65535:
        raise ValueError(f"PORT must be between 1 and 65535, got {config.port}")


def load_config() -> AppConfig:
    """Load and validate application configuration."""
    config = AppConfig()
    _validate_config(config)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(levelname)s [chat=%(chat_id)s]: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for handler in logging.getLogger().handlers:
        _install_chat_filter(handler)
    logger.info("Configuration loaded for portal %s", config.portal.base_url)
    return config


def _install_chat_filter(handler: logging.Handler) -> None:
    if not any(isinstance(f, ChatIdFilter) for f in handler.filters):
        handler.addFilter(ChatIdFilter())


# Singleton instance
settings = load_config()
