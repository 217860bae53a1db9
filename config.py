"""
Environment-driven configuration.

Responsibilities:
- Load an optional .env file once at startup
- Expose provider credentials and tuning knobs as an immutable Settings object
- Fail fast with a descriptive error when a required credential is absent

This module must never:
- Issue network requests
- Log credential values
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

from errors import ConfigurationError


ENV_FILE = Path(__file__).parent / ".env"

DEFAULT_TICKER_SYMBOLS = ("AAPL", "AMZN", "BINANCE:BTCUSDT")

# Setting name -> env names, first non-empty wins.
# NEXT_PUBLIC_* names are accepted so an existing frontend .env works unchanged.
CREDENTIAL_ENV = {
    "finnhub_api_key": ("FINNHUB_API_KEY", "NEXT_PUBLIC_FINNHUB_API_KEY"),
    "polygon_api_key": ("POLYGON_API_KEY", "NEXT_PUBLIC_POLYGON_API_KEY"),
    "alpha_vantage_api_key": ("ALPHA_VANTAGE_API_KEY", "NEXT_PUBLIC_ALPHA_VANTAGE_API_KEY"),
}


@dataclass(frozen=True)
class Settings:
    finnhub_api_key: Optional[str] = None
    polygon_api_key: Optional[str] = None
    alpha_vantage_api_key: Optional[str] = None
    ticker_symbols: Tuple[str, ...] = DEFAULT_TICKER_SYMBOLS
    trade_buffer_size: int = 20
    quote_refresh_seconds: float = 30.0
    request_timeout: float = 10.0
    stream_max_retries: int = 5
    stream_max_backoff: float = 30.0
    log_level: str = "INFO"

    def require(self, name: str) -> str:
        """Return the credential stored under *name* or raise ConfigurationError."""
        value = getattr(self, name, None)
        if not value:
            env_name = CREDENTIAL_ENV.get(name, (name.upper(),))[0]
            raise ConfigurationError(f"{env_name} is not configured")
        return value

    def has(self, name: str) -> bool:
        return bool(getattr(self, name, None))


def _first_env(names, environ) -> Optional[str]:
    for name in names:
        value = (environ.get(name) or "").strip()
        if value:
            return value
    return None


def _number(environ, name: str, default, cast):
    raw = (environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {raw!r}")
    return value


def parse_symbols(raw: Optional[str]) -> Tuple[str, ...]:
    """Split a comma-separated symbol list, dropping blanks and duplicates."""
    if not raw:
        return DEFAULT_TICKER_SYMBOLS
    symbols = [s.strip().upper() for s in raw.split(",")]
    symbols = list(dict.fromkeys(s for s in symbols if s))
    return tuple(symbols) or DEFAULT_TICKER_SYMBOLS


def load_settings(environ=None, env_file: Optional[Path] = ENV_FILE) -> Settings:
    """
    Build Settings from the environment.

    When *environ* is None the process environment is used and *env_file*
    (if present) is loaded into it first. Passing an explicit mapping skips
    the .env file, which keeps tests hermetic.
    """
    if environ is None:
        if env_file is not None and env_file.exists():
            load_dotenv(env_file)
        environ = os.environ

    buffer_size = _number(environ, "TRADE_BUFFER_SIZE", 20, int)
    if buffer_size == 0:
        raise ConfigurationError("TRADE_BUFFER_SIZE must be at least 1")

    return Settings(
        finnhub_api_key=_first_env(CREDENTIAL_ENV["finnhub_api_key"], environ),
        polygon_api_key=_first_env(CREDENTIAL_ENV["polygon_api_key"], environ),
        alpha_vantage_api_key=_first_env(CREDENTIAL_ENV["alpha_vantage_api_key"], environ),
        ticker_symbols=parse_symbols(environ.get("TICKER_SYMBOLS")),
        trade_buffer_size=buffer_size,
        quote_refresh_seconds=_number(environ, "QUOTE_REFRESH_SECONDS", 30.0, float),
        request_timeout=_number(environ, "REQUEST_TIMEOUT", 10.0, float),
        stream_max_retries=_number(environ, "STREAM_MAX_RETRIES", 5, int),
        stream_max_backoff=_number(environ, "STREAM_MAX_BACKOFF", 30.0, float),
        log_level=(environ.get("LOG_LEVEL") or "INFO").strip().upper(),
    )
