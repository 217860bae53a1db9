"""
Error taxonomy for market-data access.

- ConfigurationError: missing or invalid settings, raised before any network call
- TransportError: network failure, timeout, non-2xx status, undecodable body
- ProviderError: provider answered with an error envelope instead of data

Fetchers catch these and turn them into component-local error state.
"""

from typing import Optional


class MarketDataError(Exception):
    """Base class for everything this project raises on purpose."""


class ConfigurationError(MarketDataError):
    pass


class TransportError(MarketDataError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderError(TransportError):
    """JSON error envelope, e.g. {"error": "rate limited"}."""
