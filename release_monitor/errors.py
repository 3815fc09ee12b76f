"""Exception taxonomy shared by the monitor pipeline."""
from __future__ import annotations

from typing import Optional


class MonitorError(Exception):
    """Base class for every error raised by the monitor."""


class FetchTransient(MonitorError):
    """A single source could not be retrieved; the run continues without it."""

    def __init__(self, message: str, url: Optional[str] = None) -> None:
        super().__init__(message)
        self.url = url


class FetchTimeout(FetchTransient):
    """No complete response arrived within the configured window."""


class HttpError(FetchTransient):
    """The terminal response carried a non-2xx status."""

    def __init__(self, status: int, url: Optional[str] = None) -> None:
        super().__init__(f"HTTP {status}: {url}", url)
        self.status = status


class TooManyRedirects(FetchTransient):
    """The redirect budget was exhausted before a terminal response."""


class MalformedRedirect(FetchTransient):
    """A redirect status arrived without a usable ``Location`` header."""


class ResponseTooLarge(FetchTransient):
    """The body exceeded the byte cap and the transfer was aborted."""


class ConfigError(MonitorError):
    """Source configuration could not be used; fatal before any fetch."""


class ConfigMissing(ConfigError):
    pass


class ConfigInvalid(ConfigError):
    pass


class StateCorrupt(MonitorError):
    """The persisted watermark could not be decoded."""


class DeliveryFailure(MonitorError):
    """The alert could not be handed to the delivery channel."""


__all__ = [
    "MonitorError",
    "FetchTransient",
    "FetchTimeout",
    "HttpError",
    "TooManyRedirects",
    "MalformedRedirect",
    "ResponseTooLarge",
    "ConfigError",
    "ConfigMissing",
    "ConfigInvalid",
    "StateCorrupt",
    "DeliveryFailure",
]
