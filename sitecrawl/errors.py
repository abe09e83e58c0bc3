"""
Exception hierarchy for the crawler system.
"""

from typing import Optional


class CrawlerError(Exception):
    """Base class for all crawler errors."""


class ConfigurationError(CrawlerError):
    """Invalid crawl configuration, raised before any work starts."""


class FetchError(CrawlerError):
    """A single page (or robots.txt) could not be fetched."""

    def __init__(self, url: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class StoreError(CrawlerError):
    """A coordination store call failed."""


class CircuitOpenError(CrawlerError):
    """The circuit breaker refuses new crawl attempts."""


class ValidationError(CrawlerError):
    """A stored payload could not be decoded into a valid object."""

    def __init__(self, message: str, payload: Optional[str] = None):
        super().__init__(message)
        self.payload = payload
