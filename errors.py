#!/usr/bin/env python3
"""Common error types shared across modules.

Every failure the poller can hit while processing a single feed is one of
these. The reader recovers all of them locally by backing the feed off.
"""

from typing import Optional

# Socket errno names treated as transient upstream trouble
TRANSIENT_ERRNO_NAMES = ("ECONNABORTED", "ECONNRESET")


class FeedError(Exception):
    """Base class for per-feed failures.

    Attributes:
        url: The feed URL being processed when the error occurred.
    """

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class FeedFetchError(FeedError):
    """Raised when a feed could not be retrieved over HTTP."""

    @property
    def is_transient(self) -> bool:
        """Whether this looks like a temporary upstream problem worth retrying quietly."""
        return False


class HttpStatusError(FeedFetchError):
    """The server answered with something other than 200 or 304."""

    def __init__(self, url: str, status: int, retry_after: Optional[str] = None):
        super().__init__(f"Failed to fetch feed due to HTTP {status}", url)
        self.status = status
        self.retry_after = retry_after

    @property
    def is_transient(self) -> bool:
        # 5XX might be a server screwup, 4XX means we can't read the resource
        return 500 <= self.status < 600


class NetworkError(FeedFetchError):
    """Connection-level failure (DNS, refused, reset, TLS, too many redirects)."""

    def __init__(self, url: str, detail: str, errno_name: Optional[str] = None):
        super().__init__(f"Network error: {detail}", url)
        self.errno_name = errno_name

    @property
    def is_transient(self) -> bool:
        return self.errno_name in TRANSIENT_ERRNO_NAMES


class FetchTimeoutError(FeedFetchError):
    """The request did not complete within the poll timeout."""

    def __init__(self, url: str, timeout_seconds: float):
        super().__init__(f"Timed out after {timeout_seconds}s", url)
        self.timeout_seconds = timeout_seconds

    @property
    def is_transient(self) -> bool:
        return True


class FeedParseError(FeedError):
    """Raised when a fetched document cannot be turned into a channel."""


class EncodingError(FeedParseError):
    """The document bytes could not be decoded."""

    def __init__(self, detail: str = ""):
        message = "An error while converting bytes to UTF8."
        if detail:
            message = f"{message} {detail}"
        super().__init__(message)


class MalformedXmlError(FeedParseError):
    """The document is not well-formed XML."""

    def __init__(self, detail: str = ""):
        super().__init__(f"XML parsing error. {detail}".strip())


class UnexpectedEofError(FeedParseError):
    """The document is empty or ends before its root element is closed."""

    def __init__(self):
        super().__init__("Unexpected end of input")


class WrongAttributeError(FeedParseError):
    """A recognised attribute carries a value outside its allowed set."""

    def __init__(self, attribute: str, value: str):
        super().__init__(f"The attribute '{attribute}' had the wrong value '{value}'")
        self.attribute = attribute
        self.value = value


class WrongDatetimeError(FeedParseError):
    """A timestamp field could not be parsed."""

    def __init__(self, value: str):
        super().__init__(f"The format of the datetime ('{value}') was wrong.")
        self.value = value


class UnsupportedFormatError(FeedParseError):
    """The document is neither RSS 2.0 nor Atom 1.0."""

    def __init__(self, version: str):
        super().__init__(f"Unsupported feed format '{version or 'unknown'}'")
        self.version = version


class StoreError(FeedError):
    """The seen-item store failed to read or write."""


__all__ = [
    "FeedError",
    "FeedFetchError",
    "HttpStatusError",
    "NetworkError",
    "FetchTimeoutError",
    "FeedParseError",
    "EncodingError",
    "MalformedXmlError",
    "UnexpectedEofError",
    "WrongAttributeError",
    "WrongDatetimeError",
    "UnsupportedFormatError",
    "StoreError",
]
