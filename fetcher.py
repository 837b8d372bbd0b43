#!/usr/bin/env python3
"""
HTTP client for feed documents.

FeedFetcher performs conditional GET requests (If-None-Match /
If-Modified-Since) and reports the outcome as a FetchResult, raising the
FeedFetchError subclasses for every failure mode.
"""

import errno as errno_module
from asyncio import TimeoutError
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime, format_datetime
from typing import List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import DEFAULT_USER_AGENT, config, get_logger
from errors import FetchTimeoutError, HttpStatusError, NetworkError
from telemetry import trace_span

logger = get_logger("fetcher")

HTTP_OK = 200
HTTP_NOT_MODIFIED = 304
HTTP_TOO_MANY_REQUESTS = 429

FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml;q=0.9, text/xml;q=0.8, */*;q=0.5"


@dataclass
class FetchResult:
    """Outcome of a successful request: either "not modified" or a body with validators."""
    not_modified: bool = False
    body: Optional[bytes] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None


def normalize_http_date(date_value: Optional[str]) -> Optional[str]:
    """Normalize HTTP date strings to RFC 7231 format (GMT)."""
    if not date_value:
        return None
    try:
        dt = parsedate_to_datetime(date_value)
        if not dt:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        dt = dt.astimezone(timezone.utc)
        return format_datetime(dt, usegmt=True)
    except (TypeError, ValueError, OverflowError) as exc:
        logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
        return None


def quote_etag(etag: str) -> str:
    """Quote an unquoted ETag; strong and weak quoted ETags are returned as-is."""
    if etag.startswith('"') or etag.startswith('W/"'):
        return etag
    return f'"{etag}"'


def _errno_name(error: BaseException) -> Optional[str]:
    """Symbolic errno (e.g. ECONNRESET) carried by an aiohttp error, if any."""
    os_error = getattr(error, 'os_error', None)
    code = getattr(os_error, 'errno', None) if os_error is not None else getattr(error, 'errno', None)
    if code is None:
        # aiohttp reports a peer dropping the connection without an errno
        if error.__class__.__name__ == "ServerDisconnectedError":
            return "ECONNRESET"
        return None
    return errno_module.errorcode.get(code)


def _format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        code = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if code is not None:
            parts.append(f"errno={code}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


class FeedFetcher:
    """Conditional-GET client sharing one aiohttp session across feeds."""

    def __init__(self, session: Optional[ClientSession] = None, max_redirects: Optional[int] = None) -> None:
        self._session = session
        self._owns_session = session is None
        self.max_redirects = config.MAX_REDIRECTS if max_redirects is None else max_redirects

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession()
            self._owns_session = True
        return self._session

    def build_headers(
        self,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> dict:
        """Prepare HTTP headers for a conditional request."""
        headers = {'User-Agent': user_agent, 'Accept': FEED_ACCEPT}
        if etag:
            headers['If-None-Match'] = quote_etag(etag)
        if last_modified:
            normalized = normalize_http_date(last_modified)
            if normalized:
                headers['If-Modified-Since'] = normalized
            else:
                logger.warning(f"Invalid Last-Modified value '{last_modified}', not sending If-Modified-Since")
        return headers

    @trace_span(
        "fetch_http_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, *args, **kwargs: {
            "http.url": url,
            "http.conditional": bool(kwargs.get("etag") or kwargs.get("last_modified")),
        },
    )
    async def fetch(
        self,
        url: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        timeout_seconds: float = 30,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> FetchResult:
        """Fetch a feed document.

        Args:
            url: Feed URL.
            etag: ETag from the previous 200 response, if any.
            last_modified: Last-Modified from the previous 200 response, if any.
            timeout_seconds: Total time allowed for the request, body included.
            user_agent: Value of the User-Agent header.

        Returns:
            FetchResult with not_modified=True on 304, or the body and new
            validators on 200.

        Raises:
            HttpStatusError: Any other HTTP status.
            FetchTimeoutError: The request exceeded timeout_seconds.
            NetworkError: DNS, connection, TLS or redirect failures.
        """
        headers = self.build_headers(etag, last_modified, user_agent)
        session = self._get_session()
        try:
            async with session.get(
                url,
                headers=headers,
                timeout=ClientTimeout(total=timeout_seconds),
                # aiohttp treats max_redirects=0 as unlimited
                allow_redirects=self.max_redirects > 0,
                max_redirects=self.max_redirects,
            ) as response:
                if response.status == HTTP_NOT_MODIFIED:
                    logger.debug(f"Feed {url} not modified since last fetch")
                    return FetchResult(not_modified=True)

                if response.status != HTTP_OK:
                    retry_after = response.headers.get("Retry-After")
                    if response.status == HTTP_TOO_MANY_REQUESTS:
                        logger.info(f"Received 429 Too Many Requests for {url} (Retry-After: {retry_after or 'n/a'})")
                    raise HttpStatusError(url, response.status, retry_after)

                body = await response.read()
                return FetchResult(
                    body=body,
                    etag=response.headers.get('ETag') or None,
                    last_modified=response.headers.get('Last-Modified') or None,
                )
        except TimeoutError:
            raise FetchTimeoutError(url, timeout_seconds)
        except ClientError as e:
            raise NetworkError(url, _format_client_error(e), _errno_name(e))

    async def close(self) -> None:
        """Close the HTTP session if this fetcher created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
        logger.debug("FeedFetcher closed")
