import asyncio
from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from errors import FetchTimeoutError, HttpStatusError, NetworkError
from fetcher import FeedFetcher, normalize_http_date, quote_etag

FEED_BODY = b'<?xml version="1.0"?><rss version="2.0"><channel><title>T</title></channel></rss>'


@asynccontextmanager
async def serve(routes):
    """Run an aiohttp app with the given {path: handler} routes."""
    app = web.Application()
    for route_path, handler in routes.items():
        app.router.add_get(route_path, handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield server
    finally:
        await server.close()


def test_quote_etag():
    assert quote_etag("abc") == '"abc"'
    assert quote_etag('"abc"') == '"abc"'
    assert quote_etag('W/"abc"') == 'W/"abc"'


def test_normalize_http_date():
    assert normalize_http_date("Wed, 12 Apr 2023 09:53:00 GMT") == "Wed, 12 Apr 2023 09:53:00 GMT"
    assert normalize_http_date("Wed, 12 Apr 2023 11:53:00 +0200") == "Wed, 12 Apr 2023 09:53:00 GMT"
    assert normalize_http_date("yesterday-ish") is None
    assert normalize_http_date(None) is None


@pytest.mark.asyncio
async def test_fetch_returns_body_and_validators():
    seen_headers = {}

    async def handler(request):
        seen_headers.update(request.headers)
        return web.Response(
            body=FEED_BODY,
            headers={"ETag": '"v1"', "Last-Modified": "Wed, 12 Apr 2023 09:53:00 GMT"},
            content_type="application/rss+xml",
        )

    async with serve({"/feed": handler}) as server:
        async with FeedFetcher() as fetcher:
            result = await fetcher.fetch(str(server.make_url("/feed")), user_agent="TestAgent/1.0")

    assert result.not_modified is False
    assert result.body == FEED_BODY
    assert result.etag == '"v1"'
    assert result.last_modified == "Wed, 12 Apr 2023 09:53:00 GMT"
    assert seen_headers["User-Agent"] == "TestAgent/1.0"
    assert "If-None-Match" not in seen_headers
    assert "If-Modified-Since" not in seen_headers


@pytest.mark.asyncio
async def test_missing_validators_are_none():
    async def handler(request):
        return web.Response(body=FEED_BODY)

    async with serve({"/feed": handler}) as server:
        async with FeedFetcher() as fetcher:
            result = await fetcher.fetch(str(server.make_url("/feed")))

    assert result.etag is None
    assert result.last_modified is None


@pytest.mark.asyncio
async def test_conditional_request_gets_not_modified():
    seen_headers = {}

    async def handler(request):
        seen_headers.update(request.headers)
        if request.headers.get("If-None-Match") == '"v1"':
            return web.Response(status=304)
        return web.Response(body=FEED_BODY)

    async with serve({"/feed": handler}) as server:
        async with FeedFetcher() as fetcher:
            result = await fetcher.fetch(
                str(server.make_url("/feed")),
                etag="v1",
                last_modified="Wed, 12 Apr 2023 11:53:00 +0200",
            )

    assert result.not_modified is True
    assert result.body is None
    assert seen_headers["If-None-Match"] == '"v1"'
    assert seen_headers["If-Modified-Since"] == "Wed, 12 Apr 2023 09:53:00 GMT"


@pytest.mark.asyncio
async def test_unparsable_last_modified_is_not_sent():
    seen_headers = {}

    async def handler(request):
        seen_headers.update(request.headers)
        return web.Response(body=FEED_BODY)

    async with serve({"/feed": handler}) as server:
        async with FeedFetcher() as fetcher:
            await fetcher.fetch(str(server.make_url("/feed")), last_modified="sometime last week")

    assert "If-Modified-Since" not in seen_headers


@pytest.mark.asyncio
@pytest.mark.parametrize("status,transient", [(404, False), (410, False), (500, True), (503, True)])
async def test_http_errors(status, transient):
    async def handler(request):
        return web.Response(status=status)

    async with serve({"/feed": handler}) as server:
        async with FeedFetcher() as fetcher:
            with pytest.raises(HttpStatusError) as exc_info:
                await fetcher.fetch(str(server.make_url("/feed")))

    error = exc_info.value
    assert error.status == status
    assert error.is_transient is transient
    assert str(error) == f"Failed to fetch feed due to HTTP {status}"


@pytest.mark.asyncio
async def test_rate_limited_keeps_retry_after():
    async def handler(request):
        return web.Response(status=429, headers={"Retry-After": "120"})

    async with serve({"/feed": handler}) as server:
        async with FeedFetcher() as fetcher:
            with pytest.raises(HttpStatusError) as exc_info:
                await fetcher.fetch(str(server.make_url("/feed")))

    assert exc_info.value.retry_after == "120"


@pytest.mark.asyncio
async def test_timeout():
    async def handler(request):
        await asyncio.sleep(2)
        return web.Response(body=FEED_BODY)

    async with serve({"/feed": handler}) as server:
        async with FeedFetcher() as fetcher:
            with pytest.raises(FetchTimeoutError) as exc_info:
                await fetcher.fetch(str(server.make_url("/feed")), timeout_seconds=0.2)

    assert exc_info.value.is_transient is True


@pytest.mark.asyncio
async def test_connection_refused_is_network_error():
    async def handler(request):
        return web.Response(body=FEED_BODY)

    async with serve({"/feed": handler}) as server:
        url = str(server.make_url("/feed"))

    # The server is closed now, so nothing listens on that port
    async with FeedFetcher() as fetcher:
        with pytest.raises(NetworkError) as exc_info:
            await fetcher.fetch(url, timeout_seconds=5)

    assert exc_info.value.url == url


@pytest.mark.asyncio
async def test_redirects_are_followed_up_to_limit():
    async def hop(request):
        raise web.HTTPFound("/hop2")

    async def hop2(request):
        raise web.HTTPFound("/feed")

    async def feed(request):
        return web.Response(body=FEED_BODY)

    async with serve({"/hop": hop, "/hop2": hop2, "/feed": feed}) as server:
        async with FeedFetcher(max_redirects=5) as fetcher:
            result = await fetcher.fetch(str(server.make_url("/hop")))
            assert result.body == FEED_BODY

        async with FeedFetcher(max_redirects=1) as fetcher:
            with pytest.raises(NetworkError):
                await fetcher.fetch(str(server.make_url("/hop")))


@pytest.mark.asyncio
async def test_close_leaves_injected_session_open():
    from aiohttp import ClientSession

    async with ClientSession() as session:
        fetcher = FeedFetcher(session=session)
        await fetcher.close()
        assert session.closed is False
