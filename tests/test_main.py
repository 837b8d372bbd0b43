import logging

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

import main
from main import FeedPollerApp, log_event
from messagequeue import QueueMessage

RSS = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Local</title>
<item><title>First</title><link>https://example.com/1</link></item>
</channel></rss>"""


@pytest.mark.asyncio
async def test_run_once_polls_every_feed(monkeypatch, tmp_path, caplog):
    hits = []

    async def handler(request):
        hits.append(request.path)
        return web.Response(body=RSS, content_type="application/rss+xml")

    app = web.Application()
    app.router.add_get("/a.xml", handler)
    app.router.add_get("/b.xml", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        monkeypatch.setattr(main.config, "FEED_SOURCES", {
            "a": str(server.make_url("/a.xml")),
            "b": str(server.make_url("/b.xml")),
        })
        monkeypatch.setattr(main.config, "DATABASE_PATH", str(tmp_path / "seen.db"))

        poller = FeedPollerApp(store_kind="sqlite", concurrency=2)
        with caplog.at_level(logging.INFO, logger="FeedPoller.main"):
            assert await poller.run(once=True) is True
    finally:
        await server.close()

    assert sorted(hits) == ["/a.xml", "/b.xml"]
    assert (tmp_path / "seen.db").exists()
    assert "Seen-item store holds 2 fingerprints for 2 feeds" in [r.getMessage() for r in caplog.records]


@pytest.mark.asyncio
async def test_run_without_feeds_fails(monkeypatch):
    monkeypatch.setattr(main.config, "FEED_SOURCES", {})

    assert await FeedPollerApp(store_kind="memory").run(once=True) is False


def test_log_event_reports_each_entry(caplog):
    message = QueueMessage("feed.entries", {
        "feedTitle": "Local",
        "feedUrl": "https://example.com/feed",
        "fetchKey": "k",
        "entries": [
            {"title": "First", "link": "https://example.com/1"},
            {"title": None, "link": None},
        ],
    })

    with caplog.at_level(logging.INFO, logger="FeedPoller.main"):
        log_event(message)

    lines = [r.getMessage() for r in caplog.records]
    assert "[Local] First https://example.com/1" in lines
    assert "[Local] (untitled)" in lines
