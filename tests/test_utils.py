import pytest

from utils import format_duration, normalize_feed_url, strip_html, truncate_string, validate_url


@pytest.mark.parametrize("url,expected", [
    ("https://example.com/feed.xml", True),
    ("http://example.com", True),
    ("  https://example.com/rss  ", True),
    ("ftp://example.com/feed.xml", False),
    ("https://", False),
    ("example.com/feed", False),
    ("", False),
    (None, False),
])
def test_validate_url(url, expected):
    assert validate_url(url) is expected


def test_normalize_feed_url_drops_fragment_and_whitespace():
    assert normalize_feed_url(" https://example.com/feed?x=1#top ") == "https://example.com/feed?x=1"
    assert normalize_feed_url("mailto:someone@example.com") is None


def test_strip_html():
    assert strip_html("<p>Hello <b>world</b></p>") == "Hello world"
    assert strip_html("Fish &amp; chips") == "Fish & chips"
    assert strip_html("  plain  ") == "plain"
    assert strip_html("<br/>") is None
    assert strip_html(None) is None


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(-5) == "0s"
    assert format_duration(65) == "1m 5s"
    assert format_duration(3600) == "1h"
    assert format_duration(5025) == "1h 23m 45s"


def test_truncate_string():
    assert truncate_string("short", 10) == "short"
    assert truncate_string("a long entry title", 10) == "a long ..."
    assert truncate_string("abcdef", 2) == "ab"
