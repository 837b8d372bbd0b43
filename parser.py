#!/usr/bin/env python3
"""
RSS 2.0 / Atom 1.0 document parser.

Turns a fetched feed document into a FeedChannel: the channel title plus one
FeedItem per entry, each carrying a fingerprint used for deduplication.

Documents are read with feedparser. Mapping is two-staged: the RSS stage
reports WRONG_FORMAT unless feedparser detected an <rss> document, and the
Atom stage is tried next. Any other problem surfaces as a FeedParseError
subclass.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import format_datetime
from enum import Enum
from hashlib import md5
from io import BytesIO
from typing import Any, Dict, List, Optional, Union
from xml.parsers.expat import errors as expat_errors
from xml.sax import SAXParseException

import feedparser
from feedparser.exceptions import CharacterEncodingOverride, CharacterEncodingUnknown, UndeclaredNamespace

from config import get_logger
from errors import (
    EncodingError,
    FeedParseError,
    MalformedXmlError,
    UnexpectedEofError,
    UnsupportedFormatError,
    WrongAttributeError,
    WrongDatetimeError,
)

logger = get_logger("parser")

FINGERPRINT_ALGORITHM = "md5"

# Entry HTML is sanitized and relative links resolved
FEEDPARSER_OPTIONS = {
    'sanitize_html': True,
    'resolve_relative_uris': True,
}

# feedparser versions of <rss> documents; rss090/rss10 are RDF and not handled
RSS_VERSIONS = ("rss20", "rss", "rss091u", "rss092", "rss093", "rss094")
ATOM_VERSIONS = ("atom10",)

# Atom text constructs after feedparser maps text/html/xhtml to MIME types
ATOM_TEXT_TYPES = ("text/plain", "text/html", "application/xhtml+xml")

_EOF_MESSAGES = (
    expat_errors.XML_ERROR_NO_ELEMENTS,
    expat_errors.XML_ERROR_UNCLOSED_TOKEN,
    expat_errors.XML_ERROR_PARTIAL_CHAR,
)
_ENCODING_MESSAGES = (
    expat_errors.XML_ERROR_UNKNOWN_ENCODING,
    expat_errors.XML_ERROR_INCORRECT_ENCODING,
)

# Text documents are handed to feedparser re-encoded as UTF-8
_TEXT_HEADERS = {'content-type': 'application/xml; charset=utf-8'}


@dataclass
class FeedItem:
    """One normalized entry of a feed."""
    title: Optional[str] = None
    link: Optional[str] = None
    id: Optional[str] = None
    id_is_permalink: bool = False
    pubdate: Optional[str] = None
    summary: Optional[str] = None
    author: Optional[str] = None
    fingerprint: Optional[str] = None

    def to_event(self) -> Dict[str, Any]:
        """The fields delivered downstream for a new entry."""
        return {
            "title": self.title,
            "link": self.link,
            "summary": self.summary,
            "author": self.author,
            "pubdate": self.pubdate,
        }


@dataclass
class FeedChannel:
    """A parsed feed: its title and entries in document order."""
    title: str
    items: List[FeedItem] = field(default_factory=list)


class ParseStatus(Enum):
    OK = "ok"
    WRONG_FORMAT = "wrong_format"
    ERROR = "error"


@dataclass
class ParseOutcome:
    """Tagged result of one dialect stage."""
    status: ParseStatus
    channel: Optional[FeedChannel] = None
    error: Optional[FeedParseError] = None


def fingerprint(source: str) -> str:
    """Stable, self-describing hash of an entry's identifying string."""
    digest = md5(source.encode("utf-8")).hexdigest()
    return f"{FINGERPRINT_ALGORITHM}:{digest}"


def compute_fingerprint(item: FeedItem) -> Optional[str]:
    """Fingerprint the item's id, else its link, else its title.

    Returns None when the item has none of them, in which case it cannot be
    deduplicated.
    """
    for candidate in (item.id, item.link, item.title):
        if candidate:
            return fingerprint(candidate)
    return None


def _value(value: Any) -> Optional[str]:
    """Strip a feedparser string field, mapping missing or blank values to None."""
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _raise_for_bozo(parsed) -> None:
    """Turn the problem feedparser recorded, if any, into a FeedParseError."""
    if not parsed.get('bozo'):
        return
    error = parsed.get('bozo_exception')
    if isinstance(error, SAXParseException):
        message = error.getMessage()
        if message in _EOF_MESSAGES:
            raise UnexpectedEofError()
        if message in _ENCODING_MESSAGES:
            raise EncodingError(str(error))
        raise MalformedXmlError(str(error))
    if isinstance(error, (CharacterEncodingUnknown, CharacterEncodingOverride)):
        raise EncodingError(str(error))
    # Anything else (e.g. NonXMLContentType) does not stop the document being read
    logger.debug(f"Ignoring feedparser warning: {error}")


def _read(document: Union[bytes, str]):
    """Run feedparser over a document and reject the ones it could not read."""
    if isinstance(document, str):
        data = document.encode("utf-8")
        headers = _TEXT_HEADERS
    else:
        data = bytes(document)
        headers = None

    # Whitespace before the XML declaration makes it invalid
    data = data.lstrip(b" \t\r\n")
    if not data or not data.strip(b"\xef\xbb\xbf \t\r\n"):
        raise UnexpectedEofError()

    try:
        parsed = feedparser.parse(BytesIO(data), response_headers=headers, **FEEDPARSER_OPTIONS)
    except UndeclaredNamespace as e:
        raise MalformedXmlError(str(e))
    _raise_for_bozo(parsed)
    return parsed


def _format_date(raw: str, parsed) -> str:
    """Render an Atom timestamp as RFC 2822, keeping its UTC offset when it has one."""
    try:
        dt = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
    except ValueError:
        # feedparser already normalized the other formats it understands to UTC
        dt = datetime.fromtimestamp(calendar.timegm(parsed), tz=timezone.utc)
    return format_datetime(dt)


def _atom_date(entry) -> Optional[str]:
    for key in ("published", "updated"):
        raw = _value(entry.get(key))
        if raw is None:
            continue
        parsed = entry.get(f"{key}_parsed")
        if parsed is None:
            raise WrongDatetimeError(raw)
        return _format_date(raw, parsed)
    return None


def _check_text_type(detail, media_types: bool = False) -> None:
    """Reject Atom text constructs whose `type` is not text, html or xhtml.

    atom:content may also declare any MIME media type.
    """
    if not detail:
        return
    text_type = detail.get('type')
    if not text_type or text_type in ATOM_TEXT_TYPES:
        return
    if media_types and "/" in text_type:
        return
    raise WrongAttributeError("type", text_type)


def _atom_authors(authors) -> Optional[str]:
    """Render feedparser author dicts as "name<email><uri>" joined with ", "."""
    fragments = []
    for person in authors or []:
        fragment = _value(person.get('name')) or ""
        email = _value(person.get('email'))
        uri = _value(person.get('href'))
        if email:
            fragment += f"<{email}>"
        if uri:
            fragment += f"<{uri}>"
        if fragment:
            fragments.append(fragment)
    return ", ".join(fragments) if fragments else None


def _atom_link(entry) -> Optional[str]:
    """href of the first alternate link, else of the first link."""
    links = [link for link in entry.get('links', []) if _value(link.get('href'))]
    for link in links:
        if link.get('rel', 'alternate') == 'alternate':
            return link['href'].strip()
    return links[0]['href'].strip() if links else None


def _parse_rss(parsed) -> ParseOutcome:
    if parsed.get('version') not in RSS_VERSIONS:
        return ParseOutcome(ParseStatus.WRONG_FORMAT)
    items = []
    for entry in parsed.entries:
        guid = _value(entry.get('id'))
        link = _value(entry.get('link'))
        # guidislink is only set when the guid stood in for a missing <link>
        is_permalink = bool(guid) and (bool(entry.get('guidislink')) or guid == link)
        items.append(FeedItem(
            title=_value(entry.get('title')),
            link=link,
            id=guid,
            id_is_permalink=is_permalink,
            pubdate=_value(entry.get('published')),
            summary=_value(entry.get('summary')),
            author=_value(entry.get('author')),
        ))
    return ParseOutcome(ParseStatus.OK, FeedChannel(_value(parsed.feed.get('title')) or "", items))


def _parse_atom(parsed) -> ParseOutcome:
    if parsed.get('version') not in ATOM_VERSIONS:
        return ParseOutcome(ParseStatus.WRONG_FORMAT)
    try:
        _check_text_type(parsed.feed.get('title_detail'))
        feed_authors = _atom_authors(parsed.feed.get('authors'))
        items = []
        for entry in parsed.entries:
            _check_text_type(entry.get('title_detail'))
            _check_text_type(entry.get('summary_detail'), media_types=True)
            content = entry.get('content') or []
            for part in content:
                _check_text_type(part, media_types=True)
            summary = _value(entry.get('summary'))
            if summary is None and content:
                summary = _value(content[0].get('value'))
            items.append(FeedItem(
                title=_value(entry.get('title')),
                link=_atom_link(entry),
                id=_value(entry.get('id')),
                id_is_permalink=False,
                pubdate=_atom_date(entry),
                summary=summary,
                author=_atom_authors(entry.get('authors')) or feed_authors,
            ))
        return ParseOutcome(ParseStatus.OK, FeedChannel(_value(parsed.feed.get('title')) or "", items))
    except FeedParseError as e:
        return ParseOutcome(ParseStatus.ERROR, error=e)


def parse_feed(document: Union[bytes, str]) -> FeedChannel:
    """Parse an RSS or Atom document.

    Args:
        document: Raw response body, either bytes or already-decoded text.

    Returns:
        The normalized channel, every item carrying its fingerprint.

    Raises:
        FeedParseError: One of its subclasses describing what went wrong.
    """
    parsed = _read(document)

    outcome = _parse_rss(parsed)
    if outcome.status is ParseStatus.WRONG_FORMAT:
        outcome = _parse_atom(parsed)
    if outcome.status is ParseStatus.WRONG_FORMAT:
        raise UnsupportedFormatError(parsed.get('version', ''))
    if outcome.status is ParseStatus.ERROR:
        raise outcome.error

    channel = outcome.channel
    for item in channel.items:
        item.fingerprint = compute_fingerprint(item)
    logger.debug(f"Parsed {len(channel.items)} entries from '{channel.title}' ({parsed.get('version')})")
    return channel
