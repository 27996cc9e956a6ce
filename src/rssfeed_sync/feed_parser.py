"""RSS/Atom feed parsing using feedparser."""

import calendar
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from time import struct_time

import feedparser

from rssfeed_sync.errors import MalformedDocumentError

logger = logging.getLogger(__name__)


class FeedKind(str, Enum):
    """Feed dialect, detected from the document's root element."""

    RSS = "rss"
    ATOM = "atom"


@dataclass
class RawEntry:
    """One entry as the feed supplied it, before it is stored."""

    identifier: str | None
    title: str
    link: str | None
    body: str
    published_at: datetime | None
    author: str | None = None


@dataclass
class ParsedFeed:
    """Result of parsing an RSS/Atom feed."""

    kind: FeedKind
    title: str
    site_link: str | None = None
    entries: list[RawEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def parse(raw_body: bytes) -> ParsedFeed:
    """Decode a raw response body into a ParsedFeed.

    Args:
        raw_body: The bytes returned by the server.

    Returns:
        ParsedFeed with feed metadata and entries in document order.

    Raises:
        MalformedDocumentError: If the body is not an RSS or Atom document.
    """
    # A bytes argument would first be tried as a local file path.
    parsed = feedparser.parse(io.BytesIO(raw_body))

    kind = _detect_kind(parsed.get("version", ""))
    if kind is None:
        if parsed.bozo and parsed.get("bozo_exception"):
            raise MalformedDocumentError(
                f"document is not valid rss or atom xml: {parsed.bozo_exception}"
            )
        raise MalformedDocumentError(
            "document is not an rss or atom feed (no channel or feed root element)"
        )

    warnings: list[str] = []
    if parsed.bozo:
        warnings.append(f"Feed has formatting issues: {parsed.bozo_exception}")

    entries = _extract_entries(parsed.entries, warnings)

    return ParsedFeed(
        kind=kind,
        title=parsed.feed.get("title", ""),
        site_link=parsed.feed.get("link"),
        entries=entries,
        warnings=warnings,
    )


def _detect_kind(version: str) -> FeedKind | None:
    """Map feedparser's root-element based version string to a dialect."""
    if version.startswith("rss"):
        return FeedKind.RSS
    if version.startswith("atom"):
        return FeedKind.ATOM
    return None


def _extract_entries(entries: list, warnings: list[str]) -> list[RawEntry]:
    """Extract RawEntry values from feedparser entries."""
    items = []
    for entry in entries:
        if not entry.get("link"):
            warnings.append(f"Entry has no link: {entry.get('title', 'unknown')}")
        items.append(
            RawEntry(
                identifier=entry.get("id") or None,
                title=entry.get("title", ""),
                link=entry.get("link") or None,
                body=_extract_body(entry),
                published_at=_parse_date(entry),
                author=entry.get("author") or None,
            )
        )
    return items


def _extract_body(entry: dict) -> str:
    """Prefer full content (Atom) over summary or description."""
    content = entry.get("content")
    if content:
        value = content[0].get("value")
        if value:
            return value
    return entry.get("summary") or entry.get("description") or ""


def _parse_date(entry: dict) -> datetime | None:
    """Parse publication date from a feedparser entry."""
    for name in ("published_parsed", "updated_parsed", "created_parsed"):
        time_struct = entry.get(name)
        if isinstance(time_struct, struct_time):
            try:
                # feedparser normalizes parsed dates to UTC
                return datetime.fromtimestamp(
                    calendar.timegm(time_struct), tz=timezone.utc
                )
            except (ValueError, OverflowError):
                logger.debug("Unusable %s on entry %r", name, entry.get("title"))
                continue
    return None
