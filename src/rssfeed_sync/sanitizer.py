"""Strip control and invisible characters from feed text."""

import dataclasses
import unicodedata

from rssfeed_sync.feed_parser import ParsedFeed

# Zero-width, bidi override and other invisible formatting characters.
_INVISIBLE = frozenset(
    [chr(c) for c in range(0x200B, 0x2010)]
    + [chr(c) for c in range(0x202A, 0x202F)]
    + [chr(c) for c in range(0x2060, 0x2065)]
    + [chr(c) for c in range(0x2066, 0x206A)]
    + ["\ufeff"]
)


def sanitize(text: str) -> str:
    """Return text without control (Cc) or zero-width/invisible characters.

    Tabs and line breaks are control characters too and are removed. The
    result is stable: sanitizing it again changes nothing.
    """
    return "".join(
        ch for ch in text
        if ch not in _INVISIBLE and unicodedata.category(ch) != "Cc"
    )


def sanitize_entries(parsed: ParsedFeed) -> ParsedFeed:
    """Sanitize every entry body of a parsed feed."""
    entries = [
        dataclasses.replace(entry, body=sanitize(entry.body))
        for entry in parsed.entries
    ]
    return dataclasses.replace(parsed, entries=entries)
