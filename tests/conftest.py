"""Shared test fixtures for RSS Feed Sync tests."""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from rssfeed_sync.database import Database


SAMPLE_RSS_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Test Feed</title>
    <link>https://example.com</link>
    <description>A test RSS feed</description>
    <item>
      <title>First Article</title>
      <link>https://example.com/article-1</link>
      <guid>article-1</guid>
      <description>Description of the first article</description>
      <pubDate>Fri, 13 Feb 2026 10:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Second Article</title>
      <link>https://example.com/article-2</link>
      <guid>article-2</guid>
      <description>Description of the second article</description>
      <pubDate>Fri, 13 Feb 2026 09:00:00 GMT</pubDate>
    </item>
    <item>
      <title>Third Article</title>
      <link>https://example.com/article-3</link>
      <guid>article-3</guid>
      <description>Description of the third article</description>
      <pubDate>Fri, 13 Feb 2026 08:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>"""

SAMPLE_ATOM_XML = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Test Atom Feed</title>
  <link href="https://example.com"/>
  <subtitle>A test Atom feed</subtitle>
  <id>urn:uuid:feed</id>
  <updated>2026-02-13T10:00:00Z</updated>
  <entry>
    <title>Atom Entry 1</title>
    <link href="https://example.com/entry-1"/>
    <id>urn:uuid:entry-1</id>
    <author><name>Ada</name></author>
    <summary>Summary of entry 1</summary>
    <content type="html">&lt;p&gt;Full content of entry 1&lt;/p&gt;</content>
    <updated>2026-02-13T10:00:00Z</updated>
  </entry>
  <entry>
    <title>Atom Entry 2</title>
    <link href="https://example.com/entry-2"/>
    <id>urn:uuid:entry-2</id>
    <summary>Summary of entry 2</summary>
    <updated>not a date</updated>
  </entry>
</feed>"""

SAMPLE_MALFORMED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Malformed Feed</title>
    <link>https://example.com</link>
    <item>
      <title>Good Item</title>
      <guid>good-item</guid>
    </item>
    <item>
      <title>Bad Item</title>
      <!-- Missing closing tags intentionally -->
"""

SAMPLE_NOT_A_FEED_XML = """<?xml version="1.0" encoding="UTF-8"?>
<html>
  <body>This is not a feed</body>
</html>"""


def rss_document(items: list[tuple[str, str, str]], title: str = "Test Feed") -> bytes:
    """Build an RSS 2.0 document from (guid, title, description) triples."""
    rendered = "".join(
        f"""
    <item>
      <title>{item_title}</title>
      <link>https://example.com/{guid}</link>
      <guid>{guid}</guid>
      <description>{description}</description>
      <pubDate>Fri, 13 Feb 2026 {10 - i:02d}:00:00 GMT</pubDate>
    </item>"""
        for i, (guid, item_title, description) in enumerate(items)
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>{title}</title>
<link>https://example.com</link>{rendered}
</channel></rss>""".encode()


class FakeClock:
    """Controllable clock for retention and timestamp tests."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FeedServer:
    """In-memory HTTP server for httpx.MockTransport.

    Routes map a URL to bytes (served with 200), an int status, or an async
    callable taking the request and returning an httpx.Response.
    """

    def __init__(self):
        self.routes: dict[str, object] = {}
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(str(request.url))
        if route is None:
            return httpx.Response(404)
        if isinstance(route, bytes):
            return httpx.Response(200, content=route)
        if isinstance(route, int):
            return httpx.Response(route)
        return await route(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self), follow_redirects=True)


@pytest.fixture
def tmp_db_path():
    """Provide a temporary SQLite database path."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    for suffix in ("", "-wal", "-shm"):
        try:
            os.unlink(path + suffix)
        except OSError:
            pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_db_path, clock):
    """Connected Database using the fake clock."""
    database = Database(tmp_db_path, clock=clock)
    database.connect()
    yield database
    database.close()


@pytest.fixture
def feed_server():
    return FeedServer()


@pytest.fixture
def sample_rss_xml():
    """Sample valid RSS 2.0 XML."""
    return SAMPLE_RSS_XML


@pytest.fixture
def sample_atom_xml():
    """Sample valid Atom XML."""
    return SAMPLE_ATOM_XML


@pytest.fixture
def sample_malformed_xml():
    """Sample malformed RSS XML."""
    return SAMPLE_MALFORMED_XML


@pytest.fixture
def sample_not_a_feed_xml():
    """Sample XML that is not a feed."""
    return SAMPLE_NOT_A_FEED_XML
