"""SQLite database operations for RSS Feed Sync."""

import hashlib
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Iterator

from rssfeed_sync.config import ENTRY_RETENTION_DAYS
from rssfeed_sync.errors import (
    DuplicateFeedError,
    EntryNotFoundError,
    ErrorKind,
    FeedNotFoundError,
    FeedSyncError,
    InvalidUrlError,
    StoreIOError,
)
from rssfeed_sync.feed_parser import FeedKind, ParsedFeed, RawEntry
from rssfeed_sync.fetcher import normalize_url
from rssfeed_sync.models import Entry, Feed, ImportStats, MergeStats

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feeds (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    url TEXT UNIQUE NOT NULL,
    title TEXT,
    feed_title TEXT,
    site_link TEXT,
    feed_kind TEXT,
    etag TEXT,
    created_at TEXT NOT NULL,
    last_refreshed_at TEXT,
    last_error TEXT,
    last_error_kind TEXT
);

CREATE TABLE IF NOT EXISTS entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    feed_id INTEGER NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    entry_key TEXT NOT NULL,
    title TEXT NOT NULL,
    body TEXT NOT NULL,
    link TEXT,
    author TEXT,
    published_at TEXT,
    read_at TEXT,
    first_seen_at TEXT NOT NULL,
    UNIQUE(feed_id, entry_key)
);

CREATE INDEX IF NOT EXISTS idx_entries_feed_published
    ON entries(feed_id, published_at);
CREATE INDEX IF NOT EXISTS idx_entries_first_seen ON entries(feed_id, first_seen_at);
CREATE INDEX IF NOT EXISTS idx_entries_read_at ON entries(read_at);
"""

DISPLAY_TITLE_SQL = "COALESCE(feeds.title, NULLIF(feeds.feed_title, ''), feeds.url)"

ENTRY_ORDER_SQL = "published_at IS NULL, published_at DESC, first_seen_at DESC, id DESC"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Database:
    """SQLite store for feeds, entries, read state and retention.

    One connection is shared by every caller; a lock serializes access so a
    reader never observes a merge that has not committed.
    """

    def __init__(self, db_path: str, clock: Callable[[], datetime] = _utcnow):
        self.db_path = db_path
        self.clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    def connect(self) -> None:
        """Open database connection and initialize schema."""
        try:
            # Transactions are managed explicitly with BEGIN IMMEDIATE.
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(SCHEMA_SQL)
            with self._transaction() as conn:
                version = conn.execute("PRAGMA user_version").fetchone()[0]
                if version < SCHEMA_VERSION:
                    conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        except sqlite3.Error as e:
            raise StoreIOError(f"cannot open database {self.db_path}: {e}") from e
        logger.debug("Opened database %s", self.db_path)

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "Database":
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically; any failure rolls the whole block back."""
        with self._lock:
            conn = self.conn
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        """Translate sqlite3 failures into StoreIOError."""
        try:
            yield
        except sqlite3.Error as e:
            logger.error("Database error while %s: %s", action, e, exc_info=True)
            raise StoreIOError(f"database error while {action}: {e}") from e

    def _query(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        with self._guard("reading"), self._lock:
            return self.conn.execute(sql, tuple(params)).fetchall()

    # --- Feed operations ---

    def subscribe(self, url: str, title: str | None = None) -> int:
        """Subscribe to a feed URL and return the new feed id.

        Raises:
            InvalidUrlError: If the URL cannot be normalized.
            DuplicateFeedError: If the normalized URL is already subscribed.
        """
        url = normalize_url(url)
        title = (title or "").strip() or None
        with self._guard("subscribing"):
            try:
                with self._transaction() as conn:
                    cursor = conn.execute(
                        "INSERT INTO feeds (url, title, created_at) VALUES (?, ?, ?)",
                        (url, title, _dt_to_str(self.clock())),
                    )
            except sqlite3.IntegrityError as e:
                raise DuplicateFeedError(url) from e
        logger.info("Subscribed to %s", url)
        return cursor.lastrowid

    def rename(self, feed_id: int, new_title: str) -> None:
        """Set the display title of a feed; a blank title restores the default."""
        title = new_title.strip() or None
        with self._guard("renaming feed"), self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE feeds SET title = ? WHERE id = ?", (title, feed_id)
            )
            if cursor.rowcount == 0:
                raise FeedNotFoundError(feed_id)

    def delete(self, feed_id: int) -> None:
        """Delete a feed and its entries (cascade)."""
        with self._guard("deleting feed"), self._transaction() as conn:
            cursor = conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
            if cursor.rowcount == 0:
                raise FeedNotFoundError(feed_id)
        logger.info("Deleted feed %d", feed_id)

    def get_feed(self, feed_id: int) -> Feed:
        rows = self._query(
            f"SELECT feeds.*, {DISPLAY_TITLE_SQL} AS display_title FROM feeds WHERE id = ?",
            (feed_id,),
        )
        if not rows:
            raise FeedNotFoundError(feed_id)
        return _row_to_feed(rows[0])

    def feed_ids(self) -> list[int]:
        """Return every feed id in display order."""
        rows = self._query(
            f"SELECT id FROM feeds ORDER BY lower({DISPLAY_TITLE_SQL}) ASC, id ASC"
        )
        return [r["id"] for r in rows]

    def list_feeds(self) -> list[tuple[Feed, int]]:
        """Return (feed, unread count) pairs ordered by display title."""
        rows = self._query(
            f"""SELECT feeds.*, {DISPLAY_TITLE_SQL} AS display_title,
                      (SELECT COUNT(*) FROM entries
                       WHERE entries.feed_id = feeds.id AND entries.read_at IS NULL)
                      AS unread_count
               FROM feeds
               ORDER BY lower({DISPLAY_TITLE_SQL}) ASC, feeds.id ASC"""
        )
        return [(_row_to_feed(r), r["unread_count"]) for r in rows]

    def count_unread(self, feed_id: int) -> int:
        rows = self._query(
            "SELECT COUNT(*) AS cnt FROM entries WHERE feed_id = ? AND read_at IS NULL",
            (feed_id,),
        )
        return rows[0]["cnt"]

    def mark_refreshed(self, feed_id: int, etag: str | None = None) -> None:
        """Record a successful refresh that brought no new document."""
        with self._guard("recording refresh"), self._transaction() as conn:
            if _touch_feed(conn, feed_id, self.clock()) and etag is not None:
                conn.execute("UPDATE feeds SET etag = ? WHERE id = ?", (etag, feed_id))

    def record_feed_error(self, feed_id: int, error: FeedSyncError) -> None:
        """Store the classified error of the latest failed refresh."""
        with self._guard("recording feed error"), self._transaction() as conn:
            conn.execute(
                "UPDATE feeds SET last_error = ?, last_error_kind = ? WHERE id = ?",
                (str(error), error.kind.value, feed_id),
            )

    # --- Merge and retention ---

    def merge(
        self,
        feed_id: int,
        parsed: ParsedFeed,
        *,
        etag: str | None = None,
        now: datetime | None = None,
    ) -> MergeStats:
        """Reconcile freshly parsed entries into the stored entries of a feed.

        Entries are applied in document order. A known entry is updated in
        place and keeps its read state and first-seen time; an unknown entry
        is inserted unread. The whole merge, including the feed metadata and
        refresh timestamp, commits or rolls back as one transaction.
        The stored ETag is replaced by ``etag``, which is None when the
        response carried no validator.

        Raises:
            FeedNotFoundError: If the feed no longer exists.
            StoreIOError: If the transaction fails; nothing is applied.
        """
        now = now or self.clock()
        stats = MergeStats()
        inserted: set[str] = set()
        updated: set[str] = set()

        with self._guard("merging entries"), self._transaction() as conn:
            if not _touch_feed(conn, feed_id, now):
                raise FeedNotFoundError(feed_id)
            # A full response replaces the validator, even with none.
            conn.execute(
                """UPDATE feeds SET feed_title = ?, site_link = ?, feed_kind = ?,
                   etag = ? WHERE id = ?""",
                (parsed.title, parsed.site_link, parsed.kind.value, etag, feed_id),
            )

            for raw in parsed.entries:
                key = entry_key(raw)
                values = (
                    raw.title,
                    raw.body,
                    raw.link,
                    raw.author,
                    _dt_to_str(raw.published_at),
                )
                existing = conn.execute(
                    """SELECT id, title, body, link, author, published_at
                       FROM entries WHERE feed_id = ? AND entry_key = ?""",
                    (feed_id, key),
                ).fetchone()

                if existing is None:
                    conn.execute(
                        """INSERT INTO entries (feed_id, entry_key, title, body, link,
                           author, published_at, read_at, first_seen_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?)""",
                        (feed_id, key, *values, _dt_to_str(now)),
                    )
                    inserted.add(key)
                elif tuple(existing)[1:] != values:
                    conn.execute(
                        """UPDATE entries SET title = ?, body = ?, link = ?,
                           author = ?, published_at = ? WHERE id = ?""",
                        (*values, existing["id"]),
                    )
                    if key not in inserted:
                        updated.add(key)

        stats.inserted = len(inserted)
        stats.updated = len(updated)
        logger.debug(
            "Merged feed %d: %d inserted, %d updated",
            feed_id, stats.inserted, stats.updated,
        )
        return stats

    def prune_expired(
        self,
        feed_id: int,
        now: datetime | None = None,
        retention: timedelta = timedelta(days=ENTRY_RETENTION_DAYS),
    ) -> int:
        """Delete entries first seen before ``now - retention``. Returns count."""
        cutoff = (now or self.clock()) - retention
        with self._guard("pruning entries"), self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM entries WHERE feed_id = ? AND first_seen_at < ?",
                (feed_id, _dt_to_str(cutoff)),
            )
        if cursor.rowcount:
            logger.info("Pruned %d expired entries from feed %d", cursor.rowcount, feed_id)
        return cursor.rowcount

    # --- Entry operations ---

    def get_entry(self, entry_id: int) -> Entry:
        rows = self._query("SELECT * FROM entries WHERE id = ?", (entry_id,))
        if not rows:
            raise EntryNotFoundError(entry_id)
        return _row_to_entry(rows[0])

    def list_entries(
        self, feed_id: int | None = None, unread_only: bool = False
    ) -> list[Entry]:
        """List entries of one feed, or of all feeds when feed_id is None.

        Newest published first; entries without a published date come last.
        """
        query = "SELECT * FROM entries WHERE 1=1"
        params: list = []
        if feed_id is not None:
            query += " AND feed_id = ?"
            params.append(feed_id)
        if unread_only:
            query += " AND read_at IS NULL"
        query += f" ORDER BY {ENTRY_ORDER_SQL}"
        return [_row_to_entry(r) for r in self._query(query, params)]

    def set_read(self, entry_id: int, read: bool) -> None:
        """Mark an entry read or unread. Re-marking keeps the original read time."""
        with self._guard("updating read state"), self._transaction() as conn:
            if read:
                cursor = conn.execute(
                    "UPDATE entries SET read_at = COALESCE(read_at, ?) WHERE id = ?",
                    (_dt_to_str(self.clock()), entry_id),
                )
            else:
                cursor = conn.execute(
                    "UPDATE entries SET read_at = NULL WHERE id = ?", (entry_id,)
                )
            if cursor.rowcount == 0:
                raise EntryNotFoundError(entry_id)

    def toggle_read(self, entry_id: int) -> bool:
        """Flip an entry's read state and return the new state."""
        with self._lock:
            read = not self.get_entry(entry_id).is_read
            self.set_read(entry_id, read)
        return read

    def mark_feed_read(self, feed_id: int) -> int:
        """Mark all entries in a feed as read. Returns count of affected rows."""
        with self._guard("marking feed read"), self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE entries SET read_at = ? WHERE feed_id = ? AND read_at IS NULL",
                (_dt_to_str(self.clock()), feed_id),
            )
        return cursor.rowcount

    def feed_activity(
        self, feed_id: int, days: int, now: datetime | None = None
    ) -> list[int]:
        """Entries per day over the last ``days`` days, oldest first.

        An entry counts on its published day, or on the day it was first seen
        when the feed gave no date.
        """
        now = now or self.clock()
        start = now - timedelta(days=days)
        rows = self._query(
            """SELECT substr(COALESCE(published_at, first_seen_at), 1, 10) AS day,
                      COUNT(*) AS cnt
               FROM entries
               WHERE feed_id = ? AND COALESCE(published_at, first_seen_at) >= ?
               GROUP BY day""",
            (feed_id, _dt_to_str(start)),
        )
        counts = {r["day"]: r["cnt"] for r in rows}
        today = now.astimezone(timezone.utc).date()
        return [
            counts.get((today - timedelta(days=i)).isoformat(), 0)
            for i in range(days - 1, -1, -1)
        ]

    # --- Import / export ---

    def export_all(self) -> list[tuple[str, str]]:
        """Return (display title, url) for every feed."""
        return [(feed.title, feed.url) for feed, _ in self.list_feeds()]

    def import_feeds(self, pairs: Iterable[tuple[str, str]]) -> ImportStats:
        """Subscribe to each (title, url) pair, skipping duplicates and bad URLs."""
        stats = ImportStats()
        for title, url in pairs:
            try:
                self.subscribe(url, title=title)
            except InvalidUrlError as e:
                logger.warning("Skipping import of %r: %s", url, e)
                stats.invalid += 1
            except DuplicateFeedError:
                logger.debug("Skipping import of %r: already subscribed", url)
                stats.duplicates += 1
            else:
                stats.subscribed += 1
        logger.info(
            "Imported %d feeds (%d duplicates, %d invalid)",
            stats.subscribed, stats.duplicates, stats.invalid,
        )
        return stats


def entry_key(raw: RawEntry) -> str:
    """Stable identity of an entry within its feed.

    Uses the feed's own identifier when present, else link and title, else a
    digest of title, publication date and body.
    """
    if raw.identifier:
        return f"id:{raw.identifier}"
    if raw.link:
        return "lt:" + _digest(raw.link, raw.title)
    return "h:" + _digest(raw.title, _dt_to_str(raw.published_at) or "", raw.body)


# --- Helper functions ---


def _digest(*parts: str) -> str:
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


def _touch_feed(conn: sqlite3.Connection, feed_id: int, now: datetime) -> bool:
    cursor = conn.execute(
        """UPDATE feeds SET last_refreshed_at = ?,
           last_error = NULL, last_error_kind = NULL WHERE id = ?""",
        (_dt_to_str(now), feed_id),
    )
    return cursor.rowcount > 0


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to a sortable UTC ISO string for storage."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _str_to_dt(s: str | None) -> datetime | None:
    """Convert stored ISO string back to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _row_to_feed(row: sqlite3.Row) -> Feed:
    """Convert a database row to a Feed dataclass."""
    return Feed(
        id=row["id"],
        url=row["url"],
        title=row["display_title"],
        created_at=_str_to_dt(row["created_at"]),
        custom_title=row["title"],
        feed_title=row["feed_title"],
        site_link=row["site_link"],
        kind=FeedKind(row["feed_kind"]) if row["feed_kind"] else None,
        etag=row["etag"],
        last_refreshed_at=_str_to_dt(row["last_refreshed_at"]),
        last_error=row["last_error"],
        last_error_kind=ErrorKind(row["last_error_kind"]) if row["last_error_kind"] else None,
    )


def _row_to_entry(row: sqlite3.Row) -> Entry:
    """Convert a database row to an Entry dataclass."""
    return Entry(
        id=row["id"],
        feed_id=row["feed_id"],
        entry_key=row["entry_key"],
        title=row["title"],
        body=row["body"],
        link=row["link"],
        author=row["author"],
        published_at=_str_to_dt(row["published_at"]),
        read_at=_str_to_dt(row["read_at"]),
        first_seen_at=_str_to_dt(row["first_seen_at"]),
    )
