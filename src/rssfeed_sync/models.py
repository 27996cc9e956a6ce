"""Data models for feed synchronization."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from rssfeed_sync.errors import ErrorKind, FeedSyncError
from rssfeed_sync.feed_parser import FeedKind


@dataclass
class Feed:
    """Represents a subscribed RSS/Atom source."""

    id: int
    url: str
    title: str
    created_at: datetime
    custom_title: str | None = None
    feed_title: str | None = None
    site_link: str | None = None
    kind: FeedKind | None = None
    etag: str | None = None
    last_refreshed_at: datetime | None = None
    last_error: str | None = None
    last_error_kind: ErrorKind | None = None


@dataclass
class Entry:
    """Represents a single entry from a feed."""

    id: int
    feed_id: int
    entry_key: str
    title: str
    body: str
    first_seen_at: datetime
    link: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    read_at: datetime | None = None

    @property
    def is_read(self) -> bool:
        return self.read_at is not None


@dataclass
class MergeStats:
    inserted: int = 0
    updated: int = 0

    @property
    def changed(self) -> int:
        return self.inserted + self.updated


@dataclass
class ImportStats:
    subscribed: int = 0
    duplicates: int = 0
    invalid: int = 0

    @property
    def skipped(self) -> int:
        return self.duplicates + self.invalid


class RefreshStatus(str, Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class RefreshOutcome:
    """Result of one refresh attempt for one feed. Never persisted."""

    status: RefreshStatus
    count: int = 0
    error: FeedSyncError | None = None

    @classmethod
    def unchanged(cls) -> "RefreshOutcome":
        return cls(RefreshStatus.UNCHANGED)

    @classmethod
    def updated(cls, count: int) -> "RefreshOutcome":
        return cls(RefreshStatus.UPDATED, count=count)

    @classmethod
    def failed(cls, error: FeedSyncError) -> "RefreshOutcome":
        return cls(RefreshStatus.FAILED, error=error)

    @classmethod
    def cancelled(cls) -> "RefreshOutcome":
        return cls(RefreshStatus.CANCELLED)

    @property
    def error_kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None

    def describe(self) -> str:
        """Short status line suitable for a flash message."""
        if self.status is RefreshStatus.UPDATED:
            noun = "entry" if self.count == 1 else "entries"
            return f"{self.count} new or changed {noun}"
        if self.status is RefreshStatus.FAILED:
            return f"refresh failed: {self.error}"
        if self.status is RefreshStatus.CANCELLED:
            return "refresh cancelled"
        return "no new entries"
