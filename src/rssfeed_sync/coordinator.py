"""Concurrent refresh of feeds: fetch, parse, sanitize, merge, prune."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from functools import partial
from typing import AsyncIterator, Iterable

import httpx

from rssfeed_sync.config import (
    DEFAULT_CONCURRENCY,
    DEFAULT_FETCH_TIMEOUT,
    ENTRY_RETENTION_DAYS,
    MAX_BODY_BYTES,
    Settings,
)
from rssfeed_sync.database import Database
from rssfeed_sync.errors import (
    FeedSyncError,
    FetchError,
    InvalidUrlError,
    ParseError,
    StoreError,
    StoreIOError,
    UnexpectedRefreshError,
)
from rssfeed_sync.feed_parser import ParsedFeed, parse
from rssfeed_sync.fetcher import create_client, fetch
from rssfeed_sync.models import RefreshOutcome
from rssfeed_sync.sanitizer import sanitize_entries

logger = logging.getLogger(__name__)


class RefreshCoordinator:
    """Runs refresh pipelines for many feeds with bounded concurrency.

    A feed is never refreshed twice at once: a request for a feed that is
    already in flight joins the running attempt and reports its outcome.
    """

    def __init__(
        self,
        db: Database,
        *,
        concurrency_limit: int = DEFAULT_CONCURRENCY,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        max_bytes: int = MAX_BODY_BYTES,
        retention: timedelta = timedelta(days=ENTRY_RETENTION_DAYS),
        client: httpx.AsyncClient | None = None,
    ):
        self.db = db
        self.concurrency_limit = concurrency_limit
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.retention = retention
        self._client = client
        self._in_flight: dict[int, asyncio.Task] = {}

    @classmethod
    def from_settings(
        cls, db: Database, settings: Settings, client: httpx.AsyncClient | None = None
    ) -> "RefreshCoordinator":
        return cls(
            db,
            concurrency_limit=settings.concurrency,
            timeout=settings.fetch_timeout,
            max_bytes=settings.max_body_bytes,
            retention=settings.retention,
            client=client,
        )

    @property
    def in_flight(self) -> set[int]:
        """Ids of feeds whose refresh is currently running or queued."""
        return set(self._in_flight)

    async def refresh(
        self,
        feed_ids: Iterable[int],
        concurrency_limit: int | None = None,
        timeout: float | None = None,
        max_bytes: int | None = None,
    ) -> dict[int, RefreshOutcome]:
        """Refresh the given feeds and return an outcome per feed.

        One feed's failure never affects the others. If this call is itself
        cancelled, the pipelines it started are cancelled before it returns.
        """
        feed_ids = list(dict.fromkeys(feed_ids))
        if not feed_ids:
            return {}
        limit = concurrency_limit or self.concurrency_limit
        timeout = timeout or self.timeout
        max_bytes = max_bytes or self.max_bytes
        semaphore = asyncio.Semaphore(limit)

        logger.info("Refreshing %d feeds (concurrency %d)", len(feed_ids), limit)

        async with self._client_scope(timeout) as client:
            tasks: dict[int, asyncio.Task] = {}
            started: list[asyncio.Task] = []
            for feed_id in feed_ids:
                task = self._in_flight.get(feed_id)
                if task is None:
                    task = asyncio.create_task(
                        self._pipeline(feed_id, semaphore, client, timeout, max_bytes),
                        name=f"refresh-feed-{feed_id}",
                    )
                    self._in_flight[feed_id] = task
                    task.add_done_callback(partial(self._forget, feed_id))
                    started.append(task)
                else:
                    logger.debug("Feed %d is already refreshing, joining it", feed_id)
                tasks[feed_id] = task

            try:
                await asyncio.wait(tasks.values())
            except asyncio.CancelledError:
                for task in started:
                    task.cancel()
                await asyncio.gather(*started, return_exceptions=True)
                raise

        outcomes = {}
        for feed_id, task in tasks.items():
            if task.cancelled():
                outcomes[feed_id] = RefreshOutcome.cancelled()
            elif task.exception() is not None:
                exc = task.exception()
                logger.error("Refresh of feed %d crashed: %s", feed_id, exc, exc_info=exc)
                outcomes[feed_id] = RefreshOutcome.failed(
                    UnexpectedRefreshError(f"unexpected error refreshing feed {feed_id}: {exc}")
                )
            else:
                outcomes[feed_id] = task.result()
        return outcomes

    async def refresh_all(self, **kwargs) -> dict[int, RefreshOutcome]:
        """Refresh every subscribed feed."""
        return await self.refresh(self.db.feed_ids(), **kwargs)

    async def subscribe_and_refresh(
        self, url: str, title: str | None = None
    ) -> tuple[int, RefreshOutcome]:
        """Subscribe to a URL and run its first refresh.

        Raises:
            InvalidUrlError, DuplicateFeedError: From the subscription itself.
        """
        feed_id = self.db.subscribe(url, title=title)
        outcomes = await self.refresh([feed_id])
        return feed_id, outcomes[feed_id]

    def cancel(self) -> int:
        """Cancel every queued or running refresh. Returns how many were cancelled."""
        tasks = [task for task in self._in_flight.values() if not task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Cancelled %d feed refreshes", len(tasks))
        return len(tasks)

    def _forget(self, feed_id: int, task: asyncio.Task) -> None:
        if self._in_flight.get(feed_id) is task:
            del self._in_flight[feed_id]

    @asynccontextmanager
    async def _client_scope(self, timeout: float) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
        else:
            async with create_client(timeout) as client:
                yield client

    async def _pipeline(
        self,
        feed_id: int,
        semaphore: asyncio.Semaphore,
        client: httpx.AsyncClient,
        timeout: float,
        max_bytes: int,
    ) -> RefreshOutcome:
        async with semaphore:
            try:
                feed = self.db.get_feed(feed_id)
            except StoreIOError as e:
                logger.error("Cannot load feed %d for refresh: %s", feed_id, e)
                self._record_error(feed_id, e)
                return RefreshOutcome.failed(e)
            except StoreError as e:
                logger.warning("Cannot refresh feed %d: %s", feed_id, e)
                return RefreshOutcome.failed(e)

            parsed: ParsedFeed | None = None
            try:
                response = await fetch(
                    feed.url, timeout, max_bytes, etag=feed.etag, client=client
                )
                if not response.not_modified:
                    parsed = await asyncio.to_thread(_parse_and_sanitize, response.body)
            except (InvalidUrlError, FetchError, ParseError) as e:
                logger.warning("Feed '%s' error: %s", feed.title, e)
                self._record_error(feed_id, e)
                return RefreshOutcome.failed(e)
            except Exception as e:
                logger.error(
                    "Feed '%s' refresh failed unexpectedly: %s", feed.title, e, exc_info=True
                )
                error = UnexpectedRefreshError(f"unexpected error refreshing feed {feed.url}: {e}")
                self._record_error(feed_id, error)
                return RefreshOutcome.failed(error)

            # No await from here on: a cancellation cannot split the merge.
            try:
                if parsed is None:
                    self.db.mark_refreshed(feed_id)
                    changed = 0
                else:
                    for warning in parsed.warnings:
                        logger.debug("Feed '%s': %s", feed.title, warning)
                    changed = self.db.merge(feed_id, parsed, etag=response.etag).changed
            except StoreIOError as e:
                self._record_error(feed_id, e)
                return RefreshOutcome.failed(e)
            except StoreError as e:
                logger.warning("Feed %d vanished during refresh: %s", feed_id, e)
                return RefreshOutcome.failed(e)

            try:
                self.db.prune_expired(feed_id, retention=self.retention)
            except StoreIOError as e:
                self._record_error(feed_id, e)

        if changed:
            logger.info("Feed '%s': %d new or changed entries", feed.title, changed)
            return RefreshOutcome.updated(changed)
        logger.debug("Feed '%s': unchanged", feed.title)
        return RefreshOutcome.unchanged()

    def _record_error(self, feed_id: int, error: FeedSyncError) -> None:
        try:
            self.db.record_feed_error(feed_id, error)
        except StoreIOError as e:
            logger.error("Could not record error for feed %d: %s", feed_id, e)


def _parse_and_sanitize(body: bytes) -> ParsedFeed:
    return sanitize_entries(parse(body))
