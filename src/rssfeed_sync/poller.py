"""Background polling loop for RSS Feed Sync."""

import asyncio
import logging
from collections import Counter

from rssfeed_sync.config import DEFAULT_POLL_INTERVAL
from rssfeed_sync.coordinator import RefreshCoordinator
from rssfeed_sync.errors import StoreIOError
from rssfeed_sync.models import RefreshOutcome, RefreshStatus

logger = logging.getLogger(__name__)


async def poll_feeds_once(coordinator: RefreshCoordinator) -> dict[int, RefreshOutcome]:
    """Refresh all feeds once and log a summary of the outcomes."""
    outcomes = await coordinator.refresh_all()
    statuses = Counter(outcome.status for outcome in outcomes.values())
    new_entries = sum(
        o.count for o in outcomes.values() if o.status is RefreshStatus.UPDATED
    )
    logger.info(
        "Poll cycle complete: %d feeds, %d updated (%d entries), %d failed",
        len(outcomes),
        statuses[RefreshStatus.UPDATED],
        new_entries,
        statuses[RefreshStatus.FAILED],
    )
    return outcomes


async def start_polling(
    coordinator: RefreshCoordinator, interval: int = DEFAULT_POLL_INTERVAL
) -> None:
    """Run the polling loop indefinitely."""
    logger.info("Poller started (interval: %ds)", interval)

    while True:
        try:
            await poll_feeds_once(coordinator)
        except StoreIOError as e:
            logger.error("Poll cycle failed: %s", e)

        await asyncio.sleep(interval)
