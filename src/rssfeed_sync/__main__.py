"""Entry point for RSS Feed Sync: python -m rssfeed_sync"""

import asyncio
import logging

from rssfeed_sync.config import Settings
from rssfeed_sync.coordinator import RefreshCoordinator
from rssfeed_sync.database import Database
from rssfeed_sync.poller import poll_feeds_once, start_polling


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def main() -> None:
    """Open the database and refresh feeds until interrupted."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    db = Database(settings.db_path)
    db.connect()
    coordinator = RefreshCoordinator.from_settings(db, settings)

    try:
        if settings.poll_interval == 0:
            await poll_feeds_once(coordinator)
        else:
            await start_polling(coordinator, settings.poll_interval)
    finally:
        coordinator.cancel()
        db.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nGoodbye!")
