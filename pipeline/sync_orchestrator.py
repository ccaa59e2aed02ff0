"""Sync orchestration across all configured calendar feeds."""
import concurrent.futures
import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from config.settings import CalendarFeed, Settings
from fetcher.ics_fetcher import FetchResult, IcsFetcher
from ingest.ics_parser import IcsParser, IcsParseError
from processor.event_processor import EventProcessor
from processor.models import FeedSyncResult, SyncReport
from storage.dynamodb_manager import DynamoDBManager

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.25  # seconds


def start_of_day(now: datetime) -> datetime:
    """Midnight UTC of the given instant."""
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


class SyncCancelled(Exception):
    """Raised internally when a run is cancelled or out of time."""


class SyncOrchestrator:
    """Drives fetch, parse, normalize and upsert for every configured feed."""

    def __init__(
        self,
        settings: Settings,
        fetcher: IcsFetcher,
        parser: IcsParser,
        processor: EventProcessor,
        store: DynamoDBManager,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.settings = settings
        self.fetcher = fetcher
        self.parser = parser
        self.processor = processor
        self.store = store
        self.clock = clock

    def sync_all(
        self,
        cancel_event: Optional[threading.Event] = None,
        deadline: Optional[float] = None
    ) -> SyncReport:
        """
        Sync every configured feed into the cache.

        Stale rows are purged first. Feeds are fetched in parallel and then
        reconciled one at a time; a failing feed is recorded with one error
        and does not affect the others.

        Args:
            cancel_event: When set, pending feeds are abandoned
            deadline: time.monotonic() value after which pending feeds are abandoned

        Returns:
            SyncReport with per-feed and total counts
        """
        feeds = list(self.settings.feeds)
        report = SyncReport(total=len(feeds))
        if not feeds:
            logger.info("No calendar feeds configured")
            return report

        now = self.clock()
        report.purged = self._purge(now)

        window_start = start_of_day(now)
        window_end = window_start + timedelta(days=self.settings.retention_days)

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.settings.fetch_workers, len(feeds)),
            thread_name_prefix='feed-fetch'
        )
        try:
            futures = [executor.submit(self.fetcher.fetch, feed.url) for feed in feeds]
            for feed, future in zip(feeds, futures):
                try:
                    fetch_result = self._await(future, cancel_event, deadline)
                except SyncCancelled:
                    logger.warning(f"Sync cancelled before '{feed.name}' completed")
                    report.calendars.append(
                        FeedSyncResult(name=feed.name, synced=0, errors=1, detail='cancelled')
                    )
                    continue
                except Exception as e:
                    logger.error(f"Failed to fetch calendar '{feed.name}': {e}", exc_info=True)
                    report.calendars.append(
                        FeedSyncResult(name=feed.name, synced=0, errors=1, detail=str(e))
                    )
                    continue
                report.calendars.append(
                    self._sync_feed(feed, fetch_result, window_start, window_end)
                )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        logger.info(
            "Calendar sync finished",
            extra={'total': report.total, 'synced': report.synced, 'errors': report.errors}
        )
        return report

    def _purge(self, now: datetime) -> int:
        threshold = now - timedelta(days=self.settings.stale_days)
        try:
            return self.store.purge_older_than(threshold)
        except Exception as e:
            logger.error(f"Failed to purge stale events: {e}", exc_info=True)
            return 0

    def _await(
        self,
        future: concurrent.futures.Future,
        cancel_event: Optional[threading.Event],
        deadline: Optional[float]
    ) -> FetchResult:
        while True:
            if future.done():
                return future.result()
            if cancel_event is not None and cancel_event.is_set():
                future.cancel()
                raise SyncCancelled()
            if deadline is not None and time.monotonic() >= deadline:
                future.cancel()
                raise SyncCancelled()
            try:
                return future.result(timeout=POLL_INTERVAL)
            except concurrent.futures.TimeoutError:
                continue

    def _sync_feed(
        self,
        feed: CalendarFeed,
        fetch_result: FetchResult,
        window_start: datetime,
        window_end: datetime
    ) -> FeedSyncResult:
        """Parse, normalize and upsert one fetched feed."""
        if not fetch_result.ok:
            logger.warning(f"Failed to fetch calendar '{feed.name}': {fetch_result.detail}")
            return FeedSyncResult(name=feed.name, synced=0, errors=1, detail=fetch_result.detail)

        try:
            parsed = self.parser.parse(fetch_result.text)
            normalized = self.processor.process_components(
                parsed.components, feed.name, window_start, window_end
            )
            synced, upsert_errors = self.store.upsert_events(normalized.events)
        except IcsParseError as e:
            logger.warning(f"Failed to parse calendar '{feed.name}': {e}")
            return FeedSyncResult(name=feed.name, synced=0, errors=1, detail=str(e))
        except Exception as e:
            logger.error(f"Failed to sync calendar '{feed.name}': {e}", exc_info=True)
            return FeedSyncResult(name=feed.name, synced=0, errors=1, detail=str(e))

        errors = len(parsed.errors) + len(normalized.errors) + upsert_errors
        logger.info(f"Synced {synced} events from '{feed.name}' with {errors} errors")
        return FeedSyncResult(name=feed.name, synced=synced, errors=errors)
