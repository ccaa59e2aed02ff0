"""Read-only diagnostics over the calendar ingestion pipeline."""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from config.settings import CalendarFeed, ConfigurationError, Settings
from fetcher.ics_fetcher import IcsFetcher
from ingest.ics_parser import IcsParser
from pipeline.sync_orchestrator import start_of_day
from processor.models import RawCalendarComponent
from processor.recurrence import RecurrenceExpander, RecurrenceExpansionError
from storage.dynamodb_manager import to_iso

logger = logging.getLogger(__name__)

HORIZONS = (14, 30, 90)
URL_PREVIEW_LENGTH = 50


class CalendarNotFoundError(LookupError):
    """Raised when the requested calendar is not configured."""

    def __init__(self, name: str, available: List[str]):
        super().__init__(f'Calendar "{name}" not found')
        self.name = name
        self.available = available


def _raw_event(component: RawCalendarComponent) -> dict:
    return {
        'uid': component.uid,
        'summary': component.summary,
        'startDate': to_iso(component.start_date),
        'endDate': to_iso(component.end_date) if component.end_date else None,
        'isRecurring': component.is_recurring,
        'rrule': component.recurrence_rule,
        'location': component.location
    }


class DebugInspector:
    """
    Runs fetch, repair, parse and expansion for diagnostics.

    Uses the same fetcher, parser and expander as the sync path and never
    writes to the cache.
    """

    def __init__(
        self,
        settings: Settings,
        fetcher: IcsFetcher,
        parser: IcsParser,
        expander: RecurrenceExpander,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)
    ):
        self.settings = settings
        self.fetcher = fetcher
        self.parser = parser
        self.expander = expander
        self.clock = clock

    def inspect(
        self,
        calendar: Optional[str] = None,
        show_events: bool = False,
        expand: bool = False,
        days: int = 14
    ) -> dict:
        """
        Build a diagnostic report for one or all feeds.

        Args:
            calendar: Case-insensitive feed name to restrict the report to
            show_events: Include every parsed event
            expand: Expand recurring events up to ``days`` ahead
            days: Look-ahead horizon for expansion

        Returns:
            Report dictionary ready for JSON serialization

        Raises:
            ConfigurationError: If no feeds are configured
            CalendarNotFoundError: If ``calendar`` matches no feed
        """
        feeds = list(self.settings.feeds)
        if not feeds:
            raise ConfigurationError('No ICAL_FEEDS configured')

        if calendar:
            targets = [f for f in feeds if f.name.lower() == calendar.lower()]
            if not targets:
                raise CalendarNotFoundError(calendar, [f.name for f in feeds])
        else:
            targets = feeds

        timestamp = self.clock()
        now = start_of_day(timestamp)
        limits = {h: now + timedelta(days=h) for h in HORIZONS}
        expand_limit = now + timedelta(days=days)

        results = [
            self._inspect_feed(feed, now, limits, expand_limit, show_events, expand)
            for feed in targets
        ]

        return {
            'timestamp': to_iso(timestamp),
            'dateRange': {
                'now': to_iso(now),
                'limit14Days': to_iso(limits[14]),
                'limit30Days': to_iso(limits[30]),
                'limit90Days': to_iso(limits[90]),
                'expandLimit': to_iso(expand_limit)
            },
            'queryParams': {
                'calendar': calendar,
                'showEvents': show_events,
                'expandRecurring': expand,
                'daysAhead': days
            },
            'summary': {
                'totalCalendars': len(results),
                'totalEventsInFeeds': sum(r['totalEventsInFeed'] for r in results),
                'totalRecurringEvents': sum(r['recurringEvents'] for r in results),
                'eventsInNext14Days': sum(r['eventsInNext14Days'] for r in results),
                'eventsInNext30Days': sum(r['eventsInNext30Days'] for r in results),
                'eventsInNext90Days': sum(r['eventsInNext90Days'] for r in results)
            },
            'calendars': results
        }

    def _inspect_feed(
        self,
        feed: CalendarFeed,
        now: datetime,
        limits: dict,
        expand_limit: datetime,
        show_events: bool,
        expand: bool
    ) -> dict:
        info = {
            'name': feed.name,
            'url': feed.url[:URL_PREVIEW_LENGTH] + '...',
            'fetchStatus': 'success',
            'totalEventsInFeed': 0,
            'recurringEvents': 0,
            'eventsInNext14Days': 0,
            'eventsInNext30Days': 0,
            'eventsInNext90Days': 0
        }

        fetch_result = self.fetcher.fetch(feed.url)
        if not fetch_result.ok:
            info['fetchStatus'] = 'error'
            info['error'] = fetch_result.detail
            return info

        try:
            parsed = self.parser.parse(fetch_result.text)
        except Exception as e:
            logger.warning(f"Failed to parse calendar '{feed.name}': {e}")
            info['fetchStatus'] = 'error'
            info['error'] = str(e)
            return info

        info['totalEventsInFeed'] = len(parsed.components) + len(parsed.errors)
        info['parseErrors'] = parsed.errors
        info['repairedLineBreaks'] = parsed.repaired_line_breaks
        info['feedCalendarName'] = parsed.calendar_name
        if show_events:
            info['allEvents'] = []

        occurrences = []
        for component in parsed.components:
            if show_events:
                info['allEvents'].append(_raw_event(component))

            if not component.is_recurring:
                self._count(info, component.start_date, now, limits)
                continue

            info['recurringEvents'] += 1
            if not expand:
                continue
            try:
                expanded = self.expander.expand(component, now, expand_limit)
            except RecurrenceExpansionError as e:
                logger.warning(str(e))
                continue
            for occurrence in expanded:
                self._count(info, occurrence.date, now, limits)
                occurrences.append(occurrence)

        if expand and occurrences:
            occurrences.sort(key=lambda o: o.date)
            info['expandedOccurrences'] = [
                {'summary': o.summary, 'date': to_iso(o.date)} for o in occurrences
            ]
        return info

    @staticmethod
    def _count(info: dict, start: datetime, now: datetime, limits: dict) -> None:
        if start < now:
            return
        for horizon, limit in limits.items():
            if start <= limit:
                info[f'eventsInNext{horizon}Days'] += 1
