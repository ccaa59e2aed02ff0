"""Normalization of parsed components into cache records."""
import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from processor.models import CachedCalendarEvent, NormalizedFeed, RawCalendarComponent
from processor.recurrence import RecurrenceExpander, RecurrenceExpansionError

logger = logging.getLogger(__name__)


def occurrence_key(occurrence_start: datetime) -> str:
    """Compact UTC timestamp used in composite occurrence ids."""
    return occurrence_start.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')


class EventProcessor:
    """Converts parsed components into CachedCalendarEvent records."""

    MAX_TITLE_LENGTH = 200
    TTL_DAYS = 7

    def __init__(self, expander: Optional[RecurrenceExpander] = None,
                 ttl_days: int = TTL_DAYS):
        self.expander = expander or RecurrenceExpander()
        self.ttl_days = ttl_days

    def process_components(
        self,
        components: List[RawCalendarComponent],
        calendar_name: str,
        window_start: datetime,
        window_end: datetime
    ) -> NormalizedFeed:
        """
        Normalize and deduplicate the components of one feed.

        Non-recurring events map to one record keyed by UID. Recurring
        events map to one record per occurrence keyed by
        ``<uid>#<YYYYMMDDTHHMMSSZ>``. A modified instance (RECURRENCE-ID)
        replaces the occurrence of its series with the same key.

        Args:
            components: Parsed components of the feed
            calendar_name: Name of the owning feed
            window_start: Inclusive lower bound for event starts
            window_end: Inclusive upper bound for event starts

        Returns:
            NormalizedFeed with events sorted by start time
        """
        records: Dict[str, CachedCalendarEvent] = {}
        errors = []

        overrides = [c for c in components if c.is_override]
        overridden = {self._override_id(c) for c in overrides}

        for component in components:
            if component.is_override:
                continue
            try:
                for record in self._normalize(component, calendar_name,
                                              window_start, window_end):
                    if record.event_id in overridden:
                        continue
                    records.setdefault(record.event_id, record)
            except RecurrenceExpansionError as e:
                logger.warning(str(e))
                errors.append(str(e))

        for component in overrides:
            if window_start <= component.start_date <= window_end:
                record = self._build_record(
                    component, calendar_name, self._override_id(component),
                    component.start_date, component.end_date
                )
                records[record.event_id] = record

        events = sorted(records.values(), key=lambda e: e.start_time)
        logger.info(
            f"Normalized {len(events)} events for '{calendar_name}' from "
            f"{len(components)} components"
        )
        return NormalizedFeed(events=events, errors=errors)

    def _normalize(
        self,
        component: RawCalendarComponent,
        calendar_name: str,
        window_start: datetime,
        window_end: datetime
    ) -> List[CachedCalendarEvent]:
        if not component.is_recurring:
            if not window_start <= component.start_date <= window_end:
                return []
            event_id = component.uid or self.generate_event_id(
                component.summary, component.start_date
            )
            return [self._build_record(component, calendar_name, event_id,
                                       component.start_date, component.end_date)]

        duration = None
        if component.end_date is not None:
            duration = component.end_date - component.start_date

        base_id = component.uid or self.generate_event_id(
            component.summary, component.start_date
        )
        records = []
        for occurrence in self.expander.expand(component, window_start, window_end):
            end = occurrence.date + duration if duration is not None else None
            records.append(self._build_record(
                component, calendar_name,
                f"{base_id}#{occurrence_key(occurrence.date)}",
                occurrence.date, end
            ))
        return records

    def _override_id(self, component: RawCalendarComponent) -> str:
        base_id = component.uid or self.generate_event_id(
            component.summary, component.recurrence_id
        )
        return f"{base_id}#{occurrence_key(component.recurrence_id)}"

    def _build_record(
        self,
        component: RawCalendarComponent,
        calendar_name: str,
        event_id: str,
        start: datetime,
        end: Optional[datetime]
    ) -> CachedCalendarEvent:
        return CachedCalendarEvent(
            event_id=event_id,
            title=component.summary[:self.MAX_TITLE_LENGTH],
            start_time=start.astimezone(timezone.utc),
            end_time=end.astimezone(timezone.utc) if end is not None else None,
            calendar_name=calendar_name,
            location=component.location,
            ttl=self._calculate_ttl(start)
        )

    def _calculate_ttl(self, start: datetime) -> int:
        """Unix timestamp after which DynamoDB may expire the row."""
        return int((start + timedelta(days=self.ttl_days)).timestamp())

    def generate_event_id(self, title: str, start: datetime) -> str:
        """
        Generate a stable identifier for an event without a UID.

        Args:
            title: Event title
            start: Event start

        Returns:
            SHA256 hex digest of title and UTC start
        """
        composite = f"{title}|{occurrence_key(start)}"
        return hashlib.sha256(composite.encode('utf-8')).hexdigest()
