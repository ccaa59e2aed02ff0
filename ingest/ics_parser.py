"""ICS parsing into typed calendar components."""
import logging
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from icalendar import Calendar

from ingest.line_repair import count_erroneous_breaks, repair_ics_lines
from processor.models import ParsedCalendar, RawCalendarComponent

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY = 'Untitled'


class IcsParseError(ValueError):
    """Raised when a feed body cannot be parsed as a calendar."""


def as_datetime(value) -> datetime:
    """
    Convert an ICS date or datetime value to an aware datetime.

    All-day dates become midnight UTC and floating times are read as UTC.

    Args:
        value: date or datetime decoded by icalendar

    Returns:
        Timezone-aware datetime

    Raises:
        ValueError: If the value is not a date or datetime
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raise ValueError(f"Unsupported date value: {value!r}")


def _property_datetime(vevent, name: str) -> Optional[datetime]:
    prop = vevent.get(name)
    if prop is None:
        return None
    if isinstance(prop, list):
        prop = prop[0]
    value = getattr(prop, 'dt', None)
    if not isinstance(value, (date, datetime)):
        raise ValueError(f"Malformed {name}: {prop!r}")
    return as_datetime(value)


def _text(vevent, name: str) -> Optional[str]:
    value = vevent.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _exdates(vevent) -> List[datetime]:
    prop = vevent.get('EXDATE')
    if prop is None:
        return []
    props = prop if isinstance(prop, list) else [prop]
    dates = []
    for exdate in props:
        for item in getattr(exdate, 'dts', []):
            dates.append(as_datetime(item.dt))
    return dates


class IcsParser:
    """Parser turning repaired ICS text into RawCalendarComponent records."""

    def parse(self, text: str) -> ParsedCalendar:
        """
        Repair and parse feed text.

        Args:
            text: Raw ICS text as fetched

        Returns:
            ParsedCalendar with one component per usable VEVENT

        Raises:
            IcsParseError: If the text is not a parsable VCALENDAR
        """
        repaired_breaks = count_erroneous_breaks(text)
        if repaired_breaks:
            logger.info(f"Repaired {repaired_breaks} malformed line breaks")
        repaired = repair_ics_lines(text)

        try:
            calendars = Calendar.from_ical(repaired, multiple=True)
        except ValueError as e:
            raise IcsParseError(f"Invalid calendar data: {e}") from e

        calendars = [cal for cal in calendars if cal.name == 'VCALENDAR']
        if not calendars:
            raise IcsParseError("No VCALENDAR component found")

        parsed = ParsedCalendar(
            components=[],
            calendar_name=_text(calendars[0], 'X-WR-CALNAME'),
            repaired_line_breaks=repaired_breaks
        )

        for calendar in calendars:
            for vevent in calendar.walk('VEVENT'):
                try:
                    parsed.components.append(self._parse_event(vevent))
                except (ValueError, TypeError, AttributeError) as e:
                    summary = _text(vevent, 'SUMMARY') or DEFAULT_SUMMARY
                    message = f"Skipped event '{summary}': {e}"
                    logger.warning(message)
                    parsed.errors.append(message)

        logger.info(
            f"Parsed {len(parsed.components)} events, skipped {len(parsed.errors)}"
        )
        return parsed

    def _parse_event(self, vevent) -> RawCalendarComponent:
        start = _property_datetime(vevent, 'DTSTART')
        if start is None:
            raise ValueError("Missing DTSTART")

        end = _property_datetime(vevent, 'DTEND')
        if end is None and vevent.get('DURATION') is not None:
            duration = getattr(vevent.get('DURATION'), 'dt', None)
            if isinstance(duration, timedelta):
                end = start + duration

        rrule = vevent.get('RRULE')
        if isinstance(rrule, list):
            rrule = rrule[0] if rrule else None
        rule_text = rrule.to_ical().decode('utf-8') if rrule is not None else None

        return RawCalendarComponent(
            uid=_text(vevent, 'UID') or '',
            summary=_text(vevent, 'SUMMARY') or DEFAULT_SUMMARY,
            start_date=start,
            end_date=end,
            location=_text(vevent, 'LOCATION'),
            recurrence_rule=rule_text or None,
            exdates=_exdates(vevent),
            recurrence_id=_property_datetime(vevent, 'RECURRENCE-ID')
        )
