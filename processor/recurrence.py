"""Bounded expansion of RRULE-based recurring events."""
import logging
import re
from datetime import datetime, timezone
from typing import List

from dateutil.rrule import rruleset, rrulestr

from processor.models import Occurrence, RawCalendarComponent

logger = logging.getLogger(__name__)

_UTC_UNTIL = re.compile(r'UNTIL=(\d{8}T\d{6})Z', re.IGNORECASE)
_COUNT = re.compile(r'COUNT=(\d+)', re.IGNORECASE)


class RecurrenceExpansionError(Exception):
    """Raised when a recurrence rule cannot be iterated."""


def _wall_clock(value: datetime, tz) -> datetime:
    """Naive local time of an aware datetime in the given zone."""
    return value.astimezone(tz).replace(tzinfo=None)


def _attach_zone(value: datetime, tz) -> datetime:
    if hasattr(tz, 'localize'):
        # pytz zones need localize() to pick the right offset
        return tz.localize(value)
    return value.replace(tzinfo=tz)


def _localize_until(rule: str, tz) -> str:
    """Rewrite a UTC UNTIL as wall-clock time in the event's zone."""
    def _convert(match):
        until = datetime.strptime(match.group(1), '%Y%m%dT%H%M%S')
        local = _wall_clock(until.replace(tzinfo=timezone.utc), tz)
        return f"UNTIL={local.strftime('%Y%m%dT%H%M%S')}"
    return _UTC_UNTIL.sub(_convert, rule)


class RecurrenceExpander:
    """Expands recurring components into concrete occurrences."""

    def __init__(self, max_occurrences: int = 50):
        """
        Args:
            max_occurrences: Maximum number of dates iterated per rule
        """
        self.max_occurrences = max_occurrences

    def expand(
        self,
        component: RawCalendarComponent,
        window_start: datetime,
        window_end: datetime
    ) -> List[Occurrence]:
        """
        Expand a recurring component within a date window.

        Occurrences are iterated chronologically from the event's own start.
        Iteration stops at the first date after ``window_end`` or once
        ``max_occurrences`` dates have been produced; only dates on or after
        ``window_start`` are returned. The event start is always the first
        occurrence, and EXDATEs are excluded.

        The rule is evaluated in the event's wall-clock time so a weekly
        09:00 meeting stays at 09:00 across daylight saving changes.

        Args:
            component: Parsed event carrying a recurrence rule
            window_start: Inclusive lower bound (aware datetime)
            window_end: Inclusive upper bound (aware datetime)

        Returns:
            Ordered list of in-window occurrences, dates in UTC

        Raises:
            RecurrenceExpansionError: If the rule cannot be parsed or iterated
        """
        if not component.is_recurring:
            return []

        tz = component.start_date.tzinfo
        occurrences = []
        seen = set()

        try:
            rules = self._build_ruleset(component, tz)
            for count, local_start in enumerate(rules):
                if count >= self.max_occurrences:
                    logger.debug(
                        f"Occurrence cap of {self.max_occurrences} reached "
                        f"for '{component.summary}'"
                    )
                    break
                occurrence_date = _attach_zone(local_start, tz).astimezone(timezone.utc)
                if occurrence_date > window_end:
                    break
                if occurrence_date >= window_start and occurrence_date not in seen:
                    seen.add(occurrence_date)
                    occurrences.append(
                        Occurrence(summary=component.summary, date=occurrence_date)
                    )
        except (ValueError, KeyError, TypeError, IndexError, OverflowError) as e:
            raise RecurrenceExpansionError(
                f"Failed to expand '{component.summary}' "
                f"({component.recurrence_rule}): {e}"
            ) from e

        return occurrences

    def _build_ruleset(self, component: RawCalendarComponent, tz) -> rruleset:
        local_start = _wall_clock(component.start_date, tz)
        rule_text = _localize_until(component.recurrence_rule, tz)

        rule = rrulestr(rule_text, dtstart=local_start, ignoretz=True)
        count = _COUNT.search(rule_text)
        if count and rule.after(local_start, inc=True) != local_start:
            # DTSTART takes one of the COUNT slots when the rule itself skips it
            rule = rule.replace(count=int(count.group(1)) - 1)

        rules = rruleset()
        rules.rrule(rule)
        rules.rdate(local_start)
        for exdate in component.exdates:
            rules.exdate(_wall_clock(exdate, tz))
        return rules
