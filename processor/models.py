"""Data models for calendar ingestion and caching."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass
class RawCalendarComponent:
    """One VEVENT as parsed from a feed."""
    uid: str
    summary: str
    start_date: datetime
    end_date: Optional[datetime] = None
    location: Optional[str] = None
    recurrence_rule: Optional[str] = None
    exdates: List[datetime] = field(default_factory=list)
    recurrence_id: Optional[datetime] = None

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_rule is not None

    @property
    def is_override(self) -> bool:
        """True for a modified instance of a recurring series."""
        return self.recurrence_id is not None


@dataclass
class Occurrence:
    """A concrete instance of a (possibly recurring) event."""
    summary: str
    date: datetime


@dataclass
class CachedCalendarEvent:
    """Normalized event as stored in the cache table."""
    event_id: str
    title: str
    start_time: datetime
    end_time: Optional[datetime]
    calendar_name: str
    location: Optional[str]
    updated_at: Optional[datetime] = None
    ttl: Optional[int] = None


@dataclass
class ParsedCalendar:
    """Result of parsing one feed."""
    components: List[RawCalendarComponent]
    errors: List[str] = field(default_factory=list)
    calendar_name: Optional[str] = None
    repaired_line_breaks: int = 0


@dataclass
class NormalizedFeed:
    """Cache records produced from one feed."""
    events: List[CachedCalendarEvent]
    errors: List[str] = field(default_factory=list)


@dataclass
class FeedSyncResult:
    """Outcome of syncing a single feed."""
    name: str
    synced: int
    errors: int
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {'name': self.name, 'synced': self.synced, 'errors': self.errors}


@dataclass
class SyncReport:
    """Aggregated result of a sync run."""
    total: int
    calendars: List[FeedSyncResult] = field(default_factory=list)
    purged: int = 0

    @property
    def synced(self) -> int:
        return sum(result.synced for result in self.calendars)

    @property
    def errors(self) -> int:
        return sum(result.errors for result in self.calendars)

    def to_dict(self) -> dict:
        return {
            'total': self.total,
            'synced': self.synced,
            'errors': self.errors,
            'calendars': [result.to_dict() for result in self.calendars]
        }
