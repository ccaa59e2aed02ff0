"""AWS Lambda handlers for family calendar sync and diagnostics."""
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config.settings import ConfigurationError, Settings
from fetcher.ics_fetcher import IcsFetcher
from ingest.ics_parser import IcsParser
from pipeline.debug_view import CalendarNotFoundError, DebugInspector
from pipeline.sync_orchestrator import SyncOrchestrator
from processor.event_processor import EventProcessor
from processor.recurrence import RecurrenceExpander
from storage.dynamodb_manager import DynamoDBManager, to_iso

# Seconds kept in reserve for aggregating results before Lambda times out
DEADLINE_MARGIN_SECONDS = 5

_RESERVED_LOG_ATTRS = set(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON, including fields passed via extra."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        for key, value in vars(record).items():
            if key not in _RESERVED_LOG_ATTRS and key not in log_data:
                log_data[key] = value

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def _query_params(event: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return (event or {}).get('queryStringParameters') or {}


def _flag(value: Optional[str]) -> bool:
    return (value or '').lower() == 'true'


def _deadline(context: Any) -> Optional[float]:
    """Monotonic deadline derived from the remaining Lambda execution time."""
    remaining = getattr(context, 'get_remaining_time_in_millis', None)
    if not callable(remaining):
        return None
    try:
        seconds = int(remaining()) / 1000
    except (TypeError, ValueError):
        return None
    return time.monotonic() + max(seconds - DEADLINE_MARGIN_SECONDS, 0)


def _is_authorized(event: Dict[str, Any], settings: Settings) -> bool:
    """HTTP-triggered syncs must carry the cron secret when one is configured."""
    headers = event.get('headers')
    if headers is None or not settings.cron_secret:
        return True
    headers = {k.lower(): v for k, v in headers.items()}
    return headers.get('authorization') == f"Bearer {settings.cron_secret}"


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Sync all configured calendar feeds into the cache table.

    Args:
        event: EventBridge payload or API Gateway request
        context: Lambda context object

    Returns:
        Response dict with statusCode and sync summary
    """
    start_time = time.time()
    event = event or {}
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error(f"Invalid configuration: {e}")
        return _response(400, {'error': 'Invalid configuration', 'details': str(e)})

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    if not _is_authorized(event, settings):
        logger.warning("Rejected unauthorized sync request")
        return _response(401, {'error': 'Unauthorized'})

    logger.info(
        "Calendar sync started",
        extra={
            'table_name': settings.table_name,
            'feeds': len(settings.feeds),
            'retention_days': settings.retention_days
        }
    )

    try:
        expander = RecurrenceExpander(max_occurrences=settings.max_occurrences)
        orchestrator = SyncOrchestrator(
            settings=settings,
            fetcher=IcsFetcher(
                timeout=settings.timeout_seconds,
                max_retries=settings.fetch_retries
            ),
            parser=IcsParser(),
            processor=EventProcessor(expander, ttl_days=settings.stale_days),
            store=DynamoDBManager(table_name=settings.table_name)
        )
        report = orchestrator.sync_all(deadline=_deadline(context))
    except Exception as e:
        duration = time.time() - start_time
        logger.error(
            f"Calendar sync failed: {str(e)}",
            extra={'error_type': type(e).__name__, 'duration_seconds': round(duration, 2)},
            exc_info=True
        )
        return _response(500, {
            'error': 'Sync failed',
            'details': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    duration = time.time() - start_time
    logger.info(
        "Calendar sync completed",
        extra={
            'duration_seconds': round(duration, 2),
            'synced': report.synced,
            'errors': report.errors,
            'purged': report.purged
        }
    )

    body = {'success': True}
    body.update(report.to_dict())
    body['syncedAt'] = to_iso(datetime.now(timezone.utc))
    body['duration_seconds'] = round(duration, 2)
    return _response(200, body)


def debug_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Report per-feed diagnostics without writing to the cache.

    Query parameters: calendar, events, expand, days.
    """
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        return _response(400, {'error': 'Invalid configuration', 'details': str(e)})

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)
    params = _query_params(event)

    try:
        days = int(params.get('days') or 14)
    except ValueError:
        return _response(400, {'error': f"Invalid days parameter: {params.get('days')!r}"})
    if days < 0:
        return _response(400, {'error': 'days must not be negative'})

    inspector = DebugInspector(
        settings=settings,
        fetcher=IcsFetcher(timeout=settings.timeout_seconds, max_retries=1),
        parser=IcsParser(),
        expander=RecurrenceExpander(max_occurrences=settings.max_occurrences)
    )

    try:
        report = inspector.inspect(
            calendar=params.get('calendar') or None,
            show_events=_flag(params.get('events')),
            expand=_flag(params.get('expand')),
            days=days
        )
    except ConfigurationError as e:
        return _response(400, {'error': str(e)})
    except CalendarNotFoundError as e:
        return _response(404, {'error': str(e), 'availableCalendars': e.available})
    except Exception as e:
        logger.error(f"Calendar debug failed: {e}", exc_info=True)
        return _response(500, {'error': 'Debug failed', 'details': str(e)})

    return _response(200, report)


def calendar_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """Return cached upcoming events, optionally filtered by calendar name.

    ``all=true`` returns every cached row instead of the look-ahead window.
    """
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        return _response(400, {'error': 'Invalid configuration', 'details': str(e)})

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)
    params = _query_params(event)
    calendar_name = params.get('calendar')

    try:
        days = int(params.get('days') or 14)
    except ValueError:
        return _response(400, {'error': f"Invalid days parameter: {params.get('days')!r}"})

    try:
        store = DynamoDBManager(table_name=settings.table_name)
        if _flag(params.get('all')):
            events = sorted(
                (e for e in store.get_all_events().values()
                 if not calendar_name or e.calendar_name == calendar_name),
                key=lambda e: e.start_time
            )
        else:
            events = store.get_upcoming_events(days=days, calendar_name=calendar_name)
    except Exception as e:
        logger.error(f"Calendar API error: {e}", exc_info=True)
        return _response(500, {'error': 'Failed to fetch calendar events'})

    return _response(200, {
        'events': [
            {
                'event_id': e.event_id,
                'title': e.title,
                'start_time': to_iso(e.start_time),
                'end_time': to_iso(e.end_time) if e.end_time else None,
                'calendar_name': e.calendar_name,
                'location': e.location
            }
            for e in events
        ]
    })
