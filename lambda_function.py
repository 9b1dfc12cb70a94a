"""AWS Lambda handler for the events importer control surface."""
import json
import logging
import time
from typing import Any, Dict, Optional

from importer.config import Settings
from importer.control import ControlSurface
from importer.engine import ReconciliationEngine
from importer.models import RunRequest
from remote.events_api import EventsApiClient
from storage.event_repository import EventRepository
from storage.progress_store import ProgressStore
from storage.result_cache import ResultCache


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    RESERVED = set(vars(logging.LogRecord('', 0, '', 0, '', None, None))) | {'message', 'asctime'}

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        # Carry fields passed through `extra=`
        for key, value in vars(record).items():
            if key not in self.RESERVED and key not in log_data:
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

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Create new handler with JSON formatter
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    # Set log level
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


_surface: Optional[ControlSurface] = None


def build_control_surface(settings: Settings) -> ControlSurface:
    """
    Wire the control surface and its collaborators.

    Args:
        settings: Importer settings

    Returns:
        ControlSurface ready to dispatch requests
    """
    engine = ReconciliationEngine(
        store=ProgressStore(settings.state_table),
        cache=ResultCache(settings.cache_table),
        api=EventsApiClient(
            settings.api_url,
            settings.api_token,
            timeout=settings.timeout_seconds
        ),
        repository=EventRepository(settings.events_table),
        chunk_size=settings.chunk_size,
        settle_seconds=settings.settle_seconds
    )
    return ControlSurface(engine)


def get_control_surface(settings: Settings) -> ControlSurface:
    """Reuse one control surface per warm container."""
    global _surface
    if _surface is None:
        _surface = build_control_surface(settings)
    return _surface


def parse_request(event: Dict[str, Any]) -> RunRequest:
    """
    Build a RunRequest from a direct, scheduled or HTTP proxy invocation.

    Raises:
        ValueError: If the payload cannot be parsed
    """
    payload = event or {}
    body = payload.get('body')
    if body is not None:
        payload = json.loads(body) if isinstance(body, str) else body
    elif isinstance(payload.get('detail'), dict) and payload['detail'].get('action'):
        # EventBridge scheduled rule
        payload = payload['detail']
    return RunRequest.from_dict(payload)


def _response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'statusCode': status_code,
        'headers': {'Content-Type': 'application/json'},
        'body': json.dumps(body)
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function for the events importer.

    Args:
        event: Invocation payload (direct, EventBridge, or HTTP proxy)
        context: Lambda context object

    Returns:
        Response dict with statusCode and a JSON body
    """
    settings = Settings.from_env()

    # Initialize logging
    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    start_time = time.time()

    try:
        request = parse_request(event)
    except (ValueError, TypeError) as e:
        logger.warning(f"Rejected malformed request: {e}")
        return _response(400, {'status': 'error', 'message': str(e)})

    logger.info(
        f"Operation {request.action} started",
        extra={
            'import_action': request.import_action,
            'date': request.date,
            'page': request.page,
            'init': request.init.value if request.init else None
        }
    )

    try:
        surface = get_control_surface(settings)
        if request.action not in surface.operations:
            logger.warning(f"Unknown operation {request.action}")
            return _response(400, {
                'status': 'error',
                'message': f"Unknown action '{request.action}'"
            })

        result = surface.dispatch(request)

    except Exception as e:
        duration = time.time() - start_time

        logger.error(
            f"Operation {request.action} failed: {str(e)}",
            extra={
                'duration_seconds': round(duration, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )

        return _response(500, {
            'status': 'error',
            'message': str(e),
            'error_type': type(e).__name__,
            'duration_seconds': round(duration, 2)
        })

    duration = time.time() - start_time
    logger.info(
        f"Operation {request.action} finished",
        extra={
            'duration_seconds': round(duration, 2),
            'result_status': result.get('status')
        }
    )

    return _response(200, result)
