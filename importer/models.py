"""Data models for importer run state and requests."""
import zlib
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'
DATE_FORMAT = '%Y-%m-%d'


class Status(str, Enum):
    """
    Primary importer status.

    Only free and running are persisted; busy and error are reported to
    the caller of a rejected or failed request.
    """
    FREE = 'free'
    RUNNING = 'running'
    BUSY = 'busy'
    ERROR = 'error'


class StatusReason(str, Enum):
    """Sub-reason attached to a primary status."""
    CANCELED = 'canceled'


class Phase(str, Enum):
    IMPORT = 'import'
    DELETE = 'delete'
    CACHE = 'cache'


class Step(str, Enum):
    FETCH = 'fetch'
    UPDATE = 'update'
    PRUNE = 'prune'
    META = 'meta'
    CLEANUP = 'cleanup'
    DELETE = 'delete'


class InitMode(str, Enum):
    """How preflight initializes the run counters."""
    HARD = 'hard'
    SOFT = 'soft'
    RESUME = 'resume'


@dataclass(frozen=True)
class RunStatus:
    """Importer status with an optional sub-reason, e.g. free:canceled."""
    state: Status
    reason: Optional[StatusReason] = None

    @property
    def is_free(self) -> bool:
        return self.state is Status.FREE

    def __str__(self) -> str:
        if self.reason:
            return f"{self.state.value}:{self.reason.value}"
        return self.state.value


FREE = RunStatus(Status.FREE)
FREE_CANCELED = RunStatus(Status.FREE, StatusReason.CANCELED)


@dataclass(frozen=True)
class Method:
    """The phase and step the engine is currently executing."""
    phase: Phase
    step: Step

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional['Method']:
        if not value or '/' not in value:
            return None
        phase, _, step = value.partition('/')
        return cls(Phase(phase), Step(step))

    def __str__(self) -> str:
        return f"{self.phase.value}/{self.step.value}"


@dataclass
class RunState:
    """Persisted progress of the current or most recent run."""
    status: RunStatus = FREE
    method: Optional[Method] = None
    timestamp: str = ''
    processed: int = 0
    added: int = 0
    deleted: int = 0
    total: int = 0
    page: int = 0

    def to_status_document(self) -> Dict[str, Any]:
        """Status document returned to polling clients."""
        return {
            'status': str(self.status),
            'method': str(self.method) if self.method else '',
            'timestamp': self.timestamp,
            'processed': self.processed,
            'added': self.added,
            'deleted': self.deleted,
            'page': self.page,
            'total': self.total
        }


@dataclass
class RunArgs:
    """Identity of the running top-level action."""
    action: str
    date: Optional[str] = None
    event_id: Optional[str] = None


@dataclass
class LastRunRecord:
    """Checkpoint left behind by the most recently active run."""
    action: str = 'undefined'
    fetch_date: str = ''
    event_id: str = ''
    page: int = 0
    added: int = 0
    deleted: int = 0
    processed: int = 0

    @classmethod
    def from_state(cls, args: RunArgs, state: RunState) -> 'LastRunRecord':
        return cls(
            action=args.action or 'undefined',
            fetch_date=args.date or '',
            event_id=str(args.event_id) if args.event_id else '',
            page=state.page,
            added=state.added,
            deleted=state.deleted,
            processed=state.processed
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LastRunRecord':
        return cls(
            action=data.get('action') or 'undefined',
            fetch_date=data.get('fetch_date') or '',
            event_id=str(data.get('event_id') or ''),
            page=int(data.get('page') or 0),
            added=int(data.get('added') or 0),
            deleted=int(data.get('deleted') or 0),
            processed=int(data.get('processed') or 0)
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RunRequest:
    """A request to the control surface."""
    action: str
    import_action: Optional[str] = None
    date: Optional[str] = None
    page: Optional[int] = None
    init: Optional[InitMode] = None
    event_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RunRequest':
        """
        Build a request from a decoded payload.

        Raises:
            ValueError: If the action is missing or a field is malformed
        """
        action = data.get('action')
        if not action:
            raise ValueError('Request is missing an action')
        page = data.get('page')
        init = data.get('init')
        event_id = data.get('event_id')
        return cls(
            action=str(action),
            import_action=data.get('import_action') or None,
            date=data.get('date') or None,
            page=int(page) if page not in (None, '') else None,
            init=InitMode(init) if init else None,
            event_id=str(event_id) if event_id not in (None, '') else None
        )

    def to_dict(self) -> Dict[str, Any]:
        payload = {'action': self.action}
        if self.import_action:
            payload['import_action'] = self.import_action
        if self.date:
            payload['date'] = self.date
        if self.page is not None:
            payload['page'] = self.page
        if self.init:
            payload['init'] = self.init.value
        if self.event_id:
            payload['event_id'] = self.event_id
        return payload


@dataclass
class CacheEntry:
    """A cached raw result row. The payload is zlib-compressed."""
    name: str
    row_id: str
    payload: bytes
    last_updated: str

    def text(self) -> str:
        """Decompress the payload back to the raw API response."""
        if not self.payload:
            return ''
        return zlib.decompress(self.payload).decode('utf-8')

    def is_fresh(self, now: datetime, max_age: timedelta = timedelta(days=1)) -> bool:
        """
        Check whether the entry may be used without refetching.

        Args:
            now: Current time
            max_age: Freshness window (default: 1 day)

        Returns:
            True if the payload is non-empty and was updated within max_age
        """
        if not self.payload or not self.last_updated:
            return False
        try:
            last_updated = datetime.strptime(self.last_updated, TIMESTAMP_FORMAT)
        except ValueError:
            return False
        return last_updated + max_age >= now
