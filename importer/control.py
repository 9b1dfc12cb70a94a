"""Control surface: start, resume, cancel and status operations."""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from importer.engine import ReconciliationEngine
from importer.exceptions import (
    FetchError,
    PreflightError,
    RequestValidationError,
    RunCanceled,
)
from importer.models import (
    FREE_CANCELED,
    InitMode,
    LastRunRecord,
    Phase,
    RunArgs,
    RunRequest,
    Status,
    TIMESTAMP_FORMAT,
    DATE_FORMAT,
)

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(days=2)
STALE_WINDOW = timedelta(weeks=1)
IMPORT_ALL_STALE_WINDOW = timedelta(days=30)


def validate_event_id(event_id: Optional[str]) -> str:
    """
    Check that an event ID is a positive integer.

    Raises:
        RequestValidationError: If the ID is missing or not numeric
    """
    value = str(event_id or '').strip()
    if not value.isdigit() or int(value) == 0:
        raise RequestValidationError('No or invalid listing ID given')
    return value


def validate_date(date: Optional[str]) -> Optional[str]:
    """
    Check that an optional request date is YYYY-MM-DD.

    Raises:
        RequestValidationError: If the date cannot be read
    """
    if not date:
        return None
    try:
        datetime.strptime(date, DATE_FORMAT)
    except (TypeError, ValueError):
        raise RequestValidationError(f"Invalid date '{date}', expected YYYY-MM-DD")
    return date


class ControlSurface:
    """Operations exposed to the polling client, operators and schedulers."""

    def __init__(self, engine: ReconciliationEngine):
        """
        Initialize the control surface.

        Args:
            engine: Reconciliation engine that owns the store and collaborators
        """
        self.engine = engine
        self.store = engine.store
        self.repository = engine.repository
        self._operations: Dict[str, Callable[[RunRequest], Dict[str, Any]]] = {
            'import_new': self.run_import_new,
            'import_all': self.run_import_all,
            'import_single': self.run_import_single,
            'delete_all': self.run_delete_all,
            'delete_stale': self.run_delete_stale,
            'clear_cache': self.run_clear_cache,
            'cancel': self.run_cancel,
            'resume': self.run_resume,
            'status': self.fetch_status,
            'total_count': self.fetch_total_count,
            'running_action': self.fetch_running_action,
            'cron_import': self.run_cron_import,
            'cron_invalidate_cache': self.run_cron_invalidate_cache,
            'install': self.run_install,
        }

    @property
    def operations(self):
        return tuple(self._operations)

    def dispatch(self, request: RunRequest) -> Dict[str, Any]:
        """
        Run the operation named by the request.

        Raises:
            KeyError: If the operation is unknown
        """
        operation = self._operations[request.action]
        return operation(request)

    # ==== Helpers ====

    def calculate_start_date(self, request: RunRequest, interval: timedelta) -> str:
        """
        Determine the fetch date for a run.

        An explicit request date wins. Otherwise the older of the last import
        time and now - interval is used.
        """
        if request.date:
            return request.date

        window_start = self.engine.clock() - interval
        last_run = self.store.get_state().timestamp
        try:
            last_run_time = datetime.strptime(last_run, TIMESTAMP_FORMAT)
        except (TypeError, ValueError):
            last_run_time = None

        if last_run_time and last_run_time < window_start:
            return last_run_time.strftime(DATE_FORMAT)
        return window_start.strftime(DATE_FORMAT)

    def _resume_date(self, request: RunRequest, interval: timedelta) -> str:
        # Later pages of a phase keep the date the phase started with
        if not request.date and request.init is InitMode.RESUME:
            previous = self.store.get_last_run()
            if previous and previous.fetch_date and previous.action == request.import_action:
                return previous.fetch_date
        return self.calculate_start_date(request, interval)

    def _guarded(
        self,
        args: RunArgs,
        init: InitMode,
        body: Callable[[], Any],
        page: Optional[int] = None
    ) -> Dict[str, Any]:
        """Run an operation body between preflight and postflight."""
        try:
            self.engine.preflight(args, init, page=page)
        except PreflightError as e:
            logger.warning(f"{args.action} failed preflight: {e}")
            if e.busy:
                return {'status': Status.BUSY.value, 'message': str(e)}
            return {'status': Status.ERROR.value, 'message': 'Process failed preflight checks.'}

        try:
            body()
        except RunCanceled:
            return {'status': 'canceled'}
        except FetchError as e:
            # Status stays running until an operator cancels or resumes
            logger.error(f"{args.action} aborted: {e}")
            return {'status': Status.ERROR.value, 'message': str(e)}

        self.engine.postflight(args)
        return {'status': 'success'}

    # ==== Importer actions ====

    def run_import_new(self, request: RunRequest) -> Dict[str, Any]:
        """Pull new and updated events for the recent window."""
        request.import_action = request.import_action or 'import_new'
        try:
            validate_date(request.date)
        except RequestValidationError as e:
            return {'status': Status.ERROR.value, 'message': str(e)}

        init = request.init or InitMode.HARD
        start_date = self._resume_date(request, RECENT_WINDOW)
        args = RunArgs(action=request.import_action, date=start_date)
        return self._guarded(
            args,
            init,
            lambda: self.engine.import_events_by_chunk(start_date, init is InitMode.RESUME, args),
            page=request.page
        )

    def run_import_all(self, request: RunRequest) -> Dict[str, Any]:
        """Pull every event since the fixed epoch date."""
        request.import_action = request.import_action or 'import_all'
        init = request.init or InitMode.HARD
        start_date = ReconciliationEngine.IMPORT_ALL_DATE
        args = RunArgs(action=request.import_action, date=start_date)
        return self._guarded(
            args,
            init,
            lambda: self.engine.import_events_by_chunk(start_date, init is InitMode.RESUME, args),
            page=request.page
        )

    def run_import_single(self, request: RunRequest) -> Dict[str, Any]:
        request.import_action = request.import_action or 'import_single'
        try:
            event_id = validate_event_id(request.event_id)
        except RequestValidationError as e:
            return {'status': Status.ERROR.value, 'message': str(e)}

        args = RunArgs(action=request.import_action, event_id=event_id)
        return self._guarded(
            args,
            InitMode.HARD,
            lambda: self.engine.import_single_event(event_id, args)
        )

    def run_delete_all(self, request: RunRequest) -> Dict[str, Any]:
        request.import_action = request.import_action or 'delete_all'
        args = RunArgs(action=request.import_action)
        return self._guarded(
            args,
            request.init or InitMode.HARD,
            lambda: self.engine.delete_all_by_chunk(args),
            page=request.page
        )

    def run_delete_stale(self, request: RunRequest) -> Dict[str, Any]:
        """Delete events dropped by the remote source."""
        request.import_action = request.import_action or 'delete_stale'
        try:
            validate_date(request.date)
        except RequestValidationError as e:
            return {'status': Status.ERROR.value, 'message': str(e)}

        interval = IMPORT_ALL_STALE_WINDOW if request.import_action == 'import_all' else STALE_WINDOW
        start_date = self._resume_date(request, interval)
        args = RunArgs(action=request.import_action, date=start_date)
        return self._guarded(
            args,
            request.init or InitMode.HARD,
            lambda: self.engine.delete_stale_events(start_date, args),
            page=request.page
        )

    def run_clear_cache(self, request: RunRequest) -> Dict[str, Any]:
        request.import_action = request.import_action or 'clear_cache'
        args = RunArgs(action=request.import_action)
        return self._guarded(args, InitMode.HARD, self.engine.clear_event_cache)

    def run_cancel(self, request: RunRequest) -> Dict[str, Any]:
        """
        Cancel the current run.

        The running loop is not interrupted here; it observes the status
        change at its next cancellation check.
        """
        record = self.store.get_last_run() or LastRunRecord()
        self.store.set_last_run(record)
        self.store.set_status(FREE_CANCELED)
        logger.info(f"Cancel requested for {record.action}")
        return {'status': 'success'}

    def run_resume(self, request: RunRequest) -> Dict[str, Any]:
        """Resume the most recently active action from its checkpoint."""
        previous = self.store.get_last_run()
        if previous is None:
            return {'status': Status.ERROR.value, 'message': 'No previous run to resume.'}

        action = previous.action
        date = previous.fetch_date or None
        page = previous.page

        if action == 'import_new':
            if not date or page is None:
                return {'status': Status.ERROR.value, 'message': 'Missing required data for import_new'}
            return self._resume_phase(action, date, page)
        if action in ('import_all', 'reset_all'):
            return self._resume_phase(action, date, page)
        if action == 'delete_all':
            return self.run_delete_all(RunRequest(
                action='delete_all', import_action=action, page=page, init=InitMode.RESUME
            ))
        if action == 'delete_stale':
            if not date:
                return {'status': Status.ERROR.value, 'message': 'Date required to resume delete_stale'}
            return self.run_delete_stale(RunRequest(
                action='delete_stale', import_action=action, date=date, page=page, init=InitMode.RESUME
            ))
        if action == 'import_single':
            try:
                validate_event_id(previous.event_id)
            except RequestValidationError:
                return {'status': Status.ERROR.value, 'message': 'Valid event ID required to resume import_single'}
            return self.run_import_single(RunRequest(
                action='import_single', import_action=action, event_id=previous.event_id
            ))
        if action == 'clear_cache':
            return self.run_clear_cache(RunRequest(action='clear_cache', import_action=action))

        return {'status': Status.ERROR.value, 'message': f"Unknown action '{action}' set to resume."}

    def _resume_phase(self, action: str, date: Optional[str], page: int) -> Dict[str, Any]:
        """Resume a multi-phase action in whichever phase it stopped."""
        method = self.store.get_state().method
        if method is not None and method.phase is Phase.DELETE:
            operation = 'delete_all' if action == 'reset_all' else 'delete_stale'
        else:
            operation = 'import_new' if action == 'import_new' else 'import_all'

        request = RunRequest(
            action=operation,
            import_action=action,
            date=date if operation in ('import_new', 'delete_stale') else None,
            page=page,
            init=InitMode.RESUME
        )
        return self.dispatch(request)

    # ==== Cron actions ====

    def run_cron_import(self, request: RunRequest) -> Dict[str, Any]:
        """
        Delete stale events and import new or changed ones in one invocation.

        Both phases are paged to completion server-side.
        """
        start_date = (self.engine.clock() - RECENT_WINDOW).strftime(DATE_FORMAT)
        args = RunArgs(action='cron_import', date=start_date)

        def delete_phase():
            self.engine.delete_stale_events(start_date, args)
            while self.store.get_state().processed < self.store.get_state().total:
                self.engine.delete_stale_events(start_date, args)

        result = self._guarded(args, InitMode.HARD, delete_phase)
        if result['status'] != 'success':
            return result

        def import_phase():
            page_num = 0
            while True:
                # First page ignores cache
                self.engine.import_events_by_chunk(start_date, page_num > 0, args)
                page_num += 1
                self.store.update(page=page_num)
                state = self.store.get_state()
                if state.processed >= state.total:
                    break

        return self._guarded(args, InitMode.SOFT, import_phase)

    def run_cron_invalidate_cache(self, request: RunRequest) -> Dict[str, Any]:
        cleared = self.engine.cache.clear()
        return {'status': 'success', 'cleared': cleared}

    def run_install(self, request: RunRequest) -> Dict[str, Any]:
        created = self.store.initialize()
        return {'status': 'success', 'created': created}

    # ==== Data fetch ====

    def fetch_status(self, request: RunRequest) -> Dict[str, Any]:
        return self.store.get_state().to_status_document()

    def fetch_total_count(self, request: RunRequest) -> Dict[str, Any]:
        return {'status': 'success', 'total': self.repository.count_events()}

    def fetch_running_action(self, request: RunRequest) -> Dict[str, Any]:
        previous = self.store.get_last_run()
        return {'status': 'success', 'action': previous.action if previous else 'NONE'}
