"""Polling client that drives multi-request importer actions to completion."""
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import requests

from client.heartbeat import Heartbeat
from importer.models import RunRequest, Status, TIMESTAMP_FORMAT
from importer.phases import DEFAULT_CHUNK_SIZE, first_request, next_request

logger = logging.getLogger(__name__)


class ImporterClient:
    """
    Client half of the importer state machine.

    Each heartbeat fetches the server status and, when a request of a
    multi-request action has finished, issues the next one.
    """

    HEARTBEAT_SECONDS = 30
    HEARTBEAT_QUICK_SECONDS = 5
    INTERVAL_HOURS = 48
    GATEWAY_TIMEOUT = 504

    def __init__(
        self,
        endpoint: str,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        on_progress: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_complete: Optional[Callable[[Dict[str, Any]], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now
    ):
        """
        Initialize the client.

        Args:
            endpoint: URL of the control surface (Lambda function URL or API Gateway)
            session: Optional requests session
            timeout: HTTP request timeout in seconds (default: 30)
            chunk_size: Server chunk size (default: 200)
            on_progress: Called with every status document
            on_complete: Called with the final status document of an action
            on_error: Called with the message of a failed action
            sleep: Sleep function used by the heartbeat
            clock: Source of the current time
        """
        self.endpoint = endpoint
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.on_error = on_error
        self.clock = clock

        self.status = ''
        self.previous_status = ''
        self.running_action = ''
        self.start_date: Optional[str] = None
        self.error: Optional[str] = None
        self.completed: Optional[Dict[str, Any]] = None
        self.can_resume = False
        self.final_count: Optional[int] = None
        self.since_window = f'the last {self.INTERVAL_HOURS} hours'
        # Request the server turned away as busy; re-sent once it is free
        self.pending_request: Optional[RunRequest] = None

        self.heartbeat = Heartbeat(self.tick, self.HEARTBEAT_SECONDS, sleep=sleep)

    # ==== Actions ====

    def start(
        self,
        action: str,
        start_date: Optional[str] = None,
        event_id: Optional[str] = None
    ) -> None:
        """
        Start a logical action (import_new, import_all, reset_all, ...).

        Raises:
            ValueError: If the action is unknown or import_single lacks a numeric ID
        """
        if action == 'import_single' and not str(event_id or '').isdigit():
            raise ValueError('Invalid ID given.')

        self.running_action = action
        self.start_date = start_date
        self.completed = None
        self.error = None
        self.pending_request = None
        self.run_process(first_request(action, start_date, event_id))

    def cancel(self) -> None:
        self.running_action = 'cancel'
        self.pending_request = None
        self.run_process(RunRequest(action='cancel'))

    def resume(self) -> None:
        self.running_action = 'manual_resume'
        self.completed = None
        self.error = None
        self.pending_request = None
        self.run_process(RunRequest(action='resume'))

    def refresh(self) -> None:
        """Poll the server now instead of waiting for the next beat."""
        self.heartbeat.force_call()
        self.heartbeat.synchronize()

    # ==== Process controllers ====

    def tick(self) -> None:
        """One heartbeat: fetch status and react to it."""
        self.heartbeat.pause()
        try:
            status = self._post({'action': 'status'})
        except requests.RequestException as e:
            logger.warning(f"Status request failed: {e}")
            self.heartbeat.start()
            return
        self.heartbeat.start()
        self.handle_status(status)

    def handle_status(self, status: Dict[str, Any]) -> None:
        """
        Decide what happens next from a status document.

        running        - speed up and report progress
        free           - request the next phase/page, or complete the action
        free:canceled  - the action stopped; offer resume

        While a request turned away as busy is pending, a free status belongs
        to the other run and only triggers the retry.
        """
        self.previous_status = self.status
        self.status = status.get('status', '')

        if self.status == 'running':
            self.heartbeat.rate = self.HEARTBEAT_QUICK_SECONDS
            self._report_progress(status)
        elif self.status in ('free', 'free:canceled') and self.pending_request is not None:
            self._report_progress(status)
            self.retry_pending_request()
        elif self.status == 'free':
            self.heartbeat.rate = self.HEARTBEAT_SECONDS
            self._report_progress(status)
            if self.previous_status and self.previous_status != 'free':
                self.request_next_action(status)
            else:
                self.complete_action(status)
        elif self.status == 'free:canceled':
            self.heartbeat.rate = self.HEARTBEAT_SECONDS
            self._report_progress(status)
            self.complete_action(status)
        else:
            logger.error(f"Unhandled status '{self.status}' returned from importer")

        self.heartbeat.synchronize()

    def request_next_action(self, status: Dict[str, Any]) -> None:
        """Issue the next request of the running action, or complete it."""
        if self.running_action in ('cancel', 'manual_resume', ''):
            self.complete_action(status)
            return

        try:
            request = next_request(self.running_action, status, self.start_date, self.chunk_size)
        except ValueError:
            logger.error(f"Unhandled action '{self.running_action}'")
            request = None

        if request is None:
            self.complete_action(status)
        else:
            self.run_process(request)

    def retry_pending_request(self) -> None:
        request = self.pending_request
        self.pending_request = None
        logger.info(f"Importer is free again; retrying '{request.action}'")
        self.run_process(request)

    def complete_action(self, status: Dict[str, Any]) -> None:
        """Record the finished action and slow the heartbeat."""
        self.heartbeat.rate = self.HEARTBEAT_SECONDS
        self.completed = status
        self.can_resume = status.get('status') == 'free:canceled'
        self.final_count = self.fetch_final_count()
        self.update_since_window(status.get('timestamp'))

        logger.info(
            f"Last run processed {status.get('processed')} of {status.get('total')} "
            f"total listings with {status.get('added')} additions and "
            f"{status.get('deleted')} deletions"
        )
        if self.on_complete:
            self.on_complete(status)

    def complete_action_with_error(self, message: str) -> None:
        """Cancel the server run after a failure and surface the error."""
        self.error = message
        self.can_resume = True
        logger.error(f"Importer action failed: {message}")
        self.running_action = 'cancel'
        try:
            self._post({'action': 'cancel'})
        except requests.RequestException as e:
            logger.error(f"Cancel request failed: {e}")
        if self.on_error:
            self.on_error(message)

    # ==== Server communication ====

    def run_process(self, request: RunRequest) -> Optional[Dict[str, Any]]:
        """
        Send an operation request.

        Gateway timeouts are ignored; the next heartbeat picks up the state.
        Any other failure cancels the run.
        """
        logger.info(f"Starting action '{request.action}'")
        self._handle_run_start()

        try:
            result = self._post(request.to_dict())
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == self.GATEWAY_TIMEOUT:
                logger.info("Gateway timeout; waiting for the next heartbeat")
                return None
            self.complete_action_with_error(
                "Request to server returned a failure code. Resume to continue the action."
            )
            return None
        except requests.RequestException as e:
            logger.warning(f"Request failed: {e}")
            self.complete_action_with_error(
                "Request to server returned a failure code. Resume to continue the action."
            )
            return None

        if result.get('status') == Status.BUSY.value:
            logger.info(f"Importer is busy with another operation; '{request.action}' will be retried")
            self.pending_request = request
            self.status = Status.BUSY.value
        elif result.get('status') == Status.ERROR.value:
            self.complete_action_with_error(
                result.get('message') or 'Another operation is already running.'
            )
        return result

    def _handle_run_start(self) -> None:
        # The server may be slow to report running
        self.status = 'running'
        if self.running_action == 'manual_resume':
            self.fetch_running_action()
        self.heartbeat.rate = self.HEARTBEAT_QUICK_SECONDS
        self.heartbeat.synchronize()

    def fetch_running_action(self) -> None:
        """Learn which action a manual resume continues."""
        try:
            result = self._post({'action': 'running_action'})
        except requests.RequestException as e:
            logger.warning(f"Could not fetch running action: {e}")
            return
        action = result.get('action')
        if action and action != 'NONE':
            self.running_action = action

    def fetch_final_count(self) -> Optional[int]:
        try:
            result = self._post({'action': 'total_count'})
        except requests.RequestException as e:
            logger.warning(f"Could not fetch total count: {e}")
            return None
        total = result.get('total')
        return int(total) if total is not None else None

    def update_since_window(self, last_updated: Optional[str]) -> None:
        """Describe the window the next import_new will cover."""
        try:
            timestamp = datetime.strptime(last_updated or '', TIMESTAMP_FORMAT)
        except ValueError:
            return
        if self.clock() - timestamp > timedelta(hours=self.INTERVAL_HOURS):
            self.since_window = f"since {timestamp.strftime(TIMESTAMP_FORMAT)}"
        else:
            self.since_window = f'the last {self.INTERVAL_HOURS} hours'

    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json() if response.content else {}

    def _report_progress(self, status: Dict[str, Any]) -> None:
        logger.info(
            f"{status.get('status')} {status.get('method')}: "
            f"{status.get('processed')}/{status.get('total')} processed, "
            f"{status.get('added')} added, {status.get('deleted')} deleted"
        )
        if self.on_progress:
            self.on_progress(status)

    # ==== Scheduling ====

    def is_idle(self) -> bool:
        return self.completed is not None or self.error is not None

    def run(self, max_ticks: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Beat until the current action completes or fails.

        Returns:
            The final status document, or None if the action failed or did not finish
        """
        self.heartbeat.run(self.is_idle, max_beats=max_ticks)
        return self.completed
