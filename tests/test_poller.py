"""Unit tests for ImporterClient."""
import json
from datetime import datetime

import pytest
import responses

from client.poller import ImporterClient

ENDPOINT = 'https://importer.example.com/run'


def status_doc(status, method='', processed=0, total=0, page=0, added=0, deleted=0):
    return {
        'status': status,
        'method': method,
        'timestamp': '2024-01-15 10:00:00',
        'processed': processed,
        'added': added,
        'deleted': deleted,
        'page': page,
        'total': total
    }


class FakeServer:
    """Scripted control surface answering client requests."""

    def __init__(self, statuses=(), start_result=None, start_code=200):
        self.statuses = list(statuses)
        self.start_result = start_result or {'status': 'success'}
        self.start_code = start_code
        # Answers for the next start requests, before falling back to start_result
        self.start_results = []
        self.requests = []

    def __call__(self, request):
        payload = json.loads(request.body)
        self.requests.append(payload)
        action = payload['action']

        if action == 'status':
            return 200, {}, json.dumps(self.statuses.pop(0))
        if action == 'total_count':
            return 200, {}, json.dumps({'status': 'success', 'total': 10})
        if action == 'running_action':
            return 200, {}, json.dumps({'status': 'success', 'action': 'import_all'})
        if action == 'cancel':
            return 200, {}, json.dumps({'status': 'success'})
        if self.start_results:
            return 200, {}, json.dumps(self.start_results.pop(0))
        return self.start_code, {}, json.dumps(self.start_result)

    def operations(self):
        return [
            payload for payload in self.requests
            if payload['action'] not in ('status', 'total_count', 'running_action')
        ]


@pytest.fixture
def server():
    with responses.RequestsMock(assert_all_requests_are_fired=False) as mock:
        fake = FakeServer()
        mock.add_callback(responses.POST, ENDPOINT, callback=fake, content_type='application/json')
        yield fake


@pytest.fixture
def client():
    return ImporterClient(
        ENDPOINT,
        sleep=lambda seconds: None,
        clock=lambda: datetime(2024, 1, 15, 12, 0, 0)
    )


class TestImporterClient:
    """Test cases for driving actions to completion."""

    def test_import_all_runs_to_completion(self, server, client):
        """Test every phase and page is requested until the action completes."""
        server.statuses = [
            status_doc('running', 'delete/prune'),
            status_doc('free', 'delete/cleanup', processed=1, total=1, deleted=1),
            status_doc('free', 'import/update', processed=4, total=10, page=0, added=4),
            status_doc('free', 'import/update', processed=10, total=10, page=1, added=10),
        ]
        completed = []
        client.on_complete = completed.append

        client.start('import_all')
        final = client.run(max_ticks=10)

        assert final['processed'] == 10
        assert completed == [final]
        assert [op['action'] for op in server.operations()] == [
            'delete_stale', 'import_all', 'import_all'
        ]
        assert server.operations()[0]['init'] == 'hard'
        assert server.operations()[1]['init'] == 'soft'
        assert server.operations()[2] == {
            'action': 'import_all',
            'import_action': 'import_all',
            'page': 1,
            'init': 'resume'
        }
        assert client.final_count == 10
        assert client.can_resume is False

    def test_running_status_speeds_up_heartbeat(self, server, client):
        progress = []
        client.on_progress = progress.append

        client.handle_status(status_doc('running', 'import/update', processed=3, total=10))

        assert client.heartbeat.rate == ImporterClient.HEARTBEAT_QUICK_SECONDS
        assert progress[0]['processed'] == 3
        assert client.completed is None

    def test_free_without_prior_activity_completes(self, server, client):
        client.handle_status(status_doc('free', 'import/update', processed=10, total=10))

        assert client.completed['status'] == 'free'
        assert server.operations() == []

    def test_canceled_offers_resume(self, server, client):
        client.status = 'running'
        client.running_action = 'import_all'

        client.handle_status(status_doc('free:canceled', 'import/update', processed=6, total=10))

        assert client.completed['processed'] == 6
        assert client.can_resume is True
        assert server.operations() == []

    def test_busy_start_is_retried_once_free(self, server, client):
        """Test another run's completion is not taken for the refused action's."""
        server.start_results = [{'status': 'busy', 'message': 'Another operation is already running.'}]
        server.statuses = [
            status_doc('running', 'import/update', processed=5, total=10),
            status_doc('free', 'import/update', processed=10, total=10, added=10),
            status_doc('free', 'delete/cleanup', processed=3, total=3, deleted=3),
        ]

        client.start('delete_all')

        assert client.status == 'busy'
        assert client.error is None

        client.tick()
        client.tick()

        assert client.completed is None
        assert [op['action'] for op in server.operations()] == ['delete_all', 'delete_all']
        assert server.operations()[1]['init'] == 'hard'

        client.tick()

        assert client.completed['deleted'] == 3
        assert client.pending_request is None

    def test_refresh_polls_immediately(self, server, client):
        server.statuses = [status_doc('running', 'import/fetch')]

        client.refresh()

        assert client.status == 'running'
        assert client.heartbeat.beats == 1

    def test_gateway_timeout_is_ignored(self, server, client):
        """Test a 504 leaves the action running for the next heartbeat."""
        server.start_code = 504

        client.start('reset_all')

        assert client.error is None
        assert client.status == 'running'
        assert [op['action'] for op in server.operations()] == ['delete_all']

    def test_failure_cancels_run(self, server, client):
        server.start_code = 500
        errors = []
        client.on_error = errors.append

        client.start('import_new', start_date='2024-01-13')

        assert client.error
        assert errors == [client.error]
        assert [op['action'] for op in server.operations()] == ['delete_stale', 'cancel']
        assert client.run() is None

    def test_error_result_cancels_run(self, server, client):
        server.start_result = {'status': 'error', 'message': 'Process failed preflight checks.'}

        client.start('delete_all')

        assert client.error == 'Process failed preflight checks.'
        assert server.operations()[-1] == {'action': 'cancel'}

    def test_resume_learns_running_action(self, server, client):
        server.statuses = [
            status_doc('free', 'import/update', processed=400, total=500, page=1),
            status_doc('free', 'import/update', processed=500, total=500, page=2),
        ]

        client.resume()

        assert client.running_action == 'import_all'
        assert server.operations()[0] == {'action': 'resume'}

        client.run(max_ticks=5)

        assert server.operations()[1]['page'] == 2
        assert client.completed['processed'] == 500

    def test_import_single_requires_numeric_id(self, server, client):
        with pytest.raises(ValueError):
            client.start('import_single', event_id='abc')

        client.start('import_single', event_id='42')
        assert server.operations() == [
            {'action': 'import_single', 'import_action': 'import_single', 'event_id': '42'}
        ]

    def test_cancel(self, server, client):
        client.cancel()

        assert server.operations() == [{'action': 'cancel'}]
        assert client.running_action == 'cancel'


class TestSinceWindow:
    """Test cases for describing the next import_new window."""

    def test_recent_run(self, client):
        client.update_since_window('2024-01-14 12:00:00')
        assert client.since_window == 'the last 48 hours'

    def test_old_run(self, client):
        client.update_since_window('2024-01-01 08:00:00')
        assert client.since_window == 'since 2024-01-01 08:00:00'

    def test_unreadable_timestamp_keeps_window(self, client):
        client.update_since_window(None)
        assert client.since_window == 'the last 48 hours'
