import threading
from types import SimpleNamespace

import pytest

from worker.extension_client import DocumentClaimedError, ExtensionApiClient, ExtensionApiError
from worker.extension_worker import ExtensionWorker
from worker.turnitin_checker import CheckResult, document_title, parse_row_scores

CONFIG = {
    'enabled': True,
    'token': 'ext_token',
    'turnitin_username': 'user',
    'turnitin_password': 'pass',
    'poll_interval_seconds': 0,
    'auto_process_next': True,
}


class FakeClient:
    def __init__(self, pending=None, claimed=None):
        self._pending = pending or []
        self.claimed = claimed or set()
        self.uploads = []
        self.errors = []
        self.heartbeats = 0

    def heartbeat(self, info=None):
        self.heartbeats += 1

    def pending(self):
        return list(self._pending)

    def download(self, document_id):
        if document_id in self.claimed:
            raise DocumentClaimedError('Document is already being processed', 409)
        return {
            'document': {'id': document_id, 'file_name': f'{document_id}.docx', 'automation_attempt_count': 1},
            'signed_url': f'https://storage.test/{document_id}',
        }

    def fetch_file(self, url):
        return b'file-bytes'

    def upload_report(self, document_id, report, report_name, **kwargs):
        self.uploads.append((document_id, report_name, kwargs))

    def report_error(self, document_id, message):
        self.errors.append((document_id, message))


class FakeChecker:
    def __init__(self, error=None):
        self.error = error
        self.checked = []

    def check(self, file_name, content):
        self.checked.append(file_name)
        if self.error:
            raise self.error
        return CheckResult(similarity_percentage=18.0, ai_percentage=None, similarity_report=b'%PDF')


def make_worker(client, checker=None, **overrides):
    notes = []
    worker = ExtensionWorker(client, checker or FakeChecker(), {**CONFIG, **overrides},
                             notify=lambda title, message: notes.append(title))
    return worker, notes


def test_parse_row_scores():
    assert parse_row_scores('essay.docx  18%  5%  Submitted today') == (18.0, 5.0, True)
    assert parse_row_scores('essay.docx  Processing') == (None, None, False)
    assert parse_row_scores('essay.docx 12% *%') == (12.0, None, False)
    assert parse_row_scores('') == (None, None, False)


def test_document_title_drops_extension():
    assert document_title('My Essay.final.docx') == 'My Essay.final'


def test_worker_is_disabled_without_credentials():
    worker, _ = make_worker(FakeClient(), turnitin_password=None)
    assert worker.poll_once() == 'disabled'
    worker, _ = make_worker(FakeClient(), enabled=False)
    assert worker.poll_once() == 'disabled'


def test_idle_when_queue_is_empty():
    client = FakeClient()
    worker, _ = make_worker(client)
    assert worker.poll_once() == 'idle'
    assert client.heartbeats == 1


def test_processes_first_available_document():
    client = FakeClient(pending=[{'id': 'taken'}, {'id': 'doc-1'}, {'id': 'doc-2'}], claimed={'taken'})
    checker = FakeChecker()
    worker, notes = make_worker(client, checker)

    assert worker.poll_once() == 'completed'

    assert checker.checked == ['doc-1.docx']
    [(document_id, report_name, kwargs)] = client.uploads
    assert document_id == 'doc-1'
    assert report_name == 'doc-1_similarity.pdf'
    assert kwargs['similarity_percentage'] == 18.0
    assert notes == ['Document completed']
    assert worker.processed_count == 1
    assert worker.is_processing is False


def test_checker_failure_is_reported():
    client = FakeClient(pending=[{'id': 'doc-1'}])
    worker, notes = make_worker(client, FakeChecker(error=RuntimeError('login failed')))

    assert worker.poll_once() == 'failed'

    assert client.errors == [('doc-1', 'login failed')]
    assert client.uploads == []
    assert worker.last_error == 'login failed'
    assert notes == ['Document failed']


def test_single_file_mode_waits_for_manual_start():
    client = FakeClient(pending=[{'id': 'doc-1'}])
    worker, _ = make_worker(client, auto_process_next=False)

    assert worker.poll_once() == 'completed'
    assert worker.poll_once() == 'waiting'
    assert worker.start_processing_now() == 'completed'
    assert len(client.uploads) == 2


def test_overlapping_poll_is_skipped():
    client = FakeClient(pending=[{'id': 'doc-1'}])
    worker, _ = make_worker(client)
    worker.is_processing = True
    assert worker.poll_once() == 'busy'
    assert client.uploads == []


def test_run_forever_stops_on_event():
    client = FakeClient()
    worker, _ = make_worker(client)
    stop = threading.Event()
    original = worker.poll_once

    def poll_then_stop():
        stop.set()
        return original()

    worker.poll_once = poll_then_stop
    worker.run_forever(stop)
    assert client.heartbeats == 1


class FakeSession:
    def __init__(self, status_code, body):
        self.headers = {}
        self.response = SimpleNamespace(status_code=status_code, ok=status_code < 400,
                                        json=lambda: body, text=str(body))
        self.calls = []

    def request(self, method, url, timeout=None, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.response


def test_client_sends_bearer_token_and_parses_pending():
    session = FakeSession(200, {'success': True, 'documents': [{'id': 'doc-1'}]})
    client = ExtensionApiClient('https://api.test/extension-api/', 'ext_abc', session=session)
    assert client.pending() == [{'id': 'doc-1'}]
    assert session.headers['Authorization'] == 'Bearer ext_abc'
    assert session.calls[0][1] == 'https://api.test/extension-api/pending'


def test_client_maps_conflict_and_errors():
    with pytest.raises(DocumentClaimedError):
        ExtensionApiClient('https://api.test', 't', session=FakeSession(409, {'message': 'taken'})).download('d')
    with pytest.raises(ExtensionApiError) as excinfo:
        ExtensionApiClient('https://api.test', 't', session=FakeSession(401, {'message': 'bad token'})).pending()
    assert excinfo.value.status_code == 401


def test_client_upload_report_sends_percentages():
    session = FakeSession(200, {'success': True})
    ExtensionApiClient('https://api.test', 't', session=session).upload_report(
        'doc-1', b'%PDF', 'doc-1.pdf', similarity_percentage=12.0, ai_report=b'%PDF-ai', ai_percentage=3.0)
    method, url, kwargs = session.calls[0]
    assert url == 'https://api.test/upload-report'
    assert kwargs['data'] == {'document_id': 'doc-1', 'similarity_percentage': '12.0', 'ai_percentage': '3.0'}
    assert set(kwargs['files']) == {'report', 'ai_report'}
