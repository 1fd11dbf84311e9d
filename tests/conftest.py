"""Shared fixtures: an in-memory stand-in for the supabase-py client and helpers to seed it."""

import copy
import re
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import fitz
import pytest
from postgrest.exceptions import APIError

import config
from db.supabase_client import set_admin_client

UNIQUE_COLUMNS = {
    'paddle_webhook_logs': ['event_id'],
    'viva_webhook_logs': ['event_id'],
    'payment_idempotency_keys': ['idempotency_key'],
    'extension_tokens': ['token'],
    'magic_upload_links': ['token'],
    'profiles': ['id'],
}


def _now():
    return datetime.now(timezone.utc).isoformat()


class FakeQuery:
    def __init__(self, db, table):
        self.db = db
        self.table = table
        self.action = 'select'
        self.payload = None
        self.filters = []
        self.ordering = []
        self.max_rows = None

    # actions
    def select(self, *columns, **kwargs):
        self.action = 'select'
        return self

    def insert(self, rows):
        self.action = 'insert'
        self.payload = rows
        return self

    def upsert(self, rows):
        self.action = 'upsert'
        self.payload = rows
        return self

    def update(self, values):
        self.action = 'update'
        self.payload = values
        return self

    def delete(self):
        self.action = 'delete'
        return self

    # filters
    def eq(self, column, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def neq(self, column, value):
        self.filters.append(lambda row: row.get(column) != value)
        return self

    def in_(self, column, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def is_(self, column, value):
        expected = None if value in ('null', None) else value
        self.filters.append(lambda row: row.get(column) is expected)
        return self

    def lt(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) < value)
        return self

    def lte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) <= value)
        return self

    def gt(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) > value)
        return self

    def gte(self, column, value):
        self.filters.append(lambda row: row.get(column) is not None and row.get(column) >= value)
        return self

    def ilike(self, column, pattern):
        regex = re.compile('^' + '.*'.join(re.escape(part) for part in pattern.split('%')) + '$', re.I | re.S)
        self.filters.append(lambda row: row.get(column) is not None and bool(regex.match(str(row.get(column)))))
        return self

    def order(self, column, desc=False, **kwargs):
        self.ordering.append((column, desc))
        return self

    def limit(self, count):
        self.max_rows = count
        return self

    def _matching(self):
        return [row for row in self.db.rows(self.table) if all(f(row) for f in self.filters)]

    def execute(self):
        if self.action == 'insert':
            return SimpleNamespace(data=self.db.insert(self.table, self.payload))
        if self.action == 'upsert':
            return SimpleNamespace(data=self.db.upsert(self.table, self.payload))
        if self.action == 'update':
            rows = self._matching()
            for row in rows:
                row.update(copy.deepcopy(self.payload))
            return SimpleNamespace(data=[copy.deepcopy(row) for row in rows])
        if self.action == 'delete':
            rows = self._matching()
            self.db.tables[self.table] = [row for row in self.db.rows(self.table) if row not in rows]
            return SimpleNamespace(data=[copy.deepcopy(row) for row in rows])

        rows = [copy.deepcopy(row) for row in self._matching()]
        for column, desc in reversed(self.ordering):
            rows.sort(key=lambda row: (row.get(column) is None, row.get(column) or ''), reverse=desc)
        if self.max_rows is not None:
            rows = rows[:self.max_rows]
        return SimpleNamespace(data=rows)


class FakeBucket:
    def __init__(self, storage, name):
        self.storage = storage
        self.name = name

    @property
    def files(self):
        return self.storage.files.setdefault(self.name, {})

    def upload(self, path, file, file_options=None):
        upsert = str((file_options or {}).get('upsert', 'false')).lower() == 'true'
        if path in self.files and not upsert:
            raise RuntimeError(f'The resource already exists: {path}')
        self.files[path] = file
        return SimpleNamespace(path=path)

    def remove(self, paths):
        for path in paths:
            self.files.pop(path, None)
        return [{'name': p} for p in paths]

    def create_signed_url(self, path, expires_in):
        return {'signedURL': f'https://storage.test/{self.name}/{path}?expires={expires_in}'}

    def download(self, path):
        return self.files[path]


class FakeStorage:
    def __init__(self):
        self.files = {}

    def from_(self, bucket):
        return FakeBucket(self, bucket)


class FakeAuth:
    def __init__(self):
        self.tokens = {}

    def get_user(self, token):
        user = self.tokens.get(token)
        if not user:
            raise RuntimeError('invalid JWT')
        return SimpleNamespace(user=user)

    def sign_up(self, credentials):
        user = SimpleNamespace(id=str(uuid.uuid4()), email=credentials['email'])
        return SimpleNamespace(user=user, session=None)

    def sign_in_with_password(self, credentials):
        for token, user in self.tokens.items():
            if user.email == credentials['email']:
                session = SimpleNamespace(access_token=token, refresh_token='refresh')
                return SimpleNamespace(user=user, session=session)
        raise RuntimeError('Invalid login credentials')


class FakeSupabase:
    def __init__(self):
        self.tables = {}
        self.storage = FakeStorage()
        self.auth = FakeAuth()

    def rows(self, table):
        return self.tables.setdefault(table, [])

    def table(self, name):
        return FakeQuery(self, name)

    def _check_unique(self, table, row):
        for column in UNIQUE_COLUMNS.get(table, []):
            if row.get(column) is None:
                continue
            if any(existing.get(column) == row[column] for existing in self.rows(table)):
                raise APIError({
                    'message': f'duplicate key value violates unique constraint "{table}_{column}_key"',
                    'code': '23505',
                    'hint': None,
                    'details': None,
                })

    def insert(self, table, rows):
        rows = rows if isinstance(rows, list) else [rows]
        created = []
        for row in rows:
            row = copy.deepcopy(row)
            row.setdefault('id', str(uuid.uuid4()))
            row.setdefault('created_at', _now())
            self._check_unique(table, row)
            self.rows(table).append(row)
            created.append(copy.deepcopy(row))
        return created

    def upsert(self, table, rows):
        rows = rows if isinstance(rows, list) else [rows]
        result = []
        for row in rows:
            existing = [r for r in self.rows(table) if row.get('id') and r.get('id') == row['id']]
            if existing:
                existing[0].update(copy.deepcopy(row))
                result.append(copy.deepcopy(existing[0]))
            else:
                result.extend(self.insert(table, row))
        return result

    # seeding helpers

    def add(self, table, **row):
        return self.insert(table, row)[0]

    def get(self, table, row_id):
        for row in self.rows(table):
            if row.get('id') == row_id:
                return row
        return None


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append((name, args, kwargs))
        return record

    def names(self):
        return [name for name, _, _ in self.calls]


@pytest.fixture(autouse=True)
def offline_config(monkeypatch):
    """Keep every outbound integration unconfigured unless a test opts in."""
    monkeypatch.setitem(config.SENDPULSE_CONFIG, 'api_key', None)
    monkeypatch.setitem(config.SENDPULSE_CONFIG, 'api_secret', None)
    monkeypatch.setitem(config.PUSH_CONFIG, 'vapid_private_key', None)
    monkeypatch.setitem(config.PUSH_CONFIG, 'vapid_public_key', None)
    monkeypatch.setitem(config.PADDLE_CONFIG, 'webhook_secret', 'pdl_test_secret')
    monkeypatch.setitem(config.UNSUBSCRIBE_CONFIG, 'secret', 'unsubscribe-secret')
    monkeypatch.setitem(config.DOCUMENT_CONFIG, 'maintenance_key', 'maintenance-key')
    monkeypatch.setitem(config.WARMUP_CONFIG, 'send_delay_seconds', 0)


@pytest.fixture
def supabase():
    fake = FakeSupabase()
    set_admin_client(fake)
    yield fake
    set_admin_client(None)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(supabase):
    from api import app as flask_app
    flask_app.config['TESTING'] = True
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(supabase):
    """Create a profile + role and register a bearer token for it."""
    def _make_user(role='customer', credits=0, similarity_credits=0, email=None, **profile):
        user_id = str(uuid.uuid4())
        email = email or f'{role}-{user_id[:6]}@example.com'
        profile.setdefault('full_name', role.title())
        profile.setdefault('email_unsubscribed', False)
        supabase.add('profiles', id=user_id, email=email, credit_balance=credits,
                     similarity_credit_balance=similarity_credits, **profile)
        supabase.add('user_roles', user_id=user_id, role=role)
        token = f'jwt-{user_id}'
        supabase.auth.tokens[token] = SimpleNamespace(id=user_id, email=email)
        return SimpleNamespace(id=user_id, email=email, token=token,
                               headers={'Authorization': f'Bearer {token}'})
    return _make_user


@pytest.fixture
def make_document(supabase):
    def _make_document(**fields):
        row = {
            'user_id': None,
            'file_name': 'essay.docx',
            'normalized_filename': 'essay',
            'file_path': 'owner/essay.docx',
            'scan_type': 'full',
            'status': 'pending',
            'assigned_staff_id': None,
            'assigned_at': None,
            'completed_at': None,
            'similarity_report_path': None,
            'ai_report_path': None,
            'similarity_percentage': None,
            'ai_percentage': None,
            'needs_review': False,
            'automation_attempt_count': 0,
            'uploaded_at': _now(),
        }
        row.update(fields)
        return supabase.add('documents', **row)
    return _make_document


def build_pdf(*pages):
    """Build a PDF whose pages contain the given text."""
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        page.insert_text((72, 72), text, fontsize=11)
    content = doc.tobytes()
    doc.close()
    return content


@pytest.fixture
def pdf():
    return build_pdf
