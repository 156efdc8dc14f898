import json

import pytest

from app import build_handler, create_app
from config import WEBHOOK_PATH, WebhookConfig
from database_manager import DatabaseManager
from mock_database_manager import MockDatabaseManager
from send_test_batch import sign_payload

TEST_SECRET = 'test-webhook-secret'
WEBHOOK_URL = WEBHOOK_PATH


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_config():
    def factory(**overrides):
        values = {'secret': TEST_SECRET, 'enabled': True}
        values.update(overrides)
        return WebhookConfig(**values)
    return factory


@pytest.fixture
def store():
    return MockDatabaseManager()


@pytest.fixture
def sqlite_store(tmp_path):
    return DatabaseManager(database_url='', db_path=str(tmp_path / 'jobs.db'))


@pytest.fixture
def make_client(make_config, store, clock):
    def factory(config=None, listing_store=None, **handler_kwargs):
        if config is None:
            config = make_config()
        if listing_store is None:
            listing_store = store
        handler = build_handler(config, listing_store, clock=clock)
        for name, value in handler_kwargs.items():
            setattr(handler, name, value)
        app = create_app(config, listing_store, handler=handler)
        app.testing = True
        return app.test_client()
    return factory


@pytest.fixture
def post_jobs(clock):
    """POST a signed batch; body may be given raw to send malformed JSON"""
    def send(client, jobs=None, body=None, secret=TEST_SECRET, timestamp=None, ip='66.249.66.10', headers=None):
        if body is None:
            body = json.dumps({'jobs': jobs if jobs is not None else []}).encode('utf-8')
        request_headers = sign_payload(body, secret, int(clock() if timestamp is None else timestamp))
        request_headers['X-Forwarded-For'] = ip
        if headers:
            request_headers.update(headers)
        return client.post(WEBHOOK_URL, data=body, headers=request_headers)
    return send
