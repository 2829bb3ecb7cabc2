from datetime import datetime, timedelta

import pytest
import pytz

import server
from command_sync import CommandSyncEngine
from kv_store import KeyValueStore


class FakeClock:
    """Settable clock so tests can move across days."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(pytz.timezone('Asia/Tehran').localize(datetime(2024, 5, 1, 9, 0, 0)))


@pytest.fixture
def store(tmp_path):
    kv = KeyValueStore(str(tmp_path / 'kv.db'))
    kv.init_schema()
    return kv


@pytest.fixture
def engine(store, clock):
    return CommandSyncEngine(store, clock)


@pytest.fixture
def app(tmp_path, clock):
    database = str(tmp_path / 'server.db')
    server.app.config.update(TESTING=True, DATABASE=database, CLOCK=clock)
    server.app.extensions.pop('command_sync', None)
    server.init_db(database)

    yield server.app

    server.app.extensions.pop('command_sync', None)
    server.app.config.update(DATABASE=server.DATABASE, CLOCK=None)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def log_types(client):
    def read():
        return [entry['logType'] for entry in client.get('/api/logs').get_json()]
    return read
