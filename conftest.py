import uuid
from contextlib import contextmanager
from pathlib import Path

import pytest

from app import create_app
from config import Settings
from database import Database

ROOT = Path(__file__).resolve().parent
INIT_SQL = ROOT / 'init.sql'


def memory_url():
    return f'file:test_{uuid.uuid4().hex}?mode=memory&cache=shared'


@pytest.fixture
def database():
    db = Database(memory_url(), init_script=str(INIT_SQL), initial_size=2, max_active=4,
                  max_idle=2, min_idle=1, max_wait=0.2)
    db.initialize()
    yield db
    db.shutdown()


class CountingDatabase:
    """Pool double that counts leases taken from a real pool."""

    def __init__(self, database):
        self.database = database
        self.acquired = 0
        self.released = 0

    @property
    def outstanding(self):
        return self.acquired - self.released

    @contextmanager
    def connection(self):
        conn = self.database.acquire()
        self.acquired += 1
        try:
            yield conn
        finally:
            self.database.release(conn)
            self.released += 1


@pytest.fixture
def counting_database(database):
    counter = CountingDatabase(database)
    yield counter
    assert counter.outstanding == 0
    assert database.stats()['leased'] == 0


@pytest.fixture
def pages_dir(tmp_path):
    pages = tmp_path / 'pages'
    pages.mkdir()
    return pages


@pytest.fixture
def settings(pages_dir):
    settings = Settings()
    settings.database.url = memory_url()
    settings.database.init_script = str(INIT_SQL)
    settings.database.pool.max_wait = 0.2
    settings.pages_dir = str(pages_dir)
    settings.secret_key = 'test-secret'
    settings.globals = {'site_name': 'Test Site'}
    return settings


@pytest.fixture
def app(settings):
    app = create_app(settings)
    app.config['TESTING'] = True
    yield app
    app.db.shutdown()


@pytest.fixture
def client(app):
    return app.test_client()
