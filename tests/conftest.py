from datetime import datetime, timedelta, timezone

import pytest

from biblion import create_app
from biblion.services.library_service import LibraryService
from biblion.services.record_store import RecordStore
from biblion.utils.http import reset_limiters


class FakeClock:
    """Deterministic, manually advanced replacement for now_utc()."""

    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _fresh_limiters():
    reset_limiters()
    yield
    reset_limiters()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(tmp_path, clock):
    return RecordStore(tmp_path, clock=clock)


@pytest.fixture
def service(tmp_path, clock):
    svc = LibraryService.from_config({'DATA_DIR': str(tmp_path)})
    svc.store.clock = clock
    return svc


@pytest.fixture
def app(tmp_path, clock):
    app = create_app({'DATA_DIR': str(tmp_path), 'TESTING': True, 'HOST': '192.168.1.20', 'PORT': 3000})
    app.extensions['biblion'].store.clock = clock
    return app


@pytest.fixture
def client(app):
    return app.test_client()
