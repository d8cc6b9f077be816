import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

# Must be set before the app modules read their configuration.
_tmpdir = tempfile.mkdtemp(prefix="shortener-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_tmpdir, 'test.db')}"
os.environ["BASE_URL"] = "http://short.test"


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()
