"""
tests/conftest.py
"""
from __future__ import annotations

import datetime as _dt
import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient
from pytest import MonkeyPatch

# The single-file app lives here:
from poemhouse.api import _rate_hits, app, init_db  # noqa: WPS433

TEST_SECRET = "test-secret-key"
ADMIN = {"username": "admin", "password": "secret123"}


@pytest.fixture(autouse=True)
def _configure_app(tmp_path: Path) -> Generator[None, None, None]:
    """
    Fresh DB file per test: the admin table only ever holds one row, so
    setup tests need a clean slate.
    """
    db_file = tmp_path / "test.sqlite3"
    old = dict(app.config)
    app.config.update(
        TESTING=True,
        DATABASE=str(db_file),
        SECRET_KEY=TEST_SECRET,
        ADMIN_USERNAME="",
        ADMIN_PASSWORD="",
        # Disable the login throttle for unit tests – tested separately
        LOGIN_RATE_LIMIT=0,
    )
    _rate_hits.clear()
    with app.app_context():
        init_db()
    yield
    app.config.clear()
    app.config.update(old)


@pytest.fixture
def client() -> Generator[FlaskClient, None, None]:
    """
    Gives each test an application context *and* test client.

    Yields:
        `flask.testing.FlaskClient`
    """
    with app.test_client() as client:
        with app.app_context():
            yield client


@pytest.fixture(autouse=True, scope="session")
def _fast_clock():
    """
    Patch poemhouse.api.utc_now for the whole session so every call
    returns an ever-increasing timestamp.  No need for time.sleep().
    """
    from poemhouse import api  # import here to avoid early import

    counter = itertools.count()         # 0, 1, 2, …

    base = _dt.datetime(2099, 1, 1, tzinfo=_dt.timezone.utc)
    def _fake_now():
        return base + _dt.timedelta(seconds=next(counter))

    mp = MonkeyPatch()
    mp.setattr(api, "utc_now", _fake_now)

    yield                               # tests run here

    mp.undo()                           # clean up at session end


# ───────────────────────── shared helpers ─────────────────────────────
@pytest.fixture
def admin(client) -> dict:
    """Create the administrator and return its credentials."""
    rv = client.post("/api/admin/setup", json=ADMIN)
    assert rv.status_code == 200, rv.get_json()
    return dict(ADMIN)


@pytest.fixture
def token(client, admin) -> str:
    rv = client.post("/api/admin/login", json=admin)
    assert rv.status_code == 200, rv.get_json()
    return rv.get_json()["token"]


@pytest.fixture
def auth(token) -> dict:
    """Headers for a protected request."""
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def poem(client, auth) -> dict:
    rv = client.post(
        "/api/poems",
        json={"title": "Autumn", "content": "leaves\nfall"},
        headers=auth,
    )
    assert rv.status_code == 201, rv.get_json()
    return rv.get_json()
