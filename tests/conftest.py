import os
import re
import tempfile
from pathlib import Path

os.environ.setdefault("MERIDIAN_DB_PATH", str(Path(tempfile.mkdtemp(prefix="meridian-tests-")) / "meridian.db"))
os.environ.setdefault("MERIDIAN_COOKIE_SECURE", "0")

import pytest
from werkzeug.test import Client

from app import db, server

ADMIN_EMAIL = "admin@meridian.local"
ADMIN_PASSWORD = "ChangeMeMeridian!2026"
CSRF_META_RE = re.compile(r'<meta name="csrf-token" content="([^"]*)"')


class Session:
    """A browser-like client that remembers cookies and the page CSRF token."""

    def __init__(self, remote_addr: str = "127.0.0.1"):
        self.client = Client(server.app)
        self.environ = {"REMOTE_ADDR": remote_addr}
        self.csrf = ""

    def get(self, path, **kwargs):
        return self.client.get(path, environ_base=self.environ, **kwargs)

    def post(self, path, data=None, csrf=True, **kwargs):
        data = dict(data or {})
        if csrf and self.csrf:
            data.setdefault("csrf_token", self.csrf)
        return self.client.post(path, data=data, environ_base=self.environ, **kwargs)

    def login(self, email=ADMIN_EMAIL, password=ADMIN_PASSWORD):
        response = self.post("/login", {"email": email, "password": password}, csrf=False)
        assert response.status_code == 302, response.get_data(as_text=True)
        dashboard = self.get("/dashboard")
        assert dashboard.status_code == 200
        self.csrf = CSRF_META_RE.search(dashboard.get_data(as_text=True)).group(1)
        return self


@pytest.fixture(autouse=True)
def fresh_database(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "DB_PATH", tmp_path / "meridian.db")
    monkeypatch.setattr(db, "BOOTSTRAPPED", False)
    server.RATE_LIMIT.clear()
    yield tmp_path / "meridian.db"
    server.RATE_LIMIT.clear()


@pytest.fixture
def conn():
    db.ensure_bootstrap()
    connection = db.db_connect()
    yield connection
    connection.close()


@pytest.fixture
def anon():
    return Session()


@pytest.fixture
def admin():
    return Session().login()


def location_id(response, prefix: str) -> int:
    """Pull the numeric id out of a ``/prefix/<id>?msg=...`` redirect."""
    match = re.search(rf"{re.escape(prefix)}/(\d+)", response.headers["Location"])
    assert match, response.headers.get("Location")
    return int(match.group(1))
