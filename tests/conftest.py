"""Shared fixtures for the SiteEval test suite.

Provides a Flask test client wired to a temporary SQLite database and
helpers for faking the upstream HTTP APIs.
"""

import atexit
import io
import os
import tempfile
from unittest.mock import MagicMock

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["SITEEVAL_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")

# Ensure Google Maps key is present (evaluate/import routes check this)
os.environ.setdefault("GOOGLE_MAPS_API_KEY", "fake-key-for-tests")

# Keep rate limits out of the way of route tests
os.environ.setdefault("RATE_LIMIT_DEFAULT", "10000/minute")
os.environ.setdefault("RATE_LIMIT_EVAL", "10000/minute")
os.environ.setdefault("RATE_LIMIT_AUTOCOMPLETE", "10000/minute")

from app import app  # noqa: E402
from models import init_db, _get_db  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database before every test, keeping the schema."""
    init_db()
    conn = _get_db()
    for table in ("sites", "deals", "events", "evaluation_jobs", "lookup_cache"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def client():
    """Flask test client with CSRF disabled (we're testing logic, not CSRF)."""
    app.config["TESTING"] = True
    app.config["WTF_CSRF_ENABLED"] = False
    with app.test_client() as c:
        yield c


def fake_response(json_data=None, status_code=200, text=""):
    """A stand-in for requests.Response."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.ok = 200 <= status_code < 400
    resp.json.return_value = json_data
    resp.text = text
    return resp


def tiny_png():
    """Bytes of a 1x1 PNG, for mocking tile fetches."""
    from PIL import Image
    buf = io.BytesIO()
    Image.new("RGB", (1, 1), (200, 200, 200)).save(buf, format="PNG")
    return buf.getvalue()


FCC_TRAVIS = {
    "results": [{
        "block_fips": "484530011001000",
        "county_fips": "48453",
        "county_name": "Travis County",
        "state_fips": "48",
        "state_code": "TX",
        "state_name": "Texas",
    }]
}

GEOCODE_OK = {
    "status": "OK",
    "results": [{
        "formatted_address": "1100 Congress Ave, Austin, TX 78701, USA",
        "geometry": {"location": {"lat": 30.2747, "lng": -97.7404}},
    }],
}
