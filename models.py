"""
SQLite persistence for evaluated sites, pipeline deals and import jobs.

No ORM, just raw sqlite3. One connection per call, WAL mode so the
background worker and request threads can read while one writes.
Sites and deals are stored as a JSON document per row next to the few
columns used for ordering and filtering (last write wins).
"""

import sqlite3
import os
import json
import uuid
import logging
from contextlib import contextmanager
from datetime import datetime, timezone, timedelta
from typing import Iterable, Optional, List

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("SITEEVAL_DB_PATH", "siteeval.db")

CENSUS_CACHE_TTL_DAYS = 90
MAX_JOB_ERROR_LENGTH = 2000

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS sites (
        site_id         TEXT PRIMARY KEY,
        address         TEXT NOT NULL,
        visitor_id      TEXT,
        created_at      TEXT NOT NULL,
        state           TEXT,
        county          TEXT,
        is_qct          INTEGER NOT NULL DEFAULT 0,
        is_dda          INTEGER NOT NULL DEFAULT 0,
        priority_score  INTEGER NOT NULL DEFAULT 0,
        result_json     TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_sites_created ON sites(created_at);

    CREATE TABLE IF NOT EXISTS deals (
        deal_id         TEXT PRIMARY KEY,
        address         TEXT NOT NULL,
        status          TEXT NOT NULL,
        date_added      TEXT NOT NULL,
        date_updated    TEXT NOT NULL,
        deal_json       TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_deals_status ON deals(status);

    CREATE TABLE IF NOT EXISTS events (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type  TEXT NOT NULL,
        subject_id  TEXT,
        visitor_id  TEXT,
        metadata    TEXT,
        created_at  TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);

    -- queued -> running -> done | failed
    CREATE TABLE IF NOT EXISTS evaluation_jobs (
        job_id           TEXT PRIMARY KEY,
        batch_id         TEXT,
        address          TEXT NOT NULL,
        visitor_id       TEXT,
        request_id       TEXT,
        status           TEXT NOT NULL DEFAULT 'queued',
        current_stage    TEXT,
        result_site_id   TEXT,
        error            TEXT,
        created_at       TEXT NOT NULL,
        started_at       TEXT,
        completed_at     TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_jobs_status ON evaluation_jobs(status);
    CREATE INDEX IF NOT EXISTS idx_jobs_batch ON evaluation_jobs(batch_id);

    -- Census tract lookups and ACS profiles, keyed by geography
    CREATE TABLE IF NOT EXISTS lookup_cache (
        cache_key     TEXT PRIMARY KEY,
        response_json TEXT NOT NULL,
        created_at    TEXT NOT NULL
    );
"""


def _get_db():
    """sqlite3 connection in WAL mode with dict-like rows."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


@contextmanager
def _db():
    """Connection that commits when the block succeeds and always closes."""
    conn = _get_db()
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_id():
    """Short, URL-safe identifier (12 hex chars)."""
    return uuid.uuid4().hex[:12]


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    with _db() as conn:
        conn.executescript(_SCHEMA)


def check_db() -> bool:
    """True when the database answers a trivial query."""
    try:
        with _db() as conn:
            conn.execute("SELECT 1").fetchone()
        return True
    except sqlite3.Error:
        logger.exception("Database health check failed")
        return False


# ---------------------------------------------------------------------------
# Sites
# ---------------------------------------------------------------------------

def save_site(site_dict, visitor_id=None):
    """Persist an evaluated site (Site.to_dict() output). Returns the site_id.

    An existing "id" in site_dict is kept, so re-saving replaces the row.
    """
    site_id = site_dict.get("id") or generate_id()
    doc = dict(site_dict, id=site_id)
    with _db() as conn:
        conn.execute(
            """INSERT OR REPLACE INTO sites
               (site_id, address, visitor_id, created_at, state, county,
                is_qct, is_dda, priority_score, result_json)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                site_id,
                doc.get("address", ""),
                visitor_id,
                doc.get("date_evaluated") or _now(),
                doc.get("state"),
                doc.get("county"),
                int(bool(doc.get("is_qct"))),
                int(bool(doc.get("is_dda"))),
                int(doc.get("priority_score") or 0),
                json.dumps(doc, default=str),
            ),
        )
    return site_id


def _decode_sites(rows: Iterable[sqlite3.Row]) -> List[dict]:
    sites = []
    for row in rows:
        try:
            sites.append(json.loads(row["result_json"]))
        except (json.JSONDecodeError, TypeError) as e:
            logger.error("Skipping site %s with unreadable result_json: %s", row["site_id"], e)
    return sites


def get_site(site_id):
    """Site dict by ID, or None (also None when the stored JSON is unreadable)."""
    with _db() as conn:
        rows = conn.execute("SELECT * FROM sites WHERE site_id = ?", (site_id,)).fetchall()
    sites = _decode_sites(rows)
    return sites[0] if sites else None


def list_sites(limit=200):
    """Most recently evaluated first."""
    with _db() as conn:
        rows = conn.execute(
            "SELECT * FROM sites ORDER BY created_at DESC LIMIT ?", (limit,)
        ).fetchall()
    return _decode_sites(rows)


def get_sites_by_ids(site_ids):
    if not site_ids:
        return []
    placeholders = ",".join("?" * len(site_ids))
    with _db() as conn:
        rows = conn.execute(
            f"SELECT * FROM sites WHERE site_id IN ({placeholders})", tuple(site_ids)
        ).fetchall()
    return _decode_sites(rows)


# ---------------------------------------------------------------------------
# Deals
# ---------------------------------------------------------------------------

def save_deal(deal_dict):
    """Insert or replace a deal document (Deal.to_dict() output)."""
    with _db() as conn:
        conn.execute(
            """INSERT OR REPLACE INTO deals
               (deal_id, address, status, date_added, date_updated, deal_json)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                deal_dict["id"],
                deal_dict["address"],
                deal_dict["status"],
                deal_dict["date_added"],
                deal_dict["date_updated"],
                json.dumps(deal_dict, default=str),
            ),
        )


def load_deal(deal_id) -> Optional[dict]:
    with _db() as conn:
        row = conn.execute(
            "SELECT deal_json FROM deals WHERE deal_id = ?", (deal_id,)
        ).fetchone()
    return json.loads(row["deal_json"]) if row else None


def load_deals(status=None) -> List[dict]:
    """Newest first, optionally only one status."""
    query = "SELECT deal_json FROM deals"
    params = ()
    if status:
        query += " WHERE status = ?"
        params = (status,)
    with _db() as conn:
        rows = conn.execute(query + " ORDER BY date_added DESC", params).fetchall()
    return [json.loads(r["deal_json"]) for r in rows]


def delete_deal(deal_id) -> bool:
    """True if a row was deleted."""
    with _db() as conn:
        return conn.execute("DELETE FROM deals WHERE deal_id = ?", (deal_id,)).rowcount > 0


# ---------------------------------------------------------------------------
# Analytics events
# ---------------------------------------------------------------------------

def log_event(event_type, subject_id=None, visitor_id=None, metadata=None):
    """
    Append an analytics event.

    event_type: site_evaluated, evaluation_error, sites_exported,
                deal_created, deal_status_changed, deal_deleted,
                import_started
    """
    with _db() as conn:
        conn.execute(
            """INSERT INTO events (event_type, subject_id, visitor_id, metadata, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (event_type, subject_id, visitor_id,
             json.dumps(metadata) if metadata else None, _now()),
        )


# ---------------------------------------------------------------------------
# Evaluation job queue (batch import)
# ---------------------------------------------------------------------------

def create_job(address, batch_id=None, visitor_id=None, request_id=None):
    """Queue one address for evaluation. Returns job_id."""
    job_id = generate_id()
    with _db() as conn:
        conn.execute(
            """INSERT INTO evaluation_jobs
               (job_id, batch_id, address, visitor_id, request_id, status, created_at)
               VALUES (?, ?, ?, ?, ?, 'queued', ?)""",
            (job_id, batch_id, address, visitor_id, request_id, _now()),
        )
    return job_id


def get_job(job_id):
    with _db() as conn:
        row = conn.execute(
            "SELECT * FROM evaluation_jobs WHERE job_id = ?", (job_id,)
        ).fetchone()
    return dict(row) if row else None


def get_batch_jobs(batch_id):
    """Jobs of one import, in the order they were queued."""
    with _db() as conn:
        rows = conn.execute(
            "SELECT * FROM evaluation_jobs WHERE batch_id = ? ORDER BY created_at, rowid",
            (batch_id,),
        ).fetchall()
    return [dict(r) for r in rows]


def claim_next_job():
    """
    Move the oldest queued job to 'running' and return it. None when the
    queue is empty or another worker claimed the same job first.
    """
    with _db() as conn:
        row = conn.execute(
            """SELECT job_id FROM evaluation_jobs WHERE status = 'queued'
               ORDER BY created_at, rowid LIMIT 1"""
        ).fetchone()
        if not row:
            return None
        claimed = conn.execute(
            """UPDATE evaluation_jobs SET status = 'running', started_at = ?
               WHERE job_id = ? AND status = 'queued'""",
            (_now(), row["job_id"]),
        ).rowcount
        if not claimed:
            return None
        job = conn.execute(
            "SELECT * FROM evaluation_jobs WHERE job_id = ?", (row["job_id"],)
        ).fetchone()
    return dict(job)


def update_job_stage(job_id, current_stage):
    """Progress marker for a running job; ignored once the job has finished."""
    with _db() as conn:
        conn.execute(
            "UPDATE evaluation_jobs SET current_stage = ? WHERE job_id = ? AND status = 'running'",
            (current_stage, job_id),
        )


def _finish_job(job_id, status, result_site_id=None, error=None):
    with _db() as conn:
        conn.execute(
            """UPDATE evaluation_jobs
               SET status = ?, result_site_id = ?, error = ?,
                   completed_at = ?, current_stage = NULL
               WHERE job_id = ?""",
            (status, result_site_id, error, _now(), job_id),
        )


def complete_job(job_id, result_site_id):
    _finish_job(job_id, "done", result_site_id=result_site_id)


def fail_job(job_id, error_message):
    _finish_job(job_id, "failed",
                error=error_message[:MAX_JOB_ERROR_LENGTH] if error_message else None)


def requeue_stale_running_jobs(max_age_seconds=300):
    """Put jobs left 'running' by a dead worker back in the queue. Returns count."""
    cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)).isoformat()
    with _db() as conn:
        return conn.execute(
            """UPDATE evaluation_jobs
               SET status = 'queued', started_at = NULL, completed_at = NULL,
                   current_stage = NULL, error = NULL
               WHERE status = 'running' AND started_at IS NOT NULL AND started_at <= ?""",
            (cutoff,),
        ).rowcount


# ---------------------------------------------------------------------------
# Census lookup cache
# ---------------------------------------------------------------------------

def _expired(created_at: str) -> bool:
    try:
        created = datetime.fromisoformat(created_at)
    except (ValueError, TypeError):
        return False
    if created.tzinfo is None:
        created = created.replace(tzinfo=timezone.utc)
    return datetime.now(timezone.utc) - created > timedelta(days=CENSUS_CACHE_TTL_DAYS)


def get_census_cache(cache_key: str) -> Optional[str]:
    """Cached JSON string, or None when absent or older than CENSUS_CACHE_TTL_DAYS.

    Cache errors are logged and treated as a miss.
    """
    try:
        with _db() as conn:
            row = conn.execute(
                "SELECT response_json, created_at FROM lookup_cache WHERE cache_key = ?",
                (cache_key,),
            ).fetchone()
    except sqlite3.Error:
        logger.warning("Census cache lookup failed for %s", cache_key, exc_info=True)
        return None
    if not row or _expired(row["created_at"]):
        return None
    return row["response_json"]


def set_census_cache(cache_key: str, response_json: str) -> None:
    try:
        with _db() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO lookup_cache (cache_key, response_json, created_at)
                   VALUES (?, ?, ?)""",
                (cache_key, response_json, _now()),
            )
    except sqlite3.Error:
        logger.warning("Census cache write failed for %s", cache_key, exc_info=True)
