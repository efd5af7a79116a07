"""
Background evaluation worker for batch site imports.

One daemon thread per gunicorn worker process pulls queued import jobs
from SQLite, evaluates each address with evaluate_site() while reporting
the current stage on the job row, then stores the site and closes the job.

An import turns a CSV or JSON list of addresses into one job per address,
all sharing a batch_id; batch_summary() reports the roll-up.
"""

import csv
import io
import json
import logging
import os
import threading
import uuid

from site_evaluator import evaluate_site
from eval_trace import TraceContext, set_trace, clear_trace
from scoring_config import HIGH_PRIORITY_SCORE
from models import (
    init_db,
    create_job,
    claim_next_job,
    update_job_stage,
    complete_job,
    fail_job,
    get_batch_jobs,
    get_sites_by_ids,
    save_site,
    log_event,
    requeue_stale_running_jobs,
)

logger = logging.getLogger(__name__)

# Seconds to sleep when the queue is empty
POLL_INTERVAL = 2.0

MAX_IMPORT_ROWS = 200

_stop_event = threading.Event()
_worker_thread = None


# =============================================================================
# IMPORT PARSING
# =============================================================================

_ADDRESS_PARTS = ("address", "city", "state", "zip")


def parse_import(content: str, fmt: str = "csv") -> list:
    """Addresses from an uploaded CSV or JSON document.

    CSV: an "address" column (plus optional city/state/zip columns, joined
    with ", "), or the first column when there is no header. JSON: a list
    of strings or of objects with an "address" key.
    """
    if fmt == "json":
        addresses = _parse_json(content)
    elif fmt == "csv":
        addresses = _parse_csv(content)
    else:
        raise ValueError(f"Unsupported import format: {fmt}")

    addresses = [a.strip() for a in addresses if a and a.strip()]
    if not addresses:
        raise ValueError("No addresses found in import")
    if len(addresses) > MAX_IMPORT_ROWS:
        raise ValueError(f"Import is limited to {MAX_IMPORT_ROWS} addresses")
    return addresses


def _parse_json(content: str) -> list:
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON: {e.msg}")
    if isinstance(data, dict):
        data = data.get("addresses", [])
    if not isinstance(data, list):
        raise ValueError("JSON import must be a list of addresses")
    out = []
    for row in data:
        if isinstance(row, str):
            out.append(row)
        elif isinstance(row, dict) and isinstance(row.get("address"), str):
            out.append(row["address"])
        else:
            raise ValueError("Each JSON entry must be a string or have an 'address'")
    return out


def _parse_csv(content: str) -> list:
    rows = list(csv.reader(io.StringIO(content)))
    if not rows:
        return []
    header = [h.strip().lower() for h in rows[0]]
    if "address" not in header:
        return [r[0] for r in rows if r]

    cols = [header.index(p) for p in _ADDRESS_PARTS if p in header]
    out = []
    for r in rows[1:]:
        parts = [r[i].strip() for i in cols if i < len(r) and r[i].strip()]
        out.append(", ".join(parts))
    return out


def create_batch(addresses, visitor_id=None, request_id=None):
    """Queue one job per address. Returns (batch_id, [job_id, ...])."""
    batch_id = uuid.uuid4().hex[:12]
    job_ids = [
        create_job(a, batch_id=batch_id, visitor_id=visitor_id, request_id=request_id)
        for a in addresses
    ]
    log_event(
        "import_started",
        subject_id=batch_id,
        visitor_id=visitor_id,
        metadata={"count": len(job_ids), "request_id": request_id},
    )
    logger.info("[%s] Import batch %s queued %d jobs", request_id, batch_id, len(job_ids))
    return batch_id, job_ids


def batch_summary(batch_id):
    """Roll-up of a batch, or None for an unknown batch_id."""
    jobs = get_batch_jobs(batch_id)
    if not jobs:
        return None

    counts = {"queued": 0, "running": 0, "done": 0, "failed": 0}
    for job in jobs:
        counts[job["status"]] = counts.get(job["status"], 0) + 1

    site_ids = [j["result_site_id"] for j in jobs if j["result_site_id"]]
    sites = get_sites_by_ids(site_ids)
    return {
        "batch_id": batch_id,
        "total": len(jobs),
        **counts,
        "complete": counts["queued"] == 0 and counts["running"] == 0,
        "qct_sites": sum(1 for s in sites if s.get("is_qct")),
        "dda_sites": sum(1 for s in sites if s.get("is_dda")),
        "high_priority_sites": sum(
            1 for s in sites if (s.get("priority_score") or 0) >= HIGH_PRIORITY_SCORE
        ),
        "site_ids": site_ids,
        "errors": [
            {"address": j["address"], "error": j["error"]}
            for j in jobs if j["status"] == "failed"
        ],
    }


# =============================================================================
# JOB EXECUTION
# =============================================================================

def _run_job(job: dict) -> None:
    """Run one job, with a Sentry scope carrying job context when enabled."""
    if os.environ.get("SENTRY_DSN"):
        import sentry_sdk
        with sentry_sdk.new_scope() as scope:
            scope.set_tag("job_id", job["job_id"])
            scope.set_tag("batch_id", job.get("batch_id") or "")
            scope.set_tag("request_id", job.get("request_id") or "")
            _run_job_impl(job)
        return
    _run_job_impl(job)


def _run_job_impl(job: dict) -> None:
    job_id = job["job_id"]
    address = job["address"]
    visitor_id = job.get("visitor_id")
    request_id = job.get("request_id")

    api_key = os.environ.get("GOOGLE_MAPS_API_KEY")
    if not api_key:
        fail_job(job_id, "GOOGLE_MAPS_API_KEY not configured")
        log_event(
            "evaluation_error",
            visitor_id=visitor_id,
            metadata={"address": address, "error": "missing_config", "job_id": job_id},
        )
        return

    trace_ctx = TraceContext(trace_id=request_id or job_id)
    set_trace(trace_ctx)

    def on_stage(stage_name: str) -> None:
        update_job_stage(job_id, stage_name)

    try:
        site = evaluate_site(
            address,
            api_key,
            mapbox_token=os.environ.get("MAPBOX_ACCESS_TOKEN"),
            on_stage=on_stage,
        )
        on_stage("saving")
        site_dict = site.to_dict()
        site_dict["_trace"] = trace_ctx.full_trace_dict()
        site_id = save_site(site_dict, visitor_id=visitor_id)
        complete_job(job_id, site_id)
        log_event(
            "site_evaluated",
            subject_id=site_id,
            visitor_id=visitor_id,
            metadata={
                "address": address,
                "batch_id": job.get("batch_id"),
                "trace_id": trace_ctx.trace_id,
            },
        )
        logger.info("[worker] Job %s completed -> site %s", job_id, site_id)
    except Exception as e:
        logger.exception("[worker] Job %s failed: %s", job_id, e)
        fail_job(job_id, str(e))
        log_event(
            "evaluation_error",
            visitor_id=visitor_id,
            metadata={
                "address": address,
                "error": str(e),
                "job_id": job_id,
                "trace_summary": trace_ctx.summary_dict(),
            },
        )
    finally:
        trace_ctx.log_summary()
        clear_trace()


def _worker_loop() -> None:
    """Claim and run jobs until stop_worker() is called."""
    logger.info("[worker] Evaluation worker thread started")
    while not _stop_event.is_set():
        job = claim_next_job()
        if job:
            logger.info("[worker] Claimed job %s: %r", job["job_id"], job["address"])
            try:
                _run_job(job)
            except Exception:
                logger.exception("[worker] Unhandled error in job %s", job["job_id"])
                fail_job(job["job_id"], "internal error")
        else:
            _stop_event.wait(timeout=POLL_INTERVAL)
    logger.info("[worker] Evaluation worker thread stopped")


def start_worker() -> None:
    """
    Requeue jobs left running by a dead process, then start the job thread.
    Called from post_fork; a second call in the same process does nothing.
    """
    global _worker_thread
    if _worker_thread is not None and _worker_thread.is_alive():
        return
    init_db()
    try:
        swept = requeue_stale_running_jobs(max_age_seconds=300)
        if swept:
            logger.warning("[worker] Re-queued %d stale running jobs", swept)
    except Exception:
        logger.exception("[worker] Failed to sweep stale running jobs")
    _stop_event.clear()
    _worker_thread = threading.Thread(target=_worker_loop, daemon=True)
    _worker_thread.start()


def stop_worker() -> None:
    """Ask the worker thread to exit after its current job."""
    _stop_event.set()
