"""
Gunicorn config. Starts the import worker thread and the health monitor
in each worker process (post_fork). With --workers 2, two processes each
run one worker thread polling the SQLite job queue.
"""

import logging
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
threads = int(os.environ.get("GUNICORN_THREADS", "4"))
# An evaluation makes several sequential upstream calls with 10 s timeouts.
timeout = 120


def post_fork(server, worker):
    """Start the import worker and health monitor in this gunicorn worker process."""
    logger = logging.getLogger(__name__)
    try:
        from worker import start_worker
        start_worker()
    except Exception as e:
        logger.exception("Failed to start import worker: %s", e)
    try:
        from health_monitor import start_monitor
        start_monitor()
    except Exception as e:
        logger.exception("Failed to start health monitor: %s", e)


def worker_exit(server, worker):
    from worker import stop_worker
    from health_monitor import stop_monitor
    stop_worker()
    stop_monitor()
