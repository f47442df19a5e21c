"""
Gunicorn config. Starts the narrative worker thread and the sweep
scheduler in each worker process (post_fork). With --workers 2, two
processes each run one worker thread polling the SQLite job queue; the
claim transaction keeps them from taking the same job.
"""

import logging
import os

bind = f"0.0.0.0:{os.environ.get('PORT', '8000')}"
workers = int(os.environ.get("WEB_CONCURRENCY", "2"))
threads = int(os.environ.get("GUNICORN_THREADS", "4"))
timeout = 120


def post_fork(server, worker):
    """Start the narrative worker and sweep scheduler in this gunicorn worker process."""
    logger = logging.getLogger(__name__)
    try:
        from app import db
        from worker import start_worker
        start_worker(db)
    except Exception as e:
        logger.exception("Failed to start narrative worker: %s", e)
        return
    try:
        from scheduler import start_scheduler
        start_scheduler(db)
    except Exception as e:
        logger.exception("Failed to start sweep scheduler: %s", e)
