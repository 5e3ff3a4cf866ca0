"""RQ worker entrypoint for cleanup jobs.

This module connects to a Redis instance using connection details from
environment variables and listens on the cleanup queue. Jobs are submitted
by the API via ``POST /api/upload/cleanup/jobs`` and run
``portfolio_media.jobs.run_cleanup`` in this worker process.
"""

from __future__ import annotations

from redis import Redis
from rq import Queue, Worker

from portfolio_media.config import Settings, configure_logging


def run_worker() -> None:
    """Start an RQ worker listening on the configured cleanup queue."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    conn = Redis(host=settings.redis_host, port=settings.redis_port, db=settings.redis_db)
    queue = Queue(settings.rq_queue, connection=conn)
    Worker([queue], connection=conn).work(with_scheduler=True)


if __name__ == "__main__":
    run_worker()
