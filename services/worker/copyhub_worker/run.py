import os
import sys
import logging
import redis
from rq import Worker, Queue

from copyhub import settings
from copyhub.log import setup_logging
from .jobs import schedule_reconcile

logger = logging.getLogger("copyhub.worker")


def main():
    setup_logging(settings.LOG_LEVEL)
    redis_url = os.getenv("REDIS_URL", "")
    if not redis_url:
        logger.critical("REDIS_URL is required but not set.")
        sys.exit(1)

    conn = redis.from_url(redis_url)
    q = Queue(settings.QUEUE_NAME, connection=conn)
    schedule_reconcile(q)
    w = Worker([q], connection=conn)
    logger.info("Worker started, listening on queue '%s'...", settings.QUEUE_NAME)
    w.work(with_scheduler=True)


if __name__ == "__main__":
    main()
