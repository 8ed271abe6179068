import logging
import os
import redis
from rq import Queue, Retry
from . import settings

logger = logging.getLogger(__name__)

DETECT_JOB = "copyhub_worker.jobs.detect_and_queue"


def get_queue() -> Queue:
    r = redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"))
    return Queue(settings.QUEUE_NAME, connection=r, default_timeout=60)


def enqueue_signal_detection(account_id, ticket: int, event_type: str):
    """Hand a master order event to the worker. Returns the RQ job."""
    q = get_queue()
    job = q.enqueue(DETECT_JOB, str(account_id), int(ticket), event_type,
                    retry=Retry(max=3, interval=[5, 30, 120]))
    logger.info("Queued signal detection job %s for account %s ticket %s (%s)",
                job.id, account_id, ticket, event_type)
    return job
