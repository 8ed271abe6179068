import logging
from datetime import timedelta

from rq import Queue, get_current_job
from sqlalchemy import select

from copyhub import settings
from copyhub.db import SessionLocal
from copyhub.models import MasterTradeSignal, SignalStatus, utcnow
from copyhub.services import accounts, commands, fanout, signals

logger = logging.getLogger(__name__)

RECONCILE_JOB = "copyhub_worker.jobs.reconcile"


def detect_and_queue(master_account_id: str, ticket: int, event_type: str):
    db = SessionLocal()
    try:
        signal = signals.detect_and_queue(db, master_account_id, ticket, event_type)
        if not signal:
            return {"ok": True, "signal_id": None}
        return {"ok": signal.status == SignalStatus.PROCESSED, "signal_id": str(signal.id),
                "commands_generated": signal.commands_generated}
    finally:
        db.close()


def process_signal(signal_id: str):
    db = SessionLocal()
    try:
        signal = fanout.process_signal(db, signal_id)
        return {"ok": signal.status == SignalStatus.PROCESSED, "commands_generated": signal.commands_generated}
    finally:
        db.close()


def reprocess_stale_signals(db, now=None) -> dict:
    """Retry signals stuck in pending; give up after SIGNAL_MAX_ATTEMPTS."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.SIGNAL_STALE_SECONDS)
    stale = db.execute(
        select(MasterTradeSignal)
        .where(MasterTradeSignal.status == SignalStatus.PENDING, MasterTradeSignal.created_at < cutoff)
        .order_by(MasterTradeSignal.created_at.asc())
    ).scalars().all()

    retried = failed = 0
    for signal in stale:
        if (signal.attempts or 0) >= settings.SIGNAL_MAX_ATTEMPTS:
            signal.status = SignalStatus.FAILED
            signal.error = signal.error or f"Still pending after {signal.attempts} attempt(s)"
            signal.processed_at = now
            db.commit()
            logger.warning("Signal %s failed: pending after %d attempts", signal.id, signal.attempts)
            failed += 1
            continue
        try:
            fanout.process_signal(db, signal.id, now=now)
            retried += 1
        except Exception:
            # process_signal has already marked it failed and logged
            failed += 1
    return {"retried": retried, "failed": failed}


def reconcile():
    db = SessionLocal()
    try:
        now = utcnow()
        result = reprocess_stale_signals(db, now)
        result["expired_commands"] = commands.expire_stale(db, now)
        result["offline_accounts"] = accounts.mark_stale_offline(db, now)
        logger.info("Reconcile: %s", result)
    finally:
        db.close()
        schedule_reconcile()
    return result


def schedule_reconcile(queue=None):
    """Queue the next reconcile run. Only does anything inside a worker or with an explicit queue."""
    if queue is None:
        job = get_current_job()
        if job is None:
            return None
        queue = Queue(job.origin, connection=job.connection)
    return queue.enqueue_in(timedelta(seconds=settings.RECONCILE_INTERVAL_SECONDS), RECONCILE_JOB)
