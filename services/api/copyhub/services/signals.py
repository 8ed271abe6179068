import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..errors import ValidationFailure
from ..models import MasterTradeSignal, Trade, SignalEvent, SignalStatus, utcnow, parse_id
from . import fanout

logger = logging.getLogger(__name__)


def _existing(db: Session, master_account_id, ticket: int, event_type: str, statuses: tuple):
    return db.execute(
        select(MasterTradeSignal).where(
            MasterTradeSignal.master_account_id == master_account_id,
            MasterTradeSignal.master_ticket == ticket,
            MasterTradeSignal.event_type == event_type,
            MasterTradeSignal.status.in_(statuses),
        )
    ).scalars().first()


def detect_and_queue(db: Session, master_account_id, ticket: int, event_type: str,
                     now: Optional[datetime] = None) -> Optional[MasterTradeSignal]:
    """Turn a recorded master trade event into a pending signal and fan it out.

    Returns the new signal, or None when the event was a duplicate or the
    trade is unknown. A duplicate is a pending signal for the same master,
    ticket and event type; an OPEN that was already processed also counts,
    since re-entering a position must never happen twice.
    """
    if event_type not in SignalEvent.ALL:
        raise ValidationFailure(f"Unknown signal event type: {event_type}")
    master_id = parse_id(master_account_id)
    now = now or utcnow()

    trade = db.execute(
        select(Trade).where(Trade.account_id == master_id, Trade.ticket == ticket)
    ).scalars().first()
    if not trade:
        logger.warning("Trade not found for signal detection: ticket %s on account %s", ticket, master_id)
        return None

    guard = (SignalStatus.PENDING, SignalStatus.PROCESSED) if event_type == SignalEvent.OPEN \
        else (SignalStatus.PENDING,)
    existing = _existing(db, master_id, ticket, event_type, guard)
    if existing:
        logger.debug("Signal already exists for ticket %s, event %s (%s)", ticket, event_type, existing.status)
        return None

    signal = MasterTradeSignal(
        master_account_id=master_id,
        master_ticket=trade.ticket,
        symbol=trade.symbol,
        order_type=trade.order_type,
        volume=trade.volume,
        price=trade.close_price if event_type == SignalEvent.CLOSE else trade.open_price,
        sl=trade.sl,
        tp=trade.tp,
        event_type=event_type,
        status=SignalStatus.PENDING,
        created_at=now,
    )
    db.add(signal)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent delivery of the same event won the unique pending index
        db.rollback()
        logger.debug("Concurrent duplicate signal for ticket %s, event %s", ticket, event_type)
        return None

    logger.info("Master trade signal %s created for account %s, ticket %s, event %s",
                signal.id, master_id, ticket, event_type)
    return fanout.process_signal(db, signal.id, now=now)
