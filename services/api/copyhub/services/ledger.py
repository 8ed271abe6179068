"""
Trade ledger: records the order events every EA reports and hands master
events over to signal detection.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .. import correlation, settings, queue as job_queue
from ..errors import ValidationFailure
from ..models import Trade, TradingAccount, Command, CopyLink, AccountRole, SourceType, SignalEvent, CommandType, utcnow
from ..schemas import OrderEventIn, OpenTradeIn
from .fanout import normalize_price

logger = logging.getLogger(__name__)

# EA event -> signal event for master accounts
SIGNAL_EVENTS = {
    "ORDER_OPENED": SignalEvent.OPEN,
    "ORDER_CLOSED": SignalEvent.CLOSE,
    "ORDER_MODIFIED": SignalEvent.MODIFY,
}

_KEY = ("account_id", "ticket")
_INSERT_ONLY = ("id", "account_id", "ticket", "open_time")


def _insert_for(db: Session):
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


def _upsert_trade(db: Session, values: dict) -> Trade:
    """Insert or update the (account_id, ticket) row in one statement."""
    insert = _insert_for(db)
    stmt = insert(Trade).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(_KEY),
        set_={k: stmt.excluded[k] for k in values if k not in _INSERT_ONLY},
    )
    db.execute(stmt)
    return db.execute(
        select(Trade).where(Trade.account_id == values["account_id"], Trade.ticket == values["ticket"])
        .execution_options(populate_existing=True)
    ).scalars().one()


def _get_trade(db: Session, account_id, ticket: int) -> Optional[Trade]:
    return db.execute(
        select(Trade).where(Trade.account_id == account_id, Trade.ticket == ticket)
    ).scalars().first()


def resolve_master(db: Session, account: TradingAccount, comment: Optional[str]) -> tuple:
    """Best-effort (master_account_id, master_ticket) for a slave-side order.

    The comment token names the master ticket and, for canonical and
    ``Master #login`` comments, the master login. The command that carried
    the same master ticket to this account is the most reliable source; the
    login is only matched against masters this account copies, since login
    ids are unique per broker server, not globally.
    """
    token = correlation.parse(comment)
    if not token:
        return None, None

    master_id = db.execute(
        select(Command.master_account_id).where(
            Command.target_account_id == account.id,
            Command.master_ticket == token.master_ticket,
            Command.command_type.in_((CommandType.BUY, CommandType.SELL)),
            Command.master_account_id.is_not(None),
        )
    ).scalars().first()
    if master_id:
        return master_id, token.master_ticket

    if token.master_login:
        master_id = db.execute(
            select(TradingAccount.id)
            .join(CopyLink, CopyLink.master_account_id == TradingAccount.id)
            .where(
                CopyLink.slave_account_id == account.id,
                TradingAccount.login_id == token.master_login,
                TradingAccount.role == AccountRole.MASTER,
            )
        ).scalars().first()
        if master_id:
            return master_id, token.master_ticket

    logger.debug("No master found for comment %r on account %s", comment, account.id)
    return None, None


def _opened(db: Session, account: TradingAccount, event: OrderEventIn, now: datetime) -> Trade:
    if not event.symbol or not event.order_type or not event.volume or event.volume <= 0:
        raise ValidationFailure("ORDER_OPENED requires symbol, orderType and a positive volume")

    values = {
        "account_id": account.id,
        "ticket": event.ticket,
        "symbol": event.symbol,
        "order_type": event.order_type.upper(),
        "volume": event.volume,
        "open_price": event.open_price,
        "sl": event.sl,
        "tp": event.tp,
        "status": "open",
        "comment": event.comment,
        "open_time": now,
        "updated_at": now,
    }
    if account.role == AccountRole.MASTER:
        values.update(source_type=SourceType.MANUAL, master_account_id=account.id, master_ticket=event.ticket)
    else:
        master_id, master_ticket = resolve_master(db, account, event.comment)
        values.update(
            source_type=SourceType.MASTER_COPY if master_id else SourceType.MANUAL,
            master_account_id=master_id,
            master_ticket=master_ticket,
        )
    return _upsert_trade(db, values)


def _closed(db: Session, account: TradingAccount, event: OrderEventIn, now: datetime) -> Optional[Trade]:
    closing = {
        "status": "closed",
        "close_price": event.close_price,
        "close_time": now,
        "profit": event.profit or 0.0,
        "swap": event.swap or 0.0,
        "commission": event.commission or 0.0,
        "updated_at": now,
    }
    trade = _get_trade(db, account.id, event.ticket)
    if trade:
        if trade.status == "closed":
            # re-delivered close: the first one fixed the close time
            closing.pop("close_time")
        # closes inferred from a heartbeat carry no result figures
        for k in ("close_price", "profit", "swap", "commission"):
            if getattr(event, k) is None:
                closing.pop(k)
        for k, v in closing.items():
            setattr(trade, k, v)
        return trade

    # close for an order we never saw opening: only recordable with full details
    if not event.symbol or not event.order_type or not event.volume:
        logger.warning("ORDER_CLOSED for unknown ticket %s on account %s without order details, ignored",
                       event.ticket, account.id)
        return None
    values = dict(closing, account_id=account.id, ticket=event.ticket, symbol=event.symbol,
                  order_type=event.order_type.upper(), volume=event.volume, open_price=event.open_price,
                  sl=event.sl, tp=event.tp, comment=event.comment)
    if account.role == AccountRole.MASTER:
        values.update(master_account_id=account.id, master_ticket=event.ticket)
    else:
        master_id, master_ticket = resolve_master(db, account, event.comment)
        if master_id:
            values.update(source_type=SourceType.MASTER_COPY, master_account_id=master_id,
                          master_ticket=master_ticket)
    return _upsert_trade(db, values)


def _modified(db: Session, account: TradingAccount, event: OrderEventIn, now: datetime) -> tuple:
    trade = _get_trade(db, account.id, event.ticket)
    if not trade:
        logger.warning("ORDER_MODIFIED for unknown ticket %s on account %s, ignored", event.ticket, account.id)
        return None, False
    changed = False
    if event.sl is not None and normalize_price(event.sl) != normalize_price(trade.sl):
        trade.sl = event.sl
        changed = True
    if event.tp is not None and normalize_price(event.tp) != normalize_price(trade.tp):
        trade.tp = event.tp
        changed = True
    trade.updated_at = now
    return trade, changed


def report_order_event(db: Session, account: TradingAccount, event: OrderEventIn,
                       now: Optional[datetime] = None) -> Optional[Trade]:
    """Record one EA order event.

    Returns the stored trade, or None when the event carried nothing to
    record (failed orders, closes/modifications of unknown tickets). Master
    events are queued for signal detection once the trade is committed; a
    queueing failure is logged and does not fail the report.
    """
    now = now or utcnow()
    handoff = False

    if event.event_type == "ORDER_OPENED":
        trade = _opened(db, account, event, now)
        handoff = True
    elif event.event_type == "ORDER_CLOSED":
        trade = _closed(db, account, event, now)
        handoff = trade is not None
    elif event.event_type == "ORDER_MODIFIED":
        trade, handoff = _modified(db, account, event, now)
    else:
        logger.warning("Order failed on account %s, ticket %s: %s", account.id, event.ticket, event.error)
        return None

    db.commit()
    if trade is None:
        return None
    logger.info("Trade %s %s on account %s (%s)", trade.ticket, trade.status, account.id, event.event_type)

    if handoff and account.role == AccountRole.MASTER:
        try:
            job_queue.enqueue_signal_detection(account.id, trade.ticket, SIGNAL_EVENTS[event.event_type])
        except Exception:
            logger.exception("Could not queue signal detection for master %s ticket %s",
                             account.id, trade.ticket)
    return trade


def _position_event(event_type: str, position: OpenTradeIn) -> OrderEventIn:
    return OrderEventIn(event_type=event_type, ticket=position.ticket, symbol=position.symbol,
                        order_type=position.type, volume=position.volume, open_price=position.open_price,
                        sl=position.sl, tp=position.tp, comment=position.comment)


def sync_open_trades(db: Session, account: TradingAccount, positions: list[OpenTradeIn],
                     now: Optional[datetime] = None) -> dict:
    """Reconcile a master's heartbeat positions with its ledger.

    Covers order events the EA never delivered: a position the ledger has
    not seen is recorded as opened, an open ledger trade absent from the
    snapshot is closed, and an SL/TP that differs is recorded as modified.
    Each goes through ``report_order_event`` so the hand-off and duplicate
    protection are the same as for webhook events. Closes only apply to
    trades untouched for ``SNAPSHOT_CLOSE_GRACE_SECONDS``, so a heartbeat
    sent just before an ORDER_OPENED cannot close that trade.
    """
    now = now or utcnow()
    counts = {"opened": 0, "closed": 0, "modified": 0}
    seen = {p.ticket: p for p in positions if p.ticket > 0}

    known = {t.ticket: t for t in db.execute(
        select(Trade).where(Trade.account_id == account.id, Trade.ticket.in_(list(seen)))
    ).scalars().all()}
    for ticket, position in seen.items():
        trade = known.get(ticket)
        if trade is None:
            if not position.symbol or position.volume <= 0:
                logger.warning("Position %s of master %s has no symbol/volume, not recorded", ticket, account.id)
                continue
            report_order_event(db, account, _position_event("ORDER_OPENED", position), now=now)
            counts["opened"] += 1
        elif trade.status == "open" and (
                (position.sl is not None and normalize_price(position.sl) != normalize_price(trade.sl))
                or (position.tp is not None and normalize_price(position.tp) != normalize_price(trade.tp))):
            report_order_event(db, account, OrderEventIn(event_type="ORDER_MODIFIED", ticket=ticket,
                                                         sl=position.sl, tp=position.tp), now=now)
            counts["modified"] += 1

    cutoff = now - timedelta(seconds=settings.SNAPSHOT_CLOSE_GRACE_SECONDS)
    gone = db.execute(
        select(Trade.ticket).where(
            Trade.account_id == account.id,
            Trade.status == "open",
            Trade.ticket.not_in(list(seen)),
            or_(Trade.updated_at.is_(None), Trade.updated_at <= cutoff),
        )
    ).scalars().all()
    for ticket in gone:
        report_order_event(db, account, OrderEventIn(event_type="ORDER_CLOSED", ticket=ticket), now=now)
        counts["closed"] += 1

    if any(counts.values()):
        logger.info("Position sync for master %s: %s", account.id, counts)
    return counts
