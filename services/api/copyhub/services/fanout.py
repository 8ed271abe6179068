"""
Fan-out: one master signal becomes one pending command per eligible slave.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, aliased

from .. import correlation
from ..errors import NotFound
from ..models import (CopyLink, TradingAccount, MasterTradeSignal, Command, Trade, AccountStatus, SignalStatus,
                      SignalEvent, CommandType, CommandStatus, SourceType, utcnow, parse_id)
from ..rules import risk_mode_for, slave_volume, cap_volume, should_copy_symbol, is_pending_order, MIN_LOT
from . import commands

logger = logging.getLogger(__name__)

OPEN_PRIORITY = 5
CLOSE_PRIORITY = 8
MODIFY_PRIORITY = 9


def normalize_price(value: Optional[float]) -> float:
    # 0 means "no SL/TP" on the EA side
    if value is None or value != value or value <= 0:
        return 0.0
    return round(value, 5)


def eligible_links(db: Session, master_account_id) -> list[CopyLink]:
    master = aliased(TradingAccount)
    slave = aliased(TradingAccount)
    return db.execute(
        select(CopyLink)
        .join(master, CopyLink.master_account_id == master.id)
        .join(slave, CopyLink.slave_account_id == slave.id)
        .where(
            CopyLink.master_account_id == master_account_id,
            CopyLink.paused.is_(False),
            master.status == AccountStatus.ACTIVE,
            slave.status == AccountStatus.ACTIVE,
        )
        .order_by(CopyLink.priority.asc(), CopyLink.created_at.asc())
    ).scalars().all()


def _slave_trade_ticket(db: Session, slave_id, master_id, master_ticket: int) -> Optional[int]:
    return db.execute(
        select(Trade.ticket).where(
            Trade.account_id == slave_id,
            Trade.master_account_id == master_id,
            Trade.master_ticket == master_ticket,
            Trade.status == "open",
        )
    ).scalars().first()


def _has_command(db: Session, slave_id, master_id, master_ticket: int, types: tuple, statuses=None) -> bool:
    q = select(Command.id).where(
        Command.target_account_id == slave_id,
        Command.master_account_id == master_id,
        Command.master_ticket == master_ticket,
        Command.command_type.in_(types),
    )
    if statuses:
        q = q.where(Command.status.in_(statuses))
    return bool(db.execute(select(q.exists())).scalar())


def _magic_number(link: CopyLink) -> int:
    return link.id.int % 1000000


def _master_login(master: TradingAccount) -> Optional[str]:
    login = (master.login_id or "").strip()
    return login if login.isdigit() else None


def _open_command(db: Session, signal: MasterTradeSignal, link: CopyLink,
                  master: TradingAccount, slave: TradingAccount) -> Optional[Command]:
    if is_pending_order(signal.order_type) and not link.copy_pending_orders:
        logger.info("Link %s does not copy pending orders, skipping %s", link.id, signal.order_type)
        return None

    # a slave gets at most one entry per master ticket, whatever happened to the first one
    if _has_command(db, slave.id, master.id, signal.master_ticket, (CommandType.BUY, CommandType.SELL)):
        logger.info("Slave %s already has an entry for master ticket %s", slave.id, signal.master_ticket)
        return None
    if _slave_trade_ticket(db, slave.id, master.id, signal.master_ticket):
        logger.info("Slave %s already holds a copy of master ticket %s", slave.id, signal.master_ticket)
        return None

    volume = slave_volume(risk_mode_for(link), signal.volume, master.balance or 0.0, slave.balance or 0.0)
    volume = cap_volume(volume, slave)
    if volume < MIN_LOT:
        logger.warning("Invalid lot size %s for slave %s (master %s lots), skipping", volume, slave.id, signal.volume)
        return None

    order_type = (signal.order_type or "BUY").upper()
    if order_type.endswith("_LIMIT"):
        kind = "LIMIT"
    elif order_type.endswith("_STOP"):
        kind = "STOP"
    else:
        kind = "MARKET"

    return Command(
        command_type=CommandType.BUY if order_type.startswith("BUY") else CommandType.SELL,
        symbol=signal.symbol,
        volume=volume,
        order_type=kind,
        price=signal.price if kind != "MARKET" else None,
        sl=normalize_price(signal.sl),
        tp=normalize_price(signal.tp),
        comment=correlation.encode(signal.master_ticket, SignalEvent.OPEN, _master_login(master)),
        magic_number=_magic_number(link),
        priority=OPEN_PRIORITY,
    )


def _close_command(db: Session, signal: MasterTradeSignal, link: CopyLink,
                   master: TradingAccount, slave: TradingAccount) -> Optional[Command]:
    if _has_command(db, slave.id, master.id, signal.master_ticket, (CommandType.CLOSE,),
                    (CommandStatus.PENDING, CommandStatus.EXECUTED)):
        logger.info("Slave %s already has a CLOSE for master ticket %s", slave.id, signal.master_ticket)
        return None
    return Command(
        command_type=CommandType.CLOSE,
        symbol=signal.symbol,
        ticket=_slave_trade_ticket(db, slave.id, master.id, signal.master_ticket),
        comment=correlation.encode(signal.master_ticket, SignalEvent.CLOSE, _master_login(master)),
        magic_number=_magic_number(link),
        priority=CLOSE_PRIORITY,
    )


def _modify_command(db: Session, signal: MasterTradeSignal, link: CopyLink,
                    master: TradingAccount, slave: TradingAccount) -> Optional[Command]:
    if not link.copy_modifications:
        return None
    # both levels always travel together so a removed SL/TP arrives as 0
    return Command(
        command_type=CommandType.MODIFY,
        symbol=signal.symbol,
        modify_ticket=_slave_trade_ticket(db, slave.id, master.id, signal.master_ticket),
        new_sl=normalize_price(signal.sl),
        new_tp=normalize_price(signal.tp),
        comment=correlation.encode(signal.master_ticket, SignalEvent.MODIFY, _master_login(master)),
        magic_number=_magic_number(link),
        priority=MODIFY_PRIORITY,
    )


BUILDERS = {
    SignalEvent.OPEN: _open_command,
    SignalEvent.CLOSE: _close_command,
    SignalEvent.MODIFY: _modify_command,
}


def process_signal(db: Session, signal_id, now: Optional[datetime] = None) -> MasterTradeSignal:
    """Expand a pending signal into per-slave commands.

    Commands and the signal's new status are committed together. If building
    them raises, nothing is queued, the signal is marked failed with the error
    kept on it, and the exception propagates so the job runner can retry.
    """
    now = now or utcnow()
    pk = parse_id(signal_id)
    signal = db.get(MasterTradeSignal, pk) if pk else None
    if not signal:
        raise NotFound(f"Master trade signal {signal_id} not found")
    if signal.status != SignalStatus.PENDING:
        logger.debug("Signal %s already %s", signal.id, signal.status)
        return signal

    signal.attempts = (signal.attempts or 0) + 1
    db.commit()

    try:
        master = db.get(TradingAccount, signal.master_account_id)
        if not master:
            raise NotFound(f"Master account {signal.master_account_id} not found")

        build = BUILDERS[signal.event_type]
        generated = 0
        for link in eligible_links(db, master.id):
            slave = link.slave
            ok, reason = should_copy_symbol(signal.symbol, link, slave)
            if not ok:
                logger.info("Skipping slave %s: %s", slave.id, reason)
                continue
            command = build(db, signal, link, master, slave)
            if command is None:
                continue
            command.master_ticket = signal.master_ticket
            command.master_account_id = master.id
            command.signal_id = signal.id
            command.source_type = SourceType.MASTER_COPY
            commands.enqueue(db, slave.id, command, now=now, commit=False)
            db.flush()
            generated += 1

        signal.commands_generated = generated
        signal.status = SignalStatus.PROCESSED
        signal.processed_at = now
        signal.error = None
        db.commit()
    except Exception as e:
        db.rollback()
        signal = db.get(MasterTradeSignal, pk)
        signal.status = SignalStatus.FAILED
        signal.error = f"{type(e).__name__}: {e}"
        signal.processed_at = now
        db.commit()
        logger.exception("Fan-out failed for signal %s", pk)
        raise

    logger.info("Processed signal %s (%s ticket %s): generated %d command(s)",
                signal.id, signal.event_type, signal.master_ticket, generated)
    return signal
