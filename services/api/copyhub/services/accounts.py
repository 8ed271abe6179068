"""
Account registry: EA token authentication, heartbeats and liveness.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, update, or_, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import settings
from ..errors import AuthenticationFailure, AccountDisabled, CopyHubError, NotFound
from ..log import token_prefix
from ..models import TradingAccount, User, AccountRole, AccountStatus, utcnow, parse_id
from ..schemas import HeartbeatIn
from . import commands, ledger

logger = logging.getLogger(__name__)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back without tzinfo; everything is stored in UTC
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def generate_token() -> str:
    return str(uuid.uuid4())


def authenticate(db: Session, token: Optional[str]) -> TradingAccount:
    if not token or not token.strip():
        raise AuthenticationFailure("EA token required")
    token = token.strip()

    account = db.execute(select(TradingAccount).where(TradingAccount.ea_token == token)).scalars().first()
    if not account:
        logger.warning("Invalid EA token attempted: %s", token_prefix(token))
        raise AuthenticationFailure("Invalid EA token")

    if account.status in (AccountStatus.SUSPENDED, AccountStatus.INACTIVE):
        raise AccountDisabled("Account is suspended or inactive")

    user = db.get(User, account.user_id)
    if not user or not user.is_active:
        raise AccountDisabled("User account is inactive")
    return account


def effective_status(account: TradingAccount, now: Optional[datetime] = None) -> str:
    """Stored status, downgraded to offline when the heartbeat is stale."""
    if account.status != AccountStatus.ACTIVE:
        return account.status
    now = now or utcnow()
    last = as_utc(account.last_heartbeat)
    if last is None or now - last > timedelta(seconds=settings.HEARTBEAT_TIMEOUT_SECONDS):
        return AccountStatus.OFFLINE
    return AccountStatus.ACTIVE


def record_liveness(db: Session, account: TradingAccount, hb: Optional[HeartbeatIn] = None,
                    now: Optional[datetime] = None) -> str:
    """Refresh last_heartbeat (and the metrics, when a valid snapshot is given).

    Never raises for storage problems: the EA treats any error as a lost
    connection and stops trading, which is worse than a missed sample.
    """
    now = now or utcnow()
    account_id = account.id
    try:
        if hb is not None:
            account.balance = hb.balance
            account.equity = hb.equity
            account.margin = hb.margin
            account.free_margin = hb.free_margin
            account.margin_level = hb.margin_level
            account.open_trades = len(hb.open_trades)
            if hb.ea_version:
                account.ea_version = hb.ea_version
        account.last_heartbeat = now
        if account.status == AccountStatus.OFFLINE:
            account.status = AccountStatus.ACTIVE
        status = account.status
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Heartbeat write failed for account %s", account_id)
        return AccountStatus.ACTIVE
    return status


def record_heartbeat(db: Session, account: TradingAccount, hb: HeartbeatIn,
                     now: Optional[datetime] = None) -> str:
    """Store the metrics snapshot, apply command acks and, for masters, sync
    the open positions against the ledger."""
    now = now or utcnow()
    account_id = account.id
    status = record_liveness(db, account, hb, now=now)

    for ack in hb.executed_commands:
        ack_status = "executed" if ack.status == "success" else "failed"
        result = {"success": ack.status == "success", "orderTicket": ack.order_ticket,
                  "error": ack.error, "errorCode": ack.error_code}
        try:
            commands.update_status(db, ack.command_id, account_id, ack_status, result, now=now)
        except CopyHubError as e:
            logger.warning("Ignoring heartbeat ack for command %s from account %s: %s",
                           ack.command_id, account_id, e.message)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Heartbeat ack write failed for command %s", ack.command_id)

    if account.role == AccountRole.MASTER:
        if not hb.snapshot_complete:
            logger.warning("Skipping position sync for master %s: incomplete openTrades", account_id)
        else:
            try:
                ledger.sync_open_trades(db, account, hb.open_trades, now=now)
            except Exception:
                db.rollback()
                logger.exception("Position sync failed for master %s", account_id)

    return status


def mark_offline(db: Session, account_id) -> bool:
    res = db.execute(
        update(TradingAccount)
        .where(TradingAccount.id == parse_id(account_id), TradingAccount.status == AccountStatus.ACTIVE)
        .values(status=AccountStatus.OFFLINE)
    )
    db.commit()
    return res.rowcount == 1


def mark_stale_offline(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.HEARTBEAT_TIMEOUT_SECONDS)
    res = db.execute(
        update(TradingAccount)
        .where(
            TradingAccount.status == AccountStatus.ACTIVE,
            or_(TradingAccount.last_heartbeat < cutoff,
                and_(TradingAccount.last_heartbeat.is_(None), TradingAccount.created_at < cutoff)),
        )
        .values(status=AccountStatus.OFFLINE)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if res.rowcount:
        logger.info("Marked %d account(s) offline (no heartbeat for %ss)",
                    res.rowcount, settings.HEARTBEAT_TIMEOUT_SECONDS)
    return res.rowcount


def register_account(db: Session, user: User, name: str, login_id: str, role: str,
                     broker: Optional[str] = None, server: Optional[str] = None,
                     rules_override: Optional[dict] = None) -> TradingAccount:
    account = TradingAccount(
        user_id=user.id, name=name, login_id=login_id, role=role, broker=broker, server=server,
        ea_token=generate_token(), status=AccountStatus.ACTIVE, rules_override=rules_override or {},
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info("Registered %s account %s (login %s)", role, account.id, login_id)
    return account


def regenerate_token(db: Session, account_id) -> str:
    pk = parse_id(account_id)
    account = db.get(TradingAccount, pk) if pk else None
    if not account:
        raise NotFound("Account not found")
    account.ea_token = generate_token()
    db.commit()
    logger.info("EA token regenerated for account %s", account.id)
    return account.ea_token
