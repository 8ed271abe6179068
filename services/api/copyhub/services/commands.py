"""
Command queue and delivery.

Commands wait in ``pending`` until the owning EA reports back. Polling does not
consume them, so delivery is at-least-once: an EA that polls twice before its
status callback lands sees the same command twice and must guard against
re-placing the order itself.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .. import correlation, settings
from ..errors import ValidationFailure, NotFound, OwnershipViolation, InvalidState
from ..models import Command, CommandStatus, CommandType, MasterTradeSignal, SourceType, utcnow, parse_id

logger = logging.getLogger(__name__)

RESOLVED_STATUSES = (CommandStatus.EXECUTED, CommandStatus.FAILED)


def clamp_priority(priority: int) -> int:
    return min(10, max(1, int(priority)))


def enqueue(db: Session, target_account_id, command: Command, now: Optional[datetime] = None,
            commit: bool = True) -> Command:
    now = now or utcnow()
    command.target_account_id = parse_id(target_account_id)
    command.status = CommandStatus.PENDING
    command.priority = clamp_priority(command.priority or 5)
    command.created_at = command.created_at or now
    if command.expires_at is None and settings.COMMAND_TTL_HOURS > 0:
        command.expires_at = now + timedelta(hours=settings.COMMAND_TTL_HOURS)
    db.add(command)
    if commit:
        db.commit()
        db.refresh(command)
    logger.info("Queued %s command for account %s (master ticket %s)",
                command.command_type, target_account_id, command.master_ticket)
    return command


def create_manual(db: Session, target_account_id, fields: dict, now: Optional[datetime] = None) -> Command:
    """Queue a command typed in by the account owner from the web UI."""
    kind = fields.get("command_type")
    if kind not in CommandType.ALL:
        raise ValidationFailure(f"Unknown command type: {kind}")
    if kind in (CommandType.BUY, CommandType.SELL):
        if not fields.get("symbol") or not fields.get("volume"):
            raise ValidationFailure(f"{kind} requires symbol and volume")
        if fields.get("order_type", "MARKET") != "MARKET" and not fields.get("price"):
            raise ValidationFailure("LIMIT and STOP orders require a price")
    elif kind == CommandType.CLOSE and not fields.get("ticket"):
        raise ValidationFailure("CLOSE requires a ticket")
    elif kind == CommandType.MODIFY and not fields.get("modify_ticket"):
        raise ValidationFailure("MODIFY requires modify_ticket")

    command = Command(source_type=SourceType.MANUAL, priority=5, **fields)
    return enqueue(db, target_account_id, command, now=now)


def repair_master_ticket(command: Command) -> bool:
    """Fill a missing master ticket from the comment token. True if changed."""
    if command.master_ticket and command.master_ticket > 0:
        return False
    ticket = correlation.extract_master_ticket(command.comment)
    if ticket <= 0:
        return False
    logger.warning("Command %s (%s) had master ticket %r, recovered %d from comment",
                   command.id, command.command_type, command.master_ticket, ticket)
    command.master_ticket = ticket
    return True


def poll(db: Session, account_id, limit: Optional[int] = None,
         now: Optional[datetime] = None) -> list[Command]:
    now = now or utcnow()
    limit = settings.POLL_DEFAULT_LIMIT if not limit or limit <= 0 else min(limit, settings.POLL_MAX_LIMIT)

    items = db.execute(
        select(Command)
        .where(
            Command.target_account_id == parse_id(account_id),
            Command.status == CommandStatus.PENDING,
            or_(Command.expires_at.is_(None), Command.expires_at > now),
        )
        .order_by(Command.priority.desc(), Command.created_at.asc())
        .limit(limit)
    ).scalars().all()

    repaired = [c for c in items if repair_master_ticket(c)]
    if repaired:
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Could not persist repaired master tickets for account %s", account_id)

    if items:
        logger.info("Dispatching %d command(s) to account %s", len(items), account_id)
    return items


def update_status(db: Session, command_id, caller_account_id, status: str,
                  execution_result: Optional[dict] = None,
                  now: Optional[datetime] = None) -> tuple[Command, bool]:
    """Resolve a pending command on behalf of its EA.

    Returns ``(command, applied)``. A callback for a command that is already
    resolved is a no-op (``applied`` is False) so repeated deliveries cannot
    overwrite the first outcome.
    """
    if status not in RESOLVED_STATUSES:
        raise ValidationFailure('Invalid status. Must be "executed" or "failed"')

    pk = parse_id(command_id)
    command = db.get(Command, pk) if pk else None
    if not command:
        raise NotFound("Command not found")

    caller = parse_id(caller_account_id)
    if command.target_account_id != caller:
        logger.warning("Account %s tried to update command %s owned by %s",
                       caller_account_id, command.id, command.target_account_id)
        raise OwnershipViolation("Command does not belong to this account")

    if command.status != CommandStatus.PENDING:
        logger.debug("Command %s already %s, ignoring %s", command.id, command.status, status)
        return command, False

    now = now or utcnow()
    res = db.execute(
        update(Command)
        .where(Command.id == pk, Command.target_account_id == caller, Command.status == CommandStatus.PENDING)
        .values(status=status, executed_at=now, execution_result=execution_result)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        # lost the race against another callback
        db.rollback()
        db.refresh(command)
        return command, False

    if status == CommandStatus.EXECUTED and command.signal_id:
        db.execute(
            update(MasterTradeSignal)
            .where(MasterTradeSignal.id == command.signal_id)
            .values(commands_executed=MasterTradeSignal.commands_executed + 1)
            .execution_options(synchronize_session=False)
        )
    db.commit()
    db.refresh(command)
    logger.info("Command %s status updated to %s", command.id, status)
    return command, True


def cancel(db: Session, command_id) -> Command:
    pk = parse_id(command_id)
    command = db.get(Command, pk) if pk else None
    if not command:
        raise NotFound("Command not found")
    if command.status != CommandStatus.PENDING:
        raise InvalidState("Only pending commands can be cancelled")

    res = db.execute(
        update(Command)
        .where(Command.id == pk, Command.status == CommandStatus.PENDING)
        .values(status=CommandStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        raise InvalidState("Only pending commands can be cancelled")
    db.commit()
    db.refresh(command)
    logger.info("Command %s cancelled", command.id)
    return command


def expire_stale(db: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    res = db.execute(
        update(Command)
        .where(Command.status == CommandStatus.PENDING, Command.expires_at.is_not(None), Command.expires_at <= now)
        .values(status=CommandStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if res.rowcount:
        logger.info("Expired %d stale pending command(s)", res.rowcount)
    return res.rowcount
