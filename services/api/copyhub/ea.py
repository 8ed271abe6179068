"""
Endpoints called by the MT5 Expert Advisors.

Every route authenticates the X-EA-Token first. After that the EA side is
kept running whenever possible: a heartbeat or poll that errors makes the EA
assume it lost the server, so those paths answer 200 and log instead.
"""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .auth import ea_token
from .db import db_dep
from .errors import ValidationFailure
from .models import TradingAccount, Command, utcnow
from .schemas import HeartbeatIn, CommandStatusIn, OrderEventIn
from .services import accounts, commands, ledger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ea", tags=["ea"])


async def raw_json(request: Request) -> Any:
    """Request body as JSON, or None when it is missing or not JSON."""
    body = await request.body()
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError:
        return None


def ea_account(request: Request, db: Session = Depends(db_dep)) -> TradingAccount:
    return accounts.authenticate(db, ea_token(request))


def command_payload(c: Command) -> dict:
    return {
        "id": str(c.id),
        "type": c.command_type,
        "symbol": c.symbol,
        "volume": c.volume,
        "orderType": c.order_type,
        "price": c.price,
        "sl": c.sl,
        "tp": c.tp,
        "ticket": c.ticket,
        "modifyTicket": c.modify_ticket,
        "newSl": c.new_sl,
        "newTp": c.new_tp,
        "masterTicket": c.master_ticket,
        "comment": c.comment,
        "magicNumber": c.magic_number,
        "priority": c.priority,
        "createdAt": c.created_at.isoformat() if c.created_at else None,
    }


@router.post("/heartbeat")
def heartbeat(account: TradingAccount = Depends(ea_account), db: Session = Depends(db_dep),
              payload: Any = Depends(raw_json)):
    now = utcnow()
    status = accounts.effective_status(account, now)
    if not isinstance(payload, dict):
        logger.warning("Heartbeat from account %s without a JSON object body", account.id)
        status = accounts.record_liveness(db, account, now=now)
        return {"success": True, "accountStatus": status, "serverTime": now.isoformat()}
    try:
        hb = HeartbeatIn.model_validate(payload)
        status = accounts.record_heartbeat(db, account, hb, now=now)
    except ValidationError as e:
        logger.warning("Malformed heartbeat from account %s (%d errors), recording liveness only",
                       account.id, e.error_count())
        status = accounts.record_liveness(db, account, now=now)
    except Exception:
        db.rollback()
        logger.exception("Heartbeat processing failed for account %s", account.id)
    return {"success": True, "accountStatus": status, "serverTime": now.isoformat()}


@router.get("/commands")
def get_commands(account: TradingAccount = Depends(ea_account), db: Session = Depends(db_dep),
                 limit: Optional[str] = None):
    try:
        n = int(limit) if limit else None
        items = commands.poll(db, account.id, n)
        return {"success": True, "commands": [command_payload(c) for c in items]}
    except Exception:
        db.rollback()
        logger.exception("Polling commands failed for account %s", account.id)
        return {"success": True, "commands": []}


@router.patch("/commands/{command_id}/status")
def update_command_status(command_id: str, account: TradingAccount = Depends(ea_account),
                          db: Session = Depends(db_dep), payload: Any = Depends(raw_json)):
    try:
        body = CommandStatusIn.model_validate(payload or {})
    except ValidationError:
        logger.warning("Malformed status update for command %s from account %s", command_id, account.id)
        return {"success": True, "applied": False, "error": 'status must be "executed" or "failed"'}

    # unknown command and foreign command propagate as 404 / 403
    cmd, applied = commands.update_status(db, command_id, account.id, body.status, body.execution_result)
    return {"success": True, "applied": applied, "command": {"id": str(cmd.id), "status": cmd.status}}


@router.post("/trade-update")
def trade_update(account: TradingAccount = Depends(ea_account), db: Session = Depends(db_dep),
                 payload: Any = Depends(raw_json)):
    try:
        event = OrderEventIn.model_validate(payload or {})
    except ValidationError as e:
        logger.warning("Malformed trade update from account %s: %s", account.id, e.error_count())
        return {"success": True, "processed": False}

    try:
        trade = ledger.report_order_event(db, account, event)
    except ValidationFailure as e:
        logger.warning("Rejected %s from account %s: %s", event.event_type, account.id, e.message)
        return {"success": True, "processed": False, "error": e.message}
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Recording %s failed for account %s ticket %s", event.event_type, account.id, event.ticket)
        return {"success": True, "processed": False}
    return {"success": True, "processed": trade is not None}
