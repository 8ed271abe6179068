from fastapi import FastAPI, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from typing import Optional
import logging

from . import settings
from .db import Base, engine, db_dep
from .models import User, TradingAccount, CopyLink, Command, Trade, MasterTradeSignal, AccountRole, utcnow, parse_id
from .schemas import UserIn, AccountIn, CopyLinkIn, CommandIn, CommandOut, SignalOut
from .auth import get_user, require_role, require_feature, require_owner, user_record
from .errors import CopyHubError, NotFound, ValidationFailure, InvalidState
from .log import setup_logging
from .services import accounts, commands
from . import ea

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="CopyHub v1.0")
app.include_router(ea.router)


@app.exception_handler(CopyHubError)
def copyhub_error(request: Request, exc: CopyHubError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def _get(db: Session, model, id_: str, label: str):
    pk = parse_id(id_)
    obj = db.get(model, pk) if pk else None
    if not obj:
        raise NotFound(f"{label} not found")
    return obj


def _account_out(a: TradingAccount) -> dict:
    return {"id": str(a.id), "user_id": str(a.user_id), "name": a.name, "login_id": a.login_id, "role": a.role,
            "broker": a.broker, "server": a.server, "status": accounts.effective_status(a),
            "last_heartbeat": a.last_heartbeat, "balance": a.balance, "equity": a.equity,
            "open_trades": a.open_trades, "ea_version": a.ea_version, "rules_override": a.rules_override or {}}


def _link_out(link: CopyLink) -> dict:
    return {"id": str(link.id), "master_account_id": str(link.master_account_id),
            "slave_account_id": str(link.slave_account_id), "risk_mode": link.risk_mode,
            "lot_multiplier": link.lot_multiplier, "fixed_lot": link.fixed_lot, "risk_percent": link.risk_percent,
            "copy_symbols": link.copy_symbols or [], "exclude_symbols": link.exclude_symbols or [],
            "copy_pending_orders": link.copy_pending_orders, "copy_modifications": link.copy_modifications,
            "priority": link.priority, "paused": link.paused, "paused_at": link.paused_at}


def _command_out(c: Command) -> dict:
    return CommandOut(
        id=str(c.id), target_account_id=str(c.target_account_id), command_type=c.command_type, symbol=c.symbol,
        volume=c.volume, order_type=c.order_type, price=c.price, sl=c.sl, tp=c.tp, ticket=c.ticket,
        modify_ticket=c.modify_ticket, new_sl=c.new_sl, new_tp=c.new_tp, master_ticket=c.master_ticket,
        source_type=c.source_type, comment=c.comment, priority=c.priority, status=c.status,
        execution_result=c.execution_result, created_at=c.created_at, executed_at=c.executed_at
    ).model_dump()


# --- Users & accounts (Admin/Operator) ---
@app.post("/api/users", tags=["users"])
def create_user(payload: UserIn, request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin")
    obj = User(**payload.model_dump())
    db.add(obj)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidState(f"User {payload.username} already exists")
    db.refresh(obj)
    return {"id": str(obj.id)}


@app.post("/api/accounts", tags=["accounts"])
def create_account(payload: AccountIn, request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator")
    owner = db.execute(select(User).where(User.username == payload.username)).scalars().first()
    if not owner:
        raise NotFound(f"User {payload.username} not found")
    obj = accounts.register_account(db, owner, payload.name, payload.login_id, payload.role,
                                    payload.broker, payload.server, payload.rules_override)
    # the token is only ever shown here and on regeneration
    return {"id": str(obj.id), "ea_token": obj.ea_token}


@app.get("/api/accounts", tags=["accounts"])
def list_accounts(request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator", "viewer")
    items = db.execute(select(TradingAccount).order_by(TradingAccount.created_at.desc())).scalars().all()
    return [_account_out(a) for a in items]


@app.post("/api/accounts/{account_id}/token", tags=["accounts"])
def regenerate_token(account_id: str, request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator")
    return {"id": account_id, "ea_token": accounts.regenerate_token(db, account_id)}


# --- Copy links ---
@app.post("/api/copy_links", tags=["copy_links"])
def create_copy_link(payload: CopyLinkIn, request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator")
    master = _get(db, TradingAccount, payload.master_account_id, "Master account")
    slave = _get(db, TradingAccount, payload.slave_account_id, "Slave account")
    if master.id == slave.id:
        raise ValidationFailure("An account cannot copy itself")
    if master.role != AccountRole.MASTER:
        raise ValidationFailure(f"Account {master.id} is not a master account")
    if slave.role == AccountRole.MASTER:
        raise ValidationFailure(f"Account {slave.id} is a master account")

    data = payload.model_dump()
    data.update(master_account_id=master.id, slave_account_id=slave.id)
    obj = CopyLink(**data)
    db.add(obj)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidState("Copy link already exists for this master/slave pair")
    db.refresh(obj)
    return {"id": str(obj.id)}


@app.get("/api/copy_links", tags=["copy_links"])
def list_copy_links(request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator", "viewer")
    items = db.execute(select(CopyLink).order_by(CopyLink.created_at.desc())).scalars().all()
    return [_link_out(link) for link in items]


@app.post("/api/copy_links/{link_id}/pause", tags=["copy_links"])
def pause_copy_link(link_id: str, request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator")
    link = _get(db, CopyLink, link_id, "Copy link")
    if not link.paused:
        link.paused = True
        link.paused_at = utcnow()
        db.commit()
        logger.info("Copy link %s paused by %s", link.id, u.username)
    return _link_out(link)


@app.post("/api/copy_links/{link_id}/resume", tags=["copy_links"])
def resume_copy_link(link_id: str, request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator")
    link = _get(db, CopyLink, link_id, "Copy link")
    if link.paused:
        link.paused = False
        link.paused_at = None
        db.commit()
        logger.info("Copy link %s resumed by %s", link.id, u.username)
    return _link_out(link)


# --- Commands (remote control) ---
@app.post("/api/commands", tags=["commands"])
def create_command(payload: CommandIn, request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator")
    rec = require_feature(db, u, "remoteControl")
    account = _get(db, TradingAccount, payload.account_id, "Account")
    require_owner(u, rec, account)
    cmd = commands.create_manual(db, account.id, payload.model_dump(exclude={"account_id"}))
    return _command_out(cmd)


@app.get("/api/commands", tags=["commands"])
def list_commands(request: Request, account_id: Optional[str] = None, status: Optional[str] = None,
                  limit: int = 200, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator", "viewer")
    q = select(Command)
    if account_id:
        q = q.where(Command.target_account_id == parse_id(account_id))
    if status:
        q = q.where(Command.status == status)
    items = db.execute(q.order_by(Command.created_at.desc()).limit(min(limit, 1000))).scalars().all()
    return [_command_out(c) for c in items]


@app.get("/api/commands/{command_id}", tags=["commands"])
def get_command(command_id: str, request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator", "viewer")
    return _command_out(_get(db, Command, command_id, "Command"))


@app.delete("/api/commands/{command_id}", tags=["commands"])
def cancel_command(command_id: str, request: Request, db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator")
    cmd = _get(db, Command, command_id, "Command")
    require_owner(u, user_record(db, u), cmd.target_account)
    return _command_out(commands.cancel(db, cmd.id))


# --- Ledger & signals (read only) ---
@app.get("/api/trades", tags=["trades"])
def list_trades(request: Request, account_id: Optional[str] = None, status: Optional[str] = None,
                db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator", "viewer")
    q = select(Trade)
    if account_id:
        q = q.where(Trade.account_id == parse_id(account_id))
    if status:
        q = q.where(Trade.status == status)
    items = db.execute(q.order_by(Trade.updated_at.desc()).limit(200)).scalars().all()
    return [{"id": str(t.id), "account_id": str(t.account_id), "ticket": t.ticket, "symbol": t.symbol,
             "order_type": t.order_type, "volume": t.volume, "open_price": t.open_price,
             "close_price": t.close_price, "sl": t.sl, "tp": t.tp, "status": t.status, "profit": t.profit,
             "source_type": t.source_type,
             "master_account_id": str(t.master_account_id) if t.master_account_id else None,
             "master_ticket": t.master_ticket} for t in items]


@app.get("/api/signals", tags=["signals"])
def list_signals(request: Request, master_account_id: Optional[str] = None, status: Optional[str] = None,
                 db: Session = Depends(db_dep)):
    u = get_user(request); require_role(u, "admin", "operator", "viewer")
    q = select(MasterTradeSignal)
    if master_account_id:
        q = q.where(MasterTradeSignal.master_account_id == parse_id(master_account_id))
    if status:
        q = q.where(MasterTradeSignal.status == status)
    items = db.execute(q.order_by(MasterTradeSignal.created_at.desc()).limit(200)).scalars().all()
    return [SignalOut(
        id=str(s.id), master_account_id=str(s.master_account_id), master_ticket=s.master_ticket,
        symbol=s.symbol, order_type=s.order_type, volume=s.volume, event_type=s.event_type, status=s.status,
        commands_generated=s.commands_generated, commands_executed=s.commands_executed, error=s.error,
        created_at=s.created_at, processed_at=s.processed_at
    ).model_dump() for s in items]


@app.get("/api/health", tags=["system"])
def health(request: Request):
    u = get_user(request)
    return {"ok": True, "user": u.username, "roles": sorted(list(u.roles))}
