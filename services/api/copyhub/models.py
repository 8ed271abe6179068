from sqlalchemy import (Column, Integer, BigInteger, String, Boolean, DateTime, ForeignKey, Text, Float, JSON,
                        Index, UniqueConstraint, Uuid, text)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import uuid
from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_id(value) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


class AccountRole:
    MASTER = "master"
    SLAVE = "slave"
    STANDALONE = "standalone"
    ALL = (MASTER, SLAVE, STANDALONE)


class AccountStatus:
    ACTIVE = "active"
    OFFLINE = "offline"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"
    ALL = (ACTIVE, OFFLINE, SUSPENDED, INACTIVE)


class SourceType:
    MANUAL = "manual"
    MASTER_COPY = "master_copy"


class SignalEvent:
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    MODIFY = "MODIFY"
    ALL = (OPEN, CLOSE, MODIFY)


class SignalStatus:
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


class CommandType:
    BUY = "BUY"
    SELL = "SELL"
    CLOSE = "CLOSE"
    CLOSE_ALL = "CLOSE_ALL"
    MODIFY = "MODIFY"
    PAUSE_COPY = "PAUSE_COPY"
    RESUME_COPY = "RESUME_COPY"
    ALL = (BUY, SELL, CLOSE, CLOSE_ALL, MODIFY, PAUSE_COPY, RESUME_COPY)


class CommandStatus:
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"
    EXPIRED = "expired"


class User(Base):
    __tablename__ = "users"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String(200), unique=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    features = Column(JSON, default=list)  # e.g. ["remoteControl"]
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def has_feature(self, name: str) -> bool:
        return name in (self.features or [])


class TradingAccount(Base):
    __tablename__ = "trading_accounts"
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    login_id = Column(String(50), nullable=False, index=True)  # broker login, public
    role = Column(String(20), nullable=False, default=AccountRole.STANDALONE)  # master | slave | standalone
    ea_token = Column(String(64), unique=True, nullable=False)
    broker = Column(String(200), nullable=True)
    server = Column(String(200), nullable=True)
    status = Column(String(20), nullable=False, default=AccountStatus.ACTIVE)
    last_heartbeat = Column(DateTime(timezone=True), nullable=True)

    # latest heartbeat snapshot
    balance = Column(Float, default=0.0)
    equity = Column(Float, default=0.0)
    margin = Column(Float, default=0.0)
    free_margin = Column(Float, default=0.0)
    margin_level = Column(Float, default=0.0)
    open_trades = Column(Integer, default=0)
    ea_version = Column(String(50), nullable=True)

    rules_override = Column(JSON, default=dict)  # max_lot, allowed_symbols, blocked_symbols
    created_at = Column(DateTime(timezone=True), default=utcnow)

    user = relationship("User")


class CopyLink(Base):
    __tablename__ = "copy_links"
    __table_args__ = (UniqueConstraint("master_account_id", "slave_account_id", name="uq_copy_link_pair"),)
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    master_account_id = Column(Uuid(as_uuid=True), ForeignKey("trading_accounts.id", ondelete="CASCADE"),
                               nullable=False, index=True)
    slave_account_id = Column(Uuid(as_uuid=True), ForeignKey("trading_accounts.id", ondelete="CASCADE"),
                              nullable=False, index=True)

    risk_mode = Column(String(20), nullable=False, default="multiplier")  # multiplier | fixed | percent | balance_ratio
    lot_multiplier = Column(Float, default=1.0)
    fixed_lot = Column(Float, default=0.01)
    risk_percent = Column(Float, default=0.0)

    copy_symbols = Column(JSON, default=list)
    exclude_symbols = Column(JSON, default=list)
    copy_pending_orders = Column(Boolean, default=False)
    copy_modifications = Column(Boolean, default=True)
    priority = Column(Integer, default=1)  # lower is served first when a slave follows several masters

    paused = Column(Boolean, default=False, nullable=False)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    master = relationship("TradingAccount", foreign_keys=[master_account_id])
    slave = relationship("TradingAccount", foreign_keys=[slave_account_id])


class Trade(Base):
    __tablename__ = "trades"
    # tickets are only unique inside one account
    __table_args__ = (
        UniqueConstraint("account_id", "ticket", name="uq_trade_account_ticket"),
        Index("ix_trades_master_ref", "master_account_id", "master_ticket"),
    )
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("trading_accounts.id", ondelete="CASCADE"), nullable=False)
    ticket = Column(BigInteger, nullable=False)

    symbol = Column(String(50), nullable=False)
    order_type = Column(String(20), nullable=False)  # BUY|SELL|BUY_LIMIT|...
    volume = Column(Float, nullable=False)
    open_price = Column(Float, nullable=True)
    close_price = Column(Float, nullable=True)
    open_time = Column(DateTime(timezone=True), nullable=True)
    close_time = Column(DateTime(timezone=True), nullable=True)
    sl = Column(Float, nullable=True)
    tp = Column(Float, nullable=True)
    status = Column(String(20), nullable=False, default="open")  # open|closed
    profit = Column(Float, default=0.0)
    swap = Column(Float, default=0.0)
    commission = Column(Float, default=0.0)
    comment = Column(Text, nullable=True)

    source_type = Column(String(20), nullable=False, default=SourceType.MANUAL)
    master_account_id = Column(Uuid(as_uuid=True), nullable=True)
    master_ticket = Column(BigInteger, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class MasterTradeSignal(Base):
    __tablename__ = "master_trade_signals"
    __table_args__ = (
        # duplicate webhook deliveries must not open a second pending signal
        Index("uq_signal_pending", "master_account_id", "master_ticket", "event_type", unique=True,
              postgresql_where=text("status = 'pending'"), sqlite_where=text("status = 'pending'")),
    )
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    master_account_id = Column(Uuid(as_uuid=True), ForeignKey("trading_accounts.id", ondelete="CASCADE"),
                               nullable=False, index=True)
    master_ticket = Column(BigInteger, nullable=False)

    symbol = Column(String(50), nullable=False)
    order_type = Column(String(20), nullable=False)
    volume = Column(Float, nullable=False)
    price = Column(Float, nullable=True)
    sl = Column(Float, nullable=True)
    tp = Column(Float, nullable=True)

    event_type = Column(String(10), nullable=False)  # OPEN|CLOSE|MODIFY
    status = Column(String(20), nullable=False, default=SignalStatus.PENDING)  # pending|processed|failed
    commands_generated = Column(Integer, default=0, nullable=False)
    commands_executed = Column(Integer, default=0, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)


class Command(Base):
    __tablename__ = "commands"
    __table_args__ = (
        Index("ix_commands_poll", "target_account_id", "status", "priority", "created_at"),
    )
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    target_account_id = Column(Uuid(as_uuid=True), ForeignKey("trading_accounts.id", ondelete="CASCADE"),
                               nullable=False)
    command_type = Column(String(20), nullable=False)

    symbol = Column(String(50), nullable=True)
    volume = Column(Float, nullable=True)
    order_type = Column(String(20), default="MARKET")  # MARKET|LIMIT|STOP
    price = Column(Float, nullable=True)
    sl = Column(Float, nullable=True)
    tp = Column(Float, nullable=True)
    ticket = Column(BigInteger, nullable=True)  # CLOSE on a slave ticket
    modify_ticket = Column(BigInteger, nullable=True)
    new_sl = Column(Float, nullable=True)
    new_tp = Column(Float, nullable=True)

    master_ticket = Column(BigInteger, nullable=True)
    master_account_id = Column(Uuid(as_uuid=True), nullable=True)
    signal_id = Column(Uuid(as_uuid=True), ForeignKey("master_trade_signals.id", ondelete="SET NULL"), nullable=True)
    source_type = Column(String(20), nullable=False, default=SourceType.MANUAL)
    comment = Column(String(255), nullable=True)
    magic_number = Column(Integer, nullable=True)
    priority = Column(Integer, nullable=False, default=5)  # 1..10, higher first

    status = Column(String(20), nullable=False, default=CommandStatus.PENDING)
    execution_result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    target_account = relationship("TradingAccount")
