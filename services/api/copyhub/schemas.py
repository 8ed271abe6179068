import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from typing import Optional, Any, Literal

logger = logging.getLogger(__name__)


class EAModel(BaseModel):
    # EAs send camelCase keys
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# --- EA-facing ---
class OpenTradeIn(EAModel):
    ticket: int
    symbol: str = ""
    type: str = "BUY"
    volume: float = 0.0
    open_price: Optional[float] = Field(None, alias="openPrice")
    current_price: Optional[float] = Field(None, alias="currentPrice")
    profit: Optional[float] = None
    sl: Optional[float] = None
    tp: Optional[float] = None
    comment: Optional[str] = None


class CommandAckIn(EAModel):
    command_id: str = Field(alias="commandId")
    status: Literal["success", "failed"]
    order_ticket: Optional[int] = Field(None, alias="orderTicket")
    error: Optional[str] = None
    error_code: Optional[int] = Field(None, alias="errorCode")


def _valid_items(model: type[BaseModel], items: Any) -> tuple[list, int]:
    """Validate list items one by one; returns (valid items, number dropped)."""
    if not isinstance(items, list):
        return [], 1
    kept, dropped = [], 0
    for item in items:
        try:
            kept.append(model.model_validate(item))
        except ValidationError as e:
            dropped += 1
            logger.warning("Dropping malformed %s in heartbeat: %s", model.__name__, e.errors()[0]["msg"])
    return kept, dropped


class HeartbeatIn(EAModel):
    balance: float = 0.0
    equity: float = 0.0
    margin: float = 0.0
    free_margin: float = Field(0.0, alias="freeMargin")
    margin_level: float = Field(0.0, alias="marginLevel")
    open_trades: list[OpenTradeIn] = Field(default_factory=list, alias="openTrades")
    executed_commands: list[CommandAckIn] = Field(default_factory=list, alias="executedCommands")
    ea_version: Optional[str] = Field(None, alias="eaVersion")
    # False unless openTrades arrived as a list with every item valid
    snapshot_complete: bool = False

    @model_validator(mode="before")
    @classmethod
    def _drop_bad_items(cls, data: Any) -> Any:
        # one broken position or ack must not cost the whole heartbeat
        if not isinstance(data, dict):
            return data
        data = dict(data)
        data["snapshot_complete"] = False
        for name, alias, model in (("open_trades", "openTrades", OpenTradeIn),
                                   ("executed_commands", "executedCommands", CommandAckIn)):
            key = alias if alias in data else name
            if key not in data:
                continue
            kept, dropped = _valid_items(model, data[key])
            data[key] = kept
            if name == "open_trades":
                data["snapshot_complete"] = dropped == 0
        return data


class OrderEventIn(EAModel):
    event_type: Literal["ORDER_OPENED", "ORDER_CLOSED", "ORDER_MODIFIED", "ORDER_FAILED"] = Field(alias="eventType")
    ticket: int = Field(gt=0)
    symbol: Optional[str] = None
    order_type: Optional[str] = Field(None, alias="orderType")
    volume: Optional[float] = None
    open_price: Optional[float] = Field(None, alias="openPrice")
    close_price: Optional[float] = Field(None, alias="closePrice")
    sl: Optional[float] = None
    tp: Optional[float] = None
    profit: Optional[float] = None
    swap: Optional[float] = None
    commission: Optional[float] = None
    comment: Optional[str] = None
    error: Optional[str] = None


class CommandStatusIn(EAModel):
    status: Literal["executed", "failed"]
    execution_result: Optional[dict[str, Any]] = Field(None, alias="executionResult")


# --- web / operator ---
class UserIn(BaseModel):
    username: str
    is_active: bool = True
    features: list[str] = []


class AccountIn(BaseModel):
    username: str
    name: str
    login_id: str
    role: Literal["master", "slave", "standalone"] = "standalone"
    broker: Optional[str] = None
    server: Optional[str] = None
    rules_override: dict[str, Any] = {}


class CopyLinkIn(BaseModel):
    master_account_id: str
    slave_account_id: str
    risk_mode: Literal["multiplier", "fixed", "percent", "balance_ratio"] = "multiplier"
    lot_multiplier: float = Field(1.0, gt=0, le=100)
    fixed_lot: float = Field(0.01, gt=0)
    risk_percent: float = Field(0.0, ge=0, le=100)
    copy_symbols: list[str] = []
    exclude_symbols: list[str] = []
    copy_pending_orders: bool = False
    copy_modifications: bool = True
    priority: int = Field(1, ge=1)


class CommandIn(BaseModel):
    account_id: str
    command_type: Literal["BUY", "SELL", "CLOSE", "CLOSE_ALL", "MODIFY", "PAUSE_COPY", "RESUME_COPY"]
    symbol: Optional[str] = None
    volume: Optional[float] = Field(None, ge=0.01)
    order_type: Literal["MARKET", "LIMIT", "STOP"] = "MARKET"
    price: Optional[float] = None
    sl: Optional[float] = None
    tp: Optional[float] = None
    ticket: Optional[int] = None
    modify_ticket: Optional[int] = None
    new_sl: Optional[float] = None
    new_tp: Optional[float] = None
    comment: Optional[str] = None


class CommandOut(BaseModel):
    id: str
    target_account_id: str
    command_type: str
    symbol: Optional[str]
    volume: Optional[float]
    order_type: Optional[str]
    price: Optional[float]
    sl: Optional[float]
    tp: Optional[float]
    ticket: Optional[int]
    modify_ticket: Optional[int]
    new_sl: Optional[float]
    new_tp: Optional[float]
    master_ticket: Optional[int]
    source_type: str
    comment: Optional[str]
    priority: int
    status: str
    execution_result: Optional[dict[str, Any]]
    created_at: Any
    executed_at: Any


class SignalOut(BaseModel):
    id: str
    master_account_id: str
    master_ticket: int
    symbol: str
    order_type: str
    volume: float
    event_type: str
    status: str
    commands_generated: int
    commands_executed: int
    error: Optional[str]
    created_at: Any
    processed_at: Any
