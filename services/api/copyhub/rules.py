from dataclasses import dataclass
from typing import Optional, Union
from .models import CopyLink, TradingAccount

MIN_LOT = 0.01


@dataclass(frozen=True)
class Multiplier:
    """slave lot = master lot * factor"""
    factor: float


@dataclass(frozen=True)
class FixedLots:
    """slave lot = lots, whatever the master traded"""
    lots: float


@dataclass(frozen=True)
class Percent:
    """scale the master lot by the share of slave balance put at risk"""
    percent: float
    factor: float = 1.0


@dataclass(frozen=True)
class BalanceRatio:
    """slave lot = master lot * slave balance / master balance * factor"""
    factor: float = 1.0


RiskMode = Union[Multiplier, FixedLots, Percent, BalanceRatio]


def risk_mode_for(link: CopyLink) -> RiskMode:
    mode = (link.risk_mode or "multiplier").lower()
    factor = link.lot_multiplier if link.lot_multiplier is not None else 1.0
    if mode == "multiplier":
        return Multiplier(factor)
    if mode == "fixed":
        return FixedLots(link.fixed_lot or 0.0)
    if mode == "percent":
        return Percent(link.risk_percent or 0.0, factor)
    if mode == "balance_ratio":
        return BalanceRatio(factor)
    raise ValueError(f"unknown risk mode {link.risk_mode!r} on copy link {link.id}")


def slave_volume(mode: RiskMode, master_volume: float, master_balance: float = 0.0,
                 slave_balance: float = 0.0) -> float:
    if isinstance(mode, Multiplier):
        lot = master_volume * mode.factor
    elif isinstance(mode, FixedLots):
        lot = mode.lots
    elif isinstance(mode, Percent):
        # simplified: no symbol/tick value, the percent acts as a scale on the master lot
        lot = master_volume * mode.factor * mode.percent / 100.0
    elif isinstance(mode, BalanceRatio):
        if master_balance <= 0:
            return 0.0
        lot = master_volume * (slave_balance / master_balance) * mode.factor
    else:
        raise TypeError(f"unsupported risk mode: {mode!r}")
    return round(lot, 2)


def should_copy_symbol(symbol: str, link: CopyLink, slave: Optional[TradingAccount] = None) -> tuple[bool, str]:
    # allow list wins over deny list, as configured on the link
    allowed = link.copy_symbols or []
    denied = link.exclude_symbols or []
    if allowed and symbol not in allowed:
        return False, f"{symbol} not in copy_symbols of link {link.id}"
    if symbol in denied:
        return False, f"{symbol} excluded by link {link.id}"

    if slave is not None:
        rules = slave.rules_override or {}
        if rules.get("allowed_symbols") and symbol not in rules["allowed_symbols"]:
            return False, f"{symbol} not allowed on account {slave.id}"
        if symbol in (rules.get("blocked_symbols") or []):
            return False, f"{symbol} blocked on account {slave.id}"
    return True, "OK"


def cap_volume(lot: float, slave: TradingAccount) -> float:
    rules = slave.rules_override or {}
    max_lot = rules.get("max_lot")
    if lot and max_lot:
        lot = min(lot, float(max_lot))
    return round(lot, 2)


def is_pending_order(order_type: str) -> bool:
    return (order_type or "").upper() not in ("BUY", "SELL")
