"""
Correlation tokens carried in MT5 order comments.

The EA can only hand us back a short free-text comment, so the master ticket
(and, for slave orders, the master login) travels inside it. New commands are
written with one canonical token::

    CH1|<masterLogin>|<masterTicket>|<action code>

with action codes O (open), C (close) and M (modify), e.g. ``CH1|5012345|1001|O``.
Ten-digit logins and tickets still fit in the 31 characters MT5 keeps.

Commands issued before the canonical token existed used two ad hoc formats,
which are still understood when reading:

    "Copy from Master #5012345 Ticket #1001"   (BUY/SELL)
    "COPY|MASTER_TICKET|1001|Close"            (CLOSE/MODIFY)
"""

import re
from dataclasses import dataclass
from typing import Optional

VERSION = "CH1"
ACTIONS = ("OPEN", "CLOSE", "MODIFY")
ACTION_CODES = {"OPEN": "O", "CLOSE": "C", "MODIFY": "M"}
CODE_ACTIONS = {code: action for action, code in ACTION_CODES.items()}

CANONICAL_RE = re.compile(r"^CH1\|(?P<login>\d*)\|(?P<ticket>\d+)\|(?P<action>[OCM])$")
LEGACY_MASTER_TICKET_RE = re.compile(r"MASTER_TICKET\|(?P<ticket>\d+)(?:\|(?P<action>\w+))?")
LEGACY_TICKET_RE = re.compile(r"Ticket #(?P<ticket>\d+)")
LEGACY_MASTER_LOGIN_RE = re.compile(r"Master #(?P<login>\d+).*Ticket #(?P<ticket>\d+)")


@dataclass(frozen=True)
class CorrelationToken:
    master_ticket: int
    action: Optional[str] = None
    master_login: Optional[str] = None
    legacy: bool = False


def encode(master_ticket: int, action: str, master_login: Optional[str] = None) -> str:
    if master_ticket is None or master_ticket <= 0:
        raise ValueError(f"master ticket must be positive, got {master_ticket!r}")
    action = action.upper()
    if action not in ACTIONS:
        raise ValueError(f"unknown correlation action: {action!r}")
    login = master_login or ""
    if login and not login.isdigit():
        raise ValueError(f"master login must be numeric, got {login!r}")
    return f"{VERSION}|{login}|{master_ticket}|{ACTION_CODES[action]}"


def parse(comment: Optional[str]) -> Optional[CorrelationToken]:
    """Decode a comment, trying the canonical token first and then the
    legacy ``MASTER_TICKET|n`` and ``Ticket #n`` forms, in that order.

    Returns ``None`` when nothing yields a positive ticket.
    """
    if not comment:
        return None
    text = comment.strip()

    m = CANONICAL_RE.match(text)
    if m:
        ticket = int(m.group("ticket"))
        if ticket > 0:
            return CorrelationToken(ticket, CODE_ACTIONS[m.group("action")], m.group("login") or None)

    m = LEGACY_MASTER_TICKET_RE.search(text)
    if m:
        ticket = int(m.group("ticket"))
        if ticket > 0:
            action = (m.group("action") or "").upper() or None
            return CorrelationToken(ticket, action if action in ACTIONS else None, legacy=True)

    m = LEGACY_MASTER_LOGIN_RE.search(text)
    if m:
        ticket = int(m.group("ticket"))
        if ticket > 0:
            return CorrelationToken(ticket, "OPEN", m.group("login"), legacy=True)

    m = LEGACY_TICKET_RE.search(text)
    if m:
        ticket = int(m.group("ticket"))
        if ticket > 0:
            return CorrelationToken(ticket, "OPEN", legacy=True)

    return None


def extract_master_ticket(comment: Optional[str]) -> int:
    token = parse(comment)
    return token.master_ticket if token else 0
