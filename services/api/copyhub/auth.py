from dataclasses import dataclass
from typing import Optional
from fastapi import Request, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import FeatureNotEnabled, OwnershipViolation
from .models import User, TradingAccount


@dataclass
class UserCtx:
    username: str
    roles: set[str]

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


def get_user(request: Request) -> UserCtx:
    # oauth2-proxy sets X-Auth-Request-Preferred-Username and X-Auth-Request-Groups
    username = request.headers.get("X-Auth-Request-Preferred-Username") or request.headers.get("X-Auth-Request-User") or "unknown"
    groups = request.headers.get("X-Auth-Request-Groups", "")
    roles = set([g.strip() for g in groups.split(",") if g.strip()])
    return UserCtx(username=username, roles=roles)


def require_role(user: UserCtx, *allowed: str):
    if not (user.roles.intersection(set(allowed))):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def ea_token(request: Request) -> Optional[str]:
    # EAs send X-EA-Token; Authorization: Bearer is accepted for older builds
    token = request.headers.get("X-EA-Token")
    if token:
        return token
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return None


def user_record(db: Session, user: UserCtx) -> Optional[User]:
    return db.execute(select(User).where(User.username == user.username)).scalars().first()


def require_feature(db: Session, user: UserCtx, feature: str) -> Optional[User]:
    """The caller's plan must include ``feature``. Admins are not gated."""
    rec = user_record(db, user)
    if user.is_admin:
        return rec
    if not rec or not rec.is_active or not rec.has_feature(feature):
        raise FeatureNotEnabled(f"Feature '{feature}' is not enabled for {user.username}")
    return rec


def require_owner(user: UserCtx, rec: Optional[User], account: TradingAccount):
    if user.is_admin:
        return
    if not rec or account.user_id != rec.id:
        raise OwnershipViolation("Account does not belong to this user")
