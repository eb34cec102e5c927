"""Session handling for the web app.

Sign-in is a magic link: the address must belong to an owner or to a
configured admin. The link carries a short-lived signed token; verifying it
issues a signed session cookie. Admin rights come from ``ICOMAG_ADMIN_EMAILS``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import get_settings
from models import Owner

logger = logging.getLogger(__name__)

SESSION_COOKIE = "icomag_session"
SESSION_MAX_AGE = 60 * 60 * 24 * 30
MAGIC_LINK_MAX_AGE = 60 * 5


class NotAuthenticated(Exception):
    pass


class NotAuthorized(Exception):
    pass


@dataclass(frozen=True)
class SessionUser:
    email: str
    name: Optional[str]
    is_admin: bool

    @property
    def id(self) -> str:
        return self.email


def _serializer(salt: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().secret, salt=salt)


def can_sign_in(session: Session, email: str) -> bool:
    clean = email.strip().lower()
    if not clean:
        return False
    if get_settings().is_admin_email(clean):
        return True
    stmt = select(Owner.id).where(func.lower(Owner.email) == clean)
    return session.scalar(stmt) is not None


def issue_magic_link_token(email: str) -> str:
    return _serializer("magic-link").dumps({"e": email.strip().lower()})


def magic_link_url(token: str) -> str:
    base = get_settings().base_url.rstrip("/")
    return f"{base}/api/auth/verify?token={token}"


def verify_magic_link_token(token: str) -> Optional[str]:
    try:
        data = _serializer("magic-link").loads(token, max_age=MAGIC_LINK_MAX_AGE)
    except SignatureExpired:
        logger.info("magic_link_rejected: reason=expired")
        return None
    except BadSignature:
        logger.info("magic_link_rejected: reason=bad_signature")
        return None
    return data.get("e")


def session_user_for(session: Session, email: str) -> SessionUser:
    clean = email.strip().lower()
    owner = session.scalar(select(Owner).where(func.lower(Owner.email) == clean))
    return SessionUser(
        email=clean,
        name=owner.name if owner else None,
        is_admin=get_settings().is_admin_email(clean),
    )


def issue_session_token(user: SessionUser) -> str:
    return _serializer("session").dumps({"e": user.email, "n": user.name})


def read_session_token(token: Optional[str]) -> Optional[SessionUser]:
    if not token:
        return None
    try:
        data = _serializer("session").loads(token, max_age=SESSION_MAX_AGE)
    except BadSignature:
        return None
    email = data.get("e")
    if not email:
        return None
    return SessionUser(
        email=email,
        name=data.get("n"),
        is_admin=get_settings().is_admin_email(email),
    )


def optional_user(request: Request) -> Optional[SessionUser]:
    return read_session_token(request.cookies.get(SESSION_COOKIE))


def current_user(request: Request) -> SessionUser:
    user = optional_user(request)
    if user is None:
        raise NotAuthenticated()
    return user


def admin_user(request: Request) -> SessionUser:
    user = current_user(request)
    if not user.is_admin:
        logger.info(f"admin_required: email={user.email} path={request.url.path}")
        raise NotAuthorized()
    return user
