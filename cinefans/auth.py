"""
Session tokens. Sessions are issued elsewhere (the login service); this
service only reads them. `issue_session_token` is for seeding and tests.
"""

import os
from dataclasses import dataclass, asdict
from typing import Optional

from fastapi import Request
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired

from .errors import Unauthorized, Forbidden

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
SESSION_MAX_AGE = int(os.environ.get("SESSION_MAX_AGE", str(7 * 24 * 3600)))

_serializer = URLSafeTimedSerializer(SESSION_SECRET, salt="cinefans.session")


@dataclass(frozen=True)
class SessionUser:
    user_id: str
    email: str
    is_admin: bool = False
    membership_id: Optional[str] = None


def issue_session_token(user: SessionUser) -> str:
    return _serializer.dumps(asdict(user))


def decode_session_token(token: str,
                         max_age: int = SESSION_MAX_AGE) -> SessionUser:
    try:
        data = _serializer.loads(token, max_age=max_age)
    except SignatureExpired:
        raise Unauthorized("Session expired")
    except BadSignature:
        raise Unauthorized("Invalid session")
    if not isinstance(data, dict) or not data.get("user_id"):
        raise Unauthorized("Invalid session")
    return SessionUser(
        user_id=str(data["user_id"]),
        email=str(data.get("email") or ""),
        is_admin=bool(data.get("is_admin")),
        membership_id=data.get("membership_id"),
    )


def _token_from(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return request.cookies.get("session")


# ----------------------------
# FastAPI dependencies
# ----------------------------
async def optional_user(request: Request) -> Optional[SessionUser]:
    token = _token_from(request)
    if not token:
        return None
    return decode_session_token(token)


async def current_user(request: Request) -> SessionUser:
    user = await optional_user(request)
    if user is None:
        raise Unauthorized()
    return user


async def require_admin(request: Request) -> SessionUser:
    user = await current_user(request)
    if not user.is_admin:
        raise Forbidden("Admins only")
    return user
