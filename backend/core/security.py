from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import jwt
from fastapi import Header

from common.errors import AuthError
from core.config import settings


def create_access_token(sub: str) -> str:
    payload: Dict[str, Any] = {
        "sub": sub,
        "exp": datetime.now(timezone.utc) + timedelta(days=settings.AUTH_ACCESS_TTL_DAYS),
    }
    return jwt.encode(payload, settings.AUTH_SECRET_KEY, algorithm=settings.AUTH_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, settings.AUTH_SECRET_KEY, algorithms=[settings.AUTH_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")


def public_user(row: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a users row the way the client expects it."""
    last_login = row.get("last_login")
    return {
        "id": row["id"],
        "name": row["name"],
        "phone": row["phone"],
        "role": row.get("role") or "member",
        "teamId": row["team_id"],
        "lastLogin": last_login.isoformat() if last_login else None,
    }


def user_from_token(token: str, repo=None) -> Dict[str, Any]:
    """Resolve a bearer token to the acting user: {id, name, role, team_id}."""
    from modules.users.repo import UsersRepo

    payload = decode_token(token)
    user_id = payload.get("sub")
    if not user_id:
        raise AuthError("Invalid token payload")

    row = (repo or UsersRepo()).get_by_id(user_id)
    if not row:
        raise AuthError("User not found")
    if not row.get("is_active", True):
        raise AuthError("Account is inactive. Please contact an administrator.")

    return {"id": row["id"], "name": row["name"], "role": row.get("role") or "member", "team_id": row["team_id"]}


def get_current_user(authorization: Optional[str] = Header(None)):
    if not authorization:
        raise AuthError("Not authorized, no token")
    token = authorization.split("Bearer ")[-1]
    return user_from_token(token)
