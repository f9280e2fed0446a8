# common/deps.py
from typing import Any, Dict, Optional

from fastapi import Depends, Header, Request

from core.security import get_current_user as _get_current_user
from core.websocket import Broadcaster


# ---------------------------
# Auth
# ---------------------------
def get_current_user(authorization: Optional[str] = Header(None)) -> Dict[str, Any]:
    """Auth dependency used by protected routes."""
    return _get_current_user(authorization=authorization)


def get_actor(request: Request, user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    """The current user plus request details the audit log records."""
    return {
        **user,
        'ip_address': request.client.host if request.client else None,
        'user_agent': request.headers.get('user-agent'),
    }


def get_mutation_id(x_mutation_id: Optional[str] = Header(None)) -> Optional[str]:
    """Client-chosen id echoed in the broadcast so the sender can spot its own change."""
    return (x_mutation_id or '').strip()[:64] or None


# ---------------------------
# Real-time fan-out
# ---------------------------
def get_broadcaster(request: Request) -> Optional[Broadcaster]:
    """The app's broadcaster, injected at startup (None when sockets are disabled)."""
    return getattr(request.app.state, 'broadcaster', None)
