from __future__ import annotations
from typing import Any, Dict, Optional
from datetime import datetime, timezone
import logging
import uuid

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from common.errors import UniquenessConflict
from core.db import get_engine
from .tables import users

logger = logging.getLogger(__name__)

USER_COLUMNS = ['id', 'name', 'phone', 'role', 'team_id', 'last_login', 'is_active', 'created_at']


def clean_phone(phone: str) -> str:
    """Strip spaces, dashes, brackets etc. Only digits are stored."""
    return "".join(ch for ch in (phone or "") if ch.isdigit())


class UsersRepo:
    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine or get_engine()

    def get_by_phone(self, phone: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(select(users).where(users.c.phone == clean_phone(phone))).mappings().first()
        return dict(row) if row else None

    def get_by_id(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self.engine.connect() as conn:
            row = conn.execute(select(users).where(users.c.id == user_id)).mappings().first()
        return dict(row) if row else None

    def create_user(self, *, name: str, phone: str, team_id: str, role: str = "member") -> Dict[str, Any]:
        values = {
            'id': str(uuid.uuid4()),
            'name': name.strip(),
            'phone': clean_phone(phone),
            'role': role,
            'team_id': team_id,
            'last_login': None,
            'is_active': True,
            'created_at': datetime.now(timezone.utc),
        }
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(users).values(**values))
        except IntegrityError:
            raise UniquenessConflict("User already exists with this phone number")
        logger.info(f"Registered user {values['name']} ({values['id']}) in team {team_id}")
        return values

    def touch_login(self, user_id: str) -> datetime:
        now = datetime.now(timezone.utc)
        with self.engine.begin() as conn:
            conn.execute(update(users).where(users.c.id == user_id).values(last_login=now))
        return now
