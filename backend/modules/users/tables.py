from sqlalchemy import Boolean, Column, DateTime, String, Table

from core.db import metadata

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(50), nullable=False),
    Column("phone", String(20), nullable=False, unique=True),
    Column("role", String(20), nullable=False, default="member"),
    Column("team_id", String(50), nullable=False),
    Column("last_login", DateTime(timezone=True)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
