"""
Equipment tables: active records, the archive ("recently deleted") and the
audit history. A record lives in exactly one of `equipment` / `deleted_equipment`.
"""
from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, Index, Integer, Numeric, String, Table, Text,
)

from core.db import metadata

# Columns shared by the active and archived tables, in API order
DESCRIPTIVE_COLUMNS = (
    "name", "category", "status", "condition", "location", "notes",
    "serial_number", "purchase_date", "warranty_expiry", "purchase_price",
    "vendor", "model", "barcode", "priority", "maintenance_date",
    "is_reserved", "reserved_by", "reserved_until",
    "last_checked", "checked_by", "checked_by_name", "team_id",
)


def _descriptive_columns(unique: bool):
    return [
        Column("name", String(100), nullable=False),
        Column("category", String(20), nullable=False),
        Column("status", String(20), nullable=False, default="pending"),
        Column("condition", String(20), nullable=False, default="good"),
        Column("location", String(100), nullable=False),
        Column("notes", Text),
        Column("serial_number", String(50), unique=unique),
        Column("purchase_date", Date),
        Column("warranty_expiry", Date),
        Column("purchase_price", Numeric(10, 2)),
        Column("vendor", String(100)),
        Column("model", String(100)),
        Column("barcode", String(50), unique=unique),
        Column("priority", String(20), nullable=False, default="medium"),
        Column("maintenance_date", DateTime(timezone=True)),
        Column("is_reserved", Boolean, nullable=False, default=False),
        Column("reserved_by", String(100)),
        Column("reserved_until", DateTime(timezone=True)),
        Column("last_checked", DateTime(timezone=True)),
        Column("checked_by", String(36)),
        Column("checked_by_name", String(100)),
        Column("team_id", String(50), nullable=False),
    ]


equipment = Table(
    "equipment",
    metadata,
    Column("id", String(36), primary_key=True),
    *_descriptive_columns(unique=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    # Bumped by every committed write; clients order snapshots by it
    Column("version", Integer, nullable=False, default=1),
    Index("equipment_team_status_idx", "team_id", "status"),
    Index("equipment_updated_at_idx", "updated_at"),
    Index("equipment_active_team_idx", "is_active", "team_id"),
)

deleted_equipment = Table(
    "deleted_equipment",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("original_equipment_id", String(36), nullable=False, index=True),
    *_descriptive_columns(unique=False),
    Column("deleted_at", DateTime(timezone=True), nullable=False, index=True),
    Column("deleted_by", String(36), nullable=False),
    Column("deleted_by_name", String(100), nullable=False),
    Column("deletion_reason", String(255)),
    Column("original_created_at", DateTime(timezone=True)),
    Column("original_updated_at", DateTime(timezone=True)),
)

equipment_history = Table(
    "equipment_history",
    metadata,
    Column("id", String(36), primary_key=True),
    # No FK: history outlives the active row it describes
    Column("equipment_id", String(36), nullable=False, index=True),
    Column("action_type", String(20), nullable=False),
    Column("old_values", JSON),
    Column("new_values", JSON),
    Column("user_id", String(36), nullable=False),
    Column("user_name", String(100), nullable=False),
    Column("team_id", String(50), nullable=False),
    Column("notes", Text),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
)
