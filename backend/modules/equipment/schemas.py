from __future__ import annotations
from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from common.events import Category, Condition, Priority, Status


class _In(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)

    @field_validator('serial_number', 'barcode', check_fields=False)
    @classmethod
    def blank_is_none(cls, v):
        """'' would collide on the unique index"""
        return v or None


# Inputs
class EquipmentCreateIn(_In):
    name: str = Field(min_length=1, max_length=100)
    category: Category
    location: str = Field(min_length=1, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=500)
    status: Optional[Status] = None
    condition: Optional[Condition] = None
    priority: Optional[Priority] = None
    serial_number: Optional[str] = Field(default=None, max_length=50)
    barcode: Optional[str] = Field(default=None, max_length=50)
    vendor: Optional[str] = Field(default=None, max_length=100)
    model: Optional[str] = Field(default=None, max_length=100)
    purchase_price: Optional[float] = Field(default=None, ge=0)
    purchase_date: Optional[date] = None
    warranty_expiry: Optional[date] = None
    maintenance_date: Optional[datetime] = None


class EquipmentUpdateIn(_In):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    category: Optional[Category] = None
    location: Optional[str] = Field(default=None, min_length=1, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=500)
    status: Optional[Status] = None
    condition: Optional[Condition] = None
    priority: Optional[Priority] = None
    serial_number: Optional[str] = Field(default=None, max_length=50)
    barcode: Optional[str] = Field(default=None, max_length=50)
    vendor: Optional[str] = Field(default=None, max_length=100)
    model: Optional[str] = Field(default=None, max_length=100)
    purchase_price: Optional[float] = Field(default=None, ge=0)
    purchase_date: Optional[date] = None
    warranty_expiry: Optional[date] = None
    maintenance_date: Optional[datetime] = None
    is_reserved: Optional[bool] = None
    reserved_by: Optional[str] = Field(default=None, max_length=100)
    reserved_until: Optional[datetime] = None

    @field_validator('name', 'category', 'location', 'status', 'condition', 'priority')
    @classmethod
    def not_null(cls, v):
        # Omit a field to leave it alone; these columns can't be cleared
        if v is None:
            raise ValueError("may not be null")
        return v


class DeleteIn(_In):
    reason: Optional[str] = Field(default=None, max_length=255)
