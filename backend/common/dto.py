# common/dto.py
"""Response envelope used by every equipment route: {success, data, message?, count?}."""
from __future__ import annotations
from typing import Any, Dict, Optional

from pydantic import BaseModel


def _wire(value: Any) -> Any:
    if isinstance(value, BaseModel):
        dump = getattr(value, "to_wire", None)
        return dump() if dump else value.model_dump(mode="json", by_alias=True)
    if isinstance(value, (list, tuple)):
        return [_wire(v) for v in value]
    if isinstance(value, dict):
        return {k: _wire(v) for k, v in value.items()}
    return value


def ok(data: Any = None, *, message: Optional[str] = None, count: Optional[int] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": _wire(data)}
    if message:
        body["message"] = message
    if count is not None:
        body["count"] = count
    return body
