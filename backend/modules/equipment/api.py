from __future__ import annotations
from datetime import date
from typing import Any, Dict, List, Literal, Optional
import csv
import io
import logging

from fastapi import APIRouter, Body, Depends, Query, Request, status
from fastapi.responses import StreamingResponse

from common.deps import get_actor, get_broadcaster, get_mutation_id
from common.dto import ok
from common.events import Category, Condition, EquipmentRecord, Status
from .schemas import DeleteIn, EquipmentCreateIn, EquipmentUpdateIn
from .service import EquipmentService

logger = logging.getLogger(__name__)

router = APIRouter()


def _svc(request: Request) -> EquipmentService:
    return EquipmentService(broadcaster=get_broadcaster(request))


# ---- queries ----
@router.get("")
async def list_equipment(
    request: Request,
    search: Optional[str] = Query(None, max_length=100),
    category: Optional[Category] = None,
    status_: Optional[Status] = Query(None, alias="status"),
    condition: Optional[Condition] = None,
    actor: Dict[str, Any] = Depends(get_actor),
):
    records = await _svc(request).list_equipment(
        actor, search=search, category=category, status=status_, condition=condition,
    )
    return ok(records, count=len(records))


@router.get("/stats")
async def equipment_stats(request: Request, actor: Dict[str, Any] = Depends(get_actor)):
    return ok(await _svc(request).get_stats(actor['team_id']))


@router.get("/deleted")
async def list_deleted(request: Request, actor: Dict[str, Any] = Depends(get_actor)):
    archived = await _svc(request).list_deleted(actor)
    return ok(archived, count=len(archived))


@router.get("/history/{equipment_id}")
async def equipment_history(equipment_id: str, request: Request, actor: Dict[str, Any] = Depends(get_actor)):
    return ok(await _svc(request).get_history(equipment_id, actor))


@router.get("/activity")
async def recent_activity(
    request: Request,
    limit: int = Query(20, ge=1, le=100),
    actor: Dict[str, Any] = Depends(get_actor),
):
    return ok(await _svc(request).get_activity(actor, limit))


@router.get("/realtime")
async def realtime_stats(request: Request, actor: Dict[str, Any] = Depends(get_actor)):
    broadcaster = get_broadcaster(request)
    if broadcaster is None:
        return ok({'connected': 0, 'scopes': {}})
    return ok(broadcaster.connection_stats())


REPORT_HEADERS = [
    'ID', 'Name', 'Category', 'Status', 'Condition', 'Location', 'Priority',
    'Serial Number', 'Vendor', 'Model', 'Purchase Price', 'Last Checked', 'Checked By', 'Notes',
]


def _report_row(r: EquipmentRecord) -> List[Any]:
    return [
        r.id, r.name, r.category, r.status, r.condition, r.location, r.priority,
        r.serial_number or '', r.vendor or '', r.model or '',
        '' if r.purchase_price is None else r.purchase_price,
        r.last_checked.isoformat() if r.last_checked else '',
        r.checked_by_name or '', r.notes or '',
    ]


def stream_csv_report(records: List[EquipmentRecord]) -> StreamingResponse:
    """Inventory as CSV, one row per active record."""
    buf = io.StringIO()
    w = csv.writer(buf)
    w.writerow(REPORT_HEADERS)
    w.writerows(_report_row(r) for r in records)

    filename = f"equipment-inventory-{date.today().isoformat()}.csv"
    return StreamingResponse(
        iter([buf.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/report")
async def equipment_report(
    request: Request,
    format: Literal["json", "csv"] = "json",
    actor: Dict[str, Any] = Depends(get_actor),
):
    records = await _svc(request).get_report(actor)
    if format == "csv":
        return stream_csv_report(records)
    return ok(records, count=len(records))


# ---- mutations ----
@router.post("", status_code=status.HTTP_201_CREATED)
async def create_equipment(
    body: EquipmentCreateIn,
    request: Request,
    actor: Dict[str, Any] = Depends(get_actor),
    mutation_id: Optional[str] = Depends(get_mutation_id),
):
    fields = body.model_dump(exclude_none=True)
    record = await _svc(request).create_equipment(fields, actor, mutation_id)
    return ok(record, message="Equipment created successfully")


@router.put("/{equipment_id}")
async def update_equipment(
    equipment_id: str,
    body: EquipmentUpdateIn,
    request: Request,
    actor: Dict[str, Any] = Depends(get_actor),
    mutation_id: Optional[str] = Depends(get_mutation_id),
):
    patch = body.model_dump(exclude_unset=True)
    record = await _svc(request).update_equipment(equipment_id, patch, actor, mutation_id)
    return ok(record, message="Equipment updated successfully")


@router.delete("/{equipment_id}")
async def delete_equipment(
    equipment_id: str,
    request: Request,
    body: Optional[DeleteIn] = Body(None),
    actor: Dict[str, Any] = Depends(get_actor),
    mutation_id: Optional[str] = Depends(get_mutation_id),
):
    reason = body.reason if body else None
    result = await _svc(request).delete_equipment(equipment_id, actor, reason, mutation_id)
    return ok(
        {
            'deletedAt': result.archived.deleted_at,
            'deletedBy': result.archived.deleted_by_name,
            'archived': result.archived,
        },
        message="Equipment moved to recently deleted",
    )


@router.post("/deleted/{archived_id}/restore")
async def restore_equipment(
    archived_id: str,
    request: Request,
    actor: Dict[str, Any] = Depends(get_actor),
    mutation_id: Optional[str] = Depends(get_mutation_id),
):
    result = await _svc(request).restore_equipment(archived_id, actor, mutation_id)
    return ok(result.record, message="Equipment restored successfully")


@router.delete("/deleted/{archived_id}/permanent")
async def purge_deleted(archived_id: str, request: Request, actor: Dict[str, Any] = Depends(get_actor)):
    archived = await _svc(request).purge_deleted(archived_id, actor)
    logger.info(f"Archive entry {archived.id} permanently deleted by {actor['name']}")
    return ok(None, message="Equipment permanently deleted")
