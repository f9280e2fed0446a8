"""
HTTP side of the sync client: the equipment REST API as typed async calls.

Error responses are rebuilt into the shared ``common.errors`` classes so the
reconciler can roll back on exactly the failures the server reports.
"""
from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging

import httpx
from pydantic.alias_generators import to_camel

from common.errors import AppError, AuthError, error_from_response
from common.events import ArchivedEquipmentRecord, EquipmentRecord, EquipmentStats, HistoryEntry
from .config import ClientSettings, client_settings

logger = logging.getLogger(__name__)


class NetworkError(AppError):
    """The request never got an answer (connection refused, timeout, ...)."""
    status_code = 503
    default_message = "Network error"


def _wire_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """snake_case field dict -> camelCase JSON body"""
    body = {}
    for key, value in fields.items():
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        body[to_camel(key)] = value
    return body


class GatewayClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        *,
        settings: Optional[ClientSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or client_settings
        self.token = token
        self.user: Optional[Dict[str, Any]] = None
        self._http = httpx.AsyncClient(
            base_url=(base_url or self.settings.BASE_URL).rstrip("/") + self.settings.API_PREFIX,
            timeout=self.settings.REQUEST_TIMEOUT,
            transport=transport,
        )

    async def __aenter__(self) -> "GatewayClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ---- plumbing ----
    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        mutation_id: Optional[str] = None,
        raw: bool = False,
    ) -> Any:
        headers = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if mutation_id:
            headers["X-Mutation-Id"] = mutation_id
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        try:
            resp = await self._http.request(method, path, json=json, params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {path} failed before a response: {e}")
            raise NetworkError(f"Network error: {e}")

        if resp.status_code >= 400:
            try:
                payload = resp.json()
            except ValueError:
                payload = {"message": resp.text or None}
            raise error_from_response(resp.status_code, payload)
        if raw:
            return resp
        return resp.json()

    async def _data(self, method: str, path: str, **kwargs) -> Any:
        return (await self._request(method, path, **kwargs)).get("data")

    # ---- auth ----
    def _adopt(self, body: Dict[str, Any]) -> Dict[str, Any]:
        if not body.get("token"):
            raise AuthError("No token in auth response")
        self.token = body["token"]
        self.user = body.get("user")
        return body

    async def register(self, name: str, phone: str, team_id: Optional[str] = None) -> Dict[str, Any]:
        payload = {"name": name, "phone": phone}
        if team_id:
            payload["teamId"] = team_id
        return self._adopt(await self._request("POST", "/auth/register", json=payload))

    async def login(self, phone: str) -> Dict[str, Any]:
        return self._adopt(await self._request("POST", "/auth/login", json={"phone": phone}))

    async def me(self) -> Dict[str, Any]:
        return (await self._request("GET", "/auth/me"))["user"]

    # ---- queries ----
    async def list_equipment(self, **filters) -> List[EquipmentRecord]:
        data = await self._data("GET", "/equipment", params=filters or None)
        return [EquipmentRecord.model_validate(r) for r in data]

    async def get_stats(self) -> EquipmentStats:
        return EquipmentStats.model_validate(await self._data("GET", "/equipment/stats"))

    async def list_deleted(self) -> List[ArchivedEquipmentRecord]:
        data = await self._data("GET", "/equipment/deleted")
        return [ArchivedEquipmentRecord.model_validate(r) for r in data]

    async def get_history(self, equipment_id: str) -> List[HistoryEntry]:
        data = await self._data("GET", f"/equipment/history/{equipment_id}")
        return [HistoryEntry.model_validate(h) for h in data]

    async def get_activity(self, limit: int = 20) -> List[HistoryEntry]:
        data = await self._data("GET", "/equipment/activity", params={"limit": limit})
        return [HistoryEntry.model_validate(h) for h in data]

    async def download_report_csv(self) -> str:
        resp = await self._request("GET", "/equipment/report", params={"format": "csv"}, raw=True)
        return resp.text

    # ---- mutations ----
    async def create_equipment(self, fields: Dict[str, Any], mutation_id: Optional[str] = None) -> EquipmentRecord:
        data = await self._data("POST", "/equipment", json=_wire_fields(fields), mutation_id=mutation_id)
        return EquipmentRecord.model_validate(data)

    async def update_equipment(
        self, equipment_id: str, patch: Dict[str, Any], mutation_id: Optional[str] = None
    ) -> EquipmentRecord:
        data = await self._data(
            "PUT", f"/equipment/{equipment_id}", json=_wire_fields(patch), mutation_id=mutation_id,
        )
        return EquipmentRecord.model_validate(data)

    async def delete_equipment(
        self, equipment_id: str, reason: Optional[str] = None, mutation_id: Optional[str] = None
    ) -> ArchivedEquipmentRecord:
        body = {"reason": reason} if reason else None
        data = await self._data("DELETE", f"/equipment/{equipment_id}", json=body, mutation_id=mutation_id)
        return ArchivedEquipmentRecord.model_validate(data["archived"])

    async def restore_equipment(self, archived_id: str, mutation_id: Optional[str] = None) -> EquipmentRecord:
        data = await self._data("POST", f"/equipment/deleted/{archived_id}/restore", mutation_id=mutation_id)
        return EquipmentRecord.model_validate(data)

    async def purge_deleted(self, archived_id: str) -> None:
        await self._request("DELETE", f"/equipment/deleted/{archived_id}/permanent")
