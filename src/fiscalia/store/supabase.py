"""Supabase (PostgREST) record store over an async httpx client."""

from typing import Any

import httpx
import structlog

from fiscalia.config import get_settings
from fiscalia.errors import PersistenceError
from fiscalia.store.base import RecordStore

logger = structlog.get_logger(__name__)

DB_ERROR_MESSAGE = "Erreur de base de données. Réessaie dans un instant."


class SupabaseStore(RecordStore):
    """Talks to the ``/rest/v1`` endpoint with the service role key."""

    def __init__(
        self,
        supabase_url: str | None = None,
        service_key: str | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        url = (supabase_url or settings.supabase_url or "").strip().rstrip("/")
        if service_key is None and settings.supabase_service_role_key is not None:
            service_key = settings.supabase_service_role_key.get_secret_value()
        if not url or not service_key:
            raise PersistenceError(
                DB_ERROR_MESSAGE,
                details="Supabase is not configured. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY.",
            )
        self.base_url = f"{url}/rest/v1"
        self._timeout = timeout or settings.db_timeout_seconds
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers,
                timeout=httpx.Timeout(self._timeout),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def _filter_params(
        filters: dict[str, Any] | None, ilike: dict[str, str] | None = None
    ) -> dict[str, str]:
        params: dict[str, str] = {}
        for column, value in (filters or {}).items():
            if value is None:
                params[column] = "is.null"
            elif isinstance(value, bool):
                params[column] = f"eq.{str(value).lower()}"
            else:
                params[column] = f"eq.{value}"
        for column, pattern in (ilike or {}).items():
            params[column] = f"ilike.{pattern}"
        return params

    async def _request(
        self,
        method: str,
        table: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        client = await self._get_client()
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await client.request(
                method=method,
                url=f"/{table}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.TransportError as e:
            logger.error("store_connection_error", table=table, method=method, error=str(e))
            raise PersistenceError(DB_ERROR_MESSAGE, details=str(e)) from e

        if response.status_code >= 400:
            snippet = response.text[:1200]
            logger.error(
                "store_request_failed",
                table=table,
                method=method,
                status=response.status_code,
                body=snippet,
            )
            raise PersistenceError(
                DB_ERROR_MESSAGE,
                details={"status": response.status_code, "body": snippet},
            )
        if response.text and "application/json" in response.headers.get("content-type", ""):
            return response.json()
        return None

    async def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        rows = await self._request(
            "GET", table, params={"select": "*", "id": f"eq.{row_id}", "limit": 1}
        )
        return rows[0] if rows else None

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        ilike: dict[str, str] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"select": "*", **self._filter_params(filters, ilike)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = limit
        return await self._request("GET", table, params=params) or []

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        rows = await self._request("POST", table, json=row, prefer="return=representation")
        if not rows:
            raise PersistenceError(DB_ERROR_MESSAGE, details=f"insert into {table} returned nothing")
        return rows[0]

    async def update(
        self, table: str, row_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        rows = await self._request(
            "PATCH",
            table,
            params={"id": f"eq.{row_id}"},
            json=changes,
            prefer="return=representation",
        )
        return rows[0] if rows else None

    async def delete(self, table: str, row_id: str) -> bool:
        rows = await self._request(
            "DELETE", table, params={"id": f"eq.{row_id}"}, prefer="return=representation"
        )
        return bool(rows)
