"""
Tabular query builder over the backend's REST data endpoint.

    await client.table("bookmarks").select("*").order("created_at", desc=True).execute()
    await client.table("bookmarks").insert({...}).select().single().execute()
    await client.table("bookmarks").delete().eq("id", bid).eq("owner_id", uid).execute()
"""
import logging
from typing import TYPE_CHECKING

import httpx

from backend_client.errors import KIND_STORE, BackendResult, error_from_response, network_error

if TYPE_CHECKING:
    from backend_client.client import BackendClient

logger = logging.getLogger(__name__)

SINGLE_OBJECT = "application/vnd.pgrst.object+json"


class QueryBuilder:
    def __init__(self, client: "BackendClient", table: str):
        self._client = client
        self._table = table
        self._method = "GET"
        self._params: list[tuple[str, str]] = []
        self._headers: dict[str, str] = {}
        self._body = None

    def select(self, columns: str = "*") -> "QueryBuilder":
        """Columns to read; after insert/delete, also asks for the affected rows back."""
        self._params.append(("select", columns))
        if self._method != "GET":
            self._headers["Prefer"] = "return=representation"
        return self

    def insert(self, values: dict | list) -> "QueryBuilder":
        self._method = "POST"
        self._body = values
        return self

    def delete(self) -> "QueryBuilder":
        self._method = "DELETE"
        return self

    def eq(self, column: str, value) -> "QueryBuilder":
        self._params.append((column, f"eq.{value}"))
        return self

    def order(self, column: str, *, desc: bool = False) -> "QueryBuilder":
        self._params.append(("order", f"{column}.{'desc' if desc else 'asc'}"))
        return self

    def single(self) -> "QueryBuilder":
        """Expect exactly one row; data becomes that row instead of a list."""
        self._headers["Accept"] = SINGLE_OBJECT
        return self

    async def execute(self) -> BackendResult:
        try:
            response = await self._client.request(
                self._method,
                f"/rest/v1/{self._table}",
                params=self._params,
                json=self._body,
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            logger.warning("%s %s failed: %s", self._method, self._table, e.__class__.__name__)
            return network_error(e)
        if response.status_code >= 400:
            return BackendResult(error=error_from_response(response, KIND_STORE))
        if response.status_code == 204 or not response.content:
            return BackendResult(data=None)
        return BackendResult(data=response.json())
