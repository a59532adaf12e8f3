from __future__ import annotations

from typing import Any

import httpx

from .config import get_settings


class StoreError(Exception):
    """A remote table could not be read or written."""


class SupabaseClient:
    """Thin async client for the Supabase REST (PostgREST) endpoint."""

    def __init__(self, url: str | None = None, key: str | None = None,
                 timeout: float | None = None,
                 transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings() if None in (url, key, timeout) else None
        self.url = url or settings.supabase_url
        self.key = key or settings.supabase_key
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.base_url = f"{self.url.rstrip('/')}/rest/v1"
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={
                    "apikey": self.key,
                    "Authorization": f"Bearer {self.key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self, method: str, table: str, **kwargs
    ) -> Any:
        client = await self._get_client()
        url = f"{self.base_url}/{table}"
        try:
            response = await client.request(method, url, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise StoreError(f"{method} {table} failed: {e}") from e
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            # Proxies and captive portals answer 200 with an HTML page
            raise StoreError(f"{method} {table} returned a non-JSON body: {e}") from e

    async def select_one(
        self, table: str, owner_code: str, order: str | None = None
    ) -> dict | None:
        """Fetch a single row for an owner, newest first when `order` is given."""
        params = {"select": "*", "owner_code": f"eq.{owner_code}", "limit": "1"}
        if order:
            params["order"] = f"{order}.desc"
        rows = await self._request("GET", table, params=params)
        if isinstance(rows, list) and rows:
            return rows[0]
        return None

    async def upsert(self, table: str, row: dict) -> None:
        """Insert or replace the whole row keyed by owner_code."""
        await self._request(
            "POST",
            table,
            params={"on_conflict": "owner_code"},
            json=row,
            headers={"Prefer": "resolution=merge-duplicates,return=minimal"},
        )

    async def update_if(
        self, table: str, owner_code: str, column: str, expected: str, values: dict
    ) -> bool:
        """
        Update the owner's row only if `column` still equals `expected`.

        Returns False when no row matched, i.e. someone else wrote first.
        """
        rows = await self._request(
            "PATCH",
            table,
            params={"owner_code": f"eq.{owner_code}", column: f"eq.{expected}"},
            json=values,
            headers={"Prefer": "return=representation"},
        )
        return bool(rows)

    async def insert(self, table: str, row: dict) -> None:
        await self._request(
            "POST", table, json=row, headers={"Prefer": "return=minimal"}
        )

    async def delete(self, table: str, owner_code: str) -> None:
        await self._request(
            "DELETE", table, params={"owner_code": f"eq.{owner_code}"}
        )


# Singleton instance
_client: SupabaseClient | None = None


def get_supabase_client() -> SupabaseClient:
    global _client
    if _client is None:
        _client = SupabaseClient()
    return _client
