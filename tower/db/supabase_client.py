"""
Supabase client for talking to the recurring order tables from Python.

This client provides async select/insert/update/delete helpers on top of the
Supabase PostgREST HTTP API.
"""

from typing import Any, Dict, List, Optional

import httpx

from tower.config import settings


class SupabaseError(Exception):
    """Base exception for Supabase errors."""
    pass


class SupabaseAuthError(SupabaseError):
    """Authentication error when calling Supabase."""
    pass


class SupabaseQueryError(SupabaseError):
    """Error executing a PostgREST request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SupabaseClient:
    """
    Async client for the Supabase REST API.

    Example usage:
        client = SupabaseClient(
            url="https://your-project.supabase.co",
            service_key="service-role-key",
        )

        # Select
        rows = await client.select("recurring_orders", {"wallet_address": "eq.0xabc"})

        # Conditional update (only rows matching every filter change)
        rows = await client.update(
            "recurring_orders",
            {"is_active": False},
            {"id": "eq.123", "is_active": "is.true"},
        )
    """

    def __init__(
        self,
        url: Optional[str] = None,
        service_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.supabase_url
        self.service_key = service_key or settings.supabase_service_key
        self.timeout = timeout or settings.supabase_timeout_seconds
        self._transport = transport

        if not self.url:
            raise SupabaseError("SUPABASE_URL is required")

        # Remove trailing slash if present
        self.url = self.url.rstrip("/")

        self._client: Optional[httpx.AsyncClient] = None

    @property
    def headers(self) -> Dict[str, str]:
        """Get headers for PostgREST requests."""
        headers = {"Content-Type": "application/json"}
        if self.service_key:
            headers["apikey"] = self.service_key
            headers["Authorization"] = f"Bearer {self.service_key}"
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.url}/rest/v1",
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        client = await self._get_client()
        headers = {"Prefer": prefer} if prefer else None

        try:
            response = await client.request(
                method,
                f"/{table}",
                params=params,
                json=json,
                headers=headers,
            )

            if response.status_code == 401:
                raise SupabaseAuthError("Invalid or missing service key")

            response.raise_for_status()

            if not response.content:
                return []
            data = response.json()
            if isinstance(data, dict):
                return [data]
            return data

        except httpx.HTTPStatusError as e:
            raise SupabaseQueryError(
                f"{method} {table} failed: {e.response.text}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise SupabaseQueryError(f"Request failed: {str(e)}") from e

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, str]] = None,
        *,
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Select rows.

        Args:
            table: Table name
            filters: PostgREST filters, e.g. {"is_active": "is.true"}
            order: Ordering, e.g. "next_execution_date.asc"
            limit: Maximum rows

        Returns:
            Matching rows
        """
        params: Dict[str, str] = {"select": "*", **(filters or {})}
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(limit)
        return await self._request("GET", table, params=params)

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it as stored."""
        rows = await self._request("POST", table, json=row, prefer="return=representation")
        if not rows:
            raise SupabaseQueryError(f"Insert into {table} returned no data")
        return rows[0]

    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        filters: Dict[str, str],
    ) -> List[Dict[str, Any]]:
        """Update matching rows; returns the rows that actually changed."""
        return await self._request(
            "PATCH",
            table,
            params=filters,
            json=values,
            prefer="return=representation",
        )

    async def delete(self, table: str, filters: Dict[str, str]) -> List[Dict[str, Any]]:
        return await self._request("DELETE", table, params=filters, prefer="return=representation")


_supabase_client: Optional[SupabaseClient] = None


def get_supabase_client() -> SupabaseClient:
    """Get the singleton Supabase client instance."""
    global _supabase_client
    if _supabase_client is None:
        _supabase_client = SupabaseClient()
    return _supabase_client


async def close_supabase_client() -> None:
    """Close the singleton's HTTP client, if one was ever created."""
    global _supabase_client
    if _supabase_client is not None:
        await _supabase_client.close()
        _supabase_client = None
