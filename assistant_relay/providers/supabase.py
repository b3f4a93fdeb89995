from typing import Any, Dict, List, Optional

import httpx

from ..errors import ProviderHTTPError
from .base import ThreadStore


class SupabaseThreadStore(ThreadStore):
    """user_id -> thread_id rows through the Supabase PostgREST endpoint.

    Expects a table (default ``user_threads``) with a unique ``user_id`` text
    column and a ``thread_id`` text column.
    """

    provider_name: str = "supabase"

    def __init__(self, url: str, service_key: str, table: str = "user_threads", timeout: float = 10.0):
        if not url or not service_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required for Supabase store")
        self._rest_url = url.rstrip("/") + "/rest/v1/" + (table or "user_threads")
        self._key = service_key
        self.table = table or "user_threads"
        self._timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "apikey": self._key,
            "Authorization": f"Bearer {self._key}",
            "Content-Type": "application/json",
        }

    async def get_thread_id(self, user_id: str) -> Optional[str]:
        params = {"select": "thread_id", "user_id": f"eq.{user_id}", "limit": "1"}
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.get(self._rest_url, headers=self._headers(), params=params)
        if resp.status_code >= 400:
            raise ProviderHTTPError(f"Supabase select error {resp.status_code}: {resp.text[:512]}", resp.status_code, resp.text)
        rows: List[Dict[str, Any]] = resp.json() or []
        if not rows:
            return None
        thread_id = rows[0].get("thread_id")
        return str(thread_id) if thread_id else None

    async def upsert(self, user_id: str, thread_id: str) -> None:
        headers = self._headers()
        headers["Prefer"] = "resolution=merge-duplicates,return=minimal"
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.post(
                self._rest_url,
                headers=headers,
                params={"on_conflict": "user_id"},
                json={"user_id": user_id, "thread_id": thread_id},
            )
        if resp.status_code >= 400:
            raise ProviderHTTPError(f"Supabase upsert error {resp.status_code}: {resp.text[:512]}", resp.status_code, resp.text)
