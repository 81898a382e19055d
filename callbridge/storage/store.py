"""
External key-value store for per-chat state.

Everything durable (portal credentials, cookies, the sheet OAuth token,
the linked sheet id and the workflow session) lives here, keyed by
``(kind, chat identity)``. ``get`` returns None for "not found" and
raises StoreError for real failures so callers never confuse the two.

Two backends:
- InMemoryStore: tests and the console demo.
- SupabaseStore: production; a single table with a composite key.

    create table chat_state (
        kind text not null,
        telegram_id bigint not null,
        payload jsonb not null,
        updated_at timestamptz default now(),
        primary key (kind, telegram_id)
    );
"""

import asyncio
import copy
import json
import logging
from enum import Enum
from typing import Any, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import create_client

from callbridge.errors import StoreError

logger = logging.getLogger(__name__)

JsonBlob = dict[str, Any]


class EntityKind(str, Enum):
    """Independent record families stored per chat identity."""
    PORTAL_CREDENTIAL = "portal_credential"
    PORTAL_COOKIES = "portal_cookies"
    SHEET_TOKEN = "sheet_token"
    SHEET_ID = "sheet_id"
    SESSION = "session"


class KeyValueStore:
    """Interface every backend implements."""

    async def get(self, kind: EntityKind, chat_id: int) -> Optional[JsonBlob]:
        raise NotImplementedError

    async def set(self, kind: EntityKind, chat_id: int, value: JsonBlob) -> None:
        raise NotImplementedError

    async def delete(self, kind: EntityKind, chat_id: int) -> None:
        raise NotImplementedError


class InMemoryStore(KeyValueStore):
    """Process-local store. Values are JSON round-tripped like a real backend."""

    def __init__(self) -> None:
        self._data: dict[tuple[str, int], str] = {}

    async def get(self, kind: EntityKind, chat_id: int) -> Optional[JsonBlob]:
        raw = self._data.get((kind.value, chat_id))
        return json.loads(raw) if raw is not None else None

    async def set(self, kind: EntityKind, chat_id: int, value: JsonBlob) -> None:
        try:
            self._data[(kind.value, chat_id)] = json.dumps(value)
        except (TypeError, ValueError) as err:
            raise StoreError(f"Value for {kind.value} is not JSON serializable: {err}") from err

    async def delete(self, kind: EntityKind, chat_id: int) -> None:
        self._data.pop((kind.value, chat_id), None)

    def snapshot(self) -> dict[tuple[str, int], JsonBlob]:
        """Return a decoded copy of everything stored (test helper)."""
        return {k: copy.deepcopy(json.loads(v)) for k, v in self._data.items()}


class SupabaseStore(KeyValueStore):
    """Supabase/PostgREST backed store.

    The supabase client is synchronous, so each call runs in a worker
    thread to keep the event loop free for other chats.
    """

    def __init__(self, url: str, key: str, table: str = "chat_state", client: Any = None) -> None:
        if client is None:
            if not url or not key:
                raise ValueError("SUPABASE_URL and SUPABASE_KEY are required for the supabase store")
            client = create_client(url, key)
        self._client = client
        self._table = table

    async def get(self, kind: EntityKind, chat_id: int) -> Optional[JsonBlob]:
        def _query() -> Optional[JsonBlob]:
            result = (
                self._client.table(self._table)
                .select("payload")
                .eq("kind", kind.value)
                .eq("telegram_id", chat_id)
                .limit(1)
                .execute()
            )
            if not result.data:
                return None
            return result.data[0]["payload"]

        return await self._run(_query, "get", kind, chat_id)

    async def set(self, kind: EntityKind, chat_id: int, value: JsonBlob) -> None:
        def _upsert() -> None:
            (
                self._client.table(self._table)
                .upsert(
                    {"kind": kind.value, "telegram_id": chat_id, "payload": value},
                    on_conflict="kind,telegram_id",
                )
                .execute()
            )

        await self._run(_upsert, "set", kind, chat_id)

    async def delete(self, kind: EntityKind, chat_id: int) -> None:
        def _delete() -> None:
            (
                self._client.table(self._table)
                .delete()
                .eq("kind", kind.value)
                .eq("telegram_id", chat_id)
                .execute()
            )

        await self._run(_delete, "delete", kind, chat_id)

    async def _run(self, fn, op: str, kind: EntityKind, chat_id: int):
        try:
            return await asyncio.to_thread(fn)
        except (APIError, httpx.HTTPError) as err:
            logger.error("Store %s failed for %s/%s: %s", op, kind.value, chat_id, err)
            raise StoreError(f"Store {op} failed for {kind.value}: {err}") from err


def build_store(backend: str, url: str = "", key: str = "", table: str = "chat_state") -> KeyValueStore:
    """Create the configured store backend."""
    if backend == "memory":
        logger.warning("Using in-memory store: state is lost on restart")
        return InMemoryStore()
    if backend == "supabase":
        return SupabaseStore(url, key, table)
    raise ValueError(f"Unknown store backend: {backend!r}")
