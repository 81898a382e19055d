"""
Typed accessors over the key-value store.

Each entity family has its own get/save/delete so clearing one (e.g.
the chat session) never touches another (e.g. the sheet token).
"""

import logging
from typing import Optional

from pydantic import ValidationError

from callbridge.schemas.record_schema import PortalCredential, SheetToken
from callbridge.schemas.session_schema import ChatSession
from callbridge.storage.store import EntityKind, KeyValueStore

logger = logging.getLogger(__name__)


class StateRepository:
    """Per-chat state persisted in an external KeyValueStore."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    # ------------------------------------------------------------------ #
    # Workflow session
    # ------------------------------------------------------------------ #

    async def get_session(self, chat_id: int) -> Optional[ChatSession]:
        """Load the session; an unreadable one counts as absent."""
        raw = await self.store.get(EntityKind.SESSION, chat_id)
        if raw is None:
            return None
        try:
            return ChatSession.model_validate(raw)
        except ValidationError as err:
            logger.warning("Discarding invalid session for chat %s: %s", chat_id, err.errors()[:1])
            return None

    async def save_session(self, chat_id: int, session: ChatSession) -> None:
        await self.store.set(EntityKind.SESSION, chat_id, session.model_dump(mode="json"))

    async def delete_session(self, chat_id: int) -> None:
        await self.store.delete(EntityKind.SESSION, chat_id)

    # ------------------------------------------------------------------ #
    # Portal credential
    # ------------------------------------------------------------------ #

    async def get_credential(self, chat_id: int) -> Optional[PortalCredential]:
        raw = await self.store.get(EntityKind.PORTAL_CREDENTIAL, chat_id)
        if raw is None:
            return None
        try:
            return PortalCredential.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding malformed portal credential for chat %s", chat_id)
            return None

    async def save_credential(self, chat_id: int, email: str, password: str) -> None:
        credential = PortalCredential(email=email, password=password)
        await self.store.set(EntityKind.PORTAL_CREDENTIAL, chat_id, credential.model_dump())
        logger.info("Portal credential saved for %s", email)

    async def delete_credential(self, chat_id: int) -> None:
        await self.store.delete(EntityKind.PORTAL_CREDENTIAL, chat_id)

    # ------------------------------------------------------------------ #
    # Spreadsheet OAuth token
    # ------------------------------------------------------------------ #

    async def get_sheet_token(self, chat_id: int) -> Optional[str]:
        """Return the refresh token; a malformed stored value is deleted."""
        raw = await self.store.get(EntityKind.SHEET_TOKEN, chat_id)
        if raw is None:
            return None
        try:
            return SheetToken.model_validate(raw).refresh_token
        except ValidationError:
            logger.warning("Corrupted sheet token for chat %s, deleting it", chat_id)
            await self.store.delete(EntityKind.SHEET_TOKEN, chat_id)
            return None

    async def save_sheet_token(self, chat_id: int, refresh_token: str) -> None:
        await self.store.set(
            EntityKind.SHEET_TOKEN, chat_id, SheetToken(refresh_token=refresh_token).model_dump()
        )

    async def delete_sheet_token(self, chat_id: int) -> None:
        await self.store.delete(EntityKind.SHEET_TOKEN, chat_id)

    # ------------------------------------------------------------------ #
    # Linked sheet
    # ------------------------------------------------------------------ #

    async def get_sheet_id(self, chat_id: int) -> Optional[str]:
        raw = await self.store.get(EntityKind.SHEET_ID, chat_id)
        if not raw:
            return None
        return raw.get("sheet_id") or None

    async def save_sheet_id(self, chat_id: int, sheet_id: str) -> None:
        await self.store.set(EntityKind.SHEET_ID, chat_id, {"sheet_id": sheet_id})

    async def delete_sheet_id(self, chat_id: int) -> None:
        await self.store.delete(EntityKind.SHEET_ID, chat_id)

    # ------------------------------------------------------------------ #
    # Everything
    # ------------------------------------------------------------------ #

    async def forget_chat(self, chat_id: int) -> None:
        """Delete every record for a chat (logout)."""
        for kind in EntityKind:
            await self.store.delete(kind, chat_id)
        logger.info("All state removed for chat %s", chat_id)
