"""
HTTP endpoint that receives Google's OAuth redirect.

Endpoints:
  GET /oauth2callback?code&state  -> store the refresh token, resume the chat
  GET /health                     -> liveness
"""

import logging
from typing import Awaitable, Callable, Optional, Sequence

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from callbridge.conversation.engine import ConversationEngine
from callbridge.errors import SheetAuthError
from callbridge.schemas.event_schema import Reply
from callbridge.sheets.oauth import ConsentFlow, decode_state

logger = logging.getLogger(__name__)

Notifier = Callable[[int, Sequence[Reply]], Awaitable[None]]


def create_app(
    engine: ConversationEngine,
    consent: ConsentFlow,
    notify: Notifier,
    lifespan=None,
) -> FastAPI:
    """Build the callback app; ``notify`` delivers replies to the chat."""
    app = FastAPI(title="callbridge OAuth callback", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/oauth2callback", response_class=PlainTextResponse)
    async def oauth2callback(code: Optional[str] = None, state: Optional[str] = None):
        if not code or not state:
            return PlainTextResponse("Missing code or state.", status_code=400)
        try:
            chat_id = decode_state(state)
        except ValueError as err:
            logger.warning("Rejected OAuth callback: %s", err)
            return PlainTextResponse("Invalid state.", status_code=400)

        try:
            refresh_token = await consent.exchange_code(code)
        except SheetAuthError as err:
            return PlainTextResponse(f"Auth error: {err}", status_code=500)

        replies = await engine.complete_consent(chat_id, refresh_token)
        await notify(chat_id, replies)
        logger.info("OAuth consent completed for chat %s", chat_id)
        return PlainTextResponse("Authorization successful! You can close this tab.")

    return app
