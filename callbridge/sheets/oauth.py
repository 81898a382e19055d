"""
OAuth consent for spreadsheet access.

The chat identity travels through Google's consent screen inside the
``state`` parameter (url-encoded JSON ``{"chatId": ...}``) so the
callback server knows which chat to credit the refresh token to.
"""

import asyncio
import json
import os
from typing import Optional
from urllib.parse import quote, unquote

from google_auth_oauthlib.flow import Flow
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from requests import RequestException

from callbridge.config import GoogleConfig
from callbridge.errors import SheetAuthError
from callbridge.logging_context import get_chat_logger

logger = get_chat_logger(__name__)

# Google may echo the granted scopes in a different order.
os.environ.setdefault("OAUTHLIB_RELAX_TOKEN_SCOPE", "1")

SCOPES = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/spreadsheets",
]
AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"


def encode_state(chat_id: int) -> str:
    return quote(json.dumps({"chatId": chat_id}))


def decode_state(state: str) -> int:
    """Recover the chat identity from a consent ``state`` value.

    Raises:
        ValueError: If the state is not the JSON this module produced.
    """
    try:
        payload = json.loads(unquote(state))
    except json.JSONDecodeError as err:
        raise ValueError(f"Invalid state: {err}") from err
    if not isinstance(payload, dict) or "chatId" not in payload:
        raise ValueError("Invalid state: chatId missing")
    chat_id = payload["chatId"]
    if isinstance(chat_id, bool) or not isinstance(chat_id, (int, str)):
        raise ValueError("Invalid state: chatId has the wrong type")
    try:
        return int(chat_id)
    except ValueError as err:
        raise ValueError(f"Invalid state: {err}") from err


class ConsentFlow:
    """Builds consent URLs and trades authorization codes for refresh tokens."""

    def __init__(self, config: GoogleConfig) -> None:
        self.config = config

    def _flow(self) -> Flow:
        client_config = {
            "web": {
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "auth_uri": AUTH_URI,
                "token_uri": TOKEN_URI,
                "redirect_uris": [self.config.redirect_uri],
            }
        }
        # The callback runs in a fresh Flow, so no PKCE verifier can be carried over.
        return Flow.from_client_config(
            client_config,
            scopes=SCOPES,
            redirect_uri=self.config.redirect_uri,
            autogenerate_code_verifier=False,
        )

    def build_consent_url(self, chat_id: int) -> str:
        url, _ = self._flow().authorization_url(
            access_type="offline",
            prompt="consent",
            state=encode_state(chat_id),
        )
        return url

    async def exchange_code(self, code: str) -> Optional[str]:
        """Exchange an authorization code; returns None if Google sent no refresh token.

        Raises:
            SheetAuthError: If the exchange fails.
        """
        flow = self._flow()
        try:
            await asyncio.to_thread(flow.fetch_token, code=code)
        except (OAuth2Error, RequestException) as err:
            logger.error("OAuth code exchange failed: %s", err)
            raise SheetAuthError(f"Authorization code exchange failed: {err}") from err
        refresh_token = flow.credentials.refresh_token
        if not refresh_token:
            logger.warning("Consent returned no refresh token; the user must re-consent")
        return refresh_token
