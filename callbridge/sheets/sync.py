"""
Spreadsheet writer authorised by a per-chat OAuth refresh token.

The Google API client is synchronous, so every request runs in a worker
thread. ``service_factory`` builds the Sheets service from a refresh
token and can be swapped for a fake in tests.
"""

import asyncio
from typing import Any, Callable, Optional, Sequence

from google.auth.exceptions import GoogleAuthError, RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from callbridge.config import GoogleConfig
from callbridge.errors import SheetAuthError, SheetWriteError
from callbridge.logging_context import get_chat_logger
from callbridge.schemas.record_schema import CallRecord
from callbridge.sheets.oauth import SCOPES, TOKEN_URI
from callbridge.storage.repository import StateRepository
from callbridge.storage.store import KeyValueStore

logger = get_chat_logger(__name__)

HEADER = [
    "Caller", "Team", "Callee", "Status", "Duration (s)",
    "Talktime (s)", "Hangup By", "Call Date", "Call Time", "End Time",
]

ServiceFactory = Callable[[str], Any]


def to_sheet_row(record: CallRecord) -> list[Any]:
    # The agent goes under "Caller": that is how existing sheets are laid out.
    return [
        record.agent, record.team, record.callee, record.status,
        record.duration_sec, record.talktime_sec, record.hangup_by,
        record.call_date, record.call_time, record.end_time,
    ]


def to_sheet_rows(records: Sequence[CallRecord]) -> list[list[Any]]:
    """Header plus one row per record."""
    return [list(HEADER), *(to_sheet_row(r) for r in records)]


class SheetSyncAdapter:
    """Writes call records into a linked spreadsheet on behalf of a chat."""

    def __init__(
        self,
        store: KeyValueStore,
        oauth_config: GoogleConfig,
        service_factory: Optional[ServiceFactory] = None,
    ) -> None:
        self.repository = StateRepository(store)
        self.oauth_config = oauth_config
        self._service_factory = service_factory or self._build_service
        self._sheet = oauth_config.sheet_name

    async def write(
        self, chat_id: int, sheet_id: str, rows: Sequence[CallRecord], overwrite: bool
    ) -> None:
        """Write header + rows, replacing the sheet contents or appending.

        Raises:
            SheetAuthError: No usable refresh token; the chat must re-consent.
            SheetWriteError: Any other spreadsheet API failure.
        """
        values = to_sheet_rows(rows)
        service = await self._service(chat_id)
        anchor = f"{self._sheet}!A1"

        def _write() -> None:
            api = service.spreadsheets().values()
            if overwrite:
                api.clear(spreadsheetId=sheet_id, range=f"{self._sheet}!A1:Z").execute()
                api.update(
                    spreadsheetId=sheet_id, range=anchor,
                    valueInputOption="RAW", body={"values": values},
                ).execute()
            else:
                api.append(
                    spreadsheetId=sheet_id, range=anchor,
                    valueInputOption="RAW", insertDataOption="INSERT_ROWS",
                    body={"values": values},
                ).execute()

        await self._call(chat_id, _write, "write")
        logger.info(
            "%s %d rows to sheet %s", "Overwrote" if overwrite else "Appended", len(rows), sheet_id
        )

    async def read(self, chat_id: int, sheet_id: str) -> list[list[Any]]:
        """Return the current values of the target range."""
        service = await self._service(chat_id)

        def _read() -> list[list[Any]]:
            result = (
                service.spreadsheets().values()
                .get(spreadsheetId=sheet_id, range=f"{self._sheet}!A1:Z")
                .execute()
            )
            return result.get("values", [])

        return await self._call(chat_id, _read, "read")

    # ------------------------------------------------------------------ #

    async def _service(self, chat_id: int) -> Any:
        refresh_token = await self.repository.get_sheet_token(chat_id)
        if not refresh_token:
            raise SheetAuthError("Spreadsheet access is not authorised")
        return self._service_factory(refresh_token)

    async def _call(self, chat_id: int, fn: Callable[[], Any], op: str) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except RefreshError as err:
            logger.warning("Sheet token refresh failed, dropping token: %s", err)
            await self.repository.delete_sheet_token(chat_id)
            raise SheetAuthError("Spreadsheet authorisation expired or was revoked") from err
        except HttpError as err:
            if err.resp.status == 401:
                await self.repository.delete_sheet_token(chat_id)
                raise SheetAuthError("Spreadsheet authorisation was rejected") from err
            logger.error("Sheet %s failed with HTTP %s", op, err.resp.status)
            raise SheetWriteError(f"Failed to {op} sheet: HTTP {err.resp.status}") from err
        except (GoogleAuthError, OSError) as err:
            logger.error("Sheet %s failed: %s", op, err)
            raise SheetWriteError(f"Failed to {op} sheet: {err}") from err

    def _build_service(self, refresh_token: str) -> Any:
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.oauth_config.client_id,
            client_secret=self.oauth_config.client_secret,
            scopes=SCOPES,
        )
        return build("sheets", "v4", credentials=credentials, cache_discovery=False)
