"""
Browser-like HTTP client for the call-center portal.

The portal has no public API: the client logs in through the HTML form
(CSRF token + session cookies) and downloads the daily voice export as
an Excel workbook. Cookies are kept per chat identity in the external
store so a warm session survives restarts and is never shared between
chats.

Usage:
    client = PortalClient(store, base_url="https://my.flyfonetalk.com")
    rows = await client.download_report(chat_id, "2025-07-01", email, password)
"""

import io
import re
import zipfile
from typing import Any, Optional

import httpx
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from callbridge.errors import ExportError, PortalAuthError, PortalUnavailableError, ProtocolError
from callbridge.logging_context import get_chat_logger
from callbridge.storage.store import EntityKind, KeyValueStore

logger = get_chat_logger(__name__)

CSRF_RE = re.compile(r'name="csrf_webcall" value="([^"]+)"')
WRONG_PASSWORD_MARKER = "password is incorrect"
EXCEL_MIME = "application/vnd.ms-excel"

USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

RawRows = list[list[Any]]


def parse_workbook(content: bytes) -> RawRows:
    """Read the first worksheet of an XLSX payload into a list of rows.

    Row 0 is the header. Cells keep their native types (str, numbers,
    datetimes); normalization happens in the reports package.

    Raises:
        ExportError: If the payload is not a readable workbook.
    """
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError, OSError) as err:
        raise ExportError(f"Export payload is not a readable workbook: {err}") from err
    try:
        if not workbook.worksheets:
            raise ExportError("Export workbook has no worksheets")
        sheet = workbook.worksheets[0]
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


class PortalClient:
    """
    Session-cookie client for the portal.

    One short-lived httpx.AsyncClient is opened per operation with the
    chat's stored cookie jar loaded into it. ``transport`` lets tests
    plug in an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        store: KeyValueStore,
        base_url: str = "https://my.flyfonetalk.com",
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def ensure_logged_in(self, chat_id: int, email: str, password: str) -> None:
        """Make sure the chat's cookie jar holds a live portal session.

        Raises:
            ValueError: If email or password is empty.
            PortalAuthError: If the portal rejects the credentials.
            ProtocolError: If the login pages look different than expected.
            PortalUnavailableError: If the portal cannot be reached.
        """
        _require_credentials(email, password)
        async with await self._open(chat_id) as client:
            await self._login(client, chat_id, email, password)

    async def download_report(self, chat_id: int, date_str: str, email: str, password: str) -> RawRows:
        """Log in if needed and download the voice call export for one day.

        Raises:
            ExportError: Non-200 export response or unreadable workbook.
            PortalAuthError, ProtocolError, PortalUnavailableError: From login.
        """
        _require_credentials(email, password)
        async with await self._open(chat_id) as client:
            await self._login(client, chat_id, email, password)
            params = {
                "from_date": date_str,
                "to_date": date_str,
                "phone": "",
                "status": "0",
                "autodial_id": "",
                "team_id": "0",
            }
            response = await self._send(
                client, "GET", "/api/export/voice",
                params=params, headers={"Accept": EXCEL_MIME},
            )
        if response.status_code != 200:
            logger.warning("Export for %s failed with status %d", date_str, response.status_code)
            raise ExportError(f"Export failed: {response.status_code}")

        rows = parse_workbook(response.content)
        logger.info("Downloaded export for %s (%d rows incl. header)", date_str, len(rows))
        return rows

    async def logout(self, chat_id: int) -> None:
        """Forget the chat's portal session cookies."""
        await self.store.delete(EntityKind.PORTAL_COOKIES, chat_id)

    # ------------------------------------------------------------------ #
    # Login sequence
    # ------------------------------------------------------------------ #

    async def _login(self, client: httpx.AsyncClient, chat_id: int, email: str, password: str) -> None:
        probe = await self._send(client, "GET", "/dashboard")
        if probe.status_code == 200:
            logger.debug("Portal session still valid")
            return

        login_page = await self._send(client, "GET", "/login")
        if login_page.status_code != 200:
            raise ProtocolError(f"Login page returned {login_page.status_code}")
        match = CSRF_RE.search(login_page.text)
        if not match:
            raise ProtocolError("CSRF token not found on login page")

        response = await self._send(
            client, "POST", "/login",
            data={"csrf_webcall": match.group(1), "username": email, "password": password},
            headers={"Referer": f"{self.base_url}/login", "Origin": self.base_url},
        )
        logger.info("Login POST for %s returned %d", email, response.status_code)

        if response.status_code == 200 and WRONG_PASSWORD_MARKER in response.text:
            raise PortalAuthError("Incorrect email or password")
        if response.status_code not in (200, 302, 303):
            raise ProtocolError(f"Unexpected login response status {response.status_code}")

        await self._save_cookies(chat_id, client.cookies)

    # ------------------------------------------------------------------ #
    # HTTP plumbing
    # ------------------------------------------------------------------ #

    async def _open(self, chat_id: int) -> httpx.AsyncClient:
        cookies = await self._load_cookies(chat_id)
        return httpx.AsyncClient(
            base_url=self.base_url,
            cookies=cookies,
            timeout=self.timeout,
            follow_redirects=False,
            headers={"User-Agent": USER_AGENT},
            transport=self._transport,
        )

    async def _send(self, client: httpx.AsyncClient, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return await client.request(method, path, **kwargs)
        except httpx.RequestError as err:
            logger.error("Portal request %s %s failed: %s", method, path, err)
            raise PortalUnavailableError(f"Portal unreachable: {err}") from err

    async def _load_cookies(self, chat_id: int) -> httpx.Cookies:
        cookies = httpx.Cookies()
        stored = await self.store.get(EntityKind.PORTAL_COOKIES, chat_id)
        for item in (stored or {}).get("cookies", []):
            cookies.set(
                item["name"], item["value"],
                domain=item.get("domain", ""), path=item.get("path", "/"),
            )
        return cookies

    async def _save_cookies(self, chat_id: int, cookies: httpx.Cookies) -> None:
        jar = [
            {"name": c.name, "value": c.value, "domain": c.domain, "path": c.path}
            for c in cookies.jar
        ]
        await self.store.set(EntityKind.PORTAL_COOKIES, chat_id, {"cookies": jar})
        logger.debug("Persisted %d portal cookies", len(jar))


def _require_credentials(email: str, password: str) -> None:
    if not email or not password:
        raise ValueError("email and password are required")
