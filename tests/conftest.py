"""Shared test fixtures and helpers."""

import io
from datetime import date
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
import pytest
from openpyxl import Workbook

from callbridge.config import FlowConfig, GoogleConfig
from callbridge.conversation.engine import ConversationEngine
from callbridge.conversation.state_machine import ConversationStateMachine
from callbridge.portal.client import PortalClient
from callbridge.sheets.oauth import ConsentFlow
from callbridge.sheets.sync import SheetSyncAdapter
from callbridge.storage.repository import StateRepository
from callbridge.storage.store import InMemoryStore

BASE_URL = "https://portal.example.com"
EMAIL = "ops@example.com"
PASSWORD = "hunter2"
SESSION_COOKIE = "portal_session=ok"
TODAY = date(2025, 7, 2)
REPORT_DAY = "2025-07-01"

HEADER = [
    "Caller", "Call Date", "Call Time", "End Time", "Queue", "Agent", "Team",
    "Callee", "Status", "Duration", "Talktime", "Hangup By",
]


def make_row(
    agent: str,
    team: str,
    status: str,
    duration: Any = 60,
    talktime: Any = 30,
    caller: str = "1001",
    day: str = REPORT_DAY,
) -> list[Any]:
    """One raw export row in the portal's column order."""
    return [
        caller, day, "09:00:00", "09:01:00", "Q1", agent, team,
        "+442070000000", status, duration, talktime, "caller",
    ]


REPORT = [
    HEADER,
    make_row("Jane Doe", "Sales", "ANSWER", 95, 80),
    make_row("Jane Doe", "Sales", "CANCEL", 12, 0),
    make_row("Jan Lee", "sales", "ANSWER", 240, 221),
    make_row("Jan Lee", "Sales", "BUSY", 4, 0),
    make_row("Omar Haddad", "Support", "ANSWER", 610, 590),
    make_row("Rita Kahn", "Support", "CANCEL", 20, 0),
]


def make_workbook(rows: list[list[Any]]) -> bytes:
    """Serialize rows into an XLSX payload like the portal's export."""
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


class FakePortal:
    """Scripted portal behind an httpx.MockTransport."""

    def __init__(self, report: Optional[list[list[Any]]] = None) -> None:
        self.email = EMAIL
        self.password = PASSWORD
        self.report_bytes = make_workbook(report or REPORT)
        self.export_status = 200
        self.login_page_status = 200
        self.login_post_status: Optional[int] = None
        self.include_csrf = True
        self.unreachable = False
        self.requests: list[httpx.Request] = []

    @property
    def login_posts(self) -> int:
        return sum(1 for r in self.requests if r.method == "POST" and r.url.path == "/login")

    @property
    def exports(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/api/export/voice"]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("connection refused", request=request)

        logged_in = SESSION_COOKIE in request.headers.get("cookie", "")
        path = request.url.path
        if path == "/dashboard":
            if logged_in:
                return httpx.Response(200, text="<h1>Dashboard</h1>")
            return httpx.Response(302, headers={"Location": "/login"})
        if path == "/login" and request.method == "GET":
            field = '<input type="hidden" name="csrf_webcall" value="tok-123">' if self.include_csrf else ""
            return httpx.Response(self.login_page_status, text=f"<form>{field}</form>")
        if path == "/login":
            if self.login_post_status is not None:
                return httpx.Response(self.login_post_status, text="oops")
            form = parse_qs(request.content.decode())
            if form.get("username") == [self.email] and form.get("password") == [self.password]:
                return httpx.Response(
                    302,
                    headers={"Location": "/dashboard", "Set-Cookie": f"{SESSION_COOKIE}; Path=/"},
                )
            return httpx.Response(200, text="<p>The password is incorrect.</p>")
        if path == "/api/export/voice":
            if not logged_in:
                return httpx.Response(302, headers={"Location": "/login"})
            if self.export_status != 200:
                return httpx.Response(self.export_status, text="export error")
            return httpx.Response(200, content=self.report_bytes)
        return httpx.Response(404)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class _Call:
    def __init__(self, service: "FakeSheetsService", result: Any) -> None:
        self._service = service
        self._result = result

    def execute(self) -> Any:
        if self._service.fail_with is not None:
            raise self._service.fail_with
        return self._result()


class FakeSheetsService:
    """In-memory stand-in for ``build("sheets", "v4")``."""

    def __init__(self) -> None:
        self.sheets: dict[str, list[list[Any]]] = {}
        self.calls: list[tuple[str, dict]] = []
        self.fail_with: Optional[Exception] = None

    def spreadsheets(self) -> "FakeSheetsService":
        return self

    def values(self) -> "FakeSheetsService":
        return self

    def clear(self, **kwargs) -> _Call:
        self.calls.append(("clear", kwargs))
        return _Call(self, lambda: self.sheets.update({kwargs["spreadsheetId"]: []}) or {})

    def update(self, **kwargs) -> _Call:
        self.calls.append(("update", kwargs))
        values = [list(v) for v in kwargs["body"]["values"]]
        return _Call(self, lambda: self.sheets.update({kwargs["spreadsheetId"]: values}) or {})

    def append(self, **kwargs) -> _Call:
        self.calls.append(("append", kwargs))
        values = [list(v) for v in kwargs["body"]["values"]]
        return _Call(
            self, lambda: self.sheets.setdefault(kwargs["spreadsheetId"], []).extend(values) or {}
        )

    def get(self, **kwargs) -> _Call:
        self.calls.append(("get", kwargs))
        return _Call(self, lambda: {"values": [list(r) for r in self.sheets.get(kwargs["spreadsheetId"], [])]})


@pytest.fixture
def google_config():
    return GoogleConfig(
        client_id="test-client.apps.googleusercontent.com",
        client_secret="test-secret",
        redirect_uri="http://localhost:6565/oauth2callback",
        sheet_name="Sheet1",
    )


@pytest.fixture
def flow_config():
    return FlowConfig(max_login_attempts=3, date_picker_days=7)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def repository(store):
    return StateRepository(store)


@pytest.fixture
def fake_portal():
    return FakePortal()


@pytest.fixture
def portal_client(store, fake_portal):
    return PortalClient(store, BASE_URL, timeout=5.0, transport=fake_portal.transport())


@pytest.fixture
def sheets_service():
    return FakeSheetsService()


@pytest.fixture
def sheet_adapter(store, google_config, sheets_service):
    return SheetSyncAdapter(store, google_config, service_factory=lambda _token: sheets_service)


@pytest.fixture
def consent(google_config):
    return ConsentFlow(google_config)


@pytest.fixture
def engine(repository, portal_client, sheet_adapter, consent, flow_config):
    return ConversationEngine(
        repository=repository,
        portal=portal_client,
        sheets=sheet_adapter,
        consent=consent,
        flow=flow_config,
        clock=lambda: TODAY,
    )


@pytest.fixture
def state_machine():
    return ConversationStateMachine(None)
