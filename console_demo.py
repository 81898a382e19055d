"""
Offline console demo: drives the real conversation engine in a terminal.

The portal is a scripted fake served through httpx.MockTransport, the
spreadsheet is an in-memory fake and state lives in an InMemoryStore.
No Telegram, no Google, no network.

Input:
    /command args   send a command
    @N              click button N of the last menu
    !consent        simulate finishing the Google consent screen
    anything else   send as text

Usage:
    python console_demo.py
    python console_demo.py --scenario chat
    python console_demo.py --scenario sheet
"""

import argparse
import asyncio
import io
import re
from datetime import date, timedelta
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
from openpyxl import Workbook

from callbridge.config import settings
from callbridge.conversation.engine import ConversationEngine
from callbridge.portal.client import PortalClient
from callbridge.schemas.event_schema import Button, ChatEvent, Reply
from callbridge.sheets.oauth import ConsentFlow
from callbridge.sheets.sync import SheetSyncAdapter
from callbridge.storage.repository import StateRepository
from callbridge.storage.store import InMemoryStore

BLUE = "\033[94m"
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
DIM = "\033[2m"
RESET = "\033[0m"
BOLD = "\033[1m"

DEMO_CHAT_ID = 1001
DEMO_EMAIL = "ops@example.com"
DEMO_PASSWORD = "hunter2"
DEMO_COOKIE = "portal_session=demo"

_TAG_RE = re.compile(r"</?(b|i|code)>")


def _demo_workbook() -> bytes:
    day = (date.today() - timedelta(days=1)).isoformat()
    header = ["Caller", "Call Date", "Call Time", "End Time", "Queue", "Agent", "Team",
              "Callee", "Status", "Duration", "Talktime", "Hangup By"]
    calls = [
        ("Jane Doe", "Sales", "ANSWER", 95, 80),
        ("Jane Doe", "Sales", "CANCEL", 12, 0),
        ("Jan Lee", "sales", "ANSWER", 240, 221),
        ("Jan Lee", "Sales", "BUSY", 4, 0),
        ("Omar Haddad", "Support", "ANSWER", 610, 590),
        ("Omar Haddad", "Support", "ANSWER", 45, 30),
        ("Rita Kahn", "Support", "CANCEL", 20, 0),
    ]
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(header)
    for i, (agent, team, status, duration, talk) in enumerate(calls):
        sheet.append([
            f"10{i:02d}", day, f"09:{i:02d}:00", f"09:{i:02d}:{duration % 60:02d}", "Q1",
            agent, team, f"+4420700000{i:02d}", status, duration, talk, "caller",
        ])
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def fake_portal_transport() -> httpx.MockTransport:
    """A portal that accepts DEMO_EMAIL / DEMO_PASSWORD."""
    report = _demo_workbook()

    def handler(request: httpx.Request) -> httpx.Response:
        logged_in = DEMO_COOKIE in request.headers.get("cookie", "")
        path = request.url.path
        if path == "/dashboard":
            if logged_in:
                return httpx.Response(200, text="dashboard")
            return httpx.Response(302, headers={"Location": "/login"})
        if path == "/login" and request.method == "GET":
            return httpx.Response(200, text='<input name="csrf_webcall" value="demo-csrf">')
        if path == "/login":
            form = parse_qs(request.content.decode())
            if form.get("username") == [DEMO_EMAIL] and form.get("password") == [DEMO_PASSWORD]:
                return httpx.Response(
                    302, headers={"Location": "/dashboard", "Set-Cookie": f"{DEMO_COOKIE}; Path=/"}
                )
            return httpx.Response(200, text="The password is incorrect.")
        if path == "/api/export/voice" and logged_in:
            return httpx.Response(200, content=report)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


class _Call:
    def __init__(self, result: Any) -> None:
        self._result = result

    def execute(self) -> Any:
        return self._result() if callable(self._result) else self._result


class FakeSheetsService:
    """Just enough of the Sheets v4 ``spreadsheets().values()`` surface."""

    def __init__(self) -> None:
        self.sheets: dict[str, list[list[Any]]] = {}

    def spreadsheets(self) -> "FakeSheetsService":
        return self

    def values(self) -> "FakeSheetsService":
        return self

    def clear(self, spreadsheetId: str, range: str) -> _Call:
        return _Call(lambda: self.sheets.update({spreadsheetId: []}) or {})

    def update(self, spreadsheetId: str, range: str, valueInputOption: str, body: dict) -> _Call:
        return _Call(lambda: self.sheets.update({spreadsheetId: list(body["values"])}) or {})

    def append(self, spreadsheetId: str, range: str, valueInputOption: str,
               insertDataOption: str, body: dict) -> _Call:
        return _Call(lambda: self.sheets.setdefault(spreadsheetId, []).extend(body["values"]) or {})

    def get(self, spreadsheetId: str, range: str) -> _Call:
        return _Call(lambda: {"values": list(self.sheets.get(spreadsheetId, []))})


class ConsoleSession:
    """Runs the engine against fakes and prints replies in the terminal."""

    SCENARIOS: dict[str, list[str]] = {
        "chat": [
            "/start",
            DEMO_EMAIL,
            "not-the-password",
            DEMO_EMAIL,
            DEMO_PASSWORD,
            "@2",
            "/fetch",
            "@1",
            "@1",
            "@1",
            "/agent jan",
            "/team",
            "@2",
            "omar",
            "/summary yesterday Support",
            "/logout",
        ],
        "sheet": [
            "/start",
            DEMO_EMAIL,
            DEMO_PASSWORD,
            "@1",
            "/sheet https://docs.google.com/spreadsheets/d/demo-sheet-42/edit#gid=0",
            "!consent",
            "/fetch",
            "@1",
            "@1",
            "@1",
            "/fetch",
            "@1",
            "@2",
            "@2",
        ],
    }

    def __init__(self) -> None:
        store = InMemoryStore()
        self.sheets_service = FakeSheetsService()
        self.engine = ConversationEngine(
            repository=StateRepository(store),
            portal=PortalClient(store, "https://portal.example.com", transport=fake_portal_transport()),
            sheets=SheetSyncAdapter(store, settings.google, service_factory=lambda _: self.sheets_service),
            consent=ConsentFlow(settings.google),
            flow=settings.flow,
        )
        self.store = store
        self.menu: list[Button] = []

    def bot_say(self, reply: Reply) -> None:
        if reply.alert:
            print(f"{YELLOW}  (popup) {reply.alert}{RESET}")
        if reply.text:
            text = _TAG_RE.sub("", reply.text).replace("&lt;", "<").replace("&gt;", ">")
            marker = "~" if reply.edit else ">"
            print(f"{GREEN}{BOLD}[bot {marker}]{RESET} {GREEN}{text}{RESET}")
        if reply.rows:
            self.menu = [b for row in reply.rows for b in row]
            for i, button in enumerate(self.menu, start=1):
                target = button.url if button.url else button.payload
                print(f"{DIM}    [{i}] {button.label}  ({target}){RESET}")

    def system_log(self, text: str) -> None:
        print(f"{DIM}  >> {text}{RESET}")

    async def _session_step(self) -> str:
        session = await self.engine.repo.get_session(DEMO_CHAT_ID)
        return session.step.value if session else "none"

    def _to_event(self, line: str) -> Optional[ChatEvent]:
        if line.startswith("/"):
            name, _, args = line[1:].partition(" ")
            return ChatEvent.command_event(DEMO_CHAT_ID, name, args)
        if line.startswith("@"):
            try:
                button = self.menu[int(line[1:]) - 1]
            except (ValueError, IndexError):
                print(f"{RED}No button {line[1:]} in the last menu{RESET}")
                return None
            if button.url:
                self.system_log(f"Would open {button.url}")
                return None
            return ChatEvent.callback_event(DEMO_CHAT_ID, button.payload)
        return ChatEvent.text_event(DEMO_CHAT_ID, line)

    async def process(self, line: str) -> None:
        if line == "!consent":
            replies = await self.engine.complete_consent(DEMO_CHAT_ID, "demo-refresh-token")
        else:
            event = self._to_event(line)
            if event is None:
                return
            replies = await self.engine.handle(event)
        for reply in replies:
            self.bot_say(reply)
        self.system_log(f"Step: {await self._session_step()}")

    def _banner(self, title: str) -> None:
        print()
        print(f"{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  CALLBRIDGE - {title}{RESET}")
        print(f"{BOLD}  Portal login: {DEMO_EMAIL} / {DEMO_PASSWORD}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")
        print()

    async def _play(self, scenario: str) -> None:
        steps = self.SCENARIOS.get(scenario)
        if not steps:
            print(f"{RED}Unknown scenario: {scenario}{RESET}")
            return
        self._banner(f"Scenario: {scenario}")
        for line in steps:
            print(f"\n{BLUE}[operator] {RESET}{line}")
            await self.process(line)

        print(f"\n{BOLD}{'=' * 60}{RESET}")
        print(f"{BOLD}  Scenario '{scenario}' complete.{RESET}")
        for sheet_id, rows in self.sheets_service.sheets.items():
            print(f"{DIM}  Sheet {sheet_id}: {len(rows)} rows{RESET}")
            for row in rows:
                print(f"{DIM}    {row}{RESET}")
        print(f"{BOLD}{'=' * 60}{RESET}")

    async def _loop(self) -> None:
        self._banner("Console Demo (type 'quit' to exit)")
        while True:
            line = (await asyncio.to_thread(input, f"\n{BLUE}[operator] {RESET}")).strip()
            if not line:
                continue
            if line.lower() in ("quit", "exit", "q"):
                print(f"\n{DIM}Session ended.{RESET}")
                return
            await self.process(line)

    def run_scenario(self, scenario: str) -> None:
        asyncio.run(self._play(scenario))

    def run(self) -> None:
        asyncio.run(self._loop())


def main() -> None:
    parser = argparse.ArgumentParser(description="Offline call-report bridge demo")
    parser.add_argument(
        "--scenario",
        choices=list(ConsoleSession.SCENARIOS.keys()),
        help="Auto-play a pre-scripted scenario",
    )
    args = parser.parse_args()

    session = ConsoleSession()
    if args.scenario:
        session.run_scenario(args.scenario)
    else:
        session.run()


if __name__ == "__main__":
    main()
