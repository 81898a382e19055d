"""
Event dispatcher for the per-chat report workflow.

One ChatEvent in, a list of Replies out. For every event the engine
takes the chat's lock, loads the persisted session, runs the handler for
the command / button / text, moves the session through the state
machine and saves it again. It is also the single place where typed
errors from the portal client and the sheet adapter become user text.

Usage:
    engine = ConversationEngine(repository, portal, sheets, consent, settings.flow)
    replies = await engine.handle(ChatEvent.command_event(chat_id, "start"))
"""

import asyncio
import uuid
import weakref
from dataclasses import dataclass, field
from datetime import date
from typing import Awaitable, Callable, Optional

from callbridge.config import FlowConfig
from callbridge.conversation.state_machine import ConversationStateMachine, Step, TransitionTrigger
from callbridge.errors import (
    CallbridgeError,
    DateParseError,
    ExportError,
    PortalAuthError,
    PortalUnavailableError,
    ProtocolError,
    SessionExpired,
    SheetAuthError,
    SheetWriteError,
    StoreError,
)
from callbridge.logging_context import get_chat_logger, set_chat_id
from callbridge.portal.client import PortalClient
from callbridge.prompts import messages
from callbridge.reports.normalizer import (
    distinct_agents,
    distinct_teams,
    filter_agent,
    filter_team,
    to_call_records,
)
from callbridge.reports.stats import best_agent_match, count_by_agent, count_by_status
from callbridge.schemas.event_schema import Button, ChatEvent, EventKind, Reply
from callbridge.schemas.session_schema import ChatSession, Mode
from callbridge.sheets.oauth import ConsentFlow
from callbridge.sheets.sync import SheetSyncAdapter
from callbridge.storage.repository import StateRepository
from callbridge.utils import extract_sheet_id, parse_date_input, recent_dates

logger = get_chat_logger(__name__)


@dataclass
class Turn:
    """Mutable state for handling one event."""
    chat_id: int
    session: Optional[ChatSession]
    sm: ConversationStateMachine
    existed: bool
    replies: list[Reply] = field(default_factory=list)

    def say(self, text: str, rows=None, edit: bool = False) -> None:
        self.replies.append(Reply(text=text, rows=rows or [], edit=edit))

    def advance(self, trigger: TransitionTrigger) -> Optional[Step]:
        """Move the session along one declared edge."""
        step = self.sm.transition(trigger)
        if step is None:
            self.session = None
        elif self.session is None:
            self.session = ChatSession(step=step)
        else:
            self.session.step = step
        return step

    def try_advance(self, trigger: TransitionTrigger) -> bool:
        if not self.sm.can_transition(trigger):
            return False
        self.advance(trigger)
        return True


Handler = Callable[[Turn, ChatEvent], Awaitable[None]]


class ConversationEngine:
    """Drives every chat through the login / mode / fetch / browse workflow."""

    def __init__(
        self,
        repository: StateRepository,
        portal: PortalClient,
        sheets: SheetSyncAdapter,
        consent: ConsentFlow,
        flow: FlowConfig,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.repo = repository
        self.portal = portal
        self.sheets = sheets
        self.consent = consent
        self.flow = flow
        self.clock = clock
        # Entries vanish once no handler holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

        self._commands: dict[str, Handler] = {
            "start": self._cmd_start,
            "help": self._cmd_help,
            "mode": self._cmd_mode,
            "sheet": self._cmd_sheet,
            "fetch": self._cmd_fetch,
            "team": self._cmd_team,
            "agent": self._cmd_agent,
            "summary": self._cmd_summary,
            "logout": self._cmd_logout,
        }
        self._callbacks: dict[str, Handler] = {
            messages.MODE_PREFIX: self._on_mode_button,
            messages.DATE_PREFIX: self._on_date_button,
            messages.TEAM_PREFIX: self._on_team_button,
            messages.AGENT_PREFIX: self._on_agent_button,
            messages.WRITE_PREFIX: self._on_write_button,
        }
        self._text_steps: dict[Step, Handler] = {
            Step.AWAIT_EMAIL: self._on_email,
            Step.AWAIT_PASSWORD: self._on_password,
            Step.AWAIT_SHEET_URL: self._on_sheet_text,
            Step.AWAIT_DATE: self._on_date_text,
            Step.AWAIT_AGENT: self._on_agent_text,
        }

    def _lock(self, chat_id: int) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[chat_id] = lock
        return lock

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    async def handle(self, event: ChatEvent) -> list[Reply]:
        """Handle one inbound event for its chat and return the replies."""
        set_chat_id(event.chat_id)
        async with self._lock(event.chat_id):
            return await self._run(event.chat_id, lambda turn: self._dispatch(turn, event), event)

    async def complete_consent(self, chat_id: int, refresh_token: Optional[str]) -> list[Reply]:
        """Store a refresh token from the OAuth callback and resume the chat."""
        set_chat_id(chat_id)
        async with self._lock(chat_id):
            return await self._run(
                chat_id, lambda turn: self._on_consent(turn, refresh_token), None
            )

    async def _run(
        self,
        chat_id: int,
        body: Callable[[Turn], Awaitable[None]],
        event: Optional[ChatEvent],
    ) -> list[Reply]:
        turn = Turn(chat_id=chat_id, session=None, sm=ConversationStateMachine(None), existed=False)
        try:
            turn.session = await self.repo.get_session(chat_id)
            turn.existed = turn.session is not None
            turn.sm = ConversationStateMachine(turn.session.step if turn.session else None)
            await body(turn)
        except Exception:
            logger.exception("Handler failed for %s", _describe(event))
            turn.replies = [Reply(text=messages.HANDLER_FAILED)]
            if turn.session is not None:
                turn.advance(TransitionTrigger.HANDLER_FAILED)

        try:
            await self._persist(turn)
        except StoreError as err:
            logger.error("Saving session failed: %s", err)
            try:
                await self.repo.delete_session(chat_id)
            except StoreError:
                logger.exception("Removing the unsaved session failed as well")
            return [Reply(text=messages.HANDLER_FAILED)]

        logger.debug("Trace %s", " -> ".join(turn.sm.get_state_trace()))
        return turn.replies

    async def _persist(self, turn: Turn) -> None:
        if turn.session is not None:
            await self.repo.save_session(turn.chat_id, turn.session)
        elif turn.existed:
            await self.repo.delete_session(turn.chat_id)

    async def _dispatch(self, turn: Turn, event: ChatEvent) -> None:
        try:
            if event.kind == EventKind.COMMAND:
                handler = self._commands.get(event.command, self._cmd_help)
                await handler(turn, event)
            elif event.kind == EventKind.CALLBACK:
                await self._on_callback(turn, event)
            else:
                await self._on_text(turn, event)
        except SessionExpired:
            logger.info("No session, restarting at mode choice")
            await self._restart(turn)

    # ------------------------------------------------------------------ #
    # Guards
    # ------------------------------------------------------------------ #

    @staticmethod
    def _require_session(turn: Turn) -> ChatSession:
        if turn.session is None:
            raise SessionExpired(f"No session for chat {turn.chat_id}")
        return turn.session

    async def _restart(self, turn: Turn) -> None:
        turn.replies = []
        turn.advance(TransitionTrigger.SESSION_RESTARTED)
        turn.session.sheet_id = await self.repo.get_sheet_id(turn.chat_id)
        turn.say(messages.SESSION_EXPIRED)
        turn.say(messages.MODE_QUESTION, messages.mode_menu())

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    async def _cmd_start(self, turn: Turn, event: ChatEvent) -> None:
        if await self.repo.get_credential(turn.chat_id):
            turn.session = None
            turn.advance(TransitionTrigger.START_WITH_CREDENTIAL)
            turn.session.sheet_id = await self.repo.get_sheet_id(turn.chat_id)
            turn.say(messages.MODE_QUESTION, messages.mode_menu())
            return
        await self.repo.delete_credential(turn.chat_id)
        turn.session = None
        turn.advance(TransitionTrigger.START_WITHOUT_CREDENTIAL)
        turn.say(messages.ASK_EMAIL)

    async def _cmd_help(self, turn: Turn, event: ChatEvent) -> None:
        turn.say(messages.HELP)

    async def _cmd_mode(self, turn: Turn, event: ChatEvent) -> None:
        if not await self.repo.get_credential(turn.chat_id):
            turn.say(messages.NOT_LOGGED_IN)
            return
        choice = event.args.split()[0].lower() if event.args else ""
        if not choice:
            turn.advance(TransitionTrigger.MODE_MENU_REQUESTED)
            turn.say(messages.CHOOSE_MODE, messages.mode_menu())
            return
        if choice not in (Mode.CHAT.value, Mode.SHEET.value):
            turn.say(messages.INVALID_MODE)
            return
        turn.advance(TransitionTrigger.MODE_SWITCHED)
        self._set_mode(turn.session, Mode(choice))
        if choice == Mode.CHAT.value:
            turn.say(messages.CHAT_MODE_SWITCHED)
        else:
            turn.session.sheet_id = turn.session.sheet_id or await self.repo.get_sheet_id(turn.chat_id)
            turn.say(messages.SHEET_MODE_SWITCHED)

    async def _cmd_sheet(self, turn: Turn, event: ChatEvent) -> None:
        self._require_session(turn)
        if turn.session.mode != Mode.SHEET and not turn.session.connect_sheet:
            turn.say(messages.NOT_SHEET_MODE)
            return
        await self._link_sheet(turn, event.args)

    async def _cmd_fetch(self, turn: Turn, event: ChatEvent) -> None:
        if not await self.repo.get_credential(turn.chat_id):
            turn.say(messages.NOT_LOGGED_IN)
            return
        linked = await self.repo.get_sheet_id(turn.chat_id)
        if turn.session is None:
            if not linked:
                raise SessionExpired(f"No session for chat {turn.chat_id}")
            turn.advance(TransitionTrigger.MODE_SWITCHED)
            self._set_mode(turn.session, Mode.SHEET)

        session = turn.session
        if session.mode is None and linked:
            self._set_mode(session, Mode.SHEET)
        if session.mode is None:
            turn.say(messages.NO_MODE)
            return

        if session.mode == Mode.SHEET:
            session.sheet_id = linked or session.sheet_id
            if not session.sheet_id:
                turn.say(messages.MISSING_SHEET)
                return
            if not await self.repo.get_sheet_token(turn.chat_id):
                self._ask_consent(turn)
                return

        if not turn.try_advance(TransitionTrigger.FETCH_REQUESTED):
            turn.say(messages.FINISH_CURRENT_STEP)
            return
        prompt = messages.CHOOSE_DATE if session.mode == Mode.SHEET else messages.CHOOSE_DATE_CHAT
        days = recent_dates(self.flow.date_picker_days, today=self.clock())
        turn.say(prompt, messages.date_menu(days))

    async def _cmd_team(self, turn: Turn, event: ChatEvent) -> None:
        session = self._require_session(turn)
        if session.mode != Mode.CHAT or not session.has_report:
            turn.say(messages.NEED_DATE_FIRST)
            return
        teams = distinct_teams(session.rows)
        if not teams:
            turn.say(messages.NO_TEAMS_CACHED)
            return
        if not turn.try_advance(TransitionTrigger.TEAM_MENU_REQUESTED):
            turn.say(messages.FINISH_CURRENT_STEP)
            return
        turn.say(messages.SELECT_TEAM, self._team_menu(session, teams))

    async def _cmd_agent(self, turn: Turn, event: ChatEvent) -> None:
        self._require_session(turn)
        agents = self._agents_for_selected_team(turn)
        if agents is None:
            return
        if event.args:
            await self._show_matched_agent(turn, agents, event.args)
            return
        if not turn.try_advance(TransitionTrigger.AGENT_MENU_REQUESTED):
            turn.say(messages.FINISH_CURRENT_STEP)
            return
        turn.say(
            messages.team_header(turn.session.selected_team),
            self._agent_menu(turn.session, agents),
        )

    async def _cmd_summary(self, turn: Turn, event: ChatEvent) -> None:
        parts = event.args.split()
        if len(parts) < 2:
            turn.say(messages.SUMMARY_USAGE)
            return
        raw_date, team = parts[0], " ".join(parts[1:])
        try:
            day = parse_date_input(raw_date, today=self.clock())
        except DateParseError as err:
            turn.say(messages.date_not_understood(err.raw))
            return
        date_str = day.isoformat()

        credential = await self.repo.get_credential(turn.chat_id)
        if not credential:
            turn.say(messages.SUMMARY_NEEDS_LOGIN)
            return
        turn.say(messages.summary_loading(team, date_str))
        try:
            rows = await self.portal.download_report(
                turn.chat_id, date_str, credential.email, credential.password
            )
        except CallbridgeError as err:
            logger.warning("Summary fetch for %s failed: %s", date_str, err)
            turn.say(messages.export_failed(str(err)))
            return

        records = filter_team(to_call_records(rows), team)
        if not records:
            turn.say(messages.summary_empty(team, date_str))
            return
        turn.say(messages.render_summary(team, date_str, count_by_agent(records), count_by_status(records)))

    async def _cmd_logout(self, turn: Turn, event: ChatEvent) -> None:
        await self.repo.forget_chat(turn.chat_id)
        turn.advance(TransitionTrigger.LOGOUT)
        # forget_chat already removed the stored session.
        turn.existed = False
        turn.say(messages.LOGGED_OUT)

    # ------------------------------------------------------------------ #
    # Free text
    # ------------------------------------------------------------------ #

    async def _on_text(self, turn: Turn, event: ChatEvent) -> None:
        if turn.session is None:
            turn.say(messages.NEED_START)
            return
        handler = self._text_steps.get(turn.session.step)
        if handler is None:
            turn.say(messages.UNKNOWN_INPUT)
            return
        await handler(turn, event)

    async def _on_email(self, turn: Turn, event: ChatEvent) -> None:
        email = event.text.strip()
        if not email:
            turn.say(messages.ASK_EMAIL)
            return
        turn.session.email = email
        turn.advance(TransitionTrigger.EMAIL_ENTERED)
        turn.say(messages.ASK_PASSWORD)

    async def _on_password(self, turn: Turn, event: ChatEvent) -> None:
        session = turn.session
        password = event.text.strip()
        if not session.email:
            turn.advance(TransitionTrigger.LOGIN_FAILED)
            turn.say(messages.ASK_EMAIL)
            return
        if not password:
            turn.say(messages.ASK_PASSWORD)
            return
        try:
            await self.portal.ensure_logged_in(turn.chat_id, session.email, password)
        except PortalAuthError:
            session.login_attempts += 1
            logger.info("Login attempt %d failed for %s", session.login_attempts, session.email)
            if session.login_attempts >= self.flow.max_login_attempts:
                turn.advance(TransitionTrigger.LOGIN_ATTEMPTS_EXHAUSTED)
                turn.say(messages.LOGIN_LOCKED)
                return
            turn.advance(TransitionTrigger.LOGIN_FAILED)
            turn.say(messages.LOGIN_FAILED)
            return
        except (ExportError, ProtocolError) as err:
            logger.warning("Login could not reach the portal: %s", err)
            turn.say(messages.LOGIN_PORTAL_DOWN)
            return

        await self.repo.save_credential(turn.chat_id, session.email, password)
        session.login_attempts = 0
        turn.advance(TransitionTrigger.LOGIN_SUCCEEDED)
        turn.say(messages.LOGIN_OK, messages.mode_menu())

    async def _on_sheet_text(self, turn: Turn, event: ChatEvent) -> None:
        await self._link_sheet(turn, event.text)

    async def _on_date_text(self, turn: Turn, event: ChatEvent) -> None:
        try:
            day = parse_date_input(event.text, today=self.clock())
        except DateParseError as err:
            turn.say(messages.date_not_understood(err.raw))
            return
        await self._load_report(turn, day.isoformat(), edit=False)

    async def _on_agent_text(self, turn: Turn, event: ChatEvent) -> None:
        agents = self._agents_for_selected_team(turn)
        if agents is not None:
            await self._show_matched_agent(turn, agents, event.text)

    # ------------------------------------------------------------------ #
    # Buttons
    # ------------------------------------------------------------------ #

    async def _on_callback(self, turn: Turn, event: ChatEvent) -> None:
        for prefix, handler in self._callbacks.items():
            if event.payload.startswith(prefix):
                break
        else:
            logger.warning("Unknown callback payload %r", event.payload)
            turn.replies.append(_stale())
            return
        self._require_session(turn)
        await handler(turn, event)

    async def _on_mode_button(self, turn: Turn, event: ChatEvent) -> None:
        choice = event.payload[len(messages.MODE_PREFIX):]
        if turn.session.step != Step.AWAIT_MODE_CHOICE or choice not in ("sheet", "chat"):
            turn.replies.append(_stale())
            return

        if choice == "chat":
            self._set_mode(turn.session, Mode.CHAT)
            turn.advance(TransitionTrigger.CHAT_MODE_CHOSEN)
            turn.say(messages.CHAT_MODE_ON, edit=True)
            return

        self._set_mode(turn.session, Mode.SHEET)
        turn.advance(TransitionTrigger.SHEET_MODE_CHOSEN)
        linked = await self.repo.get_sheet_id(turn.chat_id)
        if linked and await self.repo.get_sheet_token(turn.chat_id):
            turn.session.sheet_id = linked
            turn.advance(TransitionTrigger.SHEET_LINKED)
            turn.say(messages.SHEET_LINKED, edit=True)
            return
        turn.say(messages.ASK_SHEET, edit=True)

    async def _on_date_button(self, turn: Turn, event: ChatEvent) -> None:
        raw = event.payload[len(messages.DATE_PREFIX):]
        if turn.session.step != Step.AWAIT_DATE:
            turn.replies.append(_stale())
            return
        try:
            day = date.fromisoformat(raw)
        except ValueError:
            turn.replies.append(_stale())
            return
        await self._load_report(turn, day.isoformat(), edit=True)

    async def _on_team_button(self, turn: Turn, event: ChatEvent) -> None:
        session = turn.session
        if session.step != Step.AWAIT_TEAM or not session.has_report:
            turn.replies.append(_stale())
            return
        teams = distinct_teams(session.rows)
        index = _index(event.payload, messages.TEAM_PREFIX, session.team_menu_id, len(teams))
        if index is None:
            turn.replies.append(_stale())
            return
        session.selected_team = teams[index]

        if session.mode == Mode.SHEET:
            turn.advance(TransitionTrigger.TEAM_CHOSEN_FOR_EXPORT)
            turn.say(messages.WRITE_QUESTION, messages.write_menu(), edit=True)
            return
        turn.advance(TransitionTrigger.TEAM_CHOSEN_FOR_BROWSE)
        agents = distinct_agents(session.rows, session.selected_team)
        turn.say(messages.team_header(session.selected_team), self._agent_menu(session, agents), edit=True)

    async def _on_agent_button(self, turn: Turn, event: ChatEvent) -> None:
        session = turn.session
        if (
            session.step not in (Step.AWAIT_AGENT, Step.READY)
            or session.mode != Mode.CHAT
            or not session.has_report
            or session.selected_team is None
        ):
            turn.replies.append(_stale())
            return
        agents = distinct_agents(session.rows, session.selected_team)
        index = _index(event.payload, messages.AGENT_PREFIX, session.agent_menu_id, len(agents))
        if index is None:
            turn.replies.append(_stale())
            return
        self._render_agent(turn, agents[index])

    async def _on_write_button(self, turn: Turn, event: ChatEvent) -> None:
        session = turn.session
        choice = event.payload[len(messages.WRITE_PREFIX):]
        if (
            session.step != Step.AWAIT_WRITE_MODE
            or choice not in ("overwrite", "append")
            or not session.has_report
            or session.selected_team is None
        ):
            turn.replies.append(_stale())
            return
        overwrite = choice == "overwrite"

        sheet_id = await self.repo.get_sheet_id(turn.chat_id) or session.sheet_id
        if not sheet_id:
            turn.advance(TransitionTrigger.SHEET_WRITE_FAILED)
            turn.say(messages.MISSING_SHEET, edit=True)
            return

        records = filter_team(session.rows, session.selected_team)
        try:
            await self.sheets.write(turn.chat_id, sheet_id, records, overwrite)
        except SheetAuthError as err:
            logger.info("Sheet write needs consent: %s", err)
            self._ask_consent(turn, edit=True)
            return
        except SheetWriteError as err:
            turn.advance(TransitionTrigger.SHEET_WRITE_FAILED)
            turn.say(messages.write_failed(str(err)), edit=True)
            return

        turn.advance(TransitionTrigger.SHEET_WRITTEN)
        turn.say(
            messages.write_done(overwrite, len(records), session.selected_team, session.date_str),
            edit=True,
        )

    # ------------------------------------------------------------------ #
    # OAuth consent
    # ------------------------------------------------------------------ #

    async def _on_consent(self, turn: Turn, refresh_token: Optional[str]) -> None:
        if not refresh_token:
            turn.say(messages.CONSENT_NO_TOKEN)
            return
        await self.repo.save_sheet_token(turn.chat_id, refresh_token)
        linked = await self.repo.get_sheet_id(turn.chat_id)

        if turn.session is None:
            turn.advance(TransitionTrigger.MODE_SWITCHED)
        elif not turn.try_advance(TransitionTrigger.CONSENT_GRANTED):
            logger.info("Consent granted outside the OAuth step (%s)", turn.session.step.value)
        self._set_mode(turn.session, Mode.SHEET)
        turn.session.sheet_id = linked or turn.session.sheet_id
        turn.say(messages.AUTHORIZED)

    # ------------------------------------------------------------------ #
    # Shared pieces
    # ------------------------------------------------------------------ #

    async def _link_sheet(self, turn: Turn, raw: str) -> None:
        sheet_id = extract_sheet_id(raw)
        if not sheet_id:
            turn.say(messages.SHEET_USAGE)
            return
        await self.repo.save_sheet_id(turn.chat_id, sheet_id)
        turn.session.sheet_id = sheet_id
        logger.info("Linked sheet %s", sheet_id)

        if await self.repo.get_sheet_token(turn.chat_id):
            turn.try_advance(TransitionTrigger.SHEET_LINKED)
            turn.say(messages.SHEET_LINKED)
            return
        self._ask_consent(turn)

    def _ask_consent(self, turn: Turn, edit: bool = False) -> None:
        turn.try_advance(TransitionTrigger.SHEET_NEEDS_CONSENT)
        url = self.consent.build_consent_url(turn.chat_id)
        turn.say(messages.AUTHORIZE, messages.authorize_menu(url), edit=edit)

    async def _load_report(self, turn: Turn, date_str: str, edit: bool) -> None:
        session = turn.session
        sheet_mode = session.mode == Mode.SHEET
        credential = await self.repo.get_credential(turn.chat_id)
        if not credential:
            turn.advance(TransitionTrigger.CREDENTIALS_REJECTED)
            turn.say(messages.CREDENTIALS_EXPIRED, edit=edit)
            return

        turn.say(messages.fetching(date_str, sheet_mode), edit=edit)
        try:
            rows = await self.portal.download_report(
                turn.chat_id, date_str, credential.email, credential.password
            )
        except PortalAuthError:
            logger.info("Stored portal credential rejected, asking for a new one")
            await self.repo.delete_credential(turn.chat_id)
            await self.portal.logout(turn.chat_id)
            session.email = None
            turn.advance(TransitionTrigger.CREDENTIALS_REJECTED)
            turn.say(messages.CREDENTIALS_EXPIRED)
            return
        except ProtocolError as err:
            logger.error("Portal protocol mismatch: %s", err)
            turn.advance(TransitionTrigger.FETCH_FAILED)
            turn.say(messages.PORTAL_CHANGED)
            return
        except PortalUnavailableError as err:
            logger.warning("Portal unreachable: %s", err)
            turn.advance(TransitionTrigger.FETCH_FAILED)
            turn.say(messages.PORTAL_UNAVAILABLE)
            return
        except ExportError as err:
            logger.warning("Export for %s failed: %s", date_str, err)
            turn.advance(TransitionTrigger.FETCH_FAILED)
            turn.say(messages.export_failed(str(err)))
            return

        records = to_call_records(rows)
        teams = distinct_teams(records)
        if not teams:
            turn.advance(TransitionTrigger.FETCH_FAILED)
            turn.say(messages.no_teams_on(date_str))
            return

        session.cache_report(records, date_str)
        turn.advance(TransitionTrigger.REPORT_LOADED)
        prompt = messages.SELECT_TEAM_EXPORT if sheet_mode else messages.SELECT_TEAM
        turn.say(prompt, self._team_menu(session, teams))

    def _agents_for_selected_team(self, turn: Turn) -> Optional[list[str]]:
        session = turn.session
        if session.mode != Mode.CHAT or not session.has_report or session.selected_team is None:
            turn.say(messages.NEED_TEAM_FIRST)
            return None
        agents = distinct_agents(session.rows, session.selected_team)
        if not agents:
            turn.say(messages.NO_AGENTS)
            return None
        return agents

    async def _show_matched_agent(self, turn: Turn, agents: list[str], query: str) -> None:
        agent = best_agent_match(agents, query)
        if agent is None:
            turn.say(messages.no_agent_match(query))
            return
        self._render_agent(turn, agent)

    def _render_agent(self, turn: Turn, agent: str) -> None:
        session = turn.session
        if not turn.try_advance(TransitionTrigger.AGENT_CHOSEN):
            turn.say(messages.FINISH_CURRENT_STEP)
            return
        records = filter_agent(session.rows, session.selected_team, agent)
        turn.say(messages.render_agent_stats(agent, session.date_str, count_by_status(records)))

    @staticmethod
    def _team_menu(session: ChatSession, teams: list[str]) -> list[list[Button]]:
        session.team_menu_id = _menu_id()
        return messages.team_menu(teams, session.team_menu_id)

    @staticmethod
    def _agent_menu(session: ChatSession, agents: list[str]) -> list[list[Button]]:
        session.agent_menu_id = _menu_id()
        return messages.agent_menu(agents, session.agent_menu_id)

    @staticmethod
    def _set_mode(session: ChatSession, mode: Mode) -> None:
        session.mode = mode
        session.connect_sheet = mode == Mode.SHEET


def _menu_id() -> str:
    return uuid.uuid4().hex[:6]


def _index(payload: str, prefix: str, menu_id: Optional[str], size: int) -> Optional[int]:
    """Button index from ``<prefix><menu_id>:<index>``, or None if the menu was superseded."""
    sent_id, _, raw = payload[len(prefix):].partition(":")
    if menu_id is None or sent_id != menu_id or not raw.isdigit():
        return None
    index = int(raw)
    return index if index < size else None


def _stale() -> Reply:
    return Reply(text="", alert=messages.STALE_MENU)


def _describe(event: Optional[ChatEvent]) -> str:
    if event is None:
        return "oauth consent"
    if event.kind == EventKind.COMMAND:
        return f"/{event.command}"
    if event.kind == EventKind.CALLBACK:
        return f"button {event.payload}"
    return event.kind.value
