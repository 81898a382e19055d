"""End-to-end tests for the conversation engine."""

import asyncio

import pytest
from google.auth.exceptions import RefreshError

from callbridge.conversation.state_machine import Step
from callbridge.prompts import messages
from callbridge.schemas.event_schema import ChatEvent
from callbridge.schemas.session_schema import Mode
from callbridge.sheets.sync import HEADER
from callbridge.storage.store import EntityKind

from tests.conftest import EMAIL, PASSWORD, REPORT_DAY, TODAY

CHAT = 42
SHEET_URL = "https://docs.google.com/spreadsheets/d/sheet-xyz_1/edit#gid=0"


async def command(engine, name, args=""):
    return await engine.handle(ChatEvent.command_event(CHAT, name, args))


async def text(engine, value):
    return await engine.handle(ChatEvent.text_event(CHAT, value))


async def click(engine, payload):
    return await engine.handle(ChatEvent.callback_event(CHAT, payload))


async def login(engine):
    await command(engine, "start")
    await text(engine, EMAIL)
    return await text(engine, PASSWORD)


async def step(repository):
    session = await repository.get_session(CHAT)
    return session.step if session else None


def labels(reply):
    return [b.label for row in reply.rows for b in row]


def payloads(reply):
    return [b.payload for row in reply.rows for b in row]


async def pick(engine, reply, index):
    """Click button ``index`` of the menu carried by ``reply``."""
    return await click(engine, payloads(reply)[index])


async def chat_mode_with_report(engine):
    await login(engine)
    await click(engine, "mode:chat")
    await command(engine, "fetch")
    return await click(engine, f"date:{REPORT_DAY}")


class TestStart:
    @pytest.mark.asyncio
    async def test_start_without_credential_asks_email(self, engine, repository):
        replies = await command(engine, "start")
        assert replies[0].text == messages.ASK_EMAIL
        assert await step(repository) == Step.AWAIT_EMAIL

    @pytest.mark.asyncio
    async def test_start_with_credential_shows_mode_menu(self, engine, repository):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        replies = await command(engine, "start")
        assert replies[0].text == messages.MODE_QUESTION
        assert payloads(replies[0]) == ["mode:sheet", "mode:chat"]
        assert await step(repository) == Step.AWAIT_MODE_CHOICE

    @pytest.mark.asyncio
    async def test_help(self, engine):
        replies = await command(engine, "help")
        assert "/summary" in replies[0].text

    @pytest.mark.asyncio
    async def test_unknown_command_shows_help(self, engine):
        replies = await command(engine, "frobnicate")
        assert replies[0].text == messages.HELP


class TestLogin:
    @pytest.mark.asyncio
    async def test_successful_login(self, engine, repository):
        replies = await login(engine)
        assert replies[0].text == messages.LOGIN_OK
        assert labels(replies[0]) == ["Yes, link a sheet", "No, keep in chat"]
        assert await step(repository) == Step.AWAIT_MODE_CHOICE
        credential = await repository.get_credential(CHAT)
        assert credential.email == EMAIL

    @pytest.mark.asyncio
    async def test_failed_login_loops_back_to_email(self, engine, repository):
        await command(engine, "start")
        await text(engine, EMAIL)
        replies = await text(engine, "wrong")
        assert replies[0].text == messages.LOGIN_FAILED
        assert await step(repository) == Step.AWAIT_EMAIL
        assert await repository.get_credential(CHAT) is None

    @pytest.mark.asyncio
    async def test_retry_succeeds_and_resets_counter(self, engine, repository):
        await command(engine, "start")
        await text(engine, EMAIL)
        await text(engine, "wrong")
        await text(engine, EMAIL)
        await text(engine, PASSWORD)
        session = await repository.get_session(CHAT)
        assert session.login_attempts == 0
        assert session.step == Step.AWAIT_MODE_CHOICE

    @pytest.mark.asyncio
    async def test_login_attempts_are_bounded(self, engine, repository, flow_config):
        await command(engine, "start")
        replies = []
        for _ in range(flow_config.max_login_attempts):
            await text(engine, EMAIL)
            replies = await text(engine, "wrong")
        assert replies[0].text == messages.LOGIN_LOCKED
        assert await repository.get_session(CHAT) is None

    @pytest.mark.asyncio
    async def test_portal_down_keeps_password_step(self, engine, repository, fake_portal):
        await command(engine, "start")
        await text(engine, EMAIL)
        fake_portal.unreachable = True
        replies = await text(engine, PASSWORD)
        assert replies[0].text == messages.LOGIN_PORTAL_DOWN
        assert await step(repository) == Step.AWAIT_PASSWORD


class TestChatFlow:
    @pytest.mark.asyncio
    async def test_choose_chat_mode(self, engine, repository):
        await login(engine)
        replies = await click(engine, "mode:chat")
        assert replies[0].text == messages.CHAT_MODE_ON
        assert replies[0].edit
        session = await repository.get_session(CHAT)
        assert session.step == Step.READY
        assert session.mode == Mode.CHAT

    @pytest.mark.asyncio
    async def test_fetch_shows_date_picker(self, engine, repository):
        await login(engine)
        await click(engine, "mode:chat")
        replies = await command(engine, "fetch")
        assert replies[0].text == messages.CHOOSE_DATE_CHAT
        dates = payloads(replies[0])
        assert len(dates) == 7
        assert dates[0] == "date:2025-07-01"
        assert dates[1] == f"date:{TODAY.isoformat()}"
        assert await step(repository) == Step.AWAIT_DATE

    @pytest.mark.asyncio
    async def test_date_loads_report_and_lists_teams(self, engine, repository):
        replies = await chat_mode_with_report(engine)
        assert replies[0].edit
        assert REPORT_DAY in replies[0].text
        assert replies[-1].text == messages.SELECT_TEAM
        assert labels(replies[-1]) == ["Sales", "Support"]
        session = await repository.get_session(CHAT)
        assert session.step == Step.AWAIT_TEAM
        assert session.date_str == REPORT_DAY
        assert len(session.rows) == 6

    @pytest.mark.asyncio
    async def test_team_then_agent_shows_stats(self, engine, repository):
        teams = await chat_mode_with_report(engine)
        agents = await pick(engine, teams[-1], 0)
        assert labels(agents[0]) == ["Jane Doe", "Jan Lee"]
        assert await step(repository) == Step.AWAIT_AGENT

        replies = await pick(engine, agents[0], 0)
        card = replies[0].text
        assert "Calls: 2" in card
        assert "Answered: 1" in card
        assert "Cancelled: 1" in card
        assert "Busy: 0" in card
        assert REPORT_DAY in card
        assert await step(repository) == Step.READY

    @pytest.mark.asyncio
    async def test_team_comparison_is_case_insensitive(self, engine):
        teams = await chat_mode_with_report(engine)
        agents = await pick(engine, teams[-1], 0)
        replies = await pick(engine, agents[0], 1)
        assert "Calls: 2" in replies[0].text

    @pytest.mark.asyncio
    async def test_agent_command_fuzzy_match(self, engine):
        teams = await chat_mode_with_report(engine)
        agents = await pick(engine, teams[-1], 0)
        await pick(engine, agents[0], 0)
        replies = await command(engine, "agent", "lee")
        assert "Jan Lee" in replies[0].text
        assert "Calls: 2" in replies[0].text

    @pytest.mark.asyncio
    async def test_typed_agent_name_while_choosing(self, engine):
        teams = await chat_mode_with_report(engine)
        await pick(engine, teams[-1], 0)
        replies = await text(engine, "jane doe")
        assert "Jane Doe" in replies[0].text

    @pytest.mark.asyncio
    async def test_agent_without_name_reshows_menu(self, engine, repository):
        teams = await chat_mode_with_report(engine)
        agents = await pick(engine, teams[-1], 0)
        await pick(engine, agents[0], 0)
        replies = await command(engine, "agent")
        assert labels(replies[0]) == ["Jane Doe", "Jan Lee"]
        assert await step(repository) == Step.AWAIT_AGENT

    @pytest.mark.asyncio
    async def test_team_command_after_browsing(self, engine, repository):
        teams = await chat_mode_with_report(engine)
        agents = await pick(engine, teams[-1], 0)
        await pick(engine, agents[0], 0)
        replies = await command(engine, "team")
        assert labels(replies[0]) == ["Sales", "Support"]
        replies = await pick(engine, replies[0], 1)
        assert labels(replies[0]) == ["Omar Haddad", "Rita Kahn"]

    @pytest.mark.asyncio
    async def test_team_command_needs_report(self, engine):
        await login(engine)
        await click(engine, "mode:chat")
        replies = await command(engine, "team")
        assert replies[0].text == messages.NEED_DATE_FIRST

    @pytest.mark.asyncio
    async def test_agent_command_needs_team(self, engine):
        await chat_mode_with_report(engine)
        replies = await command(engine, "agent", "jane")
        assert replies[0].text == messages.NEED_TEAM_FIRST

    @pytest.mark.asyncio
    async def test_typed_date(self, engine, repository):
        await login(engine)
        await click(engine, "mode:chat")
        await command(engine, "fetch")
        replies = await text(engine, "yesterday")
        assert labels(replies[-1]) == ["Sales", "Support"]
        assert (await repository.get_session(CHAT)).date_str == REPORT_DAY

    @pytest.mark.asyncio
    async def test_unparseable_typed_date(self, engine, repository):
        await login(engine)
        await click(engine, "mode:chat")
        await command(engine, "fetch")
        replies = await text(engine, "banana")
        assert "Could not understand date" in replies[0].text
        assert await step(repository) == Step.AWAIT_DATE


class TestFetchErrors:
    @pytest.mark.asyncio
    async def test_fetch_requires_login(self, engine):
        replies = await command(engine, "fetch")
        assert replies[0].text == messages.NOT_LOGGED_IN

    @pytest.mark.asyncio
    async def test_fetch_requires_mode(self, engine):
        await login(engine)
        replies = await command(engine, "fetch")
        assert replies[0].text == messages.NO_MODE

    @pytest.mark.asyncio
    async def test_export_failure_returns_to_ready(self, engine, repository, fake_portal):
        await login(engine)
        await click(engine, "mode:chat")
        await command(engine, "fetch")
        fake_portal.export_status = 500
        replies = await click(engine, f"date:{REPORT_DAY}")
        assert "500" in replies[-1].text
        assert await step(repository) == Step.READY
        assert await repository.get_credential(CHAT) is not None

    @pytest.mark.asyncio
    async def test_unreachable_portal_keeps_credentials(self, engine, repository, fake_portal):
        await login(engine)
        await click(engine, "mode:chat")
        await command(engine, "fetch")
        fake_portal.unreachable = True
        replies = await click(engine, f"date:{REPORT_DAY}")
        assert replies[-1].text == messages.PORTAL_UNAVAILABLE
        assert await step(repository) == Step.READY
        assert await repository.get_credential(CHAT) is not None

    @pytest.mark.asyncio
    async def test_rejected_credentials_reprompt(self, engine, repository, store):
        await repository.save_credential(CHAT, EMAIL, "changed-since")
        await command(engine, "mode", "chat")
        await command(engine, "fetch")
        replies = await click(engine, f"date:{REPORT_DAY}")
        assert replies[-1].text == messages.CREDENTIALS_EXPIRED
        assert await step(repository) == Step.AWAIT_EMAIL
        assert await repository.get_credential(CHAT) is None
        assert await store.get(EntityKind.PORTAL_COOKIES, CHAT) is None

    @pytest.mark.asyncio
    async def test_unexpected_error_resets_to_ready(self, engine, repository, monkeypatch):
        await login(engine)
        await click(engine, "mode:chat")
        await command(engine, "fetch")

        async def explode(*args, **kwargs):
            raise RuntimeError("kaboom")

        monkeypatch.setattr(engine.portal, "download_report", explode)
        replies = await click(engine, f"date:{REPORT_DAY}")
        assert len(replies) == 1
        assert replies[0].text == messages.HANDLER_FAILED
        assert await step(repository) == Step.READY


class TestSheetFlow:
    @pytest.mark.asyncio
    async def test_full_sheet_export(self, engine, repository, sheets_service):
        await login(engine)
        replies = await click(engine, "mode:sheet")
        assert replies[0].text == messages.ASK_SHEET
        assert await step(repository) == Step.AWAIT_SHEET_URL

        replies = await command(engine, "sheet", SHEET_URL)
        assert replies[0].text == messages.AUTHORIZE
        assert replies[0].rows[0][0].url.startswith("https://accounts.google.com/")
        assert await step(repository) == Step.AWAIT_OAUTH
        assert await repository.get_sheet_id(CHAT) == "sheet-xyz_1"

        replies = await engine.complete_consent(CHAT, "refresh-1")
        assert replies[0].text == messages.AUTHORIZED
        assert await step(repository) == Step.READY

        replies = await command(engine, "fetch")
        assert replies[0].text == messages.CHOOSE_DATE
        replies = await click(engine, f"date:{REPORT_DAY}")
        assert replies[-1].text == messages.SELECT_TEAM_EXPORT
        replies = await pick(engine, replies[-1], 0)
        assert replies[0].text == messages.WRITE_QUESTION
        assert await step(repository) == Step.AWAIT_WRITE_MODE

        replies = await click(engine, "write:overwrite")
        assert "Overwrote 4 rows" in replies[0].text
        assert await step(repository) == Step.READY
        written = sheets_service.sheets["sheet-xyz_1"]
        assert written[0] == HEADER
        assert len(written) == 5

    @pytest.mark.asyncio
    async def test_linked_sheet_with_token_skips_url_prompt(self, engine, repository):
        await repository.save_sheet_id(CHAT, "sheet-1")
        await repository.save_sheet_token(CHAT, "refresh-1")
        await login(engine)
        replies = await click(engine, "mode:sheet")
        assert replies[0].text == messages.SHEET_LINKED
        assert await step(repository) == Step.READY

    @pytest.mark.asyncio
    async def test_sheet_command_rejects_bad_input(self, engine):
        await login(engine)
        await click(engine, "mode:sheet")
        replies = await command(engine, "sheet", "not a url!")
        assert replies[0].text == messages.SHEET_USAGE

    @pytest.mark.asyncio
    async def test_sheet_command_outside_sheet_mode(self, engine):
        await login(engine)
        await click(engine, "mode:chat")
        replies = await command(engine, "sheet", SHEET_URL)
        assert replies[0].text == messages.NOT_SHEET_MODE

    @pytest.mark.asyncio
    async def test_fetch_defaults_to_sheet_mode_when_linked(self, engine, repository):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        await repository.save_sheet_id(CHAT, "sheet-1")
        await repository.save_sheet_token(CHAT, "refresh-1")
        replies = await command(engine, "fetch")
        assert replies[0].text == messages.CHOOSE_DATE
        session = await repository.get_session(CHAT)
        assert session.mode == Mode.SHEET
        assert session.step == Step.AWAIT_DATE

    @pytest.mark.asyncio
    async def test_revoked_token_during_write_prompts_consent(self, engine, repository, sheets_service):
        await repository.save_sheet_id(CHAT, "sheet-1")
        await repository.save_sheet_token(CHAT, "refresh-1")
        await login(engine)
        await click(engine, "mode:sheet")
        await command(engine, "fetch")
        teams = await click(engine, f"date:{REPORT_DAY}")
        await pick(engine, teams[-1], 1)
        sheets_service.fail_with = RefreshError("invalid_grant")
        replies = await click(engine, "write:append")
        assert replies[0].text == messages.AUTHORIZE
        assert await step(repository) == Step.AWAIT_OAUTH
        assert await repository.get_sheet_token(CHAT) is None

    @pytest.mark.asyncio
    async def test_write_error_returns_to_ready(self, engine, repository, sheets_service):
        await repository.save_sheet_id(CHAT, "sheet-1")
        await repository.save_sheet_token(CHAT, "refresh-1")
        await login(engine)
        await click(engine, "mode:sheet")
        await command(engine, "fetch")
        teams = await click(engine, f"date:{REPORT_DAY}")
        await pick(engine, teams[-1], 0)
        sheets_service.fail_with = OSError("socket closed")
        replies = await click(engine, "write:overwrite")
        assert replies[0].text.startswith("Write failed")
        assert await step(repository) == Step.READY


class TestSessionGuard:
    @pytest.mark.asyncio
    async def test_button_without_session_restarts(self, engine, repository):
        replies = await click(engine, "team:abc123:0")
        assert len(replies) == 2
        assert replies[0].text == messages.SESSION_EXPIRED
        assert replies[1].text == messages.MODE_QUESTION
        assert await step(repository) == Step.AWAIT_MODE_CHOICE

    @pytest.mark.asyncio
    async def test_agent_command_without_session_restarts(self, engine, repository):
        replies = await command(engine, "agent", "jane")
        assert replies[0].text == messages.SESSION_EXPIRED
        assert await step(repository) == Step.AWAIT_MODE_CHOICE

    @pytest.mark.asyncio
    async def test_restart_keeps_linked_sheet(self, engine, repository):
        await repository.save_sheet_id(CHAT, "sheet-1")
        await command(engine, "team")
        assert (await repository.get_session(CHAT)).sheet_id == "sheet-1"

    @pytest.mark.asyncio
    async def test_fetch_without_session_or_sheet_restarts(self, engine, repository):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        replies = await command(engine, "fetch")
        assert replies[0].text == messages.SESSION_EXPIRED
        assert payloads(replies[1]) == ["mode:sheet", "mode:chat"]
        assert await step(repository) == Step.AWAIT_MODE_CHOICE

    @pytest.mark.asyncio
    async def test_text_without_session(self, engine, repository):
        replies = await text(engine, "hello")
        assert replies[0].text == messages.NEED_START
        assert await repository.get_session(CHAT) is None


class TestStaleButtons:
    @pytest.mark.asyncio
    async def test_team_button_after_flow_finished(self, engine, repository):
        teams = await chat_mode_with_report(engine)
        await pick(engine, teams[-1], 0)
        before = (await repository.get_session(CHAT)).model_dump()
        replies = await pick(engine, teams[-1], 1)
        assert replies[0].alert == messages.STALE_MENU
        assert (await repository.get_session(CHAT)).model_dump() == before

    @pytest.mark.asyncio
    async def test_out_of_range_index(self, engine):
        teams = await chat_mode_with_report(engine)
        menu_prefix = payloads(teams[-1])[0].rsplit(":", 1)[0]
        replies = await click(engine, f"{menu_prefix}:9")
        assert replies[0].alert == messages.STALE_MENU

    @pytest.mark.asyncio
    async def test_index_without_menu_id(self, engine, repository):
        await chat_mode_with_report(engine)
        replies = await click(engine, "team:0")
        assert replies[0].alert == messages.STALE_MENU
        assert await step(repository) == Step.AWAIT_TEAM

    @pytest.mark.asyncio
    async def test_old_agent_menu_after_switching_team(self, engine, repository):
        teams = await chat_mode_with_report(engine)
        sales_agents = await pick(engine, teams[-1], 0)
        assert labels(sales_agents[0]) == ["Jane Doe", "Jan Lee"]
        team_menu = await command(engine, "team")
        support_agents = await pick(engine, team_menu[0], 1)
        assert labels(support_agents[0]) == ["Omar Haddad", "Rita Kahn"]

        replies = await pick(engine, sales_agents[0], 0)
        assert len(replies) == 1
        assert replies[0].alert == messages.STALE_MENU
        assert await step(repository) == Step.AWAIT_AGENT

        replies = await pick(engine, support_agents[0], 0)
        assert "Omar Haddad" in replies[0].text

    @pytest.mark.asyncio
    async def test_old_team_menu_after_refetch(self, engine, repository):
        old_teams = await chat_mode_with_report(engine)
        await command(engine, "fetch")
        new_teams = await click(engine, f"date:{REPORT_DAY}")
        assert payloads(new_teams[-1]) != payloads(old_teams[-1])

        replies = await pick(engine, old_teams[-1], 1)
        assert replies[0].alert == messages.STALE_MENU
        session = await repository.get_session(CHAT)
        assert session.selected_team is None
        assert session.step == Step.AWAIT_TEAM

    @pytest.mark.asyncio
    async def test_old_team_menu_cannot_pick_export_team(self, engine, repository, sheets_service):
        await repository.save_sheet_id(CHAT, "sheet-1")
        await repository.save_sheet_token(CHAT, "refresh-1")
        await login(engine)
        await click(engine, "mode:sheet")
        await command(engine, "fetch")
        old_teams = await click(engine, f"date:{REPORT_DAY}")
        await command(engine, "fetch")
        await click(engine, f"date:{REPORT_DAY}")

        replies = await pick(engine, old_teams[-1], 0)
        assert replies[0].alert == messages.STALE_MENU
        assert await step(repository) == Step.AWAIT_TEAM
        assert sheets_service.sheets == {}

    @pytest.mark.asyncio
    async def test_agent_menu_reusable_until_replaced(self, engine):
        teams = await chat_mode_with_report(engine)
        agents = await pick(engine, teams[-1], 0)
        await pick(engine, agents[0], 0)
        replies = await pick(engine, agents[0], 1)
        assert "Jan Lee" in replies[0].text

    @pytest.mark.asyncio
    async def test_mode_button_outside_mode_choice(self, engine, repository):
        await login(engine)
        await click(engine, "mode:chat")
        replies = await click(engine, "mode:sheet")
        assert replies[0].alert == messages.STALE_MENU
        assert (await repository.get_session(CHAT)).mode == Mode.CHAT

    @pytest.mark.asyncio
    async def test_unknown_payload(self, engine):
        replies = await click(engine, "bogus:1")
        assert replies[0].alert == messages.STALE_MENU


class TestSummary:
    @pytest.mark.asyncio
    async def test_usage(self, engine):
        replies = await command(engine, "summary", "today")
        assert replies[0].text == messages.SUMMARY_USAGE

    @pytest.mark.asyncio
    async def test_bad_date(self, engine, repository):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        replies = await command(engine, "summary", "someday Sales")
        assert "Could not understand date" in replies[0].text

    @pytest.mark.asyncio
    async def test_needs_credential(self, engine):
        replies = await command(engine, "summary", "yesterday Sales")
        assert replies[0].text == messages.SUMMARY_NEEDS_LOGIN

    @pytest.mark.asyncio
    async def test_per_agent_counts(self, engine, repository):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        replies = await command(engine, "summary", "yesterday sales")
        assert replies[0].text == messages.summary_loading("sales", REPORT_DAY)
        body = replies[-1].text
        assert "Jane Doe:</b> 2" in body
        assert "Jan Lee:</b> 2" in body
        assert "Calls: 4" in body
        assert await repository.get_session(CHAT) is None

    @pytest.mark.asyncio
    async def test_no_calls_for_team(self, engine, repository):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        replies = await command(engine, "summary", "2025-07-01 Nope")
        assert replies[-1].text == 'No calls found for team "Nope" on 2025-07-01.'

    @pytest.mark.asyncio
    async def test_multi_word_team(self, engine, repository):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        replies = await command(engine, "summary", "yesterday Night Shift")
        assert replies[-1].text == 'No calls found for team "Night Shift" on 2025-07-01.'

    @pytest.mark.asyncio
    async def test_today_nonexistent_team(self, engine, repository, fake_portal):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        replies = await command(engine, "summary", "today NonexistentTeam")
        assert replies[-1].text == 'No calls found for team "NonexistentTeam" on 2025-07-02.'
        assert len(fake_portal.exports) == 1

    @pytest.mark.asyncio
    async def test_portal_failure(self, engine, repository, fake_portal):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        fake_portal.export_status = 503
        replies = await command(engine, "summary", "yesterday Sales")
        assert len(replies) == 2
        assert "503" in replies[-1].text


class TestModeAndLogout:
    @pytest.mark.asyncio
    async def test_mode_requires_login(self, engine):
        replies = await command(engine, "mode", "chat")
        assert replies[0].text == messages.NOT_LOGGED_IN

    @pytest.mark.asyncio
    async def test_mode_switch(self, engine, repository):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        replies = await command(engine, "mode", "sheet")
        assert replies[0].text == messages.SHEET_MODE_SWITCHED
        session = await repository.get_session(CHAT)
        assert session.mode == Mode.SHEET
        assert session.connect_sheet

    @pytest.mark.asyncio
    async def test_invalid_mode(self, engine, repository):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        replies = await command(engine, "mode", "fax")
        assert replies[0].text == messages.INVALID_MODE

    @pytest.mark.asyncio
    async def test_mode_menu(self, engine, repository):
        await repository.save_credential(CHAT, EMAIL, PASSWORD)
        replies = await command(engine, "mode")
        assert replies[0].text == messages.CHOOSE_MODE
        assert await step(repository) == Step.AWAIT_MODE_CHOICE

    @pytest.mark.asyncio
    async def test_logout_clears_everything(self, engine, repository, store):
        await repository.save_sheet_id(CHAT, "sheet-1")
        await repository.save_sheet_token(CHAT, "refresh-1")
        await chat_mode_with_report(engine)
        replies = await command(engine, "logout")
        assert replies[0].text == messages.LOGGED_OUT
        assert store.snapshot() == {}


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_double_tap_on_date_fetches_once(self, engine, fake_portal):
        await login(engine)
        await click(engine, "mode:chat")
        await command(engine, "fetch")
        first, second = await asyncio.gather(
            click(engine, f"date:{REPORT_DAY}"),
            click(engine, f"date:{REPORT_DAY}"),
        )
        assert len(fake_portal.exports) == 1
        assert second[0].alert == messages.STALE_MENU

    @pytest.mark.asyncio
    async def test_chats_are_isolated(self, engine, repository):
        await login(engine)
        other = await engine.handle(ChatEvent.command_event(CHAT + 1, "start"))
        assert other[0].text == messages.ASK_EMAIL
        assert await step(repository) == Step.AWAIT_MODE_CHOICE

    @pytest.mark.asyncio
    async def test_lock_dropped_after_handling(self, engine):
        await command(engine, "help")
        assert CHAT not in engine._locks

    @pytest.mark.asyncio
    async def test_lock_reused_while_held(self, engine):
        lock = engine._lock(CHAT)
        assert engine._lock(CHAT) is lock
        del lock
        assert CHAT not in engine._locks
