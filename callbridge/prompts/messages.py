"""
User-facing message texts and menu builders.

Texts use the Telegram HTML subset. Anything that came from a user or
from the portal is passed through ``html.escape`` before interpolation.
"""

from datetime import date
from html import escape
from typing import Sequence

from callbridge.reports.stats import StatusCounts
from callbridge.schemas.event_schema import Button

# --- Callback payload prefixes ---
MODE_PREFIX = "mode:"
DATE_PREFIX = "date:"
TEAM_PREFIX = "team:"
AGENT_PREFIX = "agent:"
WRITE_PREFIX = "write:"


def bold(text: str) -> str:
    """Wrap already-safe text in bold tags."""
    return f"<b>{text}</b>"


# --- Static texts ---
ASK_EMAIL = bold("Enter your Flyfone email:")
ASK_PASSWORD = bold("Enter your Flyfone password:")
LOGIN_OK = bold("Login successful! Now choose a mode:")
LOGIN_FAILED = bold("Credentials invalid, try your Flyfone email again:")
LOGIN_LOCKED = bold("Too many failed login attempts. Use /start to try again.")
CREDENTIALS_EXPIRED = bold("Your Flyfone login stopped working. Enter your Flyfone email:")
MODE_QUESTION = bold("Do you want to connect your Google Sheet?")
CHOOSE_MODE = bold("Choose your mode:")
SESSION_EXPIRED = bold("Session expired! Restarting...")
ASK_SHEET = bold('Please send your Sheet URL using:\n\n "/sheet &lt;URL/ID&gt;"')
SHEET_USAGE = (
    "<code>/sheet URL/ID</code>\n\n"
    "Replace URL/ID with your spreadsheet link, e.g.\n"
    "<code>/sheet https://docs.google.com/spreadsheets/d/xyz...</code>"
)
SHEET_LINKED = bold("Sheet linked! Now use /fetch to export.")
AUTHORIZE = bold("Please authorize access to Google Sheets:")
AUTHORIZED = bold("Authorized! Do /fetch now.")
CHAT_MODE_ON = bold("Chat mode enabled!\n\n Use /fetch to start.")
CHAT_MODE_SWITCHED = bold("Chat mode enabled!")
SHEET_MODE_SWITCHED = bold("Sheet mode enabled!")
INVALID_MODE = bold('Invalid mode. Use "/mode chat" or "/mode sheet"')
NOT_LOGGED_IN = bold("You are not logged in. Use /start to log in first.")
NO_MODE = bold("No mode selected. Use /mode to pick one.")
MISSING_SHEET = bold('Missing sheet. Use "/sheet &lt;URL/ID&gt;".')
CHOOSE_DATE = bold("Please choose a date:")
CHOOSE_DATE_CHAT = bold("Select a date to view in chat:")
SELECT_TEAM = bold("Select a team:")
SELECT_TEAM_EXPORT = bold("Select a team to export:")
WRITE_QUESTION = bold("Do you want to overwrite existing data, or append?")
NEED_DATE_FIRST = bold("This command is only available in chat mode after selecting a date.")
NEED_TEAM_FIRST = bold("This command is only available in chat mode after selecting a team.")
NO_TEAMS_CACHED = bold("No teams found for this date.")
NO_AGENTS = bold("No agents found for this team.")
STALE_MENU = "That menu is no longer active."
UNKNOWN_INPUT = bold("I didn't expect a message here. Use /help to see what I can do.")
NEED_START = bold("Use /start to begin.")
FINISH_CURRENT_STEP = bold("Finish the current step first, or use /mode to start over.")
NOT_SHEET_MODE = bold("Not in Sheet mode. Use /mode to switch.")
CONSENT_NO_TOKEN = bold(
    "Google did not return a refresh token. Use /sheet again to re-authorize."
)
LOGIN_PORTAL_DOWN = bold(
    "The Flyfone portal could not be reached. Send your password again in a moment."
)
SUMMARY_USAGE = (
    "<b>Usage:</b> <code>/summary &lt;date|today|yesterday&gt; &lt;TeamName&gt;</code>"
)
SUMMARY_NEEDS_LOGIN = bold("You need to log in with /start before using /summary.")
PORTAL_UNAVAILABLE = bold("The Flyfone portal could not be reached. Try /fetch again in a moment.")
PORTAL_CHANGED = bold("The Flyfone login page looks different than expected. Try /fetch again later.")
HANDLER_FAILED = bold("Something went wrong. Please try again.")
LOGGED_OUT = (
    "<b>You've been logged out.</b>\n\n"
    "Your Flyfone credentials and session have been cleared.\n"
    "Use /start again to log back in."
)
HELP = (
    "<b>Commands</b>\n"
    "/start - log in and choose a mode\n"
    "/mode [chat|sheet] - switch between chat and sheet mode\n"
    "/sheet &lt;URL/ID&gt; - link a Google Sheet\n"
    "/fetch - pick a date and load the call report\n"
    "/team - choose another team from the loaded report\n"
    "/agent [name] - agent menu, or stats for one agent\n"
    "/summary &lt;date&gt; &lt;team&gt; - calls per agent for one team\n"
    "/logout - forget your credentials and session"
)


# --- Dynamic texts ---

def date_not_understood(raw: str) -> str:
    return bold(f'Could not understand date "{escape(raw)}".')


def fetching(date_str: str, sheet_mode: bool) -> str:
    verb = "Exporting" if sheet_mode else "Fetching"
    return bold(f"{verb} calls for {escape(date_str)}…")


def no_teams_on(date_str: str) -> str:
    return bold(f"No teams found on {escape(date_str)}.")


def export_failed(reason: str) -> str:
    return bold(f"Error fetching report: {escape(reason)}. Use /fetch to retry.")


def write_done(overwrite: bool, count: int, team: str, date_str: str) -> str:
    verb = "Overwrote" if overwrite else "Appended"
    return bold(f'{verb} {count} rows for team "{escape(team)}" on {escape(date_str)}')


def write_failed(reason: str) -> str:
    return f"Write failed: {escape(reason)}. Use /fetch to try again."


def team_header(team: str) -> str:
    return f"<b>Team:</b> {escape(team or '(none)')}\n<b>Select an agent:</b>"


def no_agent_match(query: str) -> str:
    return bold(f'No agent found matching "{escape(query)}".')


def render_agent_stats(agent: str, date_str: str, counts: StatusCounts) -> str:
    """Per-agent outcome card; always contains the plain ``Calls: N`` line."""
    return "\n".join([
        f"<b>Name:</b> {escape(agent)}",
        f"<b>Date:</b> {escape(date_str)}",
        f"Calls: {counts.total}",
        f"Answered: {counts.answered}",
        f"Cancelled: {counts.cancelled}",
        f"Busy: {counts.busy}",
    ])


def summary_loading(team: str, date_str: str) -> str:
    return bold(f"Loading summary for {escape(team)} on {escape(date_str)}…")


def summary_empty(team: str, date_str: str) -> str:
    return f'No calls found for team "{escape(team)}" on {escape(date_str)}.'


def render_summary(
    team: str, date_str: str, per_agent: Sequence[tuple[str, int]], counts: StatusCounts
) -> str:
    lines = [bold(f"Summary for {escape(team)} on {escape(date_str)}:")]
    lines.extend(f"• <b>{escape(agent)}:</b> {n}" for agent, n in per_agent)
    lines.append(
        f"\nCalls: {counts.total} | Answered: {counts.answered} | "
        f"Cancelled: {counts.cancelled} | Busy: {counts.busy}"
    )
    return "\n".join(lines)


# --- Menus ---

def mode_menu() -> list[list[Button]]:
    return [[
        Button("Yes, link a sheet", payload=f"{MODE_PREFIX}sheet"),
        Button("No, keep in chat", payload=f"{MODE_PREFIX}chat"),
    ]]


def date_menu(days: Sequence[date]) -> list[list[Button]]:
    """One button per day; the first entry is the default (yesterday)."""
    rows = []
    for i, day in enumerate(days):
        label = day.strftime("%a %d %b")
        if i == 0:
            label = f"» {label}"
        rows.append([Button(label, payload=f"{DATE_PREFIX}{day.isoformat()}")])
    return rows


def team_menu(teams: Sequence[str], menu_id: str) -> list[list[Button]]:
    """Payloads are ``team:<menu_id>:<index>`` so a superseded menu can be told apart."""
    return [
        [Button(team or "(no team)", payload=f"{TEAM_PREFIX}{menu_id}:{i}")] for i, team in enumerate(teams)
    ]


def agent_menu(agents: Sequence[str], menu_id: str) -> list[list[Button]]:
    return [
        [Button(agent or "Unknown", payload=f"{AGENT_PREFIX}{menu_id}:{i}")] for i, agent in enumerate(agents)
    ]


def write_menu() -> list[list[Button]]:
    return [[
        Button("Overwrite", payload=f"{WRITE_PREFIX}overwrite"),
        Button("Append", payload=f"{WRITE_PREFIX}append"),
    ]]


def authorize_menu(consent_url: str) -> list[list[Button]]:
    return [[Button("Authorize", url=consent_url)]]
