"""
Raw export rows -> typed CallRecords, plus team/agent groupings.

Pure transformation, no I/O. Column positions are a contract with the
portal's export format:

    col 0  caller        col 6  team
    col 1  call_date     col 7  callee
    col 2  call_time     col 8  status
    col 3  end_time      col 9  duration (s)
    col 5  agent         col 10 talktime (s)
                         col 11 hangup by

Team comparisons are case-insensitive everywhere; the first-seen casing
is what gets displayed.
"""

import logging
import re
from datetime import date, datetime, time
from typing import Any, Iterable, Optional, Sequence

from callbridge.schemas.record_schema import CallRecord

logger = logging.getLogger(__name__)

COL_CALLER = 0
COL_CALL_DATE = 1
COL_CALL_TIME = 2
COL_END_TIME = 3
COL_AGENT = 5
COL_TEAM = 6
COL_CALLEE = 7
COL_STATUS = 8
COL_DURATION = 9
COL_TALKTIME = 10
COL_HANGUP_BY = 11

_CLOCK_RE = re.compile(r"^(?:(\d+):)?(\d{1,2}):(\d{2})$")


def _cell(row: Sequence[Any], index: int) -> Any:
    return row[index] if index < len(row) else None


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _seconds(value: Any) -> int:
    """Coerce a duration cell (number, numeric string, H:MM:SS) to seconds."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, time):
        return value.hour * 3600 + value.minute * 60 + value.second
    text = str(value).strip()
    if not text:
        return 0
    try:
        return int(float(text))
    except ValueError:
        pass
    match = _CLOCK_RE.match(text)
    if match:
        hours, minutes, seconds = match.groups()
        return int(hours or 0) * 3600 + int(minutes) * 60 + int(seconds)
    logger.debug("Unparseable duration cell %r, counting as 0", value)
    return 0


def _is_blank(row: Sequence[Any]) -> bool:
    return all(_text(cell) == "" for cell in row)


def to_call_record(row: Sequence[Any]) -> CallRecord:
    """Map one raw data row to a CallRecord."""
    return CallRecord(
        caller=_text(_cell(row, COL_CALLER)),
        agent=_text(_cell(row, COL_AGENT)),
        team=_text(_cell(row, COL_TEAM)),
        callee=_text(_cell(row, COL_CALLEE)),
        status=_text(_cell(row, COL_STATUS)),
        duration_sec=_seconds(_cell(row, COL_DURATION)),
        talktime_sec=_seconds(_cell(row, COL_TALKTIME)),
        hangup_by=_text(_cell(row, COL_HANGUP_BY)),
        call_date=_text(_cell(row, COL_CALL_DATE)),
        call_time=_text(_cell(row, COL_CALL_TIME)),
        end_time=_text(_cell(row, COL_END_TIME)),
    )


def to_call_records(raw_rows: Sequence[Sequence[Any]]) -> list[CallRecord]:
    """Drop the header row and normalize the rest.

    Fully empty rows are skipped; rows without a team are kept and land
    in the empty-string team bucket.
    """
    records = [to_call_record(row) for row in raw_rows[1:] if row and not _is_blank(row)]
    logger.debug("Normalized %d of %d raw rows", len(records), max(len(raw_rows) - 1, 0))
    return records


def team_key(team: Optional[str]) -> str:
    return (team or "").strip().lower()


def distinct_teams(records: Iterable[CallRecord], case_sensitive: bool = False) -> list[str]:
    """Teams in first-seen order, deduplicated case-insensitively by default."""
    seen: set[str] = set()
    teams: list[str] = []
    for record in records:
        key = record.team if case_sensitive else team_key(record.team)
        if key in seen:
            continue
        seen.add(key)
        teams.append(record.team)
    return teams


def filter_team(records: Iterable[CallRecord], team: str) -> list[CallRecord]:
    wanted = team_key(team)
    return [r for r in records if team_key(r.team) == wanted]


def distinct_agents(records: Iterable[CallRecord], team: str) -> list[str]:
    """Agents of one team in first-seen order."""
    seen: set[str] = set()
    agents: list[str] = []
    for record in filter_team(records, team):
        if record.agent in seen:
            continue
        seen.add(record.agent)
        agents.append(record.agent)
    return agents


def filter_agent(records: Iterable[CallRecord], team: str, agent: str) -> list[CallRecord]:
    return [r for r in filter_team(records, team) if r.agent == agent]
