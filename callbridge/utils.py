"""Shared utilities used across the bridge."""

import re
from datetime import date, datetime, timedelta
from typing import Optional

from dateutil import parser as dtparser

from callbridge.errors import DateParseError

_SHEET_URL_RE = re.compile(r"/d/([A-Za-z0-9_-]+)")
_SHEET_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_date_input(raw: str, today: Optional[date] = None) -> date:
    """Parse ``today``, ``yesterday``, strict ``YYYY-MM-DD`` or free text.

    Free text such as "July 1, 2025" or "1 jul 2025" goes through
    dateutil's fuzzy parser as a best effort.

    Raises:
        DateParseError: If nothing usable can be extracted.

    Examples:
        >>> parse_date_input("2025-07-01")
        datetime.date(2025, 7, 1)
        >>> parse_date_input("yesterday", today=date(2025, 7, 2))
        datetime.date(2025, 7, 1)
    """
    today = today or date.today()
    text = (raw or "").strip().lower()
    if not text:
        raise DateParseError(raw)
    if text == "today":
        return today
    if text == "yesterday":
        return today - timedelta(days=1)
    if _ISO_DATE_RE.match(text):
        try:
            return datetime.strptime(text, "%Y-%m-%d").date()
        except ValueError:
            raise DateParseError(raw) from None
    if not any(ch.isdigit() for ch in text) and not _mentions_month(text):
        raise DateParseError(raw)
    try:
        default = datetime(today.year, today.month, today.day)
        return dtparser.parse(text, fuzzy=True, default=default).date()
    except (ValueError, OverflowError):
        raise DateParseError(raw) from None


_MONTHS = (
    "jan", "feb", "mar", "apr", "may", "jun",
    "jul", "aug", "sep", "oct", "nov", "dec",
)


def _mentions_month(text: str) -> bool:
    return any(m in text for m in _MONTHS)


def recent_dates(days: int, today: Optional[date] = None) -> list[date]:
    """Return the last ``days`` dates, yesterday first, then today and older."""
    today = today or date.today()
    yesterday = today - timedelta(days=1)
    older = [today - timedelta(days=n) for n in range(2, days + 1)]
    return [yesterday, today, *older][:days]


def extract_sheet_id(raw: str) -> Optional[str]:
    """Pull a spreadsheet id out of a full URL or accept a bare id.

    Examples:
        >>> extract_sheet_id("https://docs.google.com/spreadsheets/d/abc_123-X/edit")
        'abc_123-X'
        >>> extract_sheet_id("abc_123")
        'abc_123'
        >>> extract_sheet_id("not an id!") is None
        True
    """
    value = (raw or "").strip()
    if not value:
        return None
    match = _SHEET_URL_RE.search(value)
    if match:
        return match.group(1)
    if _SHEET_ID_RE.match(value):
        return value
    return None
