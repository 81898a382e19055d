"""Call report and credential data models."""

from pydantic import BaseModel


class CallRecord(BaseModel):
    """One normalized row of the portal's daily call export."""
    caller: str = ""
    agent: str = ""
    team: str = ""
    callee: str = ""
    status: str = ""
    duration_sec: int = 0
    talktime_sec: int = 0
    hangup_by: str = ""
    call_date: str = ""
    call_time: str = ""
    end_time: str = ""


class PortalCredential(BaseModel):
    """Portal login stored per chat identity."""
    email: str
    password: str


class SheetToken(BaseModel):
    """Spreadsheet OAuth refresh token stored per chat identity."""
    refresh_token: str
