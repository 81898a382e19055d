"""Per-chat workflow session."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, model_validator

from callbridge.conversation.state_machine import Step
from callbridge.schemas.record_schema import CallRecord


class Mode(str, Enum):
    SHEET = "sheet"
    CHAT = "chat"


class ChatSession(BaseModel):
    """
    Workflow position and cached data for one chat identity.

    Persisted as a JSON blob in the external store after every handled
    event. The cached report (``rows``) and its date travel together.
    """
    step: Step
    mode: Optional[Mode] = None
    connect_sheet: bool = False
    sheet_id: Optional[str] = None
    email: Optional[str] = None
    rows: Optional[list[CallRecord]] = None
    date_str: Optional[str] = None
    selected_team: Optional[str] = None
    team_menu_id: Optional[str] = None
    agent_menu_id: Optional[str] = None
    login_attempts: int = 0

    @model_validator(mode="after")
    def _report_fields_together(self) -> "ChatSession":
        if (self.rows is None) != (self.date_str is None):
            raise ValueError("rows and date_str must be set together")
        return self

    @property
    def has_report(self) -> bool:
        return self.rows is not None

    def cache_report(self, rows: list[CallRecord], date_str: str) -> None:
        self.rows = list(rows)
        self.date_str = date_str
        self.selected_team = None
        self.agent_menu_id = None
