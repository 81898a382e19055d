"""Front-end neutral inbound events and outbound replies."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class EventKind(str, Enum):
    COMMAND = "command"
    CALLBACK = "callback"
    TEXT = "text"


@dataclass
class ChatEvent:
    """A single inbound event from the conversational front end."""
    chat_id: int
    kind: EventKind
    command: str = ""
    args: str = ""
    payload: str = ""
    text: str = ""

    @classmethod
    def command_event(cls, chat_id: int, command: str, args: str = "") -> "ChatEvent":
        return cls(chat_id=chat_id, kind=EventKind.COMMAND, command=command.lower(), args=args.strip())

    @classmethod
    def callback_event(cls, chat_id: int, payload: str) -> "ChatEvent":
        return cls(chat_id=chat_id, kind=EventKind.CALLBACK, payload=payload)

    @classmethod
    def text_event(cls, chat_id: int, text: str) -> "ChatEvent":
        return cls(chat_id=chat_id, kind=EventKind.TEXT, text=text)


@dataclass
class Button:
    """One menu button: either a callback payload or an external URL."""
    label: str
    payload: Optional[str] = None
    url: Optional[str] = None


@dataclass
class Reply:
    """
    One outbound message.

    ``text`` is rich text (HTML subset); ``rows`` is the button menu, one
    inner list per keyboard row. ``edit`` asks the front end to replace
    the message that carried the clicked button instead of sending anew.
    """
    text: str
    rows: list[list[Button]] = field(default_factory=list)
    edit: bool = False
    alert: Optional[str] = None
