"""Chat identity logging context for tracing events across modules.

Provides a chat-aware logger that attaches the chat identity to every
log message, making it easy to follow a single chat's workflow through
the engine, the portal client and the sheet adapter.

Usage:
    from callbridge.logging_context import get_chat_logger, set_chat_id

    set_chat_id(123456)
    logger = get_chat_logger(__name__)
    logger.info("Processing event")  # record.chat_id == "123456"
"""

import logging
from contextvars import ContextVar

_chat_id: ContextVar[str] = ContextVar("chat_id", default="-")


def set_chat_id(chat_id: object) -> None:
    """Set the chat identity for the current async context."""
    _chat_id.set(str(chat_id))


def get_chat_id() -> str:
    """Retrieve the current chat identity."""
    return _chat_id.get()


class ChatIdFilter(logging.Filter):
    """Injects chat_id into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.chat_id = _chat_id.get()  # type: ignore[attr-defined]
        return True


def get_chat_logger(name: str) -> logging.Logger:
    """Return a logger with the ChatIdFilter attached.

    The filter adds ``chat_id`` to each record so formatters can
    include ``%(chat_id)s`` in their format string.
    """
    logger = logging.getLogger(name)
    if not any(isinstance(f, ChatIdFilter) for f in logger.filters):
        logger.addFilter(ChatIdFilter())
    return logger
