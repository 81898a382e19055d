"""
Telegram front end.

Translates Telegram updates into ChatEvents for the engine and renders
the engine's Replies back as HTML messages with inline keyboards. No
workflow logic lives here.
"""

import logging
from typing import Optional, Sequence

from telegram import CallbackQuery, InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from callbridge.conversation.engine import ConversationEngine
from callbridge.schemas.event_schema import Button, ChatEvent, Reply

logger = logging.getLogger(__name__)


def to_markup(rows: Sequence[Sequence[Button]]) -> Optional[InlineKeyboardMarkup]:
    if not rows:
        return None
    return InlineKeyboardMarkup([
        [
            InlineKeyboardButton(b.label, url=b.url) if b.url
            else InlineKeyboardButton(b.label, callback_data=b.payload)
            for b in row
        ]
        for row in rows
    ])


def split_command(text: str) -> tuple[str, str]:
    """``"/agent@bot Jane Doe"`` -> ``("agent", "Jane Doe")``."""
    head, _, rest = text.strip().partition(" ")
    name = head.lstrip("/").split("@", 1)[0]
    return name, rest.strip()


class TelegramFrontend:
    """Binds a ConversationEngine to a python-telegram-bot Application."""

    def __init__(self, engine: ConversationEngine) -> None:
        self.engine = engine
        self.application: Optional[Application] = None

    def build_application(self, token: str) -> Application:
        if not token:
            raise ValueError("BOT_TOKEN is required to run the Telegram bot")
        application = ApplicationBuilder().token(token).build()
        application.add_handler(MessageHandler(filters.COMMAND, self.on_command))
        application.add_handler(CallbackQueryHandler(self.on_callback))
        application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, self.on_text))
        application.add_error_handler(self.on_error)
        self.application = application
        return application

    # ------------------------------------------------------------------ #
    # Update handlers
    # ------------------------------------------------------------------ #

    async def on_command(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if message is None or not message.text:
            return
        name, args = split_command(message.text)
        event = ChatEvent.command_event(update.effective_chat.id, name, args)
        await self.send(update.effective_chat.id, await self.engine.handle(event))

    async def on_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.effective_message
        if message is None or message.text is None:
            return
        event = ChatEvent.text_event(update.effective_chat.id, message.text)
        await self.send(update.effective_chat.id, await self.engine.handle(event))

    async def on_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        query = update.callback_query
        if query is None or query.message is None:
            return
        chat_id = query.message.chat.id
        replies = await self.engine.handle(ChatEvent.callback_event(chat_id, query.data or ""))

        alert = next((r.alert for r in replies if r.alert), None)
        await query.answer(text=alert, show_alert=bool(alert))
        await self.send(chat_id, replies, query=query)

    async def on_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.error("Unhandled Telegram error", exc_info=context.error)

    # ------------------------------------------------------------------ #
    # Rendering
    # ------------------------------------------------------------------ #

    async def send(
        self, chat_id: int, replies: Sequence[Reply], query: Optional[CallbackQuery] = None
    ) -> None:
        """Deliver replies; ``edit`` replies replace the clicked message when possible."""
        bot = self.application.bot
        for reply in replies:
            if not reply.text:
                continue
            markup = to_markup(reply.rows)
            if reply.edit and query is not None:
                try:
                    await query.edit_message_text(
                        reply.text, parse_mode=ParseMode.HTML, reply_markup=markup
                    )
                    query = None
                    continue
                except BadRequest as err:
                    logger.warning("Could not edit message, sending a new one: %s", err)
            await bot.send_message(
                chat_id, reply.text, parse_mode=ParseMode.HTML, reply_markup=markup
            )

    async def notify(self, chat_id: int, replies: Sequence[Reply]) -> None:
        """Push replies to a chat outside an update (OAuth callback)."""
        try:
            await self.send(chat_id, replies)
        except TelegramError as err:
            logger.error("Could not notify chat %s: %s", chat_id, err)
