"""
Call-report bridge entry point.

Runs the Telegram bot (long polling) inside the FastAPI app that serves
the Google OAuth callback, so both share one event loop and one engine.

Usage:
    Bot + callback server:  python main.py
    Console mode:           python main.py console
"""

import logging
import sys
from contextlib import asynccontextmanager

from callbridge.config import settings

logger = logging.getLogger(__name__)


def build_engine():
    """Wire store, portal client, sheet adapter and consent flow into an engine."""
    from callbridge.conversation.engine import ConversationEngine
    from callbridge.portal.client import PortalClient
    from callbridge.sheets.oauth import ConsentFlow
    from callbridge.sheets.sync import SheetSyncAdapter
    from callbridge.storage.repository import StateRepository
    from callbridge.storage.store import build_store

    store = build_store(
        settings.store.backend,
        settings.store.supabase_url,
        settings.store.supabase_key,
        settings.store.table,
    )
    consent = ConsentFlow(settings.google)
    engine = ConversationEngine(
        repository=StateRepository(store),
        portal=PortalClient(store, settings.portal.base_url, settings.portal.timeout_sec),
        sheets=SheetSyncAdapter(store, settings.google),
        consent=consent,
        flow=settings.flow,
    )
    return engine, consent


def build_app():
    """FastAPI app whose lifespan starts and stops the Telegram bot."""
    from callbridge.frontends.oauth_server import create_app
    from callbridge.frontends.telegram_bot import TelegramFrontend

    engine, consent = build_engine()
    frontend = TelegramFrontend(engine)
    application = frontend.build_application(settings.telegram.bot_token)

    @asynccontextmanager
    async def lifespan(app):
        await application.initialize()
        await application.start()
        await application.updater.start_polling()
        me = await application.bot.get_me()
        logger.info("Polling as @%s", me.username)
        try:
            yield
        finally:
            await application.updater.stop()
            await application.stop()
            await application.shutdown()

    return create_app(engine, consent, frontend.notify, lifespan=lifespan)


def _run_bot_mode() -> None:
    import uvicorn

    app = build_app()
    logger.info("OAuth callback listening on port %d", settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level=settings.log_level.lower())


def _run_console_mode() -> None:
    """Start the offline console demo (no network, no API keys)."""
    from console_demo import ConsoleSession

    ConsoleSession().run()


if __name__ == "__main__":
    if len(sys.argv) > 1 and sys.argv[1] == "console":
        _run_console_mode()
    else:
        _run_bot_mode()
