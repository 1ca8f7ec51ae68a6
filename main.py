"""
main.py — Single entry point.

Runs the Telegram bot and the identify proxy web server in the same asyncio
event loop — no threads, no subprocesses.

Architecture:
  asyncio event loop
    ├── python-telegram-bot (polling)        only when TELEGRAM_BOT_TOKEN is set
    └── aiohttp web server  (POST /api/identify, GET /health)
         only when IDENTIFY_SERVER_ENABLED=true
"""
import asyncio
import logging
import signal
import sys
from pathlib import Path

import config

# Log file lives in the same data/ directory as the database so that a single
# Docker volume mount (./data:/app/data) captures both.
_data_dir = Path(config.DATA_DIR)
_data_dir.mkdir(parents=True, exist_ok=True)

logging.basicConfig(
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    level=logging.INFO,
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(str(_data_dir / "scanner.log"), encoding="utf-8"),
    ],
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def run() -> None:
    # ── Database bootstrap (must happen before anything else) ─────────────────
    import database as _db
    try:
        await _db.init_db()
        logger.info("Database ready at %s", _db.DB_PATH)
    except Exception as exc:
        logger.critical("FATAL: database init failed: %s", exc, exc_info=True)
        raise

    # ── Extraction provider (only the bot talks to the model) ─────────────────
    if config.TELEGRAM_BOT_TOKEN:
        from providers.manager import check_provider_config
        try:
            check_provider_config()
        except Exception as exc:
            logger.critical("FATAL: %s", exc)
            raise

    # ── Identify proxy ─────────────────────────────────────────────────────────
    web_runner = None
    if config.IDENTIFY_SERVER_ENABLED:
        from identify_server import start_identify_server
        try:
            web_runner = await start_identify_server()
        except Exception as exc:
            logger.error("Failed to start identify server: %s", exc)
            logger.warning("Continuing without the identify proxy.")

    if not config.TELEGRAM_BOT_TOKEN and web_runner is None:
        logger.critical("Nothing to run: TELEGRAM_BOT_TOKEN is not set and the identify server is off.")
        return

    stop_event = asyncio.Event()

    def _stop(*_):
        logger.info("Shutdown signal received.")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except (NotImplementedError, RuntimeError):
            # Windows doesn't support add_signal_handler for all signals
            pass

    try:
        if config.TELEGRAM_BOT_TOKEN:
            from bot import build_application
            ptb_app = build_application()

            # ── Run PTB in async context (PTB v20 pattern for custom event loops)
            async with ptb_app:
                await ptb_app.start()
                await ptb_app.updater.start_polling(
                    allowed_updates=["message", "callback_query"],
                    drop_pending_updates=True,
                )
                logger.info("✅ Bot is running. Press Ctrl+C to stop.")

                await stop_event.wait()

                logger.info("Shutting down…")
                await ptb_app.updater.stop()
                await ptb_app.stop()
        else:
            logger.warning("TELEGRAM_BOT_TOKEN not set — running the identify proxy only.")
            await stop_event.wait()
    finally:
        if web_runner:
            await web_runner.cleanup()
            logger.info("Identify server stopped.")

    logger.info("Goodbye.")


def main() -> None:
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
