"""
identify_server.py — the lookup proxy used by web clients.

Runs as an aiohttp web server in the same asyncio event loop as the Telegram bot.
Browsers can't call openFDA with the extracted identity in one hop and get a
normalised record back, so this endpoint does it for them.

Endpoints:
  POST /api/identify   body {"identity": {...}, "barcode": "..."}
                       → {"status": "OK", "drug": {...}, "sources": [{name, url}]}
                       → {"status": "Not_Found"}
                       non-POST → 405, malformed JSON → 400
  GET  /health         plain-text health check (for uptime monitors / nginx)
"""
from __future__ import annotations

import json
import logging

from aiohttp import web

import config
import drug_lookup

logger = logging.getLogger(__name__)


# ── Request handlers ───────────────────────────────────────────────────────────

async def handle_identify(request: web.Request) -> web.Response:
    if request.method != "POST":
        return web.json_response({"error": "Method not allowed"}, status=405)

    body = await request.text()
    try:
        data = json.loads(body or "{}")
    except json.JSONDecodeError:
        return web.json_response({"error": "Invalid JSON"}, status=400)
    if not isinstance(data, dict):
        return web.json_response({"error": "Invalid JSON"}, status=400)

    identity = data.get("identity") or {}
    if not isinstance(identity, dict):
        identity = {}
    barcode = data.get("barcode") or ""

    try:
        result = await drug_lookup.lookup(identity, str(barcode))
    except Exception as exc:
        logger.error("API Error: %s", exc, exc_info=True)
        return web.json_response({"error": "Internal Server Error"}, status=500)

    return web.json_response(result.to_response())


async def handle_health(request: web.Request) -> web.Response:
    """Health check — returns 200 OK. Use with uptime monitors."""
    return web.Response(text="OK", content_type="text/plain")


# ── App factory ────────────────────────────────────────────────────────────────

def build_web_app() -> web.Application:
    app = web.Application()
    app.router.add_route("*", "/api/identify", handle_identify)
    app.router.add_get("/health",              handle_health)
    return app


async def start_identify_server() -> web.AppRunner:
    """Start the web server. Returns runner so caller can shut it down cleanly."""
    app    = build_web_app()
    runner = web.AppRunner(app, access_log=logger)
    await runner.setup()
    site = web.TCPSite(runner, "0.0.0.0", config.IDENTIFY_PORT)
    await site.start()
    logger.info("💊 Identify proxy listening on port %d", config.IDENTIFY_PORT)
    return runner
