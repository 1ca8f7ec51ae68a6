"""
key_store.py — the user's model API key (the "credential").

Priority order:
  1. Database, per user (set via /setkey in the bot) — takes precedence
  2. Environment variable / .env file                — fallback / bootstrap

The env variable depends on config.EXTRACTION_PROVIDER:
  google     →  GOOGLE_API_KEY
  openai     →  OPENAI_API_KEY
  anthropic  →  ANTHROPIC_API_KEY

The key has its own lifecycle: resetting a scan never touches it.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

import config

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "extraction_api_key"

_ENV_VARS = {
    "google": "GOOGLE_API_KEY",
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}

# Lazy import to avoid circular dependency at module load time
_db = None


def _get_db():
    global _db
    if _db is None:
        import database as db
        _db = db
    return _db


def env_var_name() -> str:
    return _ENV_VARS.get(config.EXTRACTION_PROVIDER, "GOOGLE_API_KEY")


async def get(user_id: int) -> Optional[str]:
    """
    Return the key for user_id, checking DB first then env.
    Returns None if not set anywhere.
    """
    try:
        db_val = await _get_db().kv_get(str(user_id), CREDENTIAL_KEY)
        if db_val:
            return db_val
    except Exception as exc:
        logger.warning("key_store: DB lookup failed for user %s: %s", user_id, exc)

    env_val = os.getenv(env_var_name())
    return env_val or None


async def set(user_id: int, value: str) -> None:
    """Save a key to the DB (overrides .env for this user)."""
    await _get_db().kv_put(str(user_id), CREDENTIAL_KEY, value.strip())


async def delete(user_id: int) -> bool:
    """Remove the user's key from DB (falls back to .env value if present)."""
    return await _get_db().kv_delete(str(user_id), CREDENTIAL_KEY)


def mask(value: Optional[str]) -> str:
    """Return a masked version safe to show in Telegram."""
    if not value:
        return "❌ not set"
    if len(value) <= 8:
        return "✅ ****"
    return f"✅ {value[:4]}{'*' * (len(value) - 8)}{value[-4:]}"
