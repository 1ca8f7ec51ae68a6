"""
session_store.py — persist the in-progress scan so a restart doesn't lose photos.

Layout (JSON under the fixed key SESSION_KEY in the user's kv scope):
  {"stepIndex": 1, "confirmedImages": ["data:image/jpeg;base64,...", ...]}

stepIndex is written for readability but re-derived from len(confirmedImages)
on load, so a crash between "append" and "advance" can never leave the two
out of step.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from imaging import ImagePayload

logger = logging.getLogger(__name__)

SESSION_KEY = "drug_scanner_session"

_db = None


def _get_db():
    global _db
    if _db is None:
        import database as db
        _db = db
    return _db


@dataclass
class PersistedSession:
    step_index: int
    confirmed_images: list[ImagePayload] = field(default_factory=list)


def dumps(images: list[ImagePayload]) -> str:
    return json.dumps({
        "stepIndex": len(images),
        "confirmedImages": [img.to_data_uri() for img in images],
    })


def loads(raw: str) -> Optional[PersistedSession]:
    """Parse a stored record. Returns None for anything unreadable."""
    try:
        data = json.loads(raw)
        uris = data.get("confirmedImages") or []
        images = [ImagePayload.from_data_uri(u) for u in uris]
    except (ValueError, TypeError, AttributeError) as exc:
        logger.warning("Discarding unreadable scan session: %s", exc)
        return None

    stored_index = data.get("stepIndex")
    if stored_index != len(images):
        logger.warning(
            "Session stepIndex=%r disagrees with %d stored images — using image count",
            stored_index, len(images),
        )
    return PersistedSession(step_index=len(images), confirmed_images=images)


async def save(user_id: int, images: list[ImagePayload]) -> None:
    """Write the confirmed image sequence. Raises on I/O failure."""
    await _get_db().kv_put(str(user_id), SESSION_KEY, dumps(images))


async def load(user_id: int) -> Optional[PersistedSession]:
    raw = await _get_db().kv_get(str(user_id), SESSION_KEY)
    if raw is None:
        return None
    return loads(raw)


async def clear(user_id: int) -> None:
    await _get_db().kv_delete(str(user_id), SESSION_KEY)
