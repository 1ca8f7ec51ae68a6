"""
pipeline.py — finalization: what happens once every photo is confirmed.

  1. read the user's API key              (missing → MissingCredentialError)
  2. one extraction call over all photos  (failure → ExtractionError)
  3. lookup mode only: resolve the identity against openFDA
     (skipped when the model was not confident — the result would be shown
      as "not identified" anyway)

Each step waits for the previous one; nothing is retried.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import config
import database as db
import drug_lookup
import key_store
from errors import MissingCredentialError
from imaging import ImagePayload
from lookup_backends.base import LookupResult
from providers import manager
from providers.base import ExtractionResult, IdentityRecord, build_instruction

logger = logging.getLogger(__name__)

RESULT_MODES = ("advice", "lookup")


@dataclass
class ScanOutcome:
    """Payload of a finished scan (the wizard's Done result)."""
    mode: str
    extraction: ExtractionResult
    confident: bool
    lookup: Optional[LookupResult] = None

    @property
    def record(self) -> IdentityRecord:
        return self.extraction.record

    @property
    def label(self) -> str:
        if not self.confident:
            return "not_identified"
        if self.mode == "lookup":
            return "found" if self.lookup and self.lookup.is_found else "not_found"
        return "identified"

    @property
    def drug_name(self) -> str:
        if self.lookup and self.lookup.is_found:
            return self.lookup.drug.display_name
        return self.record.name or ""


def result_mode() -> str:
    mode = config.RESULT_MODE
    if mode not in RESULT_MODES:
        logger.warning("Unknown RESULT_MODE %r — using 'advice'", mode)
        return "advice"
    return mode


async def finalize_scan(user_id: int, images: list[ImagePayload]) -> ScanOutcome:
    """Run the whole finalization for one user's confirmed photos."""
    api_key = await key_store.get(user_id)
    if not api_key:
        raise MissingCredentialError("No API key configured yet. Send /setkey <your key> and retry.")

    mode = result_mode()
    instruction = build_instruction(mode, config.RESPONSE_LANGUAGE)

    extraction = await manager.extract(images, instruction, api_key)
    record = extraction.record
    confident = record.is_confident(config.CONFIDENCE_THRESHOLD)

    lookup_result: Optional[LookupResult] = None
    if mode == "lookup" and confident:
        lookup_result = await drug_lookup.lookup(record.fields, record.barcode)

    outcome = ScanOutcome(
        mode=mode,
        extraction=extraction,
        confident=confident,
        lookup=lookup_result,
    )

    try:
        await db.log_scan(
            user_id=user_id,
            mode=mode,
            provider_used=extraction.provider_name,
            outcome=outcome.label,
            drug_name=outcome.drug_name,
            cost_usd=extraction.cost_usd,
        )
    except Exception as exc:
        logger.warning("Could not log scan for user %s: %s", user_id, exc)

    return outcome
