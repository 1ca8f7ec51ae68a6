"""
drug_lookup.py — public interface for resolving identity fields to a drug record.

The rest of the app imports only from here:
  from drug_lookup import lookup, build_query

Query precedence (first match wins):
  1. ndc / product_ndc in the identity fields   → ndc.json, product_ndc:<code>
  2. barcode with 10, 11 or 12 digits           → ndc.json, product_ndc:<digits>
     (12-digit UPCs are tried as NDCs — openFDA harmonizes many of them)
  3. brand_name or generic_name                  → label.json, exact match on
     whichever of brand / generic / dosage form are present, joined with AND
  4. nothing usable                              → NotFound, no request made

Exactly one request per lookup; only the first result is used. Transport
errors and unexpected statuses are logged and reported as NotFound.
"""
from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Optional
from urllib.parse import quote

from errors import LookupTransportError
from lookup_backends.base import LookupBackend, LookupQuery, LookupResult, Source
from lookup_backends.openfda_backend import OpenFDABackend, map_openfda_result

logger = logging.getLogger(__name__)

__all__ = ["LookupResult", "build_query", "lookup", "get_backend"]

BARCODE_NDC_LENGTHS = (10, 11, 12)

_backend: Optional[LookupBackend] = None


def get_backend() -> LookupBackend:
    """Return the active backend, initialising it once on first call."""
    global _backend
    if _backend is None:
        _backend = OpenFDABackend()
        logger.info("Lookup backend: %s", _backend.name)
    return _backend


# ── Query construction ───────────────────────────────────────────────────────

def _text(value: Any) -> Optional[str]:
    """Identity values may be strings, numbers or lists — take the first usable text."""
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    return text or None


def _exact(field: str, value: str) -> str:
    return f"openfda.{field}.exact:" + quote(f'"{value}"', safe="")


def build_query(identity: Optional[Mapping[str, Any]], barcode: Optional[str] = "") -> Optional[LookupQuery]:
    """Pick the best available query for the identity fields, or None."""
    identity = identity or {}

    ndc = _text(identity.get("ndc")) or _text(identity.get("product_ndc"))
    if ndc:
        return LookupQuery(endpoint="ndc", search=f"product_ndc:{quote(ndc, safe='')}", reason="ndc")

    digits = re.sub(r"[^0-9]", "", str(barcode or ""))
    if len(digits) in BARCODE_NDC_LENGTHS:
        return LookupQuery(endpoint="ndc", search=f"product_ndc:{digits}", reason="barcode")

    brand = _text(identity.get("brand_name"))
    generic = _text(identity.get("generic_name"))
    if brand or generic:
        parts = []
        if brand:
            parts.append(_exact("brand_name", brand))
        if generic:
            parts.append(_exact("generic_name", generic))
        dosage_form = _text(identity.get("dosage_form"))
        if dosage_form:
            parts.append(_exact("dosage_form", dosage_form))
        return LookupQuery(endpoint="label", search="+AND+".join(parts), reason="name")

    return None


# ── Public lookup function ────────────────────────────────────────────────────

async def lookup(
    identity: Optional[Mapping[str, Any]],
    barcode: Optional[str] = "",
    backend: Optional[LookupBackend] = None,
) -> LookupResult:
    """
    Resolve identity fields (and an optional scanned code) to a LookupResult.
    Never raises for remote failures.
    """
    query = build_query(identity, barcode)
    if query is None:
        logger.info("Lookup skipped — no ndc, barcode, brand or generic name")
        return LookupResult.not_found()

    backend = backend or get_backend()
    url = backend.url_for(query)

    try:
        raw = await backend.fetch_first(query)
    except LookupTransportError as exc:
        logger.error("[%s] fetch error for %s: %s", backend.name, url, exc)
        return LookupResult.not_found()

    drug = map_openfda_result(raw)
    if drug is None:
        logger.info("[%s] %s query → no match", backend.name, query.reason)
        return LookupResult.not_found()

    logger.info("[%s] %s query → %s", backend.name, query.reason, drug.display_name)
    return LookupResult.found(drug, [Source(name=backend.name, url=url)])
