"""
openFDA backend — https://open.fda.gov/apis/drug/

Two endpoints are used:
  /drug/ndc.json    product directory, searched by product_ndc
  /drug/label.json  structured product labels, searched by exact
                    openfda.brand_name / generic_name / dosage_form

Both return {"results": [...]}; each result carries an "openfda" section with
harmonized identity fields (brand_name, generic_name, product_ndc, route,
dosage_form — all lists). Label results also carry free-text sections
(indications_and_usage, dosage_and_administration, warnings, ...).

openFDA answers 404 with an error body when nothing matches — that is a
normal "no match", not a transport error.

No API key is needed below 1,000 requests/day per IP.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import aiohttp
from yarl import URL

import config
from errors import LookupTransportError
from lookup_backends.base import DrugRecord, LookupBackend, LookupQuery

logger = logging.getLogger(__name__)


class OpenFDABackend(LookupBackend):

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None) -> None:
        self._base_url = (base_url or config.OPENFDA_BASE_URL).rstrip("/")
        self._timeout = timeout if timeout is not None else config.LOOKUP_TIMEOUT

    @property
    def name(self) -> str:
        return "openFDA"

    def url_for(self, query: LookupQuery) -> str:
        return f"{self._base_url}/drug/{query.endpoint}.json?search={query.search}&limit=1"

    async def fetch_first(self, query: LookupQuery) -> Optional[dict]:
        url = self.url_for(query)
        try:
            async with aiohttp.ClientSession() as session:
                # encoded=True: the search expression is already escaped and
                # its "+AND+" separators must reach openFDA verbatim
                async with session.get(
                    URL(url, encoded=True),
                    timeout=aiohttp.ClientTimeout(total=self._timeout),
                ) as resp:
                    if resp.status == 404:
                        logger.info("openFDA: no match for %s", url)
                        return None
                    if resp.status != 200:
                        text = await resp.text()
                        raise LookupTransportError(f"openFDA error {resp.status}: {text[:200]}")
                    data = await resp.json(content_type=None)
        except LookupTransportError:
            raise
        except Exception as exc:
            raise LookupTransportError(f"openFDA request failed: {exc}") from exc

        results = data.get("results") if isinstance(data, dict) else None
        if not results:
            return None
        return results[0]


# ── Mapping ──────────────────────────────────────────────────────────────────

def _first(value: Any) -> Optional[str]:
    if isinstance(value, list):
        return str(value[0]) if value else None
    if value in (None, ""):
        return None
    return str(value)


def map_openfda_result(result: Any) -> Optional[DrugRecord]:
    """
    Project a raw openFDA result into a DrugRecord.
    Harmonized openfda.* fields win; ndc.json top-level fields fill the gaps.
    """
    if not isinstance(result, dict) or not result:
        return None
    of = result.get("openfda") or {}

    return DrugRecord(
        brand_name=_first(of.get("brand_name")) or _first(result.get("brand_name")),
        generic_name=_first(of.get("generic_name")) or _first(result.get("generic_name")),
        ndc=_first(of.get("product_ndc")) or _first(result.get("product_ndc")),
        route=_first(of.get("route")) or _first(result.get("route")),
        dosage_form=_first(of.get("dosage_form")) or _first(result.get("dosage_form")),
        active_ingredients=result.get("active_ingredient") or result.get("active_ingredients"),
        indications=result.get("indications_and_usage") or result.get("indications"),
        dosage=result.get("dosage_and_administration"),
        warnings=result.get("warnings_and_cautions") or result.get("warnings"),
        adverse_reactions=result.get("adverse_reactions"),
        information_for_patients=result.get("information_for_patients"),
    )
