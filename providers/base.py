"""
Shared types and base class for all extraction providers.

A provider takes the ordered scan photos plus one instruction string and
returns the model's JSON answer coerced into an IdentityRecord. The JSON shape
is a contract with the model (see the instruction templates below), not a wire
format we control — every field is optional and is validated on the way in.
"""
from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from imaging import ImagePayload

logger = logging.getLogger(__name__)

# ── Instruction templates ─────────────────────────────────────────────────────

# Pharmacy / hospital sites the model may point users to when unsure
TRUSTED_SITES = [
    "nhathuoclongchau.com.vn",
    "vinmec.com",
    "pharmacity.vn",
    "tamanhhospital.vn",
    "nhathuocankhang.com",
    "upharma.vn",
]

ADVICE_INSTRUCTION = """You are a professional AI pharmacist. Analyse the photos of a medicine package
(front label first, then the back or barcode) and give detailed information about the drug.

Return ONLY a valid JSON object — no markdown code block, no prose — with this structure:
{{
  "identity": {{
    "name": "drug name",
    "active_ingredient": "main active ingredient(s)",
    "manufacturer": "manufacturer",
    "confidence": 0.95
  }},
  "details": {{
    "usage": "indications",
    "dosage": [
      "Newborns: ...",
      "Children 1-5 years: ...",
      "Adults: ..."
    ],
    "contraindications": "contraindications (important)",
    "side_effects": "common side effects"
  }},
  "warnings": ["important note 1", "important note 2"],
  "search_fallback": {{
    "query": "exact drug name to search for",
    "suggested_links": [
      {{"title": "site name", "url": "search link on that site"}}
    ]
  }}
}}

DOSAGE RULES:
- Always split the dosage by age group / patient group.
- Order from youngest to oldest: newborns → children (by age band) → adults → elderly / hepatic or renal impairment (if relevant).
- If the drug must not be used by a group (e.g. children), say "Contraindicated" for that group.

If the drug cannot be clearly identified, set a low confidence and give a strong
"search_fallback" so the user can look it up on these trusted sites: {sites}.

Write every text value in {language}."""

LOOKUP_INSTRUCTION = """You read medicine packaging. Extract the identity of the drug shown in the photos
(front label first, then the back or barcode).

Return ONLY a valid JSON object — no markdown, no prose. Omit a field or use null when it is not visible:
{{
  "ndc":          "National Drug Code as printed, e.g. 12345-678-90",
  "brand_name":   "brand name exactly as printed",
  "generic_name": "generic / active ingredient name",
  "dosage_form":  "e.g. TABLET, CAPSULE, SOLUTION",
  "strength":     "e.g. 500 mg",
  "manufacturer": "manufacturer / labeler",
  "barcode":      "digits of the barcode if readable",
  "confidence":   0.0
}}

confidence is your certainty (0–1) that the brand or generic name is correct.
Use UPPERCASE for dosage_form, matching FDA labelling."""


def build_instruction(mode: str, language: str = "English") -> str:
    """Return the instruction text for a result mode ('advice' | 'lookup')."""
    if mode == "lookup":
        return LOOKUP_INSTRUCTION.format()
    return ADVICE_INSTRUCTION.format(sites=", ".join(TRUSTED_SITES), language=language)


# ── Identity record ───────────────────────────────────────────────────────────

def _clean_value(value: Any) -> Any:
    """Keep strings, numbers and lists of those; drop empties and nested objects."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, list):
        items = [v for v in (_clean_value(x) for x in value) if v is not None and not isinstance(v, list)]
        return items or None
    return None


def _coerce_confidence(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(1.0, conf))


def _clean_mapping(raw: Any, skip: tuple[str, ...] = ()) -> dict[str, Any]:
    if not isinstance(raw, dict):
        return {}
    out = {}
    for key, value in raw.items():
        if key in skip:
            continue
        cleaned = _clean_value(value)
        if cleaned is not None:
            out[str(key)] = cleaned
    return out


_ADVICE_KEYS = ("identity", "details", "warnings", "search_fallback", "confidence")


@dataclass
class IdentityRecord:
    """What the model recognised. Every field may be missing."""
    fields: dict[str, Any] = field(default_factory=dict)
    confidence: Optional[float] = None
    details: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    search_query: Optional[str] = None

    @classmethod
    def from_payload(cls, data: Any) -> "IdentityRecord":
        """
        Accept either the advice shape ({"identity": {...}, "details": {...}, ...})
        or a flat identity object. Raises ValueError if data is not an object.
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")

        nested = data.get("identity")
        if isinstance(nested, dict):
            fields = _clean_mapping(nested, skip=("confidence",))
            confidence = _coerce_confidence(nested.get("confidence", data.get("confidence")))
        else:
            fields = _clean_mapping(data, skip=_ADVICE_KEYS)
            confidence = _coerce_confidence(data.get("confidence"))

        warnings = _clean_value(data.get("warnings"))
        if isinstance(warnings, (str, int, float)):
            warnings = [warnings]

        fallback = data.get("search_fallback")
        query = _clean_value(fallback.get("query")) if isinstance(fallback, dict) else None

        return cls(
            fields=fields,
            confidence=confidence,
            details=_clean_mapping(data.get("details")),
            warnings=[str(w) for w in (warnings or [])],
            search_query=str(query) if query is not None else None,
        )

    def is_confident(self, threshold: float) -> bool:
        """False only when the model reported a confidence below threshold."""
        if not self.fields:
            return False
        return self.confidence is None or self.confidence >= threshold

    def get(self, name: str) -> Optional[str]:
        value = self.fields.get(name)
        if value is None:
            return None
        if isinstance(value, list):
            return ", ".join(str(v) for v in value)
        return str(value)

    @property
    def name(self) -> Optional[str]:
        return self.get("name") or self.get("brand_name") or self.get("generic_name")

    @property
    def barcode(self) -> str:
        return self.get("barcode") or ""

    @property
    def fallback_query(self) -> Optional[str]:
        return self.search_query or self.name


# ── Shared result type ─────────────────────────────────────────────────────────

@dataclass
class ExtractionResult:
    """Result from a single extraction call."""
    provider_name: str          # e.g. "google/gemini-2.5-flash"
    model_id: str
    record: IdentityRecord
    latency_ms: int
    input_tokens: int
    output_tokens: int
    cost_usd: float

    @property
    def cost_str(self) -> str:
        if self.cost_usd < 0.001:
            return f"${self.cost_usd * 1000:.3f}m"   # show in milli-dollars
        return f"${self.cost_usd:.4f}"


_FENCE_OPEN  = re.compile(r"^```[a-zA-Z]*\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?\s*```$")


def parse_json_response(raw: Optional[str], provider_name: str) -> dict:
    """
    Parse JSON from a model response, handling markdown fences gracefully.
    Raises ValueError on parse failure.
    """
    text = (raw or "").strip()
    # Strip ```json ... ``` or ``` ... ``` fences if present
    text = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text)).strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("[%s] Non-JSON response: %s", provider_name, (raw or "")[:300])
        raise ValueError(f"[{provider_name}] JSON parse error: {exc}") from exc


# ── Abstract base ──────────────────────────────────────────────────────────────

class ExtractionProvider(ABC):
    """Base class all extraction providers must implement."""

    name: str           # e.g. "google"
    model_id: str       # e.g. "gemini-2.5-flash"
    cost_per_1k_input_tokens: float
    cost_per_1k_output_tokens: float
    # Extra per-image cost for vision input
    cost_per_image: float = 0.0

    @abstractmethod
    async def extract(self, images: list[ImagePayload], instruction: str) -> ExtractionResult:
        """Send instruction + images in order, return the parsed result."""
        ...

    @property
    def full_name(self) -> str:
        return f"{self.name}/{self.model_id}"

    def estimate_cost(self, n_images: int, input_tokens: int, output_tokens: int) -> float:
        return (
            self.cost_per_image * n_images
            + input_tokens / 1000 * self.cost_per_1k_input_tokens
            + output_tokens / 1000 * self.cost_per_1k_output_tokens
        )

    def build_result(
        self,
        raw: Optional[str],
        latency_ms: int,
        n_images: int,
        input_tokens: int,
        output_tokens: int,
    ) -> ExtractionResult:
        """Parse raw model text into an ExtractionResult. Raises ValueError on bad JSON."""
        data = parse_json_response(raw, self.full_name)
        record = IdentityRecord.from_payload(data)
        return ExtractionResult(
            provider_name=self.full_name,
            model_id=self.model_id,
            record=record,
            latency_ms=latency_ms,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=self.estimate_cost(n_images, input_tokens, output_tokens),
        )
