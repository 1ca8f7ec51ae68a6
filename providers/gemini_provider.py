"""
Google Gemini extraction provider — uses the google-genai SDK (v1 API).

All scan photos go into one request, in capture order, after the instruction.

Pricing (as of 2025):
  gemini-2.0-flash:      $0.10  / 1M input,  $0.40 / 1M output
  gemini-2.0-flash-lite: $0.075 / 1M input,  $0.30 / 1M output
  gemini-2.5-flash:      $0.30  / 1M input,  $2.50 / 1M output
  Images are billed as input tokens (~258 tokens per image up to 384px tiles).
"""
from __future__ import annotations

import time
import logging

from google import genai
from google.genai import types as genai_types

from imaging import ImagePayload
from providers.base import ExtractionProvider, ExtractionResult

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash"

_PRICING: dict[str, tuple[float, float, float]] = {
    # model_id: ($/1k_input_tokens, $/1k_output_tokens, $/image)
    "gemini-2.0-flash":      (0.0001,   0.0004,  0.00004),
    "gemini-2.0-flash-lite": (0.000075, 0.0003,  0.00002),
    "gemini-2.5-flash":      (0.0003,   0.0025,  0.0),
}


class GeminiProvider(ExtractionProvider):

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        self.name     = "google"
        self.model_id = model
        # Force v1 (stable) API
        self._client  = genai.Client(api_key=api_key, http_options={"api_version": "v1"})

        rates = _PRICING.get(model, _PRICING[DEFAULT_MODEL])
        self.cost_per_1k_input_tokens  = rates[0]
        self.cost_per_1k_output_tokens = rates[1]
        self.cost_per_image            = rates[2]

    async def extract(self, images: list[ImagePayload], instruction: str) -> ExtractionResult:
        gen_config = genai_types.GenerateContentConfig(
            temperature=0,
            max_output_tokens=2048,
        )

        contents = [instruction] + [
            genai_types.Part.from_bytes(data=img.data, mime_type=img.mime_type)
            for img in images
        ]

        t0 = time.monotonic()

        response = await self._client.aio.models.generate_content(
            model=self.model_id,
            contents=contents,
            config=gen_config,
        )

        latency_ms = int((time.monotonic() - t0) * 1000)

        usage         = response.usage_metadata
        input_tokens  = getattr(usage, "prompt_token_count",     None) or 1000
        output_tokens = getattr(usage, "candidates_token_count", None) or 400

        return self.build_result(response.text, latency_ms, len(images), input_tokens, output_tokens)
