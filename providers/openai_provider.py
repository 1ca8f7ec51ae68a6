"""
OpenAI extraction provider — supports gpt-4o and gpt-4o-mini.

Pricing (as of early 2025):
  gpt-4o:       $5.00 / 1M input tokens,  $15.00 / 1M output tokens
                + image tiles: a 1024px photo ≈ 765 input tokens in high detail
  gpt-4o-mini:  $0.15 / 1M input tokens,  $0.60 / 1M output tokens
"""
from __future__ import annotations

import time
import logging

from openai import AsyncOpenAI

from imaging import ImagePayload
from providers.base import ExtractionProvider, ExtractionResult

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


class OpenAIProvider(ExtractionProvider):

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        self.name = "openai"
        self.model_id = model
        self._client = AsyncOpenAI(api_key=api_key)

        # Pricing per 1k tokens
        _pricing = {
            "gpt-4o":      (0.005,  0.015),
            "gpt-4o-mini": (0.00015, 0.0006),
        }
        self.cost_per_1k_input_tokens, self.cost_per_1k_output_tokens = _pricing.get(
            model, (0.005, 0.015)
        )
        # High-detail image processing: ~765 tokens for a 1024px photo
        self.cost_per_image = 765 / 1000 * self.cost_per_1k_input_tokens

    async def extract(self, images: list[ImagePayload], instruction: str) -> ExtractionResult:
        content = [{"type": "text", "text": instruction}] + [
            {
                "type": "image_url",
                "image_url": {"url": img.to_data_uri(), "detail": "high"},
            }
            for img in images
        ]

        t0 = time.monotonic()

        response = await self._client.chat.completions.create(
            model=self.model_id,
            max_tokens=2048,
            temperature=0,
            messages=[{"role": "user", "content": content}],
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        raw = response.choices[0].message.content
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 1000
        output_tokens = usage.completion_tokens if usage else 400

        return self.build_result(raw, latency_ms, len(images), input_tokens, output_tokens)
