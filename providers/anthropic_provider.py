"""
Anthropic extraction provider — supports claude-3-5-haiku and claude-3-5-sonnet.

Pricing (as of early 2025):
  claude-3-5-haiku-20241022:  $0.80 / 1M input,  $4.00  / 1M output
  claude-3-5-sonnet-20241022: $3.00 / 1M input,  $15.00 / 1M output
  Images: ~1600 tokens per 1024px image

Claude is good at reading fine print on small packaging — a useful
alternative when Gemini struggles with a label.
"""
from __future__ import annotations

import base64
import time
import logging

import anthropic

from imaging import ImagePayload
from providers.base import ExtractionProvider, ExtractionResult

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-5-haiku-20241022"

_ANTHROPIC_IMAGE_TOKENS = 1600  # approximate tokens per image for Claude


class AnthropicProvider(ExtractionProvider):

    def __init__(self, api_key: str, model: str = DEFAULT_MODEL):
        self.name = "anthropic"
        self.model_id = model
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

        _pricing = {
            "claude-3-5-haiku-20241022":  (0.0008, 0.004),
            "claude-3-5-sonnet-20241022": (0.003,  0.015),
        }
        self.cost_per_1k_input_tokens, self.cost_per_1k_output_tokens = _pricing.get(
            model, (0.003, 0.015)
        )
        self.cost_per_image = _ANTHROPIC_IMAGE_TOKENS / 1000 * self.cost_per_1k_input_tokens

    async def extract(self, images: list[ImagePayload], instruction: str) -> ExtractionResult:
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": img.mime_type,
                    "data": base64.b64encode(img.data).decode(),
                },
            }
            for img in images
        ]
        content.append({"type": "text", "text": instruction})

        t0 = time.monotonic()

        message = await self._client.messages.create(
            model=self.model_id,
            max_tokens=2048,
            temperature=0,
            messages=[{"role": "user", "content": content}],
        )

        latency_ms = int((time.monotonic() - t0) * 1000)
        raw = message.content[0].text if message.content else ""

        return self.build_result(
            raw, latency_ms, len(images),
            message.usage.input_tokens, message.usage.output_tokens,
        )
