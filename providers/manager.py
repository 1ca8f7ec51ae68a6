"""
Provider Manager — builds the configured extraction provider and runs it.

The API key is per user (key_store), so providers are cached per
(provider, model, key). A new key simply builds a new client on next use.

extract() is the single entry point used by the finalization pipeline:
  • one attempt, no retry
  • bounded by EXTRACTION_TIMEOUT
  • any failure (SDK error, timeout, unparseable JSON) → ExtractionError
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

import config
from errors import ConfigurationError, ExtractionError
from imaging import ImagePayload
from providers.base import ExtractionProvider, ExtractionResult

logger = logging.getLogger(__name__)

PROVIDER_NAMES = ("google", "openai", "anthropic")

# Module-level cache — cleared by tests / on provider config change
_providers: dict[tuple[str, str, str], ExtractionProvider] = {}


def build_provider(
    api_key: str,
    provider_name: Optional[str] = None,
    model: Optional[str] = None,
) -> ExtractionProvider:
    """Instantiate the provider named by EXTRACTION_PROVIDER (or provider_name)."""
    name = (provider_name or config.EXTRACTION_PROVIDER).lower()
    model = model or config.EXTRACTION_MODEL or None

    if name == "google":
        from providers.gemini_provider import DEFAULT_MODEL, GeminiProvider
        return GeminiProvider(api_key, model or DEFAULT_MODEL)
    if name == "openai":
        from providers.openai_provider import DEFAULT_MODEL, OpenAIProvider
        return OpenAIProvider(api_key, model or DEFAULT_MODEL)
    if name == "anthropic":
        from providers.anthropic_provider import DEFAULT_MODEL, AnthropicProvider
        return AnthropicProvider(api_key, model or DEFAULT_MODEL)

    raise ConfigurationError(
        f"Unknown EXTRACTION_PROVIDER '{name}'. Use one of: {', '.join(PROVIDER_NAMES)}."
    )


def check_provider_config() -> None:
    """Fail fast at startup on an EXTRACTION_PROVIDER that build_provider() would reject."""
    if config.EXTRACTION_PROVIDER not in PROVIDER_NAMES:
        raise ConfigurationError(
            f"Unknown EXTRACTION_PROVIDER '{config.EXTRACTION_PROVIDER}'. "
            f"Use one of: {', '.join(PROVIDER_NAMES)}."
        )


def get_provider(api_key: str) -> ExtractionProvider:
    cache_key = (config.EXTRACTION_PROVIDER, config.EXTRACTION_MODEL, api_key)
    provider = _providers.get(cache_key)
    if provider is None:
        provider = build_provider(api_key)
        _providers[cache_key] = provider
        logger.info("Loaded provider: %s", provider.full_name)
    return provider


async def extract(
    images: list[ImagePayload],
    instruction: str,
    api_key: str,
) -> ExtractionResult:
    """
    Run one extraction call over all images.

    Raises:
        ExtractionError      on remote error, timeout or unparseable output
        ConfigurationError   if the configured provider name is unknown
    """
    if not images:
        raise ExtractionError("No photos to analyse.")

    provider = get_provider(api_key)

    try:
        result = await asyncio.wait_for(
            provider.extract(images, instruction),
            timeout=config.EXTRACTION_TIMEOUT,
        )
    except asyncio.TimeoutError as exc:
        logger.error("[%s] Timed out after %.0fs", provider.full_name, config.EXTRACTION_TIMEOUT)
        raise ExtractionError(
            f"The AI service did not answer within {config.EXTRACTION_TIMEOUT:.0f}s."
        ) from exc
    except Exception as exc:
        logger.error("[%s] Failed: %s", provider.full_name, exc)
        raise ExtractionError(f"Analysis failed: {exc}") from exc

    logger.info(
        "[%s] OK — fields=%d confidence=%s cost=%s latency=%dms",
        provider.full_name, len(result.record.fields), result.record.confidence,
        result.cost_str, result.latency_ms,
    )
    return result
