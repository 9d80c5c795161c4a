"""Anthropic Claude provider using anthropic SDK with native async."""

import logging
import os
import time

import anthropic as anthropic_sdk

from config.config_loader import EndpointConfig
from council.models import Completion
from council.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)


def _split_system(messages: list[dict[str, str]]) -> tuple[str | None, list[dict[str, str]]]:
    """Anthropic takes system text as a separate argument, not a message."""
    system_parts = [m["content"] for m in messages if m["role"] == "system"]
    chat = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]
    return ("\n\n".join(system_parts) if system_parts else None), chat


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: EndpointConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key, max_retries=0)

    def name(self) -> str:
        return self._config.name

    async def complete(self, model: str, messages: list[dict[str, str]]) -> Completion:
        system, chat = _split_system(messages)
        kwargs = {"system": system} if system else {}
        start = time.monotonic()
        try:
            response = await self._client.messages.create(
                model=model,
                max_tokens=self._config.max_tokens,
                messages=chat,
                **kwargs,
            )
        except anthropic_sdk.APIStatusError as exc:
            raise ProviderError(
                self._config.name, f"HTTP {exc.status_code}: {exc.message}", status_code=exc.status_code
            ) from exc
        except anthropic_sdk.APIConnectionError as exc:
            raise ProviderError(self._config.name, f"Connection failed: {exc}", transient=True) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        if not response.content:
            raise ProviderError(self._config.name, "Empty response content")

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._config.name, "No text blocks in response")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens

        logger.info("Anthropic %s: %.2fs, %s tokens", model, latency, token_count)

        return Completion(content="\n".join(text_blocks))
