"""OpenAI-compatible provider (OpenRouter by default) using openai SDK with native async."""

import logging
import os
import time

import openai
from openai import AsyncOpenAI

from config.config_loader import EndpointConfig
from council.models import Completion
from council.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """Chat completions against any OpenAI-compatible API via openai SDK."""

    def __init__(self, config: EndpointConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        # Retries belong to the council's ResilientCaller, not the SDK.
        self._client = AsyncOpenAI(api_key=api_key, base_url=config.base_url, max_retries=0)

    def name(self) -> str:
        return self._config.name

    async def complete(self, model: str, messages: list[dict[str, str]]) -> Completion:
        start = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=self._config.max_tokens,
            )
        except openai.APIStatusError as exc:
            raise ProviderError(
                self._config.name, f"HTTP {exc.status_code}: {exc.message}", status_code=exc.status_code
            ) from exc
        except openai.APIConnectionError as exc:
            # APITimeoutError is a subclass; both are worth another attempt
            raise ProviderError(self._config.name, f"Connection failed: {exc}", transient=True) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._config.name, "Empty response content")

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens

        logger.info("%s %s: %.2fs, %s tokens", self._config.name, model, latency, token_count)

        return Completion(
            content=choice.message.content,
            reasoning_details=getattr(choice.message, "reasoning_details", None),
        )
