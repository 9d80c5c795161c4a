"""Gemini provider using google-genai SDK with native async."""

import logging
import os
import time

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from config.config_loader import EndpointConfig
from council.models import Completion
from council.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)


def _to_contents(messages: list[dict[str, str]]) -> tuple[str | None, list[genai_types.Content]]:
    system_parts: list[str] = []
    contents: list[genai_types.Content] = []
    for message in messages:
        if message["role"] == "system":
            system_parts.append(message["content"])
            continue
        role = "model" if message["role"] == "assistant" else "user"
        contents.append(genai_types.Content(role=role, parts=[genai_types.Part(text=message["content"])]))
    return ("\n\n".join(system_parts) if system_parts else None), contents


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def __init__(self, config: EndpointConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = genai.Client(api_key=api_key)

    def name(self) -> str:
        return self._config.name

    async def complete(self, model: str, messages: list[dict[str, str]]) -> Completion:
        system, contents = _to_contents(messages)
        start = time.monotonic()
        try:
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=genai_types.GenerateContentConfig(
                    max_output_tokens=self._config.max_tokens,
                    system_instruction=system,
                ),
            )
        except genai_errors.APIError as exc:
            raise ProviderError(self._config.name, f"HTTP {exc.code}: {exc.message}", status_code=exc.code) from exc
        except ConnectionError as exc:
            raise ProviderError(self._config.name, f"Connection failed: {exc}", transient=True) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        latency = time.monotonic() - start

        if not response.text:
            raise ProviderError(self._config.name, "Empty response text")

        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count

        logger.info("Gemini %s: %.2fs, %s tokens", model, latency, token_count)

        return Completion(content=response.text)
