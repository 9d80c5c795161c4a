"""Model client: coalescing, answer cache and resilient calls in front of the providers."""

import asyncio
import logging
from collections.abc import Callable

from config.config_loader import AppConfig
from council.cache import ResponseCache, response_cache_key
from council.circuit_breaker import CircuitBreakerRegistry
from council.coalesce import RequestCoalescer
from council.models import Completion
from council.providers.base import AIProvider
from council.retry import CallFailure, ResilientCaller

logger = logging.getLogger(__name__)


class ModelClient:
    """Issues chat calls to council models.

    A call passes through RequestCoalescer -> ResponseCache -> ResilientCaller
    -> provider. Failures come back as None and are logged here.
    """

    def __init__(
        self,
        providers: dict[str, AIProvider],
        caller: ResilientCaller,
        cache: ResponseCache,
        coalescer: RequestCoalescer,
        resolve_model: Callable[[str], tuple[str, str]],
        default_timeout: float = 120.0,
    ) -> None:
        self._providers = providers
        self._caller = caller
        self._cache = cache
        self._coalescer = coalescer
        self._resolve_model = resolve_model
        self._default_timeout = default_timeout

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        providers: dict[str, AIProvider],
        cache: ResponseCache,
        coalescer: RequestCoalescer | None = None,
    ) -> "ModelClient":
        breakers = CircuitBreakerRegistry(
            failure_threshold=config.circuit_breaker.failure_threshold,
            reset_timeout=config.circuit_breaker.reset_timeout,
        )
        return cls(
            providers,
            caller=ResilientCaller.from_config(breakers, config.retry),
            cache=cache,
            coalescer=coalescer or RequestCoalescer(),
            resolve_model=config.resolve_model,
            default_timeout=config.timeouts.default,
        )

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._caller.breakers

    def call_key(self, model_id: str) -> str:
        endpoint, endpoint_model = self._resolve_model(model_id)
        return f"{endpoint}:{endpoint_model}"

    async def query_model(
        self,
        model_id: str,
        messages: list[dict[str, str]],
        timeout: float | None = None,
        use_cache: bool = True,
    ) -> Completion | None:
        """Query one model.

        Args:
            model_id: Council model id (optionally endpoint-prefixed).
            messages: Chat messages with 'role' and 'content'.
            timeout: Per-attempt timeout in seconds; defaults to the configured default.
            use_cache: Read and fill the answer cache.

        Returns:
            Completion, or None if the model could not answer.
        """
        endpoint, endpoint_model = self._resolve_model(model_id)
        provider = self._providers.get(endpoint)
        if provider is None:
            logger.error("No provider for endpoint '%s' (model %s); is its API key set?", endpoint, model_id)
            return None

        key = f"{endpoint}:{endpoint_model}"
        cache_key = response_cache_key(key, messages)
        request_timeout = self._default_timeout if timeout is None else timeout

        async def _cached_call() -> Completion | None:
            if use_cache:
                cached = self._cache.get(cache_key)
                if cached is not None:
                    logger.debug("Cache hit for model %s", model_id)
                    return cached

            logger.info("Querying model: %s", model_id)
            result = await self._caller.call(
                key,
                lambda: provider.complete(endpoint_model, messages),
                timeout=request_timeout,
            )
            if isinstance(result, CallFailure):
                logger.warning("Model %s gave no answer (%s): %s", model_id, result.kind, result.reason)
                return None

            if use_cache:
                self._cache.set(cache_key, result)
            logger.info("Successfully got response from %s", model_id)
            return result

        return await self._coalescer.dedupe(cache_key, _cached_call)

    async def query_models_parallel(
        self,
        models: list[str],
        messages: list[dict[str, str]],
        use_cache: bool = True,
        timeout: float | None = None,
    ) -> dict[str, Completion | None]:
        """Query every model at once and wait for all of them to settle.

        Returns:
            Dict mapping model id -> Completion (or None), in the order of ``models``.
        """
        results = await asyncio.gather(
            *(self.query_model(m, messages, timeout=timeout, use_cache=use_cache) for m in models)
        )
        return dict(zip(models, results))
