"""Abstract base for all model endpoint providers."""

from abc import ABC, abstractmethod

from council.models import Completion

# HTTP statuses worth another attempt; everything else is terminal.
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class ProviderError(Exception):
    """Raised when a provider call fails.

    ``status_code`` is the HTTP status when the endpoint answered with one.
    ``transient`` marks failures without a status that are still worth
    retrying (connection reset, connect timeout).
    """

    def __init__(
        self,
        provider_name: str,
        message: str,
        status_code: int | None = None,
        transient: bool = False,
    ) -> None:
        self.provider_name = provider_name
        self.status_code = status_code
        self.transient = transient
        super().__init__(f"[{provider_name}] {message}")

    @property
    def retryable(self) -> bool:
        if self.transient:
            return True
        return self.status_code in RETRYABLE_STATUS_CODES


class AIProvider(ABC):
    """Abstract base for all model endpoints."""

    @abstractmethod
    def name(self) -> str:
        """Return the endpoint name (e.g. 'openrouter', 'anthropic')."""
        ...

    @abstractmethod
    async def complete(self, model: str, messages: list[dict[str, str]]) -> Completion:
        """Send a chat conversation to ``model`` and return its reply.

        Args:
            model: Endpoint-specific model identifier.
            messages: Chat messages, each with 'role' and 'content'.

        Returns:
            Completion with the reply text.

        Raises:
            ProviderError: On API failure or an unusable response.
        """
        ...
