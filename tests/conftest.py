"""Shared pytest fixtures."""

import asyncio
from pathlib import Path

import pytest

from config.config_loader import (
    AppConfig,
    CouncilConfig,
    EndpointConfig,
    PromptsConfig,
    RetryConfig,
    StorageConfig,
)
from council.cache import ResponseCache
from council.circuit_breaker import CircuitBreakerRegistry
from council.client import ModelClient
from council.coalesce import RequestCoalescer
from council.deliberation import DeliberationPipeline
from council.models import Answer, Completion, Ranking
from council.providers.base import AIProvider, ProviderError
from council.retry import ResilientCaller


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep and records every requested delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class MockProvider(AIProvider):
    """Test double AIProvider.

    ``replies`` maps endpoint model -> reply text, or -> an exception to raise.
    Models not listed answer with ``default``. Every call is recorded.
    """

    def __init__(
        self,
        provider_name: str = "openrouter",
        replies: dict[str, str | Exception] | None = None,
        default: str = "Mock response",
    ) -> None:
        self._name = provider_name
        self.replies = dict(replies or {})
        self.default = default
        self.calls: list[tuple[str, list[dict[str, str]]]] = []

    def name(self) -> str:
        return self._name

    async def complete(self, model: str, messages: list[dict[str, str]]) -> Completion:
        self.calls.append((model, messages))
        reply = self.replies.get(model, self.default)
        if isinstance(reply, Exception):
            raise reply
        return Completion(content=reply)

    def calls_for(self, model: str) -> list[list[dict[str, str]]]:
        return [messages for called, messages in self.calls if called == model]


def terminal_error(status_code: int = 401) -> ProviderError:
    return ProviderError("openrouter", f"HTTP {status_code}", status_code=status_code)


def transient_error() -> ProviderError:
    return ProviderError("openrouter", "HTTP 503", status_code=503)


COUNCIL_MODELS = ["openai/gpt-4o-mini", "anthropic/claude-3.5-haiku", "google/gemini-2.0-flash"]


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        ranking="RANK\nQuestion: {question}\n\n{responses}\n\nFINAL RANKING:",
        chairman="CHAIR\nQuestion: {question}\n\n{stage1}\n\n{stage2}",
        title="TITLE\nQuestion: {question}",
    )


@pytest.fixture
def sample_council_config() -> CouncilConfig:
    return CouncilConfig(
        models=list(COUNCIL_MODELS),
        chairman="google/gemini-2.0-flash",
        title_model="google/gemini-2.5-flash",
    )


@pytest.fixture
def sample_app_config(
    tmp_path: Path,
    sample_council_config: CouncilConfig,
    sample_prompts_config: PromptsConfig,
) -> AppConfig:
    return AppConfig(
        council=sample_council_config,
        endpoints={
            "openrouter": EndpointConfig(
                name="openrouter",
                sdk="openai",
                api_key_env="TEST_OPENROUTER_KEY",
                base_url="https://openrouter.ai/api/v1",
            ),
            "anthropic": EndpointConfig(name="anthropic", sdk="anthropic", api_key_env="TEST_ANTHROPIC_KEY"),
        },
        prompts=sample_prompts_config,
        retry=RetryConfig(max_retries=1, initial_delay=0.0, max_delay=0.0),
        storage=StorageConfig(data_dir=tmp_path / "conversations", export_dir=tmp_path / "exports"),
        available_endpoints={"openrouter"},
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_client(sample_app_config: AppConfig, recording_sleep: RecordingSleep, fake_clock: FakeClock):
    """Build a ModelClient around the given providers with no real sleeping."""

    def _make(
        providers: dict[str, AIProvider],
        max_retries: int = 1,
        cache: ResponseCache | None = None,
    ) -> ModelClient:
        breakers = CircuitBreakerRegistry(failure_threshold=5, reset_timeout=60.0, clock=fake_clock)
        caller = ResilientCaller(breakers, max_retries=max_retries, initial_delay=0.0, sleep=recording_sleep)
        return ModelClient(
            providers,
            caller=caller,
            cache=cache if cache is not None else ResponseCache(ttl=3600, max_size=100, clock=fake_clock),
            coalescer=RequestCoalescer(),
            resolve_model=sample_app_config.resolve_model,
            default_timeout=5.0,
        )

    return _make


@pytest.fixture
def make_pipeline(sample_app_config: AppConfig, make_client):
    def _make(provider: AIProvider, max_retries: int = 1) -> DeliberationPipeline:
        client = make_client({"openrouter": provider}, max_retries=max_retries)
        return DeliberationPipeline.from_config(sample_app_config, client, ResponseCache(name="titles"))

    return _make


@pytest.fixture
def sample_answers() -> list[Answer]:
    return [
        Answer(model="openai/gpt-4o-mini", response="4"),
        Answer(model="anthropic/claude-3.5-haiku", response="Four."),
        Answer(model="google/gemini-2.0-flash", response="2 + 2 = 4"),
    ]


@pytest.fixture
def sample_rankings() -> list[Ranking]:
    return [
        Ranking(model="openai/gpt-4o-mini", ranking="...", parsed_ranking=["Response C", "Response A", "Response B"]),
        Ranking(model="anthropic/claude-3.5-haiku", ranking="...", parsed_ranking=["Response A", "Response C", "Response B"]),
    ]


ANSWERS = {
    "openai/gpt-4o-mini": "The answer is 4.",
    "anthropic/claude-3.5-haiku": "Four.",
    "google/gemini-2.0-flash": "2 + 2 = 4",
}


class ScriptedProvider(MockProvider):
    """Answers by stage: the test prompts start with RANK, CHAIR or TITLE.

    ``failing`` maps stage name ("answer", "rank", "chair", "title") to models
    that fail there with a non-retryable error.
    """

    def __init__(self, failing: dict[str, set[str]] | None = None, ranking: str | None = None) -> None:
        super().__init__()
        self.failing = failing or {}
        self.ranking = ranking or "Looks fine.\nFINAL RANKING:\n1. Response C\n2. Response A\n3. Response B"

    async def complete(self, model, messages):
        self.calls.append((model, messages))
        prompt = messages[-1]["content"]
        if prompt.startswith("RANK"):
            stage, reply = "rank", self.ranking
        elif prompt.startswith("CHAIR"):
            stage, reply = "chair", f"Synthesis by {model}: 4"
        elif prompt.startswith("TITLE"):
            stage, reply = "title", '"Simple Arithmetic"'
        else:
            stage, reply = "answer", ANSWERS.get(model, "4")
        if model in self.failing.get(stage, set()):
            raise terminal_error()
        return Completion(content=reply)

    def stage_calls(self, prefix: str) -> list[str]:
        return [model for model, messages in self.calls if messages[-1]["content"].startswith(prefix)]


class EventRecorder:
    def __init__(self) -> None:
        self.events = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]


class RecordingTransport:
    """In-memory transport. With ``push_back`` set, every write asks the stream to wait."""

    def __init__(self, push_back: bool = False) -> None:
        self.push_back = push_back
        self.chunks: list[bytes] = []
        self.drain_waits = 0
        self.close_calls = 0
        self.fail_writes = False

    def write(self, data: bytes) -> bool:
        if self.fail_writes:
            raise ConnectionResetError("peer went away")
        self.chunks.append(data)
        return not self.push_back

    async def wait_drained(self) -> None:
        self.drain_waits += 1
        await asyncio.sleep(0)

    async def close(self) -> None:
        self.close_calls += 1

    @property
    def text(self) -> str:
        return b"".join(self.chunks).decode("utf-8")
