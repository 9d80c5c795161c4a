"""Load settings.yaml into typed dataclasses. Applies environment overrides."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

# one anonymous label per letter, "Response A" to "Response Z"
MAX_COUNCIL_SIZE = 26


class ConfigError(Exception):
    """Raised when settings.yaml is structurally valid YAML but unusable."""


@dataclass
class EndpointConfig:
    name: str
    sdk: str
    api_key_env: str
    base_url: str | None = None
    max_tokens: int = 4096


@dataclass
class CouncilConfig:
    models: list[str]
    chairman: str
    title_model: str
    default_endpoint: str = "openrouter"
    cache_stage1: bool = True


@dataclass
class TimeoutsConfig:
    default: float = 120.0
    chairman: float = 180.0
    title: float = 30.0


@dataclass
class RetryConfig:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    reset_timeout: float = 60.0


@dataclass
class CachePoolConfig:
    ttl_sec: float
    max_size: int


@dataclass
class CacheConfig:
    responses: CachePoolConfig = field(default_factory=lambda: CachePoolConfig(3600.0, 500))
    titles: CachePoolConfig = field(default_factory=lambda: CachePoolConfig(86400.0, 1000))


@dataclass
class StreamConfig:
    high_water_mark: int = 16384
    chunk_size: int = 8192
    flush_interval: float = 0.1


@dataclass
class StorageConfig:
    data_dir: Path = Path("data/conversations")
    export_dir: Path = Path("exports")


@dataclass
class PromptsConfig:
    ranking: str
    chairman: str
    title: str


@dataclass
class AppConfig:
    council: CouncilConfig
    endpoints: dict[str, EndpointConfig]
    prompts: PromptsConfig
    timeouts: TimeoutsConfig = field(default_factory=TimeoutsConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    log_level: str = "INFO"
    available_endpoints: set[str] = field(default_factory=set)

    def resolve_model(self, model_id: str) -> tuple[str, str]:
        """Split a council model id into (endpoint name, endpoint model).

        ``"anthropic:claude-3-5-haiku-latest"`` routes to the ``anthropic``
        endpoint when one is configured; anything else, including OpenRouter
        ids such as ``"meta-llama/llama-3.1-8b-instruct:free"``, goes to the
        default endpoint unchanged.
        """
        prefix, sep, rest = model_id.partition(":")
        if sep and rest and prefix in self.endpoints:
            return prefix, rest
        return self.council.default_endpoint, model_id


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _cache_pool(raw: dict | None, fallback: CachePoolConfig) -> CachePoolConfig:
    if not raw:
        return fallback
    return CachePoolConfig(
        ttl_sec=float(raw.get("ttl_sec", fallback.ttl_sec)),
        max_size=int(raw.get("max_size", fallback.max_size)),
    )


def _apply_env_overrides(config: AppConfig) -> None:
    """Environment variables win over settings.yaml (set them in .env)."""
    env = os.environ
    if env.get("COUNCIL_MODELS", "").strip():
        config.council.models = _split_csv(env["COUNCIL_MODELS"])
    if env.get("CHAIRMAN_MODEL", "").strip():
        config.council.chairman = env["CHAIRMAN_MODEL"].strip()
    if env.get("TITLE_GENERATION_MODEL", "").strip():
        config.council.title_model = env["TITLE_GENERATION_MODEL"].strip()
    if env.get("DEFAULT_TIMEOUT", "").strip():
        config.timeouts.default = float(env["DEFAULT_TIMEOUT"])
    if env.get("CHAIRMAN_TIMEOUT", "").strip():
        config.timeouts.chairman = float(env["CHAIRMAN_TIMEOUT"])
    if env.get("TITLE_GENERATION_TIMEOUT", "").strip():
        config.timeouts.title = float(env["TITLE_GENERATION_TIMEOUT"])
    if env.get("DATA_DIR", "").strip():
        config.storage.data_dir = Path(env["DATA_DIR"].strip())
    if env.get("LOG_LEVEL", "").strip():
        config.log_level = env["LOG_LEVEL"].strip().upper()
    openrouter = config.endpoints.get("openrouter")
    if openrouter is not None and env.get("OPENROUTER_BASE_URL", "").strip():
        openrouter.base_url = env["OPENROUTER_BASE_URL"].strip()


def validate_council_models(models: list[str]) -> None:
    """Raise ConfigError unless models is a non-empty list of unique ids, at most one per label letter."""
    if not models:
        raise ConfigError("council.models must list at least one model")
    if len(models) > MAX_COUNCIL_SIZE:
        raise ConfigError(f"council.models lists {len(models)} models; at most {MAX_COUNCIL_SIZE} are supported")
    duplicates = sorted({m for m in models if models.count(m) > 1})
    if duplicates:
        raise ConfigError(f"council.models lists duplicate models: {', '.join(duplicates)}")


def _validate(config: AppConfig) -> None:
    validate_council_models(config.council.models)
    if config.council.default_endpoint not in config.endpoints:
        raise ConfigError(
            f"Default endpoint '{config.council.default_endpoint}' is not defined under endpoints"
        )
    if config.retry.max_retries < 0:
        raise ConfigError("retry.max_retries must be >= 0")
    if config.circuit_breaker.failure_threshold < 1:
        raise ConfigError("circuit_breaker.failure_threshold must be >= 1")


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ConfigError if the
    council section is unusable. Logs which endpoints have API keys but does
    not raise for missing keys — callers check available_endpoints.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    try:
        council_raw = raw["council"]
        prompts_raw = raw["prompts"]
        endpoints_raw = raw["endpoints"]
    except KeyError as exc:
        raise ConfigError(f"Missing settings section: {exc.args[0]}") from exc

    council = CouncilConfig(
        models=[str(m) for m in council_raw.get("models", [])],
        chairman=str(council_raw["chairman"]),
        title_model=str(council_raw.get("title_model", council_raw["chairman"])),
        default_endpoint=str(council_raw.get("default_endpoint", "openrouter")),
        cache_stage1=bool(council_raw.get("cache_stage1", True)),
    )

    prompts = PromptsConfig(
        ranking=prompts_raw["ranking"],
        chairman=prompts_raw["chairman"],
        title=prompts_raw["title"],
    )

    timeouts_raw = raw.get("timeouts", {})
    timeouts = TimeoutsConfig(
        default=float(timeouts_raw.get("default_sec", 120)),
        chairman=float(timeouts_raw.get("chairman_sec", 180)),
        title=float(timeouts_raw.get("title_sec", 30)),
    )

    retry_raw = raw.get("retry", {})
    retry = RetryConfig(
        max_retries=int(retry_raw.get("max_retries", 3)),
        initial_delay=float(retry_raw.get("initial_delay_sec", 1.0)),
        max_delay=float(retry_raw.get("max_delay_sec", 10.0)),
        backoff_multiplier=float(retry_raw.get("backoff_multiplier", 2.0)),
    )

    breaker_raw = raw.get("circuit_breaker", {})
    circuit_breaker = CircuitBreakerConfig(
        failure_threshold=int(breaker_raw.get("failure_threshold", 5)),
        reset_timeout=float(breaker_raw.get("reset_timeout_sec", 60)),
    )

    cache_raw = raw.get("cache", {})
    cache_defaults = CacheConfig()
    cache = CacheConfig(
        responses=_cache_pool(cache_raw.get("responses"), cache_defaults.responses),
        titles=_cache_pool(cache_raw.get("titles"), cache_defaults.titles),
    )

    stream_raw = raw.get("stream", {})
    stream = StreamConfig(
        high_water_mark=int(stream_raw.get("high_water_mark", 16384)),
        chunk_size=int(stream_raw.get("chunk_size", 8192)),
        flush_interval=float(stream_raw.get("flush_interval_sec", 0.1)),
    )

    storage_raw = raw.get("storage", {})
    storage = StorageConfig(
        data_dir=Path(storage_raw.get("data_dir", "data/conversations")),
        export_dir=Path(storage_raw.get("export_dir", "exports")),
    )

    endpoints: dict[str, EndpointConfig] = {}
    available_endpoints: set[str] = set()

    for endpoint_name, endpoint_raw in endpoints_raw.items():
        endpoint_cfg = EndpointConfig(
            name=endpoint_name,
            sdk=endpoint_raw["sdk"],
            api_key_env=endpoint_raw["api_key_env"],
            base_url=endpoint_raw.get("base_url"),
            max_tokens=int(endpoint_raw.get("max_tokens", 4096)),
        )
        endpoints[endpoint_name] = endpoint_cfg

        api_key = os.environ.get(endpoint_raw["api_key_env"], "").strip()
        if api_key:
            available_endpoints.add(endpoint_name)
            logger.info("Endpoint available: %s", endpoint_name)
        else:
            logger.info(
                "Endpoint skipped (no API key): %s — set %s in .env",
                endpoint_name,
                endpoint_raw["api_key_env"],
            )

    config = AppConfig(
        council=council,
        endpoints=endpoints,
        prompts=prompts,
        timeouts=timeouts,
        retry=retry,
        circuit_breaker=circuit_breaker,
        cache=cache,
        stream=stream,
        storage=storage,
        log_level=str(raw.get("log_level", "INFO")).upper(),
        available_endpoints=available_endpoints,
    )
    _apply_env_overrides(config)
    _validate(config)
    return config
