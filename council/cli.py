"""Click CLI — wires config, providers, caches and storage, then runs council turns."""

import asyncio
import logging
import sys
import uuid
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, ConfigError, load_config, validate_council_models
from council.cache import CachePools
from council.client import ModelClient
from council.deliberation import DeliberationPipeline
from council.events import (
    Event,
    Stage1Complete,
    Stage1Start,
    Stage2Complete,
    Stage2Start,
    Stage3Complete,
    Stage3Start,
    TitleComplete,
)
from council.output import (
    print_conversation,
    print_conversation_list,
    print_stats,
    print_turn,
    save_export,
)
from council.providers.anthropic import AnthropicProvider
from council.providers.base import AIProvider
from council.providers.gemini import GeminiProvider
from council.providers.openai_provider import OpenAIProvider
from council.session import TurnResult, run_turn, stream_turn
from council.storage import ConversationNotFoundError, ConversationStore
from council.stream import EventStream, FileTransport

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "gemini": GeminiProvider,
}

_STAGE_DESCRIPTIONS = {
    Stage1Start: "Stage 1: collecting responses...",
    Stage2Start: "Stage 2: peer ranking...",
    Stage3Start: "Stage 3: chairman synthesis...",
}


def _setup_logging(verbose: bool) -> None:
    # stderr keeps stdout clean for --stream output
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
    )


def _build_all_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build providers for endpoints with API keys. Returns dict keyed by endpoint name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_endpoints):
        endpoint_cfg = config.endpoints[name]
        if endpoint_cfg.sdk not in PROVIDER_CLASSES:
            logging.warning("Endpoint '%s' uses unknown sdk '%s', skipping", name, endpoint_cfg.sdk)
            continue
        try:
            providers[name] = PROVIDER_CLASSES[endpoint_cfg.sdk](endpoint_cfg)
        except Exception as exc:
            logging.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _apply_council_overrides(config: AppConfig, models_arg: str | None, chairman: str | None) -> None:
    """--models and --chairman win over settings.yaml and the environment."""
    if models_arg:
        config.council.models = [m.strip() for m in models_arg.split(",") if m.strip()]
        validate_council_models(config.council.models)
    if chairman:
        config.council.chairman = chairman.strip()


def _unreachable_models(config: AppConfig, providers: dict[str, AIProvider]) -> list[str]:
    """Council members (and chairman) whose endpoint has no provider."""
    candidates = list(dict.fromkeys([*config.council.models, config.council.chairman]))
    return [m for m in candidates if config.resolve_model(m)[0] not in providers]


def _load_conversation_or_exit(store: ConversationStore, conversation_id: str) -> dict:
    try:
        conversation = store.get_conversation(conversation_id)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)
    if conversation is None:
        console.print(f"[bold red]Error:[/bold red] Conversation {conversation_id} not found.")
        sys.exit(1)
    return conversation


def _log_call_stats(pools: CachePools, pipeline: DeliberationPipeline) -> None:
    for cache in (pools.responses, pools.titles):
        logger.debug("Cache %s: %s", cache.name, cache.stats())
    for key, snapshot in pipeline.client.breakers.snapshots().items():
        logger.debug("Circuit %s: %s, %d failures", key, snapshot.state.value, snapshot.failures)


def _build_pipeline(
    config: AppConfig,
    providers: dict[str, AIProvider],
    pools: CachePools | None = None,
) -> DeliberationPipeline:
    """Process-wide caches, breakers and coalescer are created here and injected."""
    pools = pools or CachePools(config.cache)
    client = ModelClient.from_config(config, providers, pools.responses)
    return DeliberationPipeline.from_config(config, client, pools.titles)


async def _run_with_progress(
    store: ConversationStore,
    pipeline: DeliberationPipeline,
    conversation_id: str,
    question: str,
) -> TurnResult:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting council...", total=None)

        async def on_event(event: Event) -> None:
            description = _STAGE_DESCRIPTIONS.get(type(event))
            if description:
                progress.update(task, description=description)
            elif isinstance(event, Stage1Complete):
                progress.print(f"[green]OK[/green] Stage 1 complete ({len(event.data)} responses)")
            elif isinstance(event, Stage2Complete):
                progress.print(f"[green]OK[/green] Stage 2 complete ({len(event.data)} rankings)")
            elif isinstance(event, Stage3Complete):
                progress.print(f"[green]OK[/green] Stage 3 complete (by {event.data.model})")
            elif isinstance(event, TitleComplete):
                progress.print(f"[green]OK[/green] Title: {event.title}")

        return await run_turn(store, pipeline, conversation_id, question, on_event=on_event)


async def _run_streaming(
    config: AppConfig,
    store: ConversationStore,
    pipeline: DeliberationPipeline,
    conversation_id: str,
    question: str,
) -> TurnResult:
    async with EventStream.from_config(FileTransport(sys.stdout.buffer), config.stream) as stream:
        return await stream_turn(store, pipeline, conversation_id, question, stream)


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--settings", "settings_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Path to settings.yaml (default: config/settings.yaml)")
@click.pass_context
def main(ctx: click.Context, verbose: bool, settings_path: str | None) -> None:
    """LLM Council -- ask several models, let them rank each other, get one answer.

    \b
    Examples:
      llm-council ask "What is the CAP theorem?"
      llm-council ask "Follow-up question" --conversation <id>
      llm-council ask "Compare REST and gRPC" --stream
      llm-council ask "SQL or NoSQL?" --models openai/gpt-4o-mini,anthropic:claude-3-5-haiku-latest
      llm-council list
      llm-council export <id>
    """
    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config(Path(settings_path)) if settings_path else load_config()
    except (FileNotFoundError, ConfigError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if not verbose:
        logging.getLogger().setLevel(config.log_level)

    ctx.obj = config


@main.command()
@click.argument("question")
@click.option("--conversation", "conversation_id", default=None, help="Continue an existing conversation")
@click.option("--stream", "use_stream", is_flag=True, help="Write raw SSE events to stdout")
@click.option("--models", default=None, help="Comma-separated council models, overrides config")
@click.option("--chairman", default=None, help="Chairman model, overrides config")
@click.pass_obj
def ask(
    config: AppConfig,
    question: str,
    conversation_id: str | None,
    use_stream: bool,
    models: str | None,
    chairman: str | None,
) -> None:
    """Run one council turn for QUESTION."""
    try:
        _apply_council_overrides(config, models, chairman)
    except ConfigError as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    providers = _build_all_providers(config)
    if not providers:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    unreachable = _unreachable_models(config, providers)
    if unreachable:
        logger.warning("No provider for: %s (their calls will fail)", ", ".join(unreachable))

    store = ConversationStore(config.storage.data_dir)
    if conversation_id is None:
        conversation_id = str(uuid.uuid4())
        store.create_conversation(conversation_id)
    else:
        _load_conversation_or_exit(store, conversation_id)

    pools = CachePools(config.cache)
    pipeline = _build_pipeline(config, providers, pools)

    if not use_stream:
        console.print(f"\n[bold cyan]LLM Council[/bold cyan] — {len(config.council.models)} models")
        console.print(f"Council: {', '.join(config.council.models)}")
        console.print(f"Chairman: {config.council.chairman}")
        console.print(f"Question: [italic]{question[:80]}{'...' if len(question) > 80 else ''}[/italic]\n")

    try:
        if use_stream:
            asyncio.run(_run_streaming(config, store, pipeline, conversation_id, question))
            _log_call_stats(pools, pipeline)
            return
        turn = asyncio.run(_run_with_progress(store, pipeline, conversation_id, question))
    except ConversationNotFoundError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    _log_call_stats(pools, pipeline)

    print_turn(turn)
    console.print(f"\n[dim]Conversation: {conversation_id}[/dim]")


@main.command(name="list")
@click.pass_obj
def list_conversations(config: AppConfig) -> None:
    """List stored conversations, newest first."""
    store = ConversationStore(config.storage.data_dir)
    print_conversation_list(store.list_conversations())


@main.command()
@click.argument("conversation_id")
@click.pass_obj
def show(config: AppConfig, conversation_id: str) -> None:
    """Print a stored conversation."""
    conversation = _load_conversation_or_exit(ConversationStore(config.storage.data_dir), conversation_id)
    print_conversation(conversation)


@main.command()
@click.argument("conversation_id")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.pass_obj
def export(config: AppConfig, conversation_id: str, output_path: str | None) -> None:
    """Export a conversation as markdown with YAML front matter."""
    conversation = _load_conversation_or_exit(ConversationStore(config.storage.data_dir), conversation_id)
    output_dir = Path(output_path) if output_path else config.storage.export_dir
    saved = save_export(conversation, output_dir)
    console.print(f"[dim]Saved to: {saved}[/dim]")


@main.command()
@click.pass_obj
def stats(config: AppConfig) -> None:
    """Show conversation storage statistics."""
    print_stats(ConversationStore(config.storage.data_dir).get_stats())


if __name__ == "__main__":
    main()
