"""Rich console output and markdown export for council conversations."""

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any

import frontmatter
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from council.models import Answer, CouncilMetadata, Ranking, RoundState, Synthesis
from council.session import TurnResult

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _preview(text: str, words: int = 50) -> str:
    """Return first N words of a response."""
    all_words = text.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def print_stage1(answers: list[Answer]) -> None:
    console.print(Rule("[bold cyan]Stage 1 · Individual Responses[/bold cyan]"))
    if not answers:
        console.print("[red]No model answered.[/red]")
    for answer in answers:
        console.print(Panel(_preview(answer.response), title=f"[bold]{answer.model}[/bold]", border_style="dim"))


def print_rankings(rankings: list[Ranking], metadata: CouncilMetadata) -> None:
    console.print(Rule("[bold cyan]Stage 2 · Peer Rankings[/bold cyan]"))
    model_to_label = {model: label for label, model in metadata.label_to_model.items()}

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Model")
    table.add_column("Label", style="dim")
    table.add_column("Avg rank", justify="right")
    table.add_column("Votes", justify="right")
    for position, entry in enumerate(metadata.aggregate_rankings, start=1):
        table.add_row(
            str(position),
            entry.model,
            model_to_label.get(entry.model, ""),
            f"{entry.average_rank:.2f}",
            str(entry.rankings_count),
        )
    console.print(table)

    unparsed = [r.model for r in rankings if not r.parsed_ranking]
    if unparsed:
        console.print(Text(f"Unparseable rankings from: {', '.join(unparsed)}", style="yellow"))


def print_synthesis(synthesis: Synthesis) -> None:
    console.print(Rule("[bold green]Stage 3 · Council Synthesis[/bold green]"))
    console.print(Text(f"Synthesized by: {synthesis.model}", style="dim"))
    console.print(Markdown(synthesis.response))


def print_turn(turn: TurnResult) -> None:
    result = turn.result
    if turn.title:
        console.print(f"[bold]{turn.title}[/bold] [dim]({turn.conversation_id})[/dim]")
    print_stage1(result.stage1)
    if result.state is not RoundState.ERRORED:
        print_rankings(result.stage2, result.metadata)
    print_synthesis(result.stage3)


def print_conversation_list(conversations: list[dict[str, Any]]) -> None:
    if not conversations:
        console.print("No conversations yet.")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Created")
    table.add_column("Messages", justify="right")
    for conv in conversations:
        table.add_row(conv["id"], conv["title"], conv["created_at"], str(conv["message_count"]))
    console.print(table)


def print_stats(stats: dict[str, Any]) -> None:
    table = Table(show_header=False)
    for key, value in stats.items():
        table.add_row(key.replace("_", " "), "" if value is None else str(value))
    console.print(table)


def _conversation_markdown(conversation: dict[str, Any]) -> str:
    lines: list[str] = [f"# {conversation['title']}", ""]

    for message in conversation["messages"]:
        timestamp = message.get("timestamp", "")
        if message["role"] == "user":
            lines += [f"## Question ({timestamp})", "", message.get("content", ""), ""]
            continue

        lines += [f"## Council answer ({timestamp})", "", "### Stage 1: Individual Responses", ""]
        for answer in message.get("stage1", []):
            lines += [f"**{answer.get('model', 'Unknown')}**", "", answer.get("response", ""), ""]

        lines += ["### Stage 2: Peer Rankings", ""]
        for ranking in message.get("stage2", []):
            lines += [f"**{ranking.get('model', 'Unknown')}**", "", ranking.get("ranking", ""), ""]

        aggregate = message.get("aggregate_rankings", [])
        if aggregate:
            lines += ["| Model | Avg rank | Votes |", "|---|---|---|"]
            lines += [
                f"| {a['model']} | {a['average_rank']:.2f} | {a['rankings_count']} |" for a in aggregate
            ]
            lines.append("")

        stage3 = message.get("stage3") or {}
        lines += [
            "### Stage 3: Final Synthesis",
            "",
            f"*Chairman: {stage3.get('model', 'Unknown')}*",
            "",
            stage3.get("response", "No response"),
            "",
        ]

    return "\n".join(lines).rstrip() + "\n"


def print_conversation(conversation: dict[str, Any]) -> None:
    console.print(Markdown(_conversation_markdown(conversation)))


def export_conversation(conversation: dict[str, Any]) -> str:
    """Render a stored conversation as markdown with YAML front matter."""
    post = frontmatter.Post(
        _conversation_markdown(conversation),
        id=conversation["id"],
        title=conversation["title"],
        created_at=conversation["created_at"],
        message_count=len(conversation["messages"]),
    )
    return frontmatter.dumps(post)


def save_export(conversation: dict[str, Any], output_dir: Path) -> Path:
    """Write the markdown export to ``output_dir`` and return its path."""
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    slug = _slug(conversation["title"]) or conversation["id"]
    filepath = output_dir / f"{timestamp}_{slug}.md"
    filepath.write_text(export_conversation(conversation), encoding="utf-8")
    logger.info("Conversation %s exported to %s", conversation["id"], filepath)
    return filepath
