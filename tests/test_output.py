"""Tests for council/output.py."""

from pathlib import Path

import frontmatter
import pytest

from council.models import (
    AggregateRanking,
    Answer,
    CouncilMetadata,
    DeliberationResult,
    Ranking,
    RoundState,
    Synthesis,
)
from council.output import (
    _preview,
    _slug,
    export_conversation,
    print_conversation_list,
    print_stats,
    print_turn,
    save_export,
)
from council.session import TurnResult
from council.storage import ConversationStore


def test_slug_basic():
    assert _slug("What is the CAP theorem?") == "what-is-the-cap-theorem"


def test_slug_max_len():
    assert len(_slug("a" * 100)) <= 40


def test_slug_special_chars():
    result = _slug("REST vs. gRPC (2024)")
    assert "." not in result
    assert "(" not in result
    assert ")" not in result


def test_preview_truncates_words():
    assert _preview("one two three", words=2) == "one two..."
    assert _preview("one two", words=2) == "one two"


@pytest.fixture
def stored_conversation(tmp_path: Path) -> dict:
    store = ConversationStore(tmp_path / "conversations")
    store.create_conversation("abc")
    store.add_user_message("abc", "What is 2+2?")
    store.add_assistant_message(
        "abc",
        [Answer("openai/gpt-4o-mini", "4"), Answer("anthropic/claude-3.5-haiku", "Four.")],
        [Ranking("openai/gpt-4o-mini", "FINAL RANKING:\n1. Response B\n2. Response A", ["Response B", "Response A"])],
        Synthesis("google/gemini-2.0-flash", "The council agrees: **4**."),
        aggregate_rankings=[
            AggregateRanking("anthropic/claude-3.5-haiku", 1.0, 1),
            AggregateRanking("openai/gpt-4o-mini", 2.0, 1),
        ],
    )
    store.update_conversation_title("abc", "Basic Arithmetic")
    return store.get_conversation("abc")


def test_export_has_front_matter(stored_conversation):
    post = frontmatter.loads(export_conversation(stored_conversation))
    assert post["id"] == "abc"
    assert post["title"] == "Basic Arithmetic"
    assert post["message_count"] == 2
    assert post["created_at"] == stored_conversation["created_at"]


def test_export_body_has_every_stage(stored_conversation):
    body = frontmatter.loads(export_conversation(stored_conversation)).content
    assert body.startswith("# Basic Arithmetic")
    assert "What is 2+2?" in body
    assert "### Stage 1: Individual Responses" in body
    assert "**anthropic/claude-3.5-haiku**" in body
    assert "### Stage 2: Peer Rankings" in body
    assert "| anthropic/claude-3.5-haiku | 1.00 | 1 |" in body
    assert "### Stage 3: Final Synthesis" in body
    assert "*Chairman: google/gemini-2.0-flash*" in body
    assert "The council agrees: **4**." in body


def test_save_export_creates_file(tmp_path: Path, stored_conversation):
    path = save_export(stored_conversation, tmp_path / "exports")
    assert path.exists()
    assert path.suffix == ".md"
    assert path.name.endswith("_basic-arithmetic.md")
    assert path.read_text(encoding="utf-8").startswith("---\n")


def test_save_export_creates_output_dir(tmp_path: Path, stored_conversation):
    nested = tmp_path / "a" / "b" / "c"
    save_export(stored_conversation, nested)
    assert nested.exists()


def _turn(state: RoundState) -> TurnResult:
    metadata = CouncilMetadata(
        label_to_model={"Response A": "openai/gpt-4o-mini"},
        aggregate_rankings=[AggregateRanking("openai/gpt-4o-mini", 1.0, 1)],
    )
    result = DeliberationResult(
        stage1=[Answer("openai/gpt-4o-mini", "4")],
        stage2=[Ranking("anthropic/claude-3.5-haiku", "no format", [])],
        stage3=Synthesis("google/gemini-2.0-flash", "Four."),
        metadata=metadata,
        state=state,
    )
    return TurnResult(conversation_id="abc", result=result, title="Basic Arithmetic")


def test_print_turn_renders_all_stages(capsys):
    print_turn(_turn(RoundState.DONE))
    out = capsys.readouterr().out
    assert "Basic Arithmetic" in out
    assert "openai/gpt-4o-mini" in out
    assert "Response A" in out
    assert "Unparseable rankings from: anthropic/claude-3.5-haiku" in out
    assert "Synthesized by: google/gemini-2.0-flash" in out


def test_print_turn_errored_skips_rankings(capsys):
    print_turn(_turn(RoundState.ERRORED))
    out = capsys.readouterr().out
    assert "Peer Rankings" not in out
    assert "Four." in out


def test_print_conversation_list_empty(capsys):
    print_conversation_list([])
    assert "No conversations yet." in capsys.readouterr().out


def test_print_stats(capsys):
    print_stats({"total_conversations": 2, "oldest_conversation": None})
    out = capsys.readouterr().out
    assert "total conversations" in out
    assert "2" in out
