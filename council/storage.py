"""JSON-file conversation storage: one file per conversation."""

import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from council.models import AggregateRanking, Answer, Ranking, Synthesis

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"


class ConversationNotFoundError(LookupError):
    """Raised when a conversation id has no stored record."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConversationStore:
    """Append-only conversation records under ``data_dir``.

    Each record is ``{id, created_at, title, messages}``. User messages carry
    ``content``; assistant messages carry the three stage results and the
    aggregate rankings. Anonymous labels are never written.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    def _path(self, conversation_id: str) -> Path:
        if not conversation_id or any(sep in conversation_id for sep in ("/", "\\", "..")):
            raise ValueError(f"Invalid conversation id: {conversation_id!r}")
        return self.data_dir / f"{conversation_id}.json"

    def _save(self, conversation: dict[str, Any]) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(conversation["id"])
        path.write_text(json.dumps(conversation, indent=2, ensure_ascii=False), encoding="utf-8")

    def _require(self, conversation_id: str) -> dict[str, Any]:
        conversation = self.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def create_conversation(self, conversation_id: str) -> dict[str, Any]:
        logger.info("Creating new conversation: %s", conversation_id)
        conversation = {
            "id": conversation_id,
            "created_at": _now(),
            "title": DEFAULT_TITLE,
            "messages": [],
        }
        self._save(conversation)
        return conversation

    def get_conversation(self, conversation_id: str) -> dict[str, Any] | None:
        path = self._path(conversation_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def list_conversations(self) -> list[dict[str, Any]]:
        """Metadata for every stored conversation, newest first. Unreadable files are skipped."""
        if not self.data_dir.exists():
            return []

        conversations: list[dict[str, Any]] = []
        for path in self.data_dir.glob("*.json"):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                meta = {
                    "id": data["id"],
                    "created_at": data["created_at"],
                    "title": data.get("title") or DEFAULT_TITLE,
                    "message_count": len(data.get("messages", [])),
                }
            except (OSError, json.JSONDecodeError, KeyError, TypeError) as exc:
                logger.error("Error reading conversation file %s: %s", path.name, exc)
                continue
            conversations.append(meta)

        conversations.sort(key=lambda c: c["created_at"], reverse=True)
        return conversations

    def add_user_message(self, conversation_id: str, content: str) -> None:
        conversation = self._require(conversation_id)
        conversation["messages"].append({
            "role": "user",
            "content": content,
            "timestamp": _now(),
        })
        self._save(conversation)
        logger.info("User message added to conversation %s", conversation_id)

    def add_assistant_message(
        self,
        conversation_id: str,
        stage1: list[Answer],
        stage2: list[Ranking],
        stage3: Synthesis,
        aggregate_rankings: list[AggregateRanking] | None = None,
    ) -> None:
        conversation = self._require(conversation_id)
        conversation["messages"].append({
            "role": "assistant",
            "stage1": [asdict(a) for a in stage1],
            "stage2": [asdict(r) for r in stage2],
            "stage3": asdict(stage3),
            "aggregate_rankings": [asdict(a) for a in aggregate_rankings or []],
            "timestamp": _now(),
        })
        self._save(conversation)
        logger.info(
            "Assistant message added to conversation %s (%d answers, %d rankings, chairman %s)",
            conversation_id, len(stage1), len(stage2), stage3.model,
        )

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        conversation = self._require(conversation_id)
        conversation["title"] = title
        self._save(conversation)
        logger.info("Conversation %s title updated to: %s", conversation_id, title)

    def get_stats(self) -> dict[str, Any]:
        conversations = self.list_conversations()
        user_messages = 0
        assistant_messages = 0
        for meta in conversations:
            full = self.get_conversation(meta["id"]) or {"messages": []}
            for message in full["messages"]:
                if message.get("role") == "user":
                    user_messages += 1
                elif message.get("role") == "assistant":
                    assistant_messages += 1

        return {
            "total_conversations": len(conversations),
            "total_messages": sum(c["message_count"] for c in conversations),
            "total_user_messages": user_messages,
            "total_assistant_messages": assistant_messages,
            "storage_location": str(self.data_dir),
            "oldest_conversation": conversations[-1]["created_at"] if conversations else None,
            "newest_conversation": conversations[0]["created_at"] if conversations else None,
        }
