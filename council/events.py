"""Typed stage events and their SSE encoding.

The set is closed: a consumer can handle every event by matching on these
classes (or on the ``type`` string in the JSON payload).
"""

import json
from dataclasses import asdict, dataclass, field, is_dataclass
from typing import Any, ClassVar

from council.models import Answer, CouncilMetadata, Ranking, Synthesis


@dataclass(frozen=True)
class Stage1Start:
    type: ClassVar[str] = "stage1_start"


@dataclass(frozen=True)
class Stage1Complete:
    data: list[Answer]
    type: ClassVar[str] = "stage1_complete"


@dataclass(frozen=True)
class Stage2Start:
    type: ClassVar[str] = "stage2_start"


@dataclass(frozen=True)
class Stage2Complete:
    data: list[Ranking]
    metadata: CouncilMetadata = field(default_factory=CouncilMetadata)
    type: ClassVar[str] = "stage2_complete"


@dataclass(frozen=True)
class Stage3Start:
    type: ClassVar[str] = "stage3_start"


@dataclass(frozen=True)
class Stage3Complete:
    data: Synthesis
    type: ClassVar[str] = "stage3_complete"


@dataclass(frozen=True)
class TitleComplete:
    title: str
    type: ClassVar[str] = "title_complete"


@dataclass(frozen=True)
class Complete:
    type: ClassVar[str] = "complete"


@dataclass(frozen=True)
class ErrorEvent:
    message: str
    type: ClassVar[str] = "error"


Event = (
    Stage1Start
    | Stage1Complete
    | Stage2Start
    | Stage2Complete
    | Stage3Start
    | Stage3Complete
    | TitleComplete
    | Complete
    | ErrorEvent
)


def _jsonable(value: Any) -> Any:
    if is_dataclass(value):
        return asdict(value)
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def event_payload(event: Event) -> dict[str, Any]:
    """Flatten an event to ``{"type": ..., <fields>}``."""
    payload: dict[str, Any] = {"type": event.type}
    for name, value in vars(event).items():
        payload[name] = _jsonable(value)
    return payload


def encode_sse(event: Event) -> str:
    return f"data: {json.dumps(event_payload(event), ensure_ascii=False)}\n\n"
