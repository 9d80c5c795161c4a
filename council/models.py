"""Pure dataclasses for the LLM Council deliberation pipeline. No logic, no deps."""

from dataclasses import dataclass, field
from enum import Enum


@dataclass(frozen=True)
class Completion:
    content: str
    reasoning_details: object | None = None


@dataclass(frozen=True)
class Answer:
    model: str             # council model id, e.g. "openai/gpt-4o-mini"
    response: str


@dataclass
class Ranking:
    model: str
    ranking: str           # raw evaluation text
    parsed_ranking: list[str] = field(default_factory=list)  # ["Response C", "Response A", ...]


@dataclass(frozen=True)
class AggregateRanking:
    model: str
    average_rank: float
    rankings_count: int


@dataclass(frozen=True)
class Synthesis:
    model: str
    response: str


@dataclass
class CouncilMetadata:
    label_to_model: dict[str, str] = field(default_factory=dict)
    aggregate_rankings: list[AggregateRanking] = field(default_factory=list)


class RoundState(str, Enum):
    STAGE1 = "stage1"
    STAGE2 = "stage2"
    STAGE3 = "stage3"
    DONE = "done"
    ERRORED = "errored"


@dataclass
class DeliberationResult:
    stage1: list[Answer]
    stage2: list[Ranking]
    stage3: Synthesis
    metadata: CouncilMetadata
    state: RoundState = RoundState.DONE
