"""Anonymous labels, ranking-text parsing and aggregate rankings."""

import re
from collections.abc import Sequence
from decimal import ROUND_HALF_UP, Decimal

from council.models import AggregateRanking, Answer, Ranking

FINAL_RANKING_MARKER = "FINAL RANKING:"

_NUMBERED_LABEL = re.compile(r"\d+\.\s*(Response [A-Z])")
_LABEL = re.compile(r"Response [A-Z]")


def assign_labels(answers: Sequence[Answer]) -> dict[str, str]:
    """Map "Response A", "Response B", ... to models in Stage 1 order.

    Raises:
        ValueError: More answers than single letters A-Z.
    """
    if len(answers) > 26:
        raise ValueError(f"Cannot label {len(answers)} responses; at most 26 are supported")
    return {f"Response {chr(ord('A') + i)}": answer.model for i, answer in enumerate(answers)}


def format_anonymized_responses(answers: Sequence[Answer], label_to_model: dict[str, str]) -> str:
    labels = list(label_to_model)
    return "\n\n".join(f"{label}:\n{answer.response}" for label, answer in zip(labels, answers))


def parse_ranking_from_text(ranking_text: str) -> list[str]:
    """Extract the ordered labels from a model's FINAL RANKING section.

    Preference order:
      1. "<n>. Response X" lines after the marker;
      2. any "Response X" after the marker;
      3. any "Response X" anywhere in the text.

    The last fallback is lenient: a critique that mentions "Response B" in
    passing can be read as a ranking entry when the model ignored the format.
    """
    if FINAL_RANKING_MARKER in ranking_text:
        section = ranking_text.split(FINAL_RANKING_MARKER, 1)[1]

        numbered = _NUMBERED_LABEL.findall(section)
        if numbered:
            return numbered

        in_section = _LABEL.findall(section)
        if in_section:
            return in_section

    return _LABEL.findall(ranking_text)


def _round_half_up(value: float) -> float:
    return float(Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def calculate_aggregate_rankings(
    rankings: Sequence[Ranking],
    label_to_model: dict[str, str],
) -> list[AggregateRanking]:
    """Average each model's position across all parsed rankings, best first.

    Labels missing from ``label_to_model`` are skipped. Models with no votes
    are left out. Ties keep the order in which models were first ranked.
    """
    positions_by_model: dict[str, list[int]] = {}

    for ranking in rankings:
        for position, label in enumerate(ranking.parsed_ranking, start=1):
            model = label_to_model.get(label)
            if model is None:
                continue
            positions_by_model.setdefault(model, []).append(position)

    aggregate = [
        AggregateRanking(
            model=model,
            average_rank=_round_half_up(sum(positions) / len(positions)),
            rankings_count=len(positions),
        )
        for model, positions in positions_by_model.items()
        if positions
    ]
    return sorted(aggregate, key=lambda a: a.average_rank)
