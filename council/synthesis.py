"""Stage 3 synthesis with sequential fallback, and conversation title generation."""

import logging
from collections.abc import Sequence

from council.cache import ResponseCache, title_cache_key
from council.client import ModelClient
from council.models import Answer, Ranking, Synthesis
from council.storage import DEFAULT_TITLE

logger = logging.getLogger(__name__)

_MAX_TITLE_LEN = 50


def _format_stage1(answers: Sequence[Answer]) -> str:
    return "\n\n".join(f"Model: {a.model}\nResponse: {a.response}" for a in answers)


def _format_stage2(rankings: Sequence[Ranking]) -> str:
    return "\n\n".join(f"Model: {r.model}\nRanking: {r.ranking}" for r in rankings)


def build_chairman_prompt(
    template: str,
    question: str,
    answers: Sequence[Answer],
    rankings: Sequence[Ranking],
) -> str:
    """Chairman sees real model names: anonymity only matters while peers rank."""
    return template.format(
        question=question,
        stage1=_format_stage1(answers),
        stage2=_format_stage2(rankings),
    )


def synthesis_failure_text(chairman: str) -> str:
    return (
        f"Error: Unable to generate final synthesis. Chairman model ({chairman}) and all "
        "fallback models failed. Please check your API key and model availability."
    )


async def stage3_synthesize_final(
    client: ModelClient,
    question: str,
    answers: Sequence[Answer],
    rankings: Sequence[Ranking],
    chairman: str,
    council_models: Sequence[str],
    template: str,
    timeout: float,
) -> Synthesis:
    """Ask the chairman for the final answer, falling back to the other council models.

    Fallback candidates are tried one at a time in configuration order and
    the first success wins. When every candidate fails the result is a
    descriptive error Synthesis attributed to the chairman; this never raises.
    """
    prompt = build_chairman_prompt(template, question, answers, rankings)
    messages = [{"role": "user", "content": prompt}]

    logger.info("Attempting to query Chairman model: %s", chairman)
    response = await client.query_model(chairman, messages, timeout=timeout, use_cache=False)
    if response is not None:
        return Synthesis(model=chairman, response=response.content)

    logger.warning("Chairman model %s failed, trying fallback models", chairman)
    for fallback_model in (m for m in council_models if m != chairman):
        logger.info("Trying fallback model: %s", fallback_model)
        response = await client.query_model(fallback_model, messages, timeout=timeout, use_cache=False)
        if response is not None:
            logger.info("Successfully used fallback model: %s", fallback_model)
            return Synthesis(model=fallback_model, response=response.content)

    logger.error("All models failed for Stage 3 synthesis")
    return Synthesis(model=chairman, response=synthesis_failure_text(chairman))


def _clean_title(raw: str) -> str:
    title = raw.strip()
    if title[:1] in ("'", '"'):
        title = title[1:]
    if title[-1:] in ("'", '"'):
        title = title[:-1]
    title = title.strip()
    if len(title) > _MAX_TITLE_LEN:
        title = title[: _MAX_TITLE_LEN - 3] + "..."
    return title or DEFAULT_TITLE


async def generate_conversation_title(
    client: ModelClient,
    question: str,
    title_model: str,
    template: str,
    title_cache: ResponseCache[str],
    timeout: float,
) -> str:
    """Return a 3-5 word title for the first message of a conversation.

    Titles are cached by question text. A failed call yields DEFAULT_TITLE,
    which is not cached so the next attempt can do better.
    """
    cache_key = title_cache_key(question)
    cached = title_cache.get(cache_key)
    if cached is not None:
        logger.debug("Title cache hit")
        return cached

    messages = [{"role": "user", "content": template.format(question=question)}]
    response = await client.query_model(title_model, messages, timeout=timeout, use_cache=False)
    if response is None:
        return DEFAULT_TITLE

    title = _clean_title(response.content)
    title_cache.set(cache_key, title)
    return title
