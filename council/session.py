"""One user turn: store the question, deliberate, title the conversation, persist the answer."""

import asyncio
import logging
from dataclasses import dataclass

from council.deliberation import DeliberationPipeline, OnEvent
from council.events import Complete, ErrorEvent, TitleComplete
from council.models import DeliberationResult
from council.storage import ConversationNotFoundError, ConversationStore
from council.stream import EventStream

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    conversation_id: str
    result: DeliberationResult
    title: str | None = None   # set only on a conversation's first turn


async def _execute_turn(
    store: ConversationStore,
    pipeline: DeliberationPipeline,
    conversation_id: str,
    content: str,
    on_event: OnEvent | None,
) -> TurnResult:
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        raise ConversationNotFoundError(conversation_id)

    is_first_message = not conversation["messages"]
    store.add_user_message(conversation_id, content)

    # Title generation overlaps the deliberation; joined just before persisting.
    title_task = asyncio.create_task(pipeline.generate_title(content)) if is_first_message else None
    try:
        result = await pipeline.run(content, on_event=on_event)

        title: str | None = None
        if title_task is not None:
            title = await title_task
            store.update_conversation_title(conversation_id, title)
            if on_event is not None:
                await on_event(TitleComplete(title=title))

        store.add_assistant_message(
            conversation_id,
            result.stage1,
            result.stage2,
            result.stage3,
            aggregate_rankings=result.metadata.aggregate_rankings,
        )
        if on_event is not None:
            await on_event(Complete())
    finally:
        if title_task is not None and not title_task.done():
            title_task.cancel()

    return TurnResult(conversation_id=conversation_id, result=result, title=title)


async def run_turn(
    store: ConversationStore,
    pipeline: DeliberationPipeline,
    conversation_id: str,
    content: str,
    on_event: OnEvent | None = None,
) -> TurnResult:
    """Run a full turn and return everything at once.

    ``on_event`` sees the same milestones a stream would, e.g. for progress display.

    Raises:
        ConversationNotFoundError: Unknown conversation id.
    """
    return await _execute_turn(store, pipeline, conversation_id, content, on_event=on_event)


async def stream_turn(
    store: ConversationStore,
    pipeline: DeliberationPipeline,
    conversation_id: str,
    content: str,
    stream: EventStream,
) -> TurnResult:
    """Run a full turn, publishing every milestone to ``stream``.

    On failure an ``error`` event is sent, the stream is closed and the
    exception is re-raised; the stream is closed on success too.
    """
    try:
        return await _execute_turn(store, pipeline, conversation_id, content, on_event=stream.send)
    except Exception as exc:
        logger.error("Council turn failed for conversation %s: %s", conversation_id, exc)
        await stream.send(ErrorEvent(message=str(exc)))
        raise
    finally:
        await stream.close()
