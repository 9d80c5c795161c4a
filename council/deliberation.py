"""Three-stage council deliberation: collect answers, rank them anonymously, synthesize."""

import logging
from collections.abc import Awaitable, Callable

from config.config_loader import AppConfig, CouncilConfig, PromptsConfig, TimeoutsConfig
from council.cache import ResponseCache
from council.client import ModelClient
from council.events import (
    Event,
    Stage1Complete,
    Stage1Start,
    Stage2Complete,
    Stage2Start,
    Stage3Complete,
    Stage3Start,
)
from council.models import (
    Answer,
    CouncilMetadata,
    DeliberationResult,
    Ranking,
    RoundState,
    Synthesis,
)
from council.ranking import (
    assign_labels,
    calculate_aggregate_rankings,
    format_anonymized_responses,
    parse_ranking_from_text,
)
from council.synthesis import generate_conversation_title, stage3_synthesize_final

logger = logging.getLogger(__name__)

# Quality gate: peer ranking says little with fewer answers than this
_MIN_QUALITY_RESPONSES = 2

NO_ANSWERS_MODEL = "error"
NO_ANSWERS_TEXT = "All models failed to respond. Please try again."

OnEvent = Callable[[Event], Awaitable[None]]


class DeliberationPipeline:
    """Runs deliberation rounds against one council configuration.

    Holds no per-round state: labels and rankings live only inside ``run``.
    """

    def __init__(
        self,
        client: ModelClient,
        council: CouncilConfig,
        prompts: PromptsConfig,
        timeouts: TimeoutsConfig,
        title_cache: ResponseCache[str],
    ) -> None:
        self._client = client
        self.council = council
        self._prompts = prompts
        self._timeouts = timeouts
        self._title_cache = title_cache

    @property
    def client(self) -> ModelClient:
        return self._client

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        client: ModelClient,
        title_cache: ResponseCache[str],
    ) -> "DeliberationPipeline":
        return cls(client, config.council, config.prompts, config.timeouts, title_cache)

    async def stage1_collect_responses(self, question: str) -> list[Answer]:
        """Stage 1: every council model answers the question in parallel.

        Returns:
            Answers from the models that responded, in configuration order.
        """
        messages = [{"role": "user", "content": question}]
        responses = await self._client.query_models_parallel(
            self.council.models,
            messages,
            use_cache=self.council.cache_stage1,
            timeout=self._timeouts.default,
        )
        answers = [
            Answer(model=model, response=response.content)
            for model, response in responses.items()
            if response is not None
        ]

        logger.info("Stage 1 complete: %d/%d models responded", len(answers), len(self.council.models))
        if len(self.council.models) >= _MIN_QUALITY_RESPONSES and 0 < len(answers) < _MIN_QUALITY_RESPONSES:
            logger.warning(
                "Only %d/%d models responded in Stage 1. Peer ranking quality is degraded.",
                len(answers),
                len(self.council.models),
            )
        return answers

    async def stage2_collect_rankings(
        self,
        question: str,
        answers: list[Answer],
    ) -> tuple[list[Ranking], dict[str, str]]:
        """Stage 2: each council model ranks the anonymized Stage 1 answers.

        Rankings bypass the answer cache so they always reflect this round's
        labels. A ranking that cannot be parsed is kept with an empty
        parsed_ranking.

        Returns:
            (rankings, label -> model mapping)
        """
        label_to_model = assign_labels(answers)
        logger.debug("Stage 2 label map: %s", label_to_model)

        prompt = self._prompts.ranking.format(
            question=question,
            responses=format_anonymized_responses(answers, label_to_model),
        )
        messages = [{"role": "user", "content": prompt}]
        responses = await self._client.query_models_parallel(
            self.council.models,
            messages,
            use_cache=False,
            timeout=self._timeouts.default,
        )

        rankings: list[Ranking] = []
        for model, response in responses.items():
            if response is None:
                continue
            parsed = parse_ranking_from_text(response.content)
            if not parsed:
                logger.warning("Could not parse a ranking from %s", model)
            rankings.append(Ranking(model=model, ranking=response.content, parsed_ranking=parsed))

        logger.info("Stage 2 complete: %d/%d rankings received", len(rankings), len(self.council.models))
        return rankings, label_to_model

    async def stage3_synthesize_final(
        self,
        question: str,
        answers: list[Answer],
        rankings: list[Ranking],
    ) -> Synthesis:
        return await stage3_synthesize_final(
            self._client,
            question,
            answers,
            rankings,
            chairman=self.council.chairman,
            council_models=self.council.models,
            template=self._prompts.chairman,
            timeout=self._timeouts.chairman,
        )

    async def generate_title(self, question: str) -> str:
        return await generate_conversation_title(
            self._client,
            question,
            title_model=self.council.title_model,
            template=self._prompts.title,
            title_cache=self._title_cache,
            timeout=self._timeouts.title,
        )

    async def run(self, question: str, on_event: OnEvent | None = None) -> DeliberationResult:
        """Run one full deliberation round.

        Args:
            question: The user's question.
            on_event: Optional coroutine callback awaited at every stage milestone.

        Returns:
            DeliberationResult. When no model answers in Stage 1 the round ends
            in RoundState.ERRORED with empty rankings and a placeholder
            synthesis; this is a result, not an exception.
        """

        async def emit(event: Event) -> None:
            if on_event is not None:
                await on_event(event)

        logger.debug("Round state: %s", RoundState.STAGE1.value)
        await emit(Stage1Start())
        answers = await self.stage1_collect_responses(question)
        await emit(Stage1Complete(data=answers))

        if not answers:
            logger.error("All council models failed in Stage 1")
            placeholder = Synthesis(model=NO_ANSWERS_MODEL, response=NO_ANSWERS_TEXT)
            await emit(Stage2Start())
            await emit(Stage2Complete(data=[], metadata=CouncilMetadata()))
            await emit(Stage3Start())
            await emit(Stage3Complete(data=placeholder))
            return DeliberationResult(
                stage1=[],
                stage2=[],
                stage3=placeholder,
                metadata=CouncilMetadata(),
                state=RoundState.ERRORED,
            )

        logger.debug("Round state: %s", RoundState.STAGE2.value)
        await emit(Stage2Start())
        rankings, label_to_model = await self.stage2_collect_rankings(question, answers)
        metadata = CouncilMetadata(
            label_to_model=label_to_model,
            aggregate_rankings=calculate_aggregate_rankings(rankings, label_to_model),
        )
        await emit(Stage2Complete(data=rankings, metadata=metadata))

        logger.debug("Round state: %s", RoundState.STAGE3.value)
        await emit(Stage3Start())
        synthesis = await self.stage3_synthesize_final(question, answers, rankings)
        await emit(Stage3Complete(data=synthesis))

        return DeliberationResult(
            stage1=answers,
            stage2=rankings,
            stage3=synthesis,
            metadata=metadata,
            state=RoundState.DONE,
        )
