"""Stage definitions and the task runner that executes one stage."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Sequence, Type

from pydantic import ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import PipelineError, ProviderError, SchemaValidationError
from .llm import CompletionParams, InferenceClient, PromptSpec
from .outputs import (
    CompetitionAnalysis,
    FeasibilityAssessment,
    MarketResearch,
    MarketSizing,
    NormalizedIdea,
    StageOutput,
    StrategyRecommendations,
    ValidationReport,
)
from .prompts import (
    PromptBuilder,
    build_competition_prompt,
    build_feasibility_prompt,
    build_market_research_prompt,
    build_market_sizing_prompt,
    build_normalize_prompt,
    build_repair_prompt,
    build_report_prompt,
    build_strategy_prompt,
)
from .schemas import Criticality, StageDefinition, StageName

logger = logging.getLogger(__name__)


def unavailable_marker(stage: StageName, reason: str | None = None) -> Dict[str, Any]:
    """Input handed to dependents in place of a failed stage's output."""

    return {
        "sourceUnavailable": True,
        "stage": stage.value,
        "reason": reason or "This analysis could not be completed.",
    }


# ---------------------------------------------------------------------------
# Stage infrastructure
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageSpec:
    """Static description of one stage: wiring, failure policy and budgets."""

    name: StageName
    label: str
    description: str
    output_model: Type[StageOutput]
    prompt_builder: PromptBuilder
    depends_on: frozenset = frozenset()
    criticality: Criticality = Criticality.BEST_EFFORT
    timeout_seconds: float = 45.0
    retry_budget: int = 2
    model_weight: str = "heavy"
    temperature: float = 0.3
    max_tokens: int = 2048

    @property
    def ordinal(self) -> int:
        return self.name.order

    @property
    def is_critical(self) -> bool:
        return self.criticality is Criticality.CRITICAL


@dataclass(frozen=True)
class StageContext:
    """Input for a stage: the idea plus the outputs of its dependencies."""

    idea_text: str
    inputs: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass(frozen=True)
class StageOutcome:
    """Validated payload or typed failure returned by a stage task."""

    succeeded: bool
    payload: Dict[str, Any] | None = None
    error: PipelineError | None = None
    attempts: int = 0
    latency_ms: float = 0.0


ProgressCallback = Callable[[str], Awaitable[None]]


def _format_validation_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
        for error in exc.errors()
    ]


class StageTask:
    """Run one stage against the inference client.

    Provider errors (timeouts included) are retried with exponential backoff
    up to the stage's retry budget. A response with the wrong shape gets one
    schema-guided repair resubmission and is never retried beyond that.
    Retries and repairs are reported through *on_progress*.
    """

    def __init__(
        self,
        spec: StageSpec,
        client: InferenceClient,
        *,
        backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 10.0,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.spec = spec
        self.client = client
        self.backoff_seconds = backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.on_progress = on_progress
        self.attempts = 0
        self._schema_hint = spec.output_model.model_json_schema(by_alias=True)
        self._params = CompletionParams(
            stage=spec.name.value,
            model_weight=spec.model_weight,
            temperature=spec.temperature,
            max_tokens=spec.max_tokens,
        )

    async def run(self, context: StageContext) -> StageOutcome:
        self.attempts = 0
        started = time.perf_counter()
        prompt = self.spec.prompt_builder(context.idea_text, context.inputs)
        try:
            payload = await self._validated(prompt)
        except PipelineError as exc:
            logger.warning(
                "Stage %s failed after %d attempt(s): %s: %s",
                self.spec.name.value,
                self.attempts,
                exc.kind,
                exc.message,
            )
            return StageOutcome(succeeded=False, error=exc, attempts=self.attempts, latency_ms=_elapsed_ms(started))
        return StageOutcome(succeeded=True, payload=payload, attempts=self.attempts, latency_ms=_elapsed_ms(started))

    async def _report(self, message: str) -> None:
        if self.on_progress is not None:
            await self.on_progress(message)

    def _validate(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        model = self.spec.output_model.model_validate(raw)
        return model.model_dump(mode="json", by_alias=True)

    async def _validated(self, prompt: PromptSpec) -> Dict[str, Any]:
        raw: Dict[str, Any] | None = None
        try:
            raw = await self._call(prompt)
            return self._validate(raw)
        except SchemaValidationError as exc:
            errors = exc.details or [exc.message]
        except ValidationError as exc:
            errors = _format_validation_errors(exc)

        logger.info("Stage %s returned a malformed shape; requesting one repair", self.spec.name.value)
        await self._report(f"{self.spec.label} returned a malformed response; requesting a correction")
        repaired = await self._call(build_repair_prompt(prompt, raw, errors))
        try:
            return self._validate(repaired)
        except ValidationError as exc:
            raise SchemaValidationError(
                f"{self.spec.label} output failed validation after repair",
                stage=self.spec.name.value,
                details=_format_validation_errors(exc),
                original_error=exc,
            ) from exc

    async def _call(self, prompt: PromptSpec) -> Dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.spec.retry_budget + 1),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=self.max_backoff_seconds),
            retry=retry_if_exception_type(ProviderError),
            before_sleep=before_sleep_log(logger, logging.INFO),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                number = attempt.retry_state.attempt_number
                if number > 1:
                    await self._report(f"{self.spec.label}: retrying (attempt {number} of {self.spec.retry_budget + 1})")
                payload = await self._attempt(prompt)
        return payload

    async def _attempt(self, prompt: PromptSpec) -> Dict[str, Any]:
        self.attempts += 1
        return await self.client.complete(
            prompt,
            self._schema_hint,
            self._params,
            timeout=self.spec.timeout_seconds,
        )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


# ---------------------------------------------------------------------------
# Pipeline definition
# ---------------------------------------------------------------------------


def build_stages(*, timeout_seconds: float = 45.0, retry_budget: int = 2) -> tuple[StageSpec, ...]:
    """Return the fixed stage graph with the given per-stage budgets."""

    normalize = StageName.NORMALIZE_IDEA
    research = StageName.MARKET_RESEARCH
    sizing = StageName.MARKET_SIZING
    competition = StageName.COMPETITION
    feasibility = StageName.FEASIBILITY
    strategy = StageName.STRATEGY

    budgets = {"timeout_seconds": timeout_seconds, "retry_budget": retry_budget}
    return (
        StageSpec(
            name=normalize,
            label="Idea Normalization",
            description="Structure the raw idea into title, audience, features and keywords.",
            output_model=NormalizedIdea,
            prompt_builder=build_normalize_prompt,
            criticality=Criticality.CRITICAL,
            model_weight="light",
            temperature=0.2,
            **budgets,
        ),
        StageSpec(
            name=research,
            label="Market Research",
            description="Market size, trends and customer needs.",
            output_model=MarketResearch,
            prompt_builder=build_market_research_prompt,
            depends_on=frozenset({normalize}),
            **budgets,
        ),
        StageSpec(
            name=sizing,
            label="Market Sizing",
            description="TAM, SAM and SOM estimates with assumptions.",
            output_model=MarketSizing,
            prompt_builder=build_market_sizing_prompt,
            depends_on=frozenset({normalize, research}),
            model_weight="light",
            **budgets,
        ),
        StageSpec(
            name=competition,
            label="Competition Scan",
            description="Competitors, threat levels and differentiation opportunities.",
            output_model=CompetitionAnalysis,
            prompt_builder=build_competition_prompt,
            depends_on=frozenset({normalize, research, sizing}),
            **budgets,
        ),
        StageSpec(
            name=feasibility,
            label="Feasibility Evaluation",
            description="Technical, operational, financial and regulatory feasibility scores.",
            output_model=FeasibilityAssessment,
            prompt_builder=build_feasibility_prompt,
            depends_on=frozenset({normalize, research, sizing}),
            **budgets,
        ),
        StageSpec(
            name=strategy,
            label="Strategy Recommendations",
            description="Go-to-market, monetization and growth strategy.",
            output_model=StrategyRecommendations,
            prompt_builder=build_strategy_prompt,
            depends_on=frozenset({normalize, research, sizing, competition, feasibility}),
            **budgets,
        ),
        StageSpec(
            name=StageName.REPORT,
            label="Report Compilation",
            description="Overall score, recommendation, insights and next steps.",
            output_model=ValidationReport,
            prompt_builder=build_report_prompt,
            depends_on=frozenset({normalize, research, sizing, competition, feasibility, strategy}),
            **budgets,
        ),
    )


DEFAULT_STAGES = build_stages()


def execution_waves(stages: Iterable[StageSpec], *, parallel: bool = True) -> List[List[StageSpec]]:
    """Group stages into waves whose dependencies are all resolved.

    Waves and the stages inside them are in ordinal order. With *parallel*
    disabled every wave holds exactly one stage.
    """

    remaining = sorted(stages, key=lambda spec: spec.ordinal)
    known = {spec.name for spec in remaining}
    for spec in remaining:
        missing = set(spec.depends_on) - known
        if missing:
            names = ", ".join(sorted(name.value for name in missing))
            raise ValueError(f"Stage {spec.name.value} depends on unknown stage(s): {names}")

    resolved: set = set()
    waves: List[List[StageSpec]] = []
    while remaining:
        ready = [spec for spec in remaining if set(spec.depends_on) <= resolved]
        if not ready:
            raise ValueError("Stage graph contains a dependency cycle")
        if not parallel:
            ready = ready[:1]
        waves.append(ready)
        resolved.update(spec.name for spec in ready)
        remaining = [spec for spec in remaining if spec.name not in resolved]
    return waves


def list_stage_definitions(stages: Sequence[StageSpec] = DEFAULT_STAGES) -> List[StageDefinition]:
    """Return UI-friendly descriptors for all stages."""

    return [
        StageDefinition(
            id=spec.name,
            label=spec.label,
            description=spec.description,
            criticality=spec.criticality,
            depends_on=sorted(spec.depends_on, key=lambda name: name.order),
        )
        for spec in sorted(stages, key=lambda item: item.ordinal)
    ]
