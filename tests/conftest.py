from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Mapping

import pytest

from idea_pipeline.config import get_settings
from idea_pipeline.events import EventBroadcaster
from idea_pipeline.heuristics import HeuristicInferenceClient
from idea_pipeline.llm import CompletionParams, ConcurrencyLimiter, PromptSpec
from idea_pipeline.pipeline import PipelineController
from idea_pipeline.registry import JobRegistry
from idea_pipeline.stages import build_stages

SAMPLE_IDEA = (
    "A platform that helps remote teams align around focused weekly outcomes using AI coaches."
)

Handler = Callable[[PromptSpec, CompletionParams], Awaitable[Dict[str, Any]]]


class ScriptedClient(HeuristicInferenceClient):
    """Heuristic backend whose answers can be overridden per stage."""

    def __init__(
        self,
        script: Mapping[str, Handler] | None = None,
        *,
        limiter: ConcurrencyLimiter | None = None,
        delay: float = 0.0,
    ) -> None:
        super().__init__(limiter)
        self.script = dict(script or {})
        self.delay = delay
        self.prompts: Dict[str, List[PromptSpec]] = defaultdict(list)

    async def _complete(
        self,
        prompt: PromptSpec,
        schema_hint: Mapping[str, Any],
        params: CompletionParams,
    ) -> Dict[str, Any]:
        self.prompts[params.stage or "unknown"].append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        handler = self.script.get(params.stage or "")
        if handler is not None:
            return await handler(prompt, params)
        return await super()._complete(prompt, schema_hint, params)


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    """Ensure cached settings do not leak between tests."""

    get_settings.cache_clear()


@pytest.fixture
def scripted_client() -> Callable[..., ScriptedClient]:
    return ScriptedClient


@pytest.fixture
def make_controller() -> Callable[..., PipelineController]:
    """Build a controller wired to an in-memory registry and a scripted client."""

    def factory(
        script: Mapping[str, Handler] | None = None,
        *,
        delay: float = 0.0,
        limit: int = 4,
        storage=None,
        store=None,
        stage_timeout_seconds: float = 1.0,
        retry_budget: int = 2,
        job_timeout_seconds: float = 30.0,
        parallel_stages: bool = True,
    ) -> PipelineController:
        registry = JobRegistry(store)
        client = ScriptedClient(script, limiter=ConcurrencyLimiter(limit), delay=delay)
        return PipelineController(
            registry,
            EventBroadcaster(registry),
            client,
            stages=build_stages(timeout_seconds=stage_timeout_seconds, retry_budget=retry_budget),
            storage=storage,
            job_timeout_seconds=job_timeout_seconds,
            parallel_stages=parallel_stages,
            backoff_seconds=0.0,
        )

    return factory


@pytest.fixture
def sample_idea() -> str:
    return SAMPLE_IDEA
