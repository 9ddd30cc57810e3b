from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from idea_pipeline.errors import ProviderError, SchemaValidationError
from idea_pipeline.llm import parse_structured_response
from idea_pipeline.schemas import StageName
from idea_pipeline.stages import (
    DEFAULT_STAGES,
    StageContext,
    StageTask,
    build_stages,
    execution_waves,
    list_stage_definitions,
)

NORMALIZED = {
    "title": "Remote Team Outcomes",
    "description": "AI coaches that keep remote teams focused on weekly outcomes.",
    "industry": "Productivity software",
    "targetAudience": "Remote team leads",
    "keyFeatures": ["Weekly outcome planning"],
    "keywords": ["remote", "teams", "outcomes"],
}

NORMALIZE_SPEC = replace(DEFAULT_STAGES[0], timeout_seconds=0.05, retry_budget=2)


def _sequence(*answers):
    """Handler that plays back answers in order; exceptions are raised."""

    remaining = list(answers)

    async def handler(prompt, params):
        answer = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    return handler


async def _hang(prompt, params):
    await asyncio.sleep(5)
    return NORMALIZED


def _task(scripted_client, handler):
    client = scripted_client({StageName.NORMALIZE_IDEA.value: handler})
    return StageTask(NORMALIZE_SPEC, client, backoff_seconds=0.0), client


@pytest.mark.asyncio
async def test_valid_payload_is_returned_in_camel_case(scripted_client, sample_idea) -> None:
    task, client = _task(scripted_client, _sequence(NORMALIZED))

    outcome = await task.run(StageContext(idea_text=sample_idea))

    assert outcome.succeeded
    assert outcome.payload == NORMALIZED
    assert outcome.attempts == 1
    assert "BUSINESS IDEA TO ANALYZE" in client.prompts["normalize_idea"][0].user_prompt


@pytest.mark.asyncio
async def test_wrong_shape_gets_one_repair(scripted_client, sample_idea) -> None:
    task, client = _task(scripted_client, _sequence({"title": "x"}, NORMALIZED))

    outcome = await task.run(StageContext(idea_text=sample_idea))

    assert outcome.succeeded
    assert outcome.attempts == 2
    repair = client.prompts["normalize_idea"][1].user_prompt
    assert "PREVIOUS ATTEMPT HAD ERRORS" in repair
    assert "description" in repair


@pytest.mark.asyncio
async def test_wrong_shape_twice_is_not_retried(scripted_client, sample_idea) -> None:
    task, client = _task(scripted_client, _sequence({"title": "x"}))

    outcome = await task.run(StageContext(idea_text=sample_idea))

    assert not outcome.succeeded
    assert isinstance(outcome.error, SchemaValidationError)
    assert outcome.error.details
    assert client.call_counts["normalize_idea"] == 2


@pytest.mark.asyncio
async def test_unparseable_reply_is_repaired(scripted_client, sample_idea) -> None:
    bad_json = SchemaValidationError("Model response is not valid JSON", stage="normalize_idea")
    task, _ = _task(scripted_client, _sequence(bad_json, NORMALIZED))

    outcome = await task.run(StageContext(idea_text=sample_idea))

    assert outcome.succeeded
    assert outcome.attempts == 2


@pytest.mark.asyncio
async def test_provider_errors_are_retried_within_budget(scripted_client, sample_idea) -> None:
    flaky = ProviderError("rate limited")
    task, _ = _task(scripted_client, _sequence(flaky, flaky, NORMALIZED))

    outcome = await task.run(StageContext(idea_text=sample_idea))

    assert outcome.succeeded
    assert outcome.attempts == 3


@pytest.mark.asyncio
async def test_provider_errors_exhaust_budget(scripted_client, sample_idea) -> None:
    task, client = _task(scripted_client, _sequence(ProviderError("down")))

    outcome = await task.run(StageContext(idea_text=sample_idea))

    assert not outcome.succeeded
    assert outcome.error.kind == "ProviderError"
    assert client.call_counts["normalize_idea"] == NORMALIZE_SPEC.retry_budget + 1


@pytest.mark.asyncio
async def test_timeouts_count_as_provider_errors(scripted_client, sample_idea) -> None:
    task, client = _task(scripted_client, _hang)

    outcome = await task.run(StageContext(idea_text=sample_idea))

    assert not outcome.succeeded
    assert outcome.error.kind == "StageTimeoutError"
    assert outcome.error.stage == "normalize_idea"
    assert outcome.attempts == 3
    assert client.limiter.in_flight == 0


def test_parse_structured_response_strips_fences() -> None:
    assert parse_structured_response('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_structured_response(' {"a": 1} ') == {"a": 1}


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", "```\n```"])
def test_parse_structured_response_rejects_non_objects(raw) -> None:
    with pytest.raises(SchemaValidationError):
        parse_structured_response(raw, stage="competition")


def test_default_waves_group_independent_stages() -> None:
    waves = [[spec.name for spec in wave] for wave in execution_waves(DEFAULT_STAGES)]

    assert waves == [
        [StageName.NORMALIZE_IDEA],
        [StageName.MARKET_RESEARCH],
        [StageName.MARKET_SIZING],
        [StageName.COMPETITION, StageName.FEASIBILITY],
        [StageName.STRATEGY],
        [StageName.REPORT],
    ]


def test_sequential_waves_hold_one_stage_each() -> None:
    waves = execution_waves(DEFAULT_STAGES, parallel=False)

    assert [wave[0].name for wave in waves] == list(StageName)
    assert all(len(wave) == 1 for wave in waves)


def test_unknown_dependency_is_rejected() -> None:
    with pytest.raises(ValueError, match="unknown"):
        execution_waves(DEFAULT_STAGES[1:])


def test_dependency_cycle_is_rejected() -> None:
    normalize = replace(DEFAULT_STAGES[0], depends_on=frozenset({StageName.MARKET_RESEARCH}))

    with pytest.raises(ValueError, match="cycle"):
        execution_waves([normalize, DEFAULT_STAGES[1]])


def test_build_stages_applies_budgets() -> None:
    stages = build_stages(timeout_seconds=3.0, retry_budget=0)

    assert all(spec.timeout_seconds == 3.0 and spec.retry_budget == 0 for spec in stages)
    assert [spec.is_critical for spec in stages] == [True] + [False] * 6


def test_stage_definitions_are_in_ordinal_order() -> None:
    definitions = list_stage_definitions()

    assert [item.id for item in definitions] == list(StageName)
    assert definitions[3].depends_on == [
        StageName.NORMALIZE_IDEA,
        StageName.MARKET_RESEARCH,
        StageName.MARKET_SIZING,
    ]


def _reporting_task(scripted_client, handler):
    messages = []

    async def collect(message: str) -> None:
        messages.append(message)

    client = scripted_client({StageName.NORMALIZE_IDEA.value: handler})
    return StageTask(NORMALIZE_SPEC, client, backoff_seconds=0.0, on_progress=collect), messages


@pytest.mark.asyncio
async def test_retries_and_repairs_are_reported(scripted_client, sample_idea) -> None:
    flaky = ProviderError("rate limited")
    task, messages = _reporting_task(scripted_client, _sequence(flaky, {"title": "x"}, NORMALIZED))

    outcome = await task.run(StageContext(idea_text=sample_idea))

    assert outcome.succeeded
    assert outcome.attempts == 3
    assert outcome.latency_ms >= 0
    assert len(messages) == 2
    assert messages[0].endswith("retrying (attempt 2 of 3)")
    assert "requesting a correction" in messages[1]


@pytest.mark.asyncio
async def test_clean_run_reports_nothing(scripted_client, sample_idea) -> None:
    task, messages = _reporting_task(scripted_client, _sequence(NORMALIZED))

    outcome = await task.run(StageContext(idea_text=sample_idea))

    assert outcome.succeeded
    assert messages == []
