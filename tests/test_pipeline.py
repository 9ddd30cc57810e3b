from __future__ import annotations

import asyncio

import pytest

from idea_pipeline.aggregate import aggregate
from idea_pipeline.errors import PipelineError, ProviderError
from idea_pipeline.heuristics import GENERATORS, _prompt_keywords
from idea_pipeline.pipeline import StageDecision, decide, payload_excerpt
from idea_pipeline.schemas import (
    EventKind,
    JobStatus,
    PendingSection,
    PopulatedSection,
    StageName,
    UnavailableSection,
)
from idea_pipeline.stages import DEFAULT_STAGES, StageOutcome
from idea_pipeline.storage import InMemoryIdeaStorage
from idea_pipeline.store import InMemoryJobStore

DOWNSTREAM = [stage for stage in StageName if stage is not StageName.NORMALIZE_IDEA]


async def _wrong_shape(prompt, params):
    return {"unexpected": "shape"}


async def _provider_down(prompt, params):
    raise ProviderError("upstream unavailable", stage=params.stage)


async def _hang(prompt, params):
    await asyncio.sleep(5)
    return {}


class RecordingStore(InMemoryJobStore):
    """Remembers every (status, progress) pair written."""

    def __init__(self) -> None:
        super().__init__()
        self.writes = []

    def save(self, job, expected_version):
        super().save(job, expected_version)
        self.writes.append((job.status, job.progress))


class BrokenStorage(InMemoryIdeaStorage):
    async def save(self, job_id, report):
        raise RuntimeError("disk full")


@pytest.mark.parametrize(
    ("criticality_index", "succeeded", "expected"),
    [
        (0, True, StageDecision.ADVANCE),
        (0, False, StageDecision.ABORT),
        (1, True, StageDecision.ADVANCE),
        (1, False, StageDecision.ABSORB),
    ],
)
def test_decide_follows_failure_policy(criticality_index, succeeded, expected) -> None:
    spec = DEFAULT_STAGES[criticality_index]
    outcome = StageOutcome(succeeded=succeeded, error=None if succeeded else PipelineError("boom"))

    assert decide(spec, outcome) is expected


def test_payload_excerpt_keeps_a_few_scalars() -> None:
    excerpt = payload_excerpt({"summary": "x" * 500, "confidence": 70, "trends": [], "a": True, "b": "c"})

    assert excerpt is not None
    assert len(excerpt) == 3
    assert "trends" not in excerpt
    assert payload_excerpt({}) is None


@pytest.mark.asyncio
async def test_run_completes_every_stage(make_controller, sample_idea) -> None:
    controller = make_controller()

    job = await controller.run(sample_idea)

    assert job.status is JobStatus.COMPLETED
    assert job.progress == 100
    assert job.current_stage is None
    assert job.completed_at is not None
    assert job.terminal_error is None
    assert set(job.stage_results) == set(StageName)
    assert all(result.succeeded for result in job.stage_results.values())
    assert job.normalized_idea == job.stage_results[StageName.NORMALIZE_IDEA].payload
    assert all(controller.client.call_counts[stage.value] == 1 for stage in StageName)


@pytest.mark.asyncio
async def test_events_are_ordered_and_end_with_one_terminal(make_controller, sample_idea) -> None:
    controller = make_controller()

    job = await controller.run(sample_idea)

    first, last = job.events[0], job.events[-1]
    assert first.stage_name is None and first.kind is EventKind.STARTED
    assert last.is_terminal and last.kind is EventKind.COMPLETED
    assert sum(1 for event in job.events if event.is_terminal) == 1

    ordinals = [event.stage_name.order for event in job.events if event.stage_name is not None]
    assert ordinals == sorted(ordinals)
    for stage in StageName:
        kinds = [event.kind for event in job.events if event.stage_name is stage]
        assert kinds == [EventKind.STARTED, EventKind.COMPLETED]


@pytest.mark.asyncio
async def test_status_and_progress_only_move_forward(make_controller, sample_idea) -> None:
    store = RecordingStore()
    controller = make_controller(store=store)

    await controller.run(sample_idea)

    statuses = [status for status, _ in store.writes]
    progresses = [progress for _, progress in store.writes]
    rank = {JobStatus.PENDING: 0, JobStatus.RUNNING: 1, JobStatus.COMPLETED: 2}
    assert [rank[status] for status in statuses] == sorted(rank[status] for status in statuses)
    assert statuses[0] is JobStatus.PENDING and statuses[-1] is JobStatus.COMPLETED
    assert progresses == sorted(progresses)


@pytest.mark.asyncio
async def test_best_effort_schema_failure_leaves_section_unavailable(make_controller, sample_idea) -> None:
    controller = make_controller({StageName.COMPETITION.value: _wrong_shape})

    job = await controller.run(sample_idea)
    report = aggregate(job)

    assert job.status is JobStatus.COMPLETED
    assert isinstance(report.competition, UnavailableSection)
    result = job.stage_results[StageName.COMPETITION]
    assert result.placeholder and not result.succeeded
    assert result.error_kind == "SchemaValidationError"
    # One call plus one repair, no retries.
    assert controller.client.call_counts[StageName.COMPETITION.value] == 2

    strategy_prompt = controller.client.prompts[StageName.STRATEGY.value][0].user_prompt
    assert '"sourceUnavailable": true' in strategy_prompt
    assert isinstance(report.strategy, PopulatedSection)


@pytest.mark.asyncio
async def test_critical_failure_aborts_before_any_downstream_call(make_controller, sample_idea) -> None:
    controller = make_controller({StageName.NORMALIZE_IDEA.value: _provider_down})

    job = await controller.run(sample_idea)
    report = aggregate(job)

    assert job.status is JobStatus.FAILED
    assert job.terminal_error.startswith("Idea Normalization failed")
    assert controller.client.call_counts[StageName.NORMALIZE_IDEA.value] == 3
    assert all(controller.client.call_counts[stage.value] == 0 for stage in DOWNSTREAM)
    assert isinstance(report.normalized_idea, UnavailableSection)
    assert all(isinstance(getattr(report, stage.report_field), PendingSection) for stage in DOWNSTREAM)
    assert job.events[-1].kind is EventKind.FAILED and job.events[-1].is_terminal


@pytest.mark.asyncio
async def test_market_research_timeout_is_absorbed(make_controller, sample_idea) -> None:
    controller = make_controller({StageName.MARKET_RESEARCH.value: _hang}, stage_timeout_seconds=0.05)

    job = await controller.run(sample_idea)
    report = aggregate(job)

    assert job.status is JobStatus.COMPLETED
    assert isinstance(report.market_research, UnavailableSection)
    assert job.stage_results[StageName.MARKET_RESEARCH].error_kind == "StageTimeoutError"
    assert controller.client.call_counts[StageName.MARKET_RESEARCH.value] == 3
    for stage in StageName:
        if stage is not StageName.MARKET_RESEARCH:
            assert isinstance(getattr(report, stage.report_field), PopulatedSection), stage
    assert controller.client.limiter.in_flight == 0


@pytest.mark.asyncio
async def test_malformed_normalization_fails_the_job(make_controller, sample_idea) -> None:
    controller = make_controller({StageName.NORMALIZE_IDEA.value: _wrong_shape})

    job = await controller.run(sample_idea)
    report = aggregate(job)

    assert job.status is JobStatus.FAILED
    assert controller.client.call_counts[StageName.NORMALIZE_IDEA.value] == 2
    assert controller.client.call_counts[StageName.MARKET_RESEARCH.value] == 0
    assert not any(isinstance(getattr(report, stage.report_field), PopulatedSection) for stage in StageName)
    assert job.progress < 100


@pytest.mark.asyncio
async def test_concurrent_jobs_respect_the_limiter(make_controller, sample_idea) -> None:
    controller = make_controller(limit=2, delay=0.01)

    jobs = await asyncio.gather(*(controller.run(sample_idea) for _ in range(4)))

    assert all(job.status is JobStatus.COMPLETED for job in jobs)
    assert len({job.id for job in jobs}) == 4
    assert controller.client.limiter.peak_in_flight == 2
    assert controller.client.limiter.in_flight == 0


@pytest.mark.asyncio
async def test_sequential_mode_completes(make_controller, sample_idea) -> None:
    controller = make_controller(parallel_stages=False)

    job = await controller.run(sample_idea)

    assert job.status is JobStatus.COMPLETED
    assert job.progress == 100


@pytest.mark.asyncio
async def test_report_is_delivered_once_and_marked_collected(make_controller, sample_idea) -> None:
    storage = InMemoryIdeaStorage()
    controller = make_controller(storage=storage)

    job = await controller.run(sample_idea)

    assert list(storage.reports) == [job.id]
    assert storage.reports[job.id] == aggregate(job)
    assert job.collected_at is not None


@pytest.mark.asyncio
async def test_storage_failure_does_not_change_job_status(make_controller, sample_idea) -> None:
    controller = make_controller(storage=BrokenStorage())

    job = await controller.run(sample_idea)

    assert job.status is JobStatus.COMPLETED
    assert job.collected_at is None


@pytest.mark.asyncio
async def test_job_timeout_fails_the_job(make_controller, sample_idea) -> None:
    controller = make_controller(delay=0.05, job_timeout_seconds=0.1)

    job = await controller.run(sample_idea)

    assert job.status is JobStatus.FAILED
    assert "time budget" in job.terminal_error
    assert job.events[-1].kind is EventKind.FAILED
    assert sum(1 for event in job.events if event.is_terminal) == 1


@pytest.mark.asyncio
async def test_submit_runs_in_background(make_controller, sample_idea) -> None:
    controller = make_controller()

    job = await controller.submit(sample_idea)
    assert job.status is JobStatus.PENDING

    await controller.join()

    assert controller.registry.get(job.id).status is JobStatus.COMPLETED
    assert controller.active_jobs == 0


@pytest.mark.asyncio
async def test_shutdown_fails_in_flight_jobs(make_controller, sample_idea) -> None:
    controller = make_controller(delay=1.0)

    job = await controller.submit(sample_idea)
    await asyncio.sleep(0.05)
    await controller.shutdown()

    stored = controller.registry.get(job.id)
    assert stored.status is JobStatus.FAILED
    assert stored.terminal_error == "Analysis was cancelled"


@pytest.mark.asyncio
async def test_blank_idea_is_rejected(make_controller) -> None:
    controller = make_controller()

    with pytest.raises(ValueError):
        await controller.run("   ")


def _fail_then_heuristic(failures: int, error: Exception):
    """Raise *error* for the first *failures* calls, then answer normally."""

    calls = {"count": 0}

    async def handler(prompt, params):
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error
        return GENERATORS[params.stage](prompt.user_prompt, _prompt_keywords(prompt.user_prompt))

    return handler


@pytest.mark.asyncio
async def test_waiting_for_a_limiter_slot_does_not_use_the_stage_timeout(make_controller, sample_idea) -> None:
    # Each job queues longer than the stage timeout while the provider itself is fast enough.
    controller = make_controller(limit=1, delay=0.05, stage_timeout_seconds=0.15, retry_budget=0)

    jobs = await asyncio.gather(*(controller.run(sample_idea) for _ in range(5)))

    assert [job.status for job in jobs] == [JobStatus.COMPLETED] * 5
    assert controller.client.call_counts[StageName.NORMALIZE_IDEA.value] == 5
    assert controller.client.limiter.peak_in_flight == 1


@pytest.mark.asyncio
async def test_shutdown_right_after_submit_fails_the_job(make_controller, sample_idea) -> None:
    controller = make_controller()

    job = await controller.submit(sample_idea)
    await controller.shutdown()

    stored = controller.registry.get(job.id)
    assert stored.status is JobStatus.FAILED
    assert stored.terminal_error == "Analysis was cancelled"
    assert [event.is_terminal for event in stored.events].count(True) == 1
    assert stored.events[-1].is_terminal
    assert controller.client.total_calls == 0


@pytest.mark.asyncio
async def test_unexpected_backend_error_in_best_effort_stage_is_absorbed(make_controller, sample_idea) -> None:
    async def socket_reset(prompt, params):
        raise RuntimeError("socket reset")

    controller = make_controller({StageName.COMPETITION.value: socket_reset})

    job = await controller.run(sample_idea)

    assert job.status is JobStatus.COMPLETED
    result = job.stage_results[StageName.COMPETITION]
    assert not result.succeeded
    assert result.error_kind == "ProviderError"
    assert "socket reset" in result.error
    assert isinstance(aggregate(job).competition, UnavailableSection)


@pytest.mark.asyncio
async def test_retries_are_reported_as_progress_events(make_controller, sample_idea) -> None:
    controller = make_controller(
        {
            StageName.MARKET_RESEARCH.value: _fail_then_heuristic(2, ProviderError("rate limited")),
            StageName.FEASIBILITY.value: _fail_then_heuristic(1, ProviderError("rate limited")),
        }
    )

    job = await controller.run(sample_idea)

    def kinds(stage):
        return [event.kind for event in job.events if event.stage_name is stage]

    assert job.status is JobStatus.COMPLETED
    assert kinds(StageName.MARKET_RESEARCH) == [
        EventKind.STARTED,
        EventKind.PROGRESSED,
        EventKind.PROGRESSED,
        EventKind.COMPLETED,
    ]
    assert kinds(StageName.FEASIBILITY) == [EventKind.STARTED, EventKind.PROGRESSED, EventKind.COMPLETED]
    ordinals = [event.stage_name.order for event in job.events if event.stage_name is not None]
    assert ordinals == sorted(ordinals)


@pytest.mark.asyncio
async def test_metrics_report_usage_and_stage_latency(make_controller, sample_idea) -> None:
    controller = make_controller(delay=0.01)

    job = await controller.run(sample_idea)
    metrics = controller.metrics()

    assert all(result.latency_ms > 0 for result in job.stage_results.values())
    assert metrics.total_calls == len(StageName)
    assert metrics.jobs_by_status[JobStatus.COMPLETED] == 1
    assert metrics.in_flight == 0
    assert metrics.max_concurrency == 4
    assert list(metrics.stage_latency_ms) == list(StageName)
    assert {(item.stage, item.model) for item in metrics.usage} == {
        (stage.value, "heuristic") for stage in StageName
    }
    assert all(item.calls == 1 and item.failures == 0 and item.avg_latency_ms > 0 for item in metrics.usage)
