"""Pipeline controller: drives one job through the stage graph."""

from __future__ import annotations

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Sequence, Tuple

from .aggregate import aggregate
from .errors import CriticalStageFailure, JobTimeout
from .events import EventBroadcaster
from .llm import InferenceClient
from .registry import JobRegistry
from .schemas import (
    Event,
    EventKind,
    Job,
    JobStatus,
    MetricsResponse,
    StageName,
    StageResult,
    UsageMetric,
)
from .stages import (
    DEFAULT_STAGES,
    StageContext,
    StageOutcome,
    StageSpec,
    StageTask,
    execution_waves,
    unavailable_marker,
)
from .storage import IdeaStorage

logger = logging.getLogger(__name__)

EXCERPT_FIELDS = 3
EXCERPT_CHARS = 200
CANCELLED_MESSAGE = "Analysis was cancelled"


class StageDecision(str, Enum):
    """What the controller does with a stage outcome."""

    ADVANCE = "advance"
    ABSORB = "absorb"
    ABORT = "abort"


def decide(spec: StageSpec, outcome: StageOutcome) -> StageDecision:
    """Partial-failure policy: best-effort failures are absorbed, critical ones abort."""

    if outcome.succeeded:
        return StageDecision.ADVANCE
    if spec.is_critical:
        return StageDecision.ABORT
    return StageDecision.ABSORB


def payload_excerpt(payload: Dict[str, Any] | None) -> Dict[str, Any] | None:
    """A few scalar fields of a stage payload for the live feed."""

    if not payload:
        return None
    excerpt: Dict[str, Any] = {}
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, str):
            excerpt[key] = value if len(value) <= EXCERPT_CHARS else value[: EXCERPT_CHARS - 3] + "..."
        elif isinstance(value, (bool, int, float)):
            excerpt[key] = value
        if len(excerpt) == EXCERPT_FIELDS:
            break
    return excerpt or None


class PipelineController:
    """Run jobs through the fixed stage graph.

    Each job is one asyncio task. Stages in the same dependency wave run
    concurrently, but their results are merged and announced in ordinal
    order through the registry's single writer.
    """

    def __init__(
        self,
        registry: JobRegistry,
        broadcaster: EventBroadcaster,
        client: InferenceClient,
        *,
        stages: Sequence[StageSpec] = DEFAULT_STAGES,
        storage: IdeaStorage | None = None,
        job_timeout_seconds: float = 300.0,
        parallel_stages: bool = True,
        backoff_seconds: float = 1.0,
    ) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self.client = client
        self.stages = tuple(sorted(stages, key=lambda spec: spec.ordinal))
        self.storage = storage
        self.job_timeout_seconds = job_timeout_seconds
        self.backoff_seconds = backoff_seconds
        self._waves = execution_waves(self.stages, parallel=parallel_stages)
        self._tasks: Dict[asyncio.Task, str] = {}

    # -- public API ---------------------------------------------------------

    async def run(self, idea_text: str, job_id: str | None = None) -> Job:
        """Create a job and drive it to a terminal state."""

        job = await self._create(idea_text, job_id)
        return await self._drive(job.id)

    async def submit(self, idea_text: str, job_id: str | None = None) -> Job:
        """Create a job and drive it in the background; returns the pending job."""

        job = await self._create(idea_text, job_id)
        task = asyncio.create_task(self._drive(job.id), name=f"idea-job-{job.id}")
        self._tasks[task] = job.id
        task.add_done_callback(lambda done: self._tasks.pop(done, None))
        return job

    @property
    def active_jobs(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait for every background job to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel background jobs and finalize each one as failed."""

        tasks = dict(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        # A task cancelled before its first step never enters _drive.
        for job_id in tasks.values():
            await self._terminate(job_id, JobStatus.FAILED, CANCELLED_MESSAGE)

    def metrics(self) -> MetricsResponse:
        """Inference usage plus job counts and average stage latencies."""

        jobs = self.registry.snapshots()
        jobs_by_status = {status: 0 for status in JobStatus}
        latencies: Dict[StageName, List[float]] = {}
        for job in jobs:
            jobs_by_status[job.status] += 1
            for stage, result in job.stage_results.items():
                latencies.setdefault(stage, []).append(result.latency_ms)

        limiter = self.client.limiter
        usage = [
            UsageMetric(
                stage=stage,
                model=model,
                calls=stats.calls,
                failures=stats.failures,
                avg_latency_ms=round(stats.avg_latency_ms, 3),
                total_tokens=stats.total_tokens,
            )
            for (stage, model), stats in sorted(self.client.usage.items())
        ]
        return MetricsResponse(
            total_calls=self.client.total_calls,
            in_flight=limiter.in_flight,
            peak_in_flight=limiter.peak_in_flight,
            max_concurrency=limiter.limit,
            jobs_by_status=jobs_by_status,
            stage_latency_ms={
                stage: round(sum(values) / len(values), 3)
                for stage, values in sorted(latencies.items(), key=lambda item: item[0].order)
            },
            usage=usage,
        )

    # -- job lifecycle ------------------------------------------------------

    async def _create(self, idea_text: str, job_id: str | None) -> Job:
        if not idea_text or not idea_text.strip():
            raise ValueError("idea_text must be a non-empty string")
        return await self.registry.create(job_id or uuid.uuid4().hex, idea_text.strip())

    async def _drive(self, job_id: str) -> Job:
        try:
            await self.registry.mark_running(job_id)
            await self._publish(job_id, None, EventKind.STARTED, "Starting idea analysis")
            status, error = await asyncio.wait_for(self._execute(job_id), timeout=self.job_timeout_seconds)
        except asyncio.TimeoutError:
            timeout = JobTimeout(f"Analysis exceeded its {self.job_timeout_seconds:g}s time budget")
            logger.warning("Job %s timed out", job_id)
            status, error = JobStatus.FAILED, timeout.message
        except asyncio.CancelledError:
            await self._terminate(job_id, JobStatus.FAILED, CANCELLED_MESSAGE)
            raise
        except Exception as exc:
            logger.exception("Job %s crashed", job_id)
            status, error = JobStatus.FAILED, f"Analysis failed: {exc}"

        return await self._terminate(job_id, status, error)

    async def _execute(self, job_id: str) -> Tuple[JobStatus, str | None]:
        for wave in self._waves:
            job = self.registry.get(job_id)
            contexts = {spec.name: self._context_for(job, spec) for spec in wave}
            # Only the wave's first stage reports progress live; later stages
            # hold theirs until their turn in the ordinal merge.
            held: Dict[StageName, List[str]] = {spec.name: [] for spec in wave[1:]}

            first = wave[0]
            await self._start_stage(job_id, first)
            if len(wave) == 1:
                outcomes: List[StageOutcome] = [
                    await self._run_stage(first, contexts[first.name], self._live_progress(job_id, first))
                ]
            else:
                outcomes = list(
                    await asyncio.gather(
                        self._run_stage(first, contexts[first.name], self._live_progress(job_id, first)),
                        *(
                            self._run_stage(spec, contexts[spec.name], self._held_progress(held[spec.name]))
                            for spec in wave[1:]
                        ),
                    )
                )

            for index, (spec, outcome) in enumerate(zip(wave, outcomes)):
                if index:
                    await self._start_stage(job_id, spec)
                    for message in held[spec.name]:
                        await self._publish(job_id, spec.name, EventKind.PROGRESSED, message)
                decision = decide(spec, outcome)
                await self._merge(job_id, spec, outcome)
                if decision is StageDecision.ABORT:
                    reason = outcome.error.message if outcome.error else "unknown error"
                    failure = CriticalStageFailure(f"{spec.label} failed: {reason}", stage=spec.name.value)
                    logger.warning("Job %s aborted at critical stage %s", job_id, spec.name.value)
                    return JobStatus.FAILED, failure.message
        return JobStatus.COMPLETED, None

    async def _terminate(self, job_id: str, status: JobStatus, error: str | None) -> Job:
        """Finalize *job_id* unless it already is; a pending job passes through running."""

        job = self.registry.get(job_id)
        if job.status.is_terminal:
            return job
        if job.status is JobStatus.PENDING:
            await self.registry.mark_running(job_id)
        return await self._finish(job_id, status, error)

    async def _finish(self, job_id: str, status: JobStatus, error: str | None) -> Job:
        job = await self.registry.finalize(job_id, status, error)
        if status is JobStatus.COMPLETED:
            await self._publish(job_id, None, EventKind.COMPLETED, "Analysis complete")
        else:
            await self._publish(job_id, None, EventKind.FAILED, error or "Analysis failed")
        await self._deliver(job)
        return self.registry.get(job_id)

    async def _deliver(self, job: Job) -> None:
        if self.storage is None:
            return
        report = aggregate(job, self.stages)
        try:
            await self.storage.save(job.id, report)
        except Exception:
            logger.exception("Idea storage rejected the report for job %s", job.id)
            return
        await self.registry.mark_collected(job.id)

    # -- stages -------------------------------------------------------------

    def _context_for(self, job: Job, spec: StageSpec) -> StageContext:
        inputs: Dict[str, Dict[str, Any]] = {}
        for dependency in sorted(spec.depends_on, key=lambda name: name.order):
            result = job.stage_results.get(dependency)
            if result is not None and result.succeeded:
                inputs[dependency.value] = result.payload
            else:
                inputs[dependency.value] = unavailable_marker(dependency, result.error if result else None)
        return StageContext(idea_text=job.idea_text, inputs=inputs)

    def _live_progress(self, job_id: str, spec: StageSpec) -> Callable[[str], Awaitable[None]]:
        async def notify(message: str) -> None:
            await self._publish(job_id, spec.name, EventKind.PROGRESSED, message)

        return notify

    @staticmethod
    def _held_progress(buffer: List[str]) -> Callable[[str], Awaitable[None]]:
        async def hold(message: str) -> None:
            buffer.append(message)

        return hold

    async def _run_stage(
        self,
        spec: StageSpec,
        context: StageContext,
        on_progress: Callable[[str], Awaitable[None]],
    ) -> StageOutcome:
        task = StageTask(spec, self.client, backoff_seconds=self.backoff_seconds, on_progress=on_progress)
        return await task.run(context)

    async def _start_stage(self, job_id: str, spec: StageSpec) -> None:
        await self.registry.begin_stage(job_id, spec.name)
        await self._publish(job_id, spec.name, EventKind.STARTED, f"{spec.label} started")

    async def _merge(self, job_id: str, spec: StageSpec, outcome: StageOutcome) -> None:
        if outcome.succeeded:
            result = StageResult(
                payload=outcome.payload or {},
                succeeded=True,
                attempts=outcome.attempts,
                latency_ms=outcome.latency_ms,
            )
        else:
            message = outcome.error.message if outcome.error else "Stage failed"
            result = StageResult(
                payload=unavailable_marker(spec.name, message),
                succeeded=False,
                placeholder=True,
                error=message,
                error_kind=outcome.error.kind if outcome.error else None,
                attempts=outcome.attempts,
                latency_ms=outcome.latency_ms,
            )
        job = await self.registry.apply_stage_result(job_id, spec.name, result)

        if outcome.succeeded:
            await self._publish(
                job_id,
                spec.name,
                EventKind.COMPLETED,
                f"{spec.label} completed ({job.progress}%)",
                payload=payload_excerpt(outcome.payload),
            )
        else:
            await self._publish(job_id, spec.name, EventKind.FAILED, f"{spec.label} could not be completed")

    async def _publish(
        self,
        job_id: str,
        stage: StageName | None,
        kind: EventKind,
        message: str,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        event = Event(job_id=job_id, stage_name=stage, kind=kind, message=message, payload=payload)
        await self.broadcaster.publish(job_id, event)
