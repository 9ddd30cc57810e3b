"""Job registry: single source of truth for job state."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime
from typing import Callable, Dict, List

from .errors import IllegalTransitionError, JobAlreadyExistsError, JobNotFoundError, RegistryWriteConflict
from .schemas import ALLOWED_TRANSITIONS, Event, Job, JobStatus, StageName, StageResult, utcnow
from .store import InMemoryJobStore, JobStore

logger = logging.getLogger(__name__)

Mutation = Callable[[Job], None]


def _transition(job: Job, target: JobStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[job.status]:
        raise IllegalTransitionError(
            f"Job {job.id} cannot move from {job.status.value} to {target.value}"
        )
    job.status = target


class JobRegistry:
    """Serialize writes per job and serve lock-free snapshot reads.

    Every mutation for a job id runs under that job's lock and is written to
    the store with the version it was based on. A version conflict is retried
    from a fresh read.
    """

    max_write_attempts = 3

    def __init__(
        self,
        store: JobStore | None = None,
        *,
        total_stages: int = len(StageName),
        retention_seconds: float = 3600.0,
    ) -> None:
        self._store = store or InMemoryJobStore()
        self._locks: Dict[str, asyncio.Lock] = {}
        self.total_stages = total_stages
        self.retention_seconds = retention_seconds

    def _lock(self, job_id: str) -> asyncio.Lock:
        return self._locks.setdefault(job_id, asyncio.Lock())

    async def _mutate(self, job_id: str, mutation: Mutation) -> Job:
        async with self._lock(job_id):
            for attempt in range(1, self.max_write_attempts + 1):
                job = self._store.load(job_id)
                expected = job.version
                mutation(job)
                job.version = expected + 1
                try:
                    self._store.save(job, expected_version=expected)
                except RegistryWriteConflict as exc:
                    logger.warning(
                        "Write conflict on job %s (attempt %d/%d): %s",
                        job_id,
                        attempt,
                        self.max_write_attempts,
                        exc.message,
                    )
                    continue
                return job
        raise RegistryWriteConflict(f"Job {job_id} could not be written after {self.max_write_attempts} attempts")

    async def create(self, job_id: str, idea_text: str) -> Job:
        """Register a new pending job; the id must be unused."""

        async with self._lock(job_id):
            if self._store.exists(job_id):
                raise JobAlreadyExistsError(f"Job {job_id} already exists")
            job = Job(id=job_id, idea_text=idea_text)
            try:
                self._store.save(job, expected_version=None)
            except RegistryWriteConflict as exc:
                raise JobAlreadyExistsError(f"Job {job_id} already exists") from exc
        logger.info("Created job %s", job_id)
        return job.model_copy(deep=True)

    def get(self, job_id: str) -> Job:
        """Return an independent snapshot of the job."""

        return self._store.load(job_id)

    def snapshots(self) -> List[Job]:
        """Snapshots of every stored job; jobs evicted mid-scan are skipped."""

        jobs = []
        for job_id in self._store.ids():
            try:
                jobs.append(self._store.load(job_id))
            except JobNotFoundError:
                continue
        return jobs

    async def mark_running(self, job_id: str) -> Job:
        return await self._mutate(job_id, lambda job: _transition(job, JobStatus.RUNNING))

    async def begin_stage(self, job_id: str, stage: StageName) -> Job:
        def mutation(job: Job) -> None:
            if job.status is not JobStatus.RUNNING:
                raise IllegalTransitionError(f"Job {job.id} is {job.status.value}; cannot start {stage.value}")
            job.current_stage = stage

        return await self._mutate(job_id, mutation)

    async def apply_stage_result(self, job_id: str, stage: StageName, result: StageResult) -> Job:
        """Merge a stage result and recompute progress."""

        def mutation(job: Job) -> None:
            if job.status is not JobStatus.RUNNING:
                raise IllegalTransitionError(
                    f"Job {job.id} is {job.status.value}; cannot merge {stage.value}"
                )
            job.stage_results[stage] = result
            attempted = min(len(job.stage_results), self.total_stages)
            job.progress = max(job.progress, math.floor(100 * attempted / self.total_stages))
            job.current_stage = stage
            if stage is StageName.NORMALIZE_IDEA and result.succeeded:
                job.normalized_idea = dict(result.payload)

        return await self._mutate(job_id, mutation)

    async def finalize(self, job_id: str, status: JobStatus, error: str | None = None) -> Job:
        """Move a running job to its terminal status."""

        def mutation(job: Job) -> None:
            if not status.is_terminal:
                raise IllegalTransitionError(f"{status.value} is not a terminal status")
            _transition(job, status)
            job.completed_at = utcnow()
            job.terminal_error = error
            if status is JobStatus.COMPLETED:
                job.progress = 100
                job.current_stage = None

        job = await self._mutate(job_id, mutation)
        logger.info("Job %s finished as %s%s", job_id, status.value, f": {error}" if error else "")
        return job

    async def append_event(self, job_id: str, event: Event) -> Job:
        return await self._mutate(job_id, lambda job: job.events.append(event))

    async def mark_collected(self, job_id: str) -> Job:
        def mutation(job: Job) -> None:
            job.collected_at = utcnow()

        return await self._mutate(job_id, mutation)

    async def evict_expired(self, now: datetime | None = None) -> int:
        """Drop terminal jobs older than the retention window."""

        now = now or utcnow()
        evicted = 0
        for job_id in self._store.ids():
            async with self._lock(job_id):
                try:
                    job = self._store.load(job_id)
                except JobNotFoundError:
                    continue
                if not job.status.is_terminal or job.completed_at is None:
                    continue
                if (now - job.completed_at).total_seconds() <= self.retention_seconds:
                    continue
                self._store.delete(job_id)
                evicted += 1
                self._locks.pop(job_id, None)
                if job.collected_at is None:
                    logger.warning("Evicting job %s that was never collected", job_id)
        if evicted:
            logger.info("Evicted %d expired job(s)", evicted)
        return evicted
