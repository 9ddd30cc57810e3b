"""Fan-out of job events to live subscribers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import AsyncIterator, DefaultDict, Set

from .registry import JobRegistry
from .schemas import Event, EventKind, Job, JobStatus

logger = logging.getLogger(__name__)


def terminal_event_for(job: Job) -> Event:
    """Rebuild the job-scope terminal event from a terminal job's status."""

    if job.status is JobStatus.COMPLETED:
        kind, message = EventKind.COMPLETED, "Analysis complete"
    elif job.status is JobStatus.FAILED:
        kind, message = EventKind.FAILED, job.terminal_error or "Analysis failed"
    else:
        raise ValueError(f"Job {job.id} is not terminal ({job.status.value})")
    kwargs = {"timestamp": job.completed_at} if job.completed_at else {}
    return Event(job_id=job.id, kind=kind, message=message, **kwargs)


class EventBroadcaster:
    """Forward events to subscribers; the registry snapshot stays authoritative.

    Subscribers see events from the moment they subscribe. A subscriber that
    arrives after the job finished gets a single synthetic terminal event
    instead of a replay.
    """

    def __init__(self, registry: JobRegistry) -> None:
        self._registry = registry
        self._subscribers: DefaultDict[str, Set[asyncio.Queue]] = defaultdict(set)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, ()))

    async def publish(self, job_id: str, event: Event) -> None:
        """Append *event* to the job's log and hand it to live subscribers."""

        await self._registry.append_event(job_id, event)
        for queue in list(self._subscribers.get(job_id, ())):
            queue.put_nowait(event)
        logger.debug(
            "Published %s/%s for job %s",
            event.stage_name.value if event.stage_name else "job",
            event.kind.value,
            job_id,
        )

    async def subscribe(self, job_id: str) -> AsyncIterator[Event]:
        """Yield events for *job_id* until its terminal event.

        Raises ``JobNotFoundError`` for unknown jobs. Leaving the iterator
        early only unregisters the subscriber; the job keeps running.
        """

        queue: asyncio.Queue = asyncio.Queue()
        # Register before reading status so no terminal event can slip between.
        self._subscribers[job_id].add(queue)
        try:
            job = self._registry.get(job_id)
            if job.status.is_terminal:
                yield terminal_event_for(job)
                return
            while True:
                event = await queue.get()
                yield event
                if event.is_terminal:
                    return
        finally:
            subscribers = self._subscribers.get(job_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    self._subscribers.pop(job_id, None)
