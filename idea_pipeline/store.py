"""Job record stores keyed by job id, with optimistic version checks."""

from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List

from .errors import JobNotFoundError, RegistryWriteConflict
from .schemas import Job

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Persistence backend for :class:`~idea_pipeline.registry.JobRegistry`."""

    @abstractmethod
    def load(self, job_id: str) -> Job:
        """Return an independent copy of the stored job or raise ``JobNotFoundError``."""

    @abstractmethod
    def save(self, job: Job, expected_version: int | None) -> None:
        """Write *job*.

        ``expected_version`` is the version the caller read; ``None`` means the
        job must not exist yet. Raises ``RegistryWriteConflict`` on mismatch.
        """

    @abstractmethod
    def delete(self, job_id: str) -> None:
        """Remove a job; unknown ids are ignored."""

    @abstractmethod
    def ids(self) -> List[str]:
        """Return every stored job id."""

    def exists(self, job_id: str) -> bool:
        try:
            self.load(job_id)
        except JobNotFoundError:
            return False
        return True


def _check_version(job_id: str, current: int | None, expected: int | None) -> None:
    if current != expected:
        raise RegistryWriteConflict(
            f"Job {job_id} is at version {current}, writer expected {expected}"
        )


class InMemoryJobStore(JobStore):
    """Process-local store."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}

    def load(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job.model_copy(deep=True)

    def save(self, job: Job, expected_version: int | None) -> None:
        current = self._jobs.get(job.id)
        _check_version(job.id, current.version if current else None, expected_version)
        self._jobs[job.id] = job.model_copy(deep=True)

    def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def ids(self) -> List[str]:
        return list(self._jobs)


class JsonFileJobStore(JobStore):
    """One JSON document per job in a directory; survives restarts."""

    def __init__(self, directory: str | os.PathLike) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or "\\" in job_id or job_id.startswith("."):
            raise JobNotFoundError(f"Invalid job id {job_id!r}")
        return self.directory / f"{job_id}.json"

    def load(self, job_id: str) -> Job:
        path = self._path(job_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise JobNotFoundError(f"Job {job_id} not found") from exc
        return Job.model_validate_json(raw)

    def save(self, job: Job, expected_version: int | None) -> None:
        path = self._path(job.id)
        try:
            current = Job.model_validate_json(path.read_text(encoding="utf-8")).version
        except FileNotFoundError:
            current = None
        _check_version(job.id, current, expected_version)

        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{job.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(job.model_dump_json())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, job_id: str) -> None:
        try:
            self._path(job_id).unlink(missing_ok=True)
        except JobNotFoundError:
            logger.debug("Ignoring delete for invalid job id %r", job_id)

    def ids(self) -> List[str]:
        return sorted(path.stem for path in self.directory.glob("*.json"))
