"""Idea storage collaborator: the one place reports leave the core."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict

from .schemas import AggregatedReport

logger = logging.getLogger(__name__)


class IdeaStorage(ABC):
    """Receives the final report once per job."""

    @abstractmethod
    async def save(self, job_id: str, report: AggregatedReport) -> None:
        """Persist *report* for *job_id*."""


class InMemoryIdeaStorage(IdeaStorage):
    """Keeps reports in a dict; the default when no external store is wired."""

    def __init__(self) -> None:
        self.reports: Dict[str, AggregatedReport] = {}

    async def save(self, job_id: str, report: AggregatedReport) -> None:
        self.reports[job_id] = report.model_copy(deep=True)
        logger.debug("Stored report for job %s", job_id)
