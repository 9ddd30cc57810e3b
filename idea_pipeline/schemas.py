"""Pydantic models and enums for the idea pipeline API."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApiModel(BaseModel):
    """camelCase JSON on the wire, snake_case attributes in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StageName(str, Enum):
    """Enumerate the pipeline stages."""

    NORMALIZE_IDEA = "normalize_idea"
    MARKET_RESEARCH = "market_research"
    MARKET_SIZING = "market_sizing"
    COMPETITION = "competition"
    FEASIBILITY = "feasibility"
    STRATEGY = "strategy"
    REPORT = "report"

    @property
    def order(self) -> int:
        """Return the ordinal position of the stage in the pipeline."""
        stage_order = {
            StageName.NORMALIZE_IDEA: 1,
            StageName.MARKET_RESEARCH: 2,
            StageName.MARKET_SIZING: 3,
            StageName.COMPETITION: 4,
            StageName.FEASIBILITY: 5,
            StageName.STRATEGY: 6,
            StageName.REPORT: 7,
        }
        return stage_order[self]

    @property
    def report_field(self) -> str:
        """Attribute of :class:`AggregatedReport` that carries this stage."""
        if self is StageName.NORMALIZE_IDEA:
            return "normalized_idea"
        return self.value


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


class Criticality(str, Enum):
    CRITICAL = "critical"
    BEST_EFFORT = "best_effort"


class EventKind(str, Enum):
    STARTED = "started"
    PROGRESSED = "progressed"
    COMPLETED = "completed"
    FAILED = "failed"


class StageResult(ApiModel):
    """Outcome of one stage as merged into a job."""

    payload: Dict[str, Any] = Field(default_factory=dict)
    succeeded: bool
    placeholder: bool = False
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: int = 0
    latency_ms: float = 0.0
    timestamp: datetime = Field(default_factory=utcnow)


class Event(ApiModel):
    """Stage or job transition pushed to live subscribers.

    ``stage_name`` is ``None`` for job-scope events.
    """

    job_id: str
    stage_name: Optional[StageName] = None
    kind: EventKind
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    payload: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage_name is None and self.kind in (EventKind.COMPLETED, EventKind.FAILED)


class Job(ApiModel):
    """Registry record for one end-to-end pipeline run."""

    id: str
    idea_text: str
    normalized_idea: Optional[Dict[str, Any]] = None
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    current_stage: Optional[StageName] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    terminal_error: Optional[str] = None
    stage_results: Dict[StageName, StageResult] = Field(default_factory=dict)
    events: List[Event] = Field(default_factory=list)
    collected_at: Optional[datetime] = None
    version: int = 0


class PopulatedSection(ApiModel):
    state: Literal["populated"] = "populated"
    data: Dict[str, Any]


class PendingSection(ApiModel):
    state: Literal["pending"] = "pending"


class UnavailableSection(ApiModel):
    """Placeholder for a stage that ran and could not produce data."""

    state: Literal["unavailable"] = "unavailable"
    reason: str = "This analysis could not be completed."


Section = Annotated[
    Union[PopulatedSection, PendingSection, UnavailableSection],
    Field(discriminator="state"),
]


class AggregatedReport(ApiModel):
    """Canonical merged report; one section per pipeline stage."""

    normalized_idea: Section = Field(default_factory=PendingSection)
    market_research: Section = Field(default_factory=PendingSection)
    market_sizing: Section = Field(default_factory=PendingSection)
    competition: Section = Field(default_factory=PendingSection)
    feasibility: Section = Field(default_factory=PendingSection)
    strategy: Section = Field(default_factory=PendingSection)
    report: Section = Field(default_factory=PendingSection)


class JobCreateRequest(ApiModel):
    """Payload for submitting an idea."""

    idea_text: str = Field(
        ...,
        min_length=10,
        description="Short business idea description supplied by the user.",
    )


class JobCreateResponse(ApiModel):
    job_id: str


class JobSnapshotResponse(ApiModel):
    """Pollable snapshot of a job."""

    job_id: str
    status: JobStatus
    progress: int
    current_stage: Optional[StageName] = None
    results: AggregatedReport
    error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class StageDefinition(ApiModel):
    """Expose metadata that describes a stage to the UI."""

    id: StageName
    label: str
    description: str
    criticality: Criticality
    depends_on: List[StageName]


class AnalysisResponse(ApiModel):
    """Compatibility read keyed by analysis id; mirrors the job snapshot."""

    analysis_id: str
    status: JobStatus
    results: AggregatedReport


class UsageMetric(ApiModel):
    """Inference usage for one stage on one model."""

    stage: str
    model: str
    calls: int
    failures: int
    avg_latency_ms: float
    total_tokens: int


class MetricsResponse(ApiModel):
    """Process-wide inference and job counters."""

    total_calls: int
    in_flight: int
    peak_in_flight: int
    max_concurrency: int
    jobs_by_status: Dict[JobStatus, int]
    stage_latency_ms: Dict[StageName, float]
    usage: List[UsageMetric]
