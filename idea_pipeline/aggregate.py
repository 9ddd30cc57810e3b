"""Merge per-stage results into the canonical report shape."""

from __future__ import annotations

import copy
from typing import Dict, Sequence

from .schemas import AggregatedReport, Job, PendingSection, PopulatedSection, UnavailableSection
from .stages import DEFAULT_STAGES, StageSpec


def aggregate(job: Job, stages: Sequence[StageSpec] = DEFAULT_STAGES) -> AggregatedReport:
    """Build the report for *job*.

    Pure: reads only ``job.stage_results`` and returns new objects, so equal
    inputs always serialize to identical JSON.
    """

    sections: Dict[str, object] = {}
    for spec in sorted(stages, key=lambda item: item.ordinal):
        result = job.stage_results.get(spec.name)
        if result is None:
            section = PendingSection()
        elif result.succeeded:
            section = PopulatedSection(data=copy.deepcopy(result.payload))
        else:
            section = UnavailableSection(reason=f"{spec.label} could not be completed.")
        sections[spec.name.report_field] = section
    return AggregatedReport(**sections)
