"""Pydantic schemas for the structured payload each stage must return."""

from __future__ import annotations

from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Level = Literal["High", "Medium", "Low"]


class StageOutput(BaseModel):
    """Base class: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NormalizedIdea(StageOutput):
    title: str = Field(..., min_length=3, description="A concise title for the business idea (5-10 words).")
    description: str = Field(..., min_length=10, description="A clear description of the idea (1-3 sentences).")
    industry: str
    target_audience: str
    key_features: List[str] = Field(..., min_length=1, description="3-5 key features or value propositions.")
    keywords: List[str] = Field(..., min_length=1, description="5-8 relevant keywords.")


class MarketSizeSnapshot(StageOutput):
    current_size: str
    growth_rate: str
    projected_size: str


class MarketTrend(StageOutput):
    name: str
    description: str
    impact: str


class CustomerNeed(StageOutput):
    need: str
    pain_point: str


class MarketResearch(StageOutput):
    market_size: MarketSizeSnapshot
    trends: List[MarketTrend] = Field(..., min_length=1)
    customer_needs: List[CustomerNeed] = Field(..., min_length=1)
    confidence: int = Field(..., ge=0, le=100)
    summary: str


class MarketEstimate(StageOutput):
    value: str = Field(..., description="Dollar value.")
    calculation: str
    assumptions: List[str] = Field(..., min_length=1)


class MarketSizing(StageOutput):
    tam: MarketEstimate
    sam: MarketEstimate
    som: MarketEstimate
    methodology: Literal["top-down", "bottom-up", "hybrid"]
    confidence: int = Field(..., ge=0, le=100)


class Competitor(StageOutput):
    name: str
    description: str
    strengths: List[str] = Field(..., min_length=1)
    weaknesses: List[str] = Field(..., min_length=1)
    threat: Level


class CompetitionAnalysis(StageOutput):
    competitors: List[Competitor] = Field(..., min_length=1)
    differentiation_opportunities: List[str] = Field(..., min_length=1)
    confidence: int = Field(..., ge=0, le=100)
    summary: str


class FeasibilityDimension(StageOutput):
    score: int = Field(..., ge=1, le=10)
    explanation: str
    risks: List[str] = Field(default_factory=list)


class FeasibilityAssessment(StageOutput):
    technical: FeasibilityDimension
    operational: FeasibilityDimension
    financial: FeasibilityDimension
    regulatory: FeasibilityDimension
    overall_score: float = Field(..., ge=1, le=10)
    summary: str


class GoToMarket(StageOutput):
    initial_target_segment: str
    value_proposition: str
    channels: List[str] = Field(..., min_length=1)


class Monetization(StageOutput):
    recommended_model: str
    pricing_strategy: str
    revenue_streams: List[str] = Field(..., min_length=1)


class StrategyRecommendations(StageOutput):
    go_to_market: GoToMarket
    monetization: Monetization
    growth_levers: List[str] = Field(..., min_length=1)
    key_metrics: List[str] = Field(..., min_length=1)
    summary: str


class ValidationReport(StageOutput):
    overall_score: float = Field(..., ge=0, le=100)
    recommendation: str
    key_insights: List[str] = Field(..., min_length=1)
    next_steps: List[str] = Field(..., min_length=1)
