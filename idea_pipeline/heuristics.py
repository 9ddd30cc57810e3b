"""Offline inference backend that mimics the stage outputs without a provider.

Used when no API key is configured so the service, the UI and the test-suite
can exercise the full pipeline deterministically.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Any, Callable, Dict, List, Mapping

from .errors import ProviderError
from .llm import CompletionParams, ConcurrencyLimiter, InferenceClient, PromptSpec

STOP_WORDS = {
    "and",
    "the",
    "for",
    "with",
    "that",
    "this",
    "from",
    "into",
    "your",
    "their",
    "about",
    "using",
    "entrepreneur",
    "startup",
    "business",
    "solution",
    "platform",
    "create",
    "building",
    "make",
    "service",
    "help",
    "helps",
    "users",
    "customer",
    "customers",
    "idea",
    "app",
}

_IDEA_MARKER = re.compile(r"BUSINESS IDEA TO ANALYZE:\s*(.+?)(?:\n\s*\n|$)", re.DOTALL)
_KEYWORDS_BLOCK = re.compile(r'"keywords":\s*\[(.*?)\]', re.DOTALL)
_QUOTED = re.compile(r'"([^"]+)"')


def _extract_keywords(*texts: str, max_terms: int = 5) -> List[str]:
    """Extract the top keywords from the provided text fragments."""

    joined = " ".join(part for part in texts if part)
    words = re.findall(r"[a-zA-Z][a-zA-Z0-9-]+", joined.lower())
    counts: Counter[str] = Counter(word for word in words if word not in STOP_WORDS and len(word) > 2)
    most_common = [word for word, _ in counts.most_common(max_terms)]

    if not most_common:
        seed = re.findall(r"[a-zA-Z]+", joined.lower())
        if seed:
            most_common = seed[:max_terms]
    if not most_common:
        most_common = ["innovation", "growth", "launch"]
    return most_common


def _prompt_keywords(prompt_text: str) -> List[str]:
    """Prefer keywords from the normalized idea, then the raw idea text."""

    block = _KEYWORDS_BLOCK.search(prompt_text)
    if block:
        keywords = [kw.strip().lower() for kw in _QUOTED.findall(block.group(1)) if kw.strip()]
        if keywords:
            return keywords[:5]
    idea = _IDEA_MARKER.search(prompt_text)
    return _extract_keywords(idea.group(1) if idea else prompt_text)


def _idea_text(prompt_text: str) -> str:
    idea = _IDEA_MARKER.search(prompt_text)
    return " ".join(idea.group(1).split()) if idea else ""


def _titleize(word: str) -> str:
    """Return a simple title-case transformation."""

    return word.replace("-", " ").title()


def _scale_currency(value: float) -> str:
    """Format a numeric value into a friendly dollar string."""

    if value >= 1_000_000_000:
        return f"${value / 1_000_000_000:.1f}B"
    if value >= 1_000_000:
        return f"${value / 1_000_000:.1f}M"
    if value >= 1_000:
        return f"${value / 1_000:.1f}K"
    return f"${int(value)}"


def _first_sentence(text: str) -> str:
    """Extract the first sentence-like chunk from text for summary use."""

    snippet = text.strip().split("\n", 1)[0]
    parts = re.split(r"[.!?]", snippet)
    return f"{parts[0].strip()}." if parts and parts[0].strip() else snippet.strip()


def _seed(keywords: List[str]) -> int:
    return sum(ord(char) for char in "".join(keywords))


def _at(keywords: List[str], index: int, fallback: str) -> str:
    return _titleize(keywords[index]) if len(keywords) > index else fallback


# ---------------------------------------------------------------------------
# Stage generators
# ---------------------------------------------------------------------------


def _generate_normalized_idea(prompt_text: str, keywords: List[str]) -> Dict[str, Any]:
    idea = _idea_text(prompt_text)
    focus = _at(keywords, 0, "Innovation")
    description = _first_sentence(idea) if idea else f"A venture built around {focus.lower()}."
    if len(description) < 10:
        description = f"A venture built around {focus.lower()} for underserved users."
    return {
        "title": f"{focus} {_at(keywords, 1, 'Growth')} Venture",
        "description": description,
        "industry": f"{focus} technology",
        "targetAudience": f"{_at(keywords, 1, focus)} early adopters",
        "keyFeatures": [f"{_titleize(keyword)}-driven core experience" for keyword in keywords[:3]],
        "keywords": list(keywords),
    }


def _generate_market_research(prompt_text: str, keywords: List[str]) -> Dict[str, Any]:
    base = 120_000_000 + _seed(keywords) * 250_000
    focus = _at(keywords, 0, "Innovation")
    return {
        "marketSize": {
            "currentSize": _scale_currency(base),
            "growthRate": f"{8 + _seed(keywords) % 9}% CAGR",
            "projectedSize": _scale_currency(base * 1.6),
        },
        "trends": [
            {
                "name": f"{_titleize(keyword)} adoption",
                "description": f"Buyers are moving {keyword} workflows to self-serve tooling.",
                "impact": "Expands the reachable market for focused entrants.",
            }
            for keyword in keywords[:3]
        ],
        "customerNeeds": [
            {
                "need": f"Reliable {focus.lower()} outcomes",
                "painPoint": "Existing options are fragmented and slow to set up.",
            }
        ],
        "confidence": 55,
        "summary": f"Demand for {focus.lower()} solutions is growing steadily with room for a focused entrant.",
    }


def _generate_market_sizing(prompt_text: str, keywords: List[str]) -> Dict[str, Any]:
    tam = 2_000_000_000 + _seed(keywords) * 1_000_000
    focus = _at(keywords, 0, "Innovation")

    def estimate(value: float, calculation: str) -> Dict[str, Any]:
        return {
            "value": _scale_currency(value),
            "calculation": calculation,
            "assumptions": [f"{focus} spend continues to grow at the observed rate."],
        }

    return {
        "tam": estimate(tam, f"Global spend on {focus.lower()} tooling."),
        "sam": estimate(tam * 0.25, "Segments reachable through digital channels."),
        "som": estimate(tam * 0.02, "Share obtainable within three years by a seed-stage team."),
        "methodology": "top-down",
        "confidence": 50,
    }


def _generate_competition(prompt_text: str, keywords: List[str]) -> Dict[str, Any]:
    competitors = [
        {
            "name": f"{_titleize(keyword)} Labs",
            "description": f"Established provider of {keyword} workflows.",
            "strengths": ["Incumbent trust and distribution"],
            "weaknesses": ["Slow innovation cadence"],
            "threat": "Medium" if index else "High",
        }
        for index, keyword in enumerate(keywords[:3])
    ]
    return {
        "competitors": competitors,
        "differentiationOpportunities": [
            f"Own the {_at(keywords, 1, 'onboarding').lower()} experience end to end.",
            "Price on measured outcomes rather than seats.",
        ],
        "confidence": 50,
        "summary": f"The {_at(keywords, 0, 'core').lower()} space has incumbents but no dominant focused player.",
    }


def _generate_feasibility(prompt_text: str, keywords: List[str]) -> Dict[str, Any]:
    score = 5 + _seed(keywords) % 4

    def dimension(explanation: str, risk: str) -> Dict[str, Any]:
        return {"score": score, "explanation": explanation, "risks": [risk]}

    return {
        "technical": dimension("Buildable with commodity cloud and AI services.", "Data quality in early pilots."),
        "operational": dimension("A lean team can run onboarding manually at first.", "Support load at scale."),
        "financial": dimension("Seed funding covers 18 months of runway.", "CAC payback longer than planned."),
        "regulatory": dimension("No licensing required for the core offering.", "Privacy obligations for user data."),
        "overallScore": float(score),
        "summary": f"Feasible for a seed-stage team focused on {_at(keywords, 0, 'the core').lower()}.",
    }


def _generate_strategy(prompt_text: str, keywords: List[str]) -> Dict[str, Any]:
    focus = _at(keywords, 0, "Innovation")
    return {
        "goToMarket": {
            "initialTargetSegment": f"{focus} teams at small and mid-sized companies",
            "valueProposition": f"Faster {focus.lower()} outcomes without heavy setup.",
            "channels": ["Founder-led sales", "Content marketing", "Partner integrations"],
        },
        "monetization": {
            "recommendedModel": "Subscription",
            "pricingStrategy": "Tiered plans with a proof-of-value pilot.",
            "revenueStreams": ["Subscriptions", "Onboarding services"],
        },
        "growthLevers": [f"Case studies featuring {focus.lower()} wins", "Referral incentives"],
        "keyMetrics": ["Activation rate", "Net revenue retention", "CAC payback"],
        "summary": f"Lead with a focused {focus.lower()} wedge and expand through partners.",
    }


def _generate_report(prompt_text: str, keywords: List[str]) -> Dict[str, Any]:
    focus = _at(keywords, 0, "Innovation")
    return {
        "overallScore": float(55 + _seed(keywords) % 30),
        "recommendation": f"Validate demand for {focus.lower()} with a paid pilot before building further.",
        "keyInsights": [
            f"{focus} demand is growing.",
            "Incumbents leave room for a focused entrant.",
        ],
        "nextSteps": ["Interview 20 target customers", "Ship a concierge MVP", "Run a pricing test"],
    }


GeneratorFn = Callable[[str, List[str]], Dict[str, Any]]

GENERATORS: Dict[str, GeneratorFn] = {
    "normalize_idea": _generate_normalized_idea,
    "market_research": _generate_market_research,
    "market_sizing": _generate_market_sizing,
    "competition": _generate_competition,
    "feasibility": _generate_feasibility,
    "strategy": _generate_strategy,
    "report": _generate_report,
}


class HeuristicInferenceClient(InferenceClient):
    """Deterministic keyword-driven backend keyed on the stage tag."""

    def __init__(self, limiter: ConcurrencyLimiter | None = None) -> None:
        super().__init__(limiter)

    def model_name(self, params: CompletionParams) -> str:
        return "heuristic"

    async def _complete(
        self,
        prompt: PromptSpec,
        schema_hint: Mapping[str, Any],
        params: CompletionParams,
    ) -> Dict[str, Any]:
        generator = GENERATORS.get(params.stage or "")
        if generator is None:
            raise ProviderError(f"No heuristic generator for stage {params.stage!r}", stage=params.stage)
        return generator(prompt.user_prompt, _prompt_keywords(prompt.user_prompt))
