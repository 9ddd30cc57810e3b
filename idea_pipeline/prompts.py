"""Prompt builders for each pipeline stage."""

from __future__ import annotations

import json
from textwrap import dedent
from typing import Any, Callable, Dict, Iterable, Mapping

from .llm import PromptSpec

StageInputs = Mapping[str, Dict[str, Any]]
PromptBuilder = Callable[[str, StageInputs], PromptSpec]


def _pretty_json(data: Any, fallback: str) -> str:
    if not data:
        return fallback
    try:
        return json.dumps(data, indent=2, sort_keys=True)
    except TypeError:
        return json.dumps(json.loads(json.dumps(data, default=str)), indent=2, sort_keys=True)


def _context_block(inputs: StageInputs, names: Iterable[str]) -> str:
    sections = []
    for name in names:
        title = name.replace("_", " ").title()
        sections.append(f"{title}:\n{_pretty_json(inputs.get(name), 'Not available.')}")
    return "\n\n".join(sections)


def build_normalize_prompt(idea_text: str, inputs: StageInputs) -> PromptSpec:
    user_prompt = dedent(
        f"""
        BUSINESS IDEA TO ANALYZE:
        {idea_text.strip()}

        Extract the core concept: a concise title, a clear description, the
        primary industry, the primary target audience, 3-5 key features and
        5-8 keywords.
        """
    )
    return PromptSpec(
        system_prompt="You are an expert at analyzing and structuring business ideas.",
        user_prompt=user_prompt,
    )


def build_market_research_prompt(idea_text: str, inputs: StageInputs) -> PromptSpec:
    user_prompt = dedent(
        f"""
        Research the market for the business idea below.

        {_context_block(inputs, ["normalize_idea"])}

        Cover current market size, growth rate and a 5-year projection, at
        least three trends with their impact, the main customer needs and
        pain points, and a confidence score from 0 to 100.
        """
    )
    return PromptSpec(
        system_prompt="You are a market research analyst who cites realistic figures.",
        user_prompt=user_prompt,
    )


def build_market_sizing_prompt(idea_text: str, inputs: StageInputs) -> PromptSpec:
    user_prompt = dedent(
        f"""
        Estimate TAM, SAM and SOM for the business idea below.

        {_context_block(inputs, ["normalize_idea", "market_research"])}

        For each estimate give the dollar value, the calculation and its
        assumptions. State the methodology (top-down, bottom-up or hybrid)
        and a confidence score from 0 to 100.
        """
    )
    return PromptSpec(
        system_prompt="You are a market sizing specialist.",
        user_prompt=user_prompt,
    )


def build_competition_prompt(idea_text: str, inputs: StageInputs) -> PromptSpec:
    user_prompt = dedent(
        f"""
        Scan the competitive landscape for the business idea below.

        {_context_block(inputs, ["normalize_idea", "market_research", "market_sizing"])}

        List direct and emerging competitors with strengths, weaknesses and a
        threat level (High, Medium or Low), then the differentiation
        opportunities open to a new entrant.
        """
    )
    return PromptSpec(
        system_prompt="You are a competitive intelligence analyst.",
        user_prompt=user_prompt,
    )


def build_feasibility_prompt(idea_text: str, inputs: StageInputs) -> PromptSpec:
    user_prompt = dedent(
        f"""
        Evaluate the feasibility of the business idea below.

        {_context_block(inputs, ["normalize_idea", "market_research", "market_sizing"])}

        Score technical, operational, financial and regulatory feasibility
        from 1 to 10 with an explanation and key risks for each, then an
        overall score from 1 to 10.
        """
    )
    return PromptSpec(
        system_prompt="You are a startup due-diligence analyst.",
        user_prompt=user_prompt,
    )


def build_strategy_prompt(idea_text: str, inputs: StageInputs) -> PromptSpec:
    user_prompt = dedent(
        f"""
        Recommend a strategy for the business idea below.

        {_context_block(inputs, ["normalize_idea", "market_research", "market_sizing", "competition", "feasibility"])}

        Cover go-to-market (initial segment, value proposition, channels),
        monetization (model, pricing, revenue streams), growth levers and the
        key metrics to track.
        """
    )
    return PromptSpec(
        system_prompt="You are a startup strategist advising a lean founding team.",
        user_prompt=user_prompt,
    )


def build_report_prompt(idea_text: str, inputs: StageInputs) -> PromptSpec:
    user_prompt = dedent(
        f"""
        Compile a validation verdict from the complete analysis below.

        {_context_block(inputs, ["normalize_idea", "market_research", "market_sizing", "competition", "feasibility", "strategy"])}

        Give an overall score from 0 to 100, a one-paragraph recommendation,
        the key insights and the next steps. Sections marked as unavailable
        could not be analysed; say so rather than inventing data.
        """
    )
    return PromptSpec(
        system_prompt="You are a venture analyst writing the final validation verdict.",
        user_prompt=user_prompt,
    )


def build_repair_prompt(original: PromptSpec, invalid_payload: Any, errors: Iterable[str]) -> PromptSpec:
    """Resubmission that shows the model its previous answer and what was wrong."""

    error_lines = "\n".join(f"- {error}" for error in errors) or "- Unknown structural error"
    user_prompt = dedent(
        f"""
        {original.user_prompt.strip()}

        YOUR PREVIOUS ANSWER:
        {_pretty_json(invalid_payload, "(unparseable)")}

        PREVIOUS ATTEMPT HAD ERRORS:
        {error_lines}

        Fix these validation errors and return the corrected JSON object.
        """
    )
    return PromptSpec(system_prompt=original.system_prompt, user_prompt=user_prompt)
