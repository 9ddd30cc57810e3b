"""Inference client interface and the OpenAI-compatible backend."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import Counter, defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Mapping, Tuple

from openai import APIError, AsyncOpenAI

from .errors import PipelineError, ProviderError, SchemaValidationError, StageTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptSpec:
    """System and user text for one inference call."""

    system_prompt: str
    user_prompt: str


@dataclass(frozen=True)
class CompletionParams:
    """Sampling parameters plus the stage tag used for accounting."""

    stage: str | None = None
    model_weight: str = "heavy"
    temperature: float = 0.3
    max_tokens: int = 2048


class ConcurrencyLimiter:
    """Process-wide counting semaphore bounding in-flight inference calls."""

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.in_flight = 0
        self.peak_in_flight = 0

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        async with self._semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                yield
            finally:
                self.in_flight -= 1


@dataclass
class CallStats:
    """Running usage totals for one (stage, model) pair."""

    calls: int = 0
    failures: int = 0
    total_latency_ms: float = 0.0
    total_tokens: int = 0

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.calls if self.calls else 0.0


class InferenceClient(ABC):
    """Uniform interface to a remote LLM backend.

    Subclasses implement :meth:`_complete`; every call goes through the
    shared :class:`ConcurrencyLimiter` and is counted per stage and model
    once it holds a slot.
    """

    def __init__(self, limiter: ConcurrencyLimiter | None = None) -> None:
        self.limiter = limiter or ConcurrencyLimiter(4)
        self.call_counts: Counter[str] = Counter()
        self.usage: Dict[Tuple[str, str], CallStats] = defaultdict(CallStats)

    def model_name(self, params: CompletionParams) -> str:
        """Model that serves *params*; used as the usage key."""

        return type(self).__name__

    def record_tokens(self, params: CompletionParams, tokens: int) -> None:
        self.usage[(params.stage or "unknown", self.model_name(params))].total_tokens += tokens

    @property
    def total_calls(self) -> int:
        return sum(self.call_counts.values())

    async def complete(
        self,
        prompt: PromptSpec,
        schema_hint: Mapping[str, Any],
        params: CompletionParams | None = None,
        *,
        timeout: float | None = None,
    ) -> Dict[str, Any]:
        """Submit *prompt* and return the parsed JSON object.

        *timeout* bounds the backend call only; waiting for a limiter slot
        does not count against it. Raises :class:`StageTimeoutError` on
        expiry, :class:`ProviderError` on transport or backend failures and
        :class:`SchemaValidationError` when the reply is not a JSON object.
        """

        params = params or CompletionParams()
        stage = params.stage or "unknown"
        async with self.limiter.slot():
            self.call_counts[stage] += 1
            stats = self.usage[(stage, self.model_name(params))]
            stats.calls += 1
            started = time.perf_counter()
            try:
                if timeout is None:
                    return await self._complete(prompt, schema_hint, params)
                return await asyncio.wait_for(self._complete(prompt, schema_hint, params), timeout=timeout)
            except asyncio.TimeoutError as exc:
                stats.failures += 1
                raise StageTimeoutError(
                    f"Inference call for {stage} timed out after {timeout:g}s", stage=params.stage, original_error=exc
                ) from exc
            except PipelineError:
                stats.failures += 1
                raise
            except Exception as exc:
                stats.failures += 1
                logger.warning("Backend %s failed for stage %s: %r", type(self).__name__, stage, exc)
                raise ProviderError(str(exc) or type(exc).__name__, stage=params.stage, original_error=exc) from exc
            finally:
                stats.total_latency_ms += (time.perf_counter() - started) * 1000

    @abstractmethod
    async def _complete(
        self,
        prompt: PromptSpec,
        schema_hint: Mapping[str, Any],
        params: CompletionParams,
    ) -> Dict[str, Any]:
        """Backend-specific call."""


def parse_structured_response(raw_text: str, *, stage: str | None = None) -> Dict[str, Any]:
    """Coerce model output into a JSON object, stripping markdown fences."""

    text = raw_text.strip()
    if text.startswith("```"):
        lines = [line.rstrip() for line in text.splitlines()]
        if len(lines) >= 2:
            lines = lines[1:]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            text = "\n".join(lines).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SchemaValidationError(
            "Model response is not valid JSON", stage=stage, details=[str(exc)], original_error=exc
        ) from exc
    if not isinstance(data, dict):
        raise SchemaValidationError(
            f"Model response is a JSON {type(data).__name__}, expected an object", stage=stage
        )
    return data


def schema_instructions(schema_hint: Mapping[str, Any]) -> str:
    return (
        "\n\nReturn ONLY a valid JSON object matching this JSON schema. "
        "No markdown, no explanations.\n"
        f"{json.dumps(schema_hint, indent=2, sort_keys=True)}"
    )


class OpenAIInferenceClient(InferenceClient):
    """Backend for OpenAI and OpenAI-compatible endpoints such as Cerebras."""

    def __init__(
        self,
        api_key: str,
        *,
        models: Mapping[str, str],
        base_url: str | None = None,
        limiter: ConcurrencyLimiter | None = None,
        client: AsyncOpenAI | None = None,
    ) -> None:
        super().__init__(limiter)
        # Retries are owned by the stage task.
        self._client = client or AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)
        self._models = dict(models)

    def model_name(self, params: CompletionParams) -> str:
        return self._models.get(params.model_weight) or self._models["heavy"]

    async def _complete(
        self,
        prompt: PromptSpec,
        schema_hint: Mapping[str, Any],
        params: CompletionParams,
    ) -> Dict[str, Any]:
        model = self.model_name(params)
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=[
                    {"role": "system", "content": prompt.system_prompt.strip() + schema_instructions(schema_hint)},
                    {"role": "user", "content": prompt.user_prompt.strip()},
                ],
                temperature=params.temperature,
                max_tokens=params.max_tokens,
                response_format={"type": "json_object"},
            )
        except APIError as exc:
            logger.warning("Provider call failed for stage %s on %s: %s", params.stage, model, exc)
            raise ProviderError(str(exc), stage=params.stage, original_error=exc) from exc

        message = response.choices[0].message.content if response.choices else None
        if not message:
            raise ProviderError("Provider returned an empty completion", stage=params.stage)
        if response.usage is not None and response.usage.total_tokens:
            self.record_tokens(params, response.usage.total_tokens)
            logger.debug("Stage %s used %s tokens on %s", params.stage, response.usage.total_tokens, model)
        return parse_structured_response(message, stage=params.stage)
