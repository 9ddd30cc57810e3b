"""Application factory for the idea pipeline FastAPI backend."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import PipelineSettings, get_settings
from .events import EventBroadcaster
from .heuristics import HeuristicInferenceClient
from .llm import ConcurrencyLimiter, InferenceClient, OpenAIInferenceClient
from .logging_setup import configure_logging
from .pipeline import PipelineController
from .registry import JobRegistry
from .routers import jobs
from .stages import build_stages
from .storage import IdeaStorage, InMemoryIdeaStorage
from .store import InMemoryJobStore, JobStore, JsonFileJobStore

logger = logging.getLogger(__name__)


def build_inference_client(settings: PipelineSettings, limiter: ConcurrencyLimiter) -> InferenceClient:
    """Pick the provider backend from the configured credentials."""

    api_key = settings.get_api_key()
    if not api_key:
        logger.warning("No provider API key configured; using the offline heuristic backend")
        return HeuristicInferenceClient(limiter)

    logger.info("Using %s as the inference provider", settings.primary_provider)
    return OpenAIInferenceClient(
        api_key,
        models={"heavy": settings.model_for("heavy"), "light": settings.model_for("light")},
        base_url=settings.base_url,
        limiter=limiter,
    )


async def _sweep_expired_jobs(registry: JobRegistry, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await registry.evict_expired()
        except Exception:
            logger.exception("Job eviction sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: PipelineSettings = app.state.settings
    sweeper = asyncio.create_task(
        _sweep_expired_jobs(app.state.registry, settings.sweep_interval_seconds),
        name="idea-job-sweeper",
    )
    yield
    sweeper.cancel()
    await asyncio.gather(sweeper, return_exceptions=True)
    await app.state.controller.shutdown()


def create_app(
    settings: PipelineSettings | None = None,
    *,
    client: InferenceClient | None = None,
    storage: IdeaStorage | None = None,
    store: JobStore | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    The collaborators can be injected for tests; by default they are built
    from *settings* (or the cached environment settings).
    """

    settings = settings or get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Idea Pipeline Backend",
        version="0.1.0",
        description="Multi-stage startup idea validation pipeline.",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_origin_regex=r"http://localhost:\d+$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if store is None:
        store = JsonFileJobStore(settings.store_dir) if settings.store_dir else InMemoryJobStore()
    stages = build_stages(timeout_seconds=settings.stage_timeout_seconds, retry_budget=settings.stage_retries)
    registry = JobRegistry(store, total_stages=len(stages), retention_seconds=settings.retention_seconds)
    broadcaster = EventBroadcaster(registry)
    if client is None:
        client = build_inference_client(settings, ConcurrencyLimiter(settings.max_concurrency))

    app.state.settings = settings
    app.state.registry = registry
    app.state.broadcaster = broadcaster
    app.state.storage = storage or InMemoryIdeaStorage()
    app.state.controller = PipelineController(
        registry,
        broadcaster,
        client,
        stages=stages,
        storage=app.state.storage,
        job_timeout_seconds=settings.job_timeout_seconds,
        parallel_stages=settings.parallel_stages,
        backoff_seconds=settings.retry_backoff_seconds,
    )
    app.include_router(jobs.router)
    app.include_router(jobs.compat_router)
    return app


app = create_app()
