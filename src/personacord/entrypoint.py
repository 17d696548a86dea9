"""Entrypoint module for initializing services."""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from personacord.core.config import settings
from personacord.globals import config, httpx_client
from personacord.jobs.delivery import CallbackDelivery
from personacord.jobs.preprocessing import AudioTranscriber, ImageDescriber
from personacord.jobs.queue import InMemoryResultStore, JobQueue
from personacord.jobs.worker import WorkerPool
from personacord.logic.generation import GenerationExecutor
from personacord.logic.pipeline import PipelineServices
from personacord.server import start_server
from personacord.services.database import init_pipeline_db
from personacord.services.database.core import DEFAULT_LOCAL_DB_PATH
from personacord.services.llm import provider_from_model, resolve_api_key
from personacord.services.memory import (
    LibsqlMemoryStore,
    LiteLLMEmbedder,
    MemoryRetriever,
)

if TYPE_CHECKING:
    from aiohttp.web import AppRunner

    from personacord.services.database import PipelineDB

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _EntrypointState:
    server_runner: "AppRunner | None" = None
    db_instance: "PipelineDB | None" = None
    worker_pool: WorkerPool | None = None


_STATE = _EntrypointState()


async def shutdown() -> None:
    """Best-effort shutdown of long-lived resources.

    This is safe to call multiple times.
    """
    if _STATE.worker_pool is not None:
        with contextlib.suppress(Exception):
            await _STATE.worker_pool.stop()
        _STATE.worker_pool = None

    if _STATE.server_runner is not None:
        with contextlib.suppress(Exception):
            await _STATE.server_runner.cleanup()
        _STATE.server_runner = None

    if httpx_client is not None:
        with contextlib.suppress(Exception):
            await httpx_client.aclose()

    if _STATE.db_instance is not None:
        with contextlib.suppress(Exception):
            _STATE.db_instance.close()
        _STATE.db_instance = None


def _build_worker_pool(db: "PipelineDB") -> WorkerPool:
    embedding_model = settings.embedding_model(config)
    retriever = MemoryRetriever(
        LibsqlMemoryStore(db),
        LiteLLMEmbedder(
            embedding_model,
            api_key=resolve_api_key(config, provider_from_model(embedding_model)),
        ),
    )
    queue = JobQueue(
        InMemoryResultStore(settings.result_ttl_seconds(config)),
        status_ttl_seconds=settings.result_ttl_seconds(config),
    )
    services = PipelineServices(
        result_store=queue.results,
        executor=GenerationExecutor(
            config=config,
            max_attempts=settings.generation_max_attempts(config),
            timeout_seconds=settings.generation_timeout_seconds(config),
        ),
        memory_retriever=retriever,
        diagnostic_store=db,
    )
    return WorkerPool(
        queue,
        pipeline_services=services,
        transcribe=AudioTranscriber(
            httpx_client,
            config=config,
            model=settings.whisper_model(config),
        ),
        describe=ImageDescriber(
            config=config,
            fallback_model=settings.vision_fallback_model(config),
        ),
        deliver=CallbackDelivery(httpx_client),
        concurrency=settings.worker_concurrency(config),
        poll_interval_seconds=settings.dependency_poll_interval_seconds(config),
        wait_timeout_seconds=settings.dependency_wait_timeout_seconds(config),
    )


async def main() -> None:
    """Initialize dependencies and run the worker pool."""
    database = config.get("database") or {}
    _STATE.db_instance = await asyncio.to_thread(
        init_pipeline_db,
        database.get("url"),
        database.get("auth_token"),
        database.get("local_path") or DEFAULT_LOCAL_DB_PATH,
    )

    _STATE.worker_pool = _build_worker_pool(_STATE.db_instance)
    _STATE.server_runner = await start_server(_STATE.worker_pool.queue, config)
    try:
        await _STATE.worker_pool.start()
    finally:
        # Ctrl+C typically cancels the main task; shield shutdown so in-flight
        # jobs finish before the event loop is closed.
        with contextlib.suppress(Exception):
            await asyncio.shield(shutdown())
