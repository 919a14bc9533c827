"""FastAPI application entry point with lifespan management."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

import cohere
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from knowledge_qa.config import AppConfig
from knowledge_qa.coverage import EvidenceCoverageScorer
from knowledge_qa.embeddings import EmbeddingModelFactory
from knowledge_qa.logger import setup_logger
from knowledge_qa.orchestrator import RagOrchestrator
from knowledge_qa.providers import HighAvailabilitySelector, ProviderRegistry
from knowledge_qa.query_understanding import QueryUnderstanding
from knowledge_qa.retrieval import QdrantDocumentRetriever
from knowledge_qa.snapshot import SnapshotRanker, SnapshotRepository
from knowledge_qa.streaming import StreamingAnswerGenerator
from knowledge_qa.user_settings import SettingsStore
from knowledge_qa.vector_store import ensure_collection, get_qdrant_client

# Route modules log under "api.*"
setup_logger("api")
logger = logging.getLogger(__name__)


def build_orchestrator(config: AppConfig, executor: ThreadPoolExecutor) -> RagOrchestrator:
    """Wire the pipeline components from configuration."""
    settings = SettingsStore.load(config.paths.settings_path)

    qdrant_client = get_qdrant_client(config.qdrant_url)
    collection_name = config.qdrant_collection
    try:
        collection_name = ensure_collection(qdrant_client, config.qdrant_collection)
        collection_info = qdrant_client.get_collection(collection_name)
        logger.info(
            "Qdrant connected: %d vectors in collection '%s'",
            collection_info.points_count or 0,
            collection_name,
        )
    except Exception as exc:
        logger.error("Failed to connect to Qdrant: %s", exc)

    cohere_client = cohere.ClientV2(config.cohere_api_key) if config.cohere_api_key else None
    if cohere_client is None:
        logger.warning("COHERE_API_KEY not set, reranking disabled")

    embedding_factory = EmbeddingModelFactory()
    registry = ProviderRegistry(settings)
    selector = HighAvailabilitySelector(settings, registry)

    primitive = QdrantDocumentRetriever(qdrant_client, collection_name, embedding_factory, cohere_client)
    return RagOrchestrator(
        settings=settings,
        primitive=primitive,
        understanding=QueryUnderstanding(settings, selector),
        snapshot_ranker=SnapshotRanker(embedding_factory),
        snapshots=SnapshotRepository(config.paths.snapshot_dir),
        generator=StreamingAnswerGenerator(settings, selector, timeout_seconds=config.stream_timeout_seconds),
        coverage=EvidenceCoverageScorer(embedding_factory),
        executor=executor,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown lifecycle.

    Startup:
        1. Initialize AppConfig singleton (paths, Qdrant, rerank, timeouts).
        2. Build the worker pool and the RAG orchestrator.
        3. Store shared resources on app.state for dependency injection.

    Shutdown:
        Stop accepting runs and let in-flight runs finish.
    """
    logger.info("Starting Knowledge QA API...")

    config = AppConfig.get()
    logger.info("Config loaded: base_dir=%s", config.paths.base_dir)

    executor = ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="rag-run")
    orchestrator = build_orchestrator(config, executor)

    app.state.config = config
    app.state.executor = executor
    app.state.orchestrator = orchestrator

    logger.info("Startup complete: workers=%d", config.max_workers)

    yield

    executor.shutdown(wait=False)
    logger.info("Shutting down Knowledge QA API.")


app = FastAPI(
    title="Knowledge QA API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Tighten in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from api.routes.rag import router as rag_router  # noqa: E402

app.include_router(rag_router)


@app.get("/api/v1/health")
async def health():
    """System health check.

    Returns status of shared resources loaded during startup.
    """
    orchestrator = getattr(app.state, "orchestrator", None)
    return {
        "status": "ok" if orchestrator is not None else "degraded",
        "orchestrator_ready": orchestrator is not None,
    }
