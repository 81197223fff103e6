from contextlib import asynccontextmanager
from datetime import timedelta
import logging

from fastapi import FastAPI

from vectorindex.core.config import Settings, settings
from vectorindex.routers import indexing_callback, vector_index
from vectorindex.services.checkpoint_manager import CheckpointManager
from vectorindex.services.embedding_providers import OpenAIEmbeddingClient
from vectorindex.services.file_registry import FileRegistry
from vectorindex.services.job_store import BlobJobStore, MongoJobStore
from vectorindex.services.lock_manager import LockManager
from vectorindex.services.orchestrator import JobOrchestrator
from vectorindex.services.storage import BlobStorage
from vectorindex.services.worker_client import IndexingWorkerClient

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def build_job_store(config: Settings, storage: BlobStorage):
    if config.job_store == "mongo":
        from beanie import init_beanie
        from motor.motor_asyncio import AsyncIOMotorClient

        from vectorindex.models.job import JobDocument

        client = AsyncIOMotorClient(config.mongodb_url)
        await init_beanie(database=client[config.database_name], document_models=[JobDocument])
        logger.info(f"Using MongoDB job store ({config.database_name})")
        return MongoJobStore()

    return BlobJobStore(storage)


async def build_orchestrator(config: Settings) -> JobOrchestrator:
    storage = BlobStorage(
        storage_type=config.storage_type,
        root_dir=config.storage_dir,
        bucket=config.s3_bucket_name,
        region=config.aws_region,
    )

    return JobOrchestrator(
        storage=storage,
        job_store=await build_job_store(config, storage),
        file_registry=FileRegistry(storage),
        worker=IndexingWorkerClient(
            worker_url=config.indexer_worker_url,
            callback_url=config.callback_url,
            bucket=config.s3_bucket_name,
        ),
        embedder=OpenAIEmbeddingClient(
            model_name=config.embedding_model,
            dimensions=config.embedding_dimensions,
            api_key=config.openai_api_key,
            max_retries=config.embedding_max_retries,
        ),
        lock_manager=LockManager(lock_timeout=timedelta(minutes=config.lock_timeout_minutes)),
        checkpoint_manager=CheckpointManager(config.checkpoint_dir, remote=storage),
        dimensions=config.embedding_dimensions,
        index_type=config.index_type,
        index_params={
            "m": config.hnsw_m,
            "ef_construction": config.hnsw_ef_construction,
            "ef_search": config.hnsw_ef_search,
        } if config.index_type == "hnsw" else None,
        temp_dir=config.temp_dir,
        job_timeout=timedelta(minutes=config.job_timeout_minutes),
        job_retention=timedelta(days=config.job_retention_days),
    )


def install_orchestrator(orchestrator: JobOrchestrator):
    vector_index.set_orchestrator(orchestrator)
    indexing_callback.set_orchestrator(orchestrator)
    app.state.orchestrator = orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = await build_orchestrator(settings)
    install_orchestrator(orchestrator)
    await orchestrator.start()
    try:
        yield
    finally:
        await orchestrator.stop()


app = FastAPI(
    title="Vector Index Orchestrator",
    description="Vector index job orchestration and semantic search over indexed documents",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(vector_index.router)
app.include_router(indexing_callback.router)


@app.get("/")
async def root():
    return {
        "status": "online",
        "service": "Vector Index Orchestrator",
        "version": "1.0.0",
        "endpoints": {
            "vector_index": "/api/vector-index/*",
            "callback": "/api/indexing-callback",
            "progress": "/api/indexing-progress",
            "docs": "/docs"
        }
    }


@app.get("/health")
async def health_check():
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        return {"status": "starting"}

    jobs = await orchestrator.list_jobs()
    active = [job for job in jobs if not job.is_terminal]
    return {
        "status": "healthy",
        "storage": orchestrator.storage.storage_type,
        "worker_configured": orchestrator.worker.enabled,
        "embedding_model": orchestrator.embedder.model_name,
        "index_type": orchestrator.index_type,
        "jobs": {
            "total": len(jobs),
            "active": len(active),
        },
        "globally_locked": orchestrator.locks.is_globally_locked(),
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
