"""Chunk Pipeline API.

Serves chunked generation pipelines over HTTP:
- Pipeline creation (explicit chunk DAGs or keyword decomposition)
- Lifecycle control (start, pause, resume, cancel) and progress polling
- Prompt cache statistics and invalidation
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src import __version__
from src.api.routes import cache, pipelines
from src.cache.prompt_cache import PromptCache
from src.cache.schemas import cache_config_from_env
from src.llm.client import GENERATION_MODEL, generate_completion
from src.pipeline.chunk_executor import CachedChunkExecutor
from src.pipeline.memory_store import InMemoryChunkStore
from src.pipeline.scheduler import PipelineScheduler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

PIPELINE_STORE = os.environ.get("PIPELINE_STORE", "memory")


def build_store():
    """Chunk store selected by PIPELINE_STORE (memory | sql)."""
    if PIPELINE_STORE == "sql":
        from src.pipeline.sql_store import SqlChunkStore

        return SqlChunkStore()
    if PIPELINE_STORE != "memory":
        raise ValueError(f"Unknown PIPELINE_STORE: {PIPELINE_STORE!r}")
    return InMemoryChunkStore()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info(f"Initializing chunk store ({PIPELINE_STORE})...")
    store = build_store()
    scheduler = PipelineScheduler(store)

    prompt_cache = PromptCache(cache_config_from_env())
    logger.info(f"Prompt cache enabled: {prompt_cache.is_enabled()}")

    executor = CachedChunkExecutor(
        generate_completion,
        prompt_cache,
        model=GENERATION_MODEL,
        store=store,
    )

    pipelines.init_pipelines(scheduler, executor)
    cache.init_cache(prompt_cache)

    logger.info("Chunk Pipeline API ready")
    yield
    # Shutdown
    logger.info("Shutting down Chunk Pipeline API")
    prompt_cache.shutdown()
    db = getattr(store, "db", None)
    if db is not None:
        db.close()


# Create FastAPI app
app = FastAPI(
    title="Chunk Pipeline API",
    description="""
## Chunked Generation Scheduler

Decomposes a generation request into a dependency graph of chunks and runs
them in rounds against a text-generation backend, reusing cached prompt
context where possible.

### Key Endpoints

- `POST /v1/pipelines` - Create a pipeline
- `POST /v1/pipelines/{id}/start` - Run it in the background
- `GET /v1/pipelines/{id}` - Poll progress
- `GET /v1/cache/stats` - Prompt cache statistics
""",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers with /v1 prefix
app.include_router(pipelines.router, prefix="/v1")
app.include_router(cache.router, prefix="/v1")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Chunk Pipeline API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "pipelines": "/v1/pipelines",
            "cache": "/v1/cache/stats",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "store": PIPELINE_STORE}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
    )
