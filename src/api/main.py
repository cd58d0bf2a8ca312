"""Image Pipeline Executor API.

Runs multi-stage image analysis pipelines and exposes their progress:
- Job submission and cancellation
- Per-stage progress and progress history
- Execution metrics, stage errors, and job timelines
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src import __version__
from src.api.routes import jobs
from src.executor.db import init_db
from src.executor.job_manager import find_stale_jobs
from src.executor.worker import WORKER_POOL_SIZE, shutdown_worker_pool
from src.llm.factory import ANALYSIS_MODEL

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Initializing pipeline database...")
    init_db()

    stale = find_stale_jobs()
    if stale:
        logger.warning(f"{len(stale)} job(s) look orphaned; see GET /v1/jobs/stale")

    logger.info(
        f"Image Pipeline Executor API ready (model={ANALYSIS_MODEL}, "
        f"workers={WORKER_POOL_SIZE})"
    )
    yield
    # Shutdown
    logger.info("Shutting down Image Pipeline Executor API")
    shutdown_worker_pool(wait=False)


# Create FastAPI app
app = FastAPI(
    title="Image Pipeline Executor API",
    description="""
## Multi-stage image analysis

Submit a resolved pipeline snapshot (ordered prompts + filter rules) and a
set of image references. Stages run in order; each stage's filter rule
narrows the images passed to the next.

### Key Endpoints

- `POST /v1/jobs` - Submit a job
- `GET /v1/jobs/{job_id}` - Poll job status
- `GET /v1/jobs/{job_id}/progress` - Per-stage progress
- `GET /v1/jobs/{job_id}/metrics` - Execution metrics
- `GET /v1/jobs/{job_id}/timeline` - Job events
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
app.include_router(jobs.router, prefix="/v1")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Image Pipeline Executor API",
        "version": __version__,
        "docs": "/docs",
        "endpoints": {
            "jobs": "/v1/jobs",
        },
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "analysis_model": ANALYSIS_MODEL,
        "worker_pool_size": WORKER_POOL_SIZE,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.main:app",
        host="0.0.0.0",
        port=8001,
        reload=True,
    )
