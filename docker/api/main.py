"""
HybridSQL API - FastAPI Application
===================================
HTTP entry point for the adaptive query pipeline.

Features:
- Natural-language query endpoint
- Schema registration
- Health, cache and model statistics endpoints
"""

import os
import sys
import logging
from pathlib import Path
from datetime import datetime
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

# Add api directory to path for router imports
api_dir = Path(__file__).parent
sys.path.insert(0, str(api_dir))

env_path = project_root / '.env'
if env_path.exists():
    load_dotenv(env_path)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

from hybridsql.engine import PipelineConfig, create_pipeline

# Import routers
from routers import query, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("HybridSQL API starting up...")
    if getattr(app.state, "pipeline", None) is None:
        try:
            app.state.pipeline = create_pipeline(PipelineConfig.from_env())
            logger.info("Query pipeline initialized")
        except Exception as e:
            logger.error(f"Failed to initialize pipeline: {e}")
            app.state.pipeline = None

    yield

    # Shutdown
    logger.info("HybridSQL API shutting down...")
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        pipeline.close()


# Create FastAPI app
app = FastAPI(
    title="HybridSQL API",
    description="""
## Adaptive Query Pipeline - REST API

- **Query**: answer natural-language questions with SQL, vector search, or both
- **Schemas**: register schema descriptions and reuse them by reference
- **System**: health checks, cache management, model statistics
""",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan
)

# Default to localhost origins only; configure CORS_ORIGINS in .env for production
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost,http://localhost:3000").split(",")
_cors_origins = [origin.strip() for origin in _cors_origins if origin.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With"],
)


# ============================================
# Include Routers
# ============================================

app.include_router(
    query.router,
    prefix="/api/v1",
    tags=["Query"]
)

app.include_router(
    system.router,
    prefix="/api/v1/system",
    tags=["System"]
)


# ============================================
# Root Endpoints
# ============================================

@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "service": "HybridSQL API",
        "version": "0.1.0",
        "docs": "/docs",
        "health": "/api/v1/system/health",
        "api_base": "/api/v1"
    }


@app.get("/api/v1", tags=["Root"])
async def api_root():
    """API v1 root endpoint."""
    return {
        "version": "0.1.0",
        "endpoints": {
            "query": "/api/v1/query",
            "schemas": "/api/v1/schemas",
            "system": "/api/v1/system"
        }
    }


# ============================================
# Global Exception Handler
# ============================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": "INTERNAL_ERROR",
                "message": str(exc)
            },
            "meta": {
                "timestamp": datetime.now().isoformat(),
                "path": str(request.url)
            }
        }
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("API_PORT", 8000)),
        reload=os.getenv("API_RELOAD", "false").lower() == "true"
    )
