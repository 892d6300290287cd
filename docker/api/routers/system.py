# HybridSQL API - System Router
# =============================
"""System endpoints for health, cache management and model statistics."""

import sys
import logging
from pathlib import Path
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException

# Add project root to path
project_root = Path(__file__).parent.parent.parent.parent
sys.path.insert(0, str(project_root))

from hybridsql.engine import CacheNamespace, QueryPipeline
from models.responses import CacheClearResponse, HealthStatus

from .query import get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter()

# Track server start time
SERVER_START_TIME = datetime.now()


def get_uptime() -> str:
    """Calculate server uptime."""
    delta = datetime.now() - SERVER_START_TIME
    days = delta.days
    hours, remainder = divmod(delta.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)

    parts = []
    if days > 0:
        parts.append(f"{days}d")
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    parts.append(f"{seconds}s")

    return " ".join(parts)


# ============================================
# Health Endpoints
# ============================================

@router.get("/health")
def health_check(pipeline: QueryPipeline = Depends(get_pipeline)):
    """
    Health of the pipeline's backing services.

    Degraded when the language model or database is unreachable.
    """
    services = pipeline.is_ready()
    degraded = not (services.get('llm') and services.get('database'))
    status = HealthStatus(
        status="degraded" if degraded else "healthy",
        services=services,
        uptime=get_uptime()
    )
    return {
        "success": True,
        "data": status.model_dump(),
        "meta": {"timestamp": datetime.now().isoformat()}
    }


# ============================================
# Cache Endpoints
# ============================================

@router.get("/cache/stats")
def cache_stats(pipeline: QueryPipeline = Depends(get_pipeline)):
    """Per-namespace hit rates and sizes."""
    return {
        "success": True,
        "data": pipeline.cache.get_stats(),
        "meta": {"timestamp": datetime.now().isoformat()}
    }


@router.delete("/cache/{namespace}")
def clear_cache(namespace: str, pipeline: QueryPipeline = Depends(get_pipeline)):
    """
    Clear one cache namespace, or every namespace with 'all'.
    """
    if namespace == "all":
        removed = pipeline.cache.clear_all()
    else:
        valid = [ns.value for ns in CacheNamespace]
        if namespace not in valid:
            raise HTTPException(
                status_code=404,
                detail=f"Unknown cache namespace '{namespace}'. Valid: {', '.join(valid)}, all"
            )
        removed = pipeline.cache.clear_namespace(namespace)

    logger.info(f"Cache cleared via API: {namespace} ({removed} entries)")
    return {
        "success": True,
        "data": CacheClearResponse(namespace=namespace, removed=removed).model_dump(),
        "meta": {"timestamp": datetime.now().isoformat()}
    }


# ============================================
# Model Endpoints
# ============================================

@router.get("/models/stats/{task_type}")
def model_stats(task_type: str, pipeline: QueryPipeline = Depends(get_pipeline)):
    """Attempts, successes and average latency per model for one task type."""
    selector = pipeline.model_selector
    return {
        "success": True,
        "data": {
            "task_type": task_type,
            "models": selector.get_stats(task_type),
            "hierarchy": [m.name for m in selector.hierarchy],
            "known_task_types": selector.task_types()
        },
        "meta": {"timestamp": datetime.now().isoformat()}
    }
