# HybridSQL API - Query Router
# ============================
"""
Query endpoints: answer natural-language questions and register schemas.
"""

import sys
import logging
from pathlib import Path

from fastapi import APIRouter, Depends, HTTPException, Request

# Add project root to path for engine imports
project_root = Path(__file__).parent.parent.parent.parent
sys.path.insert(0, str(project_root))

from hybridsql.engine import (
    PipelineOptions,
    QueryPipeline,
    SchemaParseError,
    SchemaReference
)
from models.requests import QueryRequest, SchemaRegisterRequest
from models.responses import APIResponse, SchemaReferenceResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def get_pipeline(request: Request) -> QueryPipeline:
    """Pipeline created by the application lifespan."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(status_code=503, detail="Query pipeline is not initialized")
    return pipeline


# ============================================
# Query Endpoints
# ============================================

@router.post("/query")
def run_query(body: QueryRequest, pipeline: QueryPipeline = Depends(get_pipeline)):
    """
    Answer a natural-language query.

    The response body is the pipeline result: status is success, partial
    or failed, and failures carry the failing stage in the error text.
    """
    if not body.full_schema_text and body.schema_reference is None:
        raise HTTPException(
            status_code=400,
            detail="Either schema_reference or full_schema_text is required"
        )

    schema_ref = None
    if body.schema_reference is not None:
        schema_ref = SchemaReference(
            schema_id=body.schema_reference.schema_id,
            version=body.schema_reference.version,
            timestamp=body.schema_reference.timestamp
        )

    options = PipelineOptions(
        max_rows=body.options.max_rows,
        timeout_ms=body.options.timeout_ms,
        enable_cache=body.options.enable_cache
    )

    result = pipeline.process(
        body.query,
        schema_text=body.full_schema_text,
        schema_ref=schema_ref,
        options=options
    )
    return result.to_dict()


# ============================================
# Schema Endpoints
# ============================================

@router.post("/schemas")
def register_schema(body: SchemaRegisterRequest, pipeline: QueryPipeline = Depends(get_pipeline)):
    """Register a schema and return its reference."""
    try:
        ref = pipeline.register_schema(body.schema_text)
    except SchemaParseError as e:
        raise HTTPException(status_code=400, detail=str(e))

    metadata = pipeline.registry.get_metadata(ref.schema_id)
    data = SchemaReferenceResponse(
        schema_id=ref.schema_id,
        version=ref.version,
        timestamp=ref.timestamp,
        tables=metadata.tables if metadata else [],
        total_fields=metadata.total_fields if metadata else 0,
        vectorized_fields=metadata.vectorized_fields if metadata else {}
    )
    logger.info(f"Registered schema {ref.schema_id} ({len(data.tables)} tables)")
    return APIResponse(data=data.model_dump())
