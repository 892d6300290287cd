# HybridSQL API Request Models
# ============================
"""Pydantic models for API requests."""

from pydantic import BaseModel, Field
from typing import Optional


# ============================================
# Query Requests
# ============================================

class SchemaReferenceRequest(BaseModel):
    """Reference to a previously registered schema."""
    schema_id: str = Field(..., min_length=1, description="Schema content hash")
    version: str = Field(default="1.0", description="Schema format version")
    timestamp: float = Field(default=0.0, description="Registration time")


class QueryOptionsRequest(BaseModel):
    """Per-request pipeline options."""
    max_rows: int = Field(default=100, ge=1, le=10000, description="Maximum rows to return")
    timeout_ms: int = Field(default=30000, ge=100, le=600000, description="Wall-clock limit")
    enable_cache: bool = Field(default=True, description="Use cached stage results")


class QueryRequest(BaseModel):
    """Natural-language query request. One of schema_reference or full_schema_text is required."""
    query: str = Field(..., min_length=1, max_length=4000, description="Question to answer")
    schema_reference: Optional[SchemaReferenceRequest] = None
    full_schema_text: Optional[str] = Field(default=None, description="Schema JSON text")
    options: QueryOptionsRequest = Field(default_factory=QueryOptionsRequest)


# ============================================
# Schema Requests
# ============================================

class SchemaRegisterRequest(BaseModel):
    """Register a schema description."""
    schema_text: str = Field(..., min_length=2, description="Schema JSON text")
