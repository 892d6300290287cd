# HybridSQL API Response Models
# =============================
"""Pydantic models for API responses."""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime


# ============================================
# Base Response Models
# ============================================

class MetaInfo(BaseModel):
    """Response metadata."""
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    request_id: Optional[str] = None


class ErrorDetail(BaseModel):
    """Error details."""
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class APIResponse(BaseModel):
    """Standard API response wrapper."""
    success: bool = True
    data: Optional[Any] = None
    error: Optional[ErrorDetail] = None
    meta: MetaInfo = Field(default_factory=MetaInfo)


# ============================================
# Schema Responses
# ============================================

class SchemaReferenceResponse(BaseModel):
    """A registered schema."""
    schema_id: str
    version: str
    timestamp: float
    tables: List[str] = []
    total_fields: int = 0
    vectorized_fields: Dict[str, List[str]] = {}


# ============================================
# System Responses
# ============================================

class HealthStatus(BaseModel):
    """Pipeline health."""
    status: str
    services: Dict[str, bool] = {}
    uptime: Optional[str] = None


class CacheClearResponse(BaseModel):
    """Result of clearing cache namespaces."""
    namespace: str
    removed: int
