# HybridSQL - Engine Models
# =========================
"""
Common dataclasses and models for the query engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RoutingStrategy(str, Enum):
    """How a query is answered."""
    SQL_ONLY = "sql_only"
    VECTOR_ONLY = "vector_only"
    HYBRID = "hybrid"
    REJECTED = "rejected"


class BuildStrategy(str, Enum):
    """SQL generation strategies used by the ensemble builder."""
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


# Fixed order used for overrides and tie-breaks
STRATEGY_ORDER = [BuildStrategy.CONSERVATIVE, BuildStrategy.BALANCED, BuildStrategy.AGGRESSIVE]


class StepStatus(str, Enum):
    """Outcome of a pipeline stage."""
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ResultStatus(str, Enum):
    """Overall outcome of a pipeline request."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# =============================================================================
# SCHEMA
# =============================================================================

@dataclass(frozen=True)
class SchemaReference:
    """Content-addressed handle for a registered schema."""
    schema_id: str
    version: str = "1.0"
    timestamp: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schema_id': self.schema_id,
            'version': self.version,
            'timestamp': self.timestamp
        }


@dataclass
class SchemaMetadata:
    """Summary extracted from a schema when it is first registered."""
    tables: List[str] = field(default_factory=list)
    total_fields: int = 0
    indexed_fields: List[str] = field(default_factory=list)
    vectorized_fields: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class SchemaEntry:
    """Registry-internal record for one schema."""
    full_schema: Dict[str, Any]
    metadata: SchemaMetadata
    parsed_at: float


# =============================================================================
# ROUTING / CONTEXT
# =============================================================================

@dataclass
class RoutingDecision:
    """Routing decision from the classifier."""
    strategy: RoutingStrategy = RoutingStrategy.REJECTED
    confidence: float = 0.0
    reason: Optional[str] = None


@dataclass
class VectorMatch:
    """A top vector-search match kept on the query context."""
    id: Any
    score: float
    matched_field: str


class VectorQuery(BaseModel):
    """One semantic search: a text against some vectorized fields of a table."""
    table: str
    fields: List[str]
    search_text: str
    limit: int = 10


@dataclass
class VectorContext:
    """What vector search found, made available to SQL building."""
    has_results: bool = False
    ids: List[Any] = field(default_factory=list)
    top_matches: List[VectorMatch] = field(default_factory=list)


@dataclass
class QueryContext:
    """Per-query working memory accumulated across pipeline stages."""
    query_id: str
    original_query: str
    schema_ref: SchemaReference
    routing: RoutingDecision = field(default_factory=RoutingDecision)
    analysis: Optional[Any] = None
    vector_context: Optional[VectorContext] = None
    created_at: float = 0.0
    steps: List[str] = field(default_factory=list)


# =============================================================================
# MODEL SELECTION
# =============================================================================

@dataclass(frozen=True)
class ModelConfig:
    """Static profile of a language-model backend (relative 1-10 scales)."""
    name: str
    cost: int
    speed: int
    quality: int
    context_window: int


# =============================================================================
# ENSEMBLE
# =============================================================================

@dataclass(frozen=True)
class SqlCandidate:
    """One SQL statement produced under one strategy."""
    strategy: BuildStrategy
    sql: str
    query_type: str
    generating_model: str
    generation_time_ms: float = 0.0
    executed: bool = False
    row_count: Optional[int] = None
    sample_rows: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0

    @property
    def is_viable(self) -> bool:
        """Has rows and no error."""
        return self.error is None and (self.row_count or 0) > 0

    def summary(self, sample_size: int = 3) -> Dict[str, Any]:
        """Compact view for evaluators. Never includes the SQL text."""
        return {
            'strategy': self.strategy.value,
            'row_count': self.row_count or 0,
            'has_error': self.error is not None,
            'error_message': self.error,
            'execution_time_ms': round(self.execution_time_ms, 1),
            'sample_data': (self.sample_rows or [])[:sample_size]
        }


class Vote(BaseModel):
    """One evaluator's verdict."""
    selected_strategy: BuildStrategy
    reason: str
    confidence: float = Field(ge=0.0, le=1.0)


@dataclass
class EnsembleResult:
    """Final output of an ensemble SQL build."""
    sql: str
    query_type: str
    strategy: BuildStrategy
    estimated_rows: str
    explanation: str
    row_count: int = 0
    warnings: List[str] = field(default_factory=list)
    votes: Dict[str, int] = field(default_factory=dict)
    avg_confidence: float = 0.0
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    execution_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sql': self.sql,
            'query_type': self.query_type,
            'strategy': self.strategy.value,
            'estimated_rows': self.estimated_rows,
            'explanation': self.explanation,
            'row_count': self.row_count,
            'warnings': self.warnings,
            'votes': self.votes,
            'avg_confidence': self.avg_confidence,
            'candidates': self.candidates,
            'execution_time_ms': self.execution_time_ms
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EnsembleResult':
        values = dict(data)
        values['strategy'] = BuildStrategy(values['strategy'])
        return cls(**values)


# =============================================================================
# EXECUTION
# =============================================================================

@dataclass
class ValidationResult:
    """Result of SQL validation."""
    is_valid: bool
    validated_sql: str
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    tables_verified: List[str] = field(default_factory=list)
    dangerous_patterns_found: List[str] = field(default_factory=list)


@dataclass
class ExecutionResult:
    """Result of SQL execution."""
    success: bool
    data: Optional[List[Dict]] = None
    columns: List[str] = field(default_factory=list)
    row_count: int = 0
    execution_time_ms: float = 0.0
    error_message: Optional[str] = None
    truncated: bool = False
    sql_executed: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'success': self.success,
            'data': self.data,
            'columns': self.columns,
            'row_count': self.row_count,
            'execution_time_ms': self.execution_time_ms,
            'error_message': self.error_message,
            'truncated': self.truncated,
            'sql_executed': self.sql_executed
        }


# =============================================================================
# PIPELINE
# =============================================================================

@dataclass
class StepRecord:
    """Timing entry for one stage invocation."""
    name: str
    status: StepStatus
    time_ms: float
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        record = {
            'name': self.name,
            'status': self.status.value,
            'time_ms': round(self.time_ms, 1)
        }
        if self.error:
            record['error'] = self.error
        return record


@dataclass
class PipelineOptions:
    """Per-request options accepted by the pipeline entry point."""
    max_rows: int = 100
    timeout_ms: int = 30000
    enable_cache: bool = True


@dataclass
class PipelineResult:
    """Complete result of one pipeline request."""
    query_id: str
    status: ResultStatus
    strategy: RoutingStrategy
    data: Optional[List[Dict[str, Any]]] = None
    row_count: Optional[int] = None
    error: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)

    # Metadata
    total_time_ms: float = 0.0
    steps: List[StepRecord] = field(default_factory=list)
    sql: Optional[str] = None
    vector_search_count: Optional[int] = None
    fusion_method: Optional[str] = None
    ensemble: Optional[Dict[str, Any]] = None
    warnings: List[str] = field(default_factory=list)

    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    @property
    def step_names(self) -> List[str]:
        return [s.name for s in self.steps]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API response."""
        metadata = {
            'total_time_ms': round(self.total_time_ms, 1),
            'steps': [s.to_dict() for s in self.steps],
        }
        if self.sql is not None:
            metadata['sql'] = self.sql
        if self.vector_search_count is not None:
            metadata['vector_search_count'] = self.vector_search_count
        if self.fusion_method is not None:
            metadata['fusion_method'] = self.fusion_method
        if self.ensemble is not None:
            metadata['ensemble'] = self.ensemble
        if self.warnings:
            metadata['warnings'] = self.warnings

        result = {
            'query_id': self.query_id,
            'status': self.status.value,
            'strategy': self.strategy.value,
            'metadata': metadata,
            'timestamp': self.timestamp
        }
        if self.data is not None:
            result['data'] = self.data
        if self.row_count is not None:
            result['row_count'] = self.row_count
        if self.error is not None:
            result['error'] = self.error
        if self.suggestions:
            result['suggestions'] = self.suggestions
        return result
