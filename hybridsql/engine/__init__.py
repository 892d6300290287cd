# HybridSQL Engine Package
"""
Adaptive Query Engine
=====================
Turns natural-language questions into executed queries.

Pipeline:
1. Schema Registry - Content-addressed schema storage
2. Query Analysis - Routing (sql_only / vector_only / hybrid / rejected)
3. Vector Search - Semantic search over vectorized fields
4. Schema Selection - Slim schema for SQL generation
5. Ensemble SQL Build - Three strategies, executed and voted on
6. Execution - DuckDB query execution
7. Result Fusion - Ranked merge of vector and SQL rows
"""

# Models
from .models import (
    RoutingStrategy,
    BuildStrategy,
    StepStatus,
    ResultStatus,
    SchemaReference,
    SchemaMetadata,
    RoutingDecision,
    VectorQuery,
    VectorContext,
    QueryContext,
    ModelConfig,
    SqlCandidate,
    Vote,
    EnsembleResult,
    ValidationResult,
    ExecutionResult,
    StepRecord,
    PipelineOptions,
    PipelineResult
)

# Errors
from .errors import (
    PipelineError,
    ClassificationRejected,
    GenerationError,
    ModelRollbackExhausted,
    ExecutionFailure,
    ExecutionServiceUnavailable,
    VectorSearchFailure,
    BackendUnavailable,
    ValidationFailure,
    SchemaParseError,
    EnsembleBuildError,
    StageError
)

# Services
from .cache import QueryCache, CacheConfig, CacheNamespace, make_cache_key
from .schema_registry import SchemaRegistry
from .query_context import QueryContextManager, ContextSweeper
from .model_selector import ModelSelector, SelectionOptions, MODEL_HIERARCHY

# Pipeline Components
from .llm_providers import LLMConfig, LLMProvider, ClaudeProvider, MockProvider, create_llm_provider
from .query_analyzer import QueryAnalyzer, QueryAnalysis
from .schema_selector import SchemaSelector, SchemaSelection
from .vector_search import VectorConfig, VectorSearcher, InMemoryVectorSearch, create_vector_searcher
from .sql_validator import SQLValidator, ValidatorConfig
from .executor import SQLExecutor, ExecutorConfig, MockExecutor
from .ensemble_builder import EnsembleSQLBuilder, EnsembleConfig, SQLBuildRequest
from .result_fusion import ResultFusion, FusionConfig

# Main Pipeline
from .pipeline import (
    QueryPipeline,
    PipelineConfig,
    create_pipeline
)

__all__ = [
    # Models
    'RoutingStrategy',
    'BuildStrategy',
    'StepStatus',
    'ResultStatus',
    'SchemaReference',
    'SchemaMetadata',
    'RoutingDecision',
    'VectorQuery',
    'VectorContext',
    'QueryContext',
    'ModelConfig',
    'SqlCandidate',
    'Vote',
    'EnsembleResult',
    'ValidationResult',
    'ExecutionResult',
    'StepRecord',
    'PipelineOptions',
    'PipelineResult',

    # Errors
    'PipelineError',
    'ClassificationRejected',
    'GenerationError',
    'ModelRollbackExhausted',
    'ExecutionFailure',
    'ExecutionServiceUnavailable',
    'VectorSearchFailure',
    'BackendUnavailable',
    'ValidationFailure',
    'SchemaParseError',
    'EnsembleBuildError',
    'StageError',

    # Services
    'QueryCache',
    'CacheConfig',
    'CacheNamespace',
    'make_cache_key',
    'SchemaRegistry',
    'QueryContextManager',
    'ContextSweeper',
    'ModelSelector',
    'SelectionOptions',
    'MODEL_HIERARCHY',

    # Components
    'LLMConfig',
    'LLMProvider',
    'ClaudeProvider',
    'MockProvider',
    'create_llm_provider',
    'QueryAnalyzer',
    'QueryAnalysis',
    'SchemaSelector',
    'SchemaSelection',
    'VectorConfig',
    'VectorSearcher',
    'InMemoryVectorSearch',
    'create_vector_searcher',
    'SQLValidator',
    'ValidatorConfig',
    'SQLExecutor',
    'ExecutorConfig',
    'MockExecutor',
    'EnsembleSQLBuilder',
    'EnsembleConfig',
    'SQLBuildRequest',
    'ResultFusion',
    'FusionConfig',

    # Pipeline
    'QueryPipeline',
    'PipelineConfig',
    'create_pipeline'
]
