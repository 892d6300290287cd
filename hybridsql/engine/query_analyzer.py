# HybridSQL - Query Analyzer Module
# =================================
"""
Query Analyzer
==============
Classifies a natural-language query into a routing strategy BEFORE any
search or SQL work is done.

Key Principle: SQL First
- sql_only when SQL (including LIKE) can answer the question
- vector_only when only semantic similarity can find the rows
- hybrid when exact conditions and semantic matching must be combined
- rejected when the query is infeasible or too unclear to answer
"""

import json
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .cache import CacheNamespace, QueryCache, make_cache_key
from .errors import ClassificationRejected
from .llm_providers import BaseLLMProvider, StructuredRequest
from .model_selector import ModelSelector, SelectionOptions
from .models import RoutingDecision, RoutingStrategy, SchemaReference, VectorQuery

logger = logging.getLogger(__name__)


# =============================================================================
# OUTPUT MODELS
# =============================================================================

class Feasibility(BaseModel):
    is_feasible: bool
    reason: Optional[str] = None
    suggested_alternatives: List[str] = Field(default_factory=list)


class Routing(BaseModel):
    strategy: RoutingStrategy
    reason: str
    confidence: float = Field(ge=0.0, le=1.0)


class SqlConfig(BaseModel):
    tables: List[str]
    can_use_fuzzy_search: bool = False
    fuzzy_patterns: List[str] = Field(default_factory=list)
    estimated_complexity: Literal["simple", "moderate", "complex"] = "simple"


class VectorConfig(BaseModel):
    queries: List[VectorQuery] = Field(default_factory=list)


class QueryAnalysis(BaseModel):
    """Structured classification of one query."""
    feasibility: Feasibility
    routing: Routing
    sql_config: Optional[SqlConfig] = None
    vector_config: Optional[VectorConfig] = None

    @property
    def feasible(self) -> bool:
        return self.feasibility.is_feasible

    @property
    def is_rejected(self) -> bool:
        return not self.feasible or self.routing.strategy == RoutingStrategy.REJECTED

    @property
    def rejection_reason(self) -> str:
        return self.feasibility.reason or self.routing.reason

    @property
    def sql_tables(self) -> List[str]:
        return self.sql_config.tables if self.sql_config else []

    @property
    def vector_queries(self) -> List[VectorQuery]:
        return self.vector_config.queries if self.vector_config else []

    def to_routing_decision(self) -> RoutingDecision:
        strategy = RoutingStrategy.REJECTED if self.is_rejected else self.routing.strategy
        return RoutingDecision(
            strategy=strategy,
            confidence=self.routing.confidence,
            reason=self.rejection_reason if self.is_rejected else self.routing.reason
        )


# =============================================================================
# QUERY ANALYZER
# =============================================================================

QUERY_ANALYSIS_SYSTEM_PROMPT = '''You are a query analysis expert. Analyze the user's question and decide how it should be answered.

Database schema:
{schema}

Vectorized fields (semantic search available):
{vectorized_fields}

Routing principles:
1. SQL first: if SQL (including LIKE) can answer the question, choose sql_only
2. Vector search: only when semantic understanding is required (synonyms, similar concepts)
3. Hybrid: when exact conditions must be combined with semantic search
4. Rejected: the question is infeasible against this schema, or too unclear to answer

Provide:
- feasibility: whether the question can be answered, and why not if it cannot
- routing: strategy, reason and confidence between 0 and 1
- sql_config: the tables SQL needs (sql_only and hybrid)
- vector_config: one query per table/fields/search text (vector_only and hybrid),
  using only vectorized fields'''


class QueryAnalyzer:
    """
    Classifies queries into routing strategies with a structured LLM call.
    Results are cached in the query_analysis namespace.
    """

    TASK_TYPE = "query_analysis"

    def __init__(self, llm_provider: BaseLLMProvider,
                 model_selector: Optional[ModelSelector] = None,
                 cache: Optional[QueryCache] = None):
        """
        Initialize query analyzer.

        Args:
            llm_provider: Provider for structured generation
            model_selector: Selector used for model choice and rollback
            cache: Cache for analysis results
        """
        self.llm_provider = llm_provider
        self.model_selector = model_selector or ModelSelector()
        self.cache = cache

    def analyze(self,
                query: str,
                schema_ref: SchemaReference,
                schema: Dict[str, Any],
                vectorized_fields: Optional[Dict[str, List[str]]] = None,
                use_cache: bool = True
               ) -> QueryAnalysis:
        """
        Analyze a query and return its routing classification.

        Args:
            query: Natural language query
            schema_ref: Reference of the registered schema
            schema: Full parsed schema
            vectorized_fields: Table -> vectorized column names
            use_cache: Read and write the analysis cache

        Returns:
            QueryAnalysis (may be a rejection; see ensure_answerable)

        Raises:
            ModelRollbackExhausted: If no model produced a valid analysis
        """
        vectorized_fields = vectorized_fields or {}
        cache_key = make_cache_key({
            'query': query,
            'schema_id': schema_ref.schema_id,
            'vectorized_fields': vectorized_fields
        })

        if use_cache and self.cache:
            cached = self.cache.get(CacheNamespace.QUERY_ANALYSIS, cache_key)
            if cached is not None:
                logger.info(f"Using cached analysis for query: {query[:60]}")
                return QueryAnalysis.model_validate(cached)

        request = StructuredRequest(
            system_prompt=QUERY_ANALYSIS_SYSTEM_PROMPT.format(
                schema=json.dumps(schema, indent=2),
                vectorized_fields=json.dumps(vectorized_fields)
            ),
            user_prompt=f'Analyze the query: "{query}"',
            output_model=QueryAnalysis
        )

        outcome = self.model_selector.execute_with_rollback(
            self.TASK_TYPE,
            lambda model: self.llm_provider.generate_object(request.for_model(model)),
            SelectionOptions(complexity="medium")
        )
        analysis: QueryAnalysis = outcome.result

        logger.info(
            f"Query analysis complete: strategy={analysis.routing.strategy.value}, "
            f"confidence={analysis.routing.confidence:.2f}, "
            f"feasible={analysis.feasible}, model={outcome.model}"
        )

        if use_cache and self.cache:
            self.cache.set(CacheNamespace.QUERY_ANALYSIS, cache_key, analysis.model_dump(mode="json"))

        return analysis

    @staticmethod
    def ensure_answerable(analysis: QueryAnalysis) -> QueryAnalysis:
        """
        Raise ClassificationRejected for rejected or infeasible analyses.
        """
        if analysis.is_rejected:
            raise ClassificationRejected(
                analysis.rejection_reason,
                analysis.feasibility.suggested_alternatives
            )
        return analysis
