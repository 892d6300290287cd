# HybridSQL - Query Pipeline
# ==========================
"""
Query Pipeline
==============
Orchestrates the stages that turn a natural-language question into data:

1. Register or look up the schema
2. Classify the query (sql_only / vector_only / hybrid / rejected)
3. Vector search and/or schema selection (concurrently for hybrid)
4. Ensemble SQL build
5. SQL execution
6. Result fusion (hybrid only)

Every stage is timed and recorded. Failures never escape process(): they
become a PipelineResult with status 'failed' (or 'partial' when a hybrid
query lost only its vector stage).
"""

import os
import time
import uuid
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from .cache import CacheConfig, QueryCache
from .ensemble_builder import EnsembleConfig, EnsembleSQLBuilder, SQLBuildRequest, TimeContext
from .errors import ClassificationRejected, ExecutionFailure, PipelineError, StageError
from .executor import ExecutorConfig, SQLExecutor
from .llm_providers import BaseLLMProvider, LLMConfig, create_llm_provider
from .model_selector import ModelSelector
from .models import (
    EnsembleResult,
    PipelineOptions,
    PipelineResult,
    QueryContext,
    ResultStatus,
    RoutingStrategy,
    SchemaReference,
    StepRecord,
    StepStatus,
)
from .query_analyzer import QueryAnalysis, QueryAnalyzer
from .query_context import ContextSweeper, QueryContextManager
from .result_fusion import FusionConfig, ResultFusion
from .schema_registry import SchemaRegistry
from .schema_selector import SchemaSelection, SchemaSelector
from .vector_search import VectorConfig, VectorSearcher, VectorSearchResult, create_vector_searcher

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stage names as reported in StepRecord and QueryContext.steps
STAGE_CLASSIFY = "classify"
STAGE_VECTOR_SEARCH = "vector_search"
STAGE_SCHEMA_SELECTION = "schema_selection"
STAGE_SQL_BUILD = "sql_build"
STAGE_SQL_EXECUTION = "sql_execution"
STAGE_FUSION = "fusion"


@dataclass
class PipelineConfig:
    """Configuration for the query pipeline."""
    llm: LLMConfig = field(default_factory=LLMConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    vector: VectorConfig = field(default_factory=VectorConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)

    # Requests processed at once; stages get a pool twice this size
    max_workers: int = 8

    # Query contexts older than this are swept
    context_max_age_seconds: int = 3600
    context_sweep_interval_seconds: int = 300

    # None = unbounded
    schema_registry_max_entries: Optional[int] = None

    # Rows fetched per candidate while voting
    ensemble_sample_rows: int = 100

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Create config from environment variables."""
        max_entries = os.getenv("SCHEMA_REGISTRY_MAX_ENTRIES", "")
        return cls(
            llm=LLMConfig.from_env(),
            cache=CacheConfig.from_env(),
            vector=VectorConfig.from_env(),
            executor=ExecutorConfig.from_env(),
            max_workers=int(os.getenv("PIPELINE_MAX_WORKERS", "8")),
            context_max_age_seconds=int(os.getenv("CONTEXT_MAX_AGE_SECONDS", "3600")),
            context_sweep_interval_seconds=int(os.getenv("CONTEXT_SWEEP_INTERVAL_SECONDS", "300")),
            schema_registry_max_entries=int(max_entries) if max_entries else None,
            ensemble_sample_rows=int(os.getenv("ENSEMBLE_SAMPLE_ROWS", "100")),
        )


class _RequestState:
    """Steps and warnings of one request, shared by its stage threads."""

    def __init__(self, query_id: str):
        self.query_id = query_id
        self.start_time = time.time()
        self.steps: List[StepRecord] = []
        self.warnings: List[str] = []
        self._lock = threading.Lock()

    def record(self, step: StepRecord):
        with self._lock:
            self.steps.append(step)

    def warn(self, message: str):
        with self._lock:
            self.warnings.append(message)

    def snapshot_steps(self) -> List[StepRecord]:
        with self._lock:
            return list(self.steps)

    def completed(self) -> List[str]:
        return [s.name for s in self.snapshot_steps() if s.status == StepStatus.SUCCESS]

    @property
    def elapsed_ms(self) -> float:
        return (time.time() - self.start_time) * 1000


class QueryPipeline:
    """
    Adaptive query pipeline.

    Services are injected; anything not given is built from config.

    Example:
        with create_pipeline(PipelineConfig.from_env()) as pipeline:
            ref = pipeline.register_schema(schema_json)
            result = pipeline.process("Which suppliers ship to Norway?", schema_ref=ref)
            print(result.status, result.row_count)
    """

    def __init__(self,
                 config: Optional[PipelineConfig] = None,
                 cache: Optional[QueryCache] = None,
                 registry: Optional[SchemaRegistry] = None,
                 contexts: Optional[QueryContextManager] = None,
                 model_selector: Optional[ModelSelector] = None,
                 llm_provider: Optional[BaseLLMProvider] = None,
                 vector_searcher: Optional[VectorSearcher] = None,
                 executor: Optional[SQLExecutor] = None,
                 analyzer: Optional[QueryAnalyzer] = None,
                 schema_selector: Optional[SchemaSelector] = None,
                 ensemble_builder: Optional[EnsembleSQLBuilder] = None,
                 fusion: Optional[ResultFusion] = None):
        self.config = config or PipelineConfig()

        self.cache = cache or QueryCache(self.config.cache)
        self.registry = registry or SchemaRegistry(self.config.schema_registry_max_entries)
        self.contexts = contexts or QueryContextManager()
        self.model_selector = model_selector or ModelSelector()
        self.llm_provider = llm_provider or create_llm_provider(self.config.llm)
        self._owns_executor = executor is None
        self.executor = executor or SQLExecutor(self.config.executor)
        self.vector_searcher = vector_searcher or create_vector_searcher(self.config.vector, self.cache)

        self.analyzer = analyzer or QueryAnalyzer(self.llm_provider, self.model_selector, self.cache)
        self.schema_selector = schema_selector or SchemaSelector(
            self.llm_provider, self.model_selector, self.cache
        )
        self.ensemble_builder = ensemble_builder or EnsembleSQLBuilder(
            self.llm_provider,
            self.model_selector,
            self.executor,
            self.cache,
            EnsembleConfig(sample_rows=self.config.ensemble_sample_rows)
        )
        self.fusion = fusion or ResultFusion(
            self.llm_provider,
            self.model_selector,
            FusionConfig(merge_key=self.vector_searcher.config.id_field)
        )

        self.sweeper = ContextSweeper(
            self.contexts,
            interval_seconds=self.config.context_sweep_interval_seconds,
            max_age_ms=self.config.context_max_age_seconds * 1000
        )

        # Separate pools: a request waiting on its stages must not starve them
        self._request_pool: Optional[ThreadPoolExecutor] = None
        self._stage_pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> "QueryPipeline":
        """Start the thread pools and the context sweeper."""
        self._ensure_pools()
        self.sweeper.start()
        return self

    def close(self):
        """Stop the sweeper and shut the pools down."""
        self.sweeper.stop()
        with self._pool_lock:
            pools = [self._request_pool, self._stage_pool]
            self._request_pool = None
            self._stage_pool = None
        for pool in pools:
            if pool is not None:
                pool.shutdown(wait=False)
        if self._owns_executor:
            self.executor.close()
        logger.info("Query pipeline closed")

    def __enter__(self) -> "QueryPipeline":
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _ensure_pools(self):
        with self._pool_lock:
            if self._request_pool is None:
                workers = max(1, self.config.max_workers)
                self._request_pool = ThreadPoolExecutor(
                    max_workers=workers, thread_name_prefix="hybridsql-request"
                )
                self._stage_pool = ThreadPoolExecutor(
                    max_workers=workers * 2, thread_name_prefix="hybridsql-stage"
                )
            return self._request_pool, self._stage_pool

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def register_schema(self, schema_text: str) -> SchemaReference:
        """Register schema text; raises SchemaParseError for invalid JSON."""
        return self.registry.register(schema_text)

    def process(self,
                query: str,
                schema_text: Optional[str] = None,
                schema_ref: Optional[SchemaReference] = None,
                options: Optional[PipelineOptions] = None) -> PipelineResult:
        """
        Answer a natural-language query.

        Args:
            query: User's question
            schema_text: Full schema JSON (registered on the fly)
            schema_ref: Reference to an already registered schema
            options: Row cap, timeout and cache switch

        Returns:
            PipelineResult (never raises)
        """
        options = options or PipelineOptions()
        state = _RequestState(f"q_{uuid.uuid4().hex[:12]}")
        logger.info(f"[{state.query_id}] Processing query: {query[:100]}")

        try:
            ref = self._resolve_schema(schema_text, schema_ref)
        except PipelineError as e:
            return self._failed(state, RoutingStrategy.REJECTED, "schema", e)

        context = self.contexts.create(state.query_id, query, ref)
        request_pool, _ = self._ensure_pools()
        future = request_pool.submit(self._run, context, state, options)

        try:
            result = future.result(timeout=options.timeout_ms / 1000.0)
        except FutureTimeoutError:
            future.cancel()
            logger.error(f"[{state.query_id}] Timed out after {options.timeout_ms}ms")
            steps = state.snapshot_steps()
            return PipelineResult(
                query_id=state.query_id,
                status=ResultStatus.FAILED,
                strategy=context.routing.strategy,
                error=(
                    f"Query timed out after {options.timeout_ms}ms "
                    f"(query_id={state.query_id}, completed_steps={state.completed()}, "
                    f"elapsed_ms={state.elapsed_ms:.0f})"
                ),
                total_time_ms=state.elapsed_ms,
                steps=steps,
                warnings=list(state.warnings)
            )
        except Exception as e:
            # _run handles its own errors; this only covers pool failures
            logger.error(f"[{state.query_id}] Pipeline worker failed: {e}")
            return self._failed(state, context.routing.strategy, "pipeline", e)

        logger.info(
            f"[{state.query_id}] Done: status={result.status.value}, "
            f"strategy={result.strategy.value}, rows={result.row_count}, "
            f"time={result.total_time_ms:.0f}ms"
        )
        return result

    def _resolve_schema(self, schema_text: Optional[str],
                        schema_ref: Optional[SchemaReference]) -> SchemaReference:
        if schema_text:
            return self.registry.register(schema_text)
        if schema_ref is None:
            raise PipelineError("Either schema_text or schema_ref is required")
        ref = self.registry.get_reference(schema_ref.schema_id)
        if ref is None:
            raise PipelineError(f"Unknown schema reference: {schema_ref.schema_id}")
        return ref

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def _run(self, context: QueryContext, state: _RequestState,
             options: PipelineOptions) -> PipelineResult:
        try:
            analysis = self._stage(context, state, STAGE_CLASSIFY, lambda: self._classify(context, options))
        except StageError as e:
            if isinstance(e.cause, ClassificationRejected):
                return self._rejected(context, state, e.cause)
            return self._failed(state, RoutingStrategy.REJECTED, e.stage, e.cause)

        strategy = context.routing.strategy
        logger.info(f"[{state.query_id}] Routed to {strategy.value} "
                    f"(confidence={context.routing.confidence:.2f})")

        try:
            if strategy == RoutingStrategy.VECTOR_ONLY:
                return self._vector_only(context, state, analysis, options)
            if strategy == RoutingStrategy.SQL_ONLY:
                return self._sql_only(context, state, analysis, options)
            return self._hybrid(context, state, analysis, options)
        except StageError as e:
            return self._failed(state, strategy, e.stage, e.cause)

    def _stage(self, context: QueryContext, state: _RequestState,
               name: str, fn: Callable[[], T]) -> T:
        """Run one stage, record its timing, wrap failures in StageError."""
        start = time.time()
        try:
            value = fn()
        except Exception as e:
            elapsed = (time.time() - start) * 1000
            state.record(StepRecord(name, StepStatus.FAILED, elapsed, str(e)))
            self.contexts.add_step(context.query_id, name)
            if not isinstance(e, ClassificationRejected):
                logger.error(f"[{state.query_id}] Stage {name} failed after {elapsed:.0f}ms: {e}")
            raise StageError(name, state.query_id, e) from e

        elapsed = (time.time() - start) * 1000
        state.record(StepRecord(name, StepStatus.SUCCESS, elapsed))
        self.contexts.add_step(context.query_id, name)
        logger.debug(f"[{state.query_id}] Stage {name} completed in {elapsed:.0f}ms")
        return value

    # =========================================================================
    # STAGES
    # =========================================================================

    def _classify(self, context: QueryContext, options: PipelineOptions) -> QueryAnalysis:
        schema_id = context.schema_ref.schema_id
        schema = self.registry.get_schema(schema_id)
        metadata = self.registry.get_metadata(schema_id)
        if schema is None or metadata is None:
            raise PipelineError(f"Schema {schema_id} is no longer registered")

        analysis = self.analyzer.analyze(
            context.original_query,
            context.schema_ref,
            schema,
            vectorized_fields=metadata.vectorized_fields,
            use_cache=options.enable_cache
        )
        self.contexts.update(context.query_id, analysis=analysis, routing=analysis.to_routing_decision())
        return QueryAnalyzer.ensure_answerable(analysis)

    def _vector_search(self, context: QueryContext, analysis: QueryAnalysis,
                       options: PipelineOptions) -> VectorSearchResult:
        found = self.vector_searcher.search(analysis.vector_queries, use_cache=options.enable_cache)
        self.contexts.update(context.query_id, vector_context=found.to_context())
        return found

    def _select_schema(self, context: QueryContext, analysis: QueryAnalysis,
                       options: PipelineOptions) -> SchemaSelection:
        schema_id = context.schema_ref.schema_id
        filtered = self.registry.get_filtered_schema(schema_id, analysis.sql_tables) or {}
        metadata = self.registry.get_metadata(schema_id)
        return self.schema_selector.select(
            context.original_query,
            filtered,
            schema_id,
            analysis.sql_tables,
            fuzzy_patterns=analysis.sql_config.fuzzy_patterns if analysis.sql_config else [],
            vector_context=context.vector_context,
            indexed_fields=metadata.indexed_fields if metadata else [],
            use_cache=options.enable_cache
        )

    def _build_sql(self, context: QueryContext, selection: SchemaSelection,
                   options: PipelineOptions) -> EnsembleResult:
        hints = selection.sql_hints
        vector_context = context.vector_context
        if vector_context is not None and vector_context.has_results and not hints.vector_ids:
            hints = hints.model_copy(update={'vector_ids': list(vector_context.ids)})

        request = SQLBuildRequest(
            query=context.original_query,
            slim_schema=selection.slim_schema,
            selected_tables=selection.selected_tables,
            sql_hints=hints,
            # Hour resolution keeps the request cacheable
            time_context=TimeContext(
                current_time=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:00:00Z")
            )
        )
        return self.ensemble_builder.build(request, use_cache=options.enable_cache)

    def _execute(self, ensemble: EnsembleResult, options: PipelineOptions) -> List[Dict[str, Any]]:
        result = self.executor.execute(ensemble.sql, max_rows=options.max_rows)
        if not result.success:
            raise ExecutionFailure(ensemble.sql, result.error_message or "unknown error")
        return result.data or []

    # =========================================================================
    # STRATEGIES
    # =========================================================================

    def _vector_only(self, context: QueryContext, state: _RequestState,
                     analysis: QueryAnalysis, options: PipelineOptions) -> PipelineResult:
        found = self._stage(context, state, STAGE_VECTOR_SEARCH,
                            lambda: self._vector_search(context, analysis, options))
        rows = found.rows()[:options.max_rows]
        return self._success(state, RoutingStrategy.VECTOR_ONLY, rows,
                             vector_search_count=len(found.hits))

    def _sql_only(self, context: QueryContext, state: _RequestState,
                  analysis: QueryAnalysis, options: PipelineOptions) -> PipelineResult:
        selection = self._stage(context, state, STAGE_SCHEMA_SELECTION,
                                lambda: self._select_schema(context, analysis, options))
        ensemble = self._stage(context, state, STAGE_SQL_BUILD,
                               lambda: self._build_sql(context, selection, options))
        rows = self._stage(context, state, STAGE_SQL_EXECUTION,
                           lambda: self._execute(ensemble, options))
        for warning in ensemble.warnings:
            state.warn(warning)
        return self._success(state, RoutingStrategy.SQL_ONLY, rows,
                             sql=ensemble.sql, ensemble=ensemble.to_dict())

    def _hybrid(self, context: QueryContext, state: _RequestState,
                analysis: QueryAnalysis, options: PipelineOptions) -> PipelineResult:
        _, stage_pool = self._ensure_pools()
        vector_future = stage_pool.submit(
            self._stage, context, state, STAGE_VECTOR_SEARCH,
            lambda: self._vector_search(context, analysis, options)
        )
        selection_future = stage_pool.submit(
            self._stage, context, state, STAGE_SCHEMA_SELECTION,
            lambda: self._select_schema(context, analysis, options)
        )

        vector_error: Optional[StageError] = None
        found: Optional[VectorSearchResult] = None
        try:
            found = vector_future.result()
        except StageError as e:
            vector_error = e
            state.warn(f"Vector search failed, continuing with SQL only: {e.cause}")

        # Schema selection failure is fatal for hybrid
        selection = selection_future.result()

        ensemble = self._stage(context, state, STAGE_SQL_BUILD,
                               lambda: self._build_sql(context, selection, options))
        sql_rows = self._stage(context, state, STAGE_SQL_EXECUTION,
                               lambda: self._execute(ensemble, options))
        for warning in ensemble.warnings:
            state.warn(warning)

        if vector_error is not None:
            logger.warning(f"[{state.query_id}] Returning partial result (vector stage failed)")
            state.record(StepRecord(STAGE_FUSION, StepStatus.SKIPPED, 0.0, "no vector results to fuse"))
            result = self._success(state, RoutingStrategy.HYBRID, sql_rows[:options.max_rows],
                                   sql=ensemble.sql, ensemble=ensemble.to_dict())
            result.status = ResultStatus.PARTIAL
            result.error = str(vector_error)
            return result

        vector_rows = found.rows()
        fused = self._stage(context, state, STAGE_FUSION,
                            lambda: self.fusion.fuse(context.original_query, vector_rows,
                                                     sql_rows, options.max_rows))
        return self._success(state, RoutingStrategy.HYBRID, fused.rows,
                             sql=ensemble.sql, ensemble=ensemble.to_dict(),
                             vector_search_count=len(found.hits),
                             fusion_method=fused.method)

    # =========================================================================
    # RESULTS
    # =========================================================================

    def _success(self, state: _RequestState, strategy: RoutingStrategy,
                 rows: List[Dict[str, Any]], **metadata) -> PipelineResult:
        return PipelineResult(
            query_id=state.query_id,
            status=ResultStatus.SUCCESS,
            strategy=strategy,
            data=rows,
            row_count=len(rows),
            total_time_ms=state.elapsed_ms,
            steps=state.snapshot_steps(),
            warnings=list(state.warnings),
            **metadata
        )

    def _rejected(self, context: QueryContext, state: _RequestState,
                  rejection: ClassificationRejected) -> PipelineResult:
        logger.info(f"[{state.query_id}] Query rejected: {rejection.reason}")
        steps = [
            StepRecord(s.name, StepStatus.SUCCESS, s.time_ms) if s.name == STAGE_CLASSIFY else s
            for s in state.snapshot_steps()
        ]
        return PipelineResult(
            query_id=state.query_id,
            status=ResultStatus.FAILED,
            strategy=RoutingStrategy.REJECTED,
            error=rejection.reason,
            suggestions=rejection.suggestions,
            total_time_ms=state.elapsed_ms,
            steps=steps
        )

    def _failed(self, state: _RequestState, strategy: RoutingStrategy,
                stage: str, cause: BaseException) -> PipelineResult:
        elapsed = state.elapsed_ms
        error = (
            f"{cause} (stage={stage}, query_id={state.query_id}, "
            f"completed_steps={state.completed()}, elapsed_ms={elapsed:.0f})"
        )
        logger.error(f"[{state.query_id}] Query failed at {stage}: {cause}")
        return PipelineResult(
            query_id=state.query_id,
            status=ResultStatus.FAILED,
            strategy=strategy,
            error=error,
            total_time_ms=elapsed,
            steps=state.snapshot_steps(),
            warnings=list(state.warnings)
        )

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_context(self, query_id: str) -> Optional[QueryContext]:
        return self.contexts.get(query_id)

    def is_ready(self) -> Dict[str, bool]:
        """Check if the backing services are reachable."""
        return {
            'llm': self.llm_provider.is_available(),
            'database': self.executor.validate_connection(),
            'sweeper': self.sweeper.running,
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            'schemas': len(self.registry),
            'active_contexts': len(self.contexts),
            'cache': self.cache.get_stats(),
            'task_types': self.model_selector.task_types(),
        }


def create_pipeline(config: Optional[PipelineConfig] = None, **services) -> QueryPipeline:
    """
    Factory function to create a configured pipeline.

    Args:
        config: Pipeline configuration (uses env vars if not provided)
        **services: Explicit services passed through to QueryPipeline

    Returns:
        Started QueryPipeline
    """
    config = config or PipelineConfig.from_env()
    logger.info(
        f"Creating pipeline: llm={config.llm.provider.value}, cache={config.cache.backend}, "
        f"vector={config.vector.backend}, db={config.executor.db_path}"
    )
    return QueryPipeline(config, **services).start()
