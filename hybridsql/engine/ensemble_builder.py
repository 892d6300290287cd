# HybridSQL - Ensemble SQL Builder
# ================================
"""
Ensemble SQL Builder
====================
Produces one SQL statement by generating three candidates under distinct
strategies, executing each, and letting independent evaluators vote.

Phases (each a barrier: every job of a phase finishes before the next starts):
1. GENERATE - conservative / balanced / aggressive, concurrently, each
   through the model selector with rollback
2. EXECUTE  - validate (read-only, tables, EXPLAIN) then run with a row sample
3. VOTE     - three evaluators see compact result summaries, never the SQL
4. TALLY    - plurality; ties by summed confidence, then balanced, then
   conservative -> balanced -> aggressive
5. OVERRIDE - a winner with no rows or an error is replaced by the first
   candidate with rows, else the first candidate without error
"""

import json
import time
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field

from .cache import CacheNamespace, QueryCache, make_cache_key
from .errors import EnsembleBuildError, ExecutionServiceUnavailable
from .executor import SQLExecutor
from .llm_providers import BaseLLMProvider, StructuredRequest
from .model_selector import ModelSelector, SelectionOptions
from .models import BuildStrategy, EnsembleResult, SqlCandidate, STRATEGY_ORDER, Vote
from .schema_selector import SelectedTable, SqlHints
from .sql_validator import SQLValidator, tables_from_schema

logger = logging.getLogger(__name__)


# =============================================================================
# REQUEST / OUTPUT MODELS
# =============================================================================

class TimeContext(BaseModel):
    current_time: str
    timezone: str = "UTC"


class SQLBuildRequest(BaseModel):
    """Everything SQL generation needs for one query."""
    query: str
    slim_schema: Dict[str, Any]
    selected_tables: List[SelectedTable] = Field(default_factory=list)
    sql_hints: SqlHints = Field(default_factory=SqlHints)
    time_context: Optional[TimeContext] = None


class GeneratedSQL(BaseModel):
    """What a generator returns."""
    sql: str
    query_type: Literal["SELECT", "AGGREGATE", "COMPLEX"] = "SELECT"


# =============================================================================
# STRATEGIES
# =============================================================================

STRATEGY_TEMPERATURES: Dict[BuildStrategy, float] = {
    BuildStrategy.CONSERVATIVE: 0.1,
    BuildStrategy.BALANCED: 0.3,
    BuildStrategy.AGGRESSIVE: 0.5,
}

STRATEGY_SELECTION: Dict[BuildStrategy, SelectionOptions] = {
    BuildStrategy.CONSERVATIVE: SelectionOptions(complexity="medium", prefer_speed=True),
    BuildStrategy.BALANCED: SelectionOptions(complexity="medium"),
    BuildStrategy.AGGRESSIVE: SelectionOptions(complexity="hard"),
}

# One entry per evaluator
EVALUATOR_SELECTION: List[SelectionOptions] = [
    SelectionOptions(complexity="medium"),
    SelectionOptions(complexity="hard", min_quality=8),
    SelectionOptions(complexity="very_hard"),
]

STRATEGY_PROMPTS: Dict[BuildStrategy, str] = {
    BuildStrategy.CONSERVATIVE: '''CONSERVATIVE strategy:
1. Filter strictly by the provided vector search IDs when there are any
2. Prefer exact matches over fuzzy search
3. Use JOINs sparingly and only where the relationship is certain
4. Keep the result small with a modest LIMIT
5. When vector search IDs are given, add no extra text filters
6. Mind comparison operators: >= means "at least", > means "more than"''',

    BuildStrategy.BALANCED: '''BALANCED strategy:
1. Combine vector search IDs with SQL conditions
2. Supplement exact matches with moderate fuzzy matching
3. Use JOINs where they complete the answer
4. Use a medium LIMIT
5. A few supporting filters on top of the vector IDs are fine''',

    BuildStrategy.AGGRESSIVE: '''AGGRESSIVE strategy:
1. Widen the search beyond the vector search IDs
2. Use several fuzzy (ILIKE) patterns
3. Use LEFT JOINs so no rows are lost (only tables present in the schema)
4. Use a large LIMIT or none
5. Add text matching even when vector IDs exist, favouring recall
Only use tables from the provided schema; do not assume others exist.''',
}

GENERATION_SYSTEM_PROMPT = '''You are a DuckDB SQL expert generating SQL with the {strategy_upper} strategy.

{strategy_prompt}

Question: {query}
{time_context}

Database schema:
{schema}

Tables and fields to use:
{tables}
{hints}
Generate one read-only SELECT statement that follows the strategy.'''

EVALUATION_SYSTEM_PROMPT = '''You are an expert at evaluating SQL results. Based on the user's question and the actual execution results, choose the best strategy.

User question: {query}

Criteria:
1. Relevance - does the returned data answer the question
2. Row count - neither too few (missed rows) nor too many (noise)
3. Success - did it execute without error
4. Efficiency - execution time
5. Completeness - are the requested fields present

Rules:
- If every strategy returned 0 rows, choose conservative (simplest and most reliable)
- Never choose a strategy that has an error
- confidence must be between 0 and 1 (0.8 means 80% sure)'''


@dataclass
class EnsembleConfig:
    """Configuration for the ensemble builder."""
    sample_rows: int = 100
    vote_sample_size: int = 3
    max_vector_ids_in_prompt: int = 20


def estimate_rows(row_count: int) -> str:
    """few (<10), moderate (<=50), many (>50)."""
    if row_count > 50:
        return "many"
    if row_count >= 10:
        return "moderate"
    return "few"


def tally_votes(votes: List[Vote],
                contenders: List[BuildStrategy]) -> Tuple[BuildStrategy, Dict[str, int]]:
    """
    Plurality winner among contenders.

    Ties go to the higher summed confidence, then balanced, then the
    fixed strategy order. Votes for non-contenders are ignored.

    Returns:
        (winner, vote counts per strategy)
    """
    counts = {s.value: 0 for s in STRATEGY_ORDER}
    confidence = {s.value: 0.0 for s in STRATEGY_ORDER}
    for vote in votes:
        if vote.selected_strategy in contenders:
            counts[vote.selected_strategy.value] += 1
            confidence[vote.selected_strategy.value] += vote.confidence

    best = max(counts[s.value] for s in contenders)
    tied = [s for s in contenders if counts[s.value] == best]

    if len(tied) > 1:
        top_confidence = max(confidence[s.value] for s in tied)
        tied = [s for s in tied if confidence[s.value] == top_confidence]

    if len(tied) > 1 and BuildStrategy.BALANCED in tied:
        winner = BuildStrategy.BALANCED
    else:
        winner = min(tied, key=STRATEGY_ORDER.index)

    return winner, counts


def apply_override(voted: BuildStrategy,
                   candidates: List[SqlCandidate]) -> Tuple[SqlCandidate, List[str]]:
    """
    Replace a non-viable voted winner.

    Args:
        voted: Strategy chosen by the tally
        candidates: Executed candidates in strategy order

    Returns:
        (chosen candidate, warnings)

    Raises:
        EnsembleBuildError: If every candidate errored
    """
    warnings: List[str] = []
    by_strategy = {c.strategy: c for c in candidates}
    winner = by_strategy[voted]

    if all((c.row_count or 0) == 0 for c in candidates):
        warnings.append("all strategies returned 0 rows")

    if winner.is_viable:
        return winner, warnings

    viable = [c for c in candidates if c.is_viable]
    if viable:
        chosen = viable[0]
        logger.warning(
            f"Overriding vote: {voted.value} is not viable "
            f"(rows={winner.row_count}, error={winner.error is not None}); using {chosen.strategy.value}"
        )
        return chosen, warnings

    error_free = [c for c in candidates if c.error is None]
    if not error_free:
        raise EnsembleBuildError(
            "every SQL candidate failed to execute",
            [c.summary(0) for c in candidates]
        )

    chosen = error_free[0]
    if chosen.strategy != voted:
        logger.warning(f"Overriding vote: no candidate returned rows; using {chosen.strategy.value}")
    return chosen, warnings


# =============================================================================
# BUILDER
# =============================================================================

class EnsembleSQLBuilder:
    """
    Generates, executes and votes on three SQL candidates.

    Example:
        builder = EnsembleSQLBuilder(provider, selector, executor, cache)
        result = builder.build(SQLBuildRequest(query=..., slim_schema=...))
        result.sql, result.strategy, result.explanation
    """

    def __init__(self,
                 llm_provider: BaseLLMProvider,
                 model_selector: ModelSelector,
                 executor: SQLExecutor,
                 cache: Optional[QueryCache] = None,
                 config: Optional[EnsembleConfig] = None):
        self.llm_provider = llm_provider
        self.model_selector = model_selector
        self.executor = executor
        self.cache = cache
        self.config = config or EnsembleConfig()

    def build(self, request: SQLBuildRequest, use_cache: bool = True) -> EnsembleResult:
        """
        Build SQL for a request.

        Args:
            request: SQL build request
            use_cache: Read and write the sql_generation cache

        Returns:
            EnsembleResult for the chosen candidate

        Raises:
            EnsembleBuildError: If no strategy generated SQL, the execution
                service is unavailable, or every candidate errored
        """
        cache_key = make_cache_key(request.model_dump(mode="json"))
        if use_cache and self.cache:
            cached = self.cache.get(CacheNamespace.SQL_GENERATION, cache_key)
            if cached is not None:
                logger.info("Using cached ensemble SQL")
                return EnsembleResult.from_dict(cached)

        start_time = time.time()
        logger.info(f"Ensemble build started: {request.query[:80]}")

        # Step 1: generate
        candidates, generation_errors = self._generate_all(request)
        if not candidates:
            raise EnsembleBuildError(
                "no strategy produced SQL",
                context={'generation_errors': generation_errors}
            )

        # Step 2: validate + execute
        candidates = self._execute_all(request, candidates)
        logger.info("Candidates executed: " + ", ".join(
            f"{c.strategy.value}(rows={c.row_count}, error={c.error is not None})" for c in candidates
        ))

        # Step 3: vote
        votes = self._collect_votes(request.query, candidates)

        # Step 4: tally
        contenders = [c.strategy for c in candidates]
        voted, counts = tally_votes(votes, contenders)

        # Step 5: override
        chosen, warnings = apply_override(voted, candidates)
        warnings.extend(
            f"{strategy} strategy failed to generate SQL: {error}"
            for strategy, error in generation_errors.items()
        )

        row_count = chosen.row_count or 0
        result = EnsembleResult(
            sql=chosen.sql,
            query_type=chosen.query_type,
            strategy=chosen.strategy,
            estimated_rows=estimate_rows(row_count),
            explanation=(
                f"Selected {chosen.strategy.value} strategy with "
                f"{counts[chosen.strategy.value]} of {len(votes)} votes"
            ),
            row_count=row_count,
            warnings=warnings,
            votes=counts,
            avg_confidence=round(sum(v.confidence for v in votes) / len(votes), 3) if votes else 0.0,
            candidates=[
                {'strategy': c.strategy.value, 'row_count': c.row_count or 0, 'has_error': c.error is not None}
                for c in candidates
            ],
            execution_time_ms=(time.time() - start_time) * 1000
        )

        logger.info(
            f"Ensemble build complete: strategy={result.strategy.value}, votes={counts}, "
            f"rows={row_count}, time={result.execution_time_ms:.0f}ms"
        )

        if use_cache and self.cache:
            self.cache.set(CacheNamespace.SQL_GENERATION, cache_key, result.to_dict())
        return result

    # =========================================================================
    # GENERATION
    # =========================================================================

    def _generate_all(self, request: SQLBuildRequest) -> Tuple[List[SqlCandidate], Dict[str, str]]:
        candidates: List[SqlCandidate] = []
        errors: Dict[str, str] = {}

        with ThreadPoolExecutor(max_workers=len(STRATEGY_ORDER)) as pool:
            futures = [(s, pool.submit(self._generate, request, s)) for s in STRATEGY_ORDER]
            for strategy, future in futures:
                try:
                    candidates.append(future.result())
                except Exception as e:
                    logger.error(f"{strategy.value} strategy generation failed: {e}")
                    errors[strategy.value] = str(e)

        return candidates, errors

    def _generate(self, request: SQLBuildRequest, strategy: BuildStrategy) -> SqlCandidate:
        start_time = time.time()
        structured = StructuredRequest(
            system_prompt=self._generation_prompt(request, strategy),
            user_prompt="Generate the SQL following the strategy.",
            output_model=GeneratedSQL,
            temperature=STRATEGY_TEMPERATURES[strategy]
        )

        outcome = self.model_selector.execute_with_rollback(
            f"sql_generation:{strategy.value}",
            lambda model: self.llm_provider.generate_object(structured.for_model(model)),
            STRATEGY_SELECTION[strategy]
        )
        generated: GeneratedSQL = outcome.result

        logger.debug(f"{strategy.value} SQL ({outcome.model}): {generated.sql[:200]}")
        return SqlCandidate(
            strategy=strategy,
            sql=generated.sql.strip(),
            query_type=generated.query_type,
            generating_model=outcome.model,
            generation_time_ms=(time.time() - start_time) * 1000
        )

    def _generation_prompt(self, request: SQLBuildRequest, strategy: BuildStrategy) -> str:
        hints = request.sql_hints
        hint_lines = []

        if hints.vector_ids:
            shown = hints.vector_ids[:self.config.max_vector_ids_in_prompt]
            more = "..." if len(hints.vector_ids) > len(shown) else ""
            hint_lines.append(f"Vector search IDs: {', '.join(str(i) for i in shown)}{more}")
        if hints.indexed_fields:
            hint_lines.append(f"Indexed fields: {', '.join(hints.indexed_fields)}")
        if hints.fuzzy_patterns:
            hint_lines.append(f"Fuzzy patterns: {', '.join(hints.fuzzy_patterns)}")
        for tf in hints.time_fields:
            hint_lines.append(f"Time field {tf.table}.{tf.field}: {tf.data_type} ({tf.format})")
        for jh in hints.join_hints:
            hint_lines.append(f"Join: {jh.type} JOIN {jh.target} ON {jh.on} (from {jh.source})")

        return GENERATION_SYSTEM_PROMPT.format(
            strategy_upper=strategy.value.upper(),
            strategy_prompt=STRATEGY_PROMPTS[strategy],
            query=request.query,
            time_context=(
                f"Current time: {request.time_context.current_time} ({request.time_context.timezone})"
                if request.time_context else ""
            ),
            schema=json.dumps(request.slim_schema, indent=2),
            tables="\n".join(
                f"- {t.table_name}: [{', '.join(t.fields)}]" for t in request.selected_tables
            ) or "- (any table in the schema)",
            hints="\n".join(hint_lines) + ("\n" if hint_lines else "")
        )

    # =========================================================================
    # EXECUTION
    # =========================================================================

    def _execute_all(self, request: SQLBuildRequest,
                     candidates: List[SqlCandidate]) -> List[SqlCandidate]:
        validator = SQLValidator(tables_from_schema(request.slim_schema), executor=self.executor)

        with ThreadPoolExecutor(max_workers=len(candidates)) as pool:
            futures = [pool.submit(self._execute_one, validator, c) for c in candidates]
            try:
                return [f.result() for f in futures]
            except ExecutionServiceUnavailable as e:
                logger.error(f"Ensemble build aborted: {e}")
                raise EnsembleBuildError(
                    f"SQL execution service unavailable ({e.reason}); no candidate could be evaluated",
                    [c.summary(0) for c in candidates]
                ) from e

    def _execute_one(self, validator: SQLValidator, candidate: SqlCandidate) -> SqlCandidate:
        validation = validator.validate(candidate.sql)
        if not validation.is_valid:
            return replace(
                candidate,
                executed=False,
                row_count=0,
                sample_rows=[],
                error=f"Validation failed: {'; '.join(validation.errors)}"
            )

        result = self.executor.execute(validation.validated_sql, max_rows=self.config.sample_rows)
        if not result.success:
            return replace(
                candidate,
                executed=True,
                row_count=0,
                sample_rows=[],
                error=result.error_message,
                execution_time_ms=result.execution_time_ms
            )

        return replace(
            candidate,
            executed=True,
            row_count=result.row_count,
            sample_rows=result.data or [],
            execution_time_ms=result.execution_time_ms
        )

    # =========================================================================
    # VOTING
    # =========================================================================

    def _collect_votes(self, query: str, candidates: List[SqlCandidate]) -> List[Vote]:
        summaries = [c.summary(self.config.vote_sample_size) for c in candidates]
        structured = StructuredRequest(
            system_prompt=EVALUATION_SYSTEM_PROMPT.format(query=query),
            user_prompt=(
                "Evaluate these SQL execution results:\n"
                + json.dumps(summaries, indent=2, default=str)
            ),
            output_model=Vote,
            temperature=0.2
        )

        votes: List[Vote] = []
        with ThreadPoolExecutor(max_workers=len(EVALUATOR_SELECTION)) as pool:
            futures = [
                pool.submit(
                    self.model_selector.execute_with_rollback,
                    "sql_vote",
                    lambda model: self.llm_provider.generate_object(structured.for_model(model)),
                    options
                )
                for options in EVALUATOR_SELECTION
            ]
            for index, future in enumerate(futures, start=1):
                try:
                    vote: Vote = future.result().result
                except Exception as e:
                    logger.warning(f"Evaluator {index} failed, skipping its vote: {e}")
                    continue
                votes.append(vote)

        logger.info(
            "Votes: " + ", ".join(f"{v.selected_strategy.value}({v.confidence:.2f})" for v in votes)
        )
        return votes
