# HybridSQL - Result Fusion
# =========================
"""
Result Fusion
=============
Merges vector-search rows and SQL rows into one ranked, deduplicated set.

The model only scores rows by index and picks a fusion strategy; the rows
themselves are never rewritten by the model. Rows sharing a merge key are
collapsed into one row tagged ``_source = "both"``. If ranking fails the
rows are merged deterministically (SQL rows first, then vector rows).
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .llm_providers import BaseLLMProvider, StructuredRequest
from .model_selector import ModelSelector, SelectionOptions

logger = logging.getLogger(__name__)


class RankedRow(BaseModel):
    index: int
    relevance_score: float = Field(ge=0.0, le=1.0)
    reason: str = ""


class FusionRanking(BaseModel):
    """Relevance scores by row index, plus the overall strategy."""
    vector_rankings: List[RankedRow] = Field(default_factory=list)
    sql_rankings: List[RankedRow] = Field(default_factory=list)
    fusion_strategy: Literal["prefer_sql", "prefer_vector", "balanced", "sql_only", "vector_only"] = "balanced"
    explanation: str = ""


@dataclass
class FusionConfig:
    merge_key: str = "id"
    preview_rows: int = 20
    # Secondary source rows need at least this score under prefer_* strategies
    secondary_threshold: float = 0.7


@dataclass
class FusionResult:
    rows: List[Dict[str, Any]] = field(default_factory=list)
    method: str = "empty"
    explanation: str = ""


FUSION_SYSTEM_PROMPT = '''You are a data relevance scoring expert. Score each record's relevance to the user's question.

User question: {query}

Vector search results (preview):
{vector_preview}

SQL results (preview):
{sql_preview}

Tasks:
1. Score each record from 0 to 1 by relevance to the question, referring to it by index
2. Give a short reason for each score
3. Choose the fusion strategy

Do not modify the data; only score and rank it.'''


class _Accumulator:
    """Collects rows, collapsing rows with the same merge key."""

    def __init__(self, merge_key: str, cap: int):
        self.merge_key = merge_key
        self.cap = cap
        self.rows: List[Dict[str, Any]] = []
        self._positions: Dict[str, int] = {}

    def _key(self, row: Dict[str, Any]) -> Optional[str]:
        value = row.get(self.merge_key)
        return None if value is None else str(value)

    def add(self, row: Dict[str, Any], source: str, extra: Optional[Dict[str, Any]] = None):
        key = self._key(row)
        if key is not None and key in self._positions:
            position = self._positions[key]
            existing = self.rows[position]
            if existing['_source'] != source and existing['_source'] != 'both':
                merged = {**row, **existing}
                merged['_source'] = 'both'
                self.rows[position] = merged
            return

        if len(self.rows) >= self.cap:
            return
        self.rows.append({**row, **(extra or {}), '_source': source})
        if key is not None:
            self._positions[key] = len(self.rows) - 1


class ResultFusion:
    """
    Fuses vector and SQL rows.

    Example:
        fusion = ResultFusion(provider, selector)
        fused = fusion.fuse(query, vector_rows, sql_rows, max_results=50)
        fused.rows, fused.method
    """

    TASK_TYPE = "result_fusion"

    def __init__(self, llm_provider: Optional[BaseLLMProvider] = None,
                 model_selector: Optional[ModelSelector] = None,
                 config: Optional[FusionConfig] = None):
        self.llm_provider = llm_provider
        self.model_selector = model_selector or ModelSelector()
        self.config = config or FusionConfig()

    def fuse(self, query: str,
             vector_rows: List[Dict[str, Any]],
             sql_rows: List[Dict[str, Any]],
             max_results: int = 50) -> FusionResult:
        """
        Merge both row sets.

        Args:
            query: Original user query
            vector_rows: Rows from vector search
            sql_rows: Rows from SQL execution
            max_results: Cap on returned rows

        Returns:
            FusionResult with deduplicated rows and the method used
        """
        vector_rows = vector_rows or []
        sql_rows = sql_rows or []

        if not vector_rows and not sql_rows:
            return FusionResult(rows=[], method="empty", explanation="No results from either source")

        if not vector_rows or not sql_rows:
            source = "sql" if sql_rows else "vector"
            acc = _Accumulator(self.config.merge_key, max_results)
            for row in sql_rows or vector_rows:
                acc.add(row, source)
            logger.info(f"Fusion: only {source} results, returning {len(acc.rows)} rows")
            return FusionResult(rows=acc.rows, method=f"{source}_only",
                                explanation=f"Only {source} results available")

        if self.llm_provider is None:
            return self.fallback_merge(vector_rows, sql_rows, max_results, "no ranking provider")

        try:
            ranking = self._rank(query, vector_rows, sql_rows)
        except Exception as e:
            logger.warning(f"Fusion ranking failed, using fallback merge: {e}")
            return self.fallback_merge(vector_rows, sql_rows, max_results, str(e))

        rows = self._merge(vector_rows, sql_rows, ranking, max_results)
        logger.info(
            f"Fusion complete: strategy={ranking.fusion_strategy}, "
            f"{len(vector_rows)} vector + {len(sql_rows)} sql -> {len(rows)} rows"
        )
        return FusionResult(rows=rows, method=ranking.fusion_strategy, explanation=ranking.explanation)

    def fallback_merge(self, vector_rows: List[Dict[str, Any]], sql_rows: List[Dict[str, Any]],
                       max_results: int, reason: str = "") -> FusionResult:
        """Deterministic merge: SQL rows first, then vector rows."""
        acc = _Accumulator(self.config.merge_key, max_results)
        for row in sql_rows:
            acc.add(row, "sql")
        for row in vector_rows:
            acc.add(row, "vector")
        return FusionResult(
            rows=acc.rows,
            method="fallback_merge",
            explanation=f"Ranking unavailable ({reason}); merged all results" if reason else "Merged all results"
        )

    def _rank(self, query: str, vector_rows: List[Dict[str, Any]],
              sql_rows: List[Dict[str, Any]]) -> FusionRanking:
        request = StructuredRequest(
            system_prompt=FUSION_SYSTEM_PROMPT.format(
                query=query,
                vector_preview=self._preview(vector_rows),
                sql_preview=self._preview(sql_rows)
            ),
            user_prompt="Score and rank the results by relevance.",
            output_model=FusionRanking,
            temperature=0.2
        )
        outcome = self.model_selector.execute_with_rollback(
            self.TASK_TYPE,
            lambda model: self.llm_provider.generate_object(request.for_model(model)),
            SelectionOptions(complexity="easy")
        )
        return outcome.result

    def _preview(self, rows: List[Dict[str, Any]]) -> str:
        preview = [
            {'index': idx, 'preview': json.dumps(row, default=str)[:200]}
            for idx, row in enumerate(rows[:self.config.preview_rows])
        ]
        return json.dumps(preview, indent=2)

    def _merge(self, vector_rows: List[Dict[str, Any]], sql_rows: List[Dict[str, Any]],
               ranking: FusionRanking, max_results: int) -> List[Dict[str, Any]]:
        acc = _Accumulator(self.config.merge_key, max_results)
        threshold = self.config.secondary_threshold

        def ranked(rankings: List[RankedRow], rows: List[Dict[str, Any]], min_score: float = 0.0):
            seen = set()
            for r in sorted(rankings, key=lambda r: r.relevance_score, reverse=True):
                if 0 <= r.index < len(rows) and r.index not in seen and r.relevance_score >= min_score:
                    seen.add(r.index)
                    yield r, rows[r.index]

        def extra(r: RankedRow) -> Dict[str, Any]:
            return {'_relevance': r.relevance_score, '_reason': r.reason}

        strategy = ranking.fusion_strategy
        if strategy == "sql_only":
            for r, row in ranked(ranking.sql_rankings, sql_rows):
                acc.add(row, "sql", extra(r))
        elif strategy == "vector_only":
            for r, row in ranked(ranking.vector_rankings, vector_rows):
                acc.add(row, "vector", extra(r))
        elif strategy == "prefer_sql":
            for r, row in ranked(ranking.sql_rankings, sql_rows):
                acc.add(row, "sql", extra(r))
            for r, row in ranked(ranking.vector_rankings, vector_rows, threshold):
                acc.add(row, "vector", extra(r))
        elif strategy == "prefer_vector":
            for r, row in ranked(ranking.vector_rankings, vector_rows):
                acc.add(row, "vector", extra(r))
            for r, row in ranked(ranking.sql_rankings, sql_rows, threshold):
                acc.add(row, "sql", extra(r))
        else:
            combined = [(r, row, "vector") for r, row in ranked(ranking.vector_rankings, vector_rows)]
            combined += [(r, row, "sql") for r, row in ranked(ranking.sql_rankings, sql_rows)]
            combined.sort(key=lambda item: item[0].relevance_score, reverse=True)
            for r, row, source in combined:
                acc.add(row, source, extra(r))

        if not acc.rows:
            logger.warning("Ranking selected no rows, using fallback merge")
            return self.fallback_merge(vector_rows, sql_rows, max_results, "empty ranking").rows
        return acc.rows
