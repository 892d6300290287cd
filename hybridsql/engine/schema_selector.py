# HybridSQL - Schema Selector
# ===========================
"""
Schema Selector
===============
Narrows the registry's filtered schema down to the tables and fields one
query needs, and collects hints (time fields, joins, indexes, vector IDs)
for SQL generation.
"""

import json
import copy
import logging
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .cache import CacheNamespace, QueryCache, make_cache_key
from .llm_providers import BaseLLMProvider, StructuredRequest
from .model_selector import ModelSelector, SelectionOptions
from .models import VectorContext

logger = logging.getLogger(__name__)


class TimeField(BaseModel):
    table: str
    field: str
    data_type: str = "text"
    format: Literal["timestamp", "datetime", "date"] = "date"


class JoinHint(BaseModel):
    source: str
    target: str
    on: str
    type: Literal["INNER", "LEFT", "RIGHT"] = "INNER"


class SelectedTable(BaseModel):
    table_name: str
    fields: List[str] = Field(default_factory=list)
    reason: str = ""
    is_join_table: bool = False


class SqlHints(BaseModel):
    time_fields: List[TimeField] = Field(default_factory=list)
    join_hints: List[JoinHint] = Field(default_factory=list)
    indexed_fields: List[str] = Field(default_factory=list)
    fuzzy_patterns: List[str] = Field(default_factory=list)
    vector_ids: List[Any] = Field(default_factory=list)


class SchemaSelectionOutput(BaseModel):
    """What the model is asked to produce."""
    selected_tables: List[SelectedTable]
    sql_hints: SqlHints = Field(default_factory=SqlHints)


class SchemaSelection(BaseModel):
    """Selected tables plus the slim schema built from them."""
    selected_tables: List[SelectedTable]
    slim_schema: Dict[str, Any]
    compression_ratio: float
    sql_hints: SqlHints

    @property
    def table_names(self) -> List[str]:
        return [t.table_name for t in self.selected_tables]


SCHEMA_SELECTION_SYSTEM_PROMPT = '''You are a database schema selection expert. Select the tables and fields needed to answer the query.

Query: {query}
Pre-selected tables: {tables}
{fuzzy}
{vector_context}

Database schema (relevant tables only):
{schema}

Select:
1. The necessary tables and fields (keep the selection minimal)
2. Time fields and their format (timestamp, datetime or date)
3. Likely JOIN relationships
4. Indexed fields'''


def build_slim_schema(schema: Dict[str, Any], selected: List[SelectedTable]) -> Dict[str, Any]:
    """
    Keep only selected tables, and within them only selected columns.

    Tables without a column map (or with no fields selected) are kept whole.
    Unknown tables and fields are skipped.
    """
    slim: Dict[str, Any] = {}
    for table in selected:
        table_def = schema.get(table.table_name)
        if table_def is None:
            continue
        if not isinstance(table_def, dict) or not table.fields:
            slim[table.table_name] = copy.deepcopy(table_def)
            continue

        columns = table_def.get('columns')
        if not isinstance(columns, dict):
            slim[table.table_name] = copy.deepcopy(table_def)
            continue

        slim_def = {k: copy.deepcopy(v) for k, v in table_def.items() if k != 'columns'}
        slim_def['columns'] = {f: copy.deepcopy(columns[f]) for f in table.fields if f in columns}
        slim[table.table_name] = slim_def
    return slim


class SchemaSelector:
    """Selects tables and fields with a structured LLM call (cached)."""

    TASK_TYPE = "schema_selection"

    def __init__(self, llm_provider: BaseLLMProvider,
                 model_selector: Optional[ModelSelector] = None,
                 cache: Optional[QueryCache] = None):
        self.llm_provider = llm_provider
        self.model_selector = model_selector or ModelSelector()
        self.cache = cache

    def select(self,
               query: str,
               schema: Dict[str, Any],
               schema_id: str,
               tables: List[str],
               fuzzy_patterns: Optional[List[str]] = None,
               vector_context: Optional[VectorContext] = None,
               indexed_fields: Optional[List[str]] = None,
               use_cache: bool = True
              ) -> SchemaSelection:
        """
        Select the schema subset for a query.

        Args:
            query: Natural language query
            schema: Schema already filtered to the analyzer's tables
            schema_id: Registry id (part of the cache key)
            tables: Tables pre-selected by the analyzer
            fuzzy_patterns: LIKE patterns suggested by the analyzer
            vector_context: Vector search findings, when available
            indexed_fields: Indexed "table.column" names from schema metadata
            use_cache: Read and write the selection cache

        Returns:
            SchemaSelection
        """
        fuzzy_patterns = fuzzy_patterns or []
        vector_ids = list(vector_context.ids) if vector_context and vector_context.has_results else []

        cache_key = make_cache_key({
            'query': query,
            'schema_id': schema_id,
            'tables': tables,
            'fuzzy_patterns': fuzzy_patterns,
            'vector_ids': vector_ids
        })
        if use_cache and self.cache:
            cached = self.cache.get(CacheNamespace.SCHEMA_SELECTION, cache_key)
            if cached is not None:
                logger.info("Using cached schema selection")
                return SchemaSelection.model_validate(cached)

        request = StructuredRequest(
            system_prompt=SCHEMA_SELECTION_SYSTEM_PROMPT.format(
                query=query,
                tables=", ".join(tables) or "(none)",
                fuzzy=f"Fuzzy search patterns: {', '.join(fuzzy_patterns)}" if fuzzy_patterns else "",
                vector_context=self._vector_context_prompt(vector_context),
                schema=json.dumps(schema, indent=2)
            ),
            user_prompt="Select the necessary tables and fields.",
            output_model=SchemaSelectionOutput
        )

        outcome = self.model_selector.execute_with_rollback(
            self.TASK_TYPE,
            lambda model: self.llm_provider.generate_object(request.for_model(model)),
            SelectionOptions(complexity="medium")
        )
        output: SchemaSelectionOutput = outcome.result

        # Only tables that exist in the given schema survive
        selected = [t for t in output.selected_tables if t.table_name in schema]
        if not selected:
            logger.warning("Schema selector chose no known tables, using analyzer tables")
            selected = [SelectedTable(table_name=t, reason="pre-selected") for t in tables if t in schema]

        hints = output.sql_hints.model_copy(deep=True)
        for field_name in indexed_fields or []:
            if field_name.split(".", 1)[0] in schema and field_name not in hints.indexed_fields:
                hints.indexed_fields.append(field_name)
        hints.fuzzy_patterns = list(dict.fromkeys(hints.fuzzy_patterns + fuzzy_patterns))
        hints.vector_ids = vector_ids

        slim_schema = build_slim_schema(schema, selected)
        selection = SchemaSelection(
            selected_tables=selected,
            slim_schema=slim_schema,
            compression_ratio=round(len(slim_schema) / len(schema), 3) if schema else 0.0,
            sql_hints=hints
        )

        logger.info(
            f"Schema selection complete: {len(selected)} tables, "
            f"{sum(len(t.fields) for t in selected)} fields, "
            f"compression={selection.compression_ratio:.2f}"
        )

        if use_cache and self.cache:
            self.cache.set(CacheNamespace.SCHEMA_SELECTION, cache_key, selection.model_dump(mode="json"))
        return selection

    @staticmethod
    def _vector_context_prompt(vector_context: Optional[VectorContext]) -> str:
        if not vector_context or not vector_context.has_results:
            return ""
        ids = vector_context.ids
        id_list = ", ".join(str(i) for i in ids[:10]) + ("..." if len(ids) > 10 else "")
        matches = ", ".join(f"{m.matched_field}({m.score:.2f})" for m in vector_context.top_matches)
        return (
            f"Vector search found {len(ids)} related records.\n"
            f"IDs: {id_list}\n"
            f"Top matches: {matches}\n"
            "Consider using these IDs in a WHERE ... IN condition or as part of a JOIN."
        )
