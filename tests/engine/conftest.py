# Pytest configuration for engine tests
"""
Fixtures for engine tests.
"""

import json
import sys
from pathlib import Path

import duckdb
import pytest

# Add project root to path
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

# Load environment variables from .env file
from dotenv import load_dotenv
env_path = project_root / '.env'
if env_path.exists():
    load_dotenv(env_path)

from hybridsql.engine.cache import CacheConfig, QueryCache
from hybridsql.engine.ensemble_builder import GeneratedSQL
from hybridsql.engine.executor import SQLExecutor
from hybridsql.engine.llm_providers import MockProvider
from hybridsql.engine.model_selector import ModelSelector
from hybridsql.engine.models import Vote
from hybridsql.engine.vector_search import (
    DeterministicHashEmbedding,
    InMemoryVectorSearch,
    VectorConfig,
    VectorSearcher,
)


SAMPLE_SCHEMA = {
    "companies": {
        "description": "Registered companies",
        "columns": {
            "id": {"type": "INTEGER", "primaryKey": True},
            "name": {"type": "VARCHAR", "indexed": True},
            "industry": {"type": "VARCHAR"},
            "country": {"type": "VARCHAR"},
            "description": {"type": "VARCHAR", "vectorized": True},
        }
    },
    "orders": {
        "description": "Customer orders",
        "columns": {
            "id": {"type": "INTEGER", "primaryKey": True},
            "company_id": {"type": "INTEGER"},
            "amount": {"type": "DOUBLE"},
            "created_at": {"type": "TIMESTAMP"},
        }
    },
    "reviews": {
        "columns": ["id", "company_id", "body"],
        "vectorizedFields": ["body"]
    }
}

COMPANY_ROWS = [
    (1, "Acme Robotics", "robotics", "NO", "Industrial robots for warehouses"),
    (2, "Blue Fjord Foods", "food", "NO", "Seafood processing and export"),
    (3, "Cobalt Analytics", "software", "SE", "Data analytics platform"),
    (4, "Delta Freight", "logistics", "DK", "Container shipping and freight"),
    (5, "Evergreen Energy", "energy", "NO", "Offshore wind installations"),
]

ORDER_ROWS = [
    (101, 1, 2500.0, "2024-01-15 10:00:00"),
    (102, 1, 1200.0, "2024-02-01 09:30:00"),
    (103, 3, 800.0, "2024-02-11 14:00:00"),
    (104, 5, 15000.0, "2024-03-03 08:15:00"),
]


@pytest.fixture
def sample_schema():
    """Provide the sample schema dict."""
    return json.loads(json.dumps(SAMPLE_SCHEMA))


@pytest.fixture
def sample_schema_text():
    """Provide the sample schema as JSON text."""
    return json.dumps(SAMPLE_SCHEMA)


@pytest.fixture
def duckdb_conn():
    """In-memory DuckDB database holding the sample tables."""
    conn = duckdb.connect(":memory:")
    conn.execute(
        "CREATE TABLE companies (id INTEGER, name VARCHAR, industry VARCHAR, "
        "country VARCHAR, description VARCHAR)"
    )
    conn.executemany("INSERT INTO companies VALUES (?, ?, ?, ?, ?)", COMPANY_ROWS)
    conn.execute("CREATE TABLE orders (id INTEGER, company_id INTEGER, amount DOUBLE, created_at TIMESTAMP)")
    conn.executemany("INSERT INTO orders VALUES (?, ?, ?, ?)", ORDER_ROWS)
    conn.execute("CREATE TABLE reviews (id INTEGER, company_id INTEGER, body VARCHAR)")
    yield conn
    conn.close()


@pytest.fixture
def sql_executor(duckdb_conn):
    """Executor sharing the in-memory connection."""
    return SQLExecutor(connection=duckdb_conn)


@pytest.fixture
def mock_provider():
    """Provide a MockProvider with no scripts."""
    return MockProvider()


@pytest.fixture
def memory_cache():
    """Provide an in-memory query cache."""
    return QueryCache(CacheConfig(backend="memory"))


@pytest.fixture
def model_selector():
    """Provide a fresh model selector."""
    return ModelSelector()


@pytest.fixture
def vector_service():
    """In-memory vector index with company descriptions."""
    embedder = DeterministicHashEmbedding()
    service = InMemoryVectorSearch()
    for company_id, name, industry, country, description in COMPANY_ROWS:
        service.upsert(
            "hybridsql-companies",
            company_id,
            {"description": embedder.embed_text(description)},
            {"id": company_id, "name": name, "country": country}
        )
    return service


@pytest.fixture
def vector_searcher(vector_service, memory_cache):
    """Searcher over the in-memory index."""
    return VectorSearcher(
        vector_service,
        DeterministicHashEmbedding(),
        VectorConfig(backend="memory", max_workers=2),
        memory_cache
    )


# ============================================
# Scripting helpers
# ============================================

def analysis_payload(strategy, tables=None, vector_queries=None,
                     feasible=True, reason="", suggestions=None, confidence=0.9):
    """Build a QueryAnalysis payload for MockProvider scripts."""
    payload = {
        "feasibility": {
            "is_feasible": feasible,
            "reason": reason or None,
            "suggested_alternatives": suggestions or []
        },
        "routing": {
            "strategy": strategy,
            "reason": reason or f"{strategy} fits",
            "confidence": confidence
        }
    }
    if tables is not None:
        payload["sql_config"] = {"tables": tables}
    if vector_queries is not None:
        payload["vector_config"] = {"queries": vector_queries}
    return payload


def sql_by_strategy(mapping):
    """
    GeneratedSQL script that answers per strategy.

    mapping: {BuildStrategy: sql string or Exception}
    """
    def respond(request):
        for strategy, sql in mapping.items():
            if f"with the {strategy.value.upper()} strategy" in request.system_prompt:
                if isinstance(sql, Exception):
                    raise sql
                return GeneratedSQL(sql=sql)
        raise AssertionError("generation prompt names no known strategy")
    return respond


def votes_for(strategy, confidence=0.8):
    """Vote script where every evaluator picks the same strategy."""
    return Vote(selected_strategy=strategy, reason=f"{strategy.value} looks right", confidence=confidence)


@pytest.fixture
def script_helpers():
    """Expose scripting helpers to tests."""
    class Helpers:
        analysis = staticmethod(analysis_payload)
        sql = staticmethod(sql_by_strategy)
        vote = staticmethod(votes_for)
    return Helpers
