# HybridSQL API Test Suite
# ========================
"""Tests for the HybridSQL FastAPI service."""

import json
import sys
from pathlib import Path

import pytest

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from fastapi.testclient import TestClient

# Import the FastAPI app
from docker.api.main import app

from hybridsql.engine import (
    BuildStrategy,
    CacheConfig,
    InMemoryVectorSearch,
    MockExecutor,
    MockProvider,
    PipelineConfig,
    QueryCache,
    QueryPipeline,
    VectorConfig,
    VectorSearcher,
    Vote,
)
from hybridsql.engine.ensemble_builder import GeneratedSQL
from hybridsql.engine.query_analyzer import QueryAnalysis
from hybridsql.engine.schema_selector import SchemaSelectionOutput
from hybridsql.engine.vector_search import DeterministicHashEmbedding

# No context manager: the lifespan would build a pipeline from the environment
client = TestClient(app)


# ============================================
# Test Fixtures and Helpers
# ============================================

SCHEMA = {
    "orders": {
        "columns": {
            "id": {"type": "INTEGER", "primaryKey": True},
            "amount": {"type": "DOUBLE"},
            "note": {"type": "VARCHAR", "vectorized": True},
        }
    }
}
SCHEMA_TEXT = json.dumps(SCHEMA)

ORDER_SQL = "SELECT id, amount FROM orders"


def analysis(strategy, **extra):
    payload = {
        "feasibility": {"is_feasible": strategy != "rejected", "reason": extra.get("reason")},
        "routing": {"strategy": strategy, "reason": "test", "confidence": 0.9},
    }
    if "tables" in extra:
        payload["sql_config"] = {"tables": extra["tables"]}
    return payload


@pytest.fixture
def provider():
    return MockProvider()


@pytest.fixture
def pipeline(provider):
    """Pipeline with scripted models installed on the app."""
    executor = MockExecutor()
    executor.set_mock_data("from orders", [{"id": 1, "amount": 10.0}, {"id": 2, "amount": 20.0}])
    searcher = VectorSearcher(
        InMemoryVectorSearch(),
        DeterministicHashEmbedding(),
        VectorConfig(backend="memory")
    )
    p = QueryPipeline(
        PipelineConfig(max_workers=2),
        cache=QueryCache(CacheConfig(backend="memory")),
        llm_provider=provider,
        executor=executor,
        vector_searcher=searcher
    ).start()
    app.state.pipeline = p
    yield p
    app.state.pipeline = None
    p.close()


def script_sql_only(provider):
    provider.script(QueryAnalysis, analysis("sql_only", tables=["orders"]))
    provider.script(SchemaSelectionOutput, {"selected_tables": [{"table_name": "orders", "fields": ["id", "amount"]}]})
    provider.script(GeneratedSQL, GeneratedSQL(sql=ORDER_SQL))
    provider.script(Vote, Vote(selected_strategy=BuildStrategy.BALANCED, reason="fits", confidence=0.9))


# ============================================
# Root Endpoint Tests
# ============================================

class TestRootEndpoints:
    """Test root-level API endpoints."""

    def test_root_endpoint(self):
        """Test root endpoint returns service info."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "HybridSQL API"

    def test_api_version_endpoint(self):
        """Test API version endpoint lists endpoints."""
        response = client.get("/api/v1")
        assert response.status_code == 200
        assert "query" in response.json()["endpoints"]


# ============================================
# Query Endpoint Tests
# ============================================

class TestQueryEndpoints:
    """Test the query and schema endpoints."""

    def test_query_with_full_schema(self, pipeline, provider):
        """Test a query with inline schema text."""
        script_sql_only(provider)

        response = client.post("/api/v1/query", json={
            "query": "List all orders",
            "full_schema_text": SCHEMA_TEXT
        })

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        assert body["strategy"] == "sql_only"
        assert body["row_count"] == 2
        assert body["metadata"]["sql"] == ORDER_SQL
        assert [s["name"] for s in body["metadata"]["steps"]] == [
            "classify", "schema_selection", "sql_build", "sql_execution"
        ]

    def test_query_with_schema_reference(self, pipeline, provider):
        """Test a query against a registered schema."""
        script_sql_only(provider)
        registered = client.post("/api/v1/schemas", json={"schema_text": SCHEMA_TEXT}).json()["data"]

        response = client.post("/api/v1/query", json={
            "query": "List all orders",
            "schema_reference": {"schema_id": registered["schema_id"]},
            "options": {"max_rows": 1}
        })

        assert response.status_code == 200
        assert response.json()["row_count"] == 1

    def test_rejected_query(self, pipeline, provider):
        """Test a rejected query returns the reason."""
        provider.script(QueryAnalysis, analysis("rejected", reason="weather is not in this database"))

        response = client.post("/api/v1/query", json={
            "query": "Will it rain?",
            "full_schema_text": SCHEMA_TEXT
        })

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "failed"
        assert body["strategy"] == "rejected"
        assert body["error"] == "weather is not in this database"

    def test_unknown_schema_reference(self, pipeline):
        """Test an unknown schema id fails the query."""
        response = client.post("/api/v1/query", json={
            "query": "List all orders",
            "schema_reference": {"schema_id": "deadbeef"}
        })
        body = response.json()
        assert body["status"] == "failed"
        assert "deadbeef" in body["error"]

    def test_query_requires_schema(self, pipeline):
        """Test a query without a schema is a 400."""
        response = client.post("/api/v1/query", json={"query": "List all orders"})
        assert response.status_code == 400

    def test_invalid_options_rejected(self, pipeline):
        """Test invalid options are a 422."""
        response = client.post("/api/v1/query", json={
            "query": "List all orders",
            "full_schema_text": SCHEMA_TEXT,
            "options": {"max_rows": 0}
        })
        assert response.status_code == 422

    def test_register_schema(self, pipeline):
        """Test schema registration returns metadata."""
        response = client.post("/api/v1/schemas", json={"schema_text": SCHEMA_TEXT})
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["tables"] == ["orders"]
        assert data["total_fields"] == 3
        assert data["vectorized_fields"] == {"orders": ["note"]}

    def test_register_invalid_schema(self, pipeline):
        """Test invalid schema text is a 400."""
        response = client.post("/api/v1/schemas", json={"schema_text": "{not json"})
        assert response.status_code == 400

    def test_pipeline_not_initialized(self):
        """Test requests fail with 503 before startup."""
        app.state.pipeline = None
        response = client.post("/api/v1/query", json={"query": "x", "full_schema_text": SCHEMA_TEXT})
        assert response.status_code == 503


# ============================================
# System Endpoint Tests
# ============================================

class TestSystemEndpoints:
    """Test health, cache and model endpoints."""

    def test_health(self, pipeline):
        """Test health reports every service up."""
        response = client.get("/api/v1/system/health")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "healthy"
        assert data["services"] == {"llm": True, "database": True, "sweeper": True}

    def test_health_degraded(self, pipeline):
        """Test health is degraded when the database is down."""
        pipeline.executor.unavailable = True
        data = client.get("/api/v1/system/health").json()["data"]
        assert data["status"] == "degraded"

    def test_cache_stats(self, pipeline):
        """Test cache statistics endpoint."""
        response = client.get("/api/v1/system/cache/stats")
        assert response.status_code == 200
        assert "query_analysis" in response.json()["data"]["namespaces"]

    def test_clear_cache_namespace(self, pipeline, provider):
        """Test clearing one cache namespace."""
        script_sql_only(provider)
        client.post("/api/v1/query", json={"query": "List all orders", "full_schema_text": SCHEMA_TEXT})

        response = client.delete("/api/v1/system/cache/query_analysis")

        assert response.status_code == 200
        assert response.json()["data"] == {"namespace": "query_analysis", "removed": 1}

    def test_clear_all_caches(self, pipeline):
        """Test clearing every cache namespace."""
        response = client.delete("/api/v1/system/cache/all")
        assert response.status_code == 200
        assert response.json()["data"]["namespace"] == "all"

    def test_clear_unknown_namespace(self, pipeline):
        """Test an unknown namespace is a 404."""
        response = client.delete("/api/v1/system/cache/sessions")
        assert response.status_code == 404

    def test_model_stats(self, pipeline, provider):
        """Test model statistics for a task type."""
        script_sql_only(provider)
        client.post("/api/v1/query", json={"query": "List all orders", "full_schema_text": SCHEMA_TEXT})

        data = client.get("/api/v1/system/models/stats/sql_vote").json()["data"]

        assert data["task_type"] == "sql_vote"
        assert sum(m["attempts"] for m in data["models"].values()) == 3
        assert "sql_vote" in data["known_task_types"]
        assert len(data["hierarchy"]) == 4
