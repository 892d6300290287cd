# Tests for Query Context management
"""
Tests for per-query contexts and the background sweeper.
"""

import time

import pytest

from hybridsql.engine.models import RoutingDecision, RoutingStrategy, SchemaReference, VectorContext
from hybridsql.engine.query_context import ContextSweeper, QueryContextManager


REF = SchemaReference(schema_id="abc123")


class TestQueryContextManager:

    def test_create_defaults_to_rejected(self):
        """Test a new context starts with rejected routing."""
        manager = QueryContextManager()
        context = manager.create("q1", "top companies", REF)
        assert context.routing.strategy == RoutingStrategy.REJECTED
        assert context.routing.confidence == 0.0
        assert context.steps == []
        assert manager.get("q1") is context

    def test_update_replaces_whole_fields(self):
        """Test update replaces fields wholesale."""
        manager = QueryContextManager()
        manager.create("q1", "query", REF)
        vector_context = VectorContext(has_results=True, ids=[1, 2])
        updated = manager.update(
            "q1",
            routing=RoutingDecision(RoutingStrategy.HYBRID, 0.8),
            vector_context=vector_context
        )
        assert updated.routing.strategy == RoutingStrategy.HYBRID
        assert updated.vector_context is vector_context

    def test_update_unknown_field(self):
        """Test unknown fields raise AttributeError."""
        manager = QueryContextManager()
        manager.create("q1", "query", REF)
        with pytest.raises(AttributeError):
            manager.update("q1", not_a_field=1)

    def test_update_unknown_id(self):
        """Test updating an unknown id returns None."""
        assert QueryContextManager().update("missing", steps=[]) is None

    def test_add_step(self):
        """Test steps are appended in order."""
        manager = QueryContextManager()
        manager.create("q1", "query", REF)
        manager.add_step("q1", "classify")
        manager.add_step("q1", "sql_build")
        assert manager.get("q1").steps == ["classify", "sql_build"]

    def test_delete(self):
        """Test delete removes the context."""
        manager = QueryContextManager()
        manager.create("q1", "query", REF)
        manager.delete("q1")
        assert manager.get("q1") is None
        assert len(manager) == 0

    def test_cleanup_removes_only_old_contexts(self):
        """Test cleanup removes only contexts older than max age."""
        manager = QueryContextManager()
        old = manager.create("old", "query", REF)
        old.created_at = time.time() - 7200
        manager.create("new", "query", REF)

        assert manager.cleanup(max_age_ms=3_600_000) == 1
        assert manager.get("old") is None
        assert manager.get("new") is not None


class TestContextSweeper:

    def test_sweeper_removes_expired_contexts(self):
        """Test the sweeper thread cleans up on its interval."""
        manager = QueryContextManager()
        old = manager.create("old", "query", REF)
        old.created_at = time.time() - 10

        sweeper = ContextSweeper(manager, interval_seconds=0.05, max_age_ms=1000)
        sweeper.start()
        try:
            deadline = time.time() + 2
            while manager.get("old") is not None and time.time() < deadline:
                time.sleep(0.02)
        finally:
            sweeper.stop()

        assert manager.get("old") is None
        assert not sweeper.running

    def test_start_is_idempotent(self):
        """Test starting the sweeper twice runs one thread."""
        sweeper = ContextSweeper(QueryContextManager(), interval_seconds=60)
        sweeper.start()
        thread = sweeper._thread
        sweeper.start()
        assert sweeper._thread is thread
        sweeper.stop()
