# HybridSQL - Query Context
# =========================
"""
Query Context
=============
Short-lived working memory for one in-flight query.

Each pipeline stage adds to the context of the query it owns. Contexts
are removed explicitly or by the ContextSweeper once they are older than
the configured age.
"""

import time
import logging
import threading
from dataclasses import fields
from typing import Dict, Optional

from .models import QueryContext, SchemaReference

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE_MS = 3_600_000  # 1 hour

_CONTEXT_FIELDS = {f.name for f in fields(QueryContext)}


class QueryContextManager:
    """
    Manages per-query contexts.

    One orchestrator invocation owns one query_id, so each context has a
    single writer. The map itself is shared and guarded by a lock.
    """

    def __init__(self):
        self._contexts: Dict[str, QueryContext] = {}
        self._lock = threading.Lock()

    def create(self, query_id: str, query: str, schema_ref: SchemaReference) -> QueryContext:
        """
        Create the context for a new query.

        Args:
            query_id: Unique query identifier
            query: Original natural-language query
            schema_ref: Registered schema reference

        Returns:
            New QueryContext with routing 'rejected' / 0.0
        """
        context = QueryContext(
            query_id=query_id,
            original_query=query,
            schema_ref=schema_ref,
            created_at=time.time()
        )
        with self._lock:
            self._contexts[query_id] = context
        logger.debug(f"Created context {query_id}")
        return context

    def get(self, query_id: str) -> Optional[QueryContext]:
        with self._lock:
            return self._contexts.get(query_id)

    def update(self, query_id: str, **updates) -> Optional[QueryContext]:
        """
        Shallow update: every given field replaces the whole attribute.

        Pass whole sub-objects (e.g. a complete VectorContext), never a
        single nested field.

        Returns:
            The updated context, or None if the id is unknown

        Raises:
            AttributeError: For a field QueryContext does not have
        """
        unknown = set(updates) - _CONTEXT_FIELDS
        if unknown:
            raise AttributeError(f"QueryContext has no field(s): {', '.join(sorted(unknown))}")

        context = self.get(query_id)
        if context is None:
            return None
        for name, value in updates.items():
            setattr(context, name, value)
        return context

    def add_step(self, query_id: str, step_name: str):
        """Append a stage name to the context's step log."""
        # Hybrid stages run concurrently for the same query
        with self._lock:
            context = self._contexts.get(query_id)
            if context is not None:
                context.steps.append(step_name)

    def delete(self, query_id: str):
        with self._lock:
            self._contexts.pop(query_id, None)

    def cleanup(self, max_age_ms: int = DEFAULT_MAX_AGE_MS) -> int:
        """
        Remove contexts older than max_age_ms.

        Returns:
            Number of contexts removed
        """
        cutoff = time.time() - max_age_ms / 1000.0
        with self._lock:
            expired = [qid for qid, ctx in self._contexts.items() if ctx.created_at < cutoff]
            for qid in expired:
                del self._contexts[qid]

        if expired:
            logger.info(f"Cleaned up {len(expired)} expired query contexts")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)


class ContextSweeper:
    """
    Background thread that calls QueryContextManager.cleanup periodically.

    Started and stopped by the pipeline's lifecycle, independent of requests.
    """

    def __init__(self, manager: QueryContextManager,
                 interval_seconds: float = 300.0,
                 max_age_ms: int = DEFAULT_MAX_AGE_MS):
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.max_age_ms = max_age_ms
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="query-context-sweeper", daemon=True
        )
        self._thread.start()
        logger.info(f"Context sweeper started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5.0):
        if not self.running:
            return
        self._stop_event.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Context sweeper stopped")

    def _run(self):
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.manager.cleanup(self.max_age_ms)
            except Exception as e:
                logger.error(f"Context sweep failed: {e}")
