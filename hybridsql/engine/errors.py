# HybridSQL - Error Taxonomy
# ==========================
"""
Pipeline Errors
===============
Exception classes raised by the engine layers.

Every error carries a ``context`` dict (task type, strategy, query id, ...)
so that lower layers never hand an opaque failure upward.
"""

from typing import Any, Dict, List, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = dict(context or {})
        super().__init__(message)


# =============================================================================
# CLASSIFICATION
# =============================================================================

class ClassificationRejected(PipelineError):
    """Raised when the classifier decides a query cannot be answered."""

    def __init__(self, reason: str, suggestions: Optional[List[str]] = None):
        self.reason = reason
        self.suggestions = suggestions or []
        super().__init__(f"Query rejected: {reason}")


# =============================================================================
# GENERATION
# =============================================================================

class GenerationError(PipelineError):
    """Raised when a model returns malformed output or the backend faults."""

    def __init__(self, model: str, reason: str, context: Optional[Dict[str, Any]] = None):
        self.model = model
        self.reason = reason
        super().__init__(
            f"The model ({model}) could not produce a valid response. Reason: {reason}",
            context
        )


class ModelRollbackExhausted(PipelineError):
    """Raised when every model in the rollback hierarchy has failed."""

    def __init__(self, task_type: str, attempts: int, last_error: Optional[BaseException]):
        self.task_type = task_type
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"All models failed for task '{task_type}' after {attempts} attempt(s). "
            f"Last error: {last_error}",
            {'task_type': task_type}
        )


# =============================================================================
# EXECUTION
# =============================================================================

class ExecutionFailure(PipelineError):
    """Raised when a single SQL statement fails to execute."""

    def __init__(self, sql: str, reason: str, context: Optional[Dict[str, Any]] = None):
        self.sql = sql
        self.reason = reason
        super().__init__(f"SQL execution failed: {reason}", context)


class ExecutionServiceUnavailable(PipelineError):
    """Raised when the SQL execution service itself cannot be reached."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(
            f"The SQL execution service is unavailable: {reason}. "
            "No candidate could be executed."
        )


class VectorSearchFailure(PipelineError):
    """Raised when no vector search could be performed at all."""

    def __init__(self, reason: str, context: Optional[Dict[str, Any]] = None):
        self.reason = reason
        super().__init__(f"Vector search failed: {reason}", context)


# =============================================================================
# BACKENDS
# =============================================================================

class BackendUnavailable(PipelineError):
    """A shared backend (cache, registry store) could not be used."""

    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"Backend '{backend}' unavailable: {reason}")


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationFailure(PipelineError):
    """Raised when input or SQL fails validation. Never auto-corrected."""

    def __init__(self, errors: List[str], context: Optional[Dict[str, Any]] = None):
        self.errors = list(errors)
        super().__init__(f"Validation failed: {'; '.join(self.errors)}", context)


class SchemaParseError(ValidationFailure):
    """Raised when a schema description is not valid JSON or not shaped like a schema."""

    def __init__(self, reason: str):
        super().__init__([f"Invalid schema: {reason}"])


# =============================================================================
# ENSEMBLE / ORCHESTRATION
# =============================================================================

class EnsembleBuildError(PipelineError):
    """Raised when no SQL candidate survives generation or execution."""

    def __init__(self, reason: str, candidates: Optional[List[Dict[str, Any]]] = None,
                 context: Optional[Dict[str, Any]] = None):
        self.reason = reason
        self.candidates = candidates or []
        super().__init__(f"Ensemble SQL build failed: {reason}", context)


class StageError(PipelineError):
    """Wraps a failure raised inside one orchestrator stage."""

    def __init__(self, stage: str, query_id: str, cause: BaseException):
        self.stage = stage
        self.query_id = query_id
        self.cause = cause
        super().__init__(
            f"Stage '{stage}' failed for query {query_id}: {cause}",
            {'stage': stage, 'query_id': query_id}
        )
