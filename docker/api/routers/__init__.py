# HybridSQL API Routers
# =====================
"""API route handlers for the query service."""

from . import query
from . import system

__all__ = [
    'query',
    'system',
]
