# HybridSQL
"""
HybridSQL - adaptive natural-language query pipeline over SQL and vector search.
"""

__version__ = "0.1.0"
