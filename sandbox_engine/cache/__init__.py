"""
Cache Module for the sandbox engine

Optional Redis memoization of successful execution results.
"""

from .result_cache import DEFAULT_KEY_PREFIX, ResultCache, make_cache_key

__all__ = [
    "DEFAULT_KEY_PREFIX",
    "ResultCache",
    "make_cache_key",
]
