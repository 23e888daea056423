"""
HTTP request layer.

All backend calls share one executor so that caching, deduplication, rate
limiting and abort apply across components.
"""

from .request_executor import ApiResult, RequestExecutor, RequestOptions, make_cache_key

__all__ = [
    "ApiResult",
    "RequestExecutor",
    "RequestOptions",
    "make_cache_key",
]
