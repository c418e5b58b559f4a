"""Cache for login state, OIDC discovery/JWKS and brute-force counters."""

from grc_idp.cache.backend import (
    CacheBackend,
    InMemoryCacheBackend,
    RedisCacheBackend,
    get_cache_backend,
)

__all__ = ["CacheBackend", "InMemoryCacheBackend", "RedisCacheBackend", "get_cache_backend"]
