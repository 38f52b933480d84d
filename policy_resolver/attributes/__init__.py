"""
Attribute resolution: registry, cache services and built-in resolvers.
"""

from .builtin import register_builtin_resolvers
from .cache import AttributeCache, CacheEntry, InMemoryAttributeCache, RedisAttributeCache
from .registry import AttributeResolver, AttributeResolverRegistry, SecurityLevel

__all__ = [
    "AttributeCache",
    "AttributeResolver",
    "AttributeResolverRegistry",
    "CacheEntry",
    "InMemoryAttributeCache",
    "RedisAttributeCache",
    "SecurityLevel",
    "register_builtin_resolvers",
]
