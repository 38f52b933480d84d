"""
Named, dependency-aware, cached attribute resolution.
"""

import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union
from urllib.parse import quote

from shared.errors import (
    AttributeNotFoundError, AttributeResolutionFailure, ConfigurationError,
    CyclicDependencyError, EvaluationTimeout, PolicyEngineException
)
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rules.models import AttributeResolutionContext
from .cache import AttributeCache, InMemoryAttributeCache


DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_CACHE_PREFIX = "attr:"

ComputeFunction = Callable[[AttributeResolutionContext], Union[Any, Awaitable[Any]]]


def _encode(key_part: str) -> str:
    return quote(key_part, safe="")


class SecurityLevel(str, Enum):
    """Sensitivity of a resolved attribute."""
    PUBLIC = "public"
    INTERNAL = "internal"
    SENSITIVE = "sensitive"
    RESTRICTED = "restricted"


@dataclass
class AttributeResolver:
    """A named computation over a resolution context.

    ``compute`` may be a plain function or a coroutine function; plain
    functions run in a worker thread so blocking lookups stay under the
    resolution timeout.
    ``cache_timeout`` is in milliseconds; resolvers without one are never cached.
    """
    name: str
    compute: ComputeFunction
    description: str = ""
    depends_on: List[str] = field(default_factory=list)
    cache_timeout: Optional[int] = None
    security_level: SecurityLevel = SecurityLevel.INTERNAL


class AttributeResolverRegistry:
    """Registry of attribute resolvers with dependency resolution and caching."""

    def __init__(
        self,
        cache: Optional[AttributeCache] = None,
        metrics: Optional[MetricsCollector] = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        cache_prefix: str = DEFAULT_CACHE_PREFIX
    ):
        self.cache = cache if cache is not None else InMemoryAttributeCache()
        self.metrics = metrics
        self.timeout_seconds = timeout_seconds
        self.cache_prefix = cache_prefix
        self.logger = get_logger("policy_resolver.attribute_registry")

        self._resolvers: Dict[str, AttributeResolver] = {}

    def register(self, resolver: AttributeResolver) -> None:
        """Register a resolver, replacing any existing one with the same name."""
        if not resolver.name:
            raise ConfigurationError("Attribute resolver must have a name")
        if resolver.cache_timeout is not None and resolver.cache_timeout <= 0:
            raise ConfigurationError(
                f"Invalid cache timeout for attribute {resolver.name}",
                {"attribute": resolver.name, "cache_timeout": resolver.cache_timeout}
            )

        self._resolvers[resolver.name] = resolver
        self.logger.debug(
            "Attribute resolver registered",
            attribute=resolver.name,
            depends_on=resolver.depends_on,
            cache_timeout=resolver.cache_timeout
        )

    def unregister(self, name: str) -> bool:
        """Remove a resolver. Returns False when it was not registered."""
        return self._resolvers.pop(name, None) is not None

    def get(self, name: str) -> Optional[AttributeResolver]:
        return self._resolvers.get(name)

    def names(self) -> List[str]:
        return list(self._resolvers)

    def __contains__(self, name: str) -> bool:
        return name in self._resolvers

    async def resolve(
        self,
        name: str,
        context: AttributeResolutionContext,
        timeout: Optional[float] = None
    ) -> Any:
        """Resolve one attribute.

        Dependencies missing from ``context.computed_attributes`` are resolved
        first and written back into it. Raises AttributeNotFoundError for an
        unknown name, CyclicDependencyError when the dependency walk loops,
        EvaluationTimeout when a compute exceeds its deadline and
        AttributeResolutionFailure when a compute raises.
        """
        return await self._resolve(name, context, [], timeout)

    async def _resolve(
        self,
        name: str,
        context: AttributeResolutionContext,
        chain: List[str],
        timeout: Optional[float]
    ) -> Any:
        resolver = self._resolvers.get(name)
        if resolver is None:
            raise AttributeNotFoundError(name)

        if name in chain:
            raise CyclicDependencyError(chain[chain.index(name):] + [name])

        cache_key = self._cache_key(name, context)
        if resolver.cache_timeout:
            entry = await self.cache.get(cache_key)
            if entry is not None:
                self.logger.debug("Attribute cache hit", attribute=name, user_id=context.user_id)
                self._count("attribute_cache_hits_total")
                return entry.value
            self._count("attribute_cache_misses_total")

        chain = chain + [name]
        for dependency in resolver.depends_on:
            if dependency not in context.computed_attributes:
                context.computed_attributes[dependency] = await self._resolve(
                    dependency, context, chain, timeout
                )

        value = await self._compute(resolver, context, timeout)

        if resolver.cache_timeout:
            await self.cache.set(cache_key, value, resolver.cache_timeout)

        self._count("attribute_resolutions_total", status="success")
        return value

    async def _compute(
        self,
        resolver: AttributeResolver,
        context: AttributeResolutionContext,
        timeout: Optional[float]
    ) -> Any:
        timeout = self.timeout_seconds if timeout is None else timeout

        try:
            if inspect.iscoroutinefunction(resolver.compute):
                pending = resolver.compute(context)
            else:
                pending = asyncio.to_thread(resolver.compute, context)

            result = await asyncio.wait_for(pending, timeout=timeout)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=timeout)
            return result

        except asyncio.TimeoutError:
            self._count("attribute_resolutions_total", status="timeout")
            raise EvaluationTimeout(
                f"Attribute {resolver.name} timed out after {timeout}s",
                {"attribute": resolver.name, "timeout_seconds": timeout}
            )
        except PolicyEngineException:
            raise
        except Exception as e:
            self._count("attribute_resolutions_total", status="failure")
            raise AttributeResolutionFailure(resolver.name, e) from e

    async def resolve_many(
        self,
        names: List[str],
        context: AttributeResolutionContext,
        timeout: Optional[float] = None
    ) -> Dict[str, Any]:
        """Resolve several attributes concurrently.

        A failing attribute maps to None and is logged; the rest of the batch
        is unaffected.
        """
        results = await asyncio.gather(
            *(self.resolve(name, context, timeout) for name in names),
            return_exceptions=True
        )

        resolved: Dict[str, Any] = {}
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                self.logger.error(
                    "Failed to resolve attribute",
                    attribute=name,
                    error=str(result),
                    error_type=type(result).__name__
                )
                if self.metrics:
                    self.metrics.record_error(type(result).__name__)
                resolved[name] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                resolved[name] = result

        return resolved

    async def clear_cache(self, user_id: Optional[str] = None) -> int:
        """Drop cached values for one user, or for everyone."""
        prefix = self.cache_prefix
        if user_id:
            prefix += f"{_encode(user_id)}:"
        cleared = await self.cache.clear_prefix(prefix)

        self.logger.info("Attribute cache cleared", user_id=user_id, entries=cleared)
        return cleared

    def _cache_key(self, name: str, context: AttributeResolutionContext) -> str:
        return f"{self.cache_prefix}{_encode(context.user_id)}:{_encode(context.session_id)}:{name}"

    def _count(self, metric_name: str, **labels) -> None:
        if self.metrics:
            self.metrics.increment_counter(metric_name, **labels)
