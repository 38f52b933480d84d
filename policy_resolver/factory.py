"""
Wiring for a ready-to-use policy combiner.
"""

from typing import Optional

from shared.config import PolicyEngineSettings, get_settings
from shared.errors import ConfigurationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector, get_metrics_collector
from .attributes.builtin import register_builtin_resolvers
from .attributes.cache import AttributeCache, InMemoryAttributeCache, RedisAttributeCache
from .attributes.registry import AttributeResolverRegistry
from .combiner.combiner import PolicyCombiner
from .conflicts.detector import ConflictDetector
from .expressions.sandbox import ExpressionSandbox
from .rules.conditions import RuleMatcher
from .strategies.builtin import create_default_strategy_registry


logger = get_logger("policy_resolver.factory")


def create_attribute_cache(settings: PolicyEngineSettings) -> AttributeCache:
    backend = settings.attribute_cache_backend.lower()

    if backend == "memory":
        return InMemoryAttributeCache()
    elif backend == "redis":
        return RedisAttributeCache(redis_url=settings.redis_url)

    raise ConfigurationError(
        f"Unknown attribute cache backend: {settings.attribute_cache_backend}",
        {"backend": settings.attribute_cache_backend}
    )


def create_policy_combiner(
    settings: Optional[PolicyEngineSettings] = None,
    metrics: Optional[MetricsCollector] = None
) -> PolicyCombiner:
    """Build a combiner with the built-in strategies and attribute resolvers.

    Pass a ``MetricsCollector`` bound to the host's ``CollectorRegistry`` to
    export metrics; otherwise an unregistered collector is used when metrics
    are enabled.
    """
    settings = settings or get_settings()

    if metrics is None and settings.enable_metrics:
        metrics = get_metrics_collector("policy_resolver")

    sandbox = ExpressionSandbox(
        timeout_ms=settings.expression_timeout_ms,
        max_length=settings.max_expression_length,
        max_depth=settings.max_nesting_depth,
        metrics=metrics
    )

    attributes = register_builtin_resolvers(AttributeResolverRegistry(
        cache=create_attribute_cache(settings),
        metrics=metrics,
        timeout_seconds=settings.attribute_timeout_seconds,
        cache_prefix=settings.attribute_cache_prefix
    ))

    combiner = PolicyCombiner(
        detector=ConflictDetector(matcher=RuleMatcher(sandbox), metrics=metrics),
        strategies=create_default_strategy_registry(metrics),
        attributes=attributes,
        sandbox=sandbox,
        metrics=metrics,
        default_mode=settings.default_combination_mode,
        default_evaluation_mode=settings.default_evaluation_mode,
        timeout=settings.combine_timeout_seconds
    )

    logger.info(
        "Policy combiner created",
        env=settings.env,
        combination_mode=settings.default_combination_mode,
        cache_backend=settings.attribute_cache_backend,
        attribute_resolvers=len(attributes.names())
    )
    return combiner
