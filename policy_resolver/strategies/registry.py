"""
Ordered registry of conflict resolution strategies.
"""

import inspect
from typing import Dict, List, Optional

from shared.errors import ConfigurationError, EvaluationTimeout, StrategyFailure
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..conflicts.models import ConflictType, PolicyConflict
from ..rules.models import PolicyEffect
from .context import StrategyContext
from .models import PolicyResolution, ResolutionStrategy


FALLBACK_STRATEGY = "fallback"
FALLBACK_CONFIDENCE = 0.3


def fallback_resolution(conflict: PolicyConflict) -> PolicyResolution:
    return PolicyResolution(
        decision=PolicyEffect.DENY,
        reason="No applicable resolution strategy found - defaulting to deny",
        confidence=FALLBACK_CONFIDENCE,
        applied_strategy=FALLBACK_STRATEGY,
        resolved_conflicts=(conflict.id,)
    )


class StrategyRegistry:
    """Strategies tried in descending priority; the first that returns wins."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self.metrics = metrics
        self.logger = get_logger("policy_resolver.strategy_registry")
        self._strategies: Dict[str, ResolutionStrategy] = {}

    def register(self, strategy: ResolutionStrategy) -> None:
        """Add a strategy, replacing any existing one with the same name."""
        if not strategy.name:
            raise ConfigurationError("Resolution strategy must have a name")
        if strategy.name == FALLBACK_STRATEGY:
            raise ConfigurationError(f"Strategy name '{FALLBACK_STRATEGY}' is reserved")

        self._strategies[strategy.name] = strategy

    def unregister(self, name: str) -> bool:
        return self._strategies.pop(name, None) is not None

    def get(self, name: str) -> Optional[ResolutionStrategy]:
        return self._strategies.get(name)

    def strategies(self) -> List[ResolutionStrategy]:
        """All strategies, highest priority first; ties keep registration order."""
        return sorted(self._strategies.values(), key=lambda s: s.priority, reverse=True)

    def applicable_to(self, conflict_type: ConflictType) -> List[ResolutionStrategy]:
        return [strategy for strategy in self.strategies() if strategy.applies_to(conflict_type)]

    async def resolve(self, conflict: PolicyConflict, context: StrategyContext) -> PolicyResolution:
        """Resolve one conflict.

        A strategy that raises is logged and skipped. When every applicable
        strategy fails, or none applies, the conflict resolves to deny with
        confidence 0.3.
        """
        for strategy in self.applicable_to(conflict.type):
            if context.expired():
                raise EvaluationTimeout(
                    "Deadline exceeded while resolving conflicts",
                    {"conflict_id": conflict.id, "strategy": strategy.name}
                )

            try:
                resolution = strategy.resolve(conflict, context)
                if inspect.isawaitable(resolution):
                    resolution = await resolution

            except Exception as e:
                failure = StrategyFailure(strategy.name, conflict.id, e)
                self.logger.warning(
                    "Resolution strategy failed",
                    strategy=strategy.name,
                    conflict_id=conflict.id,
                    error=str(e)
                )
                if self.metrics:
                    self.metrics.increment_counter("strategy_failures_total", strategy=strategy.name)
                    self.metrics.record_error(failure.code)
                continue

            self._record(resolution)
            return resolution

        self.logger.warning(
            "No resolution strategy succeeded, applying fallback",
            conflict_id=conflict.id,
            conflict_type=conflict.type.value
        )
        resolution = fallback_resolution(conflict)
        self._record(resolution)
        return resolution

    def _record(self, resolution: PolicyResolution) -> None:
        if self.metrics:
            self.metrics.increment_counter(
                "resolutions_total",
                strategy=resolution.applied_strategy,
                decision=resolution.decision.value
            )
