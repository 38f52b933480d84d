"""
Conflict resolution strategies.
"""

from .builtin import BUILTIN_STRATEGIES, create_default_strategy_registry
from .context import StrategyContext
from .models import PolicyResolution, ResolutionStrategy
from .registry import StrategyRegistry, fallback_resolution

__all__ = [
    "BUILTIN_STRATEGIES",
    "PolicyResolution",
    "ResolutionStrategy",
    "StrategyContext",
    "StrategyRegistry",
    "create_default_strategy_registry",
    "fallback_resolution",
]
