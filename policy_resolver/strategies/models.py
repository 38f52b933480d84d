"""
Strategy descriptors and their output.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Tuple, Union, TYPE_CHECKING

from ..conflicts.models import ConflictType, PolicyConflict
from ..rules.models import PolicyEffect

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from .context import StrategyContext


@dataclass(frozen=True)
class PolicyResolution:
    """One strategy's adjudication of one conflict."""
    decision: PolicyEffect
    reason: str
    confidence: float
    applied_strategy: str
    resolved_conflicts: Tuple[str, ...]
    metadata: Dict[str, Any] = field(default_factory=dict)


ResolveFunction = Callable[
    [PolicyConflict, "StrategyContext"],
    Union[PolicyResolution, Awaitable[PolicyResolution]]
]


@dataclass(frozen=True)
class ResolutionStrategy:
    """A named resolver for the conflict types it declares."""
    name: str
    description: str
    applicable_conflict_types: FrozenSet[ConflictType]
    priority: int
    resolve: ResolveFunction

    def applies_to(self, conflict_type: ConflictType) -> bool:
        return conflict_type in self.applicable_conflict_types
