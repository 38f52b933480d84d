"""
Combination output models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, Tuple

from ..conflicts.models import PolicyConflict
from ..rules.models import PolicyEffect
from ..strategies.models import PolicyResolution


@dataclass(frozen=True)
class EvaluationStep:
    """One traced pipeline stage. ``duration`` is milliseconds since combine() started."""
    step: str
    component: str
    evaluation: str
    timestamp: datetime
    duration: float
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PolicyCombinationResult:
    """Final decision with the conflicts and resolutions behind it."""
    final_decision: PolicyEffect
    combination_strategy: str
    confidence: float
    conflicts: Tuple[PolicyConflict, ...] = ()
    resolutions: Tuple[PolicyResolution, ...] = ()
    applied_policies: Tuple[str, ...] = ()
    evaluation_path: Tuple[EvaluationStep, ...] = ()
    warnings: Tuple[str, ...] = ()
    recommendations: Tuple[str, ...] = ()

    @property
    def allowed(self) -> bool:
        return self.final_decision == PolicyEffect.ALLOW
