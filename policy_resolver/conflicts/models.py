"""
Conflict report models.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Optional, Tuple

from ..rules.models import AttributeCondition, PolicyEffect


class ConflictType(str, Enum):
    """Kinds of structural conflict."""
    EFFECT_CONFLICT = "effect_conflict"
    PRIORITY_OVERLAP = "priority_overlap"
    RULE_CONTRADICTION = "rule_contradiction"
    SCOPE_AMBIGUITY = "scope_ambiguity"
    TEMPORAL_CONFLICT = "temporal_conflict"


class Severity(str, Enum):
    """Conflict severity."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_WEIGHTS: Dict[Severity, int] = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}


@dataclass(frozen=True)
class ConflictingRule:
    """One side of a rule-level conflict."""
    policy_id: str
    rule_id: str
    effect: PolicyEffect
    priority: int
    conditions: Tuple[AttributeCondition, ...]
    specificity: int
    matches_request: Optional[bool] = None


@dataclass(frozen=True)
class ConflictContext:
    """Request details and the rules behind a conflict."""
    resource: Optional[str] = None
    action: Optional[str] = None
    subject: Optional[Dict[str, Any]] = None
    environment: Optional[Dict[str, Any]] = None
    conflicting_rules: Tuple[ConflictingRule, ...] = ()


@dataclass(frozen=True)
class PolicyConflict:
    """A detected conflict. ``detected_at`` does not take part in equality."""
    id: str
    type: ConflictType
    severity: Severity
    description: str
    suggested_resolution: str
    auto_resolvable: bool
    involved_policies: Tuple[str, ...] = ()
    involved_roles: Tuple[str, ...] = ()
    involved_permissions: Tuple[str, ...] = ()
    context: Optional[ConflictContext] = None
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)

    @property
    def severity_weight(self) -> int:
        return SEVERITY_WEIGHTS[self.severity]
