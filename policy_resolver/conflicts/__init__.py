"""
Conflict detection.
"""

from .detector import ConflictDetector, detect_conflicts, rules_contradict
from .models import (
    ConflictContext, ConflictingRule, ConflictType, PolicyConflict, SEVERITY_WEIGHTS, Severity
)

__all__ = [
    "ConflictContext",
    "ConflictDetector",
    "ConflictType",
    "ConflictingRule",
    "PolicyConflict",
    "SEVERITY_WEIGHTS",
    "Severity",
    "detect_conflicts",
    "rules_contradict",
]
