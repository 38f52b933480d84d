"""
Hybrid RBAC/ABAC policy conflict detection and resolution.

Typical use::

    combiner = create_policy_combiner()
    result = await combiner.combine(resolution_context)
    result.final_decision, result.confidence, result.warnings
"""

from .combiner import EvaluationStep, PolicyCombinationResult, PolicyCombiner
from .attributes import (
    AttributeResolver, AttributeResolverRegistry, InMemoryAttributeCache, RedisAttributeCache
)
from .conflicts import ConflictDetector, ConflictType, PolicyConflict, Severity, detect_conflicts
from .expressions import ExpressionContext, ExpressionResult, ExpressionSandbox, ExpressionTemplateProcessor
from .factory import create_policy_combiner
from .rules.models import (
    AccessRequest, AttributeCondition, AttributeResolutionContext, ClientInfo,
    CombinationMode, ConditionOperator, HybridPolicyConfig, Permission, Policy,
    PolicyEffect, PolicyRule, PolicyStatus, ResolutionContext, Role
)
from .strategies import PolicyResolution, ResolutionStrategy, StrategyContext, StrategyRegistry

__all__ = [
    "AccessRequest",
    "AttributeCondition",
    "AttributeResolutionContext",
    "AttributeResolver",
    "AttributeResolverRegistry",
    "ClientInfo",
    "CombinationMode",
    "ConditionOperator",
    "ConflictDetector",
    "ConflictType",
    "EvaluationStep",
    "ExpressionContext",
    "ExpressionResult",
    "ExpressionSandbox",
    "ExpressionTemplateProcessor",
    "HybridPolicyConfig",
    "InMemoryAttributeCache",
    "Permission",
    "Policy",
    "PolicyCombinationResult",
    "PolicyCombiner",
    "PolicyConflict",
    "PolicyEffect",
    "PolicyResolution",
    "PolicyRule",
    "PolicyStatus",
    "RedisAttributeCache",
    "ResolutionContext",
    "ResolutionStrategy",
    "Role",
    "Severity",
    "StrategyContext",
    "StrategyRegistry",
    "create_policy_combiner",
    "detect_conflicts",
]
