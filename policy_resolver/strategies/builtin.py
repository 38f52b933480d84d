"""
Built-in resolution strategies.

Confidence values are fixed heuristics; callers compare against them, so do
not recalibrate casually.
"""

from typing import Optional

from shared.metrics import MetricsCollector
from ..conflicts.models import ConflictType, PolicyConflict
from ..rules.models import PolicyEffect
from .context import StrategyContext
from .models import PolicyResolution, ResolutionStrategy
from .registry import StrategyRegistry


HIGH_RISK_THRESHOLD = 70


async def deny_wins(conflict: PolicyConflict, context: StrategyContext) -> PolicyResolution:
    deny_policies = [
        policy.id for policy in context.involved_policies(conflict)
        if policy.effect == PolicyEffect.DENY
    ]

    if deny_policies:
        return PolicyResolution(
            decision=PolicyEffect.DENY,
            reason="Deny policy takes precedence",
            confidence=0.9,
            applied_strategy="deny_wins",
            resolved_conflicts=(conflict.id,),
            metadata={"deny_policies": deny_policies}
        )

    return PolicyResolution(
        decision=PolicyEffect.ALLOW,
        reason="No deny policies found",
        confidence=0.8,
        applied_strategy="deny_wins",
        resolved_conflicts=(conflict.id,)
    )


async def priority_based(conflict: PolicyConflict, context: StrategyContext) -> PolicyResolution:
    involved = context.involved_policies(conflict)
    if not involved:
        raise ValueError(f"Conflict {conflict.id} names no known policies")

    highest = max(policy.priority for policy in involved)
    winners = [policy for policy in involved if policy.priority == highest]

    if len(winners) == 1:
        winner = winners[0]
        return PolicyResolution(
            decision=winner.effect,
            reason=f'Policy "{winner.name}" has highest priority ({highest})',
            confidence=0.85,
            applied_strategy="priority_based",
            resolved_conflicts=(conflict.id,),
            metadata={"winning_policy": winner.id, "priority": highest}
        )

    return PolicyResolution(
        decision=PolicyEffect.DENY,
        reason="Multiple policies with same highest priority - defaulting to deny",
        confidence=0.6,
        applied_strategy="priority_based",
        resolved_conflicts=(conflict.id,),
        metadata={"tied_policies": [policy.id for policy in winners]}
    )


async def most_specific(conflict: PolicyConflict, context: StrategyContext) -> PolicyResolution:
    rules = conflict.context.conflicting_rules if conflict.context else ()

    if not rules:
        return PolicyResolution(
            decision=PolicyEffect.DENY,
            reason="Cannot determine specificity without rule context",
            confidence=0.3,
            applied_strategy="most_specific",
            resolved_conflicts=(conflict.id,)
        )

    winner = max(rules, key=lambda rule: rule.specificity)
    return PolicyResolution(
        decision=winner.effect,
        reason=f"Most specific rule from policy {winner.policy_id} (specificity: {winner.specificity})",
        confidence=0.75,
        applied_strategy="most_specific",
        resolved_conflicts=(conflict.id,),
        metadata={
            "winning_policy": winner.policy_id,
            "winning_rule": winner.rule_id,
            "specificity": winner.specificity
        }
    )


async def context_aware(conflict: PolicyConflict, context: StrategyContext) -> PolicyResolution:
    risk_score = await context.attribute("risk_score", 0)
    trust_level = await context.attribute("trust_level", "low")
    metadata = {"risk_score": risk_score, "trust_level": trust_level}

    if risk_score > HIGH_RISK_THRESHOLD or trust_level == "low":
        return PolicyResolution(
            decision=PolicyEffect.DENY,
            reason=f"High risk ({risk_score}) or low trust ({trust_level}) - defaulting to deny",
            confidence=0.8,
            applied_strategy="context_aware",
            resolved_conflicts=(conflict.id,),
            metadata=metadata
        )

    allow_policies = [
        policy.id for policy in context.involved_policies(conflict)
        if policy.effect == PolicyEffect.ALLOW
    ]

    if allow_policies:
        return PolicyResolution(
            decision=PolicyEffect.ALLOW,
            reason=f"Low risk ({risk_score}) and good trust ({trust_level}) - allowing access",
            confidence=0.7,
            applied_strategy="context_aware",
            resolved_conflicts=(conflict.id,),
            metadata={**metadata, "allow_policies": allow_policies}
        )

    return PolicyResolution(
        decision=PolicyEffect.DENY,
        reason="No allow policies found in conflict",
        confidence=0.6,
        applied_strategy="context_aware",
        resolved_conflicts=(conflict.id,),
        metadata=metadata
    )


async def temporal_precedence(conflict: PolicyConflict, context: StrategyContext) -> PolicyResolution:
    involved = context.involved_policies(conflict)
    if not involved:
        raise ValueError(f"Conflict {conflict.id} names no known policies")

    newest = max(involved, key=lambda policy: policy.created_at)
    created_at = newest.created_at.isoformat()

    return PolicyResolution(
        decision=newest.effect,
        reason=f'Most recent policy "{newest.name}" (created: {created_at})',
        confidence=0.65,
        applied_strategy="temporal_precedence",
        resolved_conflicts=(conflict.id,),
        metadata={"winning_policy": newest.id, "created_at": created_at}
    )


BUILTIN_STRATEGIES = (
    ResolutionStrategy(
        name="deny_wins",
        description="Deny takes precedence over allow in all conflicts",
        applicable_conflict_types=frozenset({ConflictType.EFFECT_CONFLICT}),
        priority=100,
        resolve=deny_wins
    ),
    ResolutionStrategy(
        name="priority_based",
        description="Higher priority policies take precedence",
        applicable_conflict_types=frozenset({ConflictType.EFFECT_CONFLICT, ConflictType.PRIORITY_OVERLAP}),
        priority=90,
        resolve=priority_based
    ),
    ResolutionStrategy(
        name="most_specific",
        description="More specific rules take precedence over general ones",
        applicable_conflict_types=frozenset({ConflictType.EFFECT_CONFLICT, ConflictType.SCOPE_AMBIGUITY}),
        priority=80,
        resolve=most_specific
    ),
    ResolutionStrategy(
        name="context_aware",
        description="Consider context factors like risk level and trust score",
        applicable_conflict_types=frozenset({ConflictType.EFFECT_CONFLICT, ConflictType.SCOPE_AMBIGUITY}),
        priority=70,
        resolve=context_aware
    ),
    ResolutionStrategy(
        name="temporal_precedence",
        description="More recent policies take precedence",
        applicable_conflict_types=frozenset({ConflictType.EFFECT_CONFLICT, ConflictType.TEMPORAL_CONFLICT}),
        priority=60,
        resolve=temporal_precedence
    ),
)


def create_default_strategy_registry(metrics: Optional[MetricsCollector] = None) -> StrategyRegistry:
    """Registry preloaded with the built-in strategies."""
    registry = StrategyRegistry(metrics=metrics)
    for strategy in BUILTIN_STRATEGIES:
        registry.register(strategy)
    return registry
