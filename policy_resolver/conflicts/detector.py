"""
Conflict detection over a policy, role and permission snapshot.
"""

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from shared.errors import EvaluationTimeout
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.tracing import trace_operation
from ..rules.conditions import RequestAttributes, RuleMatcher, actions_overlap, rule_specificity
from ..rules.models import (
    AttributeCondition, ConditionOperator, Permission, Policy, PolicyRule,
    PolicyStatus, ResolutionContext, Role
)
from .models import (
    ConflictContext, ConflictingRule, ConflictType, PolicyConflict, SEVERITY_WEIGHTS, Severity
)


CRITICAL_SPECIFICITY = 50
MEDIUM_PRIORITY_DELTA = 10

ContradictionPredicate = Callable[[PolicyRule, PolicyRule], bool]


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple, set)) else [value]


def attribute_conditions_overlap(cond1: AttributeCondition, cond2: AttributeCondition) -> bool:
    """Whether two conditions on the same attribute can both hold.

    Only equals/equals and in/in are decided; every other pairing, and any
    condition with a dynamic expression, is assumed to overlap.
    """
    if cond1.expression or cond2.expression:
        return True

    if cond1.operator == ConditionOperator.EQUALS and cond2.operator == ConditionOperator.EQUALS:
        return cond1.value == cond2.value

    if cond1.operator == ConditionOperator.IN and cond2.operator == ConditionOperator.IN:
        values2 = _as_list(cond2.value)
        return any(value in values2 for value in _as_list(cond1.value))

    return True


def conditions_overlap(conditions1: Sequence[AttributeCondition], conditions2: Sequence[AttributeCondition]) -> bool:
    """Two condition groups overlap unless some shared attribute is provably disjoint."""
    if not conditions1 or not conditions2:
        return True

    for cond1 in conditions1:
        for cond2 in conditions2:
            if cond1.attribute == cond2.attribute and not attribute_conditions_overlap(cond1, cond2):
                return False

    return True


def rules_overlap(rule1: PolicyRule, rule2: PolicyRule) -> bool:
    if not actions_overlap(rule1.action, rule2.action):
        return False
    return conditions_overlap(rule1.subject, rule2.subject) and conditions_overlap(rule1.resource, rule2.resource)


def _opposed(cond1: AttributeCondition, cond2: AttributeCondition) -> bool:
    op1, op2 = cond1.operator, cond2.operator

    if op1 == ConditionOperator.EQUALS and op2 == ConditionOperator.NOT_EQUALS:
        return cond1.value == cond2.value
    if op1 == ConditionOperator.EQUALS and op2 == ConditionOperator.NOT_IN:
        return cond1.value in _as_list(cond2.value)
    if op1 == ConditionOperator.IN and op2 == ConditionOperator.NOT_IN:
        excluded = _as_list(cond2.value)
        return any(value in excluded for value in _as_list(cond1.value))
    if op1 == ConditionOperator.EXISTS and op2 == ConditionOperator.IS_NULL:
        return True

    return False


def rules_contradict(rule1: PolicyRule, rule2: PolicyRule) -> bool:
    """Default contradiction predicate.

    Flags rules whose actions overlap while some attribute in the same
    condition group is constrained in directly opposed ways.
    """
    if not actions_overlap(rule1.action, rule2.action):
        return False

    for group1, group2 in (
        (rule1.subject, rule2.subject),
        (rule1.resource, rule2.resource),
        (rule1.environment, rule2.environment),
    ):
        for cond1 in group1:
            for cond2 in group2:
                if cond1.attribute != cond2.attribute or cond1.expression or cond2.expression:
                    continue
                if _opposed(cond1, cond2) or _opposed(cond2, cond1):
                    return True

    return False


def might_conflict_with_permission(policy: Policy, permission: Permission) -> bool:
    """Whether an ABAC policy touches a permission's action or resource type."""
    for rule in policy.rules:
        if permission.action in rule.action or "*" in rule.action:
            return True
        if any(cond.attribute == "type" and cond.value == permission.resource for cond in rule.resource):
            return True
    return False


def _check_deadline(deadline: Optional[float], detection_pass: str) -> None:
    if deadline is not None and time.monotonic() > deadline:
        raise EvaluationTimeout(
            "Deadline exceeded while detecting conflicts",
            {"detection_pass": detection_pass}
        )


def effect_conflict_severity(rules: Sequence[ConflictingRule], priority1: int, priority2: int) -> Severity:
    priority_diff = abs(priority1 - priority2)
    max_specificity = max((rule.specificity for rule in rules), default=0)

    if priority_diff == 0 and max_specificity > CRITICAL_SPECIFICITY:
        return Severity.CRITICAL
    if priority_diff == 0:
        return Severity.HIGH
    if priority_diff <= MEDIUM_PRIORITY_DELTA:
        return Severity.MEDIUM
    return Severity.LOW


class ConflictDetector:
    """Finds effect, priority, contradiction, scope and temporal conflicts.

    Detection is deterministic: the same snapshot always yields the same
    conflicts in the same order, most severe first.
    """

    def __init__(
        self,
        contradiction_predicate: Optional[ContradictionPredicate] = None,
        matcher: Optional[RuleMatcher] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.contradiction_predicate = (
            contradiction_predicate if contradiction_predicate is not None else rules_contradict
        )
        self.matcher = matcher if matcher is not None else RuleMatcher()
        self.metrics = metrics
        self.logger = get_logger("policy_resolver.conflict_detector")

    def detect(
        self,
        policies: Sequence[Policy],
        roles: Sequence[Role] = (),
        permissions: Sequence[Permission] = (),
        context: Optional[ResolutionContext] = None,
        deadline: Optional[float] = None
    ) -> List[PolicyConflict]:
        """Run every detection pass and sort the result by severity.

        ``deadline`` is a ``time.monotonic()`` instant. Once it passes,
        EvaluationTimeout is raised between rule pairs and between passes,
        and dynamic conditions only get the time left before it.
        """
        with trace_operation("conflict_detection", policy_count=len(policies), role_count=len(roles)):
            detected_at = context.attribute_context.request_time if context else datetime.now(timezone.utc)
            active = [policy for policy in policies if policy.status == PolicyStatus.ACTIVE]

            passes = (
                ("effect_conflicts", lambda: self._effect_conflicts(active, context, detected_at, deadline)),
                ("priority_overlaps", lambda: self._priority_overlaps(active, detected_at)),
                ("rule_contradictions", lambda: self._rule_contradictions(active, detected_at, deadline)),
                ("scope_ambiguities", lambda: self._scope_ambiguities(active, roles, permissions, detected_at)),
                ("temporal_conflicts", lambda: self._temporal_conflicts(roles, detected_at)),
            )

            conflicts: List[PolicyConflict] = []
            for name, run in passes:
                _check_deadline(deadline, name)
                found = run()
                self.logger.debug("Conflict detection pass", detection_pass=name, conflicts=len(found))
                conflicts.extend(found)

            conflicts.sort(key=lambda conflict: SEVERITY_WEIGHTS[conflict.severity], reverse=True)

            if self.metrics:
                for conflict in conflicts:
                    self.metrics.increment_counter(
                        "conflicts_detected_total",
                        conflict_type=conflict.type.value,
                        severity=conflict.severity.value
                    )

            self.logger.info(
                "Conflict detection completed",
                policies=len(policies),
                roles=len(roles),
                permissions=len(permissions),
                conflicts=len(conflicts)
            )
            return conflicts

    def _effect_conflicts(
        self,
        policies: List[Policy],
        context: Optional[ResolutionContext],
        detected_at: datetime,
        deadline: Optional[float]
    ) -> List[PolicyConflict]:
        conflicts = []
        attributes = RequestAttributes.from_context(context) if context else None

        for i, policy1 in enumerate(policies):
            for policy2 in policies[i + 1:]:
                if policy1.effect == policy2.effect:
                    continue

                overlapping = self._overlapping_rules(policy1, policy2, context, attributes, deadline)
                if not overlapping:
                    continue

                if context:
                    conflict_context = ConflictContext(
                        resource=context.request.resource,
                        action=context.request.action,
                        subject=dict(attributes.subject),
                        environment=dict(attributes.environment),
                        conflicting_rules=tuple(overlapping)
                    )
                else:
                    conflict_context = ConflictContext(conflicting_rules=tuple(overlapping))

                conflicts.append(PolicyConflict(
                    id=f"effect_conflict_{policy1.id}_{policy2.id}",
                    type=ConflictType.EFFECT_CONFLICT,
                    severity=effect_conflict_severity(overlapping, policy1.priority, policy2.priority),
                    description=(
                        f'Policy "{policy1.name}" ({policy1.effect.value}) conflicts with policy '
                        f'"{policy2.name}" ({policy2.effect.value}) on overlapping conditions'
                    ),
                    suggested_resolution=self._suggest_effect_resolution(policy1, policy2),
                    auto_resolvable=policy1.priority != policy2.priority,
                    involved_policies=(policy1.id, policy2.id),
                    context=conflict_context,
                    detected_at=detected_at
                ))

        return conflicts

    def _overlapping_rules(
        self,
        policy1: Policy,
        policy2: Policy,
        context: Optional[ResolutionContext],
        attributes: Optional[RequestAttributes],
        deadline: Optional[float]
    ) -> List[ConflictingRule]:
        overlapping = []

        for rule1 in policy1.rules:
            for rule2 in policy2.rules:
                _check_deadline(deadline, "effect_conflicts")
                if rules_overlap(rule1, rule2):
                    overlapping.append(self._conflicting_rule(policy1, rule1, "unnamed", context, attributes, deadline))
                    overlapping.append(self._conflicting_rule(policy2, rule2, "unnamed", context, attributes, deadline))

        return overlapping

    def _conflicting_rule(
        self,
        policy: Policy,
        rule: PolicyRule,
        default_id: str,
        context: Optional[ResolutionContext] = None,
        attributes: Optional[RequestAttributes] = None,
        deadline: Optional[float] = None
    ) -> ConflictingRule:
        matches_request = None
        if context and attributes:
            matches_request = self.matcher.matches(rule, attributes, context.request.action, deadline)

        return ConflictingRule(
            policy_id=policy.id,
            rule_id=rule.id or default_id,
            effect=policy.effect,
            priority=policy.priority,
            conditions=tuple(rule.subject),
            specificity=rule_specificity(rule),
            matches_request=matches_request
        )

    @staticmethod
    def _suggest_effect_resolution(policy1: Policy, policy2: Policy) -> str:
        higher = policy1 if policy1.priority > policy2.priority else policy2
        return (
            f"Consider adjusting priorities (currently {policy1.name}: {policy1.priority}, "
            f"{policy2.name}: {policy2.priority}) or making conditions more specific. "
            f'Current resolution: "{higher.name}" ({higher.effect.value}) takes precedence.'
        )

    def _priority_overlaps(self, policies: List[Policy], detected_at: datetime) -> List[PolicyConflict]:
        groups: Dict[int, List[Policy]] = {}
        for policy in policies:
            groups.setdefault(policy.priority, []).append(policy)

        conflicts = []
        for priority, group in groups.items():
            if len(group) < 2 or len({policy.effect for policy in group}) < 2:
                continue

            conflicts.append(PolicyConflict(
                id=f"priority_overlap_{priority}",
                type=ConflictType.PRIORITY_OVERLAP,
                severity=Severity.MEDIUM,
                description=f"Multiple policies with same priority {priority} have conflicting effects",
                suggested_resolution="Adjust priority values to create clear hierarchy or use tie-breaking rules",
                auto_resolvable=False,
                involved_policies=tuple(policy.id for policy in group),
                detected_at=detected_at
            ))

        return conflicts

    def _rule_contradictions(
        self,
        policies: List[Policy],
        detected_at: datetime,
        deadline: Optional[float] = None
    ) -> List[PolicyConflict]:
        conflicts = []

        for policy in policies:
            for i, rule1 in enumerate(policy.rules):
                for j in range(i + 1, len(policy.rules)):
                    _check_deadline(deadline, "rule_contradictions")
                    rule2 = policy.rules[j]
                    if not self.contradiction_predicate(rule1, rule2):
                        continue

                    conflicts.append(PolicyConflict(
                        id=f"rule_contradiction_{policy.id}_{i}_{j}",
                        type=ConflictType.RULE_CONTRADICTION,
                        severity=Severity.HIGH,
                        description=f'Rules within policy "{policy.name}" are contradictory',
                        suggested_resolution=f'Review and consolidate contradictory rules in policy "{policy.name}"',
                        auto_resolvable=False,
                        involved_policies=(policy.id,),
                        context=ConflictContext(conflicting_rules=(
                            self._conflicting_rule(policy, rule1, f"rule_{i}"),
                            self._conflicting_rule(policy, rule2, f"rule_{j}"),
                        )),
                        detected_at=detected_at
                    ))

        return conflicts

    def _scope_ambiguities(
        self,
        policies: List[Policy],
        roles: Sequence[Role],
        permissions: Sequence[Permission],
        detected_at: datetime
    ) -> List[PolicyConflict]:
        permissions_by_id = {permission.id: permission for permission in permissions}
        conflicts = []

        for role in roles:
            for permission_id in role.permissions:
                permission = permissions_by_id.get(permission_id)
                if permission is None:
                    continue

                touching = [policy.id for policy in policies if might_conflict_with_permission(policy, permission)]
                if not touching:
                    continue

                conflicts.append(PolicyConflict(
                    id=f"scope_ambiguity_{role.id}_{permission.id}",
                    type=ConflictType.SCOPE_AMBIGUITY,
                    severity=Severity.MEDIUM,
                    description=(
                        f'Role "{role.name}" permission "{permission.name}" has ambiguous scope with ABAC policies'
                    ),
                    suggested_resolution="Clarify scope boundaries between RBAC permissions and ABAC policies",
                    auto_resolvable=False,
                    involved_policies=tuple(touching),
                    involved_roles=(role.id,),
                    involved_permissions=(permission.id,),
                    detected_at=detected_at
                ))

        return conflicts

    def _temporal_conflicts(self, roles: Sequence[Role], detected_at: datetime) -> List[PolicyConflict]:
        conflicts = []

        for role in roles:
            if role.valid_from is None or role.valid_until is None:
                continue
            if role.valid_from < role.valid_until:
                continue

            conflicts.append(PolicyConflict(
                id=f"temporal_conflict_role_{role.id}",
                type=ConflictType.TEMPORAL_CONFLICT,
                severity=Severity.HIGH,
                description=f'Role "{role.name}" has invalid temporal constraints (valid_from >= valid_until)',
                suggested_resolution=f'Fix temporal constraints for role "{role.name}"',
                auto_resolvable=True,
                involved_roles=(role.id,),
                detected_at=detected_at
            ))

        return conflicts


def detect_conflicts(
    policies: Sequence[Policy],
    roles: Sequence[Role] = (),
    permissions: Sequence[Permission] = (),
    context: Optional[ResolutionContext] = None
) -> List[PolicyConflict]:
    """Standalone conflict report with the default detector."""
    return ConflictDetector().detect(policies, roles, permissions, context)
