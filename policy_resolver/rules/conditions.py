"""
Condition evaluation and rule matching.
"""

import re
import time
from dataclasses import dataclass, field
from typing import Dict, Any, Iterable, List, Optional, TYPE_CHECKING

from shared.errors import EvaluationTimeout
from shared.logging import get_logger
from .models import (
    AttributeCondition, ConditionOperator, PolicyRule, ResolutionContext
)

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..expressions.sandbox import ExpressionSandbox


WILDCARD_ACTION = "*"

logger = get_logger("policy_resolver.conditions")


def actions_overlap(actions1: Iterable[str], actions2: Iterable[str]) -> bool:
    """True when two action lists share an action or either side is a wildcard."""
    actions2 = list(actions2)
    return any(
        a1 == a2 or a1 == WILDCARD_ACTION or a2 == WILDCARD_ACTION
        for a1 in actions1
        for a2 in actions2
    )


def action_matches(rule_actions: Iterable[str], action: str) -> bool:
    """True when a rule's actions cover the requested action."""
    rule_actions = list(rule_actions)
    return action in rule_actions or WILDCARD_ACTION in rule_actions


def rule_specificity(rule: PolicyRule) -> int:
    """Heuristic score favoring narrower rules.

    Subject and resource conditions weigh 10 each, environment conditions 5,
    and each named action adds 5 unless the rule uses the wildcard.
    """
    specificity = len(rule.subject) * 10
    specificity += len(rule.resource) * 10
    specificity += len(rule.environment) * 5

    if WILDCARD_ACTION not in rule.action:
        specificity += len(rule.action) * 5

    return specificity


def lookup_attribute(attributes: Dict[str, Any], name: str) -> Any:
    """Get an attribute value, following dotted paths into nested mappings."""
    if name in attributes:
        return attributes[name]

    if "." in name:
        value: Any = attributes
        for part in name.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return None
        return value

    return None


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, set, dict)):
        return len(value) == 0
    return False


def evaluate_condition(condition: AttributeCondition, actual: Any, expected: Any = None) -> bool:
    """Evaluate a single condition against an attribute value.

    ``expected`` overrides ``condition.value`` (used for dynamic expressions).
    Type mismatches, overflows and bad patterns evaluate to False rather than raising.
    """
    operator = condition.operator
    if expected is None:
        expected = condition.value

    try:
        if operator == ConditionOperator.EXISTS:
            return actual is not None

        elif operator == ConditionOperator.IS_NULL:
            return actual is None

        elif operator == ConditionOperator.IS_EMPTY:
            return _is_empty(actual)

        elif operator == ConditionOperator.EQUALS:
            return actual == expected

        elif operator == ConditionOperator.NOT_EQUALS:
            return actual != expected

        elif operator == ConditionOperator.IN:
            return isinstance(expected, (list, tuple, set)) and actual in expected

        elif operator == ConditionOperator.NOT_IN:
            return isinstance(expected, (list, tuple, set)) and actual not in expected

        if actual is None:
            return False

        if operator == ConditionOperator.CONTAINS:
            if isinstance(actual, (list, tuple, set)):
                return expected in actual
            return str(expected).lower() in str(actual).lower()

        elif operator == ConditionOperator.GREATER_THAN:
            return float(actual) > float(expected)

        elif operator == ConditionOperator.LESS_THAN:
            return float(actual) < float(expected)

        elif operator == ConditionOperator.STARTS_WITH:
            return str(actual).startswith(str(expected))

        elif operator == ConditionOperator.ENDS_WITH:
            return str(actual).endswith(str(expected))

        elif operator == ConditionOperator.MATCHES_REGEX:
            return re.search(str(expected), str(actual)) is not None

        else:
            logger.warning("Unknown condition operator", operator=operator)
            return False

    except Exception as e:
        logger.warning(
            "Error evaluating condition",
            attribute=condition.attribute,
            operator=operator.value,
            error=str(e)
        )
        return False


@dataclass
class RequestAttributes:
    """Subject, resource and environment attribute bags for one request."""
    subject: Dict[str, Any] = field(default_factory=dict)
    resource: Dict[str, Any] = field(default_factory=dict)
    environment: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_context(cls, context: ResolutionContext) -> "RequestAttributes":
        """Collect attribute bags from a resolution context.

        Subject: computed ``user_attributes`` overlaid with ``request.context['subject']``.
        Resource: the requested resource name, external ``resource`` attributes and
        ``request.context['resource']``. Environment: request time and client
        details, external ``environment`` attributes and ``request.context['environment']``.
        """
        attr_ctx = context.attribute_context
        request_ctx = context.request.context

        subject = {"user_id": context.request.user_id}
        subject.update(attr_ctx.computed_attributes.get("user_attributes") or {})
        subject.update(request_ctx.get("subject") or {})

        resource = {"name": context.request.resource}
        if attr_ctx.resource_id:
            resource["id"] = attr_ctx.resource_id
        resource.update(attr_ctx.external_attributes.get("resource") or {})
        resource.update(request_ctx.get("resource") or {})

        environment = {
            "current_time": attr_ctx.request_time.isoformat(),
            "client_ip": attr_ctx.client_info.ip_address,
            "user_agent": attr_ctx.client_info.user_agent,
        }
        environment.update(attr_ctx.external_attributes.get("environment") or {})
        environment.update(request_ctx.get("environment") or {})

        return cls(subject=subject, resource=resource, environment=environment)

    def merged(self) -> Dict[str, Any]:
        """Flat view used as the scope for dynamic expressions."""
        return {
            **self.environment,
            **self.resource,
            **self.subject,
            "subject": self.subject,
            "resource": self.resource,
            "environment": self.environment,
        }


class RuleMatcher:
    """Decides whether a rule applies to a concrete request.

    ``deadline`` is a ``time.monotonic()`` instant bounding dynamic
    expressions; each expression gets at most the time left before it.
    """

    def __init__(self, sandbox: Optional["ExpressionSandbox"] = None):
        self.sandbox = sandbox
        self.logger = get_logger("policy_resolver.rule_matcher")

    def matches(
        self,
        rule: PolicyRule,
        attributes: RequestAttributes,
        action: str,
        deadline: Optional[float] = None
    ) -> bool:
        """All three condition groups hold and the rule covers the action."""
        if not action_matches(rule.action, action):
            return False

        return (
            self.conditions_hold(rule.subject, attributes.subject, attributes, deadline)
            and self.conditions_hold(rule.resource, attributes.resource, attributes, deadline)
            and self.conditions_hold(rule.environment, attributes.environment, attributes, deadline)
        )

    def conditions_hold(
        self,
        conditions: List[AttributeCondition],
        values: Dict[str, Any],
        attributes: RequestAttributes,
        deadline: Optional[float] = None
    ) -> bool:
        """Evaluate a condition group; an empty group is vacuously true."""
        for condition in conditions:
            actual = lookup_attribute(values, condition.attribute)

            if condition.expression:
                expected = self._evaluate_expression(condition, attributes, deadline)
                if expected is None:
                    return False
                if not evaluate_condition(condition, actual, expected):
                    return False
            elif not evaluate_condition(condition, actual):
                return False

        return True

    def _evaluate_expression(
        self,
        condition: AttributeCondition,
        attributes: RequestAttributes,
        deadline: Optional[float]
    ) -> Any:
        if self.sandbox is None:
            self.logger.warning(
                "Dynamic condition without sandbox",
                attribute=condition.attribute
            )
            return None

        timeout_ms = None
        if deadline is not None:
            remaining_ms = (deadline - time.monotonic()) * 1000
            if remaining_ms <= 0:
                raise EvaluationTimeout(
                    "Deadline exceeded while evaluating dynamic condition",
                    {"attribute": condition.attribute}
                )
            timeout_ms = min(remaining_ms, self.sandbox.timeout_ms)

        result = self.sandbox.evaluate_sync(condition.expression, attributes.merged(), timeout_ms=timeout_ms)
        if result.security_violations:
            self.logger.warning(
                "Dynamic condition rejected",
                attribute=condition.attribute,
                violations=result.security_violations
            )
            return None

        return result.value
