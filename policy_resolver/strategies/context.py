"""
Per-call view handed to resolution strategies.
"""

import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from shared.errors import ConfigurationError
from ..attributes.registry import AttributeResolverRegistry
from ..conflicts.models import PolicyConflict
from ..expressions.sandbox import ExpressionResult, ExpressionSandbox
from ..rules.conditions import RequestAttributes
from ..rules.models import Policy, ResolutionContext


@dataclass
class StrategyContext:
    """Resolution context plus the collaborators strategies may call.

    ``deadline`` is a ``time.monotonic()`` instant; None means unbounded.
    """
    resolution_context: ResolutionContext
    attributes: Optional[AttributeResolverRegistry] = None
    sandbox: Optional[ExpressionSandbox] = None
    deadline: Optional[float] = None

    def involved_policies(self, conflict: PolicyConflict) -> List[Policy]:
        """Policies named by the conflict, in snapshot order."""
        involved = set(conflict.involved_policies)
        return [policy for policy in self.resolution_context.policies if policy.id in involved]

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without one."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    async def attribute(self, name: str, default: Any = None) -> Any:
        """Computed attribute, else a registered resolver of that name, else ``default``."""
        attribute_context = self.resolution_context.attribute_context

        if name in attribute_context.computed_attributes:
            return attribute_context.computed_attributes[name]

        if self.attributes is not None and name in self.attributes:
            value = await self.attributes.resolve(name, attribute_context, timeout=self.remaining())
            return default if value is None else value

        return default

    async def evaluate(self, expression: str, attributes: Optional[Dict[str, Any]] = None) -> ExpressionResult:
        """Evaluate in the sandbox, never past the call deadline.

        Without explicit ``attributes`` the request's merged attribute view is used.
        """
        if self.sandbox is None:
            raise ConfigurationError("No expression sandbox configured")

        if attributes is None:
            attributes = RequestAttributes.from_context(self.resolution_context).merged()

        timeout_ms = None
        remaining = self.remaining()
        if remaining is not None:
            timeout_ms = max(min(remaining * 1000, self.sandbox.timeout_ms), 1)

        return await self.sandbox.evaluate(expression, attributes, timeout_ms=timeout_ms)
