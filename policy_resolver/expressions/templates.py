"""
``${...}`` template substitution for policy values.
"""

import re
from typing import Any, Dict, Optional, TYPE_CHECKING

from shared.errors import PolicyEngineException
from shared.logging import get_logger
from ..rules.models import AttributeResolutionContext

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..attributes.registry import AttributeResolverRegistry


TEMPLATE_PATTERN = re.compile(r"\$\{([^}]+)\}")


class ExpressionTemplateProcessor:
    """Replaces ``${category.name}`` spans with values from a resolution context.

    ``user``/``subject``, ``resource``, ``environment`` and ``computed``
    references are read straight from the context. Any other dotted reference
    goes to the attribute registry. Spans that cannot be resolved are left
    exactly as written.
    """

    def __init__(self, registry: Optional["AttributeResolverRegistry"] = None):
        self.registry = registry
        self.logger = get_logger("policy_resolver.templates")

    async def process_template(self, template: str, context: AttributeResolutionContext) -> str:
        resolved: Dict[str, str] = {}

        for match in TEMPLATE_PATTERN.finditer(template):
            expression = match.group(1).strip()
            if match.group(0) in resolved:
                continue

            try:
                value = await self._resolve(expression, context)
            except PolicyEngineException as e:
                self.logger.warning(
                    "Template expression failed",
                    expression=expression,
                    error=e.message
                )
                continue

            if value is None:
                self.logger.warning("Unresolved template expression", expression=expression)
                continue

            resolved[match.group(0)] = str(value)

        return TEMPLATE_PATTERN.sub(lambda m: resolved.get(m.group(0), m.group(0)), template)

    async def _resolve(self, expression: str, context: AttributeResolutionContext) -> Any:
        if "." not in expression:
            value = context.computed_attributes.get(expression)
            if value is None:
                value = context.external_attributes.get(expression)
            return value

        category, name = expression.split(".", 1)

        if category in ("user", "subject"):
            return self._user_attribute(name, context)
        elif category == "resource":
            return self._resource_attribute(name, context)
        elif category == "environment":
            return self._environment_attribute(name, context)
        elif category == "computed":
            return context.computed_attributes.get(name)

        if self.registry is None:
            return None
        return await self.registry.resolve(expression, context)

    def _user_attribute(self, name: str, context: AttributeResolutionContext) -> Any:
        if name == "id":
            return context.user_id

        user_attributes = context.computed_attributes.get("user_attributes") or {}
        if name == "role":
            return user_attributes.get("primary_role")
        return user_attributes.get(name)

    def _resource_attribute(self, name: str, context: AttributeResolutionContext) -> Any:
        if name == "id":
            return context.resource_id

        resource_attributes = context.external_attributes.get("resource") or {}
        return resource_attributes.get(name)

    def _environment_attribute(self, name: str, context: AttributeResolutionContext) -> Any:
        if name == "time":
            return context.request_time.isoformat()
        elif name == "ip":
            return context.client_info.ip_address
        elif name == "user_agent":
            return context.client_info.user_agent

        return context.external_attributes.get(name)
