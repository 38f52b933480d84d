"""
Built-in attribute resolvers.

The lookups here are backed by small static tables. Deployments replace them
by registering resolvers of the same name that call their directory, HR or
geo-IP services.
"""

from datetime import datetime
from typing import List, Optional

from ..rules.models import AttributeResolutionContext, ClientInfo
from .registry import AttributeResolver, AttributeResolverRegistry, SecurityLevel


BUSINESS_HOURS_CACHE_MS = 60_000
HOLIDAY_CACHE_MS = 3_600_000

DEPARTMENT_HIERARCHIES = {
    "engineering": ["engineering", "technology", "all"],
    "finance": ["finance", "business", "all"],
    "hr": ["hr", "people", "all"],
    "sales": ["sales", "business", "all"],
}

CLEARANCE_LEVELS = {
    "admin": "top_secret",
    "manager": "secret",
    "senior": "confidential",
    "junior": "public",
}

DEFAULT_GROUPS = ["employees", "authenticated_users"]

HOLIDAYS = frozenset({"2024-01-01", "2024-07-04", "2024-12-25"})

HIGH_RISK_COUNTRIES = frozenset({"XX", "YY", "ZZ"})

EU_COUNTRIES = frozenset({"DE", "FR", "IT", "ES", "NL", "BE"})

RESOURCE_OWNERS = {
    "doc_123": "user_456",
    "project_789": "user_123",
}


def _user_attributes(context: AttributeResolutionContext) -> dict:
    return context.computed_attributes.get("user_attributes") or {}


def department_hierarchy(department: Optional[str]) -> List[str]:
    return list(DEPARTMENT_HIERARCHIES.get((department or "").lower(), ["all"]))


def security_clearance(level: Optional[str]) -> str:
    return CLEARANCE_LEVELS.get(level or "public", "public")


def is_business_hours(moment: datetime) -> bool:
    """Monday to Friday, 09:00 through 17:59."""
    return moment.weekday() <= 4 and 9 <= moment.hour <= 17


def is_holiday(moment: datetime) -> bool:
    return moment.date().isoformat() in HOLIDAYS


def _country(client_info: ClientInfo) -> Optional[str]:
    return client_info.location.country if client_info.location else None


def location_risk(client_info: ClientInfo) -> str:
    return "high" if _country(client_info) in HIGH_RISK_COUNTRIES else "low"


def compliance_zone(client_info: ClientInfo) -> str:
    return "EU" if _country(client_info) in EU_COUNTRIES else "US"


def resource_owner(resource_id: Optional[str]) -> Optional[str]:
    if not resource_id:
        return None
    return RESOURCE_OWNERS.get(resource_id)


def resource_classification(resource_id: Optional[str]) -> str:
    if not resource_id:
        return "public"
    if "financial" in resource_id:
        return "confidential"
    if "hr" in resource_id:
        return "sensitive"
    if "public" in resource_id:
        return "public"
    return "internal"


def session_risk(context: AttributeResolutionContext) -> int:
    """Risk score in 0..100 from request time and network."""
    risk = 0
    if not is_business_hours(context.request_time):
        risk += 10
    if context.client_info.ip_address.startswith("192.168."):
        risk -= 5
    return max(0, min(100, risk))


def device_trust(client_info: ClientInfo) -> str:
    device = client_info.device_info
    if device and device.is_managed and device.is_trusted:
        return "high"
    if device and device.is_trusted:
        return "medium"
    return "low"


def builtin_resolvers() -> List[AttributeResolver]:
    return [
        AttributeResolver(
            name="user.department_hierarchy",
            description="Resolves user department hierarchy",
            security_level=SecurityLevel.INTERNAL,
            compute=lambda ctx: department_hierarchy(_user_attributes(ctx).get("department"))
        ),
        AttributeResolver(
            name="user.clearance_level",
            description="Resolves user security clearance level",
            security_level=SecurityLevel.SENSITIVE,
            compute=lambda ctx: security_clearance(_user_attributes(ctx).get("level"))
        ),
        AttributeResolver(
            name="user.group_memberships",
            description="Resolves all user group memberships",
            security_level=SecurityLevel.INTERNAL,
            compute=lambda ctx: list(DEFAULT_GROUPS)
        ),
        AttributeResolver(
            name="time.business_hours",
            description="Determines if the request time is within business hours",
            security_level=SecurityLevel.PUBLIC,
            cache_timeout=BUSINESS_HOURS_CACHE_MS,
            compute=lambda ctx: is_business_hours(ctx.request_time)
        ),
        AttributeResolver(
            name="time.holiday_status",
            description="Determines if the request date is a holiday",
            security_level=SecurityLevel.PUBLIC,
            cache_timeout=HOLIDAY_CACHE_MS,
            compute=lambda ctx: is_holiday(ctx.request_time)
        ),
        AttributeResolver(
            name="location.risk_level",
            description="Assesses location-based risk",
            security_level=SecurityLevel.INTERNAL,
            compute=lambda ctx: location_risk(ctx.client_info)
        ),
        AttributeResolver(
            name="location.compliance_zone",
            description="Determines data compliance zone based on location",
            security_level=SecurityLevel.INTERNAL,
            compute=lambda ctx: compliance_zone(ctx.client_info)
        ),
        AttributeResolver(
            name="resource.owner",
            description="Resolves resource owner",
            security_level=SecurityLevel.INTERNAL,
            compute=lambda ctx: resource_owner(ctx.resource_id)
        ),
        AttributeResolver(
            name="resource.classification",
            description="Resolves resource data classification",
            security_level=SecurityLevel.INTERNAL,
            compute=lambda ctx: resource_classification(ctx.resource_id)
        ),
        AttributeResolver(
            name="context.session_risk",
            description="Calculates session-based risk score",
            security_level=SecurityLevel.INTERNAL,
            compute=session_risk
        ),
        AttributeResolver(
            name="context.device_trust",
            description="Evaluates device trust level",
            security_level=SecurityLevel.INTERNAL,
            compute=lambda ctx: device_trust(ctx.client_info)
        ),
    ]


def register_builtin_resolvers(registry: AttributeResolverRegistry) -> AttributeResolverRegistry:
    """Register the built-in catalogue on ``registry``."""
    for resolver in builtin_resolvers():
        registry.register(resolver)
    return registry
