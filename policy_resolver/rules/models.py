"""
Inbound data models for the policy resolver.

Policies, roles and permissions are owned by the caller and supplied on every
call; the engine reads them and never mutates them. The attribute context is
the one exception: resolved dependencies are written back into
``computed_attributes`` so later resolvers in the same call can reuse them.
"""

from typing import Dict, Any, Optional, List
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class PolicyEffect(str, Enum):
    """Policy effect types."""
    ALLOW = "allow"
    DENY = "deny"


class PolicyStatus(str, Enum):
    """Policy lifecycle states."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    DRAFT = "draft"


class RoleStatus(str, Enum):
    """Role lifecycle states."""
    ACTIVE = "active"
    PENDING = "pending"
    INACTIVE = "inactive"
    DEPRECATED = "deprecated"


class ConditionOperator(str, Enum):
    """Attribute condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES_REGEX = "matches_regex"
    EXISTS = "exists"
    IS_NULL = "is_null"
    IS_EMPTY = "is_empty"


class RiskLevel(str, Enum):
    """Permission risk levels."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class PermissionScope(str, Enum):
    """Permission scopes."""
    GLOBAL = "global"
    RESOURCE = "resource"
    FIELD = "field"
    API = "api"


class CombinationMode(str, Enum):
    """Known modes for combining per-conflict resolutions."""
    DENY_WINS = "deny_wins"
    ALLOW_WINS = "allow_wins"
    HIGHEST_PRIORITY = "highest_priority"
    MOST_SPECIFIC = "most_specific"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AttributeCondition(BaseModel):
    """Single predicate over one attribute."""
    attribute: str = Field(..., description="Attribute name")
    operator: ConditionOperator = Field(..., description="Comparison operator")
    value: Any = Field(None, description="Expected value")
    expression: Optional[str] = Field(None, description="Dynamic expression producing the expected value")


class PolicyRule(BaseModel):
    """Condition groups plus the actions a rule covers."""
    id: Optional[str] = Field(None, description="Rule ID")
    subject: List[AttributeCondition] = Field(default_factory=list)
    resource: List[AttributeCondition] = Field(default_factory=list)
    environment: List[AttributeCondition] = Field(default_factory=list)
    action: List[str] = Field(default_factory=list, description="Actions; '*' matches anything")


class Policy(BaseModel):
    """ABAC policy."""
    id: str = Field(..., description="Policy ID")
    name: str = Field(..., description="Policy name")
    description: Optional[str] = Field(None, description="Policy description")
    priority: int = Field(..., ge=1, le=1000, description="Policy priority")
    effect: PolicyEffect = Field(..., description="Policy effect")
    status: PolicyStatus = Field(PolicyStatus.ACTIVE, description="Policy status")
    rules: List[PolicyRule] = Field(default_factory=list)
    category: Optional[str] = Field(None, description="Policy category")
    evaluation_mode: Optional[str] = Field(None, description="Evaluation mode hint")
    conflict_resolution: str = Field(CombinationMode.DENY_WINS.value, description="Default conflict resolution mode")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def check_active_policy_has_rules(self) -> "Policy":
        if self.status == PolicyStatus.ACTIVE and not self.rules:
            raise ValueError(f"Active policy {self.id} must have at least one rule")
        return self


class Permission(BaseModel):
    """RBAC permission."""
    id: str = Field(..., description="Permission ID")
    name: str = Field(..., description="Permission name")
    resource: str = Field(..., description="Resource type")
    action: str = Field(..., description="Action")
    description: Optional[str] = None
    risk: RiskLevel = Field(RiskLevel.LOW, description="Risk level")
    scope: PermissionScope = Field(PermissionScope.GLOBAL, description="Permission scope")


class Role(BaseModel):
    """RBAC role."""
    id: str = Field(..., description="Role ID")
    name: str = Field(..., description="Role name")
    description: Optional[str] = None
    permissions: List[str] = Field(default_factory=list, description="Permission IDs")
    parent_role: Optional[str] = None
    child_roles: List[str] = Field(default_factory=list)
    level: int = Field(0, description="Organizational level")
    status: RoleStatus = Field(RoleStatus.ACTIVE)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None

    @field_validator("valid_from", "valid_until")
    @classmethod
    def normalize_validity(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(value)


class AccessRequest(BaseModel):
    """The request being decided."""
    user_id: str = Field(..., description="User ID")
    resource: str = Field(..., description="Resource")
    action: str = Field(..., description="Action to perform")
    context: Dict[str, Any] = Field(default_factory=dict, description="Additional context")


class GeoLocation(BaseModel):
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None


class DeviceInfo(BaseModel):
    device_id: Optional[str] = None
    platform: Optional[str] = None
    is_managed: bool = False
    is_trusted: bool = False


class ClientInfo(BaseModel):
    """Client network and device information."""
    ip_address: str = Field(..., description="Client IP address")
    user_agent: str = Field("", description="Client user agent")
    location: Optional[GeoLocation] = None
    device_info: Optional[DeviceInfo] = None


class AttributeResolutionContext(BaseModel):
    """Per-call input for attribute resolvers."""
    user_id: str = Field(..., description="User ID")
    session_id: str = Field(..., description="Session ID")
    resource_id: Optional[str] = None
    request_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    client_info: ClientInfo
    computed_attributes: Dict[str, Any] = Field(default_factory=dict)
    external_attributes: Dict[str, Any] = Field(default_factory=dict)


class HybridPolicyConfig(BaseModel):
    """Per-call combination settings."""
    conflict_resolution: Optional[str] = Field(None, description="Combination mode; engine default when unset")
    evaluation_mode: Optional[str] = Field(None, description="Evaluation mode; engine default when unset")


class ResolutionContext(BaseModel):
    """Everything one combine() call needs."""
    policies: List[Policy] = Field(default_factory=list)
    roles: List[Role] = Field(default_factory=list)
    permissions: List[Permission] = Field(default_factory=list)
    request: AccessRequest
    attribute_context: AttributeResolutionContext
    config: HybridPolicyConfig = Field(default_factory=HybridPolicyConfig)

    def policy_by_id(self) -> Dict[str, Policy]:
        """Index policies by ID."""
        return {policy.id: policy for policy in self.policies}
