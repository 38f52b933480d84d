"""
Shared error handling for the policy resolver.
"""

from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class PolicyEngineException(Exception):
    """Base exception for the policy resolver."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Get trace ID from current span
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(PolicyEngineException):
    """Engine wiring errors (unknown resolvers, bad registrations)."""

    def __init__(self, message: str = "Configuration error", details: Optional[Dict[str, Any]] = None,
                 code: str = "CONFIGURATION_ERROR"):
        super().__init__(code, message, details)


class AttributeNotFoundError(ConfigurationError):
    """No resolver is registered under the requested attribute name."""

    def __init__(self, attribute: str):
        super().__init__(
            f"No resolver found for attribute: {attribute}",
            {"attribute": attribute},
            code="ATTRIBUTE_NOT_FOUND"
        )
        self.attribute = attribute


class CyclicDependencyError(ConfigurationError):
    """A resolver's dependsOn chain leads back to itself."""

    def __init__(self, chain: List[str]):
        super().__init__(
            f"Cyclic attribute dependency: {' -> '.join(chain)}",
            {"chain": list(chain)},
            code="CYCLIC_DEPENDENCY"
        )
        self.chain = list(chain)


class EvaluationTimeout(PolicyEngineException):
    """An expression, attribute resolution or combination exceeded its deadline."""

    def __init__(self, message: str = "Evaluation timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__("EVALUATION_TIMEOUT", message, details)


class StrategyFailure(PolicyEngineException):
    """A resolution strategy raised while adjudicating a conflict."""

    def __init__(self, strategy: str, conflict_id: str, cause: Exception):
        super().__init__(
            "STRATEGY_FAILURE",
            f"Strategy {strategy} failed for conflict {conflict_id}: {cause}",
            {"strategy": strategy, "conflict_id": conflict_id, "error": str(cause)}
        )
        self.strategy = strategy
        self.conflict_id = conflict_id
        self.cause = cause


class AttributeResolutionFailure(PolicyEngineException):
    """A resolver's compute operation raised."""

    def __init__(self, attribute: str, cause: Exception):
        super().__init__(
            "ATTRIBUTE_RESOLUTION_FAILED",
            f"Failed to resolve attribute {attribute}: {cause}",
            {"attribute": attribute, "error": str(cause)}
        )
        self.attribute = attribute
        self.cause = cause


class SecurityViolation(PolicyEngineException):
    """Raised inside the expression interpreter; reported as data, never propagated."""

    def __init__(self, message: str = "Security violation", details: Optional[Dict[str, Any]] = None):
        super().__init__("SECURITY_VIOLATION", message, details)


class ValidationError(PolicyEngineException):
    """Required input is missing or malformed."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)
