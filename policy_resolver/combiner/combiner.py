"""
Policy combiner: detect conflicts, resolve each one, merge the resolutions.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from shared.errors import EvaluationTimeout, ValidationError
from shared.logging import correlation_scope, get_logger
from shared.metrics import MetricsCollector
from shared.tracing import add_span_attributes, trace_operation
from ..attributes.registry import AttributeResolverRegistry
from ..conflicts.detector import ConflictDetector
from ..conflicts.models import PolicyConflict, Severity
from ..expressions.sandbox import ExpressionSandbox
from ..rules.models import CombinationMode, PolicyEffect, ResolutionContext
from ..strategies.builtin import create_default_strategy_registry
from ..strategies.context import StrategyContext
from ..strategies.models import PolicyResolution
from ..strategies.registry import StrategyRegistry
from .models import EvaluationStep, PolicyCombinationResult


NO_CONFLICT_CONFIDENCE = 0.5
WARNING_CONFIDENCE = 0.7
RECOMMENDATION_CONFIDENCE = 0.6

COMPONENT = "abac"


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


def combine_resolutions(mode: str, resolutions: Sequence[PolicyResolution]) -> Tuple[PolicyEffect, float]:
    """Merge per-conflict resolutions into one decision and confidence.

    Unknown modes fall through to a majority vote in which ties deny.
    """
    if not resolutions:
        return PolicyEffect.ALLOW, NO_CONFLICT_CONFIDENCE

    all_confidences = [r.confidence for r in resolutions]

    if mode == CombinationMode.DENY_WINS.value:
        deny = [r.confidence for r in resolutions if r.decision == PolicyEffect.DENY]
        if deny:
            return PolicyEffect.DENY, _mean(deny)
        return PolicyEffect.ALLOW, _mean(all_confidences)

    elif mode == CombinationMode.ALLOW_WINS.value:
        allow = [r.confidence for r in resolutions if r.decision == PolicyEffect.ALLOW]
        if allow:
            return PolicyEffect.ALLOW, _mean(allow)
        return PolicyEffect.DENY, _mean(all_confidences)

    elif mode in (CombinationMode.HIGHEST_PRIORITY.value, CombinationMode.MOST_SPECIFIC.value):
        best = max(resolutions, key=lambda r: r.confidence)
        return best.decision, best.confidence

    deny_count = sum(1 for r in resolutions if r.decision == PolicyEffect.DENY)
    decision = PolicyEffect.DENY if deny_count * 2 >= len(resolutions) else PolicyEffect.ALLOW
    return decision, _mean(all_confidences)


def applied_policy_ids(resolutions: Sequence[PolicyResolution], context: ResolutionContext) -> List[str]:
    """Known policy ids referenced from resolution metadata, first mention first."""
    known = {policy.id for policy in context.policies}
    applied: Dict[str, None] = {}

    for resolution in resolutions:
        for value in resolution.metadata.values():
            candidates = value if isinstance(value, (list, tuple)) else [value]
            for candidate in candidates:
                if isinstance(candidate, str) and candidate in known:
                    applied[candidate] = None

    return list(applied)


def build_recommendations(
    conflicts: Sequence[PolicyConflict],
    resolutions: Sequence[PolicyResolution]
) -> List[str]:
    recommendations = []

    critical = sum(1 for c in conflicts if c.severity == Severity.CRITICAL)
    if critical:
        recommendations.append(f"{critical} critical policy conflicts detected - immediate review required")

    low_confidence = sum(1 for r in resolutions if r.confidence < RECOMMENDATION_CONFIDENCE)
    if low_confidence:
        recommendations.append(
            f"{low_confidence} conflict resolutions have low confidence - consider policy refinement"
        )

    auto_resolvable = sum(1 for c in conflicts if c.auto_resolvable)
    if auto_resolvable:
        recommendations.append(
            f"{auto_resolvable} conflicts can be auto-resolved - consider enabling automatic resolution"
        )

    return recommendations


class PolicyCombiner:
    """Top-level entry point: one combine() call per access request."""

    def __init__(
        self,
        detector: Optional[ConflictDetector] = None,
        strategies: Optional[StrategyRegistry] = None,
        attributes: Optional[AttributeResolverRegistry] = None,
        sandbox: Optional[ExpressionSandbox] = None,
        metrics: Optional[MetricsCollector] = None,
        default_mode: str = CombinationMode.DENY_WINS.value,
        default_evaluation_mode: str = "hybrid",
        timeout: Optional[float] = None
    ):
        self.detector = detector if detector is not None else ConflictDetector(metrics=metrics)
        self.strategies = strategies if strategies is not None else create_default_strategy_registry(metrics)
        self.attributes = attributes
        self.sandbox = sandbox
        self.metrics = metrics
        self.default_mode = default_mode
        self.default_evaluation_mode = default_evaluation_mode
        self.timeout = timeout
        self.logger = get_logger("policy_resolver.combiner")

    async def combine(self, context: ResolutionContext, timeout: Optional[float] = None) -> PolicyCombinationResult:
        """Detect, resolve and combine.

        ``timeout`` (seconds) bounds the whole call; when it expires the
        remaining work is cancelled and EvaluationTimeout is raised instead
        of returning a partial decision.
        """
        self._validate(context)
        timeout = self.timeout if timeout is None else timeout
        attribute_context = context.attribute_context

        with correlation_scope(
            attribute_context.user_id,
            attribute_context.session_id,
            context.request.context.get("request_id")
        ), trace_operation(
            "policy_combination",
            user_id=context.request.user_id,
            resource=context.request.resource,
            action=context.request.action
        ):
            if timeout is None:
                return await self._combine(context, None)

            try:
                return await asyncio.wait_for(
                    self._combine(context, time.monotonic() + timeout),
                    timeout=timeout
                )
            except EvaluationTimeout:
                self._timed_out(context, timeout)
                raise
            except asyncio.TimeoutError:
                self._timed_out(context, timeout)
                raise EvaluationTimeout(
                    f"Policy combination exceeded {timeout}s",
                    {"timeout_seconds": timeout}
                ) from None

    def _timed_out(self, context: ResolutionContext, timeout: float) -> None:
        self.logger.warning(
            "Policy combination timed out",
            user_id=context.request.user_id,
            timeout_seconds=timeout
        )
        if self.metrics:
            self.metrics.record_error("EVALUATION_TIMEOUT")

    def _validate(self, context: Optional[ResolutionContext]) -> None:
        if context is None:
            raise ValidationError("Resolution context is required")
        if not context.request.user_id or not context.request.action:
            raise ValidationError(
                "Request user_id and action are required",
                {"user_id": context.request.user_id, "action": context.request.action}
            )
        if not context.attribute_context.user_id:
            raise ValidationError("Attribute context user_id is required")

    async def _combine(self, context: ResolutionContext, deadline: Optional[float]) -> PolicyCombinationResult:
        start_time = time.perf_counter()
        evaluation_path: List[EvaluationStep] = []
        mode = context.config.conflict_resolution or self.default_mode
        evaluation_mode = context.config.evaluation_mode or self.default_evaluation_mode

        # Step 1: detect
        conflicts = self.detector.detect(
            context.policies, context.roles, context.permissions, context, deadline=deadline
        )
        evaluation_path.append(self._step(
            "conflict_detection",
            "failed" if conflicts else "passed",
            start_time,
            conflict_count=len(conflicts)
        ))

        # Step 2: resolve each conflict
        strategy_context = StrategyContext(
            resolution_context=context,
            attributes=self.attributes,
            sandbox=self.sandbox,
            deadline=deadline
        )
        resolutions = list(await asyncio.gather(
            *(self.strategies.resolve(conflict, strategy_context) for conflict in conflicts)
        ))

        warnings = [
            f"Low confidence resolution for conflict: {conflict.description}"
            for conflict, resolution in zip(conflicts, resolutions)
            if resolution.confidence < WARNING_CONFIDENCE
        ]
        evaluation_path.append(self._step(
            "conflict_resolution",
            "passed",
            start_time,
            resolution_count=len(resolutions),
            strategies=[r.applied_strategy for r in resolutions]
        ))

        # Step 3: combine
        final_decision, confidence = combine_resolutions(mode, resolutions)
        evaluation_path.append(self._step(
            "policy_combination",
            "passed",
            start_time,
            final_decision=final_decision.value,
            confidence=confidence,
            combination_strategy=mode,
            evaluation_mode=evaluation_mode
        ))

        result = PolicyCombinationResult(
            final_decision=final_decision,
            combination_strategy=mode,
            confidence=confidence,
            conflicts=tuple(conflicts),
            resolutions=tuple(resolutions),
            applied_policies=tuple(applied_policy_ids(resolutions, context)),
            evaluation_path=tuple(evaluation_path),
            warnings=tuple(warnings),
            recommendations=tuple(build_recommendations(conflicts, resolutions))
        )

        duration = time.perf_counter() - start_time
        if self.metrics:
            self.metrics.increment_counter("decisions_total", decision=final_decision.value, mode=mode)
            self.metrics.observe_histogram("combine_duration_seconds", duration)

        add_span_attributes(decision=final_decision.value, confidence=confidence, conflicts=len(conflicts))
        self.logger.info(
            "Policy combination completed",
            user_id=context.request.user_id,
            resource=context.request.resource,
            action=context.request.action,
            decision=final_decision.value,
            confidence=confidence,
            conflicts=len(conflicts),
            mode=mode,
            duration_ms=duration * 1000
        )

        return result

    @staticmethod
    def _step(step: str, evaluation: str, start_time: float, **details) -> EvaluationStep:
        return EvaluationStep(
            step=step,
            component=COMPONENT,
            evaluation=evaluation,
            timestamp=datetime.now(timezone.utc),
            duration=(time.perf_counter() - start_time) * 1000,
            details=details
        )
