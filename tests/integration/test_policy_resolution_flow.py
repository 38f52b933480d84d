"""
Integration tests for the detect, resolve and combine flow.
"""

import pytest
from prometheus_client import CollectorRegistry

from shared.config import PolicyEngineSettings
from shared.metrics import MetricsCollector
from policy_resolver import (
    ConflictType, PolicyEffect, Severity, create_policy_combiner, detect_conflicts
)
from policy_resolver.attributes.registry import AttributeResolver
from policy_resolver.test_helpers import (
    CountingCompute, PolicyDataFactory, make_attribute_context, make_condition,
    make_policy, make_resolution_context, make_rule
)


class TestPolicyResolutionFlow:
    """End-to-end tests through a factory-built combiner."""

    @pytest.fixture
    def registry(self):
        """Create an isolated Prometheus registry."""
        return CollectorRegistry()

    @pytest.fixture
    def combiner(self, registry):
        """Create a fully wired combiner."""
        settings = PolicyEngineSettings(attribute_cache_backend="memory", combine_timeout_seconds=5.0)
        return create_policy_combiner(settings, metrics=MetricsCollector("policy_resolver", registry))

    @pytest.mark.asyncio
    async def test_conflict_free_allows(self, combiner):
        """Test a snapshot without conflicts allows with confidence 0.5."""
        context = make_resolution_context(policies=[
            make_policy("read-all", "allow", rules=[make_rule(action=["read"])]),
            make_policy("no-delete", "deny", 200, rules=[make_rule(action=["delete"])]),
        ])

        result = await combiner.combine(context)

        assert result.final_decision == PolicyEffect.ALLOW
        assert result.confidence == 0.5
        assert result.conflicts == ()

    @pytest.mark.asyncio
    async def test_finance_scenario(self, combiner, registry):
        """Test the finance department allow against the clearance deny."""
        context = make_resolution_context(
            policies=PolicyDataFactory.finance_policies(),
            request_context=PolicyDataFactory.finance_request_context()
        )

        result = await combiner.combine(context)

        effect_conflict = result.conflicts[0]
        assert effect_conflict.type == ConflictType.EFFECT_CONFLICT
        assert effect_conflict.severity == Severity.HIGH
        assert effect_conflict.auto_resolvable is False
        assert result.resolutions[0].decision == PolicyEffect.DENY
        assert result.resolutions[0].confidence == 0.9
        assert result.final_decision == PolicyEffect.DENY
        assert result.confidence == pytest.approx(0.75)
        assert registry.get_sample_value(
            "decisions_total", {"decision": "deny", "mode": "deny_wins"}
        ) == 1.0
        assert registry.get_sample_value(
            "conflicts_detected_total", {"conflict_type": "effect_conflict", "severity": "high"}
        ) == 1.0

    @pytest.mark.asyncio
    async def test_deny_forces_deny(self, combiner):
        """Test deny_wins mode denies whenever any resolution denies."""
        context = make_resolution_context(policies=[
            make_policy("allow-high", "allow", 500),
            make_policy("deny-low", "deny", 100),
        ])

        result = await combiner.combine(context)

        assert result.final_decision == PolicyEffect.DENY
        assert result.conflicts[0].severity == Severity.LOW
        assert result.conflicts[0].auto_resolvable is True

    @pytest.mark.asyncio
    async def test_priority_based_resolution(self, combiner):
        """Test priority_based picks the higher priority policy when deny_wins is removed."""
        combiner.strategies.unregister("deny_wins")
        context = make_resolution_context(
            policies=[make_policy("allow-200", "allow", 200), make_policy("deny-100", "deny", 100)],
            conflict_resolution="allow_wins"
        )

        result = await combiner.combine(context)

        resolution = result.resolutions[0]
        assert resolution.applied_strategy == "priority_based"
        assert resolution.decision == PolicyEffect.ALLOW
        assert resolution.confidence == 0.85
        assert result.final_decision == PolicyEffect.ALLOW
        assert result.applied_policies == ("allow-200",)

    @pytest.mark.asyncio
    async def test_temporal_role(self, combiner):
        """Test an inverted role window is reported and resolved by the fallback."""
        context = make_resolution_context(roles=[PolicyDataFactory.inverted_role()])

        result = await combiner.combine(context)

        assert [c.type for c in result.conflicts] == [ConflictType.TEMPORAL_CONFLICT]
        assert result.conflicts[0].severity == Severity.HIGH
        assert result.conflicts[0].auto_resolvable is True
        assert result.resolutions[0].applied_strategy == "fallback"
        assert result.final_decision == PolicyEffect.DENY
        assert result.confidence == 0.3

    @pytest.mark.asyncio
    async def test_dynamic_condition_in_request_match(self, combiner):
        """Test sandboxed expressions feed rule matching in conflict context."""
        policies = [
            make_policy("spend-limit", "allow", rules=[make_rule(
                action=["approve"],
                subject=[make_condition("amount", "less_than", expression="limit * 2")],
                rule_id="within-limit"
            )]),
            make_policy("spend-freeze", "deny", 150, rules=[make_rule(action=["approve"])]),
        ]
        context = make_resolution_context(
            policies=policies,
            action="approve",
            request_context={"subject": {"amount": 50, "limit": 30}}
        )

        result = await combiner.combine(context)

        rules = result.conflicts[0].context.conflicting_rules
        assert [r.matches_request for r in rules] == [True, True]

    def test_detection_is_idempotent(self):
        """Test the same snapshot yields the same report."""
        policies = PolicyDataFactory.finance_policies()
        roles = [PolicyDataFactory.inverted_role()]

        first = detect_conflicts(policies, roles)
        second = detect_conflicts(policies, roles)

        assert first == second
        assert [c.severity_weight for c in first] == sorted((c.severity_weight for c in first), reverse=True)

    def test_sandbox_rejections(self, combiner):
        """Test the wired sandbox rejects unsafe input."""
        sandbox = combiner.sandbox

        for expression in ('eval("1")', "globalThis.process", "1" * 10001):
            result = sandbox.evaluate_sync(expression)
            assert result.value is None
            assert result.security_violations

        assert sandbox.evaluate_sync("max(1,2)").value == 2

    @pytest.mark.asyncio
    async def test_attribute_cache_ttl(self, combiner):
        """Test cached resolvers compute once per TTL and clear per user."""
        compute = CountingCompute("gold")
        combiner.attributes.register(AttributeResolver(name="user.tier", compute=compute, cache_timeout=60000))
        context = make_attribute_context()

        assert await combiner.attributes.resolve("user.tier", context) == "gold"
        assert await combiner.attributes.resolve("user.tier", context) == "gold"
        assert compute.calls == 1

        assert await combiner.attributes.clear_cache("user-1") == 1
        await combiner.attributes.resolve("user.tier", context)
        assert compute.calls == 2
