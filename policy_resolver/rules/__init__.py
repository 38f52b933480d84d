"""
Rules package.

Defines the inbound model (policies, rules, conditions, roles, permissions
and the per-call resolution context) and the condition evaluator used to
decide whether a rule applies to a concrete request.

Modules of interest:
- models: Pydantic models for everything the caller supplies.
- conditions: Operator semantics, rule matching and rule specificity.
"""
