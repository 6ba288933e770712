"""
Smart rules package.

Defines the rule model and turns rules into catalog query plans:

- models: SmartRule, filters, enums, API request/response models.
- plan: Store-neutral predicate tree and CompiledQueryPlan.
- filters: Generic {field, operator, value} translation with field aliases.
- compiler: Enum-keyed table of per-type strategies producing a plan.
- merchandising: Pin / exclude overrides and manual ordering.
- validator: Save-time checks on rule bodies.

Compilation is pure: the same rule, tenant and clock always yield the same
plan, and the rule object is never modified.
"""
