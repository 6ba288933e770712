"""
Storefront Service package.

Turns declarative merchandising rules into tenant-scoped catalog queries
and serves the resulting product cards. It provides:

- app.main: API surface for rule administration, execution and sections.
- app.rules: Rule model, compiler, filter translation and merchandising.
- app.catalog: Catalog stores and the public product projection.
- app.cache: Cache-aside storage of rule results (Redis or in-memory).
- app.persistence: Rule storage (PostgreSQL or in-memory).

Guidelines:
- Every catalog query is scoped to one organization.
- Rule compilation is pure; the same inputs always yield the same plan.
- Cache and statistics failures never fail an execution.
"""
