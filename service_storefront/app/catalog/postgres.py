"""
PostgreSQL catalog store.

Renders a `CompiledQueryPlan` into a single parameterised SQL statement. The
base select exposes product columns under their catalog field names, each
stage wraps the previous one in a subquery, and the outermost query applies
ordering and the limit. Only whitelisted field names are ever interpolated;
every value travels as a bind parameter.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from shared.errors import ExternalServiceError
from shared.logging import get_logger
from ..rules.models import SortOrder
from ..rules.plan import (
    CATALOG_FIELDS, AllOf, AnyOf, Arithmetic, CompiledQueryPlan, ComputeStage,
    Condition, Expression, ExpressionCondition, FieldRef, Literal, MatchStage, Op,
    Predicate,
)
from .base import CatalogStore


BASE_SELECT = """
    SELECT
        p.id AS "id",
        p.organization_id AS "organizationId",
        p.is_active AS "isActive",
        p.is_deleted AS "isDeleted",
        p.name AS "name",
        p.slug AS "slug",
        p.description AS "description",
        p.sku AS "sku",
        p.created_at AS "createdAt",
        p.updated_at AS "updatedAt",
        p.selling_price AS "sellingPrice",
        p.discounted_price AS "discountedPrice",
        p.currency AS "currency",
        p.category_id AS "categoryId",
        c.name AS "categoryName",
        p.brand_id AS "brandId",
        p.tags AS "tags",
        p.images AS "images",
        p.inventory AS "inventory",
        p.sales_count AS "salesCount",
        p.last_sold AS "lastSold"
    FROM products p
    LEFT JOIN categories c ON c.id = p.category_id
"""

ARRAY_FIELDS = frozenset({"tags"})
INVENTORY_FIELD = "inventory.quantity"

_COMPARISONS = {Op.GT: ">", Op.GTE: ">=", Op.LT: "<", Op.LTE: "<="}
_ARITHMETIC = {"+", "-", "*", "/"}


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SQLRenderer:
    """Turns a plan into `(sql, params)` using `$n` placeholders."""

    def __init__(self):
        self.params: List[Any] = []
        self.computed: set = set()

    def bind(self, value: Any) -> str:
        self.params.append(value)
        return f"${len(self.params)}"

    def column(self, field: str) -> str:
        if field not in CATALOG_FIELDS and field not in self.computed:
            raise ValueError(f"Unknown catalog field: {field}")
        return '"' + field + '"'

    def render_query(self, plan: CompiledQueryPlan) -> Tuple[str, List[Any]]:
        sql = self._render_stages(plan)
        if plan.preserve_order is not None:
            order = f"array_position({self.bind(list(plan.preserve_order))}::text[], q.id)"
        else:
            order = ", ".join(
                f"q.{self.column(field)} {'DESC' if direction == SortOrder.DESC else 'ASC'} NULLS LAST"
                for field, direction in plan.sort
            ) or "q.id ASC"
        sql = f"SELECT q.* FROM ({sql}) q ORDER BY {order} LIMIT {self.bind(plan.limit)}"
        return sql, self.params

    def render_count(self, plan: CompiledQueryPlan) -> Tuple[str, List[Any]]:
        sql = self._render_stages(plan)
        return f"SELECT COUNT(*) FROM ({sql}) q", self.params

    def _render_stages(self, plan: CompiledQueryPlan) -> str:
        sql = BASE_SELECT
        for index, stage in enumerate(plan.stages):
            alias = f"s{index}"
            if isinstance(stage, MatchStage):
                sql = f"SELECT {alias}.* FROM ({sql}) {alias} WHERE {self.render_predicate(stage.predicate)}"
            elif isinstance(stage, ComputeStage):
                expression = self.render_expression(stage.expression)
                self.computed.add(stage.name)
                sql = f"SELECT {alias}.*, {expression} AS {self.column(stage.name)} FROM ({sql}) {alias}"
        return sql

    def render_predicate(self, predicate: Predicate) -> str:
        if isinstance(predicate, AllOf):
            if not predicate.predicates:
                return "TRUE"
            return "(" + " AND ".join(self.render_predicate(p) for p in predicate.predicates) + ")"

        if isinstance(predicate, AnyOf):
            if not predicate.predicates:
                return "FALSE"
            return "(" + " OR ".join(self.render_predicate(p) for p in predicate.predicates) + ")"

        if isinstance(predicate, ExpressionCondition):
            left = self.render_expression(predicate.left)
            right = self.render_expression(predicate.right)
            return f"({left} {_COMPARISONS[predicate.op]} {right})"

        if isinstance(predicate, Condition):
            if predicate.field == INVENTORY_FIELD:
                return self._render_inventory(predicate)
            if predicate.field in ARRAY_FIELDS:
                return self._render_array(predicate)
            return self._render_scalar(predicate)

        raise ValueError(f"Unsupported predicate: {type(predicate).__name__}")

    def _render_scalar(self, condition: Condition) -> str:
        column = self.column(condition.field)
        op = condition.op

        if op == Op.EXISTS:
            return f"{column} IS {'NOT ' if condition.value else ''}NULL"
        elif op == Op.EQ:
            return f"{column} = {self.bind(condition.value)}"
        elif op == Op.NE:
            return f"{column} IS DISTINCT FROM {self.bind(condition.value)}"
        elif op == Op.IN:
            return f"{column} = ANY({self.bind(list(condition.value))})"
        elif op == Op.NOT_IN:
            return f"({column} IS NULL OR NOT ({column} = ANY({self.bind(list(condition.value))})))"
        elif op == Op.CONTAINS:
            pattern = f"%{escape_like(str(condition.value))}%"
            return f"{column}::text ILIKE {self.bind(pattern)}"
        elif op in _COMPARISONS:
            return f"{column} {_COMPARISONS[op]} {self.bind(condition.value)}"

        raise ValueError(f"Unsupported operator: {op}")

    def _render_array(self, condition: Condition) -> str:
        column = f"COALESCE({self.column(condition.field)}, '{{}}'::text[])"
        op = condition.op

        if op == Op.EXISTS:
            return f"cardinality({column}) {'>' if condition.value else '='} 0"
        elif op == Op.EQ:
            return f"{self.bind(str(condition.value))} = ANY({column})"
        elif op == Op.NE:
            return f"NOT ({self.bind(str(condition.value))} = ANY({column}))"
        elif op == Op.IN:
            return f"{column} && {self.bind([str(v) for v in condition.value])}::text[]"
        elif op == Op.NOT_IN:
            return f"NOT ({column} && {self.bind([str(v) for v in condition.value])}::text[])"
        elif op == Op.CONTAINS:
            pattern = f"%{escape_like(str(condition.value))}%"
            return f"EXISTS (SELECT 1 FROM unnest({column}) AS t(tag) WHERE t.tag ILIKE {self.bind(pattern)})"
        elif op in _COMPARISONS:
            return (
                f"EXISTS (SELECT 1 FROM unnest({column}) AS t(tag) "
                f"WHERE t.tag {_COMPARISONS[op]} {self.bind(str(condition.value))})"
            )

        raise ValueError(f"Unsupported operator: {op}")

    def _render_inventory(self, condition: Condition) -> str:
        quantity = "(inv.value->>'quantity')::numeric"
        source = """jsonb_array_elements(COALESCE("inventory", '[]'::jsonb)) AS inv(value)"""
        op = condition.op

        if op == Op.EXISTS:
            clause = f"EXISTS (SELECT 1 FROM {source} WHERE inv.value->>'quantity' IS NOT NULL)"
            return clause if condition.value else f"NOT {clause}"
        elif op == Op.EQ:
            return f"EXISTS (SELECT 1 FROM {source} WHERE {quantity} = {self.bind(condition.value)}::numeric)"
        elif op == Op.NE:
            return f"NOT EXISTS (SELECT 1 FROM {source} WHERE {quantity} = {self.bind(condition.value)}::numeric)"
        elif op == Op.IN:
            return f"EXISTS (SELECT 1 FROM {source} WHERE {quantity} = ANY({self.bind(list(condition.value))}::numeric[]))"
        elif op == Op.NOT_IN:
            return (
                f"NOT EXISTS (SELECT 1 FROM {source} "
                f"WHERE {quantity} = ANY({self.bind(list(condition.value))}::numeric[]))"
            )
        elif op in _COMPARISONS:
            return (
                f"EXISTS (SELECT 1 FROM {source} "
                f"WHERE {quantity} {_COMPARISONS[op]} {self.bind(condition.value)}::numeric)"
            )

        raise ValueError(f"Unsupported operator for {INVENTORY_FIELD}: {op}")

    def render_expression(self, expression: Expression) -> str:
        if isinstance(expression, Literal):
            return f"{self.bind(expression.value)}::float8"
        if isinstance(expression, FieldRef):
            return f"{self.column(expression.name)}::float8"
        if isinstance(expression, Arithmetic):
            if expression.operator not in _ARITHMETIC:
                raise ValueError(f"Unsupported arithmetic operator: {expression.operator}")
            left = self.render_expression(expression.left)
            right = self.render_expression(expression.right)
            if expression.operator == "/":
                return f"({left} / NULLIF({right}, 0))"
            return f"({left} {expression.operator} {right})"

        raise ValueError(f"Unsupported expression: {type(expression).__name__}")


class PostgresCatalogStore(CatalogStore):
    """Catalog store backed by the products table."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("storefront.catalog.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Open the connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30,
                init=self._init_connection
            )
            self.logger.info("PostgreSQL catalog store started")

        except Exception as e:
            self.logger.error("Failed to start PostgreSQL catalog store", error=str(e))
            raise ExternalServiceError("catalog", str(e))

    async def stop(self):
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL catalog store stopped")

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def query(self, plan: CompiledQueryPlan) -> List[Dict[str, Any]]:
        sql, params = SQLRenderer().render_query(plan)
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(sql, *params)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Catalog query failed", error=str(e))
            raise ExternalServiceError("catalog", str(e))
        return [dict(row) for row in rows]

    async def count(self, plan: CompiledQueryPlan) -> int:
        sql, params = SQLRenderer().render_count(plan)
        try:
            async with self.pool.acquire() as conn:
                count = await conn.fetchval(sql, *params)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Catalog count failed", error=str(e))
            raise ExternalServiceError("catalog", str(e))
        return count or 0

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
