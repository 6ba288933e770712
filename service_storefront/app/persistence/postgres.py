"""
PostgreSQL persistence layer for smart rules.
"""

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg

from shared.errors import ExternalServiceError, StatUpdateError
from shared.logging import get_logger
from ..rules.models import RuleFilter, RuleType, SmartRule, SortOrder
from .base import RuleRepository


_COLUMNS = """
    rule_id, organization_id, name, description, rule_type, filters, sort_by,
    sort_order, result_limit, category_id, pinned_product_ids,
    excluded_product_ids, manual_product_ids, cache_duration_minutes,
    is_active, execution_count, last_executed_at, created_at, updated_at
"""


class PostgresRuleRepository(RuleRepository):
    """PostgreSQL persistence layer for rules."""

    def __init__(self, dsn: str):
        self.dsn = dsn
        self.logger = get_logger("storefront.persistence.postgres")
        self.pool: Optional[asyncpg.Pool] = None

    async def start(self):
        """Start the persistence layer."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=2,
                max_size=10,
                command_timeout=30,
                init=self._init_connection
            )

            # Create tables if they don't exist
            await self._create_tables()

            self.logger.info("PostgreSQL persistence started")

        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Failed to start PostgreSQL persistence", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def stop(self):
        """Stop the persistence layer."""
        if self.pool:
            await self.pool.close()
            self.logger.info("PostgreSQL persistence stopped")

    @staticmethod
    async def _init_connection(conn):
        await conn.set_type_codec("jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog")

    async def _create_tables(self):
        """Create database tables."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS smart_rules (
                    rule_id VARCHAR(64) PRIMARY KEY,
                    organization_id VARCHAR(64) NOT NULL,
                    name VARCHAR(255) NOT NULL DEFAULT '',
                    description TEXT,
                    rule_type VARCHAR(50) NOT NULL,
                    filters JSONB NOT NULL DEFAULT '[]',
                    sort_by VARCHAR(100),
                    sort_order VARCHAR(4),
                    result_limit INTEGER NOT NULL DEFAULT 12,
                    category_id VARCHAR(64),
                    pinned_product_ids TEXT[] NOT NULL DEFAULT '{}',
                    excluded_product_ids TEXT[] NOT NULL DEFAULT '{}',
                    manual_product_ids TEXT[] NOT NULL DEFAULT '{}',
                    cache_duration_minutes INTEGER NOT NULL DEFAULT 15,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    execution_count INTEGER NOT NULL DEFAULT 0,
                    last_executed_at TIMESTAMP WITH TIME ZONE,
                    created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
                );
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_smart_rules_org ON smart_rules(organization_id);
            """)
            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_smart_rules_org_active ON smart_rules(organization_id, is_active);
            """)

    async def _fetchrow(self, query: str, *args):
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Rule query failed", error=str(e))
            raise ExternalServiceError("postgres", str(e))

    async def find_active_by_id(self, rule_id: str, organization_id: str) -> Optional[SmartRule]:
        row = await self._fetchrow(f"""
            SELECT {_COLUMNS} FROM smart_rules
            WHERE rule_id = $1 AND organization_id = $2 AND is_active = TRUE
        """, rule_id, organization_id)
        return self._row_to_rule(row) if row else None

    async def get(self, rule_id: str, organization_id: str) -> Optional[SmartRule]:
        row = await self._fetchrow(f"""
            SELECT {_COLUMNS} FROM smart_rules
            WHERE rule_id = $1 AND organization_id = $2
        """, rule_id, organization_id)
        return self._row_to_rule(row) if row else None

    async def list_for_organization(self, organization_id: str, active_only: bool = False) -> List[SmartRule]:
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(f"""
                    SELECT {_COLUMNS} FROM smart_rules
                    WHERE organization_id = $1 AND (is_active = TRUE OR NOT $2)
                    ORDER BY created_at DESC
                """, organization_id, active_only)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Error loading rules for organization", organization_id=organization_id, error=str(e))
            raise ExternalServiceError("postgres", str(e))

        return [self._row_to_rule(row) for row in rows]

    async def create(self, rule: SmartRule) -> SmartRule:
        rule_id = rule.rule_id or str(uuid.uuid4())
        row = await self._fetchrow(f"""
            INSERT INTO smart_rules ({_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18, $19)
            RETURNING {_COLUMNS}
        """, rule_id, *self._rule_values(rule))

        self.logger.info("Rule saved", rule_id=rule_id, name=rule.name)
        return self._row_to_rule(row)

    async def update(self, rule: SmartRule) -> SmartRule:
        row = await self._fetchrow(f"""
            UPDATE smart_rules SET
                organization_id = $2,
                name = $3,
                description = $4,
                rule_type = $5,
                filters = $6,
                sort_by = $7,
                sort_order = $8,
                result_limit = $9,
                category_id = $10,
                pinned_product_ids = $11,
                excluded_product_ids = $12,
                manual_product_ids = $13,
                cache_duration_minutes = $14,
                is_active = $15,
                execution_count = $16,
                last_executed_at = $17,
                created_at = $18,
                updated_at = $19
            WHERE rule_id = $1 AND organization_id = $2
            RETURNING {_COLUMNS}
        """, rule.rule_id, *self._rule_values(rule))

        self.logger.info("Rule updated", rule_id=rule.rule_id, name=rule.name)
        return self._row_to_rule(row) if row else rule

    async def delete(self, rule_id: str, organization_id: str) -> bool:
        """Delete a rule from the database."""
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                    DELETE FROM smart_rules WHERE rule_id = $1 AND organization_id = $2
                """, rule_id, organization_id)
        except (asyncpg.PostgresError, OSError) as e:
            self.logger.error("Error deleting rule", rule_id=rule_id, error=str(e))
            raise ExternalServiceError("postgres", str(e))

        if result == "DELETE 1":
            self.logger.info("Rule deleted", rule_id=rule_id)
            return True

        self.logger.warning("Rule not found for deletion", rule_id=rule_id)
        return False

    async def record_execution(self, rule_id: str, organization_id: str, executed_at: datetime):
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("""
                    UPDATE smart_rules
                    SET execution_count = execution_count + 1, last_executed_at = $3
                    WHERE rule_id = $1 AND organization_id = $2
                """, rule_id, organization_id, executed_at)
        except (asyncpg.PostgresError, OSError) as e:
            raise StatUpdateError("Could not record rule execution", {"rule_id": rule_id, "error": str(e)})

        if result != "UPDATE 1":
            raise StatUpdateError("Rule no longer exists", {"rule_id": rule_id})

    def _rule_values(self, rule: SmartRule) -> List[Any]:
        return [
            rule.organization_id,
            rule.name,
            rule.description,
            rule.rule_type.value,
            [f.to_dict() for f in rule.filters],
            rule.sort_by,
            rule.sort_order.value if rule.sort_order else None,
            rule.limit,
            rule.category_id,
            list(rule.pinned_product_ids),
            list(rule.excluded_product_ids),
            list(rule.manual_product_ids),
            rule.cache_duration_minutes,
            rule.is_active,
            rule.execution_count,
            rule.last_executed_at,
            rule.created_at,
            rule.updated_at,
        ]

    def _row_to_rule(self, row) -> SmartRule:
        """Convert database row to SmartRule object."""
        filters: List[Dict[str, Any]] = row["filters"] or []
        return SmartRule(
            rule_id=row["rule_id"],
            organization_id=row["organization_id"],
            rule_type=RuleType(row["rule_type"]),
            name=row["name"],
            description=row["description"],
            filters=[RuleFilter.from_dict(f) for f in filters],
            sort_by=row["sort_by"],
            sort_order=SortOrder(row["sort_order"]) if row["sort_order"] else None,
            limit=row["result_limit"],
            category_id=row["category_id"],
            pinned_product_ids=list(row["pinned_product_ids"] or []),
            excluded_product_ids=list(row["excluded_product_ids"] or []),
            manual_product_ids=list(row["manual_product_ids"] or []),
            cache_duration_minutes=row["cache_duration_minutes"],
            is_active=row["is_active"],
            execution_count=row["execution_count"],
            last_executed_at=row["last_executed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def health_check(self) -> bool:
        """Check database health."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception:
            return False
