"""
Merchandising overrides: pinning, exclusion and manual ordering.

The compiler knows nothing about pins or exclusions. `MerchandisingResolver`
layers them on a compiled plan and later merges the pinned records with the
plan's own results:

- excluded ids are removed from every query, pinned ones included, so an
  id that is both pinned and excluded never appears;
- pinned ids are fetched by a separate tenant-scoped plan, kept in their
  configured order and truncated to the limit;
- the main plan skips pinned ids so a pinned product is never shown twice,
  and fills whatever slots the pins leave.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shared.logging import get_logger
from .compiler import base_predicate
from .models import SmartRule, is_valid_identifier
from .plan import CompiledQueryPlan, Condition, MatchStage, Op, all_of


@dataclass(frozen=True)
class MerchandisedPlan:
    """A compiled plan with overrides applied."""
    main: CompiledQueryPlan
    pinned: Optional[CompiledQueryPlan]
    pinned_ids: Tuple[str, ...]
    limit: int

    def main_with_remaining(self, pinned_count: int) -> Optional[CompiledQueryPlan]:
        """Main plan sized to the slots left after `pinned_count` pins."""
        remaining = self.limit - pinned_count
        if remaining <= 0:
            return None
        return self.main.with_limit(remaining)


def _valid_ids(ids: Sequence[Any]) -> List[str]:
    seen: List[str] = []
    for value in ids:
        if is_valid_identifier(value) and value not in seen:
            seen.append(value)
    return seen


class MerchandisingResolver:
    """Applies pin / exclude overrides and manual ordering."""

    def __init__(self):
        self.logger = get_logger("storefront.merchandising")

    def resolve(self, plan: CompiledQueryPlan, rule: SmartRule, organization_id: str) -> MerchandisedPlan:
        excluded = _valid_ids(rule.excluded_product_ids)
        pinned_ids = tuple(pid for pid in _valid_ids(rule.pinned_product_ids) if pid not in excluded)

        main = plan
        if excluded:
            main = main.with_predicate(Condition("id", Op.NOT_IN, tuple(excluded)))

        pinned_plan = None
        if pinned_ids:
            main = main.with_predicate(Condition("id", Op.NOT_IN, pinned_ids))
            pinned_plan = CompiledQueryPlan(
                stages=(MatchStage(all_of(
                    base_predicate(organization_id),
                    Condition("id", Op.IN, pinned_ids),
                )),),
                sort=(),
                limit=len(pinned_ids),
                preserve_order=pinned_ids,
            )

        if len(pinned_ids) < len(rule.pinned_product_ids):
            self.logger.debug(
                "Pinned ids dropped by exclusion or validation",
                rule_id=rule.rule_id,
                requested=len(rule.pinned_product_ids),
                kept=len(pinned_ids),
            )

        return MerchandisedPlan(main=main, pinned=pinned_plan, pinned_ids=pinned_ids, limit=plan.limit)

    def order_pinned(self, merchandised: MerchandisedPlan, records: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Pinned records in configured order, truncated to the limit."""
        return arrange(records, merchandised.pinned_ids)[:merchandised.limit]

    def merge(
        self,
        merchandised: MerchandisedPlan,
        pinned: Sequence[Dict[str, Any]],
        remainder: Sequence[Dict[str, Any]],
    ) -> List[Dict[str, Any]]:
        """Pinned records first, then the plan's results, never repeating an id."""
        if merchandised.main.preserve_order is not None:
            remainder = arrange(remainder, merchandised.main.preserve_order)

        seen = set()
        merged: List[Dict[str, Any]] = []
        for record in list(pinned) + list(remainder):
            record_id = record.get("id")
            if record_id in seen:
                continue
            seen.add(record_id)
            merged.append(record)
        return merged[:merchandised.limit]


def arrange(records: Sequence[Dict[str, Any]], order: Sequence[str]) -> List[Dict[str, Any]]:
    """Order records by `order`, dropping any whose id is not listed."""
    by_id = {record.get("id"): record for record in records}
    return [by_id[record_id] for record_id in order if record_id in by_id]
