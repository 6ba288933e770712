"""
Store-neutral predicate tree and compiled query plan.

Rule compilation produces a `CompiledQueryPlan`: an ordered list of stages
(match a predicate, or compute a derived field), a sort specification and a
limit. Catalog stores render the plan for their engine; the in-memory store
evaluates it directly and the PostgreSQL store turns it into SQL.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from .models import SortOrder


# Fields every catalog record exposes. Anything else is rejected before it
# can reach a store.
CATALOG_FIELDS = frozenset({
    "id",
    "organizationId",
    "isActive",
    "isDeleted",
    "name",
    "slug",
    "sku",
    "createdAt",
    "updatedAt",
    "sellingPrice",
    "discountedPrice",
    "categoryId",
    "brandId",
    "tags",
    "inventory.quantity",
    "salesCount",
    "lastSold",
})

NUMERIC_FIELDS = frozenset({"sellingPrice", "discountedPrice", "inventory.quantity", "salesCount"})
DATE_FIELDS = frozenset({"createdAt", "updatedAt", "lastSold"})


class Op(str, Enum):
    """Predicate operators understood by every catalog store."""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"  # case-insensitive substring
    EXISTS = "exists"


@dataclass(frozen=True)
class Condition:
    """`field <op> value`. List-valued fields match when any element does."""
    field: str
    op: Op
    value: Any = None


@dataclass(frozen=True)
class FieldRef:
    name: str


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Arithmetic:
    """Binary arithmetic over expressions; operator is one of + - * /."""
    operator: str
    left: "Expression"
    right: "Expression"


Expression = Union[FieldRef, Literal, Arithmetic]


@dataclass(frozen=True)
class ExpressionCondition:
    """Comparison between two computed expressions."""
    left: Expression
    op: Op
    right: Expression


@dataclass(frozen=True)
class AllOf:
    predicates: Tuple["Predicate", ...] = ()


@dataclass(frozen=True)
class AnyOf:
    predicates: Tuple["Predicate", ...] = ()


Predicate = Union[Condition, ExpressionCondition, AllOf, AnyOf]

# An empty disjunction is false for every record.
MATCH_NOTHING = AnyOf(())


def all_of(*predicates: Predicate) -> Predicate:
    """AND-combine predicates, flattening nested conjunctions."""
    flat = []
    for predicate in predicates:
        if isinstance(predicate, AllOf):
            flat.extend(predicate.predicates)
        else:
            flat.append(predicate)
    if len(flat) == 1:
        return flat[0]
    return AllOf(tuple(flat))


def any_of(*predicates: Predicate) -> Predicate:
    return AnyOf(tuple(predicates))


@dataclass(frozen=True)
class MatchStage:
    predicate: Predicate


@dataclass(frozen=True)
class ComputeStage:
    """Adds `name` to every record, evaluated from `expression`."""
    name: str
    expression: Expression


Stage = Union[MatchStage, ComputeStage]


@dataclass(frozen=True)
class CompiledQueryPlan:
    """Concrete predicate stages, sort and limit for one execution."""
    stages: Tuple[Stage, ...]
    sort: Tuple[Tuple[str, SortOrder], ...]
    limit: int
    preserve_order: Optional[Tuple[str, ...]] = None

    @property
    def sort_map(self) -> Dict[str, SortOrder]:
        return dict(self.sort)

    @property
    def computed_fields(self) -> Tuple[str, ...]:
        return tuple(stage.name for stage in self.stages if isinstance(stage, ComputeStage))

    def with_predicate(self, predicate: Predicate) -> "CompiledQueryPlan":
        """AND `predicate` into the leading match stage."""
        if self.stages and isinstance(self.stages[0], MatchStage):
            head = MatchStage(all_of(self.stages[0].predicate, predicate))
            return replace(self, stages=(head,) + self.stages[1:])
        return replace(self, stages=(MatchStage(predicate),) + self.stages)

    def with_limit(self, limit: int) -> "CompiledQueryPlan":
        return replace(self, limit=limit)
