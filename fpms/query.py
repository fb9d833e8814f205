"""Composable query specifications.

Listing operations (forms, grants, submissions) accept a QuerySpec: a list
of predicates plus ordering plus pagination. The QuerySpec is plain data; it is
translated into a SQLAlchemy ``Select`` exactly once by ``apply_query``
against a whitelist of filterable names for the target table.

Usage:
    >>> spec = QuerySpec().where("is_active", True).where("search", "contains", "health")
    >>> spec = spec.order("created_at", "desc").page(limit=20)
    >>> len(spec.predicates)
    2
"""

from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy import ColumnElement, Select, and_, or_

from fpms.errors import ValidationError

OPERATORS = frozenset({"eq", "ne", "in", "lt", "le", "gt", "ge", "contains", "is_null"})

_MISSING = object()

Columns = Union[ColumnElement, Sequence[ColumnElement]]


@dataclass(frozen=True)
class Predicate:
    """One filter condition: ``name <op> value``."""
    name: str
    op: str
    value: Any = None

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValidationError(f"Unknown filter operator: {self.op}")


@dataclass(frozen=True)
class QuerySpec:
    """Immutable filter + ordering + pagination description.

    Attributes:
        predicates: Conditions combined with AND
        ordering: (name, direction) pairs, direction is "asc" or "desc"
        limit: Maximum number of rows, None for all
        offset: Number of rows to skip
    """
    predicates: Tuple[Predicate, ...] = ()
    ordering: Tuple[Tuple[str, str], ...] = ()
    limit: Optional[int] = None
    offset: int = 0

    def where(self, name: str, op_or_value: Any, value: Any = _MISSING) -> "QuerySpec":
        """Return a copy with one more predicate.

        ``where("status", "draft")`` is shorthand for ``where("status", "eq", "draft")``.
        """
        if value is _MISSING:
            predicate = Predicate(name, "eq", op_or_value)
        else:
            predicate = Predicate(name, op_or_value, value)
        return replace(self, predicates=self.predicates + (predicate,))

    def order(self, name: str, direction: str = "asc") -> "QuerySpec":
        direction = direction.lower()
        if direction not in ("asc", "desc"):
            raise ValidationError(f"Invalid order direction: {direction}")
        return replace(self, ordering=self.ordering + ((name, direction),))

    def page(self, limit: int, offset: int = 0) -> "QuerySpec":
        if limit <= 0 or offset < 0:
            raise ValidationError("Pagination requires a positive limit and a non-negative offset")
        return replace(self, limit=limit, offset=offset)

    @classmethod
    def from_filters(cls, filters: Mapping[str, Any]) -> "QuerySpec":
        """Build a spec from a flat ``{name: value}`` mapping of equality filters.

        The keys ``order_by``, ``order_dir``, ``limit`` and ``offset`` are
        understood as ordering and pagination; ``None`` values are skipped.
        """
        spec = cls()
        for name, value in filters.items():
            if name in ("order_by", "order_dir", "limit", "offset") or value is None:
                continue
            spec = spec.where(name, "contains" if name == "search" else "eq", value)
        if filters.get("order_by"):
            spec = spec.order(filters["order_by"], filters.get("order_dir") or "asc")
        if filters.get("limit"):
            spec = spec.page(int(filters["limit"]), int(filters.get("offset") or 0))
        return spec


def _condition(columns: Columns, op: str, value: Any) -> ColumnElement:
    if op == "contains":
        targets = list(columns) if isinstance(columns, (list, tuple)) else [columns]
        pattern = f"%{value}%"
        return or_(*(col.ilike(pattern) for col in targets))

    if isinstance(columns, (list, tuple)):
        raise ValidationError(f"Operator '{op}' needs a single column")
    column = columns
    if op == "eq":
        return column == value
    if op == "ne":
        return column != value
    if op == "in":
        return column.in_(list(value))
    if op == "lt":
        return column < value
    if op == "le":
        return column <= value
    if op == "gt":
        return column > value
    if op == "ge":
        return column >= value
    return column.is_(None) if value else column.is_not(None)


def apply_query(stmt: Select, spec: QuerySpec, columns: Mapping[str, Columns]) -> Select:
    """Translate ``spec`` onto ``stmt``.

    Args:
        stmt: The base select statement
        spec: The query specification
        columns: Whitelist of filterable/orderable names to column(s)

    Raises:
        ValidationError: If the query names a column outside the whitelist
    """
    conditions = []
    for predicate in spec.predicates:
        if predicate.name not in columns:
            raise ValidationError(f"Unknown filter: {predicate.name}")
        conditions.append(_condition(columns[predicate.name], predicate.op, predicate.value))
    if conditions:
        stmt = stmt.where(and_(*conditions))

    for name, direction in spec.ordering:
        column = columns.get(name)
        if column is None or isinstance(column, (list, tuple)):
            raise ValidationError(f"Cannot order by: {name}")
        stmt = stmt.order_by(column.desc() if direction == "desc" else column.asc())

    if spec.limit is not None:
        stmt = stmt.limit(spec.limit).offset(spec.offset)
    return stmt


__all__ = ["Predicate", "QuerySpec", "apply_query", "OPERATORS"]
